import json
from datetime import datetime, timezone
from logging import Logger
from typing import Any, Dict

from cache_dropin.util import redact


def log_json(logger: Logger, event: str, **fields: Any) -> None:
    """Emit one JSON line for a drop-in lifecycle event, secrets masked."""
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event,
    }
    for key, value in fields.items():
        payload[key] = redact(value) if isinstance(value, str) else value
    logger.info(json.dumps(payload, ensure_ascii=True, sort_keys=True, default=str))
