import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, List, Optional

from cache_dropin.domain.dropin import DropinAuditEvent

logger = logging.getLogger(__name__)

MEMORY_EVENT_LIMIT = 1000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DropinAuditLog:
    """Append-only JSONL record of every dispatched drop-in action.

    Without a ``state_dir`` only the most recent ``memory_limit`` events are kept.
    """

    def __init__(self, state_dir: Optional[Path] = None, memory_limit: int = MEMORY_EVENT_LIMIT) -> None:
        self._path = (Path(state_dir) / "audit.jsonl") if state_dir is not None else None
        self._memory: Deque[DropinAuditEvent] = deque(maxlen=max(1, int(memory_limit)))
        self._lock = threading.Lock()

    def append(self, action: str, principal_id: str, outcome: str, details: Optional[Dict[str, str]] = None) -> None:
        event = DropinAuditEvent(
            ts=_utc_now(),
            action=action,
            principal_id=principal_id,
            outcome=outcome,
            details={k: str(v) for k, v in dict(details or {}).items()},
        )
        with self._lock:
            if self._path is None:
                self._memory.append(event)
                return
            row = {
                "ts": event.ts.isoformat(),
                "action": event.action,
                "principal_id": event.principal_id,
                "outcome": event.outcome,
                "details": event.details,
            }
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as f:
                    f.write(json.dumps(row, ensure_ascii=True) + "\n")
            except OSError as exc:
                logger.warning("audit append failed path=%s: %s", self._path, exc)

    def list_events(self, limit: int = 200) -> List[DropinAuditEvent]:
        if self._path is None:
            return list(self._memory)[-max(1, limit):]
        if not self._path.exists():
            return []
        rows = self._path.read_text(encoding="utf-8").splitlines()
        items: List[DropinAuditEvent] = []
        for raw in rows[-max(1, limit):]:
            try:
                data = json.loads(raw)
                items.append(
                    DropinAuditEvent(
                        ts=datetime.fromisoformat(data["ts"]),
                        action=str(data.get("action") or ""),
                        principal_id=str(data.get("principal_id") or ""),
                        outcome=str(data.get("outcome") or ""),
                        details={k: str(v) for k, v in dict(data.get("details") or {}).items()},
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        return items
