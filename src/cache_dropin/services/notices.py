import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

NOTICE_TTL_SEC = 30

LEVEL_UPDATED = "updated"
LEVEL_ERROR = "error"


@dataclass(frozen=True)
class Notice:
    code: str
    message: str
    level: str = LEVEL_UPDATED


class NoticeStore:
    """One-shot outcome messages, queued per principal and consumed on render.

    Entries expire after ``ttl_sec`` even if never rendered. With a
    ``state_dir`` the queue survives across worker processes; without one it
    is kept in memory.
    """

    def __init__(
        self,
        state_dir: Optional[Path] = None,
        ttl_sec: int = NOTICE_TTL_SEC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = (Path(state_dir) / "notices.json") if state_dir is not None else None
        self._ttl = max(1, int(ttl_sec))
        self._clock = clock
        self._memory: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def push(self, principal_id: str, notices: List[Notice]) -> None:
        if not notices:
            return
        with self._lock:
            state = self._prune(self._load())
            bucket = state.get(principal_id) or {"expires_at": 0, "items": []}
            bucket["items"] = list(bucket.get("items") or []) + [asdict(n) for n in notices]
            bucket["expires_at"] = self._clock() + self._ttl
            state[principal_id] = bucket
            self._save(state)

    def pop(self, principal_id: str) -> List[Notice]:
        with self._lock:
            state = self._prune(self._load())
            bucket = state.pop(principal_id, None)
            self._save(state)
        if not bucket:
            return []
        out: List[Notice] = []
        for item in bucket.get("items") or []:
            out.append(
                Notice(
                    code=str(item.get("code") or ""),
                    message=str(item.get("message") or ""),
                    level=str(item.get("level") or LEVEL_UPDATED),
                )
            )
        return out

    def _prune(self, state: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()
        return {k: v for k, v in state.items() if isinstance(v, dict) and float(v.get("expires_at") or 0) > now}

    def _load(self) -> Dict[str, Any]:
        if self._path is None or not self._path.exists():
            return dict(self._memory)
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
        except (OSError, ValueError):
            pass
        return {}

    def _save(self, state: Dict[str, Any]) -> None:
        if self._path is None:
            self._memory = dict(state)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(state, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
