from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cache_dropin.domain.dropin import ScheduleEntry

logger = logging.getLogger(__name__)

DISCARD_METRICS_HOOK = "rediscache_discard_metrics"
LEGACY_GATHER_METRICS_HOOK = "redis_gather_metrics"
HOURLY_SEC = 3600

HookHandler = Callable[[], object]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JsonScheduleStore:
    """Persists recurring hook entries as ``{hook: {next_run_at, interval_sec}}``."""

    def __init__(self, state_dir: Optional[Path] = None) -> None:
        self._path = (Path(state_dir) / "schedule.json") if state_dir is not None else None
        self._memory: Dict[str, Dict[str, object]] = {}
        self._lock = threading.Lock()

    def get(self, hook_name: str) -> Optional[ScheduleEntry]:
        with self._lock:
            row = self._load().get(hook_name)
        if not row:
            return None
        return _row_to_entry(hook_name, row)

    def list_entries(self) -> List[ScheduleEntry]:
        with self._lock:
            rows = self._load()
        return sorted((_row_to_entry(k, v) for k, v in rows.items()), key=lambda e: e.hook_name)

    def put(self, entry: ScheduleEntry) -> None:
        with self._lock:
            rows = self._load()
            rows[entry.hook_name] = {
                "next_run_at": entry.next_run_at.isoformat() if entry.next_run_at else "",
                "interval_sec": int(entry.interval_sec),
            }
            self._save(rows)

    def remove(self, hook_name: str) -> bool:
        with self._lock:
            rows = self._load()
            removed = rows.pop(hook_name, None) is not None
            if removed:
                self._save(rows)
        return removed

    def _load(self) -> Dict[str, Dict[str, object]]:
        if self._path is None:
            return dict(self._memory)
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return {str(k): v for k, v in data.items() if isinstance(v, dict)}
        except (OSError, ValueError) as exc:
            logger.warning("schedule store unreadable path=%s: %s", self._path, exc)
        return {}

    def _save(self, rows: Dict[str, Dict[str, object]]) -> None:
        if self._path is None:
            self._memory = dict(rows)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(rows, ensure_ascii=True, indent=2, sort_keys=True) + "\n", encoding="utf-8")


class ScheduledTaskManager:
    """Keeps the hourly discard-metrics entry in step with the drop-in state."""

    def __init__(
        self,
        store: JsonScheduleStore,
        hook_name: str = DISCARD_METRICS_HOOK,
        interval_sec: int = HOURLY_SEC,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._hook = hook_name
        self._interval = max(60, int(interval_sec))
        self._clock = clock
        self._handlers: Dict[str, HookHandler] = {}

    @property
    def hook_name(self) -> str:
        return self._hook

    def next_scheduled(self) -> Optional[ScheduleEntry]:
        return self._store.get(self._hook)

    def reconcile(self, dropin_active: bool, is_administrative_context: bool, deactivating: bool = False) -> bool:
        """Create or remove the entry; returns True when the store was changed."""
        changed = self._store.remove(LEGACY_GATHER_METRICS_HOOK)
        if deactivating or not dropin_active:
            if self._store.remove(self._hook):
                logger.info("unscheduled hook=%s deactivating=%s", self._hook, deactivating)
                return True
            return changed
        if dropin_active and is_administrative_context and self._store.get(self._hook) is None:
            self._store.put(ScheduleEntry(hook_name=self._hook, next_run_at=self._clock(), interval_sec=self._interval))
            logger.info("scheduled hook=%s every %ss", self._hook, self._interval)
            return True
        return changed

    def register_handler(self, hook_name: str, handler: HookHandler) -> None:
        self._handlers[hook_name] = handler

    def tick_once(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Run every due entry that has a handler and push it one interval ahead."""
        now = now or self._clock()
        due = [e for e in self._store.list_entries() if e.next_run_at is not None and e.next_run_at <= now]
        ran = 0
        failed = 0
        for entry in due:
            handler = self._handlers.get(entry.hook_name)
            if handler is None:
                continue
            ran += 1
            try:
                handler()
            except Exception:
                failed += 1
                logger.exception("scheduled hook failed hook=%s", entry.hook_name)
            if self._store.get(entry.hook_name) is None:
                logger.info("hook=%s unscheduled while running; not rescheduling", entry.hook_name)
                continue
            self._store.put(
                ScheduleEntry(
                    hook_name=entry.hook_name,
                    next_run_at=now + timedelta(seconds=entry.interval_sec),
                    interval_sec=entry.interval_sec,
                )
            )
        return {"due": len(due), "ran": ran, "failed": failed}


def _row_to_entry(hook_name: str, row: Dict[str, object]) -> ScheduleEntry:
    raw = str(row.get("next_run_at") or "")
    next_run: Optional[datetime] = None
    if raw:
        try:
            next_run = datetime.fromisoformat(raw)
        except ValueError:
            next_run = None
    try:
        interval = int(row.get("interval_sec") or HOURLY_SEC)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        interval = HOURLY_SEC
    return ScheduleEntry(hook_name=hook_name, next_run_at=next_run, interval_sec=interval)
