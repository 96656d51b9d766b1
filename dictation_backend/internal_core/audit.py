from __future__ import annotations

import datetime as _dt
from collections import deque
from threading import RLock
from typing import Deque, List, Optional

from .contracts import LifecycleEvent, LifecycleEventType


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # Never include transcript text or audio in detail; keep it to one short line.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "…"
    return detail


class LifecycleEventLog:
    def __init__(self, max_events: int = 200):
        self._lock = RLock()
        self._events: Deque[LifecycleEvent] = deque(maxlen=max(1, int(max_events)))

    def append(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._events.append(event)

    def list(self, provider_id: Optional[str] = None) -> List[LifecycleEvent]:
        with self._lock:
            events = list(self._events)
        if provider_id is None:
            return events
        return [e for e in events if e.provider_id == provider_id]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def log_event(
    log: Optional[LifecycleEventLog],
    provider_id: str,
    event_type: LifecycleEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> None:
    if log is None:
        return
    event = LifecycleEvent(
        ts_iso=_ts_iso(),
        provider_id=provider_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    log.append(event)
