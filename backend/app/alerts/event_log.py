"""
event_log.py — Bounded, append-only history of dispatched emergencies.

    append(event)   add at the tail; past capacity the oldest entries are
                    evicted from the head (FIFO by insertion order)
    recent(n)       newest-first read-only view
    clear()         empty the log

Entries are never modified after append. The log persists to the store
under ``emergency_events`` after every mutation; a failed save is logged
and never fails the append.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from backend.app.alerts.models import DispatchReport, EmergencyEvent
from backend.app.storage.store import PersistentStore, load_json, save_json

logger = logging.getLogger(__name__)

EVENTS_KEY = "emergency_events"
DEFAULT_CAPACITY = 100


@dataclass(frozen=True)
class LoggedEvent:
    """One EventLog entry: the dispatched event plus its dispatch outcome."""
    event: EmergencyEvent
    logged_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dispatch_succeeded: Optional[bool] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.event.to_dict(),
            "logged_at": self.logged_at.isoformat(),
            "dispatch_succeeded": self.dispatch_succeeded,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggedEvent":
        return cls(
            event=EmergencyEvent.from_dict(data),
            logged_at=datetime.fromisoformat(data["logged_at"]),
            dispatch_succeeded=data.get("dispatch_succeeded"),
            session_id=data.get("session_id"),
        )


class EventLog:
    """FIFO-bounded audit log of emergency events."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        store: Optional[PersistentStore] = None,
    ):
        if capacity < 1:
            raise ValueError(f"EventLog capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.store = store
        self._entries: Deque[LoggedEvent] = deque(maxlen=capacity)
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def load(self) -> None:
        if self.store is None:
            return
        raw = await load_json(self.store, EVENTS_KEY) or []
        async with self._lock:
            self._entries = deque(
                (LoggedEvent.from_dict(item) for item in raw), maxlen=self.capacity,
            )
        logger.info("Loaded %d logged emergency events", len(self._entries))

    async def _save(self) -> None:
        if self.store is None:
            return
        try:
            await save_json(self.store, EVENTS_KEY, [e.to_dict() for e in self._entries])
        except Exception as e:
            # The in-memory entry stands; the next successful save persists it
            logger.error("EventLog persist error for %s: %s", EVENTS_KEY, e)

    async def append(
        self,
        event: EmergencyEvent,
        report: Optional[DispatchReport] = None,
        *,
        session_id: Optional[str] = None,
    ) -> LoggedEvent:
        entry = LoggedEvent(
            event=event,
            dispatch_succeeded=report.succeeded if report is not None else None,
            session_id=session_id,
        )
        async with self._lock:
            # deque(maxlen) drops from the head once full
            self._entries.append(entry)
            await self._save()
        logger.info(
            "Logged emergency event %s (%d/%d)",
            event.id, len(self._entries), self.capacity,
            extra={"event_id": event.id},
        )
        return entry

    def recent(self, n: Optional[int] = None) -> List[LoggedEvent]:
        """Up to n entries, most recent first; all entries when n is None."""
        newest_first = list(reversed(self._entries))
        if n is None:
            return newest_first
        return newest_first[:max(n, 0)]

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            if self.store is not None:
                await self.store.remove(EVENTS_KEY)
        logger.info("Emergency event log cleared")
