"""
bus.py — In-process observer registration for coordinator notifications.

Messages:
    AlertStateChanged   an alert session moved to a new lifecycle state
    DispatchCompleted   a dispatch report is available for a session

Subscribers are plain callables or coroutine functions. A subscriber
that raises is logged and skipped; it can never break the emergency
flow that published the message.

Usage:
    unsubscribe = bus.subscribe(on_change, AlertStateChanged)
    ...
    unsubscribe()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Set, Tuple, Type

from backend.app.alerts.models import DispatchReport

if TYPE_CHECKING:
    from backend.app.alerts.coordinator import AlertSession, AlertState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertStateChanged:
    session: "AlertSession"
    previous: Optional["AlertState"]
    state: "AlertState"


@dataclass(frozen=True)
class DispatchCompleted:
    session_id: Optional[str]
    report: DispatchReport


Subscriber = Callable[[Any], Any]


class EventBus:
    """Synchronous fan-out; coroutine subscribers are scheduled as tasks."""

    def __init__(self) -> None:
        self._subscribers: List[Tuple[Subscriber, Optional[Type[Any]]]] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def subscribe(
        self,
        callback: Subscriber,
        message_type: Optional[Type[Any]] = None,
    ) -> Callable[[], None]:
        """Register a subscriber; returns a callable that unregisters it."""
        entry = (callback, message_type)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, message: Any) -> None:
        for callback, message_type in list(self._subscribers):
            if message_type is not None and not isinstance(message, message_type):
                continue
            try:
                result = callback(message)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception(
                    "Subscriber %r failed on %s", callback, type(message).__name__,
                )

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Async subscriber failed: %s", task.exception(),
            )
