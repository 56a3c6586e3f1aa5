"""
provider.py — Location provider contract and bundled implementations.

Contract (consumed by the alert coordinator):

    get_current_position(high_accuracy, timeout_s) → GeoFix
        raises LocationUnavailableError on failure or timeout
    watch_position(callback) → Subscription
        callback(fix) for every later fix
    cancel(subscription)
        stop delivering to that callback; cancelling twice is harmless

Implementations:
    StaticLocationProvider    fixed answer (or failure), optional delay
    ReportedLocationProvider  fixes pushed in by the host, e.g. the client
                              posting its GPS position; waiting requests
                              resolve on the next report
"""

from __future__ import annotations

import abc
import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from backend.app.alerts.models import GeoFix
from backend.app.core.errors import LocationUnavailableError

logger = logging.getLogger(__name__)

PositionCallback = Callable[[GeoFix], None]

_subscription_ids = itertools.count(1)


@dataclass(frozen=True)
class Subscription:
    """Handle returned by watch_position."""
    id: int
    high_accuracy: bool = True


class LocationProvider(abc.ABC):
    """Source of position fixes."""

    def __init__(self) -> None:
        self._watchers: Dict[int, PositionCallback] = {}

    @abc.abstractmethod
    async def get_current_position(
        self,
        high_accuracy: bool = True,
        timeout_s: float = 10.0,
    ) -> GeoFix:
        ...

    def watch_position(
        self,
        callback: PositionCallback,
        high_accuracy: bool = True,
    ) -> Subscription:
        subscription = Subscription(next(_subscription_ids), high_accuracy)
        self._watchers[subscription.id] = callback
        return subscription

    def cancel(self, subscription: Subscription) -> None:
        self._watchers.pop(subscription.id, None)

    @property
    def active_watches(self) -> int:
        return len(self._watchers)

    def _publish(self, fix: GeoFix) -> None:
        for sub_id, callback in list(self._watchers.items()):
            try:
                callback(fix)
            except Exception:
                logger.exception("Position watcher %d failed", sub_id)


class StaticLocationProvider(LocationProvider):
    """
    Answers every request with the same fix.

    A None fix makes every request fail; ``delay_s`` postpones the answer,
    which is how slow GPS acquisition is simulated.
    """

    def __init__(self, fix: Optional[GeoFix] = None, delay_s: float = 0.0):
        super().__init__()
        self.fix = fix
        self.delay_s = delay_s
        self.requests = 0

    async def get_current_position(
        self,
        high_accuracy: bool = True,
        timeout_s: float = 10.0,
    ) -> GeoFix:
        self.requests += 1
        if self.delay_s > timeout_s:
            await asyncio.sleep(timeout_s)
            raise LocationUnavailableError("Timed out waiting for a position fix",
                                           timeout_s=timeout_s)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.fix is None:
            raise LocationUnavailableError("No position fix available")
        return self.fix


class ReportedLocationProvider(LocationProvider):
    """
    Provider fed by ``report(fix)`` calls from the host.

    A cached fix younger than ``max_age_s`` answers immediately; otherwise
    the request waits for the next report.
    """

    def __init__(self, max_age_s: float = 60.0):
        super().__init__()
        self.max_age_s = max_age_s
        self.latest: Optional[GeoFix] = None
        self._waiters: List["asyncio.Future[GeoFix]"] = []

    @property
    def pending_requests(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    def _is_fresh(self, fix: GeoFix) -> bool:
        age = (datetime.now(timezone.utc) - fix.timestamp).total_seconds()
        return age <= self.max_age_s

    async def get_current_position(
        self,
        high_accuracy: bool = True,
        timeout_s: float = 10.0,
    ) -> GeoFix:
        if self.latest is not None and self._is_fresh(self.latest):
            return self.latest

        waiter: "asyncio.Future[GeoFix]" = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout_s)
        except asyncio.TimeoutError as exc:
            raise LocationUnavailableError(
                "Timed out waiting for a position fix", timeout_s=timeout_s,
            ) from exc
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def report(self, fix: GeoFix) -> None:
        """Record a new fix, wake pending requests and notify watchers."""
        self.latest = fix
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(fix)
        self._publish(fix)
        logger.debug("Position reported: %.5f, %.5f", fix.latitude, fix.longitude)
