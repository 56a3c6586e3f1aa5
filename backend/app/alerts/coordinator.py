"""
coordinator.py — Alert lifecycle orchestration.

Ties trigger detection, location, responder lookup, dispatch and the
event log together for one emergency at a time.

═══════════════════════════════════════════════════════════════════════════
SESSION LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    IDLE ──trigger──▶ TRIGGERED ──request fix──▶ LOCATING
                                                    │
                              fix / failure / timeout
                                                    ▼
    RESOLVED ◀──report── DISPATCHING ◀──geo query── LOCATED

    any non-IDLE state ──user confirms safety──▶ SAFE

No step may be skipped. A missing fix is not fatal: the session moves to
LOCATED without a location, the service lists stay empty and dispatch
runs location-less. The event log gets exactly one entry per dispatched
session, written after the dispatch report arrives.

═══════════════════════════════════════════════════════════════════════════
COALESCING & CANCELLATION
═══════════════════════════════════════════════════════════════════════════

    trigger while active (not RESOLVED / SAFE)  → ignored, counted
    trigger after RESOLVED / SAFE               → new session

Confirming safety cancels the pending location request and the position
watch. A dispatch already in flight is shielded: it finishes in the
background and its report is dropped (no log entry, no notification).
Once the report has been accepted the log entry is written even if
safety is confirmed while it is being persisted; that session ends at
SAFE with its entry in the log and no DispatchCompleted.

═══════════════════════════════════════════════════════════════════════════
FAILURES
═══════════════════════════════════════════════════════════════════════════

An unexpected error anywhere in the pipeline is logged, then the session
is walked forward through the remaining states to RESOLVED with a failed
(empty) report and one log entry, so it never blocks later triggers.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type

from backend.app.alerts.dispatcher import NearbyServices, NotificationDispatcher
from backend.app.alerts.event_log import EventLog
from backend.app.alerts.models import (
    DispatchReport,
    EmergencyEvent,
    EmergencyKind,
    EventSource,
    GeoFix,
    Severity,
)
from backend.app.core.errors import InvalidTransitionError, LocationUnavailableError
from backend.app.core.logging_config import set_log_context
from backend.app.events.bus import AlertStateChanged, DispatchCompleted, EventBus
from backend.app.location.provider import LocationProvider, Subscription
from backend.app.spatial.geo_index import GeoIndex, RankedService, ServiceCategory
from backend.app.triggers.matcher import InboundMessage, TriggerMatcher

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# States
# ═══════════════════════════════════════════════════════════════════════════

class AlertState(str, Enum):
    IDLE        = "idle"
    TRIGGERED   = "triggered"
    LOCATING    = "locating"
    LOCATED     = "located"
    DISPATCHING = "dispatching"
    RESOLVED    = "resolved"
    SAFE        = "safe"


_TRANSITIONS: Dict[AlertState, Set[AlertState]] = {
    AlertState.IDLE:        {AlertState.TRIGGERED},
    AlertState.TRIGGERED:   {AlertState.LOCATING, AlertState.SAFE},
    AlertState.LOCATING:    {AlertState.LOCATED, AlertState.SAFE},
    AlertState.LOCATED:     {AlertState.DISPATCHING, AlertState.SAFE},
    AlertState.DISPATCHING: {AlertState.RESOLVED, AlertState.SAFE},
    AlertState.RESOLVED:    {AlertState.SAFE},
    AlertState.SAFE:        set(),
}

# A new trigger supersedes a session only once it is in one of these
SUPERSEDABLE = (AlertState.RESOLVED, AlertState.SAFE)

# Forward path of a session that is never cancelled
_PIPELINE = [
    AlertState.TRIGGERED,
    AlertState.LOCATING,
    AlertState.LOCATED,
    AlertState.DISPATCHING,
    AlertState.RESOLVED,
]


class ManualStatus(str, Enum):
    """Status buttons offered to the user."""
    HELP     = "help"
    ACCIDENT = "accident"
    SAFE     = "safe"


MANUAL_STATUS_EVENTS: Dict[ManualStatus, Tuple[EmergencyKind, Severity, str]] = {
    ManualStatus.ACCIDENT: (EmergencyKind.ACCIDENT, Severity.CRITICAL, "Accident reported"),
    ManualStatus.HELP:     (EmergencyKind.MEDICAL, Severity.HIGH, "Help needed"),
}

# Which responder category to promote in the mixed ranking
PRIORITY_CATEGORY_BY_KIND: Dict[EmergencyKind, Optional[ServiceCategory]] = {
    EmergencyKind.MEDICAL:  ServiceCategory.HOSPITAL,
    EmergencyKind.ACCIDENT: ServiceCategory.HOSPITAL,
    EmergencyKind.CRIME:    ServiceCategory.POLICE,
    EmergencyKind.FIRE:     ServiceCategory.FIRE,
    EmergencyKind.OTHER:    None,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# Session
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class AlertSession:
    """Coordination state for one emergency."""
    event: EmergencyEvent
    session_id: str = field(default_factory=lambda: f"SES-{uuid.uuid4().hex[:12].upper()}")
    state: AlertState = AlertState.IDLE
    location: Optional[GeoFix] = None
    last_known_location: Optional[GeoFix] = None
    ranked_hospitals: List[RankedService] = field(default_factory=list)
    ranked_police: List[RankedService] = field(default_factory=list)
    ranked_priority: List[RankedService] = field(default_factory=list)
    report: Optional[DispatchReport] = None
    coalesced_triggers: int = 0
    logged: bool = False
    created_at: datetime = field(default_factory=_now)
    history: List[Tuple[AlertState, datetime]] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.state not in SUPERSEDABLE

    @property
    def dispatch_succeeded(self) -> Optional[bool]:
        return self.report.succeeded if self.report is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "event": self.event.to_dict(),
            "location": self.location.to_dict() if self.location else None,
            "last_known_location": (
                self.last_known_location.to_dict() if self.last_known_location else None
            ),
            "ranked_hospitals": [r.to_dict() for r in self.ranked_hospitals],
            "ranked_police": [r.to_dict() for r in self.ranked_police],
            "ranked_priority": [r.to_dict() for r in self.ranked_priority],
            "report": self.report.to_dict() if self.report else None,
            "dispatch_succeeded": self.dispatch_succeeded,
            "coalesced_triggers": self.coalesced_triggers,
            "created_at": self.created_at.isoformat(),
            "history": [
                {"state": state.value, "at": at.isoformat()}
                for state, at in self.history
            ],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════════════

class AlertCoordinator:
    """
    Owns the single active AlertSession and drives it through its states.

    All collaborators are injected; the coordinator holds no global state.
    """

    def __init__(
        self,
        *,
        geo_index: GeoIndex,
        matcher: TriggerMatcher,
        dispatcher: NotificationDispatcher,
        event_log: EventLog,
        location_provider: LocationProvider,
        bus: Optional[EventBus] = None,
        nearest_k: int = 3,
        location_timeout_s: float = 10.0,
        high_accuracy: bool = True,
        priority_weight: float = 1 / 1.5,
    ):
        self.geo_index = geo_index
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.event_log = event_log
        self.location_provider = location_provider
        self.bus = bus or EventBus()
        self.nearest_k = nearest_k
        self.location_timeout_s = location_timeout_s
        self.high_accuracy = high_accuracy
        self.priority_weight = priority_weight

        self._session: Optional[AlertSession] = None
        self._task: Optional["asyncio.Task[None]"] = None
        self._watch: Optional[Subscription] = None
        self._background: Set["asyncio.Future[Any]"] = set()

    # ── Observers ──

    @property
    def active_session(self) -> Optional[AlertSession]:
        return self._session

    def subscribe(
        self,
        callback: Callable[[Any], Any],
        message_type: Optional[Type[Any]] = None,
    ) -> Callable[[], None]:
        return self.bus.subscribe(callback, message_type)

    # ── State machine ──

    def _advance(self, session: AlertSession, new_state: AlertState) -> None:
        previous = session.state
        if new_state not in _TRANSITIONS[previous]:
            raise InvalidTransitionError(previous.value, new_state.value)
        session.state = new_state
        session.history.append((new_state, _now()))
        logger.info(
            "Alert session %s: %s → %s",
            session.session_id, previous.value, new_state.value,
            extra={"session_id": session.session_id, "state": new_state.value},
        )
        self.bus.publish(AlertStateChanged(session, previous, new_state))

    # ── Entry points ──

    async def handle_inbound_message(
        self,
        sender: str,
        body: str,
        message_id: Optional[str] = None,
    ) -> Optional[AlertSession]:
        """Evaluate an inbound message; trigger when it is an emergency."""
        message = self.matcher.classify(InboundMessage(sender=sender, body=body, id=message_id))
        if not message.is_emergency:
            return None
        event = EmergencyEvent(
            kind=EmergencyKind.ACCIDENT,
            message=body,
            source=EventSource.MESSAGE,
            severity=Severity.CRITICAL,
            metadata={"sender": sender, "message_id": message_id},
        )
        return await self.trigger(event)

    async def report_status(
        self,
        status: ManualStatus,
        message: Optional[str] = None,
    ) -> Optional[AlertSession]:
        """Apply a manual status button press."""
        if status == ManualStatus.SAFE:
            return await self.confirm_safe()
        kind, severity, default_message = MANUAL_STATUS_EVENTS[status]
        event = EmergencyEvent(
            kind=kind,
            message=message or default_message,
            source=EventSource.MANUAL,
            severity=severity,
        )
        return await self.trigger(event)

    async def trigger(self, event: EmergencyEvent) -> AlertSession:
        """
        Start a session for an event, or coalesce into the active one.

        Returns the session now responsible for the emergency.
        """
        current = self._session
        if current is not None and current.is_active:
            current.coalesced_triggers += 1
            logger.info(
                "Trigger for event %s coalesced into active session %s (%s)",
                event.id, current.session_id, current.state.value,
                extra={"session_id": current.session_id},
            )
            return current

        if current is not None:
            self._stop_watch()

        session = AlertSession(event=event)
        self._session = session
        self._advance(session, AlertState.TRIGGERED)
        self._task = asyncio.create_task(self._run(session))
        self._task.add_done_callback(self._task_done)
        return session

    async def confirm_safe(self) -> Optional[AlertSession]:
        """User confirmed safety: end the active session at SAFE."""
        session = self._session
        if session is None or session.state in (AlertState.IDLE, AlertState.SAFE):
            return session

        self._advance(session, AlertState.SAFE)
        self._stop_watch()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return session

    async def join(self) -> None:
        """Wait until the active session's pipeline has stopped."""
        task = self._task
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def send_test_alert(self, location: Optional[GeoFix] = None) -> DispatchReport:
        """Dispatch a medium-severity test event outside any session."""
        event = EmergencyEvent(
            kind=EmergencyKind.ACCIDENT,
            message="This is a test emergency alert",
            source=EventSource.MANUAL,
            severity=Severity.MEDIUM,
            location=location,
            metadata={"test": True},
        )
        report = await self.dispatcher.dispatch(event)
        await self.event_log.append(event, report)
        self.bus.publish(DispatchCompleted(None, report))
        return report

    async def shutdown(self) -> None:
        """Stop tracking and let shielded dispatches finish."""
        self._stop_watch()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await self.join()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Pipeline ──

    async def _run(self, session: AlertSession) -> None:
        set_log_context(session_id=session.session_id, event_id=session.event.id)
        try:
            await self._pipeline(session)
        except asyncio.CancelledError:
            logger.info(
                "Alert session %s pipeline cancelled in %s",
                session.session_id, session.state.value,
                extra={"session_id": session.session_id},
            )
            raise
        except Exception:
            logger.exception(
                "Alert session %s pipeline failed in %s; closing it out",
                session.session_id, session.state.value,
                extra={"session_id": session.session_id},
            )
            await self._close_out(session)

    async def _pipeline(self, session: AlertSession) -> None:
        self._advance(session, AlertState.LOCATING)
        self._start_watch(session)
        fix = await self._locate(session)

        if fix is not None:
            session.location = fix
            session.last_known_location = fix
            session.event = session.event.with_location(fix)
        self._advance(session, AlertState.LOCATED)

        nearby = self._resolve_services(session)
        self._advance(session, AlertState.DISPATCHING)

        dispatch = asyncio.ensure_future(
            self.dispatcher.dispatch(session.event, nearby=nearby)
        )
        self._keep(dispatch)
        report = await asyncio.shield(dispatch)

        if session.state is AlertState.SAFE:
            return
        session.report = report
        await self._record(session)

        if session.state is AlertState.DISPATCHING:
            self._advance(session, AlertState.RESOLVED)
        self.bus.publish(DispatchCompleted(session.session_id, report))

    async def _record(self, session: AlertSession) -> None:
        # Shielded: a Safe confirmation while persisting keeps the entry
        session.logged = True
        await asyncio.shield(self._keep(asyncio.ensure_future(
            self.event_log.append(
                session.event, session.report, session_id=session.session_id,
            )
        )))

    async def _close_out(self, session: AlertSession) -> None:
        """Walk a failed session forward to RESOLVED with a failed report."""
        if session.state is AlertState.SAFE:
            return
        remaining = _PIPELINE[_PIPELINE.index(session.state) + 1:]
        for state in remaining:
            self._advance(session, state)
        if session.report is None:
            session.report = DispatchReport(event_id=session.event.id)
        if not session.logged:
            await self._record(session)
        self.bus.publish(DispatchCompleted(session.session_id, session.report))

    def _task_done(self, task: "asyncio.Task[None]") -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Alert pipeline task failed: %r", task.exception())

    def _keep(self, future: "asyncio.Future[Any]") -> "asyncio.Future[Any]":
        self._background.add(future)
        future.add_done_callback(self._background.discard)
        return future

    async def _locate(self, session: AlertSession) -> Optional[GeoFix]:
        try:
            return await asyncio.wait_for(
                self.location_provider.get_current_position(
                    self.high_accuracy, self.location_timeout_s,
                ),
                self.location_timeout_s,
            )
        except (asyncio.TimeoutError, LocationUnavailableError) as exc:
            logger.warning(
                "No position fix for session %s (%s); continuing without location",
                session.session_id, str(exc) or "timed out",
                extra={"session_id": session.session_id},
            )
            return None
        except Exception:
            logger.exception(
                "Location provider failed for session %s; continuing without location",
                session.session_id,
                extra={"session_id": session.session_id},
            )
            return None

    def _start_watch(self, session: AlertSession) -> None:
        def on_fix(fix: GeoFix) -> None:
            session.last_known_location = fix

        self._stop_watch()
        self._watch = self.location_provider.watch_position(on_fix, self.high_accuracy)

    def _stop_watch(self) -> None:
        if self._watch is not None:
            self.location_provider.cancel(self._watch)
            self._watch = None

    def _resolve_services(self, session: AlertSession) -> NearbyServices:
        if session.location is None:
            return {}

        origin = session.location.coordinate
        k = self.nearest_k
        session.ranked_hospitals = self.geo_index.nearest(origin, ServiceCategory.HOSPITAL, k)
        session.ranked_police = self.geo_index.nearest(origin, ServiceCategory.POLICE, k)

        priority = PRIORITY_CATEGORY_BY_KIND.get(session.event.kind)
        if priority is not None:
            session.ranked_priority = self.geo_index.weighted_nearest(
                origin, None, k, priority, priority_weight=self.priority_weight,
            )

        nearby: NearbyServices = {
            "hospitals": session.ranked_hospitals,
            "police": session.ranked_police,
        }
        if session.ranked_priority:
            nearby["priority"] = session.ranked_priority
        return nearby
