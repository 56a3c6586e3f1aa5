"""
test_coordinator.py — Tests for the alert session state machine.

Covers:
    • End-to-end trigger → Resolved with responder lookup and one log entry
    • Degraded location (failure, timeout) still reaching Resolved
    • Safety confirmation while Locating / Dispatching / after Resolved
    • Coalescing of triggers during an active session
    • Message and manual-status entry points, test alerts
    • Observer notifications and position tracking
    • Recovery from store, provider and dispatcher failures

Run with:
    pytest tests/test_coordinator.py -v
"""

from __future__ import annotations

import asyncio
from typing import Any, List

import pytest

from backend.app.alerts.channels.base import NotificationChannel
from backend.app.alerts.channels.contact_sms import SimulatedSmsGateway
from backend.app.alerts.contacts import ContactBook
from backend.app.alerts.coordinator import (
    AlertCoordinator,
    AlertSession,
    AlertState,
    ManualStatus,
)
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.event_log import EventLog
from backend.app.alerts.models import (
    ChannelKind,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyEvent,
    EmergencyKind,
    EventSource,
    GeoFix,
    Severity,
)
from backend.app.core.errors import InvalidTransitionError
from backend.app.events.bus import AlertStateChanged, DispatchCompleted
from backend.app.location.provider import (
    LocationProvider,
    ReportedLocationProvider,
    StaticLocationProvider,
)
from backend.app.spatial.geo_index import GeoIndex
from backend.app.spatial.registry import DEFAULT_SERVICES
from backend.app.storage.store import MemoryStore
from backend.app.triggers.matcher import TriggerMatcher


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

FIX = GeoFix(16.31, 80.44, 10.0)

FULL_PATH = [
    AlertState.TRIGGERED,
    AlertState.LOCATING,
    AlertState.LOCATED,
    AlertState.DISPATCHING,
    AlertState.RESOLVED,
]


class _PrimaryChannel(NotificationChannel):
    """Primary endpoint stub; optionally held open until released."""

    kind = ChannelKind.PRIMARY_API

    def __init__(self, delivered: bool = True, gated: bool = False):
        super().__init__("primary_api")
        self.delivered = delivered
        self.gate = asyncio.Event() if gated else None
        self.payloads: List[dict] = []
        self.finished = False

    async def send(self, payload):
        self.payloads.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        self.finished = True
        status = DeliveryStatus.DELIVERED if self.delivered else DeliveryStatus.FAILED
        return DeliveryAttempt(self.name, self.kind, status=status)


class _UnreachableStore(MemoryStore):
    """Store whose writes fail, like Redis going away mid-session."""

    async def set(self, key, value):
        raise ConnectionError("redis down")


class _GatedStore(MemoryStore):
    """Store whose writes block until released."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def set(self, key, value):
        self.entered.set()
        await self.gate.wait()
        await super().set(key, value)


class _BrokenGpsProvider(LocationProvider):
    async def get_current_position(self, high_accuracy=True, timeout_s=10.0):
        raise OSError("gps hardware error")


async def _make_coordinator(
    provider: LocationProvider = None,
    primary: NotificationChannel = None,
    event_log: EventLog = None,
    **kwargs: Any,
) -> AlertCoordinator:
    contacts = ContactBook(MemoryStore())
    await contacts.load()
    dispatcher = NotificationDispatcher(
        primary=primary or _PrimaryChannel(),
        contact_channel=SimulatedSmsGateway(),
        contacts=contacts,
    )
    return AlertCoordinator(
        geo_index=GeoIndex(DEFAULT_SERVICES),
        matcher=TriggerMatcher(),
        dispatcher=dispatcher,
        event_log=event_log if event_log is not None else EventLog(),
        location_provider=provider or StaticLocationProvider(FIX),
        **kwargs,
    )


def _make_event(kind: EmergencyKind = EmergencyKind.ACCIDENT) -> EmergencyEvent:
    return EmergencyEvent(
        kind=kind,
        message="Crash on NH16",
        source=EventSource.AUTOMATIC,
        severity=Severity.CRITICAL,
    )


async def _wait_for_state(session: AlertSession, state: AlertState, limit: int = 500) -> None:
    for _ in range(limit):
        if session.state is state:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"session stuck in {session.state}, expected {state}")


def _states(session: AlertSession) -> List[AlertState]:
    return [state for state, _ in session.history]


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Happy Path
# ═══════════════════════════════════════════════════════════════════════════

class TestEndToEnd:

    def test_trigger_reaches_resolved_with_responders(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert _states(session) == FULL_PATH
        assert [r.service.id for r in session.ranked_hospitals] == ["h2", "h3", "h4"]
        assert len(session.ranked_police) == 3
        distances = [r.distance_km for r in session.ranked_hospitals]
        assert distances == sorted(distances)
        assert len(coordinator.event_log) == 1
        assert session.dispatch_succeeded is True

    def test_event_carries_location_and_logged_once(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        (entry,) = coordinator.event_log.recent()
        assert entry.event.id == session.event.id
        assert entry.event.location == FIX
        assert entry.session_id == session.session_id
        assert entry.dispatch_succeeded is True

    def test_remote_payload_lists_nearby_services(self):
        primary = _PrimaryChannel()

        async def scenario():
            coordinator = await _make_coordinator(primary=primary)
            await coordinator.trigger(_make_event())
            await coordinator.join()

        asyncio.run(scenario())
        (payload,) = primary.payloads
        assert set(payload["nearby_services"]) == {"hospitals", "police", "priority"}
        assert payload["nearby_services"]["hospitals"][0]["id"] == "h2"

    def test_priority_ranking_follows_event_kind(self):
        async def scenario():
            coordinator = await _make_coordinator()
            accident = await coordinator.trigger(_make_event(EmergencyKind.ACCIDENT))
            await coordinator.join()
            crime = await coordinator.trigger(_make_event(EmergencyKind.CRIME))
            await coordinator.join()
            other = await coordinator.trigger(_make_event(EmergencyKind.OTHER))
            await coordinator.join()
            return accident, crime, other

        accident, crime, other = asyncio.run(scenario())
        # h2 and p5 share coordinates; the prioritized category wins
        assert accident.ranked_priority[0].service.id == "h2"
        assert crime.ranked_priority[0].service.id == "p5"
        assert other.ranked_priority == []

    def test_total_dispatch_failure_still_resolves(self):
        async def scenario():
            coordinator = await _make_coordinator(primary=_PrimaryChannel(delivered=False))
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert session.dispatch_succeeded is False
        assert coordinator.event_log.recent()[0].dispatch_succeeded is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Degraded Location
# ═══════════════════════════════════════════════════════════════════════════

class TestDegradedLocation:

    def test_location_failure_dispatches_without_location(self):
        async def scenario():
            coordinator = await _make_coordinator(provider=StaticLocationProvider(None))
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert _states(session) == FULL_PATH
        assert session.location is None
        assert session.ranked_hospitals == []
        assert session.ranked_police == []
        assert len(coordinator.event_log) == 1

    def test_location_timeout(self):
        provider = ReportedLocationProvider()

        async def scenario():
            coordinator = await _make_coordinator(provider=provider, location_timeout_s=0.05)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert session.location is None
        assert provider.pending_requests == 0

    def test_slow_static_provider_times_out(self):
        provider = StaticLocationProvider(FIX, delay_s=5.0)

        async def scenario():
            coordinator = await _make_coordinator(provider=provider, location_timeout_s=0.05)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert session.location is None
        assert provider.requests == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Safety Confirmation & Cancellation
# ═══════════════════════════════════════════════════════════════════════════

class TestConfirmSafe:

    def test_safe_while_locating(self):
        provider = ReportedLocationProvider()
        primary = _PrimaryChannel()

        async def scenario():
            coordinator = await _make_coordinator(provider=provider, primary=primary)
            session = await coordinator.trigger(_make_event())
            await _wait_for_state(session, AlertState.LOCATING)
            assert provider.active_watches == 1
            await coordinator.confirm_safe()
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.SAFE
        assert _states(session) == [AlertState.TRIGGERED, AlertState.LOCATING, AlertState.SAFE]
        assert len(coordinator.event_log) == 0
        assert primary.payloads == []
        assert provider.pending_requests == 0
        assert provider.active_watches == 0

    def test_safe_while_dispatching_discards_result(self):
        async def scenario():
            primary = _PrimaryChannel(gated=True)
            coordinator = await _make_coordinator(primary=primary)
            session = await coordinator.trigger(_make_event())
            await _wait_for_state(session, AlertState.DISPATCHING)
            await coordinator.confirm_safe()
            primary.gate.set()
            await coordinator.shutdown()
            return coordinator, session, primary

        coordinator, session, primary = asyncio.run(scenario())
        assert primary.finished is True
        assert session.state is AlertState.SAFE
        assert session.report is None
        assert len(coordinator.event_log) == 0

    def test_safe_after_resolved_stops_tracking(self):
        provider = StaticLocationProvider(FIX)

        async def scenario():
            coordinator = await _make_coordinator(provider=provider)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            watches_while_resolved = provider.active_watches
            await coordinator.confirm_safe()
            return coordinator, session, watches_while_resolved

        coordinator, session, watches = asyncio.run(scenario())
        assert watches == 1
        assert provider.active_watches == 0
        assert session.state is AlertState.SAFE
        assert len(coordinator.event_log) == 1

    def test_safe_without_session_is_noop(self):
        async def scenario():
            coordinator = await _make_coordinator()
            return await coordinator.confirm_safe(), coordinator

        result, coordinator = asyncio.run(scenario())
        assert result is None
        assert coordinator.active_session is None

    def test_safe_twice(self):
        async def scenario():
            coordinator = await _make_coordinator(provider=ReportedLocationProvider())
            session = await coordinator.trigger(_make_event())
            await coordinator.confirm_safe()
            await coordinator.confirm_safe()
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert _states(session).count(AlertState.SAFE) == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Coalescing
# ═══════════════════════════════════════════════════════════════════════════

class TestCoalescing:

    def test_trigger_during_active_session_is_coalesced(self):
        async def scenario():
            coordinator = await _make_coordinator()
            first = await coordinator.trigger(_make_event())
            second = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, first, second

        coordinator, first, second = asyncio.run(scenario())
        assert second is first
        assert first.coalesced_triggers == 1
        assert len(coordinator.event_log) == 1

    def test_trigger_after_resolved_starts_new_session(self):
        async def scenario():
            coordinator = await _make_coordinator()
            first = await coordinator.trigger(_make_event())
            await coordinator.join()
            second = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, first, second

        coordinator, first, second = asyncio.run(scenario())
        assert second is not first
        assert second.session_id != first.session_id
        assert second.state is AlertState.RESOLVED
        assert len(coordinator.event_log) == 2

    def test_new_session_replaces_tracking(self):
        provider = StaticLocationProvider(FIX)

        async def scenario():
            coordinator = await _make_coordinator(provider=provider)
            await coordinator.trigger(_make_event())
            await coordinator.join()
            await coordinator.trigger(_make_event())
            await coordinator.join()

        asyncio.run(scenario())
        assert provider.active_watches == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Entry Points
# ═══════════════════════════════════════════════════════════════════════════

class TestEntryPoints:

    def test_matching_message_triggers_accident(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = await coordinator.handle_inbound_message("112", "SOS crash at Ring Road", "m-1")
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        event = session.event
        assert event.kind is EmergencyKind.ACCIDENT
        assert event.severity is Severity.CRITICAL
        assert event.source is EventSource.MESSAGE
        assert event.message == "SOS crash at Ring Road"
        assert event.metadata == {"sender": "112", "message_id": "m-1"}

    def test_non_matching_message_ignored(self):
        async def scenario():
            coordinator = await _make_coordinator()
            return await coordinator.handle_inbound_message("555-1234", "let's grab lunch"), coordinator

        session, coordinator = asyncio.run(scenario())
        assert session is None
        assert coordinator.active_session is None

    @pytest.mark.parametrize("status, kind, severity", [
        (ManualStatus.ACCIDENT, EmergencyKind.ACCIDENT, Severity.CRITICAL),
        (ManualStatus.HELP, EmergencyKind.MEDICAL, Severity.HIGH),
    ])
    def test_manual_status(self, status, kind, severity):
        async def scenario():
            coordinator = await _make_coordinator()
            session = await coordinator.report_status(status)
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert session.event.kind is kind
        assert session.event.severity is severity
        assert session.event.source is EventSource.MANUAL

    def test_manual_safe_ends_session(self):
        async def scenario():
            coordinator = await _make_coordinator(provider=ReportedLocationProvider())
            session = await coordinator.report_status(ManualStatus.HELP, "Chest pain")
            await coordinator.report_status(ManualStatus.SAFE)
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert session.event.message == "Chest pain"
        assert session.state is AlertState.SAFE

    def test_test_alert_outside_session(self):
        async def scenario():
            coordinator = await _make_coordinator()
            report = await coordinator.send_test_alert()
            return coordinator, report

        coordinator, report = asyncio.run(scenario())
        assert report.succeeded is True
        assert coordinator.active_session is None
        (entry,) = coordinator.event_log.recent()
        assert entry.event.severity is Severity.MEDIUM
        assert entry.event.kind is EmergencyKind.ACCIDENT
        assert entry.session_id is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: State Machine & Observers
# ═══════════════════════════════════════════════════════════════════════════

class TestStateMachine:

    def test_skipping_a_step_is_rejected(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = AlertSession(event=_make_event())
            coordinator._advance(session, AlertState.TRIGGERED)
            coordinator._advance(session, AlertState.RESOLVED)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_safe_is_terminal(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = AlertSession(event=_make_event(), state=AlertState.SAFE)
            coordinator._advance(session, AlertState.TRIGGERED)

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_session_snapshot(self):
        async def scenario():
            coordinator = await _make_coordinator()
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return session.to_dict()

        snapshot = asyncio.run(scenario())
        assert snapshot["state"] == "resolved"
        assert [h["state"] for h in snapshot["history"]] == [s.value for s in FULL_PATH]
        assert snapshot["report"]["succeeded"] is True
        assert len(snapshot["ranked_hospitals"]) == 3


class TestObservers:

    def test_state_changes_and_completion_published(self):
        changes: List[AlertStateChanged] = []
        completions: List[DispatchCompleted] = []

        async def scenario():
            coordinator = await _make_coordinator()
            coordinator.subscribe(changes.append, AlertStateChanged)
            coordinator.subscribe(completions.append, DispatchCompleted)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return session

        session = asyncio.run(scenario())
        assert [c.state for c in changes] == FULL_PATH
        assert changes[0].previous is AlertState.IDLE
        assert len(completions) == 1
        assert completions[0].session_id == session.session_id

    def test_failing_subscriber_does_not_break_flow(self):
        def broken(message):
            raise RuntimeError("ui crashed")

        async def scenario():
            coordinator = await _make_coordinator()
            coordinator.subscribe(broken)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return session

        assert asyncio.run(scenario()).state is AlertState.RESOLVED

    def test_unsubscribe(self):
        seen: List[Any] = []

        async def scenario():
            coordinator = await _make_coordinator()
            unsubscribe = coordinator.subscribe(seen.append)
            unsubscribe()
            await coordinator.trigger(_make_event())
            await coordinator.join()

        asyncio.run(scenario())
        assert seen == []


class TestTracking:

    def test_reported_positions_update_last_known_location(self):
        provider = ReportedLocationProvider()
        here = GeoFix(16.31, 80.44, 10.0)
        moved = GeoFix(16.32, 80.45, 5.0)

        async def scenario():
            provider.report(here)
            coordinator = await _make_coordinator(provider=provider)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            provider.report(moved)
            return session

        session = asyncio.run(scenario())
        assert session.location == here
        assert session.last_known_location == moved


# ═══════════════════════════════════════════════════════════════════════════
# Section 7: Failure Recovery
# ═══════════════════════════════════════════════════════════════════════════

class TestFailureRecovery:

    def test_unreachable_log_store_still_resolves(self):
        async def scenario():
            coordinator = await _make_coordinator(event_log=EventLog(store=_UnreachableStore()))
            first = await coordinator.trigger(_make_event())
            await coordinator.join()
            second = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, first, second

        coordinator, first, second = asyncio.run(scenario())
        assert first.state is AlertState.RESOLVED
        assert second is not first
        assert second.state is AlertState.RESOLVED
        assert first.coalesced_triggers == 0
        assert len(coordinator.event_log) == 2

    def test_provider_error_degrades_to_no_location(self):
        async def scenario():
            coordinator = await _make_coordinator(provider=_BrokenGpsProvider())
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert _states(session) == FULL_PATH
        assert session.location is None
        assert session.ranked_hospitals == []
        assert len(coordinator.event_log) == 1

    def test_unexpected_dispatch_error_closes_out_session(self):
        completions: List[DispatchCompleted] = []

        async def broken_dispatch(event, *, nearby=None):
            raise RuntimeError("dispatcher bug")

        async def scenario():
            coordinator = await _make_coordinator()
            coordinator.dispatcher.dispatch = broken_dispatch
            coordinator.subscribe(completions.append, DispatchCompleted)
            session = await coordinator.trigger(_make_event())
            await coordinator.join()
            return coordinator, session

        coordinator, session = asyncio.run(scenario())
        assert session.state is AlertState.RESOLVED
        assert _states(session) == FULL_PATH
        assert session.dispatch_succeeded is False
        (entry,) = coordinator.event_log.recent()
        assert entry.dispatch_succeeded is False
        assert entry.session_id == session.session_id
        assert len(completions) == 1

    def test_failed_pipeline_task_is_logged(self, caplog):
        async def broken_dispatch(event, *, nearby=None):
            raise RuntimeError("dispatcher bug")

        async def broken_append(event, report=None, *, session_id=None):
            raise RuntimeError("log bug")

        async def scenario():
            coordinator = await _make_coordinator()
            coordinator.dispatcher.dispatch = broken_dispatch
            coordinator.event_log.append = broken_append
            await coordinator.trigger(_make_event())
            await asyncio.wait([coordinator._task])
            await asyncio.sleep(0)

        with caplog.at_level("ERROR", logger="backend.app.alerts.coordinator"):
            asyncio.run(scenario())
        assert any("Alert pipeline task failed" in r.getMessage() for r in caplog.records)

    def test_safe_while_persisting_keeps_entry(self):
        completions: List[DispatchCompleted] = []

        async def scenario():
            store = _GatedStore()
            coordinator = await _make_coordinator(event_log=EventLog(store=store))
            coordinator.subscribe(completions.append, DispatchCompleted)
            session = await coordinator.trigger(_make_event())
            await store.entered.wait()
            await coordinator.confirm_safe()
            store.gate.set()
            await coordinator.shutdown()
            return coordinator, session, store

        coordinator, session, store = asyncio.run(scenario())
        assert session.state is AlertState.SAFE
        assert AlertState.RESOLVED not in _states(session)
        assert len(coordinator.event_log) == 1
        assert asyncio.run(store.get("emergency_events")) is not None
        assert completions == []
