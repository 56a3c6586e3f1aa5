"""
test_dispatcher.py — Tests for notification channels and the dispatch flow.

Covers:
    • Contact message template
    • Remote endpoint over httpx (MockTransport), simulation mode
    • Simulated SMS gateway, push and banner channels
    • Dispatcher ordering: primary → fallbacks → contacts → push → banner
    • Success semantics and per-channel failure isolation

Run with:
    pytest tests/test_dispatcher.py -v
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx
import pytest

from backend.app.alerts.channels.banner import BannerChannel
from backend.app.alerts.channels.base import ContactChannel, NotificationChannel
from backend.app.alerts.channels.contact_sms import (
    SimulatedSmsGateway,
    format_contact_message,
)
from backend.app.alerts.channels.push import PushChannel
from backend.app.alerts.channels.remote_api import RemoteAlertEndpoint
from backend.app.alerts.contacts import ContactBook
from backend.app.alerts.dispatcher import NotificationDispatcher, build_remote_payload
from backend.app.alerts.models import (
    ChannelKind,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyContact,
    EmergencyEvent,
    EmergencyKind,
    EventSource,
    GeoFix,
    Severity,
)
from backend.app.core.errors import ChannelSendError
from backend.app.spatial.geo_index import Coordinate, GeoIndex, ServiceCategory
from backend.app.spatial.registry import DEFAULT_SERVICES
from backend.app.storage.store import MemoryStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

FIXED_TIME = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


def _make_event(location=None) -> EmergencyEvent:
    return EmergencyEvent(
        kind=EmergencyKind.ACCIDENT,
        message="Crash near Brodipet",
        source=EventSource.MANUAL,
        severity=Severity.CRITICAL,
        created_at=FIXED_TIME,
        location=location,
    )


class _StubChannel(NotificationChannel):
    """Remote channel with a scripted outcome."""

    def __init__(self, name: str, kind: ChannelKind, outcome: str = "ok", log=None):
        super().__init__(name)
        self.kind = kind
        self.outcome = outcome
        self.payloads: List[Dict[str, Any]] = []
        self.log = log if log is not None else []
        self.closed = False

    async def send(self, payload):
        self.payloads.append(payload)
        self.log.append(self.name)
        if self.outcome == "raise":
            raise RuntimeError("socket closed")
        status = DeliveryStatus.DELIVERED if self.outcome == "ok" else DeliveryStatus.FAILED
        return DeliveryAttempt(self.name, self.kind, status=status)

    async def close(self):
        self.closed = True


class _RecordingContactChannel(ContactChannel):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[tuple] = []

    async def send_to(self, contact, text):
        self.sent.append((contact.phone, text))
        if self.fail:
            raise ChannelSendError(self.name, "carrier rejected message")
        return DeliveryAttempt(self.name, ChannelKind.CONTACT,
                               status=DeliveryStatus.DELIVERED, target=contact.phone)


def _make_book(*contacts: EmergencyContact) -> ContactBook:
    book = ContactBook(MemoryStore())
    asyncio.run(book.load())
    for contact in contacts:
        asyncio.run(book.add(contact))
    return book


def _make_dispatcher(primary=None, fallbacks=(), contact_channel=None, book=None, **kwargs):
    return NotificationDispatcher(
        primary=primary,
        fallbacks=fallbacks,
        contact_channel=contact_channel or _RecordingContactChannel(),
        contacts=book or _make_book(),
        **kwargs,
    )


def _mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Contact Message Template
# ═══════════════════════════════════════════════════════════════════════════

class TestContactMessage:

    def test_with_location(self):
        event = _make_event(GeoFix(16.31, 80.44))
        text = format_contact_message(event, EmergencyContact("Asha", "+91981"))
        assert text.splitlines() == [
            "EMERGENCY ALERT",
            "To: Asha",
            "Type: ACCIDENT",
            "Location: 16.31, 80.44",
            "Map: https://maps.google.com/?q=16.31,80.44",
            "Time: 2026-03-01T09:30:00+00:00",
            "Message: Crash near Brodipet",
            "Please respond immediately!",
        ]

    def test_without_location(self):
        text = format_contact_message(_make_event(), EmergencyContact("Asha", "+91981"))
        assert "Location: unavailable" in text
        assert "Map:" not in text

    def test_custom_map_template(self):
        event = _make_event(GeoFix(1.5, 2.5))
        text = format_contact_message(event, EmergencyContact("A", "1"), "geo:{lat},{lon}")
        assert "Map: geo:1.5,2.5" in text

    def test_deterministic(self):
        event = _make_event(GeoFix(16.31, 80.44))
        contact = EmergencyContact("Asha", "+91981")
        assert format_contact_message(event, contact) == format_contact_message(event, contact)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Channels
# ═══════════════════════════════════════════════════════════════════════════

class TestRemoteAlertEndpoint:

    def test_simulation_mode_without_url(self):
        attempt = asyncio.run(RemoteAlertEndpoint("primary_api", None).send({"id": 1}))
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.provider_response == {"mode": "simulated"}

    def test_posts_json_with_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        async def scenario():
            client = _mock_client(handler)
            endpoint = RemoteAlertEndpoint(
                "primary_api", "https://alerts.example/api", api_key="k-1", client=client,
            )
            attempt = await endpoint.send({"id": 7, "type": "accident"})
            await client.aclose()
            return attempt

        attempt = asyncio.run(scenario())
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.target == "https://alerts.example/api"
        assert seen == {"auth": "Bearer k-1", "body": {"id": 7, "type": "accident"}}

    def test_http_error_status_fails(self):
        async def scenario():
            client = _mock_client(lambda request: httpx.Response(503))
            attempt = await RemoteAlertEndpoint("p", "https://x.example", client=client).send({})
            await client.aclose()
            return attempt

        attempt = asyncio.run(scenario())
        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.error_message == "HTTP 503"

    def test_transport_error_fails(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            client = _mock_client(handler)
            attempt = await RemoteAlertEndpoint("p", "https://x.example", client=client).send({})
            await client.aclose()
            return attempt

        attempt = asyncio.run(scenario())
        assert attempt.status == DeliveryStatus.FAILED
        assert "ConnectError" in attempt.error_message

    def test_shared_client_not_closed(self):
        async def scenario():
            client = _mock_client(lambda request: httpx.Response(200))
            endpoint = RemoteAlertEndpoint("p", "https://x.example", client=client)
            await endpoint.close()
            closed = client.is_closed
            await client.aclose()
            return closed

        assert asyncio.run(scenario()) is False


class TestSimulatedSmsGateway:

    def test_delivers(self):
        attempt = asyncio.run(
            SimulatedSmsGateway().send_to(EmergencyContact("A", "+91981"), "EMERGENCY ALERT")
        )
        assert attempt.status == DeliveryStatus.DELIVERED
        assert attempt.target == "+91981"
        assert attempt.provider_response["message_length"] == len("EMERGENCY ALERT")

    def test_missing_phone_raises(self):
        with pytest.raises(ChannelSendError) as exc_info:
            asyncio.run(SimulatedSmsGateway().send_to(EmergencyContact("A", ""), "x"))
        assert exc_info.value.channel == "contact_sms"
        assert exc_info.value.error_code == "CHANNEL_SEND_ERROR"


class TestLocalChannels:

    def test_skipped_without_notifier(self):
        attempt = asyncio.run(PushChannel().send({"type": "accident"}))
        assert attempt.status == DeliveryStatus.SKIPPED
        assert attempt.succeeded is True

    def test_push_message_shape(self):
        received = []
        attempt = asyncio.run(PushChannel(received.append).send({"type": "accident"}))
        assert attempt.status == DeliveryStatus.DELIVERED
        assert received == [{"type": "EMERGENCY_PUSH", "data": {"type": "accident"}}]

    def test_banner_with_async_notifier(self):
        received = []

        async def notifier(message):
            received.append(message)

        asyncio.run(BannerChannel(notifier).send({"type": "medical", "message": "Help needed"}))
        assert received[0]["title"] == "EMERGENCY ALERT"
        assert received[0]["body"] == "MEDICAL: Help needed"
        assert received[0]["require_interaction"] is True

    def test_notifier_failure(self):
        def notifier(message):
            raise RuntimeError("no display")

        attempt = asyncio.run(BannerChannel(notifier).send({}))
        assert attempt.status == DeliveryStatus.FAILED
        assert attempt.error_message == "no display"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Remote Payload
# ═══════════════════════════════════════════════════════════════════════════

class TestRemotePayload:

    def test_event_fields(self):
        payload = build_remote_payload(_make_event(GeoFix(16.31, 80.44)))
        assert payload["type"] == "accident"
        assert payload["severity"] == "critical"
        assert payload["location"]["latitude"] == 16.31
        assert "device" not in payload

    def test_device_and_nearby_services(self):
        index = GeoIndex(DEFAULT_SERVICES)
        nearby = {"hospitals": index.nearest(Coordinate(16.31, 80.44), ServiceCategory.HOSPITAL, 2)}
        payload = build_remote_payload(_make_event(), nearby=nearby, device={"app": "ser"})
        assert payload["device"] == {"app": "ser"}
        assert [s["id"] for s in payload["nearby_services"]["hospitals"]] == ["h2", "h3"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Dispatch Flow
# ═══════════════════════════════════════════════════════════════════════════

class TestDispatchSuccess:

    def test_primary_success_despite_contact_failures(self):
        contacts = _RecordingContactChannel(fail=True)
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API),
            contact_channel=contacts,
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert report.succeeded is True
        contact_attempts = report.by_kind(ChannelKind.CONTACT)
        assert len(contact_attempts) == 2
        assert all(a.status == DeliveryStatus.FAILED for a in contact_attempts)
        assert "carrier rejected message" in contact_attempts[0].error_message

    def test_primary_success_skips_fallbacks(self):
        fallback = _StubChannel("fb", ChannelKind.FALLBACK_PROVIDER)
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API),
            fallbacks=[fallback],
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert fallback.payloads == []
        assert report.by_kind(ChannelKind.FALLBACK_PROVIDER) == []

    def test_fallbacks_in_order_stop_at_first_success(self):
        order: List[str] = []
        fallbacks = [
            _StubChannel("fb1", ChannelKind.FALLBACK_PROVIDER, "fail", order),
            _StubChannel("fb2", ChannelKind.FALLBACK_PROVIDER, "ok", order),
            _StubChannel("fb3", ChannelKind.FALLBACK_PROVIDER, "ok", order),
        ]
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API, "fail", order),
            fallbacks=fallbacks,
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert order == ["primary_api", "fb1", "fb2"]
        assert report.succeeded is True
        assert report.primary_succeeded is False
        assert report.fallback_succeeded is True

    def test_raising_primary_recorded_and_falls_back(self):
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API, "raise"),
            fallbacks=[_StubChannel("fb", ChannelKind.FALLBACK_PROVIDER)],
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        primary = report.by_kind(ChannelKind.PRIMARY_API)[0]
        assert primary.status == DeliveryStatus.FAILED
        assert primary.error_message == "RuntimeError: socket closed"
        assert report.succeeded is True


class TestDispatchFailure:

    def test_all_remote_fail(self):
        contacts = _RecordingContactChannel()
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API, "fail"),
            fallbacks=[_StubChannel("fb", ChannelKind.FALLBACK_PROVIDER, "fail")],
            contact_channel=contacts,
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert report.succeeded is False
        assert len(contacts.sent) == 2
        assert len(report.by_kind(ChannelKind.CONTACT)) == 2

    def test_no_fallbacks_configured(self):
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API, "fail"),
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        fallback = report.by_kind(ChannelKind.FALLBACK_PROVIDER)
        assert [a.channel_name for a in fallback] == ["fallback_providers"]
        assert fallback[0].status == DeliveryStatus.FAILED

    def test_missing_primary_recorded(self):
        dispatcher = _make_dispatcher(
            fallbacks=[_StubChannel("fb", ChannelKind.FALLBACK_PROVIDER)],
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        primary = report.by_kind(ChannelKind.PRIMARY_API)[0]
        assert primary.status == DeliveryStatus.FAILED
        assert report.succeeded is True


class TestDispatchSideChannels:

    def test_contacts_in_priority_order(self):
        contacts = _RecordingContactChannel()
        book = _make_book(
            EmergencyContact("Asha", "+91-3", priority=3),
            EmergencyContact("Ravi", "+91-0", priority=1),
        )
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API),
            contact_channel=contacts,
            book=book,
            contact_concurrency=1,
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        expected = ["911", "+91-0", "112", "+91-3"]
        assert [phone for phone, _ in contacts.sent] == expected
        assert [a.target for a in report.by_kind(ChannelKind.CONTACT)] == expected

    def test_contact_text_addressed_per_contact(self):
        contacts = _RecordingContactChannel()
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API),
            contact_channel=contacts,
        )
        asyncio.run(dispatcher.dispatch(_make_event()))
        assert contacts.sent[0][1].splitlines()[1] == "To: Emergency Services"
        assert contacts.sent[1][1].splitlines()[1] == "To: Local Police"

    def test_missing_local_channels_skipped(self):
        dispatcher = _make_dispatcher(primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API))
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        push = report.by_kind(ChannelKind.PUSH)[0]
        banner = report.by_kind(ChannelKind.BANNER)[0]
        assert push.status == DeliveryStatus.SKIPPED
        assert banner.status == DeliveryStatus.SKIPPED
        assert report.failed_attempts == []

    def test_local_failures_do_not_change_result(self):
        def broken(message):
            raise RuntimeError("renderer gone")

        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API),
            push=PushChannel(broken),
            banner=BannerChannel(broken),
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert report.succeeded is True
        assert {a.kind for a in report.failed_attempts} == {ChannelKind.PUSH, ChannelKind.BANNER}

    def test_every_step_recorded_in_order(self):
        dispatcher = _make_dispatcher(
            primary=_StubChannel("primary_api", ChannelKind.PRIMARY_API, "fail"),
            fallbacks=[_StubChannel("fb", ChannelKind.FALLBACK_PROVIDER)],
            push=PushChannel(lambda m: None),
            banner=BannerChannel(lambda m: None),
        )
        report = asyncio.run(dispatcher.dispatch(_make_event()))
        assert [a.kind for a in report.attempts] == [
            ChannelKind.PRIMARY_API,
            ChannelKind.FALLBACK_PROVIDER,
            ChannelKind.CONTACT,
            ChannelKind.CONTACT,
            ChannelKind.PUSH,
            ChannelKind.BANNER,
        ]
        assert report.completed_at is not None
        assert report.to_dict()["succeeded"] is True

    def test_close_closes_channels(self):
        primary = _StubChannel("primary_api", ChannelKind.PRIMARY_API)
        fallback = _StubChannel("fb", ChannelKind.FALLBACK_PROVIDER)
        dispatcher = _make_dispatcher(primary=primary, fallbacks=[fallback])
        asyncio.run(dispatcher.close())
        assert primary.closed and fallback.closed
