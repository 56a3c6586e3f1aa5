"""
dispatcher.py — Multi-channel emergency notification dispatch.

Sends one EmergencyEvent through every configured channel and records
each attempt in a DispatchReport.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Primary API     │  one POST, no retry
    └─────────┬───────────┘
              │ failed?
              ▼
    ┌─────────────────────┐
    │  2. Fallback        │  providers in configured order,
    │     providers       │  stop at the first delivery
    └─────────┬───────────┘
              │ always
              ▼
    ┌─────────────────────┐
    │  3. Contacts        │  every contact, ascending priority,
    │                     │  sent concurrently, failures isolated
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Push            │  best-effort, SKIPPED if unavailable
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  5. Banner          │  best-effort, SKIPPED if unavailable
    └─────────────────────┘

Primary and fallback run strictly in sequence: a fallback is only tried
once the primary failure is known. Success of the whole dispatch means
step 1 or step 2 delivered; steps 3–5 never change it, but every one of
their attempts (one per contact) is in the report.

A channel that raises is recorded as a FAILED attempt with the exception
text, so no channel failure can abort the dispatch or vanish from the
report.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from backend.app.alerts.channels.base import ContactChannel, NotificationChannel
from backend.app.alerts.channels.contact_sms import (
    DEFAULT_MAP_URL_TEMPLATE,
    format_contact_message,
)
from backend.app.alerts.contacts import ContactBook
from backend.app.alerts.models import (
    ChannelKind,
    DeliveryAttempt,
    DeliveryStatus,
    DispatchReport,
    EmergencyContact,
    EmergencyEvent,
)
from backend.app.core.errors import ChannelSendError
from backend.app.core.logging_config import bind_log_context
from backend.app.spatial.geo_index import RankedService

logger = logging.getLogger(__name__)

NearbyServices = Dict[str, Sequence[RankedService]]


# ═══════════════════════════════════════════════════════════════════════════
# Payload Builder
# ═══════════════════════════════════════════════════════════════════════════

def build_remote_payload(
    event: EmergencyEvent,
    *,
    nearby: Optional[NearbyServices] = None,
    device: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Flatten an event into the key/value payload sent to remote endpoints.

    Nearby services are reduced to id / name / phone / distance so the
    payload stays small.
    """
    payload = event.to_dict()
    if device:
        payload["device"] = dict(device)
    if nearby:
        payload["nearby_services"] = {
            group: [
                {
                    "id": r.service.id,
                    "name": r.service.name,
                    "phone": r.service.phone,
                    "distance_km": round(r.distance_km, 3),
                }
                for r in ranked
            ]
            for group, ranked in nearby.items()
        }
    return payload


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationDispatcher:
    """
    Runs the five dispatch steps for an event.

    Parameters
    ----------
    primary : NotificationChannel | None
        Step 1 endpoint. None records a failed primary attempt.
    fallbacks : sequence of NotificationChannel
        Step 2 providers, tried in order.
    contact_channel : ContactChannel
        Step 3 transport.
    contacts : ContactBook
        Source of the contact list, read at dispatch time.
    push, banner : NotificationChannel | None
        Steps 4 and 5; None records a SKIPPED attempt.
    contact_concurrency : int
        Upper bound on simultaneous contact sends.
    """

    def __init__(
        self,
        *,
        primary: Optional[NotificationChannel],
        fallbacks: Sequence[NotificationChannel] = (),
        contact_channel: ContactChannel,
        contacts: ContactBook,
        push: Optional[NotificationChannel] = None,
        banner: Optional[NotificationChannel] = None,
        contact_concurrency: int = 5,
        map_url_template: str = DEFAULT_MAP_URL_TEMPLATE,
        device: Optional[Dict[str, Any]] = None,
    ):
        self.primary = primary
        self.fallbacks = list(fallbacks)
        self.contact_channel = contact_channel
        self.contacts = contacts
        self.push = push
        self.banner = banner
        self.contact_concurrency = max(1, contact_concurrency)
        self.map_url_template = map_url_template
        self.device = device or {}

    # ── Guarded single attempt ──

    @staticmethod
    async def _attempt(
        name: str,
        kind: ChannelKind,
        send: Callable[[], Awaitable[DeliveryAttempt]],
        target: Optional[str] = None,
    ) -> DeliveryAttempt:
        try:
            return await send()
        except ChannelSendError as exc:
            logger.warning(
                "Channel %s could not deliver: %s", name, exc.message,
                extra={"channel": name},
            )
            error_message, response = exc.message, exc.details
        except Exception as exc:
            logger.error(
                "Channel %s raised: %s", name, exc,
                extra={"channel": name},
            )
            error_message, response = f"{type(exc).__name__}: {exc}", None

        return DeliveryAttempt(
            channel_name=name,
            kind=kind,
            status=DeliveryStatus.FAILED,
            target=target,
            completed_at=datetime.now(timezone.utc),
            error_message=error_message,
            provider_response=response,
        )

    # ── Steps 1 & 2 ──

    async def _send_remote(self, payload: Dict[str, Any], report: DispatchReport) -> None:
        if self.primary is None:
            report.add(DeliveryAttempt(
                channel_name="primary_api",
                kind=ChannelKind.PRIMARY_API,
                completed_at=datetime.now(timezone.utc),
                error_message="No primary endpoint configured",
            ))
        else:
            primary = self.primary
            attempt = report.add(await self._attempt(
                primary.name, ChannelKind.PRIMARY_API,
                lambda: primary.send(payload),
            ))
            if attempt.status == DeliveryStatus.DELIVERED:
                return

        logger.warning("Primary alert endpoint failed, trying %d fallback provider(s)",
                       len(self.fallbacks))

        if not self.fallbacks:
            report.add(DeliveryAttempt(
                channel_name="fallback_providers",
                kind=ChannelKind.FALLBACK_PROVIDER,
                completed_at=datetime.now(timezone.utc),
                error_message="No fallback providers configured",
            ))
            return

        for provider in self.fallbacks:
            attempt = report.add(await self._attempt(
                provider.name, ChannelKind.FALLBACK_PROVIDER,
                lambda p=provider: p.send(payload),
            ))
            if attempt.status == DeliveryStatus.DELIVERED:
                logger.info("Fallback provider %s delivered the alert", provider.name,
                            extra={"channel": provider.name})
                return

        logger.error("All remote alert channels failed")

    # ── Step 3 ──

    async def _notify_contacts(self, event: EmergencyEvent) -> List[DeliveryAttempt]:
        contacts: List[EmergencyContact] = sorted(self.contacts.list(), key=lambda c: c.priority)
        semaphore = asyncio.Semaphore(self.contact_concurrency)
        channel = self.contact_channel

        async def notify(contact: EmergencyContact) -> DeliveryAttempt:
            async with semaphore:
                text = format_contact_message(event, contact, self.map_url_template)
                attempt = await self._attempt(
                    channel.name, ChannelKind.CONTACT,
                    lambda: channel.send_to(contact, text),
                    target=contact.phone,
                )
            if not attempt.succeeded:
                logger.warning(
                    "Failed to notify %s (%s): %s",
                    contact.name, contact.phone, attempt.error_message,
                    extra={"contact": contact.phone},
                )
            return attempt

        # gather keeps contact order in the result
        return list(await asyncio.gather(*(notify(c) for c in contacts)))

    # ── Steps 4 & 5 ──

    async def _local(
        self,
        channel: Optional[NotificationChannel],
        name: str,
        kind: ChannelKind,
        payload: Dict[str, Any],
    ) -> DeliveryAttempt:
        if channel is None:
            return DeliveryAttempt(
                channel_name=name,
                kind=kind,
                status=DeliveryStatus.SKIPPED,
                completed_at=datetime.now(timezone.utc),
            )
        return await self._attempt(channel.name, kind, lambda: channel.send(payload))

    # ── Entry point ──

    async def dispatch(
        self,
        event: EmergencyEvent,
        *,
        nearby: Optional[NearbyServices] = None,
    ) -> DispatchReport:
        """
        Dispatch an event through all channels.

        Returns
        -------
        DispatchReport
            ``report.succeeded`` is the overall result.
        """
        bind_log_context(event_id=event.id)
        report = DispatchReport(event_id=event.id)
        payload = build_remote_payload(event, nearby=nearby, device=self.device)

        logger.info(
            "Dispatching %s/%s event %s",
            event.kind.value, event.severity.value, event.id,
            extra={"event_id": event.id},
        )

        await self._send_remote(payload, report)

        for attempt in await self._notify_contacts(event):
            report.add(attempt)

        report.add(await self._local(self.push, "push", ChannelKind.PUSH, payload))
        report.add(await self._local(self.banner, "banner", ChannelKind.BANNER, payload))

        report.completed_at = datetime.now(timezone.utc)
        failed = len(report.failed_attempts)
        logger.info(
            "Dispatch of event %s complete: remote=%s, %d attempt(s), %d failed, %.2fs",
            event.id,
            "ok" if report.succeeded else "FAILED",
            len(report.attempts),
            failed,
            (report.completed_at - report.started_at).total_seconds(),
            extra={"event_id": event.id},
        )
        return report

    async def close(self) -> None:
        for channel in [self.primary, *self.fallbacks, self.push, self.banner]:
            if channel is not None:
                await channel.close()
