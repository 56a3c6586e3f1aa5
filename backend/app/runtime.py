"""
Runtime wiring — builds the emergency core from settings.

One EmergencyRuntime per process. The FastAPI lifespan creates it,
awaits ``start()`` and stores it on ``app.state.runtime``; tests build
their own with a MemoryStore and stub channels.

    store ─┬─ ContactBook ──┐
           ├─ TriggerMatcher│
           └─ EventLog      ├─ AlertCoordinator
    GeoIndex ───────────────┤
    channels ── Dispatcher ─┤
    LocationProvider ───────┘
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from backend.app.alerts.channels.banner import BannerChannel
from backend.app.alerts.channels.base import ContactChannel, NotificationChannel, Notifier
from backend.app.alerts.channels.contact_sms import SimulatedSmsGateway
from backend.app.alerts.channels.push import PushChannel
from backend.app.alerts.channels.remote_api import RemoteAlertEndpoint
from backend.app.alerts.contacts import ContactBook
from backend.app.alerts.coordinator import AlertCoordinator
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.event_log import EventLog
from backend.app.alerts.models import ChannelKind
from backend.app.core.config import Settings
from backend.app.events.bus import EventBus
from backend.app.location.provider import LocationProvider, ReportedLocationProvider
from backend.app.spatial.geo_index import GeoIndex
from backend.app.spatial.registry import build_geo_index
from backend.app.storage.store import PersistentStore, build_store
from backend.app.triggers.matcher import TriggerMatcher

logger = logging.getLogger(__name__)


def build_remote_channels(settings: Settings) -> tuple:
    """Primary endpoint plus fallback providers, in configured order."""
    primary = RemoteAlertEndpoint(
        "primary_api",
        settings.PRIMARY_ALERT_URL,
        api_key=settings.ALERT_API_KEY,
        timeout_seconds=settings.ALERT_HTTP_TIMEOUT,
    )
    fallbacks = [
        RemoteAlertEndpoint(
            f"fallback_{i}",
            url,
            kind=ChannelKind.FALLBACK_PROVIDER,
            api_key=settings.ALERT_API_KEY,
            timeout_seconds=settings.ALERT_HTTP_TIMEOUT,
        )
        for i, url in enumerate(settings.FALLBACK_ALERT_URLS, start=1)
    ]
    return primary, fallbacks


class EmergencyRuntime:
    """Owns every long-lived component of the emergency core."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[PersistentStore] = None,
        geo_index: Optional[GeoIndex] = None,
        location_provider: Optional[LocationProvider] = None,
        primary: Optional[NotificationChannel] = None,
        fallbacks: Optional[Sequence[NotificationChannel]] = None,
        contact_channel: Optional[ContactChannel] = None,
        push_notifier: Optional[Notifier] = None,
        banner_notifier: Optional[Notifier] = None,
    ):
        self.settings = settings
        self.store = store or build_store(settings)
        self.geo_index = (
            geo_index if geo_index is not None
            else build_geo_index(settings.SERVICE_REGISTRY_PATH)
        )
        self.location_provider = location_provider or ReportedLocationProvider()
        self.bus = EventBus()

        self.contacts = ContactBook(self.store)
        self.matcher = TriggerMatcher(store=self.store)
        self.event_log = EventLog(settings.EVENT_LOG_CAPACITY, store=self.store)

        if primary is None and fallbacks is None:
            primary, fallbacks = build_remote_channels(settings)

        self.dispatcher = NotificationDispatcher(
            primary=primary,
            fallbacks=fallbacks or (),
            contact_channel=contact_channel or SimulatedSmsGateway(settings.SMS_PROVIDER),
            contacts=self.contacts,
            push=PushChannel(push_notifier),
            banner=BannerChannel(banner_notifier),
            contact_concurrency=settings.CONTACT_SEND_CONCURRENCY,
            map_url_template=settings.MAP_URL_TEMPLATE,
            device={"app": settings.APP_NAME, "version": settings.APP_VERSION},
        )

        self.coordinator = AlertCoordinator(
            geo_index=self.geo_index,
            matcher=self.matcher,
            dispatcher=self.dispatcher,
            event_log=self.event_log,
            location_provider=self.location_provider,
            bus=self.bus,
            nearest_k=settings.NEAREST_K,
            location_timeout_s=settings.LOCATION_TIMEOUT_SECONDS,
            high_accuracy=settings.LOCATION_HIGH_ACCURACY,
            priority_weight=settings.PRIORITY_WEIGHT,
        )

    async def start(self) -> None:
        """Load persisted contacts, trigger rules and event history."""
        await self.contacts.load()
        await self.matcher.load()
        await self.event_log.load()
        logger.info(
            "Emergency core ready: %d services, %d contacts, %d trigger rule(s), %d logged events",
            len(self.geo_index), len(self.contacts),
            len(self.matcher.rules()), len(self.event_log),
        )

    async def close(self) -> None:
        await self.coordinator.shutdown()
        await self.dispatcher.close()
        await self.store.close()
        logger.info("Emergency core stopped")
