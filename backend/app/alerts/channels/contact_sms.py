"""
contact_sms.py — Text-message delivery to emergency contacts.

Delivery mechanism:
    • One message per contact, formatted by format_contact_message
    • Carrier integration is supplied by the host; the bundled gateway
      runs in simulation mode and only logs

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    EMERGENCY ALERT
    To: {contact name}
    Type: {KIND}
    Location: {lat}, {lon}
    Map: https://maps.google.com/?q={lat},{lon}
    Time: {ISO-8601 timestamp}
    Message: {free text}
    Please respond immediately!

Without a position fix the Location line reads "unavailable" and the Map
line is left out.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from backend.app.alerts.channels.base import ContactChannel
from backend.app.alerts.models import (
    ChannelKind,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyContact,
    EmergencyEvent,
)
from backend.app.core.errors import ChannelSendError

logger = logging.getLogger(__name__)

DEFAULT_MAP_URL_TEMPLATE = "https://maps.google.com/?q={lat},{lon}"


def format_contact_message(
    event: EmergencyEvent,
    contact: EmergencyContact,
    map_url_template: str = DEFAULT_MAP_URL_TEMPLATE,
) -> str:
    """Render the contact text for one event. Pure and deterministic."""
    lines = [
        "EMERGENCY ALERT",
        f"To: {contact.name}",
        f"Type: {event.kind.value.upper()}",
    ]

    if event.location is not None:
        lat, lon = event.location.latitude, event.location.longitude
        lines.append(f"Location: {lat}, {lon}")
        lines.append(f"Map: {map_url_template.format(lat=lat, lon=lon)}")
    else:
        lines.append("Location: unavailable")

    lines.extend([
        f"Time: {event.created_at.isoformat()}",
        f"Message: {event.message}",
        "Please respond immediately!",
    ])
    return "\n".join(lines)


class SimulatedSmsGateway(ContactChannel):
    """Logs the message instead of handing it to a carrier."""

    def __init__(self, provider: str = "simulation"):
        self.provider = provider

    async def send_to(self, contact: EmergencyContact, text: str) -> DeliveryAttempt:
        if not contact.phone:
            raise ChannelSendError(self.name, "No phone number on file", contact=contact.name)

        attempt = DeliveryAttempt(
            channel_name=self.name,
            kind=ChannelKind.CONTACT,
            target=contact.phone,
        )

        logger.info(
            "[SMS] %s (%s): %d chars → '%s'",
            contact.phone,
            contact.name,
            len(text),
            text.splitlines()[0] if text else "",
        )
        attempt.status = DeliveryStatus.DELIVERED
        attempt.completed_at = datetime.now(timezone.utc)
        attempt.provider_response = {
            "mode": "simulated",
            "provider": self.provider,
            "message_length": len(text),
        }
        return attempt
