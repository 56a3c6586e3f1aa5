"""
base.py — Channel contracts shared by every delivery backend.

NotificationChannel   send(payload) → DeliveryAttempt
ContactChannel        send_to(contact, text) → DeliveryAttempt
CallbackChannel       NotificationChannel that hands the payload to a
                      host-supplied callable; no callable means the
                      capability is absent and the send is SKIPPED.

Implementations are injected by the host process. Returning a FAILED
attempt and raising are both treated as failure by the dispatcher.
"""

from __future__ import annotations

import abc
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from backend.app.alerts.models import (
    ChannelKind,
    DeliveryAttempt,
    DeliveryStatus,
    EmergencyContact,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class NotificationChannel(abc.ABC):
    """One delivery mechanism for the emergency payload."""

    kind: ChannelKind

    def __init__(self, name: str):
        self.name = name

    @abc.abstractmethod
    async def send(self, payload: Dict[str, Any]) -> DeliveryAttempt:
        ...

    async def close(self) -> None:
        """Release channel resources."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class ContactChannel(abc.ABC):
    """Delivers a pre-formatted text to one emergency contact."""

    name = "contact_sms"

    @abc.abstractmethod
    async def send_to(self, contact: EmergencyContact, text: str) -> DeliveryAttempt:
        ...


class CallbackChannel(NotificationChannel):
    """Best-effort local channel backed by an optional host callable."""

    def __init__(self, name: str, notifier: Optional[Notifier] = None):
        super().__init__(name)
        self.notifier = notifier

    @abc.abstractmethod
    def build_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def send(self, payload: Dict[str, Any]) -> DeliveryAttempt:
        attempt = DeliveryAttempt(channel_name=self.name, kind=self.kind)

        if self.notifier is None:
            attempt.status = DeliveryStatus.SKIPPED
            attempt.completed_at = datetime.now(timezone.utc)
            attempt.provider_response = {"mode": "unavailable"}
            logger.debug("[%s] no notifier registered, skipping", self.name)
            return attempt

        try:
            result = self.notifier(self.build_message(payload))
            if inspect.isawaitable(result):
                await result
            attempt.status = DeliveryStatus.DELIVERED
        except Exception as exc:
            logger.error("[%s] notifier failed: %s", self.name, exc)
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = str(exc)

        attempt.completed_at = datetime.now(timezone.utc)
        return attempt
