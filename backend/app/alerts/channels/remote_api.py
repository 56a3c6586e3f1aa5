"""
remote_api.py — Remote emergency-alert endpoint channel.

Delivery mechanism:
    • One HTTP POST of the JSON payload per send (no retry here)
    • Optional bearer token in the Authorization header
    • Any transport error or non-2xx response counts as failure

═══════════════════════════════════════════════════════════════════════════
PRIMARY / FALLBACK
═══════════════════════════════════════════════════════════════════════════

The same class backs both remote dispatch steps:

    RemoteAlertEndpoint(kind=PRIMARY_API)        — step 1, one call
    RemoteAlertEndpoint(kind=FALLBACK_PROVIDER)  — step 2, one per provider

    App  →  POST {url}  →  Emergency service API
              │
              └── 2xx = delivered, anything else = failed

An endpoint constructed without a URL runs in simulation mode: it logs
the payload and reports a delivery, so a development install can run the
full pipeline without network access.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from backend.app.alerts.channels.base import NotificationChannel
from backend.app.alerts.models import ChannelKind, DeliveryAttempt, DeliveryStatus

logger = logging.getLogger(__name__)


class RemoteAlertEndpoint(NotificationChannel):
    """
    POSTs the emergency payload to one remote endpoint.

    Parameters
    ----------
    name : str
        Channel name used in logs and dispatch reports.
    url : str | None
        Endpoint URL; None selects simulation mode.
    kind : ChannelKind
        PRIMARY_API or FALLBACK_PROVIDER.
    api_key : str | None
        Bearer token sent with every request.
    timeout_seconds : float
        HTTP timeout for the call.
    client : httpx.AsyncClient | None
        Shared client; one is created lazily (and owned) when omitted.
    """

    def __init__(
        self,
        name: str,
        url: Optional[str],
        *,
        kind: ChannelKind = ChannelKind.PRIMARY_API,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name)
        self.url = url
        self.kind = kind
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close HTTP client if this channel created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def send(self, payload: Dict[str, Any]) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            channel_name=self.name,
            kind=self.kind,
            target=self.url,
        )

        if self.url is None:
            logger.info(
                "[%s] Simulated alert for event %s (%s)",
                self.name, payload.get("id"), payload.get("type"),
            )
            attempt.status = DeliveryStatus.DELIVERED
            attempt.completed_at = datetime.now(timezone.utc)
            attempt.provider_response = {"mode": "simulated"}
            return attempt

        try:
            client = await self._get_client()
            response = await client.post(
                self.url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            attempt.status = DeliveryStatus.DELIVERED
            attempt.provider_response = {"status_code": response.status_code}
            logger.info("[%s] Alert delivered to %s", self.name, self.url)

        except httpx.HTTPStatusError as exc:
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = f"HTTP {exc.response.status_code}"
            attempt.provider_response = {"status_code": exc.response.status_code}
            logger.warning(
                "[%s] %s rejected alert: HTTP %d",
                self.name, self.url, exc.response.status_code,
            )

        except httpx.HTTPError as exc:
            attempt.status = DeliveryStatus.FAILED
            attempt.error_message = f"{type(exc).__name__}: {exc}"
            logger.warning("[%s] %s unreachable: %s", self.name, self.url, exc)

        attempt.completed_at = datetime.now(timezone.utc)
        return attempt
