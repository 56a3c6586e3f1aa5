"""
banner.py — Local on-screen emergency banner.

The notifier receives a ready-to-render banner:

    {"title": "EMERGENCY ALERT", "body": "ACCIDENT: <message>",
     "tag": "emergency-alert", "require_interaction": True}
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from backend.app.alerts.channels.base import CallbackChannel, Notifier
from backend.app.alerts.models import ChannelKind


class BannerChannel(CallbackChannel):
    kind = ChannelKind.BANNER

    def __init__(self, notifier: Optional[Notifier] = None, name: str = "banner"):
        super().__init__(name, notifier)

    def build_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        kind = str(payload.get("type", "emergency")).upper()
        return {
            "title": "EMERGENCY ALERT",
            "body": f"{kind}: {payload.get('message', '')}",
            "tag": "emergency-alert",
            "require_interaction": True,
        }
