"""
push.py — Push notification to the active client(s).

The host registers a notifier (service worker bridge, FCM sender, ...)
that receives:

    {"type": "EMERGENCY_PUSH", "data": <event payload>}

Without a notifier the step is a no-op and reported as SKIPPED.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from backend.app.alerts.channels.base import CallbackChannel, Notifier
from backend.app.alerts.models import ChannelKind


class PushChannel(CallbackChannel):
    kind = ChannelKind.PUSH

    def __init__(self, notifier: Optional[Notifier] = None, name: str = "push"):
        super().__init__(name, notifier)

    def build_message(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {"type": "EMERGENCY_PUSH", "data": payload}
