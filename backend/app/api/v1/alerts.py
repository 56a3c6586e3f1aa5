"""
FastAPI route: alert session control.

Provides endpoints to:
    POST /api/v1/alerts/status    — manual status (help | accident | safe)
    POST /api/v1/alerts/safe      — confirm the user is safe
    POST /api/v1/alerts/test      — dispatch a test alert, no session
    GET  /api/v1/alerts/active    — snapshot of the current session
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.app.alerts.coordinator import AlertSession
from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import SessionResponse, StatusRequest, TestAlertRequest
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


def _session_response(session: Optional[AlertSession]) -> SessionResponse:
    return SessionResponse(session=session.to_dict() if session is not None else None)


@router.post(
    "/status",
    response_model=SessionResponse,
    summary="Report a manual status",
    description=(
        "accident → critical accident alert, help → high-severity medical "
        "alert, safe → ends the active session. A report while a session "
        "is in progress is coalesced into it."
    ),
)
async def report_status(
    request: StatusRequest,
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    session = await runtime.coordinator.report_status(request.status, request.message)
    return _session_response(session)


@router.post(
    "/safe",
    response_model=SessionResponse,
    summary="Confirm safety",
    description="Cancel location tracking and end the active session. No-op without one.",
)
async def confirm_safe(runtime: EmergencyRuntime = Depends(get_runtime)):
    session = await runtime.coordinator.confirm_safe()
    return _session_response(session)


@router.post(
    "/test",
    summary="Send a test alert",
    description="Medium-severity accident event through every channel, logged, outside any session.",
)
async def send_test_alert(
    request: Optional[TestAlertRequest] = None,
    runtime: EmergencyRuntime = Depends(get_runtime),
) -> Dict[str, Any]:
    fix = request.location.to_fix() if request and request.location else None
    report = await runtime.coordinator.send_test_alert(fix)
    return report.to_dict()


@router.get(
    "/active",
    response_model=SessionResponse,
    summary="Current alert session",
)
async def active_session(runtime: EmergencyRuntime = Depends(get_runtime)):
    return _session_response(runtime.coordinator.active_session)
