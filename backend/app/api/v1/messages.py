"""
FastAPI route: inbound text messages.

    POST /api/v1/messages/inbound — run the trigger rules on a message
                                    and start (or coalesce into) an alert
                                    session when it matches
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import InboundMessageRequest, InboundMessageResponse
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1/messages", tags=["messages"])


@router.post(
    "/inbound",
    response_model=InboundMessageResponse,
    summary="Evaluate an inbound message",
)
async def inbound_message(
    request: InboundMessageRequest,
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    session = await runtime.coordinator.handle_inbound_message(
        request.sender, request.body, request.message_id,
    )
    if session is None:
        return InboundMessageResponse(is_emergency=False)
    return InboundMessageResponse(is_emergency=True, session=session.to_dict())
