"""
FastAPI route: emergency event history.

    GET    /api/v1/events?limit=N — newest first
    DELETE /api/v1/events         — clear the log
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import EventLogResponse
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1/events", tags=["events"])


@router.get("", response_model=EventLogResponse, summary="Recent emergency events")
async def list_events(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    log = runtime.event_log
    return EventLogResponse(
        total=len(log),
        capacity=log.capacity,
        events=[entry.to_dict() for entry in log.recent(limit)],
    )


@router.delete("", summary="Clear the event history")
async def clear_events(runtime: EmergencyRuntime = Depends(get_runtime)):
    await runtime.event_log.clear()
    return {"cleared": True}
