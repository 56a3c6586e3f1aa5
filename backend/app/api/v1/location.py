"""
FastAPI route: client position reports.

    POST /api/v1/location — feed a fix to the location provider; pending
                            position requests resolve and active watches
                            are notified
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import LocationInput
from backend.app.core.errors import ValidationError
from backend.app.location.provider import ReportedLocationProvider
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1", tags=["location"])


@router.post("/location", summary="Report the device position")
async def report_location(
    request: LocationInput,
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    provider = runtime.location_provider
    if not isinstance(provider, ReportedLocationProvider):
        raise ValidationError(
            "This deployment does not accept reported positions",
            field="location", provider=type(provider).__name__,
        )
    fix = request.to_fix()
    provider.report(fix)
    return {"accepted": True, "location": fix.to_dict()}
