"""
FastAPI route: responder lookup.

    GET /api/v1/services/nearest

Query modes:
    category + k                 plain KNN within one category
    category + radius_km         every service inside the radius
    priority (+ categories)      weighted KNN across categories, the
                                 priority category promoted
    no category                  weighted KNN across all categories
"""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import NearestServicesResponse
from backend.app.core.errors import ValidationError
from backend.app.runtime import EmergencyRuntime
from backend.app.spatial.geo_index import Coordinate, RankedService, ServiceCategory

router = APIRouter(prefix="/api/v1/services", tags=["services"])


@router.get(
    "/nearest",
    response_model=NearestServicesResponse,
    summary="Nearest responder services",
)
async def nearest_services(
    latitude: float = Query(..., ge=-90.0, le=90.0, examples=[16.31]),
    longitude: float = Query(..., ge=-180.0, le=180.0, examples=[80.44]),
    category: Optional[List[ServiceCategory]] = Query(None),
    k: Optional[int] = Query(None, ge=0, le=100),
    radius_km: Optional[float] = Query(None, gt=0.0, le=20000.0),
    priority: Optional[ServiceCategory] = Query(None),
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    origin = Coordinate(latitude, longitude)
    index = runtime.geo_index
    limit = runtime.settings.NEAREST_K if k is None else k
    categories = list(dict.fromkeys(category or []))

    ranked: List[RankedService]
    if radius_km is not None:
        if not categories:
            raise ValidationError("radius_km requires at least one category", field="category")
        ranked = sorted(
            (r for c in categories for r in index.within_radius(origin, c, radius_km)),
            key=lambda r: r.distance_km,
        )
        mode = "radius"
    elif len(categories) == 1 and priority is None:
        ranked = index.nearest(origin, categories[0], limit)
        mode = "nearest"
    else:
        ranked = index.weighted_nearest(
            origin, categories or None, limit, priority,
            priority_weight=runtime.settings.PRIORITY_WEIGHT,
        )
        mode = "weighted"

    return NearestServicesResponse(
        origin={"latitude": latitude, "longitude": longitude},
        mode=mode,
        results_count=len(ranked),
        services=[r.to_dict() for r in ranked],
    )
