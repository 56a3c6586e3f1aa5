"""
FastAPI route: trigger rules.

    GET    /api/v1/triggers           — rules in evaluation order
    POST   /api/v1/triggers           — append a rule
    DELETE /api/v1/triggers/{index}   — remove by position
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import TriggerRuleInput
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1/triggers", tags=["triggers"])


@router.get("", summary="List trigger rules")
async def list_rules(runtime: EmergencyRuntime = Depends(get_runtime)):
    return {
        "rules": [
            {"index": i, **rule.to_dict()}
            for i, rule in enumerate(runtime.matcher.rules())
        ]
    }


@router.post("", status_code=201, summary="Add a trigger rule")
async def add_rule(
    request: TriggerRuleInput,
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    rule = request.to_rule()
    await runtime.matcher.add_rule(rule)
    return {"index": len(runtime.matcher.rules()) - 1, **rule.to_dict()}


@router.delete("/{index}", summary="Remove a trigger rule")
async def remove_rule(index: int, runtime: EmergencyRuntime = Depends(get_runtime)):
    removed = await runtime.matcher.remove_rule(index)
    return {"removed": removed.to_dict()}
