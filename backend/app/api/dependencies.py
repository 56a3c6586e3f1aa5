"""
FastAPI dependencies shared by the v1 routers.

The runtime is created by the application lifespan and parked on
``app.state``; routes receive it through ``Depends(get_runtime)`` so
tests can swap in their own.
"""

from __future__ import annotations

from fastapi import Request

from backend.app.runtime import EmergencyRuntime


def get_runtime(request: Request) -> EmergencyRuntime:
    return request.app.state.runtime
