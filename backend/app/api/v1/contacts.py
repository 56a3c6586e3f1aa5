"""
FastAPI route: emergency contact book.

    GET    /api/v1/contacts          — ascending priority
    POST   /api/v1/contacts          — add, or replace the same phone
    DELETE /api/v1/contacts/{phone}
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.dependencies import get_runtime
from backend.app.api.schemas import ContactInput
from backend.app.runtime import EmergencyRuntime

router = APIRouter(prefix="/api/v1/contacts", tags=["contacts"])


@router.get("", summary="List emergency contacts")
async def list_contacts(runtime: EmergencyRuntime = Depends(get_runtime)):
    return {"contacts": [c.to_dict() for c in runtime.contacts.list()]}


@router.post("", status_code=201, summary="Add or replace a contact")
async def add_contact(
    request: ContactInput,
    runtime: EmergencyRuntime = Depends(get_runtime),
):
    contact = request.to_contact()
    await runtime.contacts.add(contact)
    return contact.to_dict()


@router.delete("/{phone}", summary="Remove a contact")
async def remove_contact(phone: str, runtime: EmergencyRuntime = Depends(get_runtime)):
    await runtime.contacts.remove(phone)
    return {"removed": phone}
