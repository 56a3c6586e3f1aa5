"""
contacts.py — Emergency contact book backed by the persistent store.

Contacts are keyed by phone number and kept sorted ascending by priority
(stable, so equal priorities keep insertion order). Every mutation is a
read-modify-write of the whole list and runs under one asyncio lock.

The first load against a store with no contact list seeds the defaults:

    Emergency Services  911  Emergency        priority 1
    Local Police        112  Law Enforcement  priority 2

A list the user emptied is stored as [] and stays empty.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List

from backend.app.alerts.models import EmergencyContact
from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.storage.store import PersistentStore, load_json, save_json

logger = logging.getLogger(__name__)

CONTACTS_KEY = "emergency_contacts"

DEFAULT_CONTACTS = (
    EmergencyContact("Emergency Services", "911", "Emergency", 1),
    EmergencyContact("Local Police", "112", "Law Enforcement", 2),
)


class ContactBook:
    """Ordered, persisted collection of EmergencyContact entries."""

    def __init__(self, store: PersistentStore):
        self.store = store
        self._contacts: List[EmergencyContact] = []
        self._lock = asyncio.Lock()

    async def load(self) -> None:
        """Load contacts from the store, seeding defaults on first run."""
        async with self._lock:
            raw = await load_json(self.store, CONTACTS_KEY)
            if raw is not None:
                self._contacts = [EmergencyContact.from_dict(c) for c in raw]
                self._contacts.sort(key=lambda c: c.priority)
            else:
                self._contacts = [
                    EmergencyContact(**c.to_dict()) for c in DEFAULT_CONTACTS
                ]
                await self._save()
                logger.info("Seeded %d default emergency contacts", len(self._contacts))

    async def _save(self) -> None:
        await save_json(self.store, CONTACTS_KEY, [c.to_dict() for c in self._contacts])

    def list(self) -> List[EmergencyContact]:
        """Snapshot of the contacts, ascending by priority."""
        return [EmergencyContact(**c.to_dict()) for c in self._contacts]

    def __len__(self) -> int:
        return len(self._contacts)

    async def add(self, contact: EmergencyContact) -> None:
        """Add a contact; an existing entry with the same phone is replaced."""
        if not contact.phone:
            raise ValidationError("Contact phone is required", field="phone")
        if contact.priority < 1:
            raise ValidationError(
                "Contact priority must be a positive integer",
                field="priority", value=contact.priority,
            )

        async with self._lock:
            self._contacts = [c for c in self._contacts if c.phone != contact.phone]
            self._contacts.append(contact)
            self._contacts.sort(key=lambda c: c.priority)
            await self._save()
        logger.info("Emergency contact saved: %s (priority %d)", contact.name, contact.priority)

    async def remove(self, phone: str) -> None:
        """Remove the contact with this phone number."""
        async with self._lock:
            remaining = [c for c in self._contacts if c.phone != phone]
            if len(remaining) == len(self._contacts):
                raise NotFoundError("EmergencyContact", phone=phone)
            self._contacts = remaining
            await self._save()
        logger.info("Emergency contact removed: %s", phone)
