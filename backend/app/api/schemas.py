"""
Pydantic schemas for the emergency API.

Boundary validation lives here: coordinate ranges, non-empty keyword
sets and positive contact priorities are rejected with 422 before any
request reaches the coordinator.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.alerts.coordinator import ManualStatus
from backend.app.alerts.models import EmergencyContact, GeoFix
from backend.app.triggers.matcher import WILDCARD, TriggerRule


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class InboundMessageRequest(BaseModel):
    """A text message received by the device."""
    sender: str = Field(..., min_length=1, examples=["+919876543210"])
    body: str = Field(..., examples=["Help, there has been an accident"])
    message_id: Optional[str] = Field(None, examples=["msg-0001"])


class StatusRequest(BaseModel):
    """Manual status button press."""
    status: ManualStatus = Field(..., examples=["accident"])
    message: Optional[str] = Field(
        None, max_length=500,
        description="Free text; a default is used when omitted",
    )


class LocationInput(BaseModel):
    """Position fix reported by the client (browser geolocation or GPS)."""
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[16.3067],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[80.4365],
    )
    accuracy: Optional[float] = Field(
        None, ge=0.0,
        description="Horizontal accuracy in metres",
        examples=[12.5],
    )

    def to_fix(self) -> GeoFix:
        return GeoFix(self.latitude, self.longitude, self.accuracy)


class TestAlertRequest(BaseModel):
    location: Optional[LocationInput] = None


class ContactInput(BaseModel):
    name: str = Field(..., min_length=1, examples=["Asha"])
    phone: str = Field(..., min_length=1, examples=["+919812345678"])
    relationship: str = Field("", examples=["Sister"])
    priority: int = Field(1, ge=1, description="Lower values are contacted first")

    @field_validator("phone")
    @classmethod
    def _strip_phone(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("phone must not be blank")
        return v

    def to_contact(self) -> EmergencyContact:
        return EmergencyContact(self.name, self.phone, self.relationship, self.priority)


class TriggerRuleInput(BaseModel):
    keywords: List[str] = Field(..., min_length=1, examples=[["sos", "help"]])
    sender_patterns: List[str] = Field(
        default_factory=lambda: [WILDCARD],
        description="Exact sender ids, or '*' for any sender",
    )
    auto_respond: bool = True

    @field_validator("keywords")
    @classmethod
    def _non_blank_keywords(cls, v: List[str]) -> List[str]:
        cleaned = [k.strip() for k in v if k and k.strip()]
        if not cleaned:
            raise ValueError("at least one non-blank keyword is required")
        return cleaned

    @field_validator("sender_patterns")
    @classmethod
    def _non_empty_senders(cls, v: List[str]) -> List[str]:
        cleaned = [s.strip() for s in v if s and s.strip()]
        if not cleaned:
            raise ValueError("at least one sender pattern is required")
        return cleaned

    def to_rule(self) -> TriggerRule:
        return TriggerRule.build(self.keywords, self.sender_patterns, self.auto_respond)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class InboundMessageResponse(BaseModel):
    is_emergency: bool
    session: Optional[Dict[str, Any]] = None


class SessionResponse(BaseModel):
    """Wrapper so an absent session is an explicit null."""
    session: Optional[Dict[str, Any]] = None


class EventLogResponse(BaseModel):
    total: int
    capacity: int
    events: List[Dict[str, Any]]


class NearestServicesResponse(BaseModel):
    origin: Dict[str, float]
    mode: str
    results_count: int
    services: List[Dict[str, Any]]
