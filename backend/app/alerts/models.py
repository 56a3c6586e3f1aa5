"""
models.py — Shared data structures for the emergency response core.

Defines:
    • EmergencyKind / EventSource / Severity — event classification
    • GeoFix          — one position fix from the location provider
    • EmergencyEvent  — immutable record of one emergency
    • EmergencyContact — person notified on every dispatch
    • ChannelKind / DeliveryStatus — dispatch step and outcome
    • DeliveryAttempt — one channel attempt (one contact for contact sends)
    • DispatchReport  — every attempt made for one dispatch

═══════════════════════════════════════════════════════════════════════════
DISPATCH CHANNELS
═══════════════════════════════════════════════════════════════════════════

    Step  Channel              Kind                Counts toward success
    ────  ───────────────────  ──────────────────  ─────────────────────
    1     Primary remote API   PRIMARY_API         yes
    2     Fallback providers   FALLBACK_PROVIDER   yes (first success wins)
    3     Emergency contacts   CONTACT             no
    4     Push notification    PUSH                no
    5     Local banner         BANNER              no

A dispatch succeeds iff step 1 or step 2 delivered. Steps 3–5 are always
attempted and always reported, one entry per contact for step 3.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.spatial.geo_index import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class EmergencyKind(str, Enum):
    ACCIDENT = "accident"
    MEDICAL  = "medical"
    FIRE     = "fire"
    CRIME    = "crime"
    OTHER    = "other"


class EventSource(str, Enum):
    """How the emergency entered the system."""
    MESSAGE   = "message"     # inbound text matched a trigger rule
    MANUAL    = "manual"      # user pressed a status button
    AUTOMATIC = "automatic"   # host-side detector


class Severity(str, Enum):
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"


class ChannelKind(str, Enum):
    """Dispatch steps, in the order the dispatcher runs them."""
    PRIMARY_API       = "primary_api"
    FALLBACK_PROVIDER = "fallback_provider"
    CONTACT           = "contact"
    PUSH              = "push"
    BANNER            = "banner"


REMOTE_CHANNEL_KINDS = (ChannelKind.PRIMARY_API, ChannelKind.FALLBACK_PROVIDER)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED    = "failed"
    SKIPPED   = "skipped"   # capability absent, a no-op rather than an error


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _now() -> datetime:
    return datetime.now(timezone.utc)


_id_lock = threading.Lock()
_last_event_id = 0


def next_event_id() -> int:
    """
    Monotonic event id derived from the wall clock in milliseconds.

    Two events created within the same millisecond still get distinct,
    increasing ids.
    """
    global _last_event_id
    with _id_lock:
        candidate = time.time_ns() // 1_000_000
        if candidate <= _last_event_id:
            candidate = _last_event_id + 1
        _last_event_id = candidate
        return candidate


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GeoFix:
    """A position fix reported by the location provider."""
    latitude: float
    longitude: float
    accuracy_m: Optional[float] = None
    timestamp: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        # Range check lives on Coordinate
        Coordinate(self.latitude, self.longitude)

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy_m,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GeoFix":
        ts = data.get("timestamp")
        return cls(
            latitude=float(data["latitude"]),
            longitude=float(data["longitude"]),
            accuracy_m=data.get("accuracy"),
            timestamp=datetime.fromisoformat(ts) if ts else _now(),
        )


@dataclass(frozen=True)
class EmergencyEvent:
    """
    One emergency, as triggered and later dispatched.

    Never mutated: filling the location produces a copy with the same id
    via ``with_location``.
    """
    kind: EmergencyKind
    message: str
    source: EventSource
    severity: Severity
    id: int = field(default_factory=next_event_id)
    created_at: datetime = field(default_factory=_now)
    location: Optional[GeoFix] = None
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def with_location(self, fix: Optional[GeoFix]) -> "EmergencyEvent":
        return replace(self, location=fix)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.kind.value,
            "message": self.message,
            "source": self.source.value,
            "severity": self.severity.value,
            "timestamp": self.created_at.isoformat(),
            "location": self.location.to_dict() if self.location else None,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyEvent":
        location = data.get("location")
        return cls(
            id=int(data["id"]),
            kind=EmergencyKind(data["type"]),
            message=data.get("message", ""),
            source=EventSource(data["source"]),
            severity=Severity(data["severity"]),
            created_at=datetime.fromisoformat(data["timestamp"]),
            location=GeoFix.from_dict(location) if location else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class EmergencyContact:
    """
    A person notified on every dispatch.

    Attributes
    ----------
    name : str
    phone : str
        Unique key within the contact book.
    relationship : str
    priority : int
        Positive; lower values are contacted first.
    """
    name: str
    phone: str
    relationship: str = ""
    priority: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "phone": self.phone,
            "relationship": self.relationship,
            "priority": self.priority,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencyContact":
        return cls(
            name=data["name"],
            phone=data["phone"],
            relationship=data.get("relationship", ""),
            priority=int(data.get("priority", 1)),
        )


@dataclass
class DeliveryAttempt:
    """Record of a single channel attempt."""
    channel_name: str
    kind: ChannelKind
    status: DeliveryStatus = DeliveryStatus.FAILED
    target: Optional[str] = None          # endpoint URL or contact phone
    attempted_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status != DeliveryStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel_name,
            "kind": self.kind.value,
            "status": self.status.value,
            "succeeded": self.succeeded,
            "target": self.target,
            "attempted_at": self.attempted_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "error": self.error_message,
        }


@dataclass
class DispatchReport:
    """Every attempt made while dispatching one EmergencyEvent."""
    event_id: int
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def add(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        self.attempts.append(attempt)
        return attempt

    def by_kind(self, kind: ChannelKind) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if a.kind == kind]

    @property
    def primary_succeeded(self) -> bool:
        return any(
            a.status == DeliveryStatus.DELIVERED
            for a in self.by_kind(ChannelKind.PRIMARY_API)
        )

    @property
    def fallback_succeeded(self) -> bool:
        return any(
            a.status == DeliveryStatus.DELIVERED
            for a in self.by_kind(ChannelKind.FALLBACK_PROVIDER)
        )

    @property
    def succeeded(self) -> bool:
        """True iff a remote channel (primary or fallback) delivered."""
        return self.primary_succeeded or self.fallback_succeeded

    @property
    def failed_attempts(self) -> List[DeliveryAttempt]:
        return [a for a in self.attempts if not a.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "succeeded": self.succeeded,
            "primary_succeeded": self.primary_succeeded,
            "fallback_succeeded": self.fallback_succeeded,
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "attempts": [a.to_dict() for a in self.attempts],
        }
