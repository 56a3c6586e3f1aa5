"""
geo_index.py — Nearest-responder lookup over a static service registry.

Provides:
    - Haversine distance between two (lat, lon) points
    - Plain KNN:        k closest services of one category
    - Radius cutoff:    every service of a category within r km
    - Weighted KNN:     distance scaled per category for ranking only
    - Human-readable distance labels

All distances are in **kilometers**. Coordinates are in **decimal degrees**.

Mathematical Foundation — Haversine Formula
============================================
Given two points P₁(φ₁, λ₁) and P₂(φ₂, λ₂):

    a = sin²(Δφ / 2) + cos(φ₁) · cos(φ₂) · sin²(Δλ / 2)
    c = 2 · atan2(√a, √(1 − a))
    d = R · c

Where φ is latitude and λ longitude in radians and R = 6 371 km.

Ranking Policies
================
    nearest          sort ascending by true distance, take first k
    within_radius    nearest with k unbounded, keep distance ≤ r
    weighted_nearest sort ascending by distance × weight(category),
                     weight < 1.0 for the prioritized category

Sorting is stable everywhere: equal distances keep registry order. The
weighted score only decides order; every RankedService reports its true
haversine distance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Union


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EARTH_RADIUS_KM: float = 6_371.0


class ServiceCategory(str, Enum):
    """Responder service categories held in the registry."""
    HOSPITAL  = "hospital"
    POLICE    = "police"
    FIRE      = "fire"
    AMBULANCE = "ambulance"


# ---------------------------------------------------------------------------
# Core data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Coordinate:
    """A geographic point in decimal degrees."""
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0):
            raise ValueError(
                f"Latitude must be in [-90, 90], got {self.latitude}"
            )
        if not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(
                f"Longitude must be in [-180, 180], got {self.longitude}"
            )

    @property
    def lat_rad(self) -> float:
        """Latitude in radians."""
        return math.radians(self.latitude)

    @property
    def lon_rad(self) -> float:
        """Longitude in radians."""
        return math.radians(self.longitude)


@dataclass(frozen=True)
class ServiceLocation:
    """A responder service (hospital, police station, ...) with coordinates."""
    id: str
    name: str
    category: ServiceCategory
    coordinates: Coordinate
    phone: str = ""
    address: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "latitude": self.coordinates.latitude,
            "longitude": self.coordinates.longitude,
            "phone": self.phone,
            "address": self.address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "ServiceLocation":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            category=ServiceCategory(data["category"]),
            coordinates=Coordinate(
                float(data["latitude"]), float(data["longitude"]),  # type: ignore[arg-type]
            ),
            phone=str(data.get("phone", "")),
            address=str(data.get("address", "")),
        )


@dataclass(frozen=True)
class RankedService:
    """A ServiceLocation annotated with its true distance from a query origin."""
    service: ServiceLocation
    distance_km: float
    distance_text: str = field(default="")

    def to_dict(self) -> Dict[str, object]:
        return {
            **self.service.to_dict(),
            "distance_km": round(self.distance_km, 4),
            "distance_text": self.distance_text,
        }


# ---------------------------------------------------------------------------
# Haversine implementation
# ---------------------------------------------------------------------------

def haversine(point1: Coordinate, point2: Coordinate) -> float:
    """
    Compute the great-circle distance between two points.

    Parameters
    ----------
    point1, point2 : Coordinate

    Returns
    -------
    float
        Distance in kilometers (unrounded, so the metric properties hold).

    Examples
    --------
    >>> haversine(Coordinate(0, 0), Coordinate(0, 0))
    0.0
    """
    d_lat = point2.lat_rad - point1.lat_rad
    d_lon = point2.lon_rad - point1.lon_rad

    a = (
        math.sin(d_lat / 2.0) ** 2
        + math.cos(point1.lat_rad)
        * math.cos(point2.lat_rad)
        * math.sin(d_lon / 2.0) ** 2
    )
    # Floating error can push a above 1 for antipodal points
    a = min(1.0, max(0.0, a))

    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def format_distance(km: float) -> str:
    """
    Format a distance for display.

    >>> format_distance(0.45)
    '450 m'
    >>> format_distance(3.7266)
    '3.7 km'
    >>> format_distance(290.2122)
    '290 km'
    """
    if km < 1.0:
        return f"{km * 1000:.0f} m"
    if km < 10.0:
        return f"{km:.1f} km"
    return f"{km:.0f} km"


# ---------------------------------------------------------------------------
# Index
# ---------------------------------------------------------------------------

CategoryQuery = Union[ServiceCategory, Iterable[ServiceCategory], None]


class GeoIndex:
    """
    Read-only registry of responder services grouped by category.

    Built once at startup and never mutated afterwards, so concurrent
    readers need no locking.

    Usage:
        index = GeoIndex(DEFAULT_SERVICES)
        index.nearest(Coordinate(16.31, 80.44), ServiceCategory.HOSPITAL, k=3)
    """

    def __init__(self, services: Iterable[ServiceLocation] = ()):
        registry: Dict[ServiceCategory, List[ServiceLocation]] = {
            category: [] for category in ServiceCategory
        }
        for service in services:
            registry[service.category].append(service)
        self._registry = {cat: tuple(items) for cat, items in registry.items()}

    def __len__(self) -> int:
        return sum(len(items) for items in self._registry.values())

    def services(self, category: ServiceCategory) -> Sequence[ServiceLocation]:
        """All services of a category, in registry order."""
        return self._registry.get(category, ())

    @staticmethod
    def distance(a: Coordinate, b: Coordinate) -> float:
        return haversine(a, b)

    def _rank(self, origin: Coordinate, category: ServiceCategory) -> List[RankedService]:
        ranked = [
            RankedService(service, d, format_distance(d))
            for service, d in (
                (s, haversine(origin, s.coordinates))
                for s in self.services(category)
            )
        ]
        ranked.sort(key=lambda r: r.distance_km)
        return ranked

    def nearest(
        self,
        origin: Coordinate,
        category: ServiceCategory,
        k: int,
    ) -> List[RankedService]:
        """The k closest services of a category, nearest first."""
        if k <= 0:
            return []
        return self._rank(origin, category)[:k]

    def within_radius(
        self,
        origin: Coordinate,
        category: ServiceCategory,
        radius_km: float,
    ) -> List[RankedService]:
        """Every service of a category within radius_km, nearest first."""
        return [
            r for r in self._rank(origin, category)
            if r.distance_km <= radius_km
        ]

    def weighted_nearest(
        self,
        origin: Coordinate,
        category: CategoryQuery,
        k: int,
        priority_category: Optional[ServiceCategory],
        *,
        priority_weight: float = 1 / 1.5,
    ) -> List[RankedService]:
        """
        Weighted KNN across one or more categories.

        Each candidate is scored ``distance × weight`` where weight is
        ``priority_weight`` for ``priority_category`` and 1.0 otherwise.
        The score only orders the candidates; ``distance_km`` stays the
        true distance. With a single category this orders exactly like
        ``nearest``.

        Parameters
        ----------
        category : ServiceCategory | iterable of ServiceCategory | None
            Categories to merge; None means all categories.
        priority_category : ServiceCategory | None
            Category to promote; None disables weighting.
        """
        if k <= 0:
            return []

        if category is None:
            categories: List[ServiceCategory] = list(ServiceCategory)
        elif isinstance(category, ServiceCategory):
            categories = [category]
        else:
            categories = list(dict.fromkeys(category))

        candidates: List[RankedService] = []
        for cat in categories:
            for service in self.services(cat):
                d = haversine(origin, service.coordinates)
                candidates.append(RankedService(service, d, format_distance(d)))

        def score(r: RankedService) -> float:
            if priority_category is not None and r.service.category == priority_category:
                return r.distance_km * priority_weight
            return r.distance_km

        candidates.sort(key=score)
        return candidates[:k]
