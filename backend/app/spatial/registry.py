"""
registry.py — Seed responder registry and JSON registry loader.

The seed covers the Guntur / Mangalagiri area (Andhra Pradesh). Operators
point SERVICE_REGISTRY_PATH at a JSON file to replace it:

    [
        {"id": "h1", "name": "...", "category": "hospital",
         "latitude": 16.45, "longitude": 80.52,
         "phone": "+91-...", "address": "..."},
        ...
    ]
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

from backend.app.core.errors import ValidationError
from backend.app.spatial.geo_index import (
    Coordinate,
    GeoIndex,
    ServiceCategory,
    ServiceLocation,
)

logger = logging.getLogger(__name__)

H = ServiceCategory.HOSPITAL
P = ServiceCategory.POLICE

DEFAULT_SERVICES: List[ServiceLocation] = [
    # ── Hospitals ──
    ServiceLocation("h1", "NRI General Hospital", H, Coordinate(16.4537, 80.5286),
                    "+91-8645-230101",
                    "Chinakakani, Mangalagiri, Guntur, Andhra Pradesh 522503"),
    ServiceLocation("h2", "Ramesh Hospitals", H, Coordinate(16.3067, 80.4365),
                    "+91-863-2466666",
                    "Ring Road, Near ITC, Guntur, Andhra Pradesh 522007"),
    ServiceLocation("h3", "Manipal Super Specialty Hospital", H, Coordinate(16.3146, 80.4319),
                    "+91-863-2233445",
                    "Brodipet, Guntur, Andhra Pradesh 522002"),
    ServiceLocation("h4", "Government General Hospital", H, Coordinate(16.2997, 80.4428),
                    "+91-863-2222222",
                    "Kothapet, Guntur, Andhra Pradesh 522001"),
    ServiceLocation("h5", "Sravani Hospital", H, Coordinate(16.3201, 80.4362),
                    "+91-863-2233446",
                    "Arundelpet, Guntur, Andhra Pradesh 522002"),
    # ── Police stations ──
    ServiceLocation("p1", "Mangalagiri Police Station", P, Coordinate(16.4302, 80.5687),
                    "+91-863-2344000",
                    "Mangalagiri, Guntur, Andhra Pradesh 522503"),
    ServiceLocation("p2", "Tadepalli Police Station", P, Coordinate(16.4822, 80.6072),
                    "+91-863-2222333",
                    "Tadepalli, Guntur, Andhra Pradesh 522501"),
    ServiceLocation("p3", "Namburu Police Station", P, Coordinate(16.3731, 80.5372),
                    "+91-863-2233447",
                    "Namburu, Guntur, Andhra Pradesh 522508"),
    ServiceLocation("p4", "Pedakakani Police Station", P, Coordinate(16.3211, 80.4972),
                    "+91-863-2233448",
                    "Pedakakani, Guntur, Andhra Pradesh 522509"),
    ServiceLocation("p5", "Guntur Urban Police Station", P, Coordinate(16.3067, 80.4365),
                    "+91-863-2233449",
                    "Guntur, Andhra Pradesh 522007"),
]


def load_registry_file(path: Path) -> List[ServiceLocation]:
    """
    Parse a JSON registry file.

    Raises
    ------
    ValidationError
        If the file is not a list of well-formed service records.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValidationError("Service registry must be a JSON list", field="registry")

    services: List[ServiceLocation] = []
    for i, item in enumerate(raw):
        try:
            services.append(ServiceLocation.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(
                f"Invalid service record at index {i}: {exc}", field="registry", index=i,
            ) from exc
    return services


def build_geo_index(registry_path: Optional[str] = None) -> GeoIndex:
    """Build the GeoIndex from a registry file, or the seed registry if none."""
    if registry_path:
        services = load_registry_file(Path(registry_path))
        logger.info("Loaded %d services from %s", len(services), registry_path)
    else:
        services = DEFAULT_SERVICES
    return GeoIndex(services)
