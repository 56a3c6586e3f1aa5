"""
Health check aggregation for the emergency core.

Checks:
    • persistent store round-trip (memory or Redis)
    • service registry loaded and non-empty
    • remote alert endpoints configured (simulation mode is DEGRADED)
    • contact book non-empty

A failed store is UNHEALTHY: contacts, triggers and history would not
persist. The others only degrade the response.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings
from backend.app.spatial.geo_index import ServiceCategory

if TYPE_CHECKING:
    from backend.app.runtime import EmergencyRuntime

logger = logging.getLogger(__name__)

_PROBE_KEY = "health_probe"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_store(runtime: "EmergencyRuntime") -> ComponentHealth:
    """Write, read back and remove a probe key."""
    comp = ComponentHealth(name="store", details={"backend": settings.STORE_BACKEND})
    start = time.monotonic()
    try:
        await runtime.store.set(_PROBE_KEY, b"ok")
        ok = await runtime.store.get(_PROBE_KEY) == b"ok"
        await runtime.store.remove(_PROBE_KEY)
        if ok:
            comp.message = "Read/write OK"
        else:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "Probe value mismatch"
    except Exception as e:
        logger.error("Store health probe failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_registry(runtime: "EmergencyRuntime") -> ComponentHealth:
    counts = {c.value: len(runtime.geo_index.services(c)) for c in ServiceCategory}
    comp = ComponentHealth(name="service_registry", details=counts)
    if not len(runtime.geo_index):
        comp.status = HealthStatus.DEGRADED
        comp.message = "No services registered"
    else:
        comp.message = f"{len(runtime.geo_index)} services"
    return comp


def check_remote_endpoints(runtime: "EmergencyRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="remote_endpoints")
    primary = runtime.dispatcher.primary
    primary_url = getattr(primary, "url", None) if primary is not None else None
    comp.details = {
        "primary": primary_url or "simulation",
        "fallbacks": len(runtime.dispatcher.fallbacks),
    }
    if primary is None or (hasattr(primary, "url") and primary_url is None):
        comp.status = HealthStatus.DEGRADED
        comp.message = "Primary alert endpoint not configured (simulation mode)"
    return comp


def check_contacts(runtime: "EmergencyRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="contacts", details={"count": len(runtime.contacts)})
    if not len(runtime.contacts):
        comp.status = HealthStatus.DEGRADED
        comp.message = "No emergency contacts"
    return comp


async def run_health_check(runtime: "EmergencyRuntime") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_store(runtime))
    report.components.append(check_registry(runtime))
    report.components.append(check_remote_endpoints(runtime))
    report.components.append(check_contacts(runtime))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
