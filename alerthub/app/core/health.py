"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Alert store connectivity (SELECT 1 through the session factory)
    • Snapshot cache (Redis) — optional, degraded when configured but down
    • Fan-out broadcaster (session counts, overflow pressure)
    • Expiry reclaimer (background task alive)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from alerthub.app.alerts.reclaimer import ExpiryReclaimer
from alerthub.app.alerts.service import AlertService
from alerthub.app.core import cache
from alerthub.app.core.config import settings
from alerthub.app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)


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


async def check_store(service: AlertService) -> ComponentHealth:
    """Alert store round-trip."""
    comp = ComponentHealth(name="alert_store")
    start = time.monotonic()
    try:
        await service.store.ping()
        comp.message = "Store reachable"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except StoreUnavailable as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = e.message
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_cache() -> ComponentHealth:
    """Redis snapshot cache (optional)."""
    comp = ComponentHealth(name="snapshot_cache")
    start = time.monotonic()
    reachable = await cache.cache_ping()
    if reachable is None:
        comp.message = "Cache disabled (REDIS_URL not set)"
    elif reachable:
        comp.message = "Cache available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache configured but unreachable; stale reads unavailable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_broadcaster(service: AlertService) -> ComponentHealth:
    """Live session registry."""
    comp = ComponentHealth(name="broadcaster")
    stats = service.broadcaster.stats()
    comp.details = stats
    comp.message = f"{stats['sessions']} live sessions"
    return comp


async def check_reclaimer(reclaimer: Optional[ExpiryReclaimer]) -> ComponentHealth:
    comp = ComponentHealth(name="expiry_reclaimer")
    if reclaimer is None or not reclaimer.is_running:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Reclaimer not running; expired rows accumulate (reads unaffected)"
    else:
        comp.message = "Reclaimer running"
        comp.details = reclaimer.stats()
    return comp


async def run_health_check(
    service: AlertService,
    reclaimer: Optional[ExpiryReclaimer] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_store(service),
        check_cache(),
        check_broadcaster(service),
        check_reclaimer(reclaimer),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
