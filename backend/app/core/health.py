"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Database connectivity (SELECT 1 through the async engine)
    • Each notification channel (provider verify via check_channels)

Aggregation:

    Component state                          Report status
    ─────────────────────────────────────    ─────────────
    database down                            unhealthy
    no channel connected                     unhealthy
    some channel in error / unavailable      degraded
    everything up                            healthy

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.alerts.notification_service import NotificationEngine

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


# Track application start time
_start_time = time.monotonic()


async def check_database(ping: Callable[[], Awaitable[None]]) -> ComponentHealth:
    """Round-trip a trivial query through the connection pool."""
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        await ping()
        comp.message = "Connection pool available"
        comp.details = {"url": settings.DATABASE_URL.split("@")[-1]}
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e) or type(e).__name__
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(engine: Optional["NotificationEngine"]) -> List[ComponentHealth]:
    """One component per notification channel."""
    if engine is None:
        return [ComponentHealth(
            name="notification_engine",
            status=HealthStatus.UNHEALTHY,
            message="Notification engine not initialised",
        )]

    start = time.monotonic()
    report = await engine.check_channels()
    latency_ms = (time.monotonic() - start) * 1000

    components = []
    for channel, entry in report.items():
        comp = ComponentHealth(name=f"channel:{channel}", latency_ms=latency_ms)
        if entry["status"] == "connected":
            comp.message = f"{entry.get('provider', 'provider')} connected"
        else:
            comp.status = HealthStatus.DEGRADED
            comp.message = entry.get("error", entry["status"])
        comp.details = {k: v for k, v in entry.items() if k != "error"}
        components.append(comp)

    if components and all(c.status != HealthStatus.HEALTHY for c in components):
        components.append(ComponentHealth(
            name="notification_delivery",
            status=HealthStatus.UNHEALTHY,
            message="No notification channel is connected",
        ))
    return components


async def run_health_check(
    engine: Optional["NotificationEngine"],
    ping: Callable[[], Awaitable[None]],
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_database(ping))
    report.components.extend(await check_channels(engine))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
