"""
Health check aggregation — probes for every collaborator the pipeline needs.

Checks:
    • Reference data loaded (thresholds available for evaluation)
    • Rate-limit store reachable (in-memory or Redis)
    • Channel senders configured (email provider, push endpoint)

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
from typing import TYPE_CHECKING, Any, Dict, List

from backend.hazardwatch.core.config import settings

if TYPE_CHECKING:
    from backend.hazardwatch.api.deps import ServiceContainer

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


async def check_reference_data(services: "ServiceContainer") -> ComponentHealth:
    """Thresholds must be loaded before statuses can be evaluated."""
    comp = ComponentHealth(name="reference_data")
    start = time.monotonic()
    snapshot = services.reference.snapshot
    comp.details = {**snapshot.summary(), "version": services.reference.version}
    if services.reference.is_loaded:
        comp.message = "Reference snapshot loaded"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No thresholds loaded; every lookup falls through to danger"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_rate_limit_store(services: "ServiceContainer") -> ComponentHealth:
    """Sign-in must not run unthrottled."""
    comp = ComponentHealth(name="rate_limit_store")
    start = time.monotonic()
    store = services.rate_limiter.store
    comp.details = {"backend": type(store).__name__}
    try:
        reachable = await store.ping()
    except Exception as e:
        reachable = False
        comp.message = str(e)

    if reachable:
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = comp.message or "Store unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(services: "ServiceContainer") -> ComponentHealth:
    """Senders configured (not reachability; providers are not pinged)."""
    comp = ComponentHealth(name="channels")
    start = time.monotonic()
    email = services.dispatcher.email_sender
    push = services.dispatcher.push_sender
    comp.details = {
        "email": {"provider": email.name, "configured": email.is_configured},
        "push": {"provider": push.name, "configured": push.is_configured},
    }
    missing = [n for n, s in (("email", email), ("push", push)) if not s.is_configured]
    if missing:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Unconfigured channels: {', '.join(missing)}"
    else:
        comp.message = "All channels configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(services: "ServiceContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_reference_data, check_rate_limit_store, check_channels):
        report.components.append(await check(services))

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
