"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Storage backend reachability (in-memory or SQL)
    • Realtime transport (WebSocket manager or Redis)
    • Channel provider configuration

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
from typing import Any, Dict, List

from backend.app.core.config import settings

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


async def check_storage(storage) -> ComponentHealth:
    """Run a cheap read against the storage backend."""
    comp = ComponentHealth(name="storage")
    start = time.monotonic()
    try:
        await storage.list_incidents()
        comp.message = f"{type(storage).__name__} available"
        comp.details = {"backend": settings.STORAGE_BACKEND}
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_realtime(publisher, connections) -> ComponentHealth:
    """Ping Redis when it carries events, otherwise report socket count."""
    comp = ComponentHealth(name="realtime")
    start = time.monotonic()
    comp.details = {"backend": settings.REALTIME_BACKEND, "clients": connections.client_count}
    client = getattr(publisher, "client", None)
    if client is not None:
        try:
            await client.ping()
            comp.message = "Redis pub/sub available"
        except Exception as e:
            # Local sockets still receive events published by this worker
            comp.status = HealthStatus.DEGRADED
            comp.message = str(e)
    else:
        comp.message = "WebSocket manager available"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_channels(providers) -> ComponentHealth:
    """Report provider mode per channel; simulation is degraded in production."""
    comp = ComponentHealth(name="channels")
    modes = {channel.value: provider.mode for channel, provider in providers.items()}
    comp.details = modes
    simulated = [name for name, mode in modes.items() if mode == "simulation"]
    if simulated and settings.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Simulated channels: {', '.join(simulated)}"
    else:
        comp.message = "Channel providers configured"
    return comp


async def run_health_check(services) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_storage(services.storage),
        check_realtime(services.publisher, services.connections),
        check_channels(services.dispatcher.providers),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
