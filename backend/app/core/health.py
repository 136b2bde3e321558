"""
Health check aggregation — deep health probe for the alert pipeline.

Checks:
    • Database connectivity (SELECT 1 through the session factory)
    • WhatsApp provider configuration (sender, API key, timeouts)
    • Delivery queue (workers running, ready / delayed / in-flight depth)

Returns a structured health report suitable for:
    - Load balancer health checks (``/healthz`` stays trivial)
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.app.notifications.runtime import AlertRuntime

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
    version: str
    environment: str
    status: HealthStatus = HealthStatus.HEALTHY
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


async def check_database(runtime: AlertRuntime) -> ComponentHealth:
    comp = ComponentHealth(name="database")
    start = time.monotonic()
    try:
        async with runtime.session_factory() as session:
            await session.execute(text("SELECT 1"))
        comp.message = "Connection available"
        comp.details = {"url": runtime.settings.DATABASE_URL.split("@")[-1]}
    except (SQLAlchemyError, OSError) as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_provider(runtime: AlertRuntime) -> ComponentHealth:
    """Configuration only; no request is sent to the provider."""
    comp = ComponentHealth(name="whatsapp_provider")
    start = time.monotonic()
    comp.details = runtime.client.describe()

    missing = [
        name for name, ok in (
            ("sender", comp.details["sender_configured"]),
            ("api_key", comp.details["api_key_configured"]),
        ) if not ok
    ]
    if missing:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Missing configuration: {', '.join(missing)}"
    else:
        comp.message = "Provider configured"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_queue(runtime: AlertRuntime) -> ComponentHealth:
    comp = ComponentHealth(name="delivery_queue")
    start = time.monotonic()
    comp.details = runtime.queue.stats()
    if not runtime.queue.running:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Delivery workers are not running"
    else:
        comp.message = f"{comp.details['ready']} ready, {comp.details['delayed']} delayed"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(runtime: AlertRuntime) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        version=runtime.settings.APP_VERSION,
        environment=runtime.settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_database(runtime),
        check_provider(runtime),
        check_queue(runtime),
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
