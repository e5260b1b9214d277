"""
Deep health probe for the impact service.

    database   SELECT 1 through the engine     failure → unhealthy
    sms        gateway.is_configured()         missing → degraded
    email      gateway.is_configured()         missing → degraded
    push       gateway.is_configured()         missing → degraded

A degraded service still records alerts; only sends on the unconfigured
channel fail. An unreachable database makes /health answer 503.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from stormwatch.app.core.config import settings

logger = logging.getLogger(__name__)

_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @classmethod
    def worst(cls, statuses: Iterable["HealthStatus"]) -> "HealthStatus":
        ranked = [cls.HEALTHY, cls.DEGRADED, cls.UNHEALTHY]
        return max(statuses, key=ranked.index, default=cls.HEALTHY)


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"name": self.name, "status": self.status.value}
        if self.latency_ms:
            out["latency_ms"] = round(self.latency_ms, 2)
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.worst(c.status for c in self.components)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "checked_at": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


async def check_database(engine: AsyncEngine) -> ComponentHealth:
    started = time.monotonic()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Database health check failed: %s", exc)
        return ComponentHealth(
            "database", HealthStatus.UNHEALTHY,
            latency_ms=(time.monotonic() - started) * 1000, message=str(exc),
        )
    return ComponentHealth(
        "database",
        latency_ms=(time.monotonic() - started) * 1000,
        details={"dialect": engine.dialect.name},
    )


def check_gateway(channel: str, gateway: Any) -> ComponentHealth:
    status = gateway.status()
    if not gateway.is_configured():
        return ComponentHealth(
            channel, HealthStatus.DEGRADED,
            message=f"{gateway.name} gateway not configured; {channel} sends will fail",
            details=status,
        )
    return ComponentHealth(channel, details=status)


async def run_health_check(engine: AsyncEngine, gateways: Mapping[str, Any]) -> HealthReport:
    report = HealthReport()
    report.components.append(await check_database(engine))
    report.components.extend(check_gateway(name, gw) for name, gw in gateways.items())
    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s: %s", report.status.value, [
            c.name for c in report.components if c.status != HealthStatus.HEALTHY
        ])
    return report
