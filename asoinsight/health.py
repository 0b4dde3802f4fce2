"""Liveness and readiness endpoints for the analytics service.

``/health`` answers as long as the process is serving. ``/ready`` also checks
the authorization store, the shared cache when Redis is the backend, and that
warehouse credentials are configured.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field as dataclass_field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Response, status
from pydantic import BaseModel, Field
from sqlalchemy import text

from .config import settings


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


class ComponentHealth(BaseModel):
    """Health status for a single dependency."""
    name: str
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HealthCheckResponse(BaseModel):
    status: HealthStatus
    service: str
    version: str = "1.0.0"
    uptime_seconds: float
    checks: List[ComponentHealth]
    metadata: Dict[str, Any] = Field(default_factory=dict)


@dataclass
class HealthChecker:
    service_name: str
    version: str = "1.0.0"
    startup_time: float = dataclass_field(default_factory=time.time)

    def __post_init__(self):
        self.check_timeout = settings.health_check_timeout

    async def check_postgres(self) -> ComponentHealth:
        """Authorization store connectivity."""
        from .database import get_postgres_session_maker

        start = time.time()
        try:
            async with get_postgres_session_maker()() as session:
                await session.execute(text("SELECT 1"))
            return ComponentHealth(
                name="postgres",
                status=HealthStatus.HEALTHY,
                latency_ms=round((time.time() - start) * 1000, 2),
            )
        except Exception as e:
            return ComponentHealth(
                name="postgres",
                status=HealthStatus.UNHEALTHY,
                message="Authorization store unreachable",
                latency_ms=round((time.time() - start) * 1000, 2),
                metadata={"error": type(e).__name__},
            )

    async def check_redis(self) -> ComponentHealth:
        from .database import get_redis_client

        start = time.time()
        try:
            await get_redis_client().ping()
            return ComponentHealth(
                name="redis",
                status=HealthStatus.HEALTHY,
                latency_ms=round((time.time() - start) * 1000, 2),
            )
        except Exception as e:
            # Cache errors are served as misses, so requests still succeed
            return ComponentHealth(
                name="redis",
                status=HealthStatus.DEGRADED,
                message="Shared cache unreachable",
                latency_ms=round((time.time() - start) * 1000, 2),
                metadata={"error": type(e).__name__},
            )

    async def check_warehouse(self) -> ComponentHealth:
        # Configuration only; a probe query would cost warehouse slots on every poll
        if settings.bigquery_credentials:
            return ComponentHealth(name="warehouse", status=HealthStatus.HEALTHY)
        return ComponentHealth(
            name="warehouse",
            status=HealthStatus.UNHEALTHY,
            message="Warehouse credentials not configured",
        )

    async def run_check_with_timeout(
        self,
        check_func: Callable,
        timeout: float = None,
        on_timeout: HealthStatus = HealthStatus.UNHEALTHY,
    ) -> ComponentHealth:
        timeout = timeout or self.check_timeout
        try:
            return await asyncio.wait_for(check_func(), timeout=timeout)
        except asyncio.TimeoutError:
            return ComponentHealth(
                name=check_func.__name__.replace("check_", ""),
                status=on_timeout,
                message=f"Health check timeout after {timeout}s",
            )

    async def health(self) -> HealthCheckResponse:
        uptime = round(time.time() - self.startup_time, 2)
        return HealthCheckResponse(
            status=HealthStatus.HEALTHY,
            service=self.service_name,
            version=self.version,
            uptime_seconds=uptime,
            checks=[ComponentHealth(
                name="service",
                status=HealthStatus.HEALTHY,
                message=f"{self.service_name} is running",
            )],
            metadata={"environment": settings.environment},
        )

    async def ready(self) -> HealthCheckResponse:
        checks = [(self.check_postgres, HealthStatus.UNHEALTHY), (self.check_warehouse, HealthStatus.UNHEALTHY)]
        if settings.cache_enabled and settings.cache_backend == "redis":
            checks.append((self.check_redis, HealthStatus.DEGRADED))

        results = await asyncio.gather(*(
            self.run_check_with_timeout(check, on_timeout=on_timeout) for check, on_timeout in checks
        ))
        statuses = {r.status for r in results}
        if HealthStatus.UNHEALTHY in statuses:
            overall = HealthStatus.UNHEALTHY
        elif HealthStatus.DEGRADED in statuses:
            overall = HealthStatus.DEGRADED
        else:
            overall = HealthStatus.HEALTHY
        return HealthCheckResponse(
            status=overall,
            service=self.service_name,
            version=self.version,
            uptime_seconds=round(time.time() - self.startup_time, 2),
            checks=list(results),
            metadata={
                "environment": settings.environment,
                "timestamp_iso": datetime.now(timezone.utc).isoformat(),
            },
        )


def setup_health_endpoints(app: FastAPI, service_name: str, version: str = "1.0.0") -> HealthChecker:
    """Register ``GET /health`` (liveness) and ``GET /ready`` (readiness) on ``app``."""
    checker = HealthChecker(service_name=service_name, version=version)

    @app.get("/health", tags=["Health"], response_model=HealthCheckResponse)
    async def health_endpoint():
        return await checker.health()

    @app.get("/ready", tags=["Health"], response_model=HealthCheckResponse)
    async def readiness_endpoint(response: Response):
        result = await checker.ready()
        if result.status == HealthStatus.UNHEALTHY:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return result

    return checker
