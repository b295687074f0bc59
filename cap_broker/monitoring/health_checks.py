"""Health checks for the broker's external dependencies."""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health check status values."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"
    UNKNOWN = "unknown"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    name: str
    status: HealthStatus
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'name': self.name,
            'status': self.status.value,
            'message': self.message,
            'details': self.details,
            'timestamp': self.timestamp.isoformat(),
            'duration_ms': round(self.duration_ms, 2)
        }


@dataclass
class SystemHealthSummary:
    """Aggregate of every registered check."""
    overall_status: HealthStatus
    check_results: List[HealthCheckResult] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.overall_status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.overall_status.value,
            'checks': {result.name: result.to_dict() for result in self.check_results}
        }


class HealthCheck(ABC):
    """Abstract base class for health checks."""

    def __init__(self, name: str, timeout_seconds: float = 30.0):
        """Initialize health check.

        Args:
            name: Name of the health check
            timeout_seconds: Timeout for the health check
        """
        self.name = name
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def check(self) -> HealthCheckResult:
        """Perform the health check."""
        pass

    async def run_check(self) -> HealthCheckResult:
        """Run the health check with timeout and error handling."""
        start_time = time.monotonic()

        try:
            result = await asyncio.wait_for(self.check(), timeout=self.timeout_seconds)
            result.duration_ms = (time.monotonic() - start_time) * 1000
            return result

        except asyncio.TimeoutError:
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Health check timed out after {self.timeout_seconds}s",
                duration_ms=(time.monotonic() - start_time) * 1000
            )
        except Exception as e:
            logger.error(f"Health check {self.name} failed: {e}")
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.UNHEALTHY,
                message="Health check failed",
                details={'error_type': type(e).__name__},
                duration_ms=(time.monotonic() - start_time) * 1000
            )


class StoreHealthCheck(HealthCheck):
    """Health check for state store connectivity."""

    def __init__(self, store, timeout_seconds: float = 10.0):
        super().__init__("database", timeout_seconds=timeout_seconds)
        self.store = store

    async def check(self) -> HealthCheckResult:
        backend = type(self.store).__name__
        if await self.store.ping():
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.HEALTHY,
                message="State store reachable",
                details={'backend': backend}
            )
        return HealthCheckResult(
            name=self.name,
            status=HealthStatus.UNHEALTHY,
            message="State store unreachable",
            details={'backend': backend}
        )


class UpstreamHealthCheck(HealthCheck):
    """Health check for the upstream provisioning API."""

    def __init__(self, upstream, timeout_seconds: float = 30.0):
        super().__init__("upstream", timeout_seconds=timeout_seconds)
        self.upstream = upstream

    async def check(self) -> HealthCheckResult:
        if await self.upstream.ping():
            return HealthCheckResult(
                name=self.name,
                status=HealthStatus.HEALTHY,
                message="Upstream provisioning API reachable"
            )
        return HealthCheckResult(
            name=self.name,
            status=HealthStatus.UNHEALTHY,
            message="Upstream provisioning API unreachable"
        )


class HealthCheckManager:
    """Manages and executes health checks."""

    def __init__(self):
        self.health_checks: Dict[str, HealthCheck] = {}
        self.last_results: Dict[str, HealthCheckResult] = {}

    def register_health_check(self, health_check: HealthCheck):
        """Register a health check."""
        self.health_checks[health_check.name] = health_check
        logger.debug(f"Registered health check: {health_check.name}")

    async def run_all_health_checks(self) -> SystemHealthSummary:
        """Run all registered health checks concurrently."""
        if not self.health_checks:
            return SystemHealthSummary(overall_status=HealthStatus.UNKNOWN)

        results = await asyncio.gather(
            *(health_check.run_check() for health_check in self.health_checks.values())
        )

        for result in results:
            self.last_results[result.name] = result

        statuses = {result.status for result in results}
        if HealthStatus.UNHEALTHY in statuses:
            overall_status = HealthStatus.DEGRADED
        elif HealthStatus.DEGRADED in statuses:
            overall_status = HealthStatus.DEGRADED
        elif HealthStatus.UNKNOWN in statuses:
            overall_status = HealthStatus.UNKNOWN
        else:
            overall_status = HealthStatus.HEALTHY

        return SystemHealthSummary(overall_status=overall_status, check_results=list(results))
