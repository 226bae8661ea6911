"""
Health check service for the tracking engine host.

Readiness checks the delivery sink and the driving session store, each
with a timeout, and reports whether the engine itself is running. Response
times are included for every dependency.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# The engine queues while sinks are down, so only its own state is critical.
CRITICAL_DEPENDENCIES = frozenset({"engine"})


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "transmitter", "session_store")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    """Overall health status: "healthy", "degraded" or "unhealthy"."""
    status: str
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat().replace("+00:00", "Z"),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthCheckService:
    """
    Service for checking the health of the engine and its sinks.

    Attributes:
        engine: The TrackingEngine (anything exposing ``running``)
        transmitter: Sync pipeline sink exposing ``async health_check()``
        session_store: Session store exposing ``async health_check()``
        check_timeout: Timeout in seconds for each dependency check
    """

    def __init__(
        self,
        engine: Any = None,
        transmitter: Optional[Any] = None,
        session_store: Optional[Any] = None,
        check_timeout: float = 5.0
    ):
        self.engine = engine
        self.transmitter = transmitter
        self.session_store = session_store
        self.check_timeout = check_timeout

    async def check_readiness(self) -> HealthStatus:
        """
        Check every configured dependency concurrently.

        Returns:
            HealthStatus: The aggregate status with one entry per dependency
        """
        check_tasks = [self._check_engine()]
        if self.transmitter is not None:
            check_tasks.append(self._check_dependency("transmitter", self.transmitter.health_check))
        if self.session_store is not None:
            check_tasks.append(self._check_dependency("session_store", self.session_store.health_check))

        dependencies = list(await asyncio.gather(*check_tasks))
        return HealthStatus(
            status=self._determine_overall_status(dependencies),
            timestamp=_utc_now(),
            dependencies=dependencies
        )

    async def check_liveness(self) -> dict[str, Any]:
        """Process is up; dependencies are not checked."""
        return {
            "status": "alive",
            "timestamp": _utc_now().isoformat().replace("+00:00", "Z")
        }

    async def check_health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": _utc_now().isoformat().replace("+00:00", "Z")
        }

    async def _check_engine(self) -> DependencyHealth:
        running = bool(self.engine is not None and self.engine.running)
        return DependencyHealth(
            name="engine",
            healthy=running,
            response_time_ms=0.0,
            error=None if running else "Tracking engine is not running"
        )

    async def _check_dependency(
        self,
        name: str,
        health_check: Callable[[], Awaitable[bool]]
    ) -> DependencyHealth:
        """
        Run ``health_check`` with the configured timeout.

        Returns:
            DependencyHealth: Healthy only when the check returned True in time
        """
        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(health_check(), timeout=self.check_timeout)
            elapsed_ms = (time.perf_counter() - start_time) * 1000

            if result:
                logger.debug(f"{name} health check passed in {elapsed_ms:.2f}ms")
                return DependencyHealth(name=name, healthy=True, response_time_ms=elapsed_ms)

            logger.warning(f"{name} health check returned False after {elapsed_ms:.2f}ms")
            return DependencyHealth(
                name=name,
                healthy=False,
                response_time_ms=elapsed_ms,
                error=f"{name} health check returned False"
            )

        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"{name} health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(name=name, healthy=False, response_time_ms=elapsed_ms, error=error_msg)

        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"{name} health check failed: {str(e)}"
            logger.error(error_msg)
            return DependencyHealth(name=name, healthy=False, response_time_ms=elapsed_ms, error=error_msg)

    def _determine_overall_status(self, dependencies: list[DependencyHealth]) -> str:
        """
        "healthy" when all pass, "unhealthy" when a critical dependency
        fails, otherwise "degraded".
        """
        unhealthy = [dep.name for dep in dependencies if not dep.healthy]
        if not unhealthy:
            return "healthy"
        if any(name in CRITICAL_DEPENDENCIES for name in unhealthy):
            return "unhealthy"
        return "degraded"
