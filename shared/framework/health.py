"""
Liveness, readiness and dependency health for a service.

A service is *unhealthy* when a critical check fails and *degraded*
when only optional dependencies (for the processor: the store and the
cache) are failing. Degraded services stay ready, since the processing
loop tolerates those outages on its own.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from .config import VALID_ENVIRONMENTS


logger = structlog.get_logger(__name__)


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheck:
    """A named probe; ``check_func`` may be sync or async and returns truthiness."""
    name: str
    check_func: Callable[[], Union[bool, Awaitable[bool]]]
    timeout: float = 5.0
    critical: bool = True
    description: Optional[str] = None


class HealthChecker:
    """Runs the registered checks and aggregates them into one status."""

    def __init__(self, config):
        self.config = config
        self.checks: List[HealthCheck] = []
        self.last_status: Optional[HealthStatus] = None

        self.add_check(
            HealthCheck(
                name="config",
                check_func=self._check_config,
                description="Service configuration is usable",
            )
        )

    def add_check(self, check: HealthCheck) -> None:
        self.checks.append(check)
        logger.debug("Added health check", name=check.name, critical=check.critical)

    async def _probe(self, check: HealthCheck) -> bool:
        result = check.check_func()
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def _run_one(self, check: HealthCheck) -> Dict[str, Any]:
        started = time.perf_counter()
        entry: Dict[str, Any] = {
            "description": check.description,
            "critical": check.critical,
        }
        try:
            healthy = await asyncio.wait_for(self._probe(check), timeout=check.timeout)
        except asyncio.TimeoutError:
            logger.warning("Health check timed out", name=check.name, timeout=check.timeout)
            healthy, entry["error"] = False, "timeout"
        except Exception as exc:
            logger.error("Health check raised", name=check.name, error=str(exc))
            healthy, entry["error"] = False, str(exc)

        entry["status"] = HealthStatus.HEALTHY.value if healthy else HealthStatus.UNHEALTHY.value
        entry["duration_ms"] = (time.perf_counter() - started) * 1000
        return entry

    async def check_health(self) -> Dict[str, Any]:
        """Run every check in registration order and aggregate the results."""
        results = {check.name: await self._run_one(check) for check in self.checks}

        failed = [check for check in self.checks if results[check.name]["status"] != "healthy"]
        critical_failures = sum(1 for check in failed if check.critical)
        if critical_failures:
            status = HealthStatus.UNHEALTHY
        elif failed:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY
        self.last_status = status

        return {
            "healthy": status is not HealthStatus.UNHEALTHY,
            "status": status.value,
            "checks": results,
            "critical_failures": critical_failures,
            "total_checks": len(self.checks),
            "timestamp": time.time(),
        }

    async def check_readiness(self) -> Dict[str, Any]:
        health = await self.check_health()
        ready = health["critical_failures"] == 0
        return {
            "ready": ready,
            "status": "ready" if ready else "not_ready",
            "health": health,
            "timestamp": health["timestamp"],
        }

    def _check_config(self) -> bool:
        return bool(self.config.service_name) and self.config.environment in VALID_ENVIRONMENTS
