"""
Start/stop/health plumbing shared by the keeper's long-running components.

TxQueue, HeartbeatPinger and KeeperApp subclass BaseComponent and override
the _do_* hooks; the public start/stop are idempotent and log transitions.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import structlog

log = structlog.get_logger()


class HealthStatus(str, Enum):
    """Component health, ordered from best to worst."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


@dataclass
class HealthCheckResult:
    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.HEALTHY, message=message, details=details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.DEGRADED, message=message, details=details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(status=HealthStatus.UNHEALTHY, message=message, details=details)

    @property
    def ok(self) -> bool:
        return self.status == HealthStatus.HEALTHY


def worst_status(results: Iterable[HealthCheckResult]) -> HealthStatus:
    """Most severe status among the results (HEALTHY when empty)."""
    status = HealthStatus.HEALTHY
    for result in results:
        if result.status.severity > status.severity:
            status = result.status
    return status


class BaseComponent:
    """Idempotent start/stop with uptime tracking.

    Subclasses override _do_start, _do_stop and optionally _do_health_check.
    A failing _do_start leaves the component stopped and re-raises.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name or self.__class__.__name__
        self._running = False
        self._started_at: Optional[float] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def uptime_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    async def start(self) -> None:
        if self._running:
            return
        try:
            await self._do_start()
        except Exception as e:
            log.error("component_start_failed", component=self._name, error=str(e))
            raise
        self._running = True
        self._started_at = time.monotonic()
        log.debug("component_started", component=self._name)

    async def stop(self) -> None:
        if not self._running:
            return
        try:
            await self._do_stop()
        finally:
            self._running = False
            log.debug("component_stopped", component=self._name)

    async def health_check(self) -> HealthCheckResult:
        if not self._running:
            return HealthCheckResult.unhealthy(f"{self._name} not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
