"""Heartbeat pinger for an external uptime monitor.

GETs the configured URL every interval. A failed ping is logged and counted,
never fatal.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx
import structlog

from keeper.core.lifecycle import BaseComponent, HealthCheckResult
from keeper.services.metrics import KeeperMetrics

log = structlog.get_logger()

DEFAULT_TIMEOUT = 10.0


class HeartbeatPinger(BaseComponent):
    """Periodic liveness ping."""

    def __init__(
        self,
        url: str,
        interval: float = 60.0,
        timeout: float = DEFAULT_TIMEOUT,
        metrics: Optional[KeeperMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name="Heartbeat")
        self._url = url
        self._interval = interval
        self._timeout = timeout
        self._metrics = metrics
        self._sleep = sleep
        self._client = client
        self._owns_client = client is None
        self._task: Optional[asyncio.Task] = None
        self._log = log.bind(component="heartbeat")

        self._successes = 0
        self._failures = 0

    @property
    def successes(self) -> int:
        return self._successes

    @property
    def failures(self) -> int:
        return self._failures

    async def _do_start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        self._task = asyncio.create_task(self._loop(), name="heartbeat")
        self._log.info("heartbeat_started", url=self._url, interval=self._interval)

    async def _do_stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._log.info("heartbeat_stopped", successes=self._successes, failures=self._failures)

    async def _do_health_check(self) -> HealthCheckResult:
        if self._failures and not self._successes:
            return HealthCheckResult.degraded("No successful heartbeat yet", failures=self._failures)
        return HealthCheckResult.healthy(successes=self._successes, failures=self._failures)

    async def _loop(self) -> None:
        while True:
            await self.ping()
            await self._sleep(self._interval)

    async def ping(self) -> bool:
        """Send one heartbeat. Returns True on a 2xx response."""
        try:
            response = await self._client.get(self._url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._failures += 1
            self._log.warning("heartbeat_failed", error=str(e))
            if self._metrics:
                self._metrics.record_heartbeat(False)
            return False

        self._successes += 1
        self._log.debug("heartbeat_sent", status=response.status_code)
        if self._metrics:
            self._metrics.record_heartbeat(True)
        return True
