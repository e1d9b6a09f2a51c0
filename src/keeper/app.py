"""
Keeper application lifecycle and component wiring.

Builds the ledger client, signing actor, transaction queue, router and
market controller from configuration, and shuts them down in order:
1. Stop scheduling new work (controller timers, subscription)
2. Wait for queued and in-flight transactions to go out
3. Stop the queue consumer and heartbeat
4. Close the ledger client
"""
import asyncio
from typing import Any, Callable, Optional

from keeper import __version__
from keeper.core.config import ConfigManager, KeeperSettings
from keeper.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus, worst_status
from keeper.core.logging import bind_keeper_context, get_logger
from keeper.core.retry import retry_forever
from keeper.core.shutdown import ShutdownManager, ShutdownProgress
from keeper.integrations.chain import LedgerClient, LogSubscription, NonceActor
from keeper.services.controller import MarketController
from keeper.services.heartbeat import HeartbeatPinger
from keeper.services.metrics import KeeperMetrics
from keeper.services.router import EventRouter
from keeper.services.tx_queue import TxQueue


class KeeperApp(BaseComponent):
    """Main keeper application.

    Usage:
        app = KeeperApp(ConfigManager(Path("config/default.toml")))
        await app.run_forever()  # until SIGTERM/SIGINT

    Raises:
        ConfigurationError: From the constructor when required settings are missing.
    """

    def __init__(
        self,
        config: ConfigManager,
        settings: Optional[KeeperSettings] = None,
    ) -> None:
        super().__init__(name="KeeperApp")
        self._config = config
        self._settings = settings or KeeperSettings.from_config(config)
        self._log = get_logger("app")
        s = self._settings

        self._metrics = KeeperMetrics()

        self._ledger = LedgerClient(
            rpc_url=s.rpc_url,
            infra_market_address=s.infra_market_address,
            batch_sweeper_address=s.batch_sweeper_address,
            start_block=s.start_block,
        )
        self._actor = NonceActor(self._ledger, s.private_key)
        self._tx_queue = TxQueue(
            self._ledger,
            self._actor,
            gas_ratio=s.gas_ratio,
            confirmations=s.confirmations,
            receipt_timeout=s.receipt_timeout_seconds,
            failure_pause=s.failure_pause_seconds,
            metrics=self._metrics,
        )
        self._subscription = LogSubscription(
            s.wss_url,
            s.infra_market_address,
            reconnect_delay=s.reconnect_delay_seconds,
        )
        self._router = EventRouter(self._ledger, self._subscription, metrics=self._metrics)
        self._controller = MarketController(
            self._ledger,
            self._tx_queue,
            self._router,
            margin=s.timer_margin_seconds,
            retry_interval=s.retry_interval_seconds,
            metrics=self._metrics,
        )
        self._subscription.set_on_reconnect(self._controller.request_resync)

        self._heartbeat: Optional[HeartbeatPinger] = None
        if s.heartbeat_url:
            self._heartbeat = HeartbeatPinger(
                s.heartbeat_url,
                interval=s.heartbeat_interval_seconds,
                metrics=self._metrics,
            )

        self._shutdown_manager = ShutdownManager(
            timeout_seconds=config.get_float("keeper.shutdown_timeout_seconds", 30.0),
            drain_timeout_seconds=config.get_float(
                "keeper.drain_timeout_seconds", s.receipt_timeout_seconds + 30.0
            ),
        )

    @property
    def settings(self) -> KeeperSettings:
        return self._settings

    @property
    def metrics(self) -> KeeperMetrics:
        return self._metrics

    @property
    def controller(self) -> MarketController:
        return self._controller

    @property
    def tx_queue(self) -> TxQueue:
        return self._tx_queue

    @property
    def shutdown_manager(self) -> ShutdownManager:
        return self._shutdown_manager

    @property
    def shutdown_progress(self) -> ShutdownProgress:
        return self._shutdown_manager.progress

    async def _do_start(self) -> None:
        s = self._settings
        bind_keeper_context(actor=self._actor.address)
        self._log.info(
            "starting_keeper",
            version=__version__,
            infra_market=s.infra_market_address,
        )
        self._configure_shutdown_manager()

        async for attempt in retry_forever(s.retry_interval_seconds, operation="connect"):
            with attempt:
                await self._ledger.connect()
        async for attempt in retry_forever(s.retry_interval_seconds, operation="base_nonce"):
            with attempt:
                await self._actor.initialize()

        if s.metrics_port:
            self._metrics.serve(s.metrics_port)
            self._log.info("metrics_server_started", port=s.metrics_port)

        await self._tx_queue.start()
        if self._heartbeat is not None:
            await self._heartbeat.start()

        self._shutdown_manager.install_signal_handlers()

        await self._controller.init()
        self._log.info("keeper_started", markets=len(self._controller.markets))

    def _configure_shutdown_manager(self) -> None:
        self._shutdown_manager.on_stop_new_work(self._controller.destroy)
        self._shutdown_manager.set_in_flight_tracker(self._tx_queue.outstanding)
        self._shutdown_manager.on_close_connections(self._tx_queue.stop)
        if self._heartbeat is not None:
            self._shutdown_manager.on_close_connections(self._heartbeat.stop)
        self._shutdown_manager.on_cleanup(self._wrap_callback(self._flush_metrics))
        self._shutdown_manager.on_cleanup(self._ledger.close)

    def _wrap_callback(self, callback: Callable[[], Any]) -> Callable[[], Any]:
        """Wrap a callback to handle both sync and async functions."""
        async def wrapped() -> None:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        return wrapped

    def _flush_metrics(self) -> None:
        self._metrics.update_uptime(self.uptime_seconds)

    async def _do_stop(self) -> None:
        self._log.info("stopping_keeper")

        if not self._shutdown_manager.progress.is_shutting_down:
            await self._shutdown_manager.shutdown()
        else:
            await self._shutdown_manager.wait_for_shutdown()

        self._shutdown_manager.remove_signal_handlers()
        self._log.info(
            "keeper_stopped",
            shutdown_progress=self._shutdown_manager.progress.to_dict(),
        )

    async def _do_health_check(self) -> HealthCheckResult:
        if self._shutdown_manager.is_shutting_down:
            return HealthCheckResult.degraded(
                message=f"Shutting down: {self._shutdown_manager.progress.phase.value}",
                uptime_seconds=self.uptime_seconds,
            )

        components: list[BaseComponent] = [self._tx_queue]
        if self._heartbeat is not None:
            components.append(self._heartbeat)
        results = {c.name: await c.health_check() for c in components}

        issues = [
            f"{name}_{result.status.value}"
            for name, result in results.items()
            if not result.ok
        ]
        if not self._subscription.is_connected:
            issues.append("subscription_disconnected")

        if worst_status(results.values()) == HealthStatus.UNHEALTHY:
            return HealthCheckResult.unhealthy(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
            )
        if issues:
            return HealthCheckResult.degraded(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
            )
        return HealthCheckResult.healthy(
            uptime_seconds=self.uptime_seconds,
            markets=len(self._controller.markets),
            queue_depth=self._tx_queue.depth,
        )

    async def run_forever(self) -> None:
        """Run until a shutdown signal is received, then shut down gracefully."""
        try:
            await self.start()
        except Exception:
            # start() never marked us running, so stop() would be a no-op
            await self._shutdown_manager.shutdown()
            self._shutdown_manager.remove_signal_handlers()
            raise

        try:
            while not self._shutdown_manager.shutdown_event.is_set():
                self._metrics.update_uptime(self.uptime_seconds)
                try:
                    await asyncio.wait_for(
                        self._shutdown_manager.shutdown_event.wait(),
                        timeout=1.0,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop()

    async def request_shutdown(self) -> None:
        """Programmatically request graceful shutdown."""
        self._log.info("shutdown_requested_programmatically")
        await self._shutdown_manager.shutdown()
