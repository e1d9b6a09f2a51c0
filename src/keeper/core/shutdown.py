"""
Ordered shutdown for the keeper.

On SIGTERM/SIGINT (or a programmatic request) the phases run in order:
1. stop new work: controller timers and tasks, log subscription
2. drain: wait until the transaction queue has nothing queued or in flight
3. close connections: queue consumer, heartbeat
4. cleanup: last metrics update, ledger client

Each callback gets its own timeout; a failure is recorded and the remaining
callbacks and phases still run.
"""

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

log = structlog.get_logger()

ShutdownCallback = Callable[[], Awaitable[None]]


class ShutdownPhase(str, Enum):
    RUNNING = "running"
    SIGNAL_RECEIVED = "signal_received"
    STOPPING_NEW_WORK = "stopping_new_work"
    DRAINING_TRANSACTIONS = "draining_transactions"
    CLOSING_CONNECTIONS = "closing_connections"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


# Phases that run registered callbacks, in execution order around the drain.
_BEFORE_DRAIN = (ShutdownPhase.STOPPING_NEW_WORK,)
_AFTER_DRAIN = (ShutdownPhase.CLOSING_CONNECTIONS, ShutdownPhase.CLEANUP)


@dataclass
class ShutdownProgress:
    """Where a shutdown is and what went wrong along the way."""

    phase: ShutdownPhase = ShutdownPhase.RUNNING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    signal_received: Optional[str] = None
    in_flight_transactions: int = 0
    transactions_drained: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def is_shutting_down(self) -> bool:
        return self.phase not in (ShutdownPhase.RUNNING, ShutdownPhase.COMPLETED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "signal_received": self.signal_received,
            "in_flight_transactions": self.in_flight_transactions,
            "transactions_drained": self.transactions_drained,
            "duration_seconds": self.duration_seconds,
            "errors": list(self.errors),
        }


class ShutdownManager:
    """Runs the keeper's shutdown phases once.

    Usage:
        manager = ShutdownManager(timeout_seconds=30.0)
        manager.on_stop_new_work(controller.destroy)
        manager.set_in_flight_tracker(tx_queue.outstanding)
        manager.on_close_connections(tx_queue.stop)
        manager.install_signal_handlers()
    """

    DEFAULT_TIMEOUT_SECONDS = 30.0
    DEFAULT_DRAIN_TIMEOUT_SECONDS = 150.0
    DRAIN_POLL_INTERVAL = 0.5
    SIGNALS = (signal.SIGTERM, signal.SIGINT)

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        drain_timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        """
        Args:
            timeout_seconds: Upper bound for each callback.
            drain_timeout_seconds: Upper bound for the queue to empty.
        """
        self._timeout = timeout_seconds
        self._drain_timeout = drain_timeout_seconds
        self._progress = ShutdownProgress()
        self._done = asyncio.Event()
        self._callbacks: dict[ShutdownPhase, list[ShutdownCallback]] = {
            phase: [] for phase in _BEFORE_DRAIN + _AFTER_DRAIN
        }
        self._outstanding: Optional[Callable[[], int]] = None
        self._log = log.bind(component="shutdown_manager")

    @property
    def progress(self) -> ShutdownProgress:
        return self._progress

    @property
    def is_shutting_down(self) -> bool:
        return self._progress.is_shutting_down

    @property
    def shutdown_event(self) -> asyncio.Event:
        """Set once every phase has run."""
        return self._done

    # Registration

    def on_stop_new_work(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.STOPPING_NEW_WORK].append(callback)

    def on_close_connections(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.CLOSING_CONNECTIONS].append(callback)

    def on_cleanup(self, callback: ShutdownCallback) -> None:
        self._callbacks[ShutdownPhase.CLEANUP].append(callback)

    def set_in_flight_tracker(self, get_count: Callable[[], int]) -> None:
        """Function returning how many transactions are still queued or in flight."""
        self._outstanding = get_count

    # Signals

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in self.SIGNALS:
            loop.add_signal_handler(sig, self._on_signal, sig)
        self._log.info("signal_handlers_installed", signals=[s.name for s in self.SIGNALS])

    def remove_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        try:
            loop = loop or asyncio.get_running_loop()
        except RuntimeError:
            return
        for sig in self.SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except (ValueError, RuntimeError) as e:
                self._log.debug("signal_handler_remove_failed", signal=sig.name, error=str(e))

    def _on_signal(self, sig: signal.Signals) -> None:
        self._log.info("shutdown_signal_received", signal=sig.name)
        if self._progress.signal_received is None:
            self._progress.signal_received = sig.name
        self.trigger_shutdown()

    def trigger_shutdown(self) -> None:
        """Start shutdown from synchronous code (signal handlers)."""
        try:
            asyncio.get_running_loop().create_task(self.shutdown(), name="shutdown")
        except RuntimeError:
            self._log.warning("no_event_loop_for_shutdown_trigger")

    # Execution

    async def shutdown(self) -> None:
        """Run every phase once. Later calls return immediately."""
        if self._progress.is_shutting_down or self._done.is_set():
            self._log.debug("shutdown_already_in_progress")
            return

        self._progress.started_at = datetime.now(timezone.utc)
        self._progress.phase = ShutdownPhase.SIGNAL_RECEIVED
        self._log.info(
            "graceful_shutdown_starting",
            timeout_seconds=self._timeout,
            drain_timeout_seconds=self._drain_timeout,
        )
        try:
            for phase in _BEFORE_DRAIN:
                await self._run_phase(phase)
            await self._drain()
            for phase in _AFTER_DRAIN:
                await self._run_phase(phase)
        finally:
            self._progress.phase = ShutdownPhase.COMPLETED
            self._progress.completed_at = datetime.now(timezone.utc)
            self._done.set()
            self._log.info(
                "graceful_shutdown_completed",
                duration_seconds=self._progress.duration_seconds,
                errors=len(self._progress.errors),
            )

    async def wait_for_shutdown(self) -> None:
        await self._done.wait()

    async def _run_phase(self, phase: ShutdownPhase) -> None:
        self._progress.phase = phase
        callbacks = self._callbacks[phase]
        self._log.info("shutdown_phase_starting", phase=phase.value, callbacks=len(callbacks))

        for callback in callbacks:
            name = getattr(callback, "__qualname__", repr(callback))
            try:
                await asyncio.wait_for(callback(), timeout=self._timeout)
            except asyncio.TimeoutError:
                self._log.warning("shutdown_callback_timeout", phase=phase.value, callback=name)
                self._progress.errors.append(f"{phase.value}: {name} timed out")
            except Exception as e:
                self._log.warning(
                    "shutdown_callback_error", phase=phase.value, callback=name, error=str(e)
                )
                self._progress.errors.append(f"{phase.value}: {name} failed: {e}")

    async def _drain(self) -> None:
        self._progress.phase = ShutdownPhase.DRAINING_TRANSACTIONS
        if self._outstanding is not None:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self._drain_timeout
            while True:
                count = self._outstanding()
                self._progress.in_flight_transactions = count
                if count == 0:
                    self._log.info("transactions_drained")
                    break
                if loop.time() >= deadline:
                    self._log.warning(
                        "drain_timeout_reached",
                        remaining=count,
                        timeout_seconds=self._drain_timeout,
                    )
                    self._progress.errors.append(f"drain: {count} transactions outstanding")
                    break
                await asyncio.sleep(self.DRAIN_POLL_INTERVAL)
        self._progress.transactions_drained = True
