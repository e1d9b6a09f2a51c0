"""Market Controller - per-market state machine for the infra-market lifecycle.

Every tracked market has one MarketRecord holding its pending timers, the
outcomes revealed so far and the tasks spawned on its behalf. Live events and
timer fires both end in the same place: a fresh status read followed by
phase dispatch.

    Phase        Action
    Callable     remaining == 0 -> escape now, else arm escape
    Closable     re-read; still Closable -> push close, else arm close
    Whinging     arm close
    Predicting   nothing (reveals drive the next step)
    Revealing    arm declare
    Declarable   push declare with the accumulated outcomes
    Sweeping     push sweepBatch of the revealers who lost
    Closed       nothing

Every timer is armed for secondsRemaining + margin.
"""

import asyncio
import time
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Coroutine, Mapping, Optional

import structlog

from keeper.core.retry import PermanentError, TransientError, retry_forever
from keeper.core.timers import DeferredAction
from keeper.domain.events import (
    CallMade,
    CampaignEscaped,
    CommitmentRevealed,
    Declared,
    EventKind,
    MarketClosed,
    MarketCreated,
)
from keeper.domain.market import (
    SUPERSEDES,
    TIMER_PHASE,
    MarketPhase,
    MarketRecord,
    MarketStatus,
    TimerKind,
)
from keeper.integrations.chain.client import LedgerClient
from keeper.services.metrics import KeeperMetrics
from keeper.services.router import EventRouter
from keeper.services.tx_queue import TxQueue

log = structlog.get_logger()

DEFAULT_MARGIN = 5
DEFAULT_RETRY_INTERVAL = 1.0


class MarketController:
    """Drives every known market to its next lifecycle transaction."""

    def __init__(
        self,
        ledger: LedgerClient,
        tx_queue: TxQueue,
        router: EventRouter,
        margin: int = DEFAULT_MARGIN,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        metrics: Optional[KeeperMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the controller.

        Args:
            ledger: LedgerClient for reads, log queries and contract handles.
            tx_queue: TxQueue every transaction goes through.
            router: EventRouter delivering live events.
            margin: Seconds added to every computed deadline.
            retry_interval: Fixed delay between attempts of a failed read.
            metrics: Optional KeeperMetrics.
            sleep: Awaitable sleep for timers and retries (tests use a fake clock).
            clock: Wall-clock seconds, compared with call deadlines from events.
        """
        if margin < 0:
            raise ValueError("margin must be non-negative")
        self._ledger = ledger
        self._tx_queue = tx_queue
        self._router = router
        self._margin = margin
        self._retry_interval = retry_interval
        self._metrics = metrics
        self._sleep = sleep
        self._clock = clock
        self._log = log.bind(component="market_controller")

        self._markets: dict[str, MarketRecord] = {}
        self._background: set[asyncio.Task] = set()
        self._resync_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._destroyed = False

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def markets(self) -> Mapping[str, MarketRecord]:
        return MappingProxyType(self._markets)

    @property
    def margin(self) -> int:
        return self._margin

    def record(self, market_id: str) -> Optional[MarketRecord]:
        return self._markets.get(market_id)

    def track(self, market_id: str) -> MarketRecord:
        """Return the market's record, creating it on first reference."""
        record = self._markets.get(market_id)
        if record is None:
            record = MarketRecord(market_id=market_id)
            self._markets[market_id] = record
            self._log.info("market_tracked", market=market_id)
            self._update_tracked()
        return record

    def _is_current(self, record: MarketRecord) -> bool:
        return not self._destroyed and self._markets.get(record.market_id) is record

    def _update_tracked(self) -> None:
        if self._metrics:
            self._metrics.set_markets_tracked(len(self._markets))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def descriptors(self) -> list[tuple[EventKind, Callable[[Any], None]]]:
        """(event kind, handler) pairs for the router's topic table."""
        return [
            (EventKind.MARKET_CREATED, self.on_market_created),
            (EventKind.CALL_MADE, self.on_call_made),
            (EventKind.MARKET_CLOSED, self.on_market_removed),
            (EventKind.CAMPAIGN_ESCAPED, self.on_market_removed),
            (EventKind.COMMITMENT_REVEALED, self.on_commitment_revealed),
            (EventKind.DECLARED, self.on_declared),
        ]

    async def init(self) -> None:
        """Subscribe, catch up on history, then release buffered live logs.

        Must be called exactly once.
        """
        if self._initialized:
            raise RuntimeError("MarketController already initialized")
        self._initialized = True
        await self._router.initialize(self.descriptors())
        await self.bootstrap()
        replayed = self._router.mark_ready()
        self._log.info(
            "controller_initialized",
            markets=len(self._markets),
            replayed=replayed,
        )

    async def bootstrap(self) -> None:
        """Scan historical logs and start phase dispatch for every live market.

        The scan is all-or-nothing: if any log query fails, the whole scan is
        retried after the retry interval. Per-market reconciliation runs as
        tasks owned by each record and is not awaited, so a market whose reads
        keep failing cannot hold back the others.
        """
        self._log.info("bootstrap_started")
        async for attempt in retry_forever(
            self._retry_interval, sleep=self._sleep, operation="bootstrap_scan"
        ):
            with attempt:
                try:
                    created = await self._ledger.query_events(EventKind.MARKET_CREATED)
                    closed = await self._ledger.query_events(EventKind.MARKET_CLOSED)
                    escaped = await self._ledger.query_events(EventKind.CAMPAIGN_ESCAPED)
                except TransientError:
                    if self._metrics:
                        self._metrics.record_read_failure("bootstrap_scan")
                    raise

        if self._destroyed:
            return

        finished = {event.trading for event in (*closed, *escaped)}
        for market_id in finished:
            self.remove(market_id)

        live = [
            market_id
            for market_id in dict.fromkeys(event.trading for event in created)
            if market_id not in finished
        ]
        for market_id in live:
            record = self.track(market_id)
            self._spawn(record, self.reconcile(record), name=f"bootstrap:{market_id}")

        self._log.info(
            "bootstrap_complete",
            discovered=len(created),
            finished=len(finished),
            reconciling=len(live),
        )

    def request_resync(self) -> None:
        """Re-run the bootstrap scan in the background (e.g. after a reconnect)."""
        if self._destroyed or not self._initialized:
            return
        if self._resync_task is not None and not self._resync_task.done():
            self._log.debug("resync_already_running")
            return
        self._log.info("resync_requested")
        self._resync_task = asyncio.create_task(self._run_resync(), name="controller-resync")
        self._background.add(self._resync_task)
        self._resync_task.add_done_callback(self._background.discard)

    async def _run_resync(self) -> None:
        try:
            await self.bootstrap()
        except Exception as e:
            self._log.error("resync_failed", error=str(e))

    async def destroy(self) -> None:
        """Cancel every timer and task of every market and close the subscription.

        Safe to call after a partial or failed init(), and more than once.
        """
        self._destroyed = True
        pending: list[asyncio.Task] = []
        for record in self._markets.values():
            pending.extend(record.tasks)
            record.cancel_all()
        self._markets.clear()
        self._update_tracked()

        for task in list(self._background):
            task.cancel()
            pending.append(task)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await self._router.close()
        except Exception as e:
            self._log.warning("router_close_failed", error=str(e))
        self._log.info("controller_destroyed")

    # ------------------------------------------------------------------
    # Event handlers (synchronous, called by the router)
    # ------------------------------------------------------------------

    def on_market_created(self, event: MarketCreated) -> None:
        if event.trading in self._markets:
            self.remove(event.trading)
        record = self.track(event.trading)
        self._spawn(record, self._on_created(record, event), name=f"created:{event.trading}")

    def on_call_made(self, event: CallMade) -> None:
        record = self.track(event.trading)
        self._cancel(record, TimerKind.ESCAPE)
        self._spawn(record, self.schedule_close(record), name=f"called:{event.trading}")

    def on_market_removed(self, event: MarketClosed | CampaignEscaped) -> None:
        self.remove(event.trading)

    def on_commitment_revealed(self, event: CommitmentRevealed) -> None:
        record = self.track(event.trading)
        record.add_reveal(event.revealer, event.outcome)
        self._log.info(
            "commitment_revealed",
            market=event.trading,
            revealer=event.revealer,
            outcome=event.outcome.hex(),
            reveals=len(record.reveals),
        )
        self._spawn(record, self.schedule_declare(record), name=f"revealed:{event.trading}")

    def on_declared(self, event: Declared) -> None:
        record = self.track(event.trading)
        self._spawn(record, self.sweep(record), name=f"declared:{event.trading}")

    def remove(self, market_id: str) -> bool:
        """Forget a market, cancelling its timers and in-flight tasks."""
        record = self._markets.pop(market_id, None)
        if record is None:
            return False
        timers = [kind.value for kind in record.timers]
        record.cancel_all()
        for kind in timers:
            if self._metrics:
                self._metrics.record_timer_cancelled(kind)
        self._log.info("market_removed", market=market_id, cancelled_timers=timers)
        self._update_tracked()
        return True

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _spawn(
        self,
        record: MarketRecord,
        coro: Coroutine[Any, Any, Any],
        name: str,
    ) -> Optional[asyncio.Task]:
        """Run coro as a task owned by the market. Failures are logged."""
        if not self._is_current(record):
            coro.close()
            return None
        task = asyncio.create_task(self._guarded(coro, record.market_id, name), name=name)
        record.tasks.add(task)
        task.add_done_callback(record.tasks.discard)
        return task

    async def _guarded(self, coro: Coroutine[Any, Any, Any], market_id: str, name: str) -> None:
        try:
            await coro
        except Exception as e:
            self._log.error(
                "market_task_failed",
                market=market_id,
                task=name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _read(self, record: MarketRecord, operation: str, func, *args):
        """Ledger read retried at a fixed interval while the failure is transient.

        Returns None when the read failed permanently or the record was
        removed while waiting.
        """
        result = None
        try:
            async for attempt in retry_forever(
                self._retry_interval,
                sleep=self._sleep,
                operation=operation,
                market=record.market_id,
            ):
                with attempt:
                    if not self._is_current(record):
                        return None
                    try:
                        result = await func(*args)
                    except TransientError:
                        if self._metrics:
                            self._metrics.record_read_failure(operation)
                        raise
        except PermanentError as e:
            self._log.warning(
                "read_abandoned",
                market=record.market_id,
                operation=operation,
                error=str(e),
            )
            return None
        if not self._is_current(record):
            return None
        return result

    async def read_status(self, record: MarketRecord) -> Optional[MarketStatus]:
        status = await self._read(record, "status", self._ledger.status, record.market_id)
        if status is not None:
            record.observe(status)
        return status

    # ------------------------------------------------------------------
    # Phase dispatch
    # ------------------------------------------------------------------

    async def reconcile(self, record: MarketRecord) -> None:
        """Fresh status read, then phase dispatch."""
        status = await self.read_status(record)
        if status is not None:
            await self.dispatch_phase(record, status)

    async def dispatch_phase(self, record: MarketRecord, status: MarketStatus) -> None:
        phase = status.phase
        self._log.debug(
            "phase_dispatch",
            market=record.market_id,
            phase=phase.name,
            remaining=status.seconds_remaining,
        )
        if phase == MarketPhase.CALLABLE:
            if status.seconds_remaining == 0:
                self.escape(record)
            else:
                await self.schedule_escape(record, status)
        elif phase == MarketPhase.CLOSABLE:
            await self.close(record)
        elif phase == MarketPhase.WHINGING:
            await self.schedule_close(record, status)
        elif phase == MarketPhase.REVEALING:
            await self.schedule_declare(record, status)
        elif phase == MarketPhase.DECLARABLE:
            await self.declare(record)
        elif phase == MarketPhase.SWEEPING:
            await self.sweep(record)
        # Predicting and Closed: nothing to do until an event arrives.

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def schedule_escape(
        self,
        record: MarketRecord,
        status: Optional[MarketStatus] = None,
        remaining: Optional[int] = None,
    ) -> None:
        await self._schedule(record, TimerKind.ESCAPE, status, remaining)

    async def schedule_close(
        self,
        record: MarketRecord,
        status: Optional[MarketStatus] = None,
    ) -> None:
        await self._schedule(record, TimerKind.CLOSE, status)

    async def schedule_declare(
        self,
        record: MarketRecord,
        status: Optional[MarketStatus] = None,
    ) -> None:
        await self._schedule(record, TimerKind.DECLARE, status)

    async def _schedule(
        self,
        record: MarketRecord,
        kind: TimerKind,
        status: Optional[MarketStatus] = None,
        remaining: Optional[int] = None,
    ) -> None:
        """Arm a timer of kind for the market unless one is already pending.

        When the ledger no longer reports the phase the kind needs, nothing
        is armed and the fresh status goes through phase dispatch instead.
        """
        if record.pending_timer(kind) is not None:
            return
        self._cancel_superseded(record, kind)

        if status is None:
            status = await self.read_status(record)
            if status is None:
                return

        if status.phase != TIMER_PHASE[kind]:
            self._log.debug(
                "phase_moved",
                market=record.market_id,
                kind=kind.value,
                phase=status.phase.name,
            )
            await self.dispatch_phase(record, status)
            return

        if remaining is None:
            remaining = status.seconds_remaining
        self._arm(record, kind, remaining + self._margin)

    def _arm(self, record: MarketRecord, kind: TimerKind, delay: float) -> None:
        if not self._is_current(record):
            return
        self._cancel_superseded(record, kind)
        if record.pending_timer(kind) is not None:
            return

        timer = DeferredAction(
            delay,
            lambda: self._on_timer_fired(record, kind, timer),
            sleep=self._sleep,
            name=f"{kind.value}:{record.market_id}",
        )
        record.timers[kind] = timer
        timer.start()
        self._log.info("timer_armed", market=record.market_id, kind=kind.value, delay=delay)
        if self._metrics:
            self._metrics.record_timer_armed(kind.value)

    def _cancel(self, record: MarketRecord, kind: TimerKind) -> None:
        if record.cancel_timer(kind):
            self._log.info("timer_cancelled", market=record.market_id, kind=kind.value)
            if self._metrics:
                self._metrics.record_timer_cancelled(kind.value)

    def _cancel_superseded(self, record: MarketRecord, kind: TimerKind) -> None:
        for superseded in SUPERSEDES[kind]:
            self._cancel(record, superseded)

    def _on_timer_fired(self, record: MarketRecord, kind: TimerKind, timer: DeferredAction) -> None:
        if not self._is_current(record) or record.timers.get(kind) is not timer:
            return
        del record.timers[kind]
        self._log.info("timer_fired", market=record.market_id, kind=kind.value)
        if self._metrics:
            self._metrics.record_timer_fired(kind.value)
        self._spawn(record, self.reconcile(record), name=f"fired:{kind.value}:{record.market_id}")

    async def _on_created(self, record: MarketRecord, event: MarketCreated) -> None:
        status = await self.read_status(record)
        if status is None:
            return
        if status.phase != MarketPhase.CALLABLE:
            await self.dispatch_phase(record, status)
            return

        remaining = max(0, int(event.call_deadline - self._clock()))
        if remaining == 0:
            self.escape(record)
        else:
            await self.schedule_escape(record, status, remaining=remaining)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def escape(self, record: MarketRecord) -> None:
        if record.escaped:
            return
        record.escaped = True
        self._log.info("escaping_market", market=record.market_id)
        self._tx_queue.push(self._ledger.infra_market.functions.escape, record.market_id)

    async def close(self, record: MarketRecord) -> None:
        """Push close if a fresh read still says Closable, else re-arm close."""
        if record.closed:
            return
        status = await self.read_status(record)
        if status is None:
            return
        if status.phase != MarketPhase.CLOSABLE:
            self._log.info(
                "close_deferred",
                market=record.market_id,
                phase=status.phase.name,
            )
            await self.schedule_close(record, status)
            return

        if record.closed:
            return
        record.closed = True
        self._log.info("closing_market", market=record.market_id)
        self._tx_queue.push(
            self._ledger.infra_market.functions.close,
            record.market_id,
            self._tx_queue.actor.address,
        )

    async def hydrate_reveals(self, record: MarketRecord) -> bool:
        """Merge historical reveal logs into the record once."""
        if record.reveals_synced:
            return True
        events = await self._read(
            record,
            "query_reveals",
            self._ledger.query_events,
            EventKind.COMMITMENT_REVEALED,
            record.market_id,
        )
        if events is None:
            return False
        for event in events:
            record.reveals.setdefault(event.revealer, event.outcome)
        record.reveals_synced = True
        return True

    async def declare(self, record: MarketRecord) -> None:
        if record.declared:
            return
        if not await self.hydrate_reveals(record):
            return
        if record.declared:
            return

        outcomes = record.outcomes
        if not outcomes:
            self._log.warning("declaring_without_reveals", market=record.market_id)
        record.declared = True
        self._cancel(record, TimerKind.DECLARE)
        self._log.info(
            "declaring_market",
            market=record.market_id,
            outcomes=[o.hex() for o in outcomes],
        )
        self._tx_queue.push(
            self._ledger.infra_market.functions.declare,
            record.market_id,
            outcomes,
            self._tx_queue.actor.address,
        )

    async def sweep(self, record: MarketRecord) -> None:
        """Push a batch sweep of every revealer who disagreed with the winner."""
        if record.swept:
            return
        if not await self.hydrate_reveals(record):
            return
        winner = await self._read(record, "winner", self._ledger.winner, record.market_id)
        if winner is None:
            return
        epoch = await self._read(
            record, "epoch_number", self._ledger.epoch_number, record.market_id
        )
        if epoch is None or record.swept:
            return

        record.swept = True
        victims = record.victims(winner)
        if not victims:
            self._log.info("sweep_skipped_no_victims", market=record.market_id)
            return

        self._log.info(
            "sweeping_market",
            market=record.market_id,
            epoch=epoch,
            victims=victims,
        )
        self._tx_queue.push(
            self._ledger.batch_sweeper.functions.sweepBatch,
            self._ledger.infra_market_address,
            record.market_id,
            epoch,
            victims,
            self._tx_queue.actor.address,
        )
