"""Transaction Queue - serialized outbound pipeline for one signing actor.

Market handlers decide independently and concurrently that a transaction
should go out. They push intents here; a single consumer task dispatches
them strictly in insertion order, one at a time:

    build -> reserve nonce -> fetch + boost fees -> sign & send -> confirm

A failure at any stage drops that intent (no resubmission), pauses briefly
and moves on to the next one.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from keeper.core.lifecycle import BaseComponent, HealthCheckResult
from keeper.core.retry import TxPipelineError
from keeper.integrations.chain.actor import NonceActor
from keeper.integrations.chain.client import FeeData, LedgerClient, TxReceipt
from keeper.services.metrics import KeeperMetrics

log = structlog.get_logger()

DEFAULT_GAS_RATIO = 20
DEFAULT_CONFIRMATIONS = 1
DEFAULT_RECEIPT_TIMEOUT = 120.0
DEFAULT_FAILURE_PAUSE = 1.0


@dataclass
class TxIntent:
    """A contract method reference plus the arguments to call it with."""

    method: Any
    args: tuple = field(default_factory=tuple)

    @property
    def name(self) -> str:
        return (
            getattr(self.method, "fn_name", None)
            or getattr(self.method, "__name__", None)
            or repr(self.method)
        )


def apply_fee_boost(tx: dict[str, Any], fee: FeeData, gas_ratio: int) -> dict[str, Any]:
    """Add gas_ratio percent of the priority fee (or gas price) as extra tip.

    Raises:
        TxPipelineError: If the fee data carries no usable price.
    """
    boosted = dict(tx)
    if fee.is_eip1559:
        extra_tip = fee.max_priority_fee_per_gas + (
            fee.max_priority_fee_per_gas * gas_ratio
        ) // 100
        boosted["maxFeePerGas"] = fee.max_fee_per_gas + extra_tip
        boosted["maxPriorityFeePerGas"] = extra_tip
        boosted.pop("gasPrice", None)
    elif fee.gas_price is not None:
        boosted["gasPrice"] = fee.gas_price + (fee.gas_price * gas_ratio) // 100
        boosted.pop("maxFeePerGas", None)
        boosted.pop("maxPriorityFeePerGas", None)
    else:
        raise TxPipelineError("fee", "fee data has neither EIP-1559 fields nor gas price")
    return boosted


class TxQueue(BaseComponent):
    """FIFO dispatch of transaction intents for a single NonceActor."""

    def __init__(
        self,
        ledger: LedgerClient,
        actor: NonceActor,
        gas_ratio: int = DEFAULT_GAS_RATIO,
        confirmations: int = DEFAULT_CONFIRMATIONS,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        failure_pause: float = DEFAULT_FAILURE_PAUSE,
        metrics: Optional[KeeperMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the queue.

        Args:
            ledger: LedgerClient used to build, price and confirm transactions.
            actor: NonceActor that owns the nonce counter and signs.
            gas_ratio: Percent of the priority fee added as extra tip.
            confirmations: Blocks to wait for per transaction.
            receipt_timeout: Upper bound on a confirmation wait.
            failure_pause: Pause after a dropped intent.
            metrics: Optional KeeperMetrics.
            sleep: Awaitable sleep (tests inject a fake clock).
        """
        super().__init__(name="TxQueue")
        self._ledger = ledger
        self._actor = actor
        self._gas_ratio = gas_ratio
        self._confirmations = confirmations
        self._receipt_timeout = receipt_timeout
        self._failure_pause = failure_pause
        self._metrics = metrics
        self._sleep = sleep
        self._log = log.bind(component="tx_queue")

        self._queue: deque[TxIntent] = deque()
        self._has_work = asyncio.Event()
        self._in_flight: Optional[TxIntent] = None
        self._consumer: Optional[asyncio.Task] = None

        self._confirmed = 0
        self._dropped = 0

    @property
    def actor(self) -> NonceActor:
        return self._actor

    @property
    def depth(self) -> int:
        """Intents waiting for dispatch (excludes the one in flight)."""
        return len(self._queue)

    @property
    def in_flight(self) -> Optional[TxIntent]:
        return self._in_flight

    @property
    def confirmed_count(self) -> int:
        return self._confirmed

    @property
    def dropped_count(self) -> int:
        return self._dropped

    def outstanding(self) -> int:
        """Queued plus in-flight intents. Used to drain on shutdown."""
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    def push(self, method: Any, *args: Any) -> None:
        """Append an intent. Returns immediately."""
        intent = TxIntent(method=method, args=tuple(args))
        self._queue.append(intent)
        self._has_work.set()
        self._log.info("intent_queued", method=intent.name, depth=len(self._queue))
        if self._metrics:
            self._metrics.record_intent_pushed(intent.name)
            self._metrics.set_queue_depth(len(self._queue))

    def flush(self) -> int:
        """Discard every intent not yet dispatched. Returns how many were dropped."""
        discarded = len(self._queue)
        self._queue.clear()
        self._has_work.clear()
        if discarded:
            self._log.warning("queue_flushed", discarded=discarded)
        if self._metrics:
            self._metrics.set_queue_depth(0)
        return discarded

    async def _do_start(self) -> None:
        self._consumer = asyncio.create_task(self._consume(), name="tx-queue-consumer")
        self._log.info(
            "tx_queue_started",
            actor=self._actor.address,
            gas_ratio=self._gas_ratio,
            confirmations=self._confirmations,
        )

    async def _do_stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        discarded = self.flush()
        self._log.info(
            "tx_queue_stopped",
            confirmed=self._confirmed,
            dropped=self._dropped,
            discarded=discarded,
        )

    async def _do_health_check(self) -> HealthCheckResult:
        if self._consumer is None or self._consumer.done():
            return HealthCheckResult.unhealthy("Consumer task not running")
        return HealthCheckResult.healthy(
            depth=self.depth,
            confirmed=self._confirmed,
            dropped=self._dropped,
        )

    async def _consume(self) -> None:
        """Single consumer: one intent at a time, in insertion order."""
        while True:
            if not self._queue:
                self._has_work.clear()
                await self._has_work.wait()
                continue

            intent = self._queue.popleft()
            self._in_flight = intent
            if self._metrics:
                self._metrics.set_queue_depth(len(self._queue))
            try:
                await self.dispatch(intent)
            except TxPipelineError as e:
                self._drop(intent, e.stage, e)
                await self._sleep(self._failure_pause)
            except Exception as e:
                self._drop(intent, "unknown", e)
                await self._sleep(self._failure_pause)
            finally:
                self._in_flight = None

    def _drop(self, intent: TxIntent, stage: str, error: Exception) -> None:
        self._dropped += 1
        self._log.error(
            "intent_dropped",
            method=intent.name,
            stage=stage,
            error=str(error),
        )
        if self._metrics:
            self._metrics.record_intent_dropped(intent.name, stage)

    async def dispatch(self, intent: TxIntent) -> TxReceipt:
        """Run one intent through the whole pipeline.

        The nonce is reserved once the transaction is built. An intent that
        fails at build time consumes nothing; one that fails later keeps its
        nonce and the next intent gets the following one.

        Raises:
            TxPipelineError: Tagged with the failing stage.
        """
        try:
            call = intent.method(*intent.args)
        except Exception as e:
            raise TxPipelineError("build", f"cannot bind {intent.name}", cause=e) from e
        tx = await self._ledger.build_transaction(call, self._actor.address)

        nonce = self._actor.reserve_nonce()
        log_ = self._log.bind(method=intent.name, nonce=nonce)

        fee = await self._ledger.get_fee_data()
        tx = apply_fee_boost(tx, fee, self._gas_ratio)

        tx_hash = await self._actor.send_transaction(tx, nonce)
        log_.info("tx_submitted", tx_hash=tx_hash)

        receipt = await self._ledger.wait_for_confirmations(
            tx_hash,
            confirmations=self._confirmations,
            timeout=self._receipt_timeout,
        )
        self._confirmed += 1
        log_.info(
            "tx_confirmed",
            tx_hash=receipt.tx_hash,
            block=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        if self._metrics:
            self._metrics.record_intent_confirmed(intent.name)
        return receipt
