"""
Shared pytest fixtures for keeper tests.
"""
import asyncio
import heapq
import itertools
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from keeper.core.retry import ContractRevertError
from keeper.domain.events import EventKind
from keeper.domain.market import MarketPhase, MarketStatus
from keeper.services.controller import MarketController

INFRA_MARKET = "0x1111111111111111111111111111111111111111"
ACTOR = "0xAcAcAcAcAcAcAcAcAcAcAcAcAcAcAcAcAcAcAcAc"
MARKET_A = "0xA000000000000000000000000000000000000001"
MARKET_B = "0xB000000000000000000000000000000000000002"
REVEALER_1 = "0x0000000000000000000000000000000000000A01"
REVEALER_2 = "0x0000000000000000000000000000000000000A02"
REVEALER_3 = "0x0000000000000000000000000000000000000A03"

OUTCOME_YES = bytes.fromhex("0000000000000001")
OUTCOME_NO = bytes.fromhex("0000000000000002")


async def settle(rounds: int = 100) -> None:
    """Let every ready task run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Virtual time. sleep() parks the caller until advance() passes its deadline."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self.now + delay, next(self._seq), future))
        await future

    @property
    def sleeping(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        target = self.now + seconds
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            when, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self.now = max(self.now, when)
            future.set_result(None)
            await settle()
        self.now = target
        await settle()


class FakeContractFunction:
    """Stands in for a web3 ContractFunction reference (e.g. contract.functions.close)."""

    def __init__(self, fn_name: str) -> None:
        self.fn_name = fn_name

    def __call__(self, *args: Any) -> SimpleNamespace:
        return SimpleNamespace(fn_name=self.fn_name, args=args)

    def __repr__(self) -> str:
        return f"<FakeContractFunction {self.fn_name}>"


@dataclass
class _Phase:
    phase: MarketPhase
    deadline: float
    then: Optional[MarketPhase]


class FakeLedger:
    """In-memory ledger driven by the fake clock.

    A market's phase holds until its deadline; afterwards the status reports
    the follow-up phase (if one was given) with zero seconds remaining.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.infra_market_address = INFRA_MARKET
        self.infra_market = SimpleNamespace(
            functions=SimpleNamespace(
                escape=FakeContractFunction("escape"),
                close=FakeContractFunction("close"),
                declare=FakeContractFunction("declare"),
            )
        )
        self.batch_sweeper = SimpleNamespace(
            functions=SimpleNamespace(sweepBatch=FakeContractFunction("sweepBatch"))
        )
        self.phases: dict[str, _Phase] = {}
        self.scripted: dict[str, list[Any]] = {}
        self.events: dict[EventKind, list[Any]] = {kind: [] for kind in EventKind}
        self.winners: dict[str, bytes] = {}
        self.epochs: dict[str, int] = {}
        self.query_errors: list[Exception] = []
        self.status_calls: list[str] = []
        self.query_calls: list[tuple[EventKind, Optional[str]]] = []

    def set_phase(
        self,
        market: str,
        phase: MarketPhase,
        remaining: int = 0,
        then: Optional[MarketPhase] = None,
    ) -> None:
        self.phases[market] = _Phase(phase, self.clock.now + remaining, then)

    def script(self, market: str, *statuses: Any) -> None:
        """Queue one-off status results (or exceptions) served before the phase model."""
        self.scripted.setdefault(market, []).extend(statuses)

    async def status(self, market: str) -> MarketStatus:
        self.status_calls.append(market)
        queued = self.scripted.get(market)
        if queued:
            result = queued.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        if market not in self.phases:
            raise ContractRevertError(f"NotRegistered({market})")
        entry = self.phases[market]
        remaining = max(0, int(entry.deadline - self.clock.now))
        if remaining == 0 and entry.then is not None:
            return MarketStatus(entry.then, 0)
        return MarketStatus(entry.phase, remaining)

    async def winner(self, market: str) -> bytes:
        return self.winners[market]

    async def epoch_number(self, market: str) -> int:
        return self.epochs.get(market, 0)

    async def query_events(self, kind: EventKind, trading: Optional[str] = None) -> list[Any]:
        self.query_calls.append((kind, trading))
        if self.query_errors:
            raise self.query_errors.pop(0)
        return [e for e in self.events[kind] if trading is None or e.trading == trading]


class RecordingQueue:
    """TxQueue stand-in that records pushed intents."""

    def __init__(self, actor_address: str = ACTOR) -> None:
        self.actor = SimpleNamespace(address=actor_address)
        self.intents: list[tuple[Any, tuple]] = []

    def push(self, method: Any, *args: Any) -> None:
        self.intents.append((method, args))

    def calls(self, fn_name: str) -> list[tuple]:
        return [args for method, args in self.intents if method.fn_name == fn_name]


class FakeRouter:
    """EventRouter stand-in recording lifecycle calls."""

    def __init__(self) -> None:
        self.descriptors: list = []
        self.ready = False
        self.closed = False
        self.initialize = AsyncMock(side_effect=self._initialize)
        self.close = AsyncMock(side_effect=self._close)

    async def _initialize(self, descriptors) -> None:
        self.descriptors = list(descriptors)

    def mark_ready(self) -> int:
        self.ready = True
        return 0

    async def _close(self) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock) -> FakeLedger:
    return FakeLedger(clock)


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
def mock_metrics():
    """Mock KeeperMetrics for unit tests."""
    return MagicMock()


@pytest_asyncio.fixture
async def controller(ledger, queue, router, clock):
    ctl = MarketController(
        ledger,
        queue,
        router,
        margin=5,
        retry_interval=1.0,
        sleep=clock.sleep,
        clock=clock.time,
    )
    yield ctl
    await ctl.destroy()
