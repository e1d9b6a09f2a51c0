"""Market domain models.

Lifecycle phases as reported by the infra-market contract's status() call,
timer kinds, and the per-market record owned by the controller.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

from keeper.core.timers import DeferredAction


class MarketPhase(IntEnum):
    """Infra-market lifecycle phase. Values match the contract's status enum."""

    CALLABLE = 0
    CLOSABLE = 1
    WHINGING = 2
    PREDICTING = 3
    REVEALING = 4
    DECLARABLE = 5
    SWEEPING = 6
    CLOSED = 7


class TimerKind(str, Enum):
    """Kinds of deferred action a market can have pending."""

    ESCAPE = "escape"
    CLOSE = "close"
    DECLARE = "declare"


# Phase that must still hold for a timer of the kind to be armed.
TIMER_PHASE = {
    TimerKind.ESCAPE: MarketPhase.CALLABLE,
    TimerKind.CLOSE: MarketPhase.WHINGING,
    TimerKind.DECLARE: MarketPhase.REVEALING,
}

# Arming the key cancels any pending timer of the listed kinds.
SUPERSEDES = {
    TimerKind.ESCAPE: (),
    TimerKind.CLOSE: (TimerKind.ESCAPE,),
    TimerKind.DECLARE: (TimerKind.ESCAPE, TimerKind.CLOSE),
}


@dataclass(frozen=True)
class MarketStatus:
    """Result of the ledger's status(market) read."""

    phase: MarketPhase
    seconds_remaining: int

    @classmethod
    def from_raw(cls, raw: tuple[int, int]) -> "MarketStatus":
        """Build from the contract's (uint8, uint64) tuple."""
        return cls(phase=MarketPhase(int(raw[0])), seconds_remaining=int(raw[1]))


@dataclass
class MarketRecord:
    """Mutable per-market state. Owned exclusively by the MarketController.

    Attributes:
        market_id: Trading address of the market.
        phase: Last observed phase (None until the first status read).
        seconds_remaining: Last observed seconds until the phase deadline.
        timers: Pending deferred actions, at most one per kind.
        reveals: Revealer address -> revealed outcome.
        reveals_synced: Whether historical reveal logs were merged in.
        escaped: An escape intent was pushed.
        closed: A close intent was pushed.
        declared: A declare intent was pushed.
        swept: A sweep intent was pushed.
        tasks: In-flight work spawned on behalf of this market.
    """

    market_id: str
    phase: Optional[MarketPhase] = None
    seconds_remaining: int = 0
    timers: dict[TimerKind, DeferredAction] = field(default_factory=dict)
    reveals: dict[str, bytes] = field(default_factory=dict)
    reveals_synced: bool = False
    escaped: bool = False
    closed: bool = False
    declared: bool = False
    swept: bool = False
    tasks: set[asyncio.Task] = field(default_factory=set)

    def observe(self, status: MarketStatus) -> None:
        """Record the latest status read."""
        self.phase = status.phase
        self.seconds_remaining = status.seconds_remaining

    def add_reveal(self, revealer: str, outcome: bytes) -> None:
        self.reveals[revealer] = outcome

    @property
    def outcomes(self) -> list[bytes]:
        """Distinct revealed outcomes in first-seen order."""
        return list(dict.fromkeys(self.reveals.values()))

    def victims(self, winner: bytes) -> list[str]:
        """Revealers whose outcome differs from the declared winner."""
        return [who for who, outcome in self.reveals.items() if outcome != winner]

    def pending_timer(self, kind: TimerKind) -> Optional[DeferredAction]:
        timer = self.timers.get(kind)
        if timer is not None and timer.pending:
            return timer
        return None

    def cancel_timer(self, kind: TimerKind) -> bool:
        """Cancel and forget the timer of this kind. Returns True if one was pending."""
        timer = self.timers.pop(kind, None)
        if timer is None:
            return False
        was_pending = timer.pending
        timer.cancel()
        return was_pending

    def cancel_all(self) -> None:
        """Cancel every timer and every in-flight task of the market."""
        for kind in list(self.timers):
            self.cancel_timer(kind)
        for task in list(self.tasks):
            task.cancel()
        self.tasks.clear()
