"""Domain models - market phases, records and contract events."""

from keeper.domain.events import (
    CallMade,
    CampaignEscaped,
    CommitmentRevealed,
    Declared,
    EventKind,
    MarketClosed,
    MarketCreated,
    MarketEvent,
)
from keeper.domain.market import (
    MarketPhase,
    MarketRecord,
    MarketStatus,
    TimerKind,
)

__all__ = [
    # Events
    "EventKind",
    "MarketEvent",
    "MarketCreated",
    "CallMade",
    "MarketClosed",
    "CampaignEscaped",
    "CommitmentRevealed",
    "Declared",
    # Market
    "MarketPhase",
    "MarketRecord",
    "MarketStatus",
    "TimerKind",
]
