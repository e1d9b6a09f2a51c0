"""Infra-market contract events the keeper reacts to.

Each EventKind carries its Solidity signature; the topic id used for routing
is the keccak hash of that signature. Decoded logs become the frozen
dataclasses below.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Union


class EventKind(str, Enum):
    """Contract events routed to controller handlers."""

    MARKET_CREATED = "MarketCreated2"
    CALL_MADE = "CallMade"
    MARKET_CLOSED = "InfraMarketClosed"
    CAMPAIGN_ESCAPED = "CampaignEscaped"
    COMMITMENT_REVEALED = "CommitmentRevealed"
    DECLARED = "Declared"

    @property
    def signature(self) -> str:
        return EVENT_SIGNATURES[self]


EVENT_SIGNATURES = {
    EventKind.MARKET_CREATED: "MarketCreated2(address,address,bytes32,uint64,uint64)",
    EventKind.CALL_MADE: "CallMade(address,bytes8,address)",
    EventKind.MARKET_CLOSED: "InfraMarketClosed(address,address,bytes8)",
    EventKind.CAMPAIGN_ESCAPED: "CampaignEscaped(address)",
    EventKind.COMMITMENT_REVEALED: "CommitmentRevealed(address,address,address,bytes8,uint256)",
    EventKind.DECLARED: "Declared(address,bytes8,address)",
}


@dataclass(frozen=True)
class MarketCreated:
    trading: str
    call_deadline: int
    launch_ts: int = 0


@dataclass(frozen=True)
class CallMade:
    trading: str
    winner: bytes


@dataclass(frozen=True)
class MarketClosed:
    trading: str
    winner: bytes = b""


@dataclass(frozen=True)
class CampaignEscaped:
    trading: str


@dataclass(frozen=True)
class CommitmentRevealed:
    trading: str
    revealer: str
    outcome: bytes


@dataclass(frozen=True)
class Declared:
    trading: str
    winner: bytes = b""


MarketEvent = Union[
    MarketCreated,
    CallMade,
    MarketClosed,
    CampaignEscaped,
    CommitmentRevealed,
    Declared,
]
