"""Services - event routing, market state machine, transaction dispatch."""

from keeper.services.controller import MarketController
from keeper.services.heartbeat import HeartbeatPinger
from keeper.services.metrics import KeeperMetrics
from keeper.services.router import EventRouter
from keeper.services.tx_queue import TxIntent, TxQueue, apply_fee_boost

__all__ = [
    "EventRouter",
    "HeartbeatPinger",
    "KeeperMetrics",
    "MarketController",
    "TxIntent",
    "TxQueue",
    "apply_fee_boost",
]
