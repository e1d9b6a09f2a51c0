"""Chain integrations - ledger reads, transaction submission and log subscription."""

from keeper.integrations.chain.actor import NonceActor
from keeper.integrations.chain.client import (
    FeeData,
    LedgerClient,
    TxReceipt,
    address_topic,
    normalize_log,
)
from keeper.integrations.chain.subscription import LogSubscription

__all__ = [
    "FeeData",
    "LedgerClient",
    "LogSubscription",
    "NonceActor",
    "TxReceipt",
    "address_topic",
    "normalize_log",
]
