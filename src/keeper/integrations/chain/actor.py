"""Signing actor with locally sequenced nonces.

The base nonce is read once (pending transaction count); afterwards every
reservation hands out base + offset and bumps the offset, so back-to-back
submissions never wait on each other's confirmation.
"""

from typing import Any, Optional

import structlog
from eth_account import Account

from keeper.core.retry import KeeperError, TxPipelineError
from keeper.integrations.chain.client import LedgerClient

log = structlog.get_logger()


class NonceActor:
    """Signs and submits transactions for one key."""

    def __init__(self, ledger: LedgerClient, private_key: str):
        """Initialize the actor.

        Args:
            ledger: LedgerClient used for the nonce read and raw submission.
            private_key: Hex private key of the signing account.
        """
        self._ledger = ledger
        self._account = Account.from_key(private_key)
        self._base_nonce: Optional[int] = None
        self._offset = 0
        self._log = log.bind(component="nonce_actor", address=self._account.address)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def is_initialized(self) -> bool:
        return self._base_nonce is not None

    @property
    def next_nonce(self) -> Optional[int]:
        if self._base_nonce is None:
            return None
        return self._base_nonce + self._offset

    async def initialize(self) -> None:
        """Read the base nonce from the ledger."""
        self._base_nonce = await self._ledger.pending_nonce(self.address)
        self._offset = 0
        self._log.info("actor_initialized", base_nonce=self._base_nonce)

    def reserve_nonce(self) -> int:
        """Hand out the next nonce. Never returns the same value twice."""
        if self._base_nonce is None:
            raise KeeperError("NonceActor not initialized. Call initialize() first.")
        nonce = self._base_nonce + self._offset
        self._offset += 1
        return nonce

    async def send_transaction(self, tx: dict[str, Any], nonce: int) -> str:
        """Sign the transaction with the given nonce and broadcast it.

        Returns:
            Transaction hash (hex).
        """
        tx = {**tx, "nonce": nonce}
        tx.pop("from", None)
        try:
            signed = self._account.sign_transaction(tx)
        except Exception as e:
            raise TxPipelineError("submit", "failed to sign transaction", cause=e) from e
        return await self._ledger.send_raw_transaction(signed.raw_transaction)
