"""
Unit tests for NonceActor.

Signing uses a real eth_account key; the ledger is mocked.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_account import Account

from keeper.core.retry import KeeperError, TxPipelineError
from keeper.integrations.chain.actor import NonceActor

PRIVATE_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
ADDRESS = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

TX = {
    "to": "0x1111111111111111111111111111111111111111",
    "value": 0,
    "gas": 100_000,
    "maxFeePerGas": 2_000_000_000,
    "maxPriorityFeePerGas": 1_000_000_000,
    "chainId": 1,
    "data": "0x",
}


@pytest.fixture
def ledger():
    ledger = MagicMock()
    ledger.pending_nonce = AsyncMock(return_value=7)
    ledger.send_raw_transaction = AsyncMock(return_value="0x" + "ab" * 32)
    return ledger


@pytest.fixture
def actor(ledger):
    return NonceActor(ledger, PRIVATE_KEY)


class TestNonceActor:
    def test_address_from_key(self, actor):
        assert actor.address == ADDRESS

    def test_reserve_before_initialize_fails(self, actor):
        assert not actor.is_initialized
        assert actor.next_nonce is None
        with pytest.raises(KeeperError):
            actor.reserve_nonce()

    @pytest.mark.asyncio
    async def test_initialize_reads_pending_nonce(self, actor, ledger):
        await actor.initialize()

        ledger.pending_nonce.assert_awaited_once_with(ADDRESS)
        assert actor.next_nonce == 7

    @pytest.mark.asyncio
    async def test_reservations_are_sequential_and_unique(self, actor):
        await actor.initialize()

        nonces = [actor.reserve_nonce() for _ in range(4)]

        assert nonces == [7, 8, 9, 10]
        assert actor.next_nonce == 11

    @pytest.mark.asyncio
    async def test_send_signs_with_reserved_nonce(self, actor, ledger):
        await actor.initialize()

        tx_hash = await actor.send_transaction({**TX, "from": ADDRESS}, nonce=9)

        assert tx_hash == "0x" + "ab" * 32
        raw = ledger.send_raw_transaction.await_args.args[0]
        decoded = Account.recover_transaction(raw)
        assert decoded == ADDRESS

    @pytest.mark.asyncio
    async def test_unsignable_transaction_tagged(self, actor, ledger):
        with pytest.raises(TxPipelineError) as exc_info:
            await actor.send_transaction({"gas": "lots"}, nonce=1)

        assert exc_info.value.stage == "submit"
        ledger.send_raw_transaction.assert_not_awaited()
