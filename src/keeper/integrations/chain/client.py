"""Ledger client for the infra-market contracts.

This client handles direct chain interactions including:
- status / winner / epochNumber reads
- Historical event log queries and event decoding
- Fee data, transaction build, raw submission and confirmation waits

web3.py is synchronous; every call runs in a thread pool so the event loop
is never blocked.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from hexbytes import HexBytes
from web3 import Web3

from keeper.core.retry import (
    LedgerReadError,
    TxPipelineError,
    wrap_external_error,
)
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
from keeper.domain.market import MarketStatus
from keeper.integrations.chain.abi import BATCH_SWEEPER_ABI, INFRA_MARKET_ABI

log = structlog.get_logger()

RECEIPT_POLL_INTERVAL = 2.0


@dataclass(frozen=True)
class FeeData:
    """Network fee data. EIP-1559 fields are None on legacy-priced chains."""

    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None and self.max_priority_fee_per_gas is not None


@dataclass
class TxReceipt:
    """Transaction receipt."""

    tx_hash: str
    block_number: int
    gas_used: int
    status: bool  # True = success


def address_topic(address: str) -> str:
    """Left-pad an address into a 32-byte indexed topic."""
    return "0x" + "0" * 24 + address.lower().removeprefix("0x")


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value or 0)


def normalize_log(raw: dict[str, Any]) -> dict[str, Any]:
    """Turn a JSON-RPC log object into the shape web3's decoder expects."""
    return {
        "address": Web3.to_checksum_address(raw["address"]),
        "topics": [HexBytes(t) for t in raw.get("topics", [])],
        "data": HexBytes(raw.get("data") or b""),
        "blockNumber": _to_int(raw.get("blockNumber")),
        "blockHash": HexBytes(raw.get("blockHash") or b"\x00" * 32),
        "transactionHash": HexBytes(raw.get("transactionHash") or b"\x00" * 32),
        "transactionIndex": _to_int(raw.get("transactionIndex")),
        "logIndex": _to_int(raw.get("logIndex")),
        "removed": bool(raw.get("removed", False)),
    }


class LedgerClient:
    """Async facade over web3.py for the infra-market and batch sweeper."""

    def __init__(
        self,
        rpc_url: str,
        infra_market_address: str,
        batch_sweeper_address: str,
        start_block: int = 0,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """Initialize the ledger client.

        Args:
            rpc_url: HTTP JSON-RPC URL.
            infra_market_address: Infra-market contract address.
            batch_sweeper_address: Batch sweeper contract address.
            start_block: First block scanned by historical log queries.
            executor: Optional thread pool for async execution.
        """
        self._rpc_url = rpc_url
        self._infra_market_address = Web3.to_checksum_address(infra_market_address)
        self._batch_sweeper_address = Web3.to_checksum_address(batch_sweeper_address)
        self._start_block = start_block
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._log = log.bind(component="ledger_client")

        self._w3: Optional[Web3] = None
        self._infra_market = None
        self._batch_sweeper = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._w3 is not None

    @property
    def infra_market_address(self) -> str:
        return self._infra_market_address

    @property
    def infra_market(self):
        """Bound infra-market contract (web3 Contract)."""
        self._ensure_connected()
        return self._infra_market

    @property
    def batch_sweeper(self):
        """Bound batch sweeper contract (web3 Contract)."""
        self._ensure_connected()
        return self._batch_sweeper

    async def connect(self) -> None:
        """Connect to the RPC endpoint and bind the contracts."""
        if self._connected:
            return

        self._w3 = Web3(Web3.HTTPProvider(self._rpc_url))
        if not await self._run_sync(self._w3.is_connected):
            self._w3 = None
            raise LedgerReadError(f"Failed to connect to {self._rpc_url}")

        self._infra_market = self._w3.eth.contract(
            address=self._infra_market_address, abi=INFRA_MARKET_ABI
        )
        self._batch_sweeper = self._w3.eth.contract(
            address=self._batch_sweeper_address, abi=BATCH_SWEEPER_ABI
        )
        self._connected = True
        self._log.info(
            "ledger_connected",
            rpc=self._rpc_url,
            infra_market=self._infra_market_address,
        )

    async def close(self) -> None:
        self._w3 = None
        self._infra_market = None
        self._batch_sweeper = None
        self._connected = False
        self._executor.shutdown(wait=False)

    async def _run_sync(self, func: Callable, *args, **kwargs):
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise LedgerReadError("Ledger client not connected. Call connect() first.")

    async def _read(self, context: str, func: Callable, *args):
        self._ensure_connected()
        try:
            return await self._run_sync(func, *args)
        except Exception as e:
            raise wrap_external_error(e, context) from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def status(self, market_id: str) -> MarketStatus:
        """Current (phase, seconds remaining) of a market."""
        raw = await self._read(
            f"status({market_id})",
            self.infra_market.functions.status(Web3.to_checksum_address(market_id)).call,
        )
        return MarketStatus.from_raw(raw)

    async def winner(self, market_id: str) -> bytes:
        """Declared winning outcome of the market's current epoch."""
        raw = await self._read(
            f"winner({market_id})",
            self.infra_market.functions.winner(Web3.to_checksum_address(market_id)).call,
        )
        return bytes(raw)

    async def epoch_number(self, market_id: str) -> int:
        """Current epoch of a market."""
        raw = await self._read(
            f"epochNumber({market_id})",
            self.infra_market.functions.epochNumber(Web3.to_checksum_address(market_id)).call,
        )
        return int(raw)

    async def block_number(self) -> int:
        return await self._read("block_number", lambda: self._w3.eth.block_number)

    async def pending_nonce(self, address: str) -> int:
        """Transaction count of the address including pending transactions."""
        return await self._read(
            f"nonce({address})",
            lambda: self._w3.eth.get_transaction_count(address, "pending"),
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def topic_for(self, kind: EventKind) -> str:
        """Topic id (keccak of the canonical signature) of an event."""
        return Web3.to_hex(Web3.keccak(text=kind.signature))

    async def query_events(
        self,
        kind: EventKind,
        trading: Optional[str] = None,
    ) -> list[MarketEvent]:
        """Historical events of a kind, optionally filtered by market.

        Raises:
            LedgerReadError: On RPC failure (callers retry).
        """
        topics: list[Optional[str]] = [self.topic_for(kind)]
        if trading is not None:
            topics.append(address_topic(trading))

        params = {
            "address": self._infra_market_address,
            "topics": topics,
            "fromBlock": self._start_block,
            "toBlock": "latest",
        }
        logs = await self._read(
            f"get_logs({kind.value})", lambda: self._w3.eth.get_logs(params)
        )
        return [self.decode_log(kind, dict(entry)) for entry in logs]

    def decode_log(self, kind: EventKind, raw: dict[str, Any]) -> MarketEvent:
        """Decode one log of a known kind into its domain event."""
        self._ensure_connected()
        entry = normalize_log(raw)
        event = getattr(self._infra_market.events, kind.value)()
        args = event.process_log(entry)["args"]

        if kind == EventKind.MARKET_CREATED:
            return MarketCreated(
                trading=args["tradingAddr"],
                call_deadline=int(args["callDeadline"]),
                launch_ts=int(args["launchTs"]),
            )
        if kind == EventKind.CALL_MADE:
            return CallMade(trading=args["tradingAddr"], winner=bytes(args["winner"]))
        if kind == EventKind.MARKET_CLOSED:
            return MarketClosed(trading=args["tradingAddr"], winner=bytes(args["winner"]))
        if kind == EventKind.CAMPAIGN_ESCAPED:
            return CampaignEscaped(trading=args["tradingAddr"])
        if kind == EventKind.COMMITMENT_REVEALED:
            return CommitmentRevealed(
                trading=args["trading"],
                revealer=args["revealer"],
                outcome=bytes(args["outcome"]),
            )
        return Declared(trading=args["trading"], winner=bytes(args["winningOutcome"]))

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def build_transaction(self, call: Any, sender: str) -> dict[str, Any]:
        """Populate a bound contract call into a transaction dict (gas estimated)."""
        self._ensure_connected()
        try:
            return dict(await self._run_sync(call.build_transaction, {"from": sender}))
        except Exception as e:
            raise TxPipelineError("build", "failed to build transaction", cause=e) from e

    async def get_fee_data(self) -> FeeData:
        """Current fee data. Uses base fee + priority fee when the chain has them."""
        self._ensure_connected()
        try:
            block = await self._run_sync(self._w3.eth.get_block, "latest")
            base_fee = block.get("baseFeePerGas")
            if base_fee is not None:
                priority = await self._run_sync(lambda: self._w3.eth.max_priority_fee)
                return FeeData(
                    gas_price=None,
                    max_fee_per_gas=int(base_fee) * 2 + int(priority),
                    max_priority_fee_per_gas=int(priority),
                )
            gas_price = await self._run_sync(lambda: self._w3.eth.gas_price)
            return FeeData(gas_price=int(gas_price))
        except Exception as e:
            raise TxPipelineError("fee", "failed to fetch fee data", cause=e) from e

    async def send_raw_transaction(self, raw: bytes) -> str:
        self._ensure_connected()
        try:
            tx_hash = await self._run_sync(self._w3.eth.send_raw_transaction, raw)
        except Exception as e:
            raise TxPipelineError("submit", "failed to send transaction", cause=e) from e
        return Web3.to_hex(tx_hash)

    async def wait_for_confirmations(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 120.0,
    ) -> TxReceipt:
        """Wait until the transaction is mined and buried under N-1 more blocks.

        Raises:
            TxPipelineError: On timeout, RPC failure or a reverted receipt.
        """
        self._ensure_connected()
        try:
            receipt = await self._run_sync(
                self._w3.eth.wait_for_transaction_receipt, tx_hash, timeout
            )
            target = receipt["blockNumber"] + confirmations - 1
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while await self._run_sync(lambda: self._w3.eth.block_number) < target:
                if loop.time() >= deadline:
                    raise asyncio.TimeoutError(f"confirmations for {tx_hash}")
                await asyncio.sleep(RECEIPT_POLL_INTERVAL)
        except Exception as e:
            raise TxPipelineError("confirm", "failed waiting for confirmation", cause=e) from e

        result = TxReceipt(
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            status=receipt["status"] == 1,
        )
        if not result.status:
            raise TxPipelineError("confirm", f"transaction {tx_hash} reverted")
        return result
