"""Live log subscription over a websocket JSON-RPC endpoint.

Opens one eth_subscribe("logs", {address}) stream and hands every received
log to a synchronous callback. Dropped connections are re-opened after a
fixed delay; the on_reconnect hook fires after every successful
re-subscription so the owner can catch up on logs missed in between.
"""

import asyncio
import json
from typing import Any, Callable, Optional

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from keeper.core.retry import SubscriptionError

log = structlog.get_logger()

LogCallback = Callable[[dict[str, Any]], None]

PING_INTERVAL = 20.0
PING_TIMEOUT = 20.0


class LogSubscription:
    """Single live subscription to a contract's logs."""

    def __init__(
        self,
        wss_url: str,
        address: str,
        reconnect_delay: float = 5.0,
        on_reconnect: Optional[Callable[[], None]] = None,
    ):
        self._wss_url = wss_url
        self._address = address
        self._reconnect_delay = reconnect_delay
        self._on_reconnect = on_reconnect
        self._log = log.bind(component="log_subscription", address=address)

        self._callback: Optional[LogCallback] = None
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._should_run = False
        self._subscription_id: Optional[str] = None
        self._connect_count = 0
        self._connected = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._subscription_id is not None

    @property
    def reconnect_count(self) -> int:
        return max(0, self._connect_count - 1)

    def set_on_reconnect(self, hook: Optional[Callable[[], None]]) -> None:
        self._on_reconnect = hook

    async def start(self, callback: LogCallback) -> None:
        """Open the subscription and start delivering logs to callback."""
        if self._should_run:
            raise SubscriptionError("Subscription already started")
        self._callback = callback
        self._should_run = True
        self._task = asyncio.create_task(self._message_loop(), name="log-subscription")
        self._log.info("subscription_starting", url=self._wss_url)

    async def wait_connected(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    async def stop(self) -> None:
        """Close the subscription. Safe to call more than once."""
        self._should_run = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._disconnect()
        self._log.info("subscription_stopped")

    async def _message_loop(self) -> None:
        while self._should_run:
            try:
                await self._connect()
                await self._receive_messages()
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                self._log.warning("subscription_closed", code=e.code, reason=e.reason)
            except (WebSocketException, OSError, SubscriptionError) as e:
                self._log.warning("subscription_error", error=str(e))
            except Exception as e:
                self._log.error("subscription_unexpected_error", error=str(e))

            await self._disconnect()
            if self._should_run:
                self._log.info("subscription_reconnecting", delay=self._reconnect_delay)
                await asyncio.sleep(self._reconnect_delay)

    async def _connect(self) -> None:
        self._ws = await websockets.connect(
            self._wss_url,
            ping_interval=PING_INTERVAL,
            ping_timeout=PING_TIMEOUT,
            close_timeout=5.0,
        )
        await self._ws.send(json.dumps({
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {"address": self._address}],
        }))
        reply = json.loads(await self._ws.recv())
        if "error" in reply or "result" not in reply:
            raise SubscriptionError(f"eth_subscribe rejected: {reply.get('error')}")

        self._subscription_id = reply["result"]
        self._connect_count += 1
        self._connected.set()
        self._log.info(
            "subscription_established",
            subscription_id=self._subscription_id,
            reconnects=self.reconnect_count,
        )

        if self._connect_count > 1 and self._on_reconnect is not None:
            try:
                self._on_reconnect()
            except Exception as e:
                self._log.error("on_reconnect_failed", error=str(e))

    async def _disconnect(self) -> None:
        self._subscription_id = None
        self._connected.clear()
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                self._log.debug("websocket_close_error", error=str(e))
            self._ws = None

    async def _receive_messages(self) -> None:
        async for raw in self._ws:
            self.handle_message(raw)

    def handle_message(self, raw: str) -> None:
        """Parse one websocket frame and deliver any log it carries."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self._log.warning("subscription_malformed_message")
            return

        if message.get("method") != "eth_subscription":
            return
        params = message.get("params") or {}
        if self._subscription_id and params.get("subscription") != self._subscription_id:
            return
        entry = params.get("result")
        if not isinstance(entry, dict) or self._callback is None:
            return

        try:
            self._callback(entry)
        except Exception as e:
            self._log.error("log_callback_failed", error=str(e))
