"""Event Router - demultiplexes the single live log subscription.

The topic table is built once from (EventKind, handler) pairs and never
changes afterwards. Logs whose topic is not in the table are ignored so the
keeper tolerates contract events it does not act on.
"""

from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from keeper.domain.events import EventKind, MarketEvent
from keeper.integrations.chain.client import LedgerClient
from keeper.integrations.chain.subscription import LogSubscription
from keeper.services.metrics import KeeperMetrics

log = structlog.get_logger()

Handler = Callable[[MarketEvent], None]


class EventRouter:
    """Routes raw logs to synchronous handlers by topic id.

    Logs received before mark_ready() are buffered and replayed in arrival
    order, so events that race the bootstrap scan are not lost.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        subscription: LogSubscription,
        metrics: Optional[KeeperMetrics] = None,
    ):
        """Initialize the router.

        Args:
            ledger: Provides topic_for(kind) and decode_log(kind, raw).
            subscription: LogSubscription for the infra-market address.
            metrics: Optional KeeperMetrics.
        """
        self._ledger = ledger
        self._subscription = subscription
        self._metrics = metrics
        self._log = log.bind(component="event_router")

        self._table: Mapping[str, tuple[EventKind, Handler]] = MappingProxyType({})
        self._initialized = False
        self._ready = False
        self._buffer: list[dict[str, Any]] = []
        self._ignored = 0

    @property
    def topics(self) -> Mapping[str, tuple[EventKind, Handler]]:
        return self._table

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def initialize(
        self,
        descriptors: Iterable[tuple[EventKind, Handler]],
        buffer_until_ready: bool = True,
    ) -> None:
        """Build the topic table and open the subscription.

        Raises:
            ValueError: If two descriptors name the same event, or if called twice.
        """
        if self._initialized:
            raise ValueError("EventRouter already initialized")

        table: dict[str, tuple[EventKind, Handler]] = {}
        for kind, handler in descriptors:
            topic = self._ledger.topic_for(kind).lower()
            if topic in table:
                raise ValueError(f"duplicate handler for {kind.value}")
            table[topic] = (kind, handler)

        self._table = MappingProxyType(table)
        self._initialized = True
        self._ready = not buffer_until_ready
        self._log.info(
            "router_initialized",
            events=[kind.value for kind, _ in table.values()],
            buffering=buffer_until_ready,
        )
        await self._subscription.start(self.dispatch)

    def mark_ready(self) -> int:
        """Stop buffering and replay buffered logs. Returns the replay count."""
        if self._ready:
            return 0
        self._ready = True
        pending, self._buffer = self._buffer, []
        for entry in pending:
            self._route(entry)
        if pending:
            self._log.info("router_buffer_replayed", count=len(pending))
        return len(pending)

    def dispatch(self, raw_log: dict[str, Any]) -> None:
        """Subscription callback: route one raw log (or buffer it)."""
        if not self._ready:
            self._buffer.append(raw_log)
            return
        self._route(raw_log)

    def _route(self, raw_log: dict[str, Any]) -> None:
        topic = self._topic0(raw_log)
        entry: Optional[tuple[EventKind, Handler]] = self._table.get(topic) if topic else None
        if entry is None:
            self._ignored += 1
            self._log.debug("log_ignored", topic=topic)
            return

        kind, handler = entry
        try:
            event = self._ledger.decode_log(kind, raw_log)
        except Exception as e:
            self._log.error("log_decode_failed", event=kind.value, error=str(e))
            return

        if self._metrics:
            self._metrics.record_event(kind.value)
        try:
            handler(event)
        except Exception as e:
            self._log.error("handler_failed", event=kind.value, error=str(e))

    @staticmethod
    def _topic0(raw_log: dict[str, Any]) -> Optional[str]:
        topics = raw_log.get("topics") or []
        if not topics:
            return None
        first = topics[0]
        if isinstance(first, (bytes, bytearray)):
            return "0x" + bytes(first).hex()
        return str(first).lower()

    async def close(self) -> None:
        """Close the subscription. Safe after a failed initialize."""
        await self._subscription.stop()
        self._buffer.clear()
        self._log.info("router_closed", ignored=self._ignored)
