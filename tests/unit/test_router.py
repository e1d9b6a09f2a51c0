"""
Unit tests for EventRouter.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest
from hexbytes import HexBytes

from keeper.domain.events import CampaignEscaped, EventKind
from keeper.services.router import EventRouter
from tests.conftest import MARKET_A, MARKET_B

TOPICS = {kind: "0x" + f"{i + 1:02x}" * 32 for i, kind in enumerate(EventKind)}


class FakeSubscription:
    def __init__(self) -> None:
        self.callback = None
        self.stop = AsyncMock()

    async def start(self, callback) -> None:
        self.callback = callback


def make_ledger() -> MagicMock:
    ledger = MagicMock()
    ledger.topic_for.side_effect = lambda kind: TOPICS[kind]
    ledger.decode_log.side_effect = lambda kind, raw: (kind, raw["trading"])
    return ledger


def log_for(kind: EventKind, trading: str = MARKET_A) -> dict:
    return {"topics": [TOPICS[kind]], "data": "0x", "trading": trading}


@pytest.fixture
def subscription() -> FakeSubscription:
    return FakeSubscription()


@pytest.fixture
def event_router(subscription) -> EventRouter:
    return EventRouter(make_ledger(), subscription)


class TestInitialize:
    @pytest.mark.asyncio
    async def test_builds_table_and_subscribes_once(self, event_router, subscription):
        handler = MagicMock()

        await event_router.initialize([(EventKind.DECLARED, handler)])

        assert dict(event_router.topics) == {TOPICS[EventKind.DECLARED]: (EventKind.DECLARED, handler)}
        assert subscription.callback == event_router.dispatch

    @pytest.mark.asyncio
    async def test_table_is_immutable(self, event_router):
        await event_router.initialize([(EventKind.DECLARED, MagicMock())])

        with pytest.raises(TypeError):
            event_router.topics["0xdead"] = (EventKind.CALL_MADE, MagicMock())

    @pytest.mark.asyncio
    async def test_duplicate_event_rejected(self, event_router):
        with pytest.raises(ValueError):
            await event_router.initialize(
                [(EventKind.DECLARED, MagicMock()), (EventKind.DECLARED, MagicMock())]
            )

    @pytest.mark.asyncio
    async def test_initialize_twice_rejected(self, event_router):
        await event_router.initialize([])
        with pytest.raises(ValueError):
            await event_router.initialize([])


class TestDispatch:
    @pytest.mark.asyncio
    async def test_known_topic_invokes_handler(self, event_router, subscription):
        handler = MagicMock()
        await event_router.initialize(
            [(EventKind.CAMPAIGN_ESCAPED, handler)], buffer_until_ready=False
        )

        subscription.callback(log_for(EventKind.CAMPAIGN_ESCAPED))

        handler.assert_called_once_with((EventKind.CAMPAIGN_ESCAPED, MARKET_A))

    @pytest.mark.asyncio
    async def test_unknown_topic_ignored(self, event_router, subscription):
        handler = MagicMock()
        await event_router.initialize([(EventKind.DECLARED, handler)], buffer_until_ready=False)

        subscription.callback({"topics": ["0x" + "ff" * 32], "data": "0x"})
        subscription.callback({"topics": [], "data": "0x"})

        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_bytes_topic_matched(self, event_router, subscription):
        handler = MagicMock()
        await event_router.initialize([(EventKind.DECLARED, handler)], buffer_until_ready=False)

        raw = log_for(EventKind.DECLARED)
        raw["topics"] = [HexBytes(TOPICS[EventKind.DECLARED])]
        subscription.callback(raw)

        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_handler_failure_isolated(self, event_router, subscription):
        failing = MagicMock(side_effect=RuntimeError("handler bug"))
        healthy = MagicMock()
        await event_router.initialize(
            [(EventKind.CALL_MADE, failing), (EventKind.DECLARED, healthy)],
            buffer_until_ready=False,
        )

        subscription.callback(log_for(EventKind.CALL_MADE))
        subscription.callback(log_for(EventKind.DECLARED))

        failing.assert_called_once()
        healthy.assert_called_once()

    @pytest.mark.asyncio
    async def test_decode_failure_isolated(self, subscription):
        ledger = make_ledger()
        ledger.decode_log.side_effect = [ValueError("bad data"), CampaignEscaped(trading=MARKET_B)]
        handler = MagicMock()
        event_router = EventRouter(ledger, subscription)
        await event_router.initialize(
            [(EventKind.CAMPAIGN_ESCAPED, handler)], buffer_until_ready=False
        )

        subscription.callback(log_for(EventKind.CAMPAIGN_ESCAPED))
        subscription.callback(log_for(EventKind.CAMPAIGN_ESCAPED, MARKET_B))

        handler.assert_called_once_with(CampaignEscaped(trading=MARKET_B))

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, subscription, mock_metrics):
        event_router = EventRouter(make_ledger(), subscription, metrics=mock_metrics)
        await event_router.initialize(
            [(EventKind.DECLARED, MagicMock())], buffer_until_ready=False
        )

        subscription.callback(log_for(EventKind.DECLARED))

        mock_metrics.record_event.assert_called_once_with("Declared")


class TestBuffering:
    @pytest.mark.asyncio
    async def test_logs_buffered_until_ready_then_replayed_in_order(
        self, event_router, subscription
    ):
        seen = []
        await event_router.initialize(
            [
                (EventKind.CALL_MADE, lambda e: seen.append(("call", e[1]))),
                (EventKind.DECLARED, lambda e: seen.append(("declared", e[1]))),
            ]
        )

        subscription.callback(log_for(EventKind.CALL_MADE, MARKET_A))
        subscription.callback(log_for(EventKind.DECLARED, MARKET_B))
        assert seen == []
        assert event_router.buffered == 2

        assert event_router.mark_ready() == 2
        assert seen == [("call", MARKET_A), ("declared", MARKET_B)]

        subscription.callback(log_for(EventKind.CALL_MADE, MARKET_B))
        assert seen[-1] == ("call", MARKET_B)
        assert event_router.mark_ready() == 0

    @pytest.mark.asyncio
    async def test_close_stops_subscription(self, event_router, subscription):
        await event_router.close()

        subscription.stop.assert_awaited_once()
