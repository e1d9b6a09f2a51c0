"""Unit tests for market domain models."""
from unittest.mock import MagicMock

import pytest

from keeper.core.timers import DeferredAction
from keeper.domain.market import (
    SUPERSEDES,
    TIMER_PHASE,
    MarketPhase,
    MarketRecord,
    MarketStatus,
    TimerKind,
)
from tests.conftest import MARKET_A, OUTCOME_NO, OUTCOME_YES, REVEALER_1, REVEALER_2, REVEALER_3


class TestMarketStatus:
    def test_from_raw(self):
        assert MarketStatus.from_raw((4, 120)) == MarketStatus(MarketPhase.REVEALING, 120)

    def test_unknown_phase_rejected(self):
        with pytest.raises(ValueError):
            MarketStatus.from_raw((42, 0))


class TestTimerTables:
    def test_each_kind_waits_on_one_phase(self):
        assert TIMER_PHASE[TimerKind.ESCAPE] == MarketPhase.CALLABLE
        assert TIMER_PHASE[TimerKind.CLOSE] == MarketPhase.WHINGING
        assert TIMER_PHASE[TimerKind.DECLARE] == MarketPhase.REVEALING

    def test_supersede_order(self):
        assert SUPERSEDES[TimerKind.ESCAPE] == ()
        assert SUPERSEDES[TimerKind.CLOSE] == (TimerKind.ESCAPE,)
        assert set(SUPERSEDES[TimerKind.DECLARE]) == {TimerKind.ESCAPE, TimerKind.CLOSE}


class TestMarketRecord:
    def test_observe(self):
        record = MarketRecord(MARKET_A)

        record.observe(MarketStatus(MarketPhase.WHINGING, 30))

        assert record.phase == MarketPhase.WHINGING
        assert record.seconds_remaining == 30

    def test_outcomes_distinct_first_seen(self):
        record = MarketRecord(MARKET_A)
        record.add_reveal(REVEALER_1, OUTCOME_NO)
        record.add_reveal(REVEALER_2, OUTCOME_YES)
        record.add_reveal(REVEALER_3, OUTCOME_NO)

        assert record.outcomes == [OUTCOME_NO, OUTCOME_YES]

    def test_victims_are_losing_revealers(self):
        record = MarketRecord(MARKET_A)
        record.add_reveal(REVEALER_1, OUTCOME_NO)
        record.add_reveal(REVEALER_2, OUTCOME_YES)
        record.add_reveal(REVEALER_3, OUTCOME_NO)

        assert record.victims(OUTCOME_YES) == [REVEALER_1, REVEALER_3]
        assert record.victims(OUTCOME_NO) == [REVEALER_2]

    def test_later_reveal_replaces_earlier(self):
        record = MarketRecord(MARKET_A)
        record.add_reveal(REVEALER_1, OUTCOME_NO)
        record.add_reveal(REVEALER_1, OUTCOME_YES)

        assert record.reveals == {REVEALER_1: OUTCOME_YES}

    @pytest.mark.asyncio
    async def test_cancel_timer(self, clock):
        record = MarketRecord(MARKET_A)
        callback = MagicMock()
        record.timers[TimerKind.CLOSE] = DeferredAction(10, callback, sleep=clock.sleep).start()

        assert record.pending_timer(TimerKind.CLOSE) is not None
        assert record.cancel_timer(TimerKind.CLOSE) is True
        assert record.cancel_timer(TimerKind.CLOSE) is False
        assert record.pending_timer(TimerKind.CLOSE) is None

        await clock.advance(20)
        callback.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_all(self, clock):
        record = MarketRecord(MARKET_A)
        callback = MagicMock()
        for kind in TimerKind:
            record.timers[kind] = DeferredAction(5, callback, sleep=clock.sleep).start()

        record.cancel_all()

        await clock.advance(10)
        assert record.timers == {}
        assert record.tasks == set()
        callback.assert_not_called()
