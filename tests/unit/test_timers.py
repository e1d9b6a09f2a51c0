"""
Unit tests for DeferredAction.
"""
from unittest.mock import MagicMock

import pytest

from keeper.core.timers import DeferredAction


class TestDeferredAction:
    @pytest.mark.asyncio
    async def test_fires_once_after_delay(self, clock):
        callback = MagicMock()
        timer = DeferredAction(10, callback, sleep=clock.sleep).start()

        await clock.advance(9)
        callback.assert_not_called()
        assert timer.pending

        await clock.advance(1)
        callback.assert_called_once()
        assert timer.fired
        assert not timer.pending

    @pytest.mark.asyncio
    async def test_cancel_before_fire_discards(self, clock):
        callback = MagicMock()
        timer = DeferredAction(10, callback, sleep=clock.sleep).start()

        timer.cancel()
        await clock.advance(100)

        callback.assert_not_called()
        assert timer.cancelled
        assert not timer.fired

    @pytest.mark.asyncio
    async def test_cancel_after_fire_is_noop(self, clock):
        timer = DeferredAction(1, MagicMock(), sleep=clock.sleep).start()
        await clock.advance(1)

        timer.cancel()

        assert timer.fired
        assert not timer.cancelled

    @pytest.mark.asyncio
    async def test_negative_delay_clamped(self, clock):
        callback = MagicMock()
        timer = DeferredAction(-5, callback, sleep=clock.sleep)

        assert timer.delay == 0
        timer.start()
        await clock.advance(0)
        callback.assert_called_once()

    @pytest.mark.asyncio
    async def test_callback_error_is_contained(self, clock):
        timer = DeferredAction(1, MagicMock(side_effect=RuntimeError("boom")), sleep=clock.sleep)
        timer.start()

        await clock.advance(1)

        assert timer.fired

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, clock):
        callback = MagicMock()
        timer = DeferredAction(1, callback, sleep=clock.sleep)
        timer.start()
        timer.start()

        await clock.advance(5)

        callback.assert_called_once()
