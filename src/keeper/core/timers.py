"""
Cancelable deferred actions.

A DeferredAction waits for a delay on the event loop and then invokes a
synchronous callback once. Cancelling before the delay elapses discards the
action entirely. The callback is expected to hand any async work off to its
own tracked task so that the timer itself never blocks on network calls.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import structlog

log = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]


class DeferredAction:
    """One-shot timer backed by an asyncio task.

    Usage:
        timer = DeferredAction(30.0, lambda: print("due"), name="close:0xabc")
        timer.start()
        ...
        timer.cancel()
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], None],
        sleep: Sleep = asyncio.sleep,
        name: str = "deferred",
    ) -> None:
        self.delay = max(0.0, float(delay))
        self.name = name
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._fired = False
        self._cancelled = False

    @property
    def pending(self) -> bool:
        """True until the action fires or is cancelled."""
        return not self._fired and not self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> "DeferredAction":
        """Schedule the action on the running loop."""
        if self._task is None and self.pending:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    def cancel(self) -> None:
        """Discard the action. No-op once fired."""
        if not self.pending:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self) -> None:
        try:
            await self._sleep(self.delay)
        except asyncio.CancelledError:
            return
        if self._cancelled:
            return
        self._fired = True
        try:
            self._callback()
        except Exception as e:
            log.error("deferred_action_failed", timer=self.name, error=str(e))
