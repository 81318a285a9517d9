# src/battle_plan/sync/debounce.py

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class Debouncer:
    """
    Cancellable scheduled call with last-write-wins coalescing.

    schedule() replaces the pending timer, so N calls inside the window produce
    one callback, `delay` seconds after the last call. Once the timer has
    elapsed the callback is detached from the timer handle: a later schedule()
    starts a new timer and never cancels a callback that is already running.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]], *, name: str = "debounce") -> None:
        self.delay = max(0.0, float(delay))
        self._callback = callback
        self._name = name
        self._timer: asyncio.Task[None] | None = None
        self._running: asyncio.Task[None] | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def schedule(self) -> None:
        self.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._wait_then_fire(), name=self._name)
        logger.debug("%s scheduled in %.1fs", self._name, self.delay)

    def cancel(self) -> bool:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return False
        timer.cancel()
        logger.debug("%s timer cancelled", self._name)
        return True

    async def _wait_then_fire(self) -> None:
        await asyncio.sleep(self.delay)
        if self._timer is asyncio.current_task():
            self._timer = None
        self._running = asyncio.current_task()
        try:
            await self._callback()
        except Exception:
            logger.exception("%s callback failed", self._name)
        finally:
            self._running = None

    async def flush(self) -> None:
        """Fire now if a timer is pending, then wait for any running callback."""
        if self.cancel():
            await self._callback()
        running = self._running
        if running is not None and running is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await running

    async def aclose(self) -> None:
        self.cancel()
        running = self._running
        if running is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await running
