"""Periodic asyncio ticker used by every polling loop."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional


class PeriodicTask:
    """
    Runs ``tick`` every ``interval`` seconds on the running event loop.

    Ticks are awaited one after another, so a slow tick delays the next one
    instead of overlapping it. ``cancel()`` only ever interrupts the sleep
    between ticks: a tick already in progress (including its driver calls)
    runs to completion and no further tick is scheduled. This holds whether
    ``cancel()`` is called from inside the tick or from another task.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[None]],
        logger: Optional[logging.Logger] = None,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._tick = tick
        self.logger = logger or logging.getLogger(__name__)
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False
        self._in_tick = False
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._cancelled

    def start(self) -> "PeriodicTask":
        """Schedule the loop. Returns self as the cancellation handle."""
        if self.running:
            self.logger.warning(f"{self.name} is already running")
            return self

        self._cancelled = False
        self._task = asyncio.create_task(self._loop(), name=self.name)
        self.logger.debug(f"{self.name} scheduled every {self.interval}s")
        return self

    def cancel(self):
        """Stop scheduling ticks. Idempotent."""
        if self._cancelled or self._task is None:
            return
        self._cancelled = True

        # Mid-tick, let the tick finish; the loop sees the flag afterwards.
        if not self._in_tick:
            self._task.cancel()

    async def wait(self):
        """Wait for the loop task to finish (after cancel or completion)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _loop(self):
        while not self._cancelled:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            if self._cancelled:
                break

            self.tick_count += 1
            self._in_tick = True
            try:
                await self._tick()
            except asyncio.CancelledError:
                # Only the event loop shutting down gets here
                break
            except Exception as e:
                self.logger.error(f"{self.name} tick failed: {e}")
            finally:
                self._in_tick = False
