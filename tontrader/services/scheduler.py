"""
Fixed-interval scheduling for the monitoring and reconciliation loops.

A tick that arrives while the previous run is still in flight is dropped:
runs are never queued up behind each other and never cancelled mid-way.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional

from tontrader.utils.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run ``func`` every ``interval`` seconds, skipping ticks while busy."""

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        interval: float,
    ):
        self.name = name
        self.func = func
        self.interval = interval

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.runs = 0
        self.skipped = 0

    @property
    def busy(self) -> bool:
        return self._current is not None and not self._current.done()

    async def start(self) -> None:
        """Start the ticking loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info("Periodic task started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        """Stop ticking and wait for an in-flight run to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._current and not self._current.done():
            await asyncio.wait([self._current])
        logger.info("Periodic task stopped", task=self.name)

    def tick(self) -> bool:
        """Launch a run unless one is in flight. Returns whether it launched."""
        if self.busy:
            self.skipped += 1
            logger.debug("Previous run still active, skipping tick", task=self.name)
            return False

        self._current = asyncio.create_task(self._run())
        return True

    async def _run(self) -> None:
        started = time.monotonic()
        try:
            await self.func()
        except Exception as e:
            logger.error("Periodic run failed", task=self.name, error=str(e), exc_info=True)
        finally:
            self.runs += 1
            logger.debug(
                "Periodic run finished",
                task=self.name,
                duration=round(time.monotonic() - started, 3),
            )

    async def _tick_loop(self) -> None:
        while self._running:
            self.tick()
            await asyncio.sleep(self.interval)
