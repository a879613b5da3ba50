"""
Periodic background loop shared by the scheduler, the delivery status
synchronizer and the event poller.

Each instance sleeps ``startup_delay`` seconds, then calls ``run_once()``
every ``interval`` seconds until stopped. A failing pass is logged and the
loop moves on to the next tick.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

logger = structlog.get_logger()


class PeriodicService:

    name = "periodic"

    def __init__(self, interval: float, startup_delay: float = 0):
        self.interval = interval
        self.startup_delay = startup_delay
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> Any:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"{self.name}_started",
                    interval_s=self.interval,
                    startup_delay_s=self.startup_delay)

    async def stop(self) -> None:
        """Gracefully stop the loop."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info(f"{self.name}_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        if self.startup_delay:
            await asyncio.sleep(self.startup_delay)
        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"{self.name}_cycle_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval)
