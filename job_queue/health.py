"""
Broker health — one availability flag per process.

Producers read ``available`` on every enqueue; the flag is refreshed by a
throttled probe (at most one ping per ``min_interval``) and flipped off
immediately when a live operation against the broker fails.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from typing import Awaitable, Callable, Optional

logger = structlog.get_logger()


class BrokerHealth:

    def __init__(
        self,
        ping: Callable[[], Awaitable[bool]],
        min_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ping = ping
        self.min_interval = min_interval
        self._clock = clock
        self._available = True
        self._last_check: Optional[float] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def available(self) -> bool:
        return self._available

    async def check(self, force: bool = False) -> bool:
        """Probe the broker unless a probe ran within ``min_interval``."""
        now = self._clock()
        if not force and self._last_check is not None and now - self._last_check < self.min_interval:
            return self._available

        # Stamp before awaiting so concurrent callers reuse this probe
        self._last_check = now
        try:
            ok = bool(await self._ping())
        except Exception as e:
            logger.warning("broker_probe_failed", error=str(e))
            ok = False
        self._set(ok)
        return ok

    def mark_unavailable(self, reason: str = ""):
        if self._available:
            logger.warning("broker_marked_unavailable", reason=reason)
        self._available = False
        self._last_check = self._clock()

    def _set(self, ok: bool):
        if ok and not self._available:
            logger.info("broker_recovered")
        elif not ok and self._available:
            logger.warning("broker_unavailable_using_fallback")
        self._available = ok

    # ── Background probe ──────────────────────────────────────

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._probe_loop())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _probe_loop(self):
        while True:
            await self.check(force=True)
            await asyncio.sleep(self.min_interval)
