"""Fixed-period task runner with a serial execution guarantee.

Runs an async callable on a tick grid (like a wall-clock ticker): the first run
starts immediately (or on the first tick with ``run_immediately=False``), later
runs start on ``start + k * interval``. A run never overlaps the previous one.
When a run overruns one or more ticks the next run starts right away and the
missed ticks are dropped.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional

log = logging.getLogger("Scheduler")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class PeriodicTask:
    """Serially run ``fn`` every ``interval_s`` seconds."""

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], Awaitable[object]],
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        run_immediately: bool = True,
    ):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name = name
        self.interval_s = interval_s
        self._fn = fn
        self._clock = clock
        self._sleep = sleep
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0
        self.overruns = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the loop as a background task on the running event loop."""
        if self.running:
            log.warning("%s already running", self.name)
            return
        log.info("starting %s (interval %.1fs)", self.name, self.interval_s)
        self._task = asyncio.create_task(self.run_forever(), name=self.name)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info("%s stopped after %d runs", self.name, self.runs)

    async def run_forever(self, max_runs: Optional[int] = None) -> None:
        next_tick = self._clock() + self.interval_s
        if not self._run_immediately:
            await self._sleep(self.interval_s)
            next_tick += self.interval_s
        while max_runs is None or self.runs < max_runs:
            await self._run_once()
            if max_runs is not None and self.runs >= max_runs:
                return

            now = self._clock()
            if now <= next_tick:
                await self._sleep(next_tick - now)
                next_tick += self.interval_s
                continue

            # overran: run again now, realign to the next future tick
            missed = math.floor((now - next_tick) / self.interval_s) + 1
            self.overruns += missed
            log.warning("%s overran its period by %.2fs", self.name, now - next_tick)
            next_tick += missed * self.interval_s

    async def _run_once(self) -> None:
        self.runs += 1
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            log.exception("%s run %d failed", self.name, self.runs)
