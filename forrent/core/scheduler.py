"""
forrent/core/scheduler.py
═══════════════════════════════════════════════════════════════════════════════
Owned periodic background jobs.

  1. Every job has a handle, started and stopped by its owner's lifecycle
  2. ONE run at a time per job (asyncio.Lock, overlapping runs impossible)
  3. Slow run → skip the next tick, never queue
  4. Failed run → logged, loop continues
═══════════════════════════════════════════════════════════════════════════════
"""

import asyncio
import inspect
import logging
import time
from typing import Awaitable, Callable, Optional, Union

log = logging.getLogger("scheduler")

Job = Callable[[], Union[None, Awaitable[None]]]


class PeriodicTask:
    def __init__(self, name: str, interval_s: float, job: Job, run_immediately: bool = False):
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.name       = name
        self.interval_s = interval_s
        self._job       = job
        self._immediate = run_immediately
        self._lock      = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.runs       = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> bool:
        """Run the job now unless a previous run is still going. Returns True if it ran."""
        if self._lock.locked():
            log.warning(f"{self.name}: previous run still going — skipping cycle")
            return False

        async with self._lock:
            t0 = time.monotonic()
            try:
                result = self._job()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as ex:
                log.error(f"{self.name}: run failed (continuing): {ex}")
            self.runs += 1
            log.debug(f"{self.name}: run complete in {time.monotonic() - t0:.3f}s")
        return True

    async def _loop(self) -> None:
        if self._immediate:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval_s)
            await self.run_once()

    def start(self) -> None:
        """Start the loop on the running event loop. A second start is ignored."""
        if self.running:
            log.warning(f"{self.name}: already running — ignoring duplicate start")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        log.info(f"{self.name}: started (every {self.interval_s}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.info(f"{self.name}: stopped")
