"""
Refresh Loop (memserve/cache/refresher.py)

PURPOSE:
Re-runs the reconciler on a fixed interval for the life of the server so the
cache follows the disk, independent of request traffic.

BEHAVIOUR:
- The reconcile runs on a worker thread; the event loop keeps serving.
- A failed reconcile is logged and the previous cache stays in place. The
  next attempt happens at the next tick: no backoff, no immediate retry.
- Cycles start on a fixed period measured from start(). A cycle that runs
  past one or more ticks skips them, so slow scans never pile up.
- stop() sets a shutdown event; a sleeping loop wakes and exits at once.
"""

import asyncio
import logging
import math
from typing import Callable, Optional

from memserve.cache.scanner import ScanReport
from memserve.errors import MemserveError

logger = logging.getLogger(__name__)


def next_deadline(deadline: float, now: float, interval: float) -> float:
    """The first tick after ``now`` on the grid ``deadline + k * interval``."""
    if now < deadline + interval:
        return deadline + interval
    missed = math.floor((now - deadline) / interval)
    return deadline + (missed + 1) * interval


class RefreshLoop:
    """Periodic background driver for a reconcile callable."""

    def __init__(self, reconcile: Callable[[], ScanReport], interval: float):
        """
        Args:
            reconcile: Blocking callable performing one full reconcile
            interval: Seconds between the starts of consecutive cycles
        """
        if interval <= 0:
            raise ValueError("Refresh interval must be positive")
        self._reconcile = reconcile
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.cycles = 0
        self.failures = 0
        self.last_error: Optional[BaseException] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background refresh task."""
        if self._running:
            logger.warning("[Refresh] Already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[Refresh] Started, interval {self.interval:g}s")

    async def stop(self):
        """Signal shutdown and wait for the task to finish."""
        if not self._running:
            return

        self._running = False
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("[Refresh] Stopped")

    async def run_once(self) -> Optional[ScanReport]:
        """Run a single reconcile on a worker thread.

        Returns the report, or None if the reconcile failed (the failure is
        logged and recorded in ``last_error``).
        """
        loop = asyncio.get_running_loop()
        self.cycles += 1
        try:
            report = await loop.run_in_executor(None, self._reconcile)
        except MemserveError as e:
            self.failures += 1
            self.last_error = e
            logger.error(f"[Refresh] Error refreshing files: {e}")
            return None
        except Exception as e:
            self.failures += 1
            self.last_error = e
            logger.exception(f"[Refresh] Unexpected error refreshing files: {e}")
            return None
        self.last_error = None
        return report

    async def _loop(self):
        """Main refresh loop."""
        assert self._stop_event is not None
        clock = asyncio.get_running_loop().time
        deadline = clock() + self.interval
        try:
            while self._running:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, deadline - clock()))
                    break
                except asyncio.TimeoutError:
                    pass
                await self.run_once()
                deadline = next_deadline(deadline, clock(), self.interval)
        except asyncio.CancelledError:
            logger.debug("[Refresh] Loop cancelled")
            raise
