"""
Aligned Scheduler: fires a task on fixed wall-clock boundaries.
A 15-minute period fires at :00, :15, :30 and :45 UTC, not every 15 minutes
from process start. Runs never block the next firing.
"""

from __future__ import annotations
import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Set
import logging

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]
Task = Callable[[], Awaitable[object]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def time_until_next_boundary(now: datetime, period_sec: float) -> float:
    """Seconds from `now` to the next multiple of `period_sec` since the epoch. 0 on a boundary."""
    if period_sec <= 0:
        raise ValueError(f"period must be positive, got {period_sec}")
    remainder = now.timestamp() % period_sec
    return 0.0 if remainder == 0 else period_sec - remainder


class AlignedScheduler:
    """
    Runs a coroutine function at every `period` boundary.

    Each firing is launched as its own asyncio task, so a run that outlasts the
    period overlaps with the next one. Missed boundaries are skipped, not
    replayed. Exceptions from a run are logged and never reach the loop.
    """

    def __init__(self, clock: Optional[Clock] = None, sleep: Optional[Sleep] = None):
        self._clock = clock or utc_now
        self._sleep = sleep or self._wait_or_stop
        self._running = False
        self._stopped = False
        self._stop_event: Optional[asyncio.Event] = None
        self._inflight: Set[asyncio.Task] = set()
        self.firings = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_aligned(self, period_sec: float, task: Task, run_now: bool = False):
        """Fire `task` on every boundary of `period_sec` until stop() is called."""
        if self._stopped:
            logger.info("[SCHED] Stop requested before start, not running.")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        now = self._clock()
        next_fire = now.timestamp() + time_until_next_boundary(now, period_sec)
        logger.info(
            f"[SCHED] Period {period_sec:.0f}s. First firing at "
            f"{datetime.fromtimestamp(next_fire, tz=timezone.utc).isoformat()}"
        )

        # On a boundary the loop fires immediately anyway
        if run_now and next_fire > now.timestamp():
            self._fire(task)

        while self._running:
            delay = next_fire - self._clock().timestamp()
            if delay > 0:
                await self._sleep(delay)
            if not self._running:
                break

            self._fire(task)

            next_fire += period_sec
            now_ts = self._clock().timestamp()
            if next_fire < now_ts:
                skipped = int((now_ts - next_fire) // period_sec) + 1
                next_fire += skipped * period_sec
                logger.warning(f"[SCHED] Woke late, skipped {skipped} boundary(ies)")

        logger.info("[SCHED] Stopped.")

    def stop(self):
        self._stopped = True
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def _wait_or_stop(self, delay: float):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # boundary reached

    async def drain(self):
        """Wait for in-flight runs to finish."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    def _fire(self, task: Task):
        self.firings += 1
        run = asyncio.create_task(self._run_once(task, self.firings))
        self._inflight.add(run)
        run.add_done_callback(self._inflight.discard)

    async def _run_once(self, task: Task, firing: int):
        if self._inflight_count() > 1:
            logger.warning(f"[SCHED] Firing #{firing} overlaps a previous run")
        try:
            await task()
        except Exception as e:
            logger.error(f"[SCHED] Firing #{firing} failed: {e}", exc_info=True)

    def _inflight_count(self) -> int:
        return sum(1 for t in self._inflight if not t.done())
