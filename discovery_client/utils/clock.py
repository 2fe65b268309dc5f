"""
Clock Utilities - Centralized time source

Every component that reads time or waits goes through a Clock so that
tests can drive TTLs, cooldowns, backoff and renewal loops without real
timers.

Usage:
    from discovery_client.utils.clock import Clock, FakeClock
"""
import asyncio
import heapq
import itertools
import time
from typing import List, Tuple


class Clock:
    """Monotonic wall clock backed by the running event loop."""

    def now(self) -> float:
        """Seconds on a monotonic scale."""
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class FakeClock(Clock):
    """
    Manually advanced clock for tests.

    Sleepers park until advance() moves time past their deadline. They are
    woken in deadline order and the clock reads each sleeper's deadline at
    the moment it wakes, so a renewal loop that re-arms inside the advanced
    window fires the expected number of times.

    Usage:
        clock = FakeClock()
        task = asyncio.create_task(worker(clock))
        await clock.advance(30)
    """

    # Yields granted to woken tasks so they can re-arm before the next wake
    SETTLE_ROUNDS = 50

    def __init__(self, start: float = 0.0):
        self._now = start
        self._seq = itertools.count()
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes."""
        target = self._now + seconds
        await self._settle()

        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            if future.done():
                continue
            self._now = max(self._now, deadline)
            future.set_result(None)
            await self._settle()

        self._now = target
        await self._settle()

    async def _settle(self) -> None:
        for _ in range(self.SETTLE_ROUNDS):
            await asyncio.sleep(0)
