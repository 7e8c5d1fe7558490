"""
core/clock.py — Injectable time source

Every duration in AIRAssist (keepalive, liveness, reconnect delay, scan
timeout, silence window, auto-listen delay) goes through a Clock so tests
can drive time deterministically.

    LoopClock     — real time: time.monotonic() + asyncio.sleep()
    VirtualClock  — manual time: sleepers wake only when advance() passes
                    their deadline

Usage (tests):
    clock = VirtualClock()
    task = asyncio.create_task(worker(clock))
    await clock.advance(30.0)   # wakes every sleeper due within 30s, in order
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Monotonic time source with a cancellable sleep."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class LoopClock:
    """Wall-clock implementation backed by the running event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class VirtualClock:
    """
    Deterministic clock for tests.

    sleep() parks the caller on a future keyed by its deadline. advance()
    releases sleepers in deadline order, letting the loop run between each
    release so that a woken task can schedule its next sleep before later
    deadlines are considered.
    """

    # Loop iterations given to woken tasks before the next deadline is released
    _SETTLE_ROUNDS = 50

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), fut))
        await fut

    @property
    def pending_sleepers(self) -> int:
        """Number of sleepers still waiting (cancelled ones excluded)."""
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def settle(self) -> None:
        """Yield to the loop until freshly woken tasks have run."""
        for _ in range(self._SETTLE_ROUNDS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline is reached."""
        target = self._now + max(0.0, seconds)
        await self.settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            if fut.done():
                continue
            self._now = max(self._now, deadline)
            fut.set_result(None)
            await self.settle()
        self._now = target
        await self.settle()
