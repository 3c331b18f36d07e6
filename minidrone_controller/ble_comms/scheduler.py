from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, delay_s: float) -> None: ...


class MonotonicClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, delay_s: float) -> None:
        await asyncio.sleep(max(0.0, delay_s))


class VirtualClock:
    """Clock whose time only moves when ``advance`` is awaited.

    Sleepers wake in deadline order and the event loop is drained between
    wake-ups, so everything a woken coroutine schedules runs before virtual
    time moves on.
    """

    SETTLE_ROUNDS = 20

    def __init__(self, start_s: float = 0.0) -> None:
        self._now = float(start_s)
        self._sleepers: List[Tuple[float, int, asyncio.Future]] = []
        self._order = itertools.count()

    def monotonic(self) -> float:
        return self._now

    async def sleep(self, delay_s: float) -> None:
        if delay_s <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + delay_s, next(self._order), fut))
        await fut

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())

    async def settle(self) -> None:
        for _ in range(self.SETTLE_ROUNDS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + max(0.0, seconds)
        while True:
            await self.settle()
            while self._sleepers and self._sleepers[0][2].done():
                heapq.heappop(self._sleepers)
            if not self._sleepers or self._sleepers[0][0] > target:
                break
            wake_s, _, fut = heapq.heappop(self._sleepers)
            self._now = max(self._now, wake_s)
            fut.set_result(None)
        self._now = target
        await self.settle()


@dataclass(slots=True)
class _RunState:
    stop_requested: bool = False
    in_tick: bool = False


class RepeatingTask:
    """Fixed-rate async loop with cancellation that never leaves a stale tick.

    ``cancel`` stops immediately, even in the middle of a tick. ``stop`` lets
    a tick already in progress finish. A callback exception ends the loop and
    is handed to ``on_failure``; it is never retried.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval_s: float,
        clock: Clock,
        name: str = "repeating-task",
        on_failure: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")

        self._callback = callback
        self.interval_s = float(interval_s)
        self._clock = clock
        self.name = name
        self._on_failure = on_failure
        self._task: Optional[asyncio.Task] = None
        self._run_state: Optional[_RunState] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        run = _RunState()
        self._run_state = run
        self._task = asyncio.get_running_loop().create_task(self._run(run), name=self.name)
        return True

    def cancel(self) -> None:
        task, run = self._task, self._run_state
        self._task = None
        self._run_state = None
        if run is not None:
            run.stop_requested = True
        if task is not None and not task.done():
            task.cancel()

    async def stop(self) -> None:
        task, run = self._task, self._run_state
        self._task = None
        self._run_state = None
        if task is None or run is None or task.done():
            return
        run.stop_requested = True
        if not run.in_tick:
            task.cancel()
        await asyncio.wait({task})

    async def _run(self, run: _RunState) -> None:
        next_tick = self._clock.monotonic() + self.interval_s
        while not run.stop_requested:
            await self._clock.sleep(max(0.0, next_tick - self._clock.monotonic()))
            if run.stop_requested:
                break

            run.in_tick = True
            try:
                await self._callback()
            except Exception as exc:
                logger.debug("%s stopped by %r", self.name, exc)
                if self._task is not None and self._run_state is run:
                    self._task = None
                    self._run_state = None
                if self._on_failure is not None:
                    self._on_failure(exc)
                return
            finally:
                run.in_tick = False

            self.ticks += 1
            next_tick += self.interval_s
