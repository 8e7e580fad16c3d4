from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Callable, List, Optional, Protocol, Tuple

log = logging.getLogger("bloodalert.clock")

Callback = Callable[[], None]


class TimerHandle:
    """Returned by Scheduler.after/every; pass it back to Scheduler.cancel."""

    def __init__(self, interval: Optional[float] = None) -> None:
        self.interval = interval
        self.cancelled = False
        self._loop_handle: Optional[asyncio.TimerHandle] = None

    @property
    def repeating(self) -> bool:
        return self.interval is not None


class Scheduler(Protocol):
    def now(self) -> float: ...

    def after(self, delay: float, fn: Callback) -> TimerHandle: ...

    def every(self, interval: float, fn: Callback) -> TimerHandle: ...

    def cancel(self, handle: Optional[TimerHandle]) -> None: ...


def _run_callback(fn: Callback) -> None:
    # A raising timer callback must not kill the loop or a repeating timer.
    try:
        fn()
    except Exception:
        log.exception("Timer callback failed")


class AsyncioScheduler:
    """Timers on the running asyncio loop (loop.call_later, loop.time)."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def after(self, delay: float, fn: Callback) -> TimerHandle:
        handle = TimerHandle()

        def _fire() -> None:
            if handle.cancelled:
                return
            handle.cancelled = True
            _run_callback(fn)

        handle._loop_handle = self.loop.call_later(max(0.0, delay), _fire)
        return handle

    def every(self, interval: float, fn: Callback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(interval=interval)
        start = self.now()
        ticks = itertools.count(1)

        def _arm() -> None:
            # schedule against the start time so slow callbacks don't drift the cadence
            due = start + next(ticks) * interval
            handle._loop_handle = self.loop.call_at(due, _fire)

        def _fire() -> None:
            if handle.cancelled:
                return
            _arm()
            _run_callback(fn)

        _arm()
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is None or handle.cancelled:
            return
        handle.cancelled = True
        if handle._loop_handle is not None:
            handle._loop_handle.cancel()
            handle._loop_handle = None


class ManualScheduler:
    """
    Simulated clock. Nothing fires until advance() moves time forward.

    Callbacks run synchronously inside advance(), in due order; ties fire in
    the order they were scheduled.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._seq = itertools.count()
        self._queue: List[Tuple[float, int, TimerHandle, Callback]] = []

    def now(self) -> float:
        return self._now

    def after(self, delay: float, fn: Callback) -> TimerHandle:
        handle = TimerHandle()
        self._push(self._now + max(0.0, delay), handle, fn)
        return handle

    def every(self, interval: float, fn: Callback) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        handle = TimerHandle(interval=interval)
        self._push(self._now + interval, handle, fn)
        return handle

    def cancel(self, handle: Optional[TimerHandle]) -> None:
        if handle is not None:
            handle.cancelled = True

    def pending(self) -> int:
        return sum(1 for _, _, h, _ in self._queue if not h.cancelled)

    def advance(self, seconds: float) -> None:
        target = self._now + max(0.0, seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, fn = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = due
            if handle.repeating:
                self._push(due + handle.interval, handle, fn)  # type: ignore[operator]
            else:
                handle.cancelled = True
            _run_callback(fn)
        self._now = target

    def _push(self, due: float, handle: TimerHandle, fn: Callback) -> None:
        heapq.heappush(self._queue, (due, next(self._seq), handle, fn))
