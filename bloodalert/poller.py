from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .clock import Scheduler, TimerHandle

log = logging.getLogger("bloodalert.poller")

PollFn = Callable[[], Awaitable[None]]


class PollScheduler:
    """
    Repeating poll timer for one feed with an in-flight guard.

    A tick that fires while the previous poll is still awaiting its fetch is
    skipped, so at most one request per feed is ever outstanding and results
    can't land out of order.
    """

    def __init__(self, name: str, scheduler: Scheduler) -> None:
        self.name = name
        self._scheduler = scheduler
        self._timer: Optional[TimerHandle] = None
        self._poll_fn: Optional[PollFn] = None
        self._inflight: Optional[asyncio.Task[None]] = None

        self.interval: Optional[float] = None
        self.last_poll_at: Optional[float] = None
        self.polls_started = 0
        self.skipped_ticks = 0

    @property
    def running(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self, interval: float, poll_fn: PollFn) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if self.running:
            log.warning("Poller %s already started", self.name)
            return

        self.interval = float(interval)
        self._poll_fn = poll_fn
        self._timer = self._scheduler.every(self.interval, self._tick)
        log.info("Poller %s started (every %.0fs)", self.name, self.interval)
        self._tick()

    def stop(self) -> None:
        if self._timer is not None:
            self._scheduler.cancel(self._timer)
            self._timer = None
            log.info("Poller %s stopped", self.name)
        if self.in_flight:
            assert self._inflight is not None
            self._inflight.cancel()
        self._inflight = None

    def trigger(self, poll_fn: Optional[PollFn] = None) -> Optional[asyncio.Task[None]]:
        """
        Poll now under the same guard as the timer.

        Returns the in-flight task when one is already running instead of
        starting a second fetch. Returns None if no poll function is known.
        """
        if self.in_flight:
            log.debug("Poller %s: poll already in flight; joining it", self.name)
            return self._inflight
        fn = poll_fn or self._poll_fn
        if fn is None:
            return None
        return self._launch(fn)

    def _tick(self) -> None:
        if self.in_flight:
            self.skipped_ticks += 1
            log.info("Poller %s: previous poll still in flight; skipping tick", self.name)
            return
        if self._poll_fn is not None:
            self._launch(self._poll_fn)

    def _launch(self, fn: PollFn) -> asyncio.Task[None]:
        self.last_poll_at = self._scheduler.now()
        self.polls_started += 1
        task = asyncio.get_running_loop().create_task(self._run(fn), name=f"poll_{self.name}")
        self._inflight = task
        return task

    async def _run(self, fn: PollFn) -> None:
        try:
            await fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            # the next tick retries; a failing poll must never stop the timer
            log.exception("Poller %s: poll failed", self.name)
