import asyncio

import pytest

from bloodalert.clock import ManualScheduler
from bloodalert.poller import PollScheduler

from conftest import drain


class _GatedPoll:
    """Poll function that blocks until the test opens the gate."""

    def __init__(self) -> None:
        self.started = 0
        self.finished = 0
        self.gate = asyncio.Event()
        self.gate.set()

    async def __call__(self) -> None:
        self.started += 1
        await self.gate.wait()
        self.finished += 1


@pytest.mark.asyncio
async def test_start_polls_immediately_then_every_interval(scheduler: ManualScheduler) -> None:
    poll = _GatedPoll()
    poller = PollScheduler("urgent", scheduler)

    poller.start(180, poll)
    await drain()
    assert poll.finished == 1
    assert poller.last_poll_at == 1000.0

    scheduler.advance(179)
    await drain()
    assert poll.finished == 1

    scheduler.advance(1)
    await drain()
    assert poll.finished == 2

    scheduler.advance(360)
    await drain()
    assert poll.started >= 3
    assert poller.running
    poller.stop()


@pytest.mark.asyncio
async def test_tick_is_skipped_while_poll_in_flight(scheduler: ManualScheduler) -> None:
    poll = _GatedPoll()
    poll.gate.clear()
    poller = PollScheduler("emergency", scheduler)

    poller.start(120, poll)
    await drain()
    assert poller.in_flight

    scheduler.advance(120)
    scheduler.advance(120)
    await drain()

    assert poll.started == 1
    assert poller.skipped_ticks == 2
    assert poller.polls_started == 1

    poll.gate.set()
    await drain()
    assert not poller.in_flight

    scheduler.advance(120)
    await drain()
    assert poll.started == 2
    poller.stop()


@pytest.mark.asyncio
async def test_failing_poll_does_not_stop_the_timer(scheduler: ManualScheduler) -> None:
    calls = []

    async def broken() -> None:
        calls.append(scheduler.now())
        raise RuntimeError("backend exploded")

    poller = PollScheduler("emergency", scheduler)
    poller.start(10, broken)
    await drain()
    scheduler.advance(10)
    await drain()
    scheduler.advance(10)
    await drain()

    assert calls == [1000.0, 1010.0, 1020.0]
    assert poller.running
    poller.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_cancels_in_flight(scheduler: ManualScheduler) -> None:
    poll = _GatedPoll()
    poll.gate.clear()
    poller = PollScheduler("urgent", scheduler)
    poller.start(60, poll)
    await drain()

    poller.stop()
    poller.stop()
    await drain()

    assert not poller.running
    assert not poller.in_flight
    assert poll.finished == 0
    assert scheduler.pending() == 0

    scheduler.advance(600)
    await drain()
    assert poll.started == 1


@pytest.mark.asyncio
async def test_trigger_joins_in_flight_poll(scheduler: ManualScheduler) -> None:
    poll = _GatedPoll()
    poll.gate.clear()
    poller = PollScheduler("urgent", scheduler)
    poller.start(60, poll)
    await drain()

    joined = poller.trigger()
    assert joined is not None
    assert poll.started == 1

    poll.gate.set()
    await joined
    assert poll.finished == 1

    fresh = poller.trigger()
    assert fresh is not None
    await fresh
    assert poll.finished == 2
    poller.stop()


@pytest.mark.asyncio
async def test_trigger_without_poll_function_does_nothing(scheduler: ManualScheduler) -> None:
    poller = PollScheduler("urgent", scheduler)

    assert poller.trigger() is None

    poll = _GatedPoll()
    task = poller.trigger(poll)
    assert task is not None
    await task
    assert poll.finished == 1


@pytest.mark.asyncio
async def test_start_twice_keeps_first_timer(scheduler: ManualScheduler) -> None:
    poll = _GatedPoll()
    poller = PollScheduler("urgent", scheduler)
    poller.start(60, poll)
    await drain()

    poller.start(5, poll)
    await drain()

    assert poller.interval == 60
    assert poll.started == 1
    poller.stop()


def test_start_rejects_non_positive_interval(scheduler: ManualScheduler) -> None:
    poller = PollScheduler("urgent", scheduler)
    with pytest.raises(ValueError):
        poller.start(0, _GatedPoll())
