from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from bloodalert.clock import ManualScheduler
from bloodalert.fetcher import FetchError, FetchErrorKind, FetchResult
from bloodalert.models import AlertRecord, Feed


def record_json(rid: str, **overrides: Any) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "_id": rid,
        "patientName": f"Patient {rid}",
        "bloodGroup": "O-",
        "requiredUnits": 2,
        "urgency": "Critical",
        "hospitalName": "City General",
        "location": "Chennai",
        "daysLeft": 1,
        "hoursLeft": 12,
    }
    data.update(overrides)
    return data


def make_record(rid: str, **overrides: Any) -> AlertRecord:
    rec = AlertRecord.from_json(record_json(rid, **overrides))
    assert rec is not None
    return rec


def ok(feed: Feed, *records: AlertRecord) -> FetchResult:
    return FetchResult(feed=feed, records=tuple(records))


def fail(feed: Feed, kind: FetchErrorKind, status: Optional[int] = None) -> FetchResult:
    return FetchResult(feed=feed, error=FetchError(kind, "simulated", status=status))


HOLD = object()


class FakeFetcher:
    """
    Scripted stand-in for DeadlineFetcher.

    queue() lines up results per feed; HOLD makes the call block until
    release() is called. An empty queue answers with an empty success.
    """

    def __init__(self) -> None:
        self.calls: List[str] = []
        self._queued: Dict[str, List[Any]] = {}
        self._held: List[tuple[Feed, asyncio.Future[FetchResult]]] = []
        self.closed = False

    def queue(self, feed: Feed, *items: Any) -> None:
        self._queued.setdefault(feed.name, []).extend(items)

    @property
    def held(self) -> int:
        return len(self._held)

    def release(self, result: FetchResult) -> None:
        for i, (feed, fut) in enumerate(self._held):
            if feed.name == result.feed.name:
                del self._held[i]
                fut.set_result(result)
                return
        raise AssertionError(f"no held call for {result.feed.name}")

    async def fetch(self, feed: Feed) -> FetchResult:
        self.calls.append(feed.name)
        q = self._queued.get(feed.name)
        item = q.pop(0) if q else ok(feed)
        if item is HOLD:
            fut: asyncio.Future[FetchResult] = asyncio.get_running_loop().create_future()
            self._held.append((feed, fut))
            return await fut
        return item

    async def aclose(self) -> None:
        self.closed = True


class RecordingTone:
    def __init__(self, fail_on_play: bool = False) -> None:
        self.fail_on_play = fail_on_play
        self.plays = 0
        self.stops = 0

    def play(self) -> None:
        self.plays += 1
        if self.fail_on_play:
            raise RuntimeError("no audio device")

    def stop(self) -> None:
        self.stops += 1


class RecordingSink:
    def __init__(self) -> None:
        self.views: List[Any] = []
        self.events: List[Any] = []

    def panel(self, view: Any) -> None:
        self.views.append(view)

    def popup(self, event: Any) -> None:
        self.events.append(event)


async def drain(rounds: int = 10) -> None:
    """Let spawned poll tasks run to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler(start=1000.0)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()
