import asyncio
from pathlib import Path

import pytest

from bloodalert.clock import ManualScheduler
from bloodalert.config import AppConfig, PathsConfig
from bloodalert.engine import DONATE_PATH, SEE_ALL_PATH, AlertEngine
from bloodalert.fetcher import FetchErrorKind
from bloodalert.handoff import SessionHandoff
from bloodalert.models import EMERGENCY, EMERGENCY_ALL, URGENT
from bloodalert.panel import PanelStatus
from bloodalert.popup import CloseReason, PopupState

from conftest import FakeFetcher, RecordingSink, RecordingTone, drain, fail, make_record, ok


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(tmp_path: Path, scheduler: ManualScheduler, fetcher: FakeFetcher, sink: RecordingSink) -> AlertEngine:
    cfg = AppConfig(paths=PathsConfig(work_dir=str(tmp_path)))
    return AlertEngine(
        cfg,
        fetcher=fetcher,  # type: ignore[arg-type]
        scheduler=scheduler,
        tone=RecordingTone(),
        sink=sink,
        handoff=SessionHandoff(path=tmp_path / "handoff.json"),
    )


def _emergencies():
    return ok(EMERGENCY, make_record("E1", urgency="Critical"), make_record("E2", urgency="High"))


@pytest.mark.asyncio
async def test_urgent_feed_fills_panel_without_popup(engine: AlertEngine, fetcher: FakeFetcher) -> None:
    fetcher.queue(URGENT, ok(URGENT, make_record("A"), make_record("B")))
    fetcher.queue(EMERGENCY, ok(EMERGENCY))

    engine.start()
    await drain()

    assert engine.panel.view.status is PanelStatus.READY
    assert [r.id for r in engine.panel.view.records] == ["A", "B"]
    assert engine.popup.state is PopupState.IDLE
    assert len(engine.dedup) == 0
    engine.stop()


@pytest.mark.asyncio
async def test_emergency_batch_opens_popup_on_first_record(
    engine: AlertEngine, fetcher: FakeFetcher, sink: RecordingSink
) -> None:
    fetcher.queue(EMERGENCY, _emergencies())

    engine.start()
    await drain()

    session = engine.popup.session
    assert session is not None
    assert session.active_record_id == "E1"
    assert "E1" in engine.dedup and "E2" in engine.dedup
    assert [e.kind for e in sink.events] == ["opened"]
    engine.stop()


@pytest.mark.asyncio
async def test_unchanged_emergencies_do_not_reopen(
    engine: AlertEngine, fetcher: FakeFetcher, scheduler: ManualScheduler
) -> None:
    fetcher.queue(EMERGENCY, _emergencies(), _emergencies())
    engine.start()
    await drain()
    scheduler.advance(15)
    assert engine.popup.state is PopupState.IDLE

    scheduler.advance(105)
    await drain()

    assert fetcher.calls.count("emergency") == 2
    assert engine.popup.opened_count == 1
    assert engine.popup.state is PopupState.IDLE
    engine.stop()


@pytest.mark.asyncio
async def test_emergency_failure_is_swallowed_and_retried_next_tick(
    engine: AlertEngine, fetcher: FakeFetcher, scheduler: ManualScheduler
) -> None:
    fetcher.queue(EMERGENCY, fail(EMERGENCY, FetchErrorKind.NETWORK), _emergencies())

    engine.start()
    await drain()
    assert engine.last_emergency_error is not None
    assert engine.emergency_poller.running
    assert engine.popup.state is PopupState.IDLE

    scheduler.advance(120)
    await drain()

    assert engine.last_emergency_error is None
    assert engine.popup.session is not None
    assert engine.emergency_cache.is_valid()
    engine.stop()


@pytest.mark.asyncio
async def test_respond_stores_selected_request_and_closes(
    engine: AlertEngine, fetcher: FakeFetcher, sink: RecordingSink
) -> None:
    fetcher.queue(EMERGENCY, _emergencies())
    engine.start()
    await drain()

    path = engine.respond()

    assert path == DONATE_PATH
    assert engine.handoff.load() == "E1"
    assert engine.popup.state is PopupState.IDLE
    assert sink.events[-1].reason is CloseReason.RESPOND
    engine.stop()


def test_respond_with_explicit_id_and_no_popup(engine: AlertEngine) -> None:
    assert engine.respond("E7") == DONATE_PATH
    assert engine.handoff.load() == "E7"


@pytest.mark.asyncio
async def test_see_all_closes_popup(engine: AlertEngine, fetcher: FakeFetcher, sink: RecordingSink) -> None:
    fetcher.queue(EMERGENCY, _emergencies())
    engine.start()
    await drain()

    assert engine.see_all() == SEE_ALL_PATH
    assert sink.events[-1].reason is CloseReason.SEE_ALL
    engine.stop()


@pytest.mark.asyncio
async def test_check_now_runs_an_emergency_poll(engine: AlertEngine, fetcher: FakeFetcher) -> None:
    fetcher.queue(EMERGENCY, ok(EMERGENCY), _emergencies())
    engine.start()
    await drain()

    task = engine.check_now()
    assert task is not None
    await task

    assert fetcher.calls.count("emergency") == 2
    assert engine.popup.session is not None
    engine.stop()


@pytest.mark.asyncio
async def test_all_emergencies_uses_full_list_endpoint(engine: AlertEngine, fetcher: FakeFetcher) -> None:
    fetcher.queue(EMERGENCY_ALL, ok(EMERGENCY_ALL, make_record("E1"), make_record("E5")))

    result = await engine.all_emergencies()

    assert fetcher.calls == ["emergency_all"]
    assert [r.id for r in result.records] == ["E1", "E5"]


@pytest.mark.asyncio
async def test_status_reports_engine_state(
    engine: AlertEngine, fetcher: FakeFetcher, scheduler: ManualScheduler
) -> None:
    fetcher.queue(URGENT, ok(URGENT, make_record("A")))
    fetcher.queue(EMERGENCY, _emergencies())
    engine.start()
    await drain()
    scheduler.advance(3)

    status = engine.status()

    assert status["initialized"] is True
    assert status["isPopupVisible"] is True
    assert status["popupState"] == "displaying"
    assert status["activeRequestId"] == "E1"
    assert status["lastEmergencyCheck"] == 1000.0
    assert status["lastEmergencyError"] is None
    assert status["emergencyInterval"] == 120.0
    assert status["urgentInterval"] == 180.0
    assert status["shownEmergenciesCount"] == 2
    assert status["urgentRequestsCount"] == 1
    assert status["panelStatus"] == "ready"
    assert status["urgentCacheAge"] == 3.0
    assert status["skippedTicks"] == {"urgent": 0, "emergency": 0}
    engine.stop()


@pytest.mark.asyncio
async def test_stop_cancels_every_timer(
    engine: AlertEngine, fetcher: FakeFetcher, scheduler: ManualScheduler, sink: RecordingSink
) -> None:
    fetcher.queue(EMERGENCY, _emergencies())
    engine.start()
    await drain()
    assert scheduler.pending() > 0

    engine.stop()
    engine.stop()

    assert scheduler.pending() == 0
    assert sink.events[-1].reason is CloseReason.SHUTDOWN
    assert not engine.status()["initialized"]

    calls = len(fetcher.calls)
    scheduler.advance(3600)
    await drain()
    assert len(fetcher.calls) == calls


@pytest.mark.asyncio
async def test_run_forever_closes_fetcher_on_stop(engine: AlertEngine, fetcher: FakeFetcher) -> None:
    stop = asyncio.Event()
    runner = asyncio.ensure_future(engine.run_forever(stop))
    await drain()
    assert engine.initialized

    stop.set()
    await runner

    assert fetcher.closed
    assert not engine.initialized


@pytest.mark.asyncio
async def test_stop_cancels_reconcile_after_cached_paint(
    engine: AlertEngine, fetcher: FakeFetcher, scheduler: ManualScheduler
) -> None:
    engine.urgent_cache.put([make_record("A")])
    engine.start()
    await drain()
    assert engine.panel.view.from_cache

    await engine.aclose()
    scheduler.advance(5)
    await drain()

    assert scheduler.pending() == 0
    assert "urgent" not in fetcher.calls
