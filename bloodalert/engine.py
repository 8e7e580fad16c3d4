from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from .clock import AsyncioScheduler, Scheduler
from .config import AppConfig
from .dedup import DedupTracker
from .fetcher import DeadlineFetcher, FetchResult
from .handoff import SessionHandoff
from .models import EMERGENCY, EMERGENCY_ALL, URGENT
from .panel import PanelRenderer
from .poller import PollScheduler
from .popup import CloseReason, PopupController
from .sink import ConsoleSink
from .tone import AlertTone, NullTone, WavTone
from .ttl_cache import TtlCache

log = logging.getLogger("bloodalert")

DONATE_PATH = "/donate"
SEE_ALL_PATH = "/request?filter=emergency"


class AlertEngine:
    """
    Owns the two feeds: the urgent requests panel and the emergency popup.

    Constructed explicitly by the application bootstrap; every collaborator
    can be injected. Nothing runs until start().
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        fetcher: Optional[DeadlineFetcher] = None,
        scheduler: Optional[Scheduler] = None,
        tone: Optional[AlertTone] = None,
        sink: Any = None,
        handoff: Optional[SessionHandoff] = None,
    ) -> None:
        self.cfg = cfg
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.fetcher = fetcher or DeadlineFetcher(
            cfg.api.base_url,
            deadline=cfg.api.timeout_seconds,
            user_agent=cfg.api.user_agent,
        )
        self.sink = sink if sink is not None else ConsoleSink()
        self.handoff = handoff or SessionHandoff(
            path=cfg.paths.resolve(cfg.paths.handoff_file, "handoff.json")
        )

        if tone is None:
            if cfg.tone.enabled:
                tone = WavTone(Path(cfg.paths.work_dir) / "alert_tone.wav", sample_rate=cfg.tone.sample_rate)
            else:
                tone = NullTone()

        self.dedup = DedupTracker()
        self.urgent_cache = TtlCache(cfg.cache.ttl_seconds, self.scheduler.now, name=URGENT.name)
        self.emergency_cache = TtlCache(cfg.cache.ttl_seconds, self.scheduler.now, name=EMERGENCY.name)

        self.popup = PopupController(
            self.scheduler,
            self.dedup,
            auto_close_seconds=cfg.popup.auto_close_seconds,
            tone=tone,
            mark_policy=cfg.popup.mark_policy,  # type: ignore[arg-type]
        )
        self.popup.subscribe(self.sink.popup)

        self.urgent_poller = PollScheduler(URGENT.name, self.scheduler)
        self.emergency_poller = PollScheduler(EMERGENCY.name, self.scheduler)

        self.panel = PanelRenderer(
            self.fetcher,
            self.urgent_cache,
            self.urgent_poller,
            self.scheduler,
            self.sink.panel,
            reconcile_delay=cfg.cache.reconcile_delay_seconds,
        )

        self.initialized = False
        self.last_emergency_check: Optional[float] = None
        self.last_emergency_error: Optional[str] = None

    # --- lifecycle ---

    def start(self) -> None:
        """Start both pollers; each polls once right away. Needs a running loop."""
        if self.initialized:
            log.warning("Alert engine already started")
            return
        self.urgent_poller.start(self.cfg.polling.urgent_interval_seconds, self.panel.poll)
        self.emergency_poller.start(self.cfg.polling.emergency_interval_seconds, self.check_emergencies)
        self.initialized = True
        log.info(
            "Alert engine started (urgent=%.0fs emergency=%.0fs ttl=%.0fs auto_close=%.0fs policy=%s)",
            self.cfg.polling.urgent_interval_seconds,
            self.cfg.polling.emergency_interval_seconds,
            self.cfg.cache.ttl_seconds,
            self.cfg.popup.auto_close_seconds,
            self.cfg.popup.mark_policy,
        )

    def stop(self) -> None:
        self.urgent_poller.stop()
        self.emergency_poller.stop()
        self.panel.stop()
        self.popup.close(CloseReason.SHUTDOWN)
        if self.initialized:
            log.info("Alert engine stopped")
        self.initialized = False

    async def aclose(self) -> None:
        self.stop()
        await self.fetcher.aclose()

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        self.start()
        try:
            await stop_event.wait()
        finally:
            await self.aclose()

    # --- emergency feed ---

    async def check_emergencies(self) -> None:
        """
        One background emergency poll. Failures are logged and swallowed;
        the next tick is the retry.
        """
        self.last_emergency_check = self.scheduler.now()
        result = await self.fetcher.fetch(EMERGENCY)
        if not result.ok:
            self.last_emergency_error = str(result.error)
            log.warning("Emergency check failed: %s", result.error)
            return

        self.last_emergency_error = None
        self.emergency_cache.put(result.records)
        if not result.records:
            log.info("No emergency requests found")
            return

        log.info("Found %d emergency request(s)", len(result.records))
        # popup state is re-read here, after the fetch, not before it
        self.popup.offer(result.records)

    def check_now(self) -> Optional[asyncio.Task[None]]:
        log.info("Manual emergency check triggered")
        return self.emergency_poller.trigger()

    async def all_emergencies(self) -> FetchResult:
        return await self.fetcher.fetch(EMERGENCY_ALL)

    # --- popup actions ---

    def respond(self, record_id: Optional[str] = None) -> str:
        """User pressed "I can help". Returns the path to navigate to."""
        session = self.popup.session
        rid = record_id or (session.active_record_id if session else None)
        self.popup.close(CloseReason.RESPOND)
        if rid:
            log.info("User wants to help with emergency request %s", rid)
            self.handoff.save(rid)
        return DONATE_PATH

    def see_all(self) -> str:
        self.popup.close(CloseReason.SEE_ALL)
        return SEE_ALL_PATH

    # --- reporting ---

    def status(self) -> Dict[str, Any]:
        session = self.popup.session
        return {
            "initialized": self.initialized,
            "popupState": self.popup.state.value,
            "isPopupVisible": self.popup.is_visible,
            "activeRequestId": session.active_record_id if session else None,
            "lastEmergencyCheck": self.last_emergency_check,
            "lastEmergencyError": self.last_emergency_error,
            "emergencyInterval": self.cfg.polling.emergency_interval_seconds,
            "urgentInterval": self.cfg.polling.urgent_interval_seconds,
            "shownEmergenciesCount": len(self.dedup),
            "urgentRequestsCount": len(self.panel.view.records),
            "panelStatus": self.panel.view.status.value,
            "urgentCacheAge": self.urgent_cache.age(),
            "emergencyCacheAge": self.emergency_cache.age(),
            "skippedTicks": {
                URGENT.name: self.urgent_poller.skipped_ticks,
                EMERGENCY.name: self.emergency_poller.skipped_ticks,
            },
        }
