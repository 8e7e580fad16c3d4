from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from .clock import Scheduler, TimerHandle
from .fetcher import DeadlineFetcher, FetchErrorKind, FetchResult
from .models import URGENT, AlertRecord, Feed
from .poller import PollScheduler
from .ttl_cache import TtlCache

log = logging.getLogger("bloodalert.panel")


class PanelStatus(str, enum.Enum):
    LOADING = "loading"
    READY = "ready"
    EMPTY = "empty"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    ERROR = "error"


class PanelAction(str, enum.Enum):
    REFRESH = "refresh"
    RETRY = "retry"
    LOAD_CACHED = "load_cached"


@dataclass(frozen=True)
class PanelView:
    status: PanelStatus
    records: Tuple[AlertRecord, ...] = ()
    actions: Tuple[PanelAction, ...] = ()
    message: str = ""
    from_cache: bool = False
    updated_at: Optional[float] = None
    error: Optional[str] = None


PanelSink = Callable[[PanelView], None]

_ERROR_VIEWS = {
    FetchErrorKind.TIMEOUT: (
        PanelStatus.TIMEOUT,
        (PanelAction.RETRY,),
        "The request took too long. Please try again.",
    ),
    FetchErrorKind.NETWORK: (
        PanelStatus.NETWORK_ERROR,
        (PanelAction.RETRY, PanelAction.LOAD_CACHED),
        "Unable to reach the server. Check your connection.",
    ),
}
_GENERIC_ERROR = (
    PanelStatus.ERROR,
    (PanelAction.RETRY,),
    "We're having trouble loading urgent requests. Please try again.",
)


class PanelRenderer:
    """
    Urgent requests panel: paint from cache when possible, then reconcile.

    The first poll is the mount: a valid cache renders immediately and a
    reconciling poll follows after reconcile_delay; otherwise the panel waits
    on a foreground fetch. Later scheduled polls are background refreshes
    whose failures are only logged. refresh()/retry() are user-initiated and
    surface failures as recovery states.
    """

    def __init__(
        self,
        fetcher: DeadlineFetcher,
        cache: TtlCache,
        poller: PollScheduler,
        scheduler: Scheduler,
        sink: PanelSink,
        *,
        feed: Feed = URGENT,
        reconcile_delay: float = 1.0,
    ) -> None:
        self._fetcher = fetcher
        self.cache = cache
        self._poller = poller
        self._scheduler = scheduler
        self._sink = sink
        self.feed = feed
        self.reconcile_delay = float(reconcile_delay)

        self.mounted = False
        self.view = PanelView(status=PanelStatus.LOADING)
        self.last_update: Optional[float] = None
        self._last_result: Optional[FetchResult] = None
        self._reconcile_timer: Optional[TimerHandle] = None

    async def poll(self) -> None:
        """Poll function for the feed's PollScheduler."""
        if not self.mounted:
            await self.mount()
            return
        await self._load(foreground=False)

    async def mount(self) -> None:
        self.mounted = True
        self._render(PanelView(status=PanelStatus.LOADING, message="Loading urgent requests..."))

        cached = self.cache.get()
        if cached is not None:
            log.info("Rendering %d urgent request(s) from cache", len(cached))
            if self.last_update is None:
                self.last_update = self._scheduler.now() - (self.cache.age() or 0.0)
            self._render_records(cached, from_cache=True)
            self._reconcile_timer = self._scheduler.after(self.reconcile_delay, self._reconcile)
            return

        await self._load(foreground=True)

    async def refresh(self) -> PanelView:
        log.info("Manual refresh triggered")
        task = self._poller.trigger(self._load_foreground)
        if task is None:
            return self.view
        await task
        # a joined background poll only logs its failure; the user still sees it
        result = self._last_result
        if result is not None and not result.ok and self.view.error != str(result.error):
            self._render_error(result)
        return self.view

    async def retry(self) -> PanelView:
        return await self.refresh()

    def load_cached(self) -> PanelView:
        cached = self.cache.get()
        if cached is None:
            self._render(
                PanelView(
                    status=PanelStatus.ERROR,
                    actions=(PanelAction.RETRY,),
                    message="No cached data available.",
                )
            )
        else:
            self._render_records(cached, from_cache=True)
        return self.view

    def stop(self) -> None:
        """Cancel a pending reconcile. Polling itself is stopped on the poller."""
        self._scheduler.cancel(self._reconcile_timer)
        self._reconcile_timer = None

    def _reconcile(self) -> None:
        self._reconcile_timer = None
        if not self._poller.running:
            log.debug("Poller stopped; skipping reconcile of cached urgent requests")
            return
        log.debug("Reconciling cached urgent requests with server")
        self._poller.trigger(self._load_background)

    async def _load_foreground(self) -> None:
        await self._load(foreground=True)

    async def _load_background(self) -> None:
        await self._load(foreground=False)

    async def _load(self, *, foreground: bool) -> None:
        result = await self._fetcher.fetch(self.feed)
        self._last_result = result
        if result.ok:
            self.cache.put(result.records)
            self.last_update = self._scheduler.now()
            self._render_records(result.records, from_cache=False)
            log.info("Loaded %d urgent request(s)", len(result.records))
            return

        if not foreground:
            log.warning("Background refresh of urgent requests failed: %s", result.error)
            return
        self._render_error(result)

    def _render_records(self, records: Tuple[AlertRecord, ...], *, from_cache: bool) -> None:
        if not records:
            view = PanelView(
                status=PanelStatus.EMPTY,
                actions=(PanelAction.REFRESH,),
                message="No urgent blood requests at the moment.",
                from_cache=from_cache,
                updated_at=self.last_update,
            )
        else:
            view = PanelView(
                status=PanelStatus.READY,
                records=tuple(records),
                actions=(PanelAction.REFRESH,),
                from_cache=from_cache,
                updated_at=self.last_update,
            )
        self._render(view)

    def _render_error(self, result: FetchResult) -> None:
        assert result.error is not None
        status, actions, message = _ERROR_VIEWS.get(result.error.kind, _GENERIC_ERROR)
        log.warning("Urgent requests unavailable (%s)", result.error)
        self._render(
            PanelView(
                status=status,
                actions=actions,
                message=message,
                error=str(result.error),
            )
        )

    def _render(self, view: PanelView) -> None:
        self.view = view
        try:
            self._sink(view)
        except Exception:
            log.exception("Panel sink failed (%s)", view.status.value)
