from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Literal, Optional

from .clock import Scheduler, TimerHandle
from .dedup import DedupTracker
from .models import AlertRecord
from .tone import AlertTone, NullTone

log = logging.getLogger("bloodalert.popup")


DEFAULT_AUTO_CLOSE_SECONDS = 15.0

MarkPolicy = Literal["batch", "displayed"]
MARK_POLICIES = ("batch", "displayed")


class PopupState(str, enum.Enum):
    IDLE = "idle"
    DISPLAYING = "displaying"
    CLOSING = "closing"


class CloseReason(str, enum.Enum):
    TIMEOUT = "timeout"
    CLOSE_BUTTON = "close"
    ESCAPE = "escape"
    CLICK_OUTSIDE = "click_outside"
    RESPOND = "respond"
    SEE_ALL = "see_all"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class PopupSession:
    generation: int
    record: AlertRecord
    opened_at: float
    auto_close_at: float

    @property
    def active_record_id(self) -> str:
        return self.record.id


@dataclass(frozen=True)
class PopupEvent:
    """
    kind is "opened", "closing" or "closed". Renderers draw the popup on
    "opened" and tear it down on "closing".
    """

    kind: str
    session: PopupSession
    reason: Optional[CloseReason] = None


PopupListener = Callable[[PopupEvent], None]


class PopupController:
    """
    State machine for the single interruptive emergency alert.

    IDLE -> DISPLAYING on a batch with at least one unseen record while idle.
    DISPLAYING -> CLOSING -> IDLE on auto-close, close button, Escape,
    a click outside the popup, or an action button. Every close path cancels
    the auto-close timer and stops the tone.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        dedup: DedupTracker,
        *,
        auto_close_seconds: float = DEFAULT_AUTO_CLOSE_SECONDS,
        tone: Optional[AlertTone] = None,
        mark_policy: MarkPolicy = "batch",
    ) -> None:
        if auto_close_seconds <= 0:
            raise ValueError("auto_close_seconds must be positive")
        if mark_policy not in MARK_POLICIES:
            raise ValueError(f"unknown mark_policy: {mark_policy!r}")
        self._scheduler = scheduler
        self.dedup = dedup
        self.auto_close_seconds = float(auto_close_seconds)
        self.tone: AlertTone = tone or NullTone()
        self.mark_policy = mark_policy

        self._state = PopupState.IDLE
        self._session: Optional[PopupSession] = None
        self._timer: Optional[TimerHandle] = None
        self._generation = 0
        self._listeners: List[PopupListener] = []

        self.opened_count = 0
        self.dropped_batches = 0

    @property
    def state(self) -> PopupState:
        return self._state

    @property
    def session(self) -> Optional[PopupSession]:
        return self._session

    @property
    def is_visible(self) -> bool:
        return self._state is not PopupState.IDLE

    def subscribe(self, listener: PopupListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def offer(self, records: Iterable[AlertRecord]) -> Optional[PopupSession]:
        """
        Feed one poll result. Opens a popup on the first unseen record (server
        order) when idle; returns the new session, or None.
        """
        new = self.dedup.filter_new(records)
        if not new:
            log.info("All emergency requests already shown")
            return None

        if self._state is not PopupState.IDLE:
            self.dropped_batches += 1
            log.info("Popup already visible, skipping %d new emergency request(s)", len(new))
            return None

        selected = new[0]
        session = self._open(selected)

        if self.mark_policy == "batch":
            self.dedup.mark_shown(new)
        else:
            self.dedup.mark_shown([selected])
        return session

    def close(self, reason: CloseReason = CloseReason.CLOSE_BUTTON) -> bool:
        if self._state is not PopupState.DISPLAYING or self._session is None:
            return False

        session = self._session
        self._state = PopupState.CLOSING
        self._scheduler.cancel(self._timer)
        self._timer = None
        try:
            self.tone.stop()
        except Exception:
            log.exception("Alert tone stop failed")

        self._emit(PopupEvent(kind="closing", session=session, reason=reason))

        self._session = None
        self._state = PopupState.IDLE
        log.info("Emergency popup closed (id=%s reason=%s)", session.active_record_id, reason.value)
        self._emit(PopupEvent(kind="closed", session=session, reason=reason))
        return True

    def handle_key(self, key: str) -> bool:
        if key == "Escape":
            return self.close(CloseReason.ESCAPE)
        return False

    def handle_pointer(self, inside_popup: bool) -> bool:
        if inside_popup:
            return False
        return self.close(CloseReason.CLICK_OUTSIDE)

    def _open(self, record: AlertRecord) -> PopupSession:
        self._generation += 1
        gen = self._generation
        now = self._scheduler.now()
        session = PopupSession(
            generation=gen,
            record=record,
            opened_at=now,
            auto_close_at=now + self.auto_close_seconds,
        )
        self._session = session
        self._state = PopupState.DISPLAYING
        self.opened_count += 1
        self._timer = self._scheduler.after(self.auto_close_seconds, lambda: self._auto_close(gen))

        log.info(
            "Emergency popup opened (id=%s urgency=%s blood=%s auto_close=%.0fs)",
            record.id,
            record.urgency,
            record.blood_group,
            self.auto_close_seconds,
        )

        try:
            self.tone.play()
        except Exception:
            log.exception("Alert tone failed")

        self._emit(PopupEvent(kind="opened", session=session))
        return session

    def _auto_close(self, generation: int) -> None:
        session = self._session
        if session is None or session.generation != generation:
            log.debug("Stale auto-close for generation %d ignored", generation)
            return
        self.close(CloseReason.TIMEOUT)

    def _emit(self, event: PopupEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Popup listener failed on %s", event.kind)
