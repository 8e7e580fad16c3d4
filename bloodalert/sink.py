from __future__ import annotations

import datetime as dt
import json
import logging
import os
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO

from .models import AlertRecord
from .panel import PanelStatus, PanelView
from .popup import PopupEvent

log = logging.getLogger("bloodalert.sink")


# free-text limits for the state file
_TEXT_LIMITS = {
    "patientName": 120,
    "hospitalName": 160,
    "location": 160,
    "additionalNotes": 500,
}


def _shorten(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0).isoformat()


def atomic_write_json(path: str, payload: Dict[str, Any]) -> None:
    """
    Replace the state file in one step. A reader polling the file sees either
    the previous snapshot or the new one, never a partial write.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)
    except Exception:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# --- text rendering (what the page would draw) ---

def render_card(record: AlertRecord) -> str:
    icon = "[SOS]" if record.is_critical else "[!]"
    lines = [f"{icon} {record.patient_name}  ({record.blood_group})"]
    if record.time_ago:
        lines.append(f"    {record.time_ago}")
    lines.append(f"    Hospital: {record.hospital_name}")
    lines.append(f"    Location: {record.location}")
    lines.append(f"    Units Needed: {record.required_units}")
    lines.append(f"    {record.time_left_label()}")
    if record.additional_notes:
        lines.append(f'    "{record.additional_notes}"')
    lines.append(f"    {record.urgency.upper()} PRIORITY")
    return "\n".join(lines)


def render_panel_text(view: PanelView) -> str:
    head = "== Urgent Blood Requests =="
    if view.status is PanelStatus.LOADING:
        body = view.message or "Loading urgent requests..."
    elif view.status is PanelStatus.EMPTY:
        body = "Great News! No urgent blood requests at the moment."
    elif view.status is PanelStatus.READY:
        body = "\n\n".join(render_card(r) for r in view.records)
        if view.from_cache:
            body += "\n\n(showing cached data)"
    else:
        body = f"Unable to Load Requests: {view.message}"

    actions = " ".join(f"[{a.value}]" for a in view.actions)
    return "\n".join(x for x in (head, body, actions) if x)


def render_popup_text(record: AlertRecord) -> str:
    units = f"{record.required_units} Unit{'s' if record.required_units > 1 else ''}"
    lines = [
        "!!! EMERGENCY BLOOD REQUEST !!!",
        f"Patient: {record.patient_name}",
        f"{record.blood_group} | {units} | {record.urgency}",
        f"Hospital: {record.hospital_name}",
        f"Location: {record.location}",
        record.time_left_label(),
    ]
    if record.additional_notes:
        lines.append(f'"{record.additional_notes}"')
    lines.append("[I CAN HELP] [SEE ALL] [CLOSE]")
    lines.append("Every second counts. Your donation can save a life!")
    return "\n".join(lines)


# --- sinks ---

class ConsoleSink:
    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def _write(self, text: str) -> None:
        self.stream.write(text + "\n\n")
        self.stream.flush()

    def panel(self, view: PanelView) -> None:
        self._write(render_panel_text(view))

    def popup(self, event: PopupEvent) -> None:
        if event.kind == "opened":
            self._write(render_popup_text(event.session.record))
        elif event.kind == "closed":
            reason = event.reason.value if event.reason else "close"
            self._write(f"(emergency popup closed: {reason})")


def _record_payload(r: AlertRecord) -> Dict[str, Any]:
    d = r.to_json()
    for key, limit in _TEXT_LIMITS.items():
        if isinstance(d.get(key), str):
            d[key] = _shorten(d[key], limit)
    d["timeLeft"] = r.time_left_label()
    return d


def build_state_payload(
    *,
    generated_at_iso: str,
    panel: Optional[PanelView],
    popup: Optional[PopupEvent],
) -> Dict[str, Any]:
    panel_d: Optional[Dict[str, Any]] = None
    if panel is not None:
        panel_d = {
            "status": panel.status.value,
            "actions": [a.value for a in panel.actions],
            "message": panel.message,
            "fromCache": panel.from_cache,
            "requests": [_record_payload(r) for r in panel.records],
        }
        if panel.error:
            panel_d["error"] = panel.error

    popup_d: Optional[Dict[str, Any]] = None
    if popup is not None and popup.kind == "opened":
        popup_d = {
            "generation": popup.session.generation,
            "request": _record_payload(popup.session.record),
        }

    return {
        "generatedAt": generated_at_iso,
        "panel": panel_d,
        "popup": popup_d,
    }


class JsonStateSink:
    """
    Keeps the latest panel view and popup in a JSON file for an external UI.

    Panel updates with an unchanged status are throttled by
    min_write_seconds; status changes and popup changes always write.
    """

    def __init__(self, path: str, *, min_write_seconds: float = 0.5) -> None:
        self.path = path
        self.min_write_seconds = float(min_write_seconds)
        self._panel: Optional[PanelView] = None
        self._popup: Optional[PopupEvent] = None
        self._last_write_ts = 0.0

    def panel(self, view: PanelView) -> None:
        changed = self._panel is None or self._panel.status is not view.status
        self._panel = view
        self._write(force=changed)

    def popup(self, event: PopupEvent) -> None:
        if event.kind == "opened":
            self._popup = event
        elif event.kind == "closed":
            self._popup = None
        else:
            return
        self._write(force=True)

    def _write(self, *, force: bool) -> None:
        now_ts = time.time()
        if not force and now_ts - self._last_write_ts < self.min_write_seconds:
            return
        payload = build_state_payload(generated_at_iso=_now_iso(), panel=self._panel, popup=self._popup)
        atomic_write_json(self.path, payload)
        self._last_write_ts = now_ts


class FanoutSink:
    """Forwards to several sinks; a failing sink is logged and skipped."""

    def __init__(self, sinks: Sequence[Any]) -> None:
        self.sinks: List[Any] = list(sinks)

    def panel(self, view: PanelView) -> None:
        for s in self.sinks:
            try:
                s.panel(view)
            except Exception:
                log.exception("Sink %s failed on panel update", type(s).__name__)

    def popup(self, event: PopupEvent) -> None:
        for s in self.sinks:
            try:
                s.popup(event)
            except Exception:
                log.exception("Sink %s failed on popup %s", type(s).__name__, event.kind)
