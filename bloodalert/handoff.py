from __future__ import annotations

import datetime as dt
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

log = logging.getLogger("bloodalert.handoff")


@dataclass
class SessionHandoff:
    """
    Carries the request a user chose to help with over to the follow-on page.

    Transient: one small JSON file, overwritten on each save. Failures are
    logged, never raised; losing a hand-off only means the donate page opens
    without a preselected request.
    """

    path: Path

    def save(self, record_id: str) -> bool:
        data = {
            "selectedRequestId": str(record_id),
            "savedAt": dt.datetime.now(tz=dt.timezone.utc).isoformat(),
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
            os.replace(str(tmp), str(self.path))
            return True
        except OSError as e:
            log.warning("Could not store selected request %s: %s", record_id, e)
            return False

    def load(self) -> Optional[str]:
        try:
            obj = json.loads(self.path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable hand-off file %s: %s", self.path, e)
            return None
        rid = obj.get("selectedRequestId") if isinstance(obj, dict) else None
        return str(rid) if rid else None

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
