from __future__ import annotations

import logging
from typing import Iterable, List, Set

from .models import AlertRecord

log = logging.getLogger("bloodalert.dedup")


class DedupTracker:
    """
    Session "seen" set of alert ids already surfaced as a popup.

    Ids are only ever added. A fresh instance (new session) starts empty.
    """

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def __contains__(self, alert_id: object) -> bool:
        return alert_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def filter_new(self, records: Iterable[AlertRecord]) -> List[AlertRecord]:
        # server order is preserved; popup selection depends on it
        return [r for r in records if r.id not in self._seen]

    def mark_shown(self, records: Iterable[AlertRecord]) -> None:
        added = 0
        for r in records:
            if r.id not in self._seen:
                self._seen.add(r.id)
                added += 1
        if added:
            log.debug("Marked %d alert(s) shown (total=%d)", added, len(self._seen))
