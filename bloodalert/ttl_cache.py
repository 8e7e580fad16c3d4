from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

from .models import AlertRecord

log = logging.getLogger("bloodalert.cache")


@dataclass(frozen=True)
class CacheEntry:
    payload: Tuple[AlertRecord, ...]
    fetched_at: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return (now - self.fetched_at) < self.ttl


class TtlCache:
    """
    Single-slot cache for the last successful payload of one feed.

    An expired entry is never served; it stays in place only until the next
    successful fetch replaces it.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float], name: str = "feed") -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl = float(ttl_seconds)
        self.name = name
        self._clock = clock
        self._entry: Optional[CacheEntry] = None

    def get(self) -> Optional[Tuple[AlertRecord, ...]]:
        entry = self._entry
        if entry is None:
            return None
        if not entry.is_valid(self._clock()):
            log.debug("Cache %s expired (age=%.1fs ttl=%.1fs)", self.name, self._clock() - entry.fetched_at, self.ttl)
            return None
        return entry.payload

    def put(self, payload: Iterable[AlertRecord]) -> CacheEntry:
        entry = CacheEntry(payload=tuple(payload), fetched_at=self._clock(), ttl=self.ttl)
        self._entry = entry
        return entry

    def is_valid(self) -> bool:
        return self.get() is not None

    def age(self) -> Optional[float]:
        if self._entry is None:
            return None
        return self._clock() - self._entry.fetched_at
