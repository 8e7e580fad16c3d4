from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import httpx

from .models import AlertRecord, Feed, parse_feed_list

log = logging.getLogger("bloodalert.fetch")


DEFAULT_UA = "bloodalert/1.0 (urgent blood request monitor)"
DEFAULT_DEADLINE_SECONDS = 10.0


class FetchErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP = "http"
    APPLICATION = "application"


@dataclass(frozen=True)
class FetchError:
    kind: FetchErrorKind
    message: str
    status: Optional[int] = None

    def __str__(self) -> str:
        if self.kind is FetchErrorKind.HTTP:
            return f"HTTP {self.status}: {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass(frozen=True)
class FetchResult:
    feed: Feed
    records: Tuple[AlertRecord, ...] = ()
    error: Optional[FetchError] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class DeadlineFetcher:
    """
    GET a feed endpoint under a hard deadline and classify the outcome.

    Never raises for network-level problems and never retries; the caller
    owns retry policy.
    """

    def __init__(
        self,
        base_url: str,
        *,
        deadline: float = DEFAULT_DEADLINE_SECONDS,
        user_agent: str = DEFAULT_UA,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if deadline <= 0:
            raise ValueError("deadline must be positive")
        self.deadline = float(deadline)
        self._owns_client = client is None
        if client is None:
            # httpx gets a slightly longer timeout so the deadline below is what fires
            client = httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(self.deadline + 5.0),
                headers={
                    "User-Agent": user_agent,
                    "Accept": "application/json",
                },
                follow_redirects=True,
            )
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, feed: Feed) -> FetchResult:
        t0 = time.monotonic()
        try:
            r = await asyncio.wait_for(
                self._client.get(feed.path, headers={"Accept": "application/json"}),
                timeout=self.deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._fail(feed, t0, FetchError(FetchErrorKind.TIMEOUT, f"no response within {self.deadline:g}s"))
        except httpx.TransportError as e:
            return self._fail(feed, t0, FetchError(FetchErrorKind.NETWORK, str(e) or type(e).__name__))
        except httpx.DecodingError as e:
            return self._fail(feed, t0, FetchError(FetchErrorKind.APPLICATION, f"undecodable response: {e}"))
        except httpx.RequestError as e:
            # redirect loops and the like: no usable response ever arrived
            return self._fail(feed, t0, FetchError(FetchErrorKind.NETWORK, str(e) or type(e).__name__))

        if not r.is_success:
            return self._fail(
                feed, t0, FetchError(FetchErrorKind.HTTP, r.reason_phrase or "request failed", status=r.status_code)
            )

        try:
            body = r.json()
        except ValueError:
            return self._fail(feed, t0, FetchError(FetchErrorKind.APPLICATION, "response body is not JSON"))

        err, records = self._parse_envelope(feed, body)
        if err is not None:
            return self._fail(feed, t0, err)

        elapsed = time.monotonic() - t0
        log.debug("Fetched %s: %d record(s) in %.2fs", feed.name, len(records), elapsed)
        return FetchResult(feed=feed, records=tuple(records), elapsed=elapsed)

    def _parse_envelope(self, feed: Feed, body: Any) -> Tuple[Optional[FetchError], List[AlertRecord]]:
        if not isinstance(body, dict):
            return FetchError(FetchErrorKind.APPLICATION, "response JSON was not an object"), []

        if not body.get("success"):
            msg = body.get("message")
            return FetchError(FetchErrorKind.APPLICATION, str(msg) if msg else f"failed to load {feed.name} requests"), []

        data = body.get("data")
        items = data.get(feed.data_key) if isinstance(data, dict) else None
        if not isinstance(items, list):
            return FetchError(FetchErrorKind.APPLICATION, f"missing data.{feed.data_key} list"), []

        return None, parse_feed_list(items, feed)

    def _fail(self, feed: Feed, t0: float, err: FetchError) -> FetchResult:
        elapsed = time.monotonic() - t0
        log.debug("Fetch %s failed after %.2fs: %s", feed.name, elapsed, err)
        return FetchResult(feed=feed, error=err, elapsed=elapsed)
