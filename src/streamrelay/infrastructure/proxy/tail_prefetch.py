"""Tail prefetch cache: keep the last N KB of a resource in memory.

Adaptive players frequently seek to the very end of an MP4/MKV right
after opening it (moov atom, cues, duration probing).  Once the total
size of a resource is known, the proxy fetches its trailing window in
the background; later ``bytes=N-`` requests that start inside that
window are answered from memory without an upstream round trip.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import httpx
import structlog

from streamrelay.domain.entities.media import TailPrefetchEntry
from streamrelay.infrastructure.proxy.range_negotiation import (
    parse_content_range,
    parse_open_suffix,
)
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TailSlice:
    """A 206 response body cut from a cached tail window."""

    start: int
    end: int
    total: int
    body: bytes

    @property
    def content_range(self) -> str:
        return f"bytes {self.start}-{self.end}/{self.total}"


class TailPrefetchCache:
    """URL -> trailing byte window, with TTL and one fetch in flight per URL."""

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._upstream = upstream
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, TailPrefetchEntry] = {}
        self._in_flight: set[str] = set()

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def get(self, url: str) -> TailPrefetchEntry | None:
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self._clock() - entry.fetched_at > self._ttl:
            self._entries.pop(url, None)
            return None
        return entry

    def store(self, entry: TailPrefetchEntry) -> bool:
        """Insert *entry* if it satisfies the window invariants."""
        if not (0 <= entry.start <= entry.end < entry.total_size):
            log.warning(
                "tail_prefetch_rejected",
                url=entry.url,
                reason="range_out_of_bounds",
                start=entry.start,
                end=entry.end,
                total=entry.total_size,
            )
            return False
        if len(entry.data) != entry.end - entry.start + 1:
            log.warning(
                "tail_prefetch_rejected",
                url=entry.url,
                reason="length_mismatch",
                expected=entry.end - entry.start + 1,
                received=len(entry.data),
            )
            return False
        self._entries[entry.url] = entry
        return True

    def lookup(self, url: str, range_header: str | None) -> TailSlice | None:
        """Serve ``bytes=N-`` from memory when N lies inside the cached window."""
        offset = parse_open_suffix(range_header)
        if offset is None:
            return None
        entry = self.get(url)
        if entry is None or not entry.covers(offset):
            return None
        return TailSlice(
            start=offset,
            end=entry.end,
            total=entry.total_size,
            body=entry.slice_from(offset),
        )

    def needs_prefetch(self, url: str) -> bool:
        return url not in self._in_flight and self.get(url) is None

    async def prefetch(
        self,
        url: str,
        forward: Mapping[str, str] | None,
        *,
        total: int,
        window_bytes: int,
        on_start: Callable[[], object] | None = None,
    ) -> bool:
        """Fetch and store the trailing window of *url*.

        *on_start* runs once this call owns the in-flight slot for *url*.
        Returns True when an entry was stored.  Upstream failures are
        logged and reported as False, never raised.
        """
        if total <= 0 or not self.needs_prefetch(url):
            return False

        tail_bytes = min(window_bytes, total)
        start = max(0, total - tail_bytes)
        range_header = f"bytes={start}-"

        self._in_flight.add(url)
        try:
            if on_start is not None:
                on_start()
            log.debug("tail_prefetch_start", url=url, range=range_header)
            resp = await self._upstream.fetch(url, forward, range_header=range_header)
            if resp.status_code != 206:
                log.debug("tail_prefetch_status", url=url, status_code=resp.status_code)
                return False
            parsed = parse_content_range(resp.headers.get("content-range"))
            if parsed is None or parsed.total is None:
                log.debug("tail_prefetch_no_content_range", url=url)
                return False
            stored = self.store(
                TailPrefetchEntry(
                    url=url,
                    data=resp.content,
                    start=parsed.start,
                    end=parsed.end,
                    total_size=parsed.total,
                    fetched_at=self._clock(),
                )
            )
            if stored:
                log.debug(
                    "tail_prefetch_stored",
                    url=url,
                    start=parsed.start,
                    end=parsed.end,
                    bytes=len(resp.content),
                )
            return stored
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.debug("tail_prefetch_failed", url=url, error=str(exc))
            return False
        finally:
            self._in_flight.discard(url)

    def sweep(self) -> int:
        """Drop windows older than the TTL; return entries left."""
        now = self._clock()
        expired = [u for u, e in self._entries.items() if now - e.fetched_at > self._ttl]
        for url in expired:
            del self._entries[url]
        if expired:
            log.debug("tail_prefetch_swept", expired=len(expired))
        return len(self._entries)
