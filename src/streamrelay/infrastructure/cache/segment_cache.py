"""In-memory segment cache: URL -> fully fetched body + response headers.

Entries expire after ``expiry_seconds`` (checked on every read) and the
cache is bounded to ``max_entries`` by :meth:`InMemorySegmentCache.sweep`,
which the proxy runtime runs on a fixed interval.  All state is
process-local and lost on restart.

Not thread-safe; safe for single-threaded asyncio because every
operation is a single dict mutation with no await in between.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping

import structlog

from streamrelay.domain.entities.media import CacheEntry

log = structlog.get_logger(__name__)


class InMemorySegmentCache:
    """Bounded, time-expiring store for prefetched segments and keys."""

    def __init__(
        self,
        *,
        max_entries: int = 2000,
        expiry_seconds: float = 7200.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max_entries
        self._expiry = expiry_seconds
        self._enabled = enabled
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at > self._expiry

    def get(self, url: str) -> CacheEntry | None:
        """Return the fresh entry for *url*, evicting it if expired."""
        if not self._enabled:
            return None
        entry = self._entries.get(url)
        if entry is None:
            return None
        if self._is_expired(entry, self._clock()):
            self._entries.pop(url, None)
            return None
        return entry

    def put(self, url: str, data: bytes, headers: Mapping[str, str]) -> None:
        """Store (or replace) the body for *url*. No-op when disabled."""
        if not self._enabled:
            return
        self._entries[url] = CacheEntry(
            url=url,
            data=bytes(data),
            headers={k.lower(): v for k, v in headers.items()},
            stored_at=self._clock(),
        )

    def has_capacity(self) -> bool:
        return len(self._entries) < self._max_entries

    def sweep(self) -> int:
        """Delete expired entries, then the oldest until within ``max_entries``.

        Returns the number of entries left.
        """
        now = self._clock()
        expired = [u for u, e in self._entries.items() if self._is_expired(e, now)]
        for url in expired:
            del self._entries[url]

        overflow = len(self._entries) - self._max_entries
        evicted = 0
        if overflow > 0:
            oldest = sorted(self._entries.values(), key=lambda e: e.stored_at)
            for entry in oldest[:overflow]:
                del self._entries[entry.url]
            evicted = overflow

        if expired or evicted:
            log.debug(
                "segment_cache_swept",
                expired=len(expired),
                evicted=evicted,
                size=len(self._entries),
            )
        return len(self._entries)

