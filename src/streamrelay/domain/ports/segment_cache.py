"""Segment cache port - interface for the in-process media body store."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from streamrelay.domain.entities.media import CacheEntry


class SegmentCachePort(Protocol):
    """Port for a bounded, time-expiring URL -> body store.

    Implementations:
      - InMemorySegmentCache (process-local dict, periodic sweep)

    A disabled cache MUST behave as permanently empty: ``get`` returns
    None and ``put`` stores nothing.
    """

    @property
    def enabled(self) -> bool: ...

    def get(self, url: str) -> CacheEntry | None:
        """Return a fresh entry or None (expired entries are evicted)."""
        ...

    def put(self, url: str, data: bytes, headers: Mapping[str, str]) -> None:
        """Store or atomically replace the entry for *url*."""
        ...

    def has_capacity(self) -> bool:
        """False once the cache holds its maximum number of entries."""
        ...

    def sweep(self) -> int:
        """Drop expired and excess entries; return the remaining size."""
        ...

    def __len__(self) -> int: ...
