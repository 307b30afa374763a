"""Domain entities for the media proxy.

Pure value objects without framework dependencies or I/O.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ByteRange:
    """Parsed ``Range`` request header (single range only)."""

    start: int
    end: int | None = None  # None = open-ended ("bytes=N-")

    @property
    def is_open(self) -> bool:
        return self.end is None

    def header_value(self) -> str:
        end = "" if self.end is None else str(self.end)
        return f"bytes={self.start}-{end}"


@dataclass(frozen=True)
class ContentRange:
    """Parsed ``Content-Range`` response header."""

    start: int
    end: int
    total: int | None = None  # None when upstream sends "/*"

    @property
    def length(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class CacheEntry:
    """A fully fetched upstream body held by the segment cache."""

    url: str
    data: bytes
    headers: Mapping[str, str]
    stored_at: float


@dataclass(frozen=True)
class TailPrefetchEntry:
    """Trailing byte window of a resource, kept in memory.

    Invariant: ``start <= end < total_size`` and
    ``len(data) == end - start + 1``.
    """

    url: str
    data: bytes
    start: int
    end: int
    total_size: int
    fetched_at: float

    def covers(self, offset: int) -> bool:
        return self.start <= offset <= self.end

    def slice_from(self, offset: int) -> bytes:
        return self.data[offset - self.start :]


@dataclass(frozen=True)
class ResourceSize:
    """What a HEAD request or ``bytes=0-0`` probe revealed about a resource."""

    total: int | None = None
    accept_ranges: str | None = None
    source: str = "unknown"  # "head", "probe" or "unknown"


@dataclass(frozen=True)
class SegmentOptions:
    """Per-request tuning flags of the segment endpoint."""

    debug: bool = False
    no_synth: bool = False
    force_200: bool = False
    clamp_open: bool = True
    progressive_open: bool = True
    # Raw query value; synthesis only runs when it is exactly "0".
    progressive_open_flag: str | None = None
    tail_prefetch: bool = True
    tail_prefetch_kb: int = 256
    open_chunk_kb: int = 4096
    init_chunk_kb: int = 512

    @property
    def open_chunk_bytes(self) -> int:
        return self.open_chunk_kb * 1024

    @property
    def init_chunk_bytes(self) -> int:
        return self.init_chunk_kb * 1024

    @property
    def tail_window_bytes(self) -> int:
        return self.tail_prefetch_kb * 1024


@dataclass(frozen=True)
class RangePlan:
    """Outcome of range negotiation before any upstream I/O."""

    client_range: str | None
    effective_range: str | None
    applied_clamp: bool = False
    strategy: str = "passthrough"  # passthrough | progressive | clamp | none


@dataclass(frozen=True)
class RewrittenPlaylist:
    """A playlist with every media URI routed through the proxy."""

    text: str
    segment_urls: list[str] = field(default_factory=list)
    key_urls: list[str] = field(default_factory=list)

    @property
    def prefetch_urls(self) -> list[str]:
        return [*self.key_urls, *self.segment_urls]


class ProxyError(Exception):
    """Base error for proxy use cases."""


class UpstreamStatusError(ProxyError):
    """Upstream answered with a status the proxy forwards as an error."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
