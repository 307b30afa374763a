"""Zero-impact in-memory proxy metrics.

All counters are plain Python integers manipulated inside the single-threaded
async event loop without locks or I/O.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class SegmentStats:
    """How segment requests were satisfied."""

    requests: int = 0
    cache_hits: int = 0
    tail_hits: int = 0
    synthesized: int = 0
    progressive_expansions: int = 0
    clamps: int = 0
    upstream_errors: int = 0

    def snapshot(self) -> dict[str, object]:
        hit_rate = (
            round((self.cache_hits + self.tail_hits) / self.requests, 4)
            if self.requests
            else 0.0
        )
        return {
            "requests": self.requests,
            "cache_hits": self.cache_hits,
            "tail_hits": self.tail_hits,
            "memory_hit_rate": hit_rate,
            "synthesized": self.synthesized,
            "progressive_expansions": self.progressive_expansions,
            "clamps": self.clamps,
            "upstream_errors": self.upstream_errors,
        }


@dataclass
class PrefetchStats:
    """Outcome of background prefetches (segments, keys, tail windows)."""

    segment_started: int = 0
    segment_stored: int = 0
    segment_failed: int = 0
    tail_started: int = 0
    tail_stored: int = 0

    def snapshot(self) -> dict[str, object]:
        return {
            "segment_started": self.segment_started,
            "segment_stored": self.segment_stored,
            "segment_failed": self.segment_failed,
            "tail_started": self.tail_started,
            "tail_stored": self.tail_stored,
        }


@dataclass
class ProxyMetrics:
    """Central in-memory metrics collector for the proxy endpoints."""

    segments: SegmentStats = field(default_factory=SegmentStats)
    prefetch: PrefetchStats = field(default_factory=PrefetchStats)
    playlists_rewritten: int = 0
    playlist_errors: int = 0
    subtitles_served: int = 0
    _start_ns: int = field(default_factory=time.perf_counter_ns)

    def snapshot(self) -> dict[str, object]:
        uptime_s = round((time.perf_counter_ns() - self._start_ns) / 1e9, 1)
        return {
            "uptime_seconds": uptime_s,
            "segments": self.segments.snapshot(),
            "prefetch": self.prefetch.snapshot(),
            "playlists": {
                "rewritten": self.playlists_rewritten,
                "errors": self.playlist_errors,
            },
            "subtitles_served": self.subtitles_served,
        }
