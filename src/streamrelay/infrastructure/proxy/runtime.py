"""ProxyRuntime: owner of all process-wide proxy state.

One instance lives for the lifetime of the FastAPI app (created in the
lifespan, stored on ``app.state``).  It owns the segment cache, the
range negotiation state, the tail prefetch cache, detached prefetch
tasks and the periodic sweeps, and shuts them down in order.
"""

from __future__ import annotations

import time
from collections.abc import Callable

import httpx
import structlog

from streamrelay.infrastructure.cache.segment_cache import InMemorySegmentCache
from streamrelay.infrastructure.config.schema import AppConfig, ProxyConfig
from streamrelay.infrastructure.metrics import ProxyMetrics
from streamrelay.infrastructure.proxy.background import PeriodicSweeper, TaskSpawner
from streamrelay.infrastructure.proxy.prefetch import SegmentPrefetcher
from streamrelay.infrastructure.proxy.range_negotiation import RangeNegotiator
from streamrelay.infrastructure.proxy.tail_prefetch import TailPrefetchCache
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

log = structlog.get_logger(__name__)


class ProxyRuntime:
    """Shared, injectable proxy state with an explicit start/stop lifecycle."""

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        config: ProxyConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ProxyConfig()
        self.upstream = upstream
        self.metrics = ProxyMetrics()
        self.segment_cache = InMemorySegmentCache(
            max_entries=self.config.cache_max_entries,
            expiry_seconds=self.config.cache_expiry_seconds,
            enabled=not self.config.cache_disabled,
            clock=clock,
        )
        self.negotiator = RangeNegotiator(
            upstream=upstream,
            clamp_ttl_seconds=self.config.open_range_clamp_ttl_seconds,
            progressive_max_end=self.config.progressive_max_end_bytes,
            max_tracked_urls=self.config.progressive_max_tracked_urls,
            clock=clock,
        )
        self.tail_cache = TailPrefetchCache(
            upstream=upstream,
            ttl_seconds=self.config.tail_prefetch_ttl_seconds,
            clock=clock,
        )
        self.prefetcher = SegmentPrefetcher(
            upstream=upstream,
            cache=self.segment_cache,
            metrics=self.metrics,
        )
        self.spawner = TaskSpawner()
        self.sweeper = PeriodicSweeper()
        self.sweeper.add(
            "segment_cache",
            self.config.cache_sweep_interval_seconds,
            self.segment_cache.sweep,
        )
        self.sweeper.add(
            "clamp_state",
            self.config.clamp_sweep_interval_seconds,
            self.negotiator.sweep_clamp_state,
        )
        self.sweeper.add(
            "tail_prefetch",
            self.config.tail_sweep_interval_seconds,
            self.tail_cache.sweep,
        )

    @classmethod
    def from_config(
        cls, config: AppConfig, http_client: httpx.AsyncClient
    ) -> ProxyRuntime:
        upstream = UpstreamClient(
            http_client,
            user_agent=config.http_user_agent,
            max_concurrent=config.http_max_concurrent,
        )
        return cls(upstream=upstream, config=config.proxy)

    def start(self) -> None:
        """Start the periodic sweeps (requires a running event loop)."""
        self.sweeper.start()
        log.info(
            "proxy_runtime_started",
            cache_enabled=self.segment_cache.enabled,
            cache_max_entries=self.segment_cache.max_entries,
        )

    async def aclose(self) -> None:
        await self.spawner.aclose(timeout=self.config.shutdown_drain_seconds)
        await self.sweeper.stop()
        log.info("proxy_runtime_stopped")

    def snapshot(self) -> dict[str, object]:
        return {
            "segment_cache": {
                "enabled": self.segment_cache.enabled,
                "entries": len(self.segment_cache),
                "max_entries": self.segment_cache.max_entries,
            },
            "tail_prefetch": {
                "entries": len(self.tail_cache),
                "in_flight": self.tail_cache.in_flight,
            },
            "range_state": {
                "progressive_urls": self.negotiator.progressive_tracked,
                "clamped_urls": self.negotiator.clamp_tracked,
            },
            "background_tasks": self.spawner.pending,
        }
