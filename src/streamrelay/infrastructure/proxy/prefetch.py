"""Best-effort warming of the segment cache from rewritten playlists."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping

import httpx
import structlog

from streamrelay.domain.ports.segment_cache import SegmentCachePort
from streamrelay.infrastructure.metrics import ProxyMetrics
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

log = structlog.get_logger(__name__)


class SegmentPrefetcher:
    """Fetch full segment/key bodies into the segment cache.

    Never raises for upstream problems: a failed warm-up only means the
    player's own request goes to the network.
    """

    def __init__(
        self,
        *,
        upstream: UpstreamClient,
        cache: SegmentCachePort,
        metrics: ProxyMetrics | None = None,
    ) -> None:
        self._upstream = upstream
        self._cache = cache
        self._metrics = metrics or ProxyMetrics()

    def wants(self, url: str) -> bool:
        """Whether prefetching *url* could add anything to the cache."""
        return (
            self._cache.enabled
            and self._cache.has_capacity()
            and self._cache.get(url) is None
        )

    async def prefetch(self, url: str, forward: Mapping[str, str] | None) -> bool:
        if not self.wants(url):
            return False
        self._metrics.prefetch.segment_started += 1
        try:
            resp = await self._upstream.fetch(url, forward)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self._metrics.prefetch.segment_failed += 1
            log.debug("segment_prefetch_failed", url=url, error=str(exc))
            return False
        if not resp.is_success:
            self._metrics.prefetch.segment_failed += 1
            log.debug("segment_prefetch_status", url=url, status_code=resp.status_code)
            return False
        try:
            self._cache.put(url, resp.content, dict(resp.headers))
        except Exception:
            log.warning("segment_cache_write_failed", url=url, exc_info=True)
            return False
        self._metrics.prefetch.segment_stored += 1
        return True

    async def prefetch_many(
        self, urls: Iterable[str], forward: Mapping[str, str] | None
    ) -> int:
        """Prefetch *urls* concurrently; return how many were stored."""
        results = await asyncio.gather(
            *(self.prefetch(url, forward) for url in dict.fromkeys(urls)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                log.warning("segment_prefetch_error", error=repr(result))
        return sum(1 for r in results if r is True)
