"""Segment proxy use case.

Serve a range-addressable media resource (``.ts``, ``.mp4``, ``.mkv``,
keys) in the cheapest way available:

1. full body from the segment cache,
2. a slice of the prefetched tail window,
3. a single upstream request whose range was chosen by the range
   negotiator (possibly a synthesized first chunk).

Every upstream body is streamed, never buffered.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Mapping
from typing import Any, Protocol

import structlog

from streamrelay.application.use_cases.media_response import MediaResponse
from streamrelay.domain.entities.media import (
    CacheEntry,
    RangePlan,
    ResourceSize,
    SegmentOptions,
    UpstreamStatusError,
)

log = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Protocols: what this use case needs from its dependencies.
# Infrastructure components satisfy these via structural subtyping.
# ---------------------------------------------------------------------------


class _StreamedResponse(Protocol):
    status_code: int

    @property
    def headers(self) -> Mapping[str, str]: ...

    async def aclose(self) -> None: ...


class _SegmentUpstream(Protocol):
    def open_stream(
        self,
        url: str,
        forward: Mapping[str, str] | None = None,
        *,
        range_header: str | None = None,
    ) -> Awaitable[Any]: ...

    def iter_body(self, resp: Any) -> AsyncIterator[bytes]: ...


class _SegmentCache(Protocol):
    def get(self, url: str) -> CacheEntry | None: ...


class _TailSlice(Protocol):
    body: bytes

    @property
    def content_range(self) -> str: ...


class _TailCache(Protocol):
    def lookup(self, url: str, range_header: str | None) -> _TailSlice | None: ...

    def needs_prefetch(self, url: str) -> bool: ...

    def prefetch(
        self,
        url: str,
        forward: Mapping[str, str] | None,
        *,
        total: int,
        window_bytes: int,
        on_start: Callable[[], object] | None = None,
    ) -> Coroutine[Any, Any, bool]: ...


class _Negotiator(Protocol):
    def plan(
        self, url: str, client_range: str | None, options: SegmentOptions
    ) -> RangePlan: ...

    def discover_size(
        self, url: str, forward: Mapping[str, str] | None = None
    ) -> Awaitable[ResourceSize]: ...

    def should_synthesize(
        self, plan: RangePlan, total: int | None, options: SegmentOptions
    ) -> bool: ...

    def synthetic_range(self, total: int, options: SegmentOptions) -> str: ...


class _Spawner(Protocol):
    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> object: ...


class _SegmentCounters(Protocol):
    requests: int
    cache_hits: int
    tail_hits: int
    synthesized: int
    progressive_expansions: int
    clamps: int
    upstream_errors: int


class _PrefetchCounters(Protocol):
    tail_started: int
    tail_stored: int


class _SegmentMetrics(Protocol):
    @property
    def segments(self) -> _SegmentCounters: ...

    @property
    def prefetch(self) -> _PrefetchCounters: ...


# Injected response shaping (upstream headers, url, force_200=, accept_ranges=).
_RelayHeadersFn = Callable[..., dict[str, str]]


class SegmentProxyUseCase:
    def __init__(
        self,
        *,
        upstream: _SegmentUpstream,
        cache: _SegmentCache,
        tail_cache: _TailCache,
        negotiator: _Negotiator,
        spawner: _Spawner,
        relay_headers: _RelayHeadersFn,
        metrics: _SegmentMetrics,
    ) -> None:
        self._upstream = upstream
        self._cache = cache
        self._tail = tail_cache
        self._negotiator = negotiator
        self._spawner = spawner
        self._relay_headers = relay_headers
        self._metrics = metrics

    async def execute(
        self,
        url: str,
        forward: Mapping[str, str],
        client_range: str | None,
        options: SegmentOptions,
    ) -> MediaResponse:
        """Serve *url* for a request that carried *client_range*.

        Raises:
            UpstreamStatusError: upstream answered non-2xx.
            httpx.HTTPError: transport failure on the main request.
            httpx.InvalidURL: *url* cannot be parsed.
        """
        trace = log.info if options.debug else log.debug
        stats = self._metrics.segments
        stats.requests += 1

        cached = self._cache.get(url)
        if cached is not None:
            stats.cache_hits += 1
            trace("segment_cache_hit", url=url, bytes=len(cached.data))
            return self._from_cache(url, cached)

        if not options.force_200:
            tail = self._tail.lookup(url, client_range)
            if tail is not None:
                stats.tail_hits += 1
                trace(
                    "tail_prefetch_hit",
                    url=url,
                    content_range=tail.content_range,
                    bytes=len(tail.body),
                )
                headers = self._relay_headers(
                    {
                        "content-range": tail.content_range,
                        "content-length": str(len(tail.body)),
                    },
                    url,
                )
                return MediaResponse(status_code=206, headers=headers, body=tail.body)

        plan = self._negotiator.plan(url, client_range, options)
        if plan.strategy == "progressive":
            stats.progressive_expansions += 1
        elif plan.strategy == "clamp":
            stats.clamps += 1
        trace(
            "segment_range_plan",
            url=url,
            client_range=client_range,
            effective_range=plan.effective_range,
            strategy=plan.strategy,
            force_200=options.force_200,
        )

        size = ResourceSize()
        if plan.effective_range is None:
            size = await self._negotiator.discover_size(url, forward)
            total = size.total
            trace("segment_size", url=url, total=total, source=size.source)
            if total is not None and options.tail_prefetch:
                self._maybe_prefetch_tail(url, forward, total, options)

            if total is not None and self._negotiator.should_synthesize(
                plan, total, options
            ):
                synthesized = await self._try_synthetic(
                    url, forward, total, size.accept_ranges, options, trace
                )
                if synthesized is not None:
                    return synthesized

        upstream_range = None if options.force_200 else plan.effective_range
        resp = await self._upstream.open_stream(
            url, forward, range_header=upstream_range
        )
        if not 200 <= resp.status_code < 300:
            await resp.aclose()
            stats.upstream_errors += 1
            log.warning("segment_fetch_failed", url=url, status_code=resp.status_code)
            raise UpstreamStatusError(
                resp.status_code, f"TS fetch failed: {resp.status_code}"
            )

        status_code = (
            206
            if upstream_range and resp.status_code == 206 and not options.force_200
            else 200
        )
        headers = self._relay_headers(
            resp.headers,
            url,
            force_200=options.force_200,
            accept_ranges=size.accept_ranges,
        )
        trace(
            "segment_upstream_response",
            url=url,
            upstream_status=resp.status_code,
            status_code=status_code,
            content_range=headers.get("Content-Range"),
            content_length=headers.get("Content-Length"),
        )
        return MediaResponse(
            status_code=status_code,
            headers=headers,
            stream=self._upstream.iter_body(resp),
        )

    def _from_cache(self, url: str, entry: CacheEntry) -> MediaResponse:
        # Cached bodies are already decoded: describe the bytes we hold.
        headers = self._relay_headers(
            {
                "content-type": entry.headers.get("content-type", ""),
                "content-length": str(len(entry.data)),
            },
            url,
            force_200=True,
        )
        return MediaResponse(status_code=200, headers=headers, body=entry.data)

    def _maybe_prefetch_tail(
        self,
        url: str,
        forward: Mapping[str, str],
        total: int,
        options: SegmentOptions,
    ) -> None:
        if not self._tail.needs_prefetch(url):
            return
        self._spawner.spawn(
            self._prefetch_tail(url, forward, total, options.tail_window_bytes),
            name=f"tail:{url}",
        )

    async def _prefetch_tail(
        self,
        url: str,
        forward: Mapping[str, str],
        total: int,
        window_bytes: int,
    ) -> None:
        stored = await self._tail.prefetch(
            url,
            forward,
            total=total,
            window_bytes=window_bytes,
            on_start=self._count_tail_start,
        )
        if stored:
            self._metrics.prefetch.tail_stored += 1

    def _count_tail_start(self) -> None:
        self._metrics.prefetch.tail_started += 1

    async def _try_synthetic(
        self,
        url: str,
        forward: Mapping[str, str],
        total: int,
        accept_ranges: str | None,
        options: SegmentOptions,
        trace: Callable[..., Any],
    ) -> MediaResponse | None:
        """Ask upstream for a bounded first chunk; None if it won't answer 206."""
        synthetic = self._negotiator.synthetic_range(total, options)
        resp = await self._upstream.open_stream(url, forward, range_header=synthetic)
        if resp.status_code != 206:
            trace(
                "synthetic_range_declined",
                url=url,
                range=synthetic,
                upstream_status=resp.status_code,
            )
            await resp.aclose()
            return None

        self._metrics.segments.synthesized += 1
        trace("synthetic_range_served", url=url, range=synthetic)
        headers = self._relay_headers(
            resp.headers, url, accept_ranges=accept_ranges
        )
        return MediaResponse(
            status_code=206,
            headers=headers,
            stream=self._upstream.iter_body(resp),
        )
