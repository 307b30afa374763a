"""Tests for TailPrefetchCache."""

from __future__ import annotations

import asyncio

import httpx
import pytest
import respx

from streamrelay.domain.entities.media import TailPrefetchEntry
from streamrelay.infrastructure.proxy.tail_prefetch import TailPrefetchCache
from streamrelay.infrastructure.proxy.upstream import UpstreamClient

_URL = "https://cdn.example.com/movie.mkv"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _entry(
    clock: FakeClock, start: int = 900, end: int = 999, total: int = 1000
) -> TailPrefetchEntry:
    return TailPrefetchEntry(
        url=_URL,
        data=bytes(i % 256 for i in range(end - start + 1)),
        start=start,
        end=end,
        total_size=total,
        fetched_at=clock(),
    )


def _cache(clock: FakeClock, **kwargs: object) -> TailPrefetchCache:
    return TailPrefetchCache(
        upstream=UpstreamClient(httpx.AsyncClient()),
        clock=clock,
        **kwargs,  # type: ignore[arg-type]
    )


class TestLookup:
    def test_serves_suffix_inside_window(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        entry = _entry(clock)
        assert cache.store(entry)

        tail = cache.lookup(_URL, "bytes=950-")
        assert tail is not None
        assert tail.content_range == "bytes 950-999/1000"
        assert len(tail.body) == 50
        assert tail.body == entry.data[50:]

    def test_window_boundaries(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        cache.store(_entry(clock))
        assert cache.lookup(_URL, "bytes=900-") is not None
        assert cache.lookup(_URL, "bytes=999-") is not None
        assert cache.lookup(_URL, "bytes=899-") is None

    def test_bounded_range_not_served(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        cache.store(_entry(clock))
        assert cache.lookup(_URL, "bytes=950-960") is None
        assert cache.lookup(_URL, None) is None

    def test_expired_on_read(self) -> None:
        clock = FakeClock()
        cache = _cache(clock, ttl_seconds=600)
        cache.store(_entry(clock))
        clock.now += 601
        assert cache.lookup(_URL, "bytes=950-") is None
        assert len(cache) == 0


class TestStore:
    def test_rejects_length_mismatch(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        bad = TailPrefetchEntry(
            url=_URL, data=b"x" * 10, start=900, end=999, total_size=1000,
            fetched_at=clock(),
        )
        assert not cache.store(bad)
        assert len(cache) == 0

    def test_rejects_end_beyond_total(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        bad = TailPrefetchEntry(
            url=_URL, data=b"x" * 100, start=950, end=1049, total_size=1000,
            fetched_at=clock(),
        )
        assert not cache.store(bad)

    def test_sweep(self) -> None:
        clock = FakeClock()
        cache = _cache(clock, ttl_seconds=10)
        cache.store(_entry(clock))
        clock.now += 11
        assert cache.sweep() == 0


class TestPrefetch:
    @respx.mock
    @pytest.mark.asyncio()
    async def test_fetches_trailing_window(self) -> None:
        route = respx.get(_URL).respond(
            206,
            headers={"Content-Range": "bytes 744-999/1000"},
            content=b"t" * 256,
        )
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            stored = await cache.prefetch(_URL, {}, total=1000, window_bytes=256)

        assert stored
        assert route.calls.last.request.headers["range"] == "bytes=744-"
        entry = cache.get(_URL)
        assert entry is not None
        assert (entry.start, entry.end, entry.total_size) == (744, 999, 1000)
        assert cache.in_flight == 0

    @respx.mock
    @pytest.mark.asyncio()
    async def test_window_never_larger_than_total(self) -> None:
        route = respx.get(_URL).respond(
            206, headers={"Content-Range": "bytes 0-99/100"}, content=b"t" * 100
        )
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            assert await cache.prefetch(_URL, {}, total=100, window_bytes=262144)
        assert route.calls.last.request.headers["range"] == "bytes=0-"

    @respx.mock
    @pytest.mark.asyncio()
    async def test_non_206_not_stored(self) -> None:
        respx.get(_URL).respond(200, content=b"t" * 1000)
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            assert not await cache.prefetch(_URL, {}, total=1000, window_bytes=256)
        assert len(cache) == 0

    @respx.mock
    @pytest.mark.asyncio()
    async def test_unparsable_content_range_not_stored(self) -> None:
        respx.get(_URL).respond(
            206, headers={"Content-Range": "bytes */1000"}, content=b"t" * 256
        )
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            assert not await cache.prefetch(_URL, {}, total=1000, window_bytes=256)

    @respx.mock
    @pytest.mark.asyncio()
    async def test_transport_error_swallowed(self) -> None:
        respx.get(_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            assert not await cache.prefetch(_URL, {}, total=1000, window_bytes=256)
        assert cache.in_flight == 0

    @pytest.mark.asyncio()
    async def test_skipped_when_entry_exists(self) -> None:
        clock = FakeClock()
        cache = _cache(clock)
        cache.store(_entry(clock))
        assert not cache.needs_prefetch(_URL)
        assert not await cache.prefetch(_URL, {}, total=1000, window_bytes=256)

    @respx.mock
    @pytest.mark.asyncio()
    async def test_concurrent_calls_start_once(self) -> None:
        respx.get(_URL).respond(
            206, headers={"Content-Range": "bytes 744-999/1000"}, content=b"t" * 256
        )
        started: list[str] = []
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            results = await asyncio.gather(
                *(
                    cache.prefetch(
                        _URL,
                        {},
                        total=1000,
                        window_bytes=256,
                        on_start=lambda: started.append(_URL),
                    )
                    for _ in range(2)
                )
            )

        assert sorted(results) == [False, True]
        assert started == [_URL]

    @pytest.mark.asyncio()
    async def test_invalid_url_swallowed(self) -> None:
        async with httpx.AsyncClient() as client:
            cache = TailPrefetchCache(upstream=UpstreamClient(client))
            assert not await cache.prefetch(
                "http://[::1/x.mkv", {}, total=1000, window_bytes=256
            )
        assert cache.in_flight == 0
