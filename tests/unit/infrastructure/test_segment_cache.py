"""Tests for InMemorySegmentCache."""

from __future__ import annotations

import pytest

from streamrelay.infrastructure.cache import InMemorySegmentCache

_URL = "https://cdn.example.com/seg001.ts"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


def _cache(clock: FakeClock, **kwargs: object) -> InMemorySegmentCache:
    return InMemorySegmentCache(clock=clock, **kwargs)  # type: ignore[arg-type]


class TestGetPut:
    def test_miss_returns_none(self, clock: FakeClock) -> None:
        assert _cache(clock).get(_URL) is None

    def test_put_then_get(self, clock: FakeClock) -> None:
        cache = _cache(clock)
        cache.put(_URL, b"abc", {"Content-Type": "video/mp2t"})
        entry = cache.get(_URL)
        assert entry is not None
        assert entry.data == b"abc"
        assert entry.headers == {"content-type": "video/mp2t"}
        assert entry.stored_at == clock.now

    def test_put_replaces_existing(self, clock: FakeClock) -> None:
        cache = _cache(clock)
        cache.put(_URL, b"old", {})
        cache.put(_URL, b"new", {})
        assert len(cache) == 1
        assert cache.get(_URL).data == b"new"  # type: ignore[union-attr]


class TestExpiry:
    def test_entry_fresh_at_exact_expiry(self, clock: FakeClock) -> None:
        cache = _cache(clock, expiry_seconds=60)
        cache.put(_URL, b"x", {})
        clock.advance(60)
        assert cache.get(_URL) is not None

    def test_expired_entry_not_served_without_sweep(self, clock: FakeClock) -> None:
        cache = _cache(clock, expiry_seconds=60)
        cache.put(_URL, b"x", {})
        clock.advance(60.5)
        assert cache.get(_URL) is None
        # Evicted on read.
        assert _URL not in cache


class TestDisabled:
    def test_get_always_none(self, clock: FakeClock) -> None:
        cache = _cache(clock, enabled=False)
        cache.put(_URL, b"x", {})
        assert cache.get(_URL) is None

    def test_put_never_inserts(self, clock: FakeClock) -> None:
        cache = _cache(clock, enabled=False)
        cache.put(_URL, b"x", {})
        assert len(cache) == 0
        assert cache.enabled is False


class TestSweep:
    def test_removes_expired(self, clock: FakeClock) -> None:
        cache = _cache(clock, expiry_seconds=10)
        cache.put("https://a/1.ts", b"1", {})
        clock.advance(11)
        cache.put("https://a/2.ts", b"2", {})
        assert cache.sweep() == 1
        assert "https://a/1.ts" not in cache

    def test_bounds_size_keeping_most_recent(self, clock: FakeClock) -> None:
        cache = _cache(clock, max_entries=3)
        # put() does not enforce the bound; the sweep does.
        for i in range(6):
            cache.put(f"https://a/{i}.ts", b"x", {})
            clock.advance(1)
        assert len(cache) == 6

        assert cache.sweep() == 3
        assert [f"https://a/{i}.ts" in cache for i in range(6)] == [
            False,
            False,
            False,
            True,
            True,
            True,
        ]

    def test_has_capacity(self, clock: FakeClock) -> None:
        cache = _cache(clock, max_entries=2)
        assert cache.has_capacity()
        cache.put("https://a/1.ts", b"1", {})
        cache.put("https://a/2.ts", b"2", {})
        assert not cache.has_capacity()
