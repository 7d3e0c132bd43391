"""Behaviour of the per-adapter TTL cache."""

from __future__ import annotations

import asyncio

import pytest

from app.cache import TTLCache
from app.errors import UpstreamError


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_entry_is_fresh_then_stale_but_present() -> None:
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)

    cache.set("k", {"value": 1})
    lookup = cache.get("k")
    assert lookup is not None and lookup.is_fresh

    clock.advance(300)
    stale = cache.get("k")
    assert stale is not None
    assert stale.is_fresh is False
    assert stale.value == {"value": 1}


def test_missing_key_returns_none() -> None:
    assert TTLCache(10).get("nope") is None


def test_per_entry_ttl_overrides_default() -> None:
    clock = FakeClock()
    cache = TTLCache(300, clock=clock)

    cache.set("genres", ["drama"], ttl=3600)
    clock.advance(1000)

    assert cache.get("genres").is_fresh  # type: ignore[union-attr]


def test_clear_reports_removed_entries() -> None:
    cache = TTLCache(10)
    cache.set("a", 1)
    cache.set("b", 2)

    assert sorted(cache.keys()) == ["a", "b"]
    assert cache.clear() == 2
    assert len(cache) == 0


def test_non_positive_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        TTLCache(0)


@pytest.mark.anyio("asyncio")
async def test_get_or_fetch_serves_fresh_entry_without_fetching() -> None:
    cache = TTLCache(60)
    cache.set("k", "cached")
    calls = 0

    async def fetch() -> str:
        nonlocal calls
        calls += 1
        return "fresh"

    assert await cache.get_or_fetch("k", fetch) == "cached"
    assert calls == 0


@pytest.mark.anyio("asyncio")
async def test_get_or_fetch_refreshes_stale_entry() -> None:
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)
    cache.set("k", "old")
    clock.advance(120)

    async def fetch() -> str:
        return "new"

    assert await cache.get_or_fetch("k", fetch) == "new"
    assert cache.get("k").is_fresh  # type: ignore[union-attr]


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_serves_stale_value() -> None:
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)
    cache.set("k", "old")
    clock.advance(120)

    async def fetch() -> str:
        raise UpstreamError("tmdb", "boom")

    assert await cache.get_or_fetch("k", fetch) == "old"


@pytest.mark.anyio("asyncio")
async def test_lookup_flags_stale_fallback_with_its_error() -> None:
    clock = FakeClock()
    cache = TTLCache(60, clock=clock)

    async def fresh() -> str:
        return "new"

    async def failing() -> str:
        raise UpstreamError("tmdb", "boom")

    assert (await cache.lookup_or_fetch("k", fresh)).is_fresh is True
    clock.advance(120)
    lookup = await cache.lookup_or_fetch("k", failing)

    assert lookup.value == "new"
    assert lookup.is_fresh is False
    assert isinstance(lookup.error, UpstreamError)


@pytest.mark.anyio("asyncio")
async def test_failed_fetch_without_entry_propagates() -> None:
    cache = TTLCache(60)

    async def fetch() -> str:
        raise UpstreamError("tmdb", "boom")

    with pytest.raises(UpstreamError):
        await cache.get_or_fetch("k", fetch)
    assert cache.get("k") is None


@pytest.mark.anyio("asyncio")
async def test_concurrent_cold_reads_share_one_fetch() -> None:
    cache = TTLCache(60)
    calls = 0
    release = asyncio.Event()

    async def fetch() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "value"

    readers = [asyncio.create_task(cache.get_or_fetch("k", fetch)) for _ in range(5)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*readers)

    assert results == ["value"] * 5
    assert calls == 1


@pytest.mark.anyio("asyncio")
async def test_concurrent_waiters_see_the_same_failure() -> None:
    cache = TTLCache(60)
    release = asyncio.Event()

    async def fetch() -> str:
        await release.wait()
        raise UpstreamError("tmdb", "boom")

    readers = [asyncio.create_task(cache.get_or_fetch("k", fetch)) for _ in range(3)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*readers, return_exceptions=True)

    assert all(isinstance(result, UpstreamError) for result in results)
