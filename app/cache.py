"""In-memory TTL cache owned by a single upstream adapter.

Entries are never evicted by size and are only replaced by a newer ``set`` or
dropped by :meth:`TTLCache.clear`. A stale entry is still handed back by
:meth:`TTLCache.get` (flagged as stale) so callers can fall back to it when a
refresh fails.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    stored_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl


@dataclass(slots=True, frozen=True)
class CacheLookup(Generic[T]):
    """Result of a cache read that found an entry."""

    value: T
    is_fresh: bool
    error: Exception | None = None


class TTLCache:
    """Key to (value, stored_at) store with a fixed default time-to-live.

    ``clock`` defaults to :func:`time.monotonic` and can be swapped in tests.
    Concurrent :meth:`get_or_fetch` calls for the same key share a single
    in-flight fetch.
    """

    def __init__(
        self,
        default_ttl: float,
        *,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("Cache TTL must be positive")
        self._default_ttl = float(default_ttl)
        self._clock = clock
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self.name = name

    @property
    def default_ttl(self) -> float:
        return self._default_ttl

    def get(self, key: str) -> CacheLookup[Any] | None:
        """Return the cached value with its freshness, or ``None`` on a miss."""

        entry = self._entries.get(key)
        if entry is None:
            return None
        return CacheLookup(value=entry.value, is_fresh=entry.is_fresh(self._clock()))

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` stamped with the current time, replacing any entry."""

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            stored_at=self._clock(),
            ttl=float(ttl) if ttl is not None else self._default_ttl,
        )

    def clear(self) -> int:
        """Drop every entry and return how many were removed."""

        removed = len(self._entries)
        self._entries.clear()
        logger.info("Cleared %s entries from %s", removed, self.name)
        return removed

    def keys(self) -> list[str]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
    ) -> T:
        """Serve a fresh entry or refresh it, degrading to a stale copy on error.

        Only when nothing was ever cached for ``key`` does a fetch failure reach
        the caller.
        """

        lookup = await self.lookup_or_fetch(key, fetch, ttl=ttl)
        return lookup.value

    async def lookup_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
    ) -> CacheLookup[T]:
        """Like :meth:`get_or_fetch` but says whether a stale copy was served.

        A stale fallback comes back with ``is_fresh=False`` and the refresh
        error attached.
        """

        cached = self.get(key)
        if cached is not None and cached.is_fresh:
            logger.debug("%s hit for %s", self.name, key)
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        loop = asyncio.get_running_loop()
        future: asyncio.Future[CacheLookup[Any]] = loop.create_future()
        self._inflight[key] = future
        try:
            value = await fetch()
        except Exception as exc:
            stale = self.get(key)
            if stale is not None:
                logger.warning(
                    "Serving stale %s entry for %s after refresh failed: %s",
                    self.name,
                    key,
                    exc,
                )
                lookup = CacheLookup(value=stale.value, is_fresh=False, error=exc)
                future.set_result(lookup)
                return lookup
            future.set_exception(exc)
            # Waiters re-raise it; mark retrieved so an unawaited future stays quiet.
            future.exception()
            raise
        else:
            self.set(key, value, ttl)
            lookup = CacheLookup(value=value, is_fresh=True)
            future.set_result(lookup)
            return lookup
        finally:
            if not future.done():
                future.cancel()
            self._inflight.pop(key, None)
