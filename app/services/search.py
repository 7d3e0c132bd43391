"""Search fanned out across the metadata provider and the radio directory."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ..errors import MediaHubError, UpstreamError, ValidationError
from ..models import (
    MEDIA_KINDS,
    SORT_KEYS,
    NormalizedItem,
    Pagination,
    SearchBreakdown,
    SearchPage,
    Suggestions,
)
from .radio_browser import RadioBrowserClient
from .tmdb import TMDBClient

logger = logging.getLogger(__name__)

MIN_QUERY_LENGTH = 2
MAX_LIMIT = 100
RADIO_SUGGESTIONS = 5

_SORT_KEYS: dict[str, Callable[[NormalizedItem], Any]] = {
    "rating": lambda item: -(item.rating or 0),
    "year": lambda item: -(item.year or 0),
    "title": lambda item: (item.title or "").casefold(),
    "popularity": lambda item: -item.popularity_score,
}


def sort_items(items: list[NormalizedItem], sort_by: str = "popularity") -> list[NormalizedItem]:
    """Return ``items`` ordered by the comparator named by ``sort_by``."""

    key = _SORT_KEYS.get(sort_by)
    if key is None:
        raise ValidationError(
            "Invalid sort order", details={"sortBy": sort_by, "allowed": list(SORT_KEYS)}
        )
    return sorted(items, key=key)


def paginate(
    items: list[NormalizedItem], page: int, limit: int
) -> tuple[list[NormalizedItem], Pagination]:
    offset = (page - 1) * limit
    window = items[offset : offset + limit]
    return window, Pagination(current_page=page, limit=limit, has_more=len(window) == limit)


def breakdown_for(items: list[NormalizedItem]) -> SearchBreakdown:
    movies = sum(1 for item in items if item.media_kind == "movie")
    tv = sum(1 for item in items if item.media_kind == "tv")
    radio = sum(1 for item in items if item.media_kind == "radio")
    return SearchBreakdown(movies=movies, tv=tv, radio=radio, total=movies + tv + radio)


def _clean_query(query: str | None) -> str:
    cleaned = (query or "").strip()
    if len(cleaned) < MIN_QUERY_LENGTH:
        raise ValidationError(
            f"Search query must be at least {MIN_QUERY_LENGTH} characters long"
        )
    return cleaned


class SearchService:
    """Concurrent multi-source search with a single merged ordering."""

    def __init__(
        self,
        *,
        tmdb: TMDBClient,
        radio: RadioBrowserClient,
        max_upstream_pages: int = 5,
    ) -> None:
        self._tmdb = tmdb
        self._radio = radio
        self._max_upstream_pages = max_upstream_pages

    async def search(
        self,
        query: str,
        kind: str | None = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "popularity",
        year: int | None = None,
        genre: str | None = None,
    ) -> SearchPage:
        cleaned = _clean_query(query)
        if kind == "all":
            kind = None
        if kind is not None and kind not in MEDIA_KINDS:
            raise ValidationError(
                "Invalid content type", details={"type": kind, "allowed": ["all", *MEDIA_KINDS]}
            )
        if sort_by not in _SORT_KEYS:
            raise ValidationError(
                "Invalid sort order", details={"sortBy": sort_by, "allowed": list(SORT_KEYS)}
            )
        if page < 1:
            raise ValidationError("Page must be greater than or equal to 1")
        if not 1 <= limit <= MAX_LIMIT:
            raise ValidationError(f"Limit must be between 1 and {MAX_LIMIT}")

        window = page * limit
        branches: dict[str, Callable[[], Awaitable[list[NormalizedItem]]]] = {}
        if kind in (None, "movie", "tv"):
            branches["tmdb"] = lambda: self._search_tmdb(cleaned, window, kind)
        if kind in (None, "radio"):
            branches["radio-browser"] = lambda: self._search_radio(cleaned, window, genre)

        merged, degraded = await self._fan_out(branches)

        if year is not None:
            merged = [
                item
                for item in merged
                if item.media_kind == "radio" or item.year == year
            ]
        ordered = sort_items(merged, sort_by)
        results, pagination = paginate(ordered, page, limit)
        logger.debug(
            "Search %r matched %d items (%d returned, degraded=%s)",
            cleaned,
            len(ordered),
            len(results),
            degraded,
        )
        return SearchPage(
            query=cleaned,
            results=results,
            breakdown=breakdown_for(ordered),
            pagination=pagination,
            degraded_sources=degraded,
        )

    async def suggest(self, query: str, limit: int = 10) -> Suggestions:
        """Return quick title suggestions; short queries yield nothing."""

        cleaned = (query or "").strip()
        if len(cleaned) < MIN_QUERY_LENGTH:
            return Suggestions(query=cleaned)
        limit = max(1, min(limit, MAX_LIMIT))

        async def _titles() -> list[NormalizedItem]:
            listing = await self._tmdb.search(cleaned, 1)
            return listing.items[:limit]

        async def _stations() -> list[NormalizedItem]:
            stations = await self._radio.search_stations(cleaned, RADIO_SUGGESTIONS)
            return [station.to_item() for station in stations]

        items, degraded = await self._fan_out(
            {"tmdb": _titles, "radio-browser": _stations}
        )
        return Suggestions(query=cleaned, items=items[:limit], degraded_sources=degraded)

    async def _fan_out(
        self, branches: dict[str, Callable[[], Awaitable[list[NormalizedItem]]]]
    ) -> tuple[list[NormalizedItem], list[str]]:
        names = list(branches)
        outcomes = await asyncio.gather(
            *(branches[name]() for name in names), return_exceptions=True
        )
        merged: list[NormalizedItem] = []
        degraded: list[str] = []
        failures: list[MediaHubError] = []
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, MediaHubError):
                logger.warning("Search source %s failed: %s", name, outcome.kind)
                degraded.append(name)
                failures.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            merged.extend(outcome)

        if names and len(failures) == len(names):
            if len(failures) == 1:
                raise failures[0]
            raise UpstreamError(
                "search",
                "all sources unavailable",
                details={"sources": degraded, "kinds": [error.kind for error in failures]},
            )
        return merged, degraded

    async def _search_tmdb(
        self, query: str, wanted: int, kind: str | None
    ) -> list[NormalizedItem]:
        collected: list[NormalizedItem] = []
        page = 1
        while page <= self._max_upstream_pages:
            listing = await self._tmdb.search(query, page)
            collected.extend(
                item for item in listing.items if kind is None or item.media_kind == kind
            )
            if len(collected) >= wanted or page >= listing.total_pages:
                break
            page += 1
        return collected

    async def _search_radio(
        self, query: str, wanted: int, genre: str | None = None
    ) -> list[NormalizedItem]:
        stations = await self._radio.search_stations(query, wanted)
        wanted_tag = (genre or "").strip().casefold()
        return [
            station.to_item()
            for station in stations
            if not wanted_tag or wanted_tag in (tag.casefold() for tag in station.tags)
        ]
