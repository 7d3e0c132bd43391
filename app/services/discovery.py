"""Browse surfaces: curated categories, filtered discovery, genres and the homepage."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from ..errors import MediaHubError, ValidationError
from ..models import (
    CategoryPage,
    Genre,
    Homepage,
    HomepageSection,
    ImageRef,
    NormalizedItem,
    Pagination,
)
from .radio_browser import RadioBrowserClient
from .tmdb import ListingPage, TMDBClient
from .user_store import UserStore

logger = logging.getLogger(__name__)

DEFAULT_RADIO_COUNTRY = "KE"
SECTION_SIZE = 20
HERO_SIZE = 5
FEATURED_STATIONS = 10
CONTINUE_WATCHING = 5


@dataclass(frozen=True)
class CategoryDefinition:
    """A named TMDB listing exposed as a browsable category."""

    id: str
    label: str
    method: str
    args: tuple[Any, ...] = ()


CATEGORIES: Mapping[str, CategoryDefinition] = {
    category.id: category
    for category in [
        CategoryDefinition("trending", "Trending Now", "trending", ("all", "day")),
        CategoryDefinition("popular-movies", "Popular Movies", "popular_movies"),
        CategoryDefinition("popular-tv", "Popular TV Shows", "popular_tv"),
        CategoryDefinition("top-rated-movies", "Top Rated Movies", "top_rated_movies"),
        CategoryDefinition("top-rated-tv", "Top Rated TV Shows", "top_rated_tv"),
        CategoryDefinition("upcoming", "Upcoming Movies", "upcoming_movies"),
        CategoryDefinition("now-playing", "Now Playing", "now_playing_movies"),
    ]
}
RADIO_CATEGORY = "radio"
CATEGORY_IDS: tuple[str, ...] = (*CATEGORIES, RADIO_CATEGORY)
RELATIONS = ("similar", "recommendations")


def _check_paging(page: int, limit: int) -> None:
    if page < 1:
        raise ValidationError("Page must be greater than or equal to 1")
    if not 1 <= limit <= 100:
        raise ValidationError("Limit must be between 1 and 100")


class DiscoveryService:
    def __init__(
        self,
        *,
        tmdb: TMDBClient,
        radio: RadioBrowserClient,
        user_store: UserStore | None = None,
    ) -> None:
        self._tmdb = tmdb
        self._radio = radio
        self._user_store = user_store

    async def list_category(
        self,
        category: str,
        page: int = 1,
        limit: int = 20,
        *,
        country: str | None = None,
        genre: str | None = None,
        query: str | None = None,
        featured: bool = False,
    ) -> CategoryPage:
        """Return one page of a category; upstream failures propagate."""

        _check_paging(page, limit)
        if category == RADIO_CATEGORY:
            return await self._radio_category(
                page, limit, country=country, genre=genre, query=query, featured=featured
            )
        definition = CATEGORIES.get(category)
        if definition is None:
            raise ValidationError(
                "Invalid category", details={"category": category, "allowed": list(CATEGORY_IDS)}
            )
        loader: Callable[..., Awaitable[ListingPage]] = getattr(self._tmdb, definition.method)
        listing = await loader(*definition.args, page=page)
        items = listing.items[:limit]
        return CategoryPage(
            category=category,
            items=items,
            pagination=Pagination(
                current_page=page, limit=limit, has_more=page < listing.total_pages
            ),
            total_pages=listing.total_pages,
            total_results=listing.total_results,
        )

    async def _radio_category(
        self,
        page: int,
        limit: int,
        *,
        country: str | None,
        genre: str | None,
        query: str | None,
        featured: bool,
    ) -> CategoryPage:
        offset = (page - 1) * limit
        if query and query.strip():
            stations = await self._radio.search_stations(query, limit, offset)
        elif genre and genre.strip():
            stations = await self._radio.stations_by_genre(genre, limit, offset)
        elif featured:
            stations = await self._radio.popular_stations(limit, offset)
        else:
            stations = await self._radio.stations_by_country(
                country or DEFAULT_RADIO_COUNTRY, limit, offset
            )
        items = [station.to_item() for station in stations]
        return CategoryPage(
            category=RADIO_CATEGORY,
            items=items,
            pagination=Pagination(
                current_page=page, limit=limit, has_more=len(items) == limit
            ),
        )

    async def discover(
        self,
        kind: str,
        page: int = 1,
        *,
        sort_by: str = "popularity.desc",
        genres: str | None = None,
        year: int | None = None,
        rating_min: float | None = None,
        rating_max: float | None = None,
        runtime_min: int | None = None,
        runtime_max: int | None = None,
        include_adult: bool = False,
    ) -> CategoryPage:
        """Filtered TMDB discovery for movies or TV shows."""

        if kind not in ("movie", "tv"):
            raise ValidationError("Invalid type. Use movie or tv", details={"type": kind})
        if page < 1:
            raise ValidationError("Page must be greater than or equal to 1")
        filters: dict[str, Any] = {
            "page": page,
            "sort_by": sort_by,
            "include_adult": include_adult,
            "with_genres": genres or None,
            "vote_average.gte": rating_min,
            "vote_average.lte": rating_max,
            "with_runtime.gte": runtime_min,
            "with_runtime.lte": runtime_max,
        }
        if year is not None:
            filters["primary_release_year" if kind == "movie" else "first_air_date_year"] = year
        listing = await self._tmdb.discover(kind, filters)  # type: ignore[arg-type]
        return CategoryPage(
            category=f"discover-{kind}",
            items=listing.items,
            pagination=Pagination(
                current_page=listing.page,
                limit=SECTION_SIZE,
                has_more=listing.page < listing.total_pages,
            ),
            total_pages=listing.total_pages,
            total_results=listing.total_results,
        )

    async def related(
        self, kind: str, external_id: str, relation: str = "similar", page: int = 1
    ) -> CategoryPage:
        """Titles TMDB considers similar to, or recommends alongside, a title."""

        if kind not in ("movie", "tv"):
            raise ValidationError("Invalid type. Use movie or tv", details={"type": kind})
        if relation not in RELATIONS:
            raise ValidationError(
                "Invalid relation", details={"relation": relation, "allowed": list(RELATIONS)}
            )
        if page < 1:
            raise ValidationError("Page must be greater than or equal to 1")
        loader: Callable[..., Awaitable[ListingPage]] = getattr(self._tmdb, relation)
        listing = await loader(kind, external_id, page)
        return CategoryPage(
            category=f"{relation}-{kind}",
            items=listing.items,
            pagination=Pagination(
                current_page=listing.page,
                limit=SECTION_SIZE,
                has_more=listing.page < listing.total_pages,
            ),
            total_pages=listing.total_pages,
            total_results=listing.total_results,
        )

    async def season(self, tv_id: str, season_number: int) -> dict[str, Any]:
        if season_number < 0:
            raise ValidationError("Season number must not be negative")
        return await self._tmdb.tv_season(tv_id, season_number)

    async def genres(self, kind: str) -> list[Genre]:
        if kind == "radio":
            return await self._radio.genres()
        if kind in ("movie", "tv"):
            return await self._tmdb.genres(kind)  # type: ignore[arg-type]
        raise ValidationError("Invalid type. Use movie, tv or radio", details={"type": kind})

    async def homepage(self, viewer_id: str | None = None) -> Homepage:
        """Assemble the landing page; a failed section is served empty."""

        async def _listing(call: Awaitable[ListingPage]) -> list[NormalizedItem]:
            return (await call).items[:SECTION_SIZE]

        async def _radio() -> list[NormalizedItem]:
            stations = await self._radio.popular_stations(FEATURED_STATIONS)
            return [station.to_item() for station in stations]

        sections: list[tuple[str, str, Awaitable[list[NormalizedItem]]]] = [
            ("Trending Now", "trending", _listing(self._tmdb.trending("all", "day", 1))),
            ("Popular Movies", "movies", _listing(self._tmdb.popular_movies(1))),
            ("Popular TV Shows", "tv", _listing(self._tmdb.popular_tv(1))),
            ("Top Rated Movies", "movies", _listing(self._tmdb.top_rated_movies(1))),
            ("Live Radio", "radio", _radio()),
        ]
        outcomes = await asyncio.gather(
            *(call for _, _, call in sections), return_exceptions=True
        )

        homepage = Homepage()
        for (title, section_type, _), outcome in zip(sections, outcomes):
            if isinstance(outcome, MediaHubError):
                logger.warning("Homepage section %r unavailable: %s", title, outcome.kind)
                homepage.degraded_sections.append(title)
                items: list[NormalizedItem] = []
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                items = outcome
            homepage.sections.append(
                HomepageSection(title=title, type=section_type, items=items)
            )

        homepage.hero = list(homepage.sections[0].items[:HERO_SIZE])
        if viewer_id:
            continuing = await self._continue_watching(viewer_id)
            if continuing is not None:
                homepage.sections.insert(0, continuing)
        return homepage

    async def _continue_watching(self, viewer_id: str) -> HomepageSection | None:
        if self._user_store is None:
            return None
        try:
            profile = await self._user_store.find_user(viewer_id)
        except Exception as exc:  # pragma: no cover - personalisation is optional
            logger.warning("Could not load history for %s: %s", viewer_id, exc)
            return None
        if profile is None or not profile.watch_history:
            return None
        items = [
            NormalizedItem(
                external_id=entry.content_id,
                title=entry.title or entry.content_id,
                media_kind=entry.content_type,
                poster=ImageRef(url=entry.poster),
            )
            for entry in profile.watch_history[:CONTINUE_WATCHING]
        ]
        return HomepageSection(title="Continue Watching", type="continue", items=items)
