"""Adapter for The Movie Database (TMDB) metadata API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any, ClassVar, Literal, Mapping, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PayloadError

from ..cache import CacheLookup, TTLCache
from ..errors import UpstreamError, ValidationError
from ..models import Genre, ImageRef, MediaKind, NormalizedItem, StreamSource
from ..utils import build_image_url, parse_date, parse_year
from .upstream import AuthStrategy, UpstreamClient
from .youtube import embed_url

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_BASE_URL = "https://image.tmdb.org/t/p"
POSTER_SIZE = "w500"
BACKDROP_SIZE = "w1280"
MAX_CAST = 20


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TMDBGenrePayload(_Payload):
    id: int
    name: str


class TMDBVideoPayload(_Payload):
    key: str
    name: str = ""
    site: str = ""
    type: str = ""
    official: bool = False
    published_at: str | None = None
    iso_639_1: str | None = None


class TMDBVideoList(_Payload):
    results: list[TMDBVideoPayload] = Field(default_factory=list)


class TMDBCastPayload(_Payload):
    id: int
    name: str
    character: str | None = None
    profile_path: str | None = None
    order: int | None = None


class TMDBCredits(_Payload):
    cast: list[TMDBCastPayload] = Field(default_factory=list)


class TMDBSeasonSummary(_Payload):
    id: int | None = None
    season_number: int
    name: str | None = None
    episode_count: int | None = None
    air_date: str | None = None
    overview: str | None = None
    poster_path: str | None = None


class _TMDBDetailsBase(_Payload):
    id: int
    overview: str | None = None
    genres: list[TMDBGenrePayload] = Field(default_factory=list)
    vote_average: float | None = None
    vote_count: int = 0
    popularity: float = 0.0
    original_language: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    videos: TMDBVideoList | None = None
    credits: TMDBCredits | None = None
    external_ids: dict[str, Any] = Field(default_factory=dict)


class TMDBMovieDetails(_TMDBDetailsBase):
    title: str
    original_title: str | None = None
    release_date: str | None = None
    runtime: int | None = None
    imdb_id: str | None = None


class TMDBTVDetails(_TMDBDetailsBase):
    name: str
    original_name: str | None = None
    first_air_date: str | None = None
    episode_run_time: list[int] = Field(default_factory=list)
    seasons: list[TMDBSeasonSummary] = Field(default_factory=list)


class _TMDBListingBase(_Payload):
    id: int
    overview: str | None = None
    vote_average: float | None = None
    popularity: float = 0.0
    poster_path: str | None = None
    backdrop_path: str | None = None
    original_language: str | None = None


class TMDBMovieResult(_TMDBListingBase):
    media_type: Literal["movie"]
    title: str
    release_date: str | None = None


class TMDBTVResult(_TMDBListingBase):
    media_type: Literal["tv"]
    name: str
    first_air_date: str | None = None


class TMDBPersonResult(_Payload):
    media_type: Literal["person"]
    id: int
    name: str


ListingResult = Annotated[
    Union[TMDBMovieResult, TMDBTVResult, TMDBPersonResult],
    Field(discriminator="media_type"),
]
_LISTING_ADAPTER: TypeAdapter[Any] = TypeAdapter(ListingResult)


class TMDBPage(_Payload):
    page: int = 1
    results: list[dict[str, Any]] = Field(default_factory=list)
    total_pages: int = 0
    total_results: int = 0


class TMDBGenreList(_Payload):
    genres: list[TMDBGenrePayload] = Field(default_factory=list)


@dataclass(slots=True)
class ListingPage:
    """Normalized page of TMDB listing results."""

    items: list[NormalizedItem]
    page: int = 1
    total_pages: int = 0
    total_results: int = 0


def _validate(model: type[_Payload], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except PayloadError as exc:
        raise UpstreamError(
            "tmdb",
            f"unexpected payload for {model.__name__}",
            details={"errors": exc.error_count()},
        ) from exc


def _image(path: str | None, image_base_url: str, size: str) -> ImageRef:
    return ImageRef(path=path, url=build_image_url(path, image_base_url, size))


def trailer_sources(videos: TMDBVideoList | None) -> list[StreamSource]:
    """Return YouTube-hosted trailers from a TMDB video list."""

    if videos is None:
        return []
    return [
        StreamSource(
            provider="video-platform",
            url=embed_url(video.key),
            type="embed",
            purpose="trailer",
            language=video.iso_639_1 or "en",
            title=video.name or None,
            video_id=video.key,
            published_at=video.published_at,
        )
        for video in videos.results
        if video.type == "Trailer" and video.site == "YouTube"
    ]


def _cast(credits: TMDBCredits | None) -> list[dict[str, Any]]:
    if credits is None:
        return []
    return [
        {
            "tmdbPersonId": member.id,
            "name": member.name,
            "character": member.character,
            "profilePath": member.profile_path,
            "order": member.order,
        }
        for member in credits.cast[:MAX_CAST]
    ]


def _external_ids(details: _TMDBDetailsBase, imdb_id: str | None = None) -> dict[str, str]:
    ids = {
        key: str(value)
        for key, value in details.external_ids.items()
        if value not in (None, "")
    }
    if imdb_id and "imdb_id" not in ids:
        ids["imdb_id"] = imdb_id
    return ids


def transform_movie(
    payload: Mapping[str, Any], image_base_url: str = DEFAULT_IMAGE_BASE_URL
) -> NormalizedItem:
    """Map a TMDB movie details payload onto a NormalizedItem."""

    movie: TMDBMovieDetails = _validate(TMDBMovieDetails, payload)
    return NormalizedItem(
        external_id=str(movie.id),
        title=movie.title,
        media_kind="movie",
        original_title=movie.original_title,
        overview=movie.overview,
        poster=_image(movie.poster_path, image_base_url, POSTER_SIZE),
        backdrop=_image(movie.backdrop_path, image_base_url, BACKDROP_SIZE),
        popularity=movie.popularity,
        rating=movie.vote_average,
        vote_count=movie.vote_count,
        year=parse_year(movie.release_date),
        release_date=parse_date(movie.release_date),
        genres=[genre.name for genre in movie.genres],
        runtime=movie.runtime,
        language=movie.original_language,
        sources=trailer_sources(movie.videos),
        external_ids=_external_ids(movie, movie.imdb_id),
        cast=_cast(movie.credits),
    )


def transform_tv(
    payload: Mapping[str, Any], image_base_url: str = DEFAULT_IMAGE_BASE_URL
) -> NormalizedItem:
    """Map a TMDB TV details payload onto a NormalizedItem."""

    show: TMDBTVDetails = _validate(TMDBTVDetails, payload)
    seasons = [
        {
            "tmdbSeasonId": season.id,
            "seasonNumber": season.season_number,
            "name": season.name,
            "episodeCount": season.episode_count,
            "airDate": season.air_date,
            "overview": season.overview,
            "poster": build_image_url(season.poster_path, image_base_url, POSTER_SIZE),
        }
        for season in show.seasons
    ]
    return NormalizedItem(
        external_id=str(show.id),
        title=show.name,
        media_kind="tv",
        original_title=show.original_name,
        overview=show.overview,
        poster=_image(show.poster_path, image_base_url, POSTER_SIZE),
        backdrop=_image(show.backdrop_path, image_base_url, BACKDROP_SIZE),
        popularity=show.popularity,
        rating=show.vote_average,
        vote_count=show.vote_count,
        year=parse_year(show.first_air_date),
        release_date=parse_date(show.first_air_date),
        genres=[genre.name for genre in show.genres],
        runtime=show.episode_run_time[0] if show.episode_run_time else None,
        language=show.original_language,
        sources=trailer_sources(show.videos),
        external_ids=_external_ids(show),
        seasons=seasons,
        cast=_cast(show.credits),
    )


def transform_listing(
    payload: Mapping[str, Any],
    *,
    default_kind: MediaKind | None = None,
    image_base_url: str = DEFAULT_IMAGE_BASE_URL,
) -> NormalizedItem | None:
    """Map one listing/search result; people are not content and map to ``None``."""

    if not isinstance(payload, Mapping):
        raise UpstreamError("tmdb", "unexpected listing entry")
    data = dict(payload)
    if "media_type" not in data:
        if default_kind is not None:
            data["media_type"] = default_kind
        else:
            data["media_type"] = "movie" if "title" in data else "tv"
    try:
        result = _LISTING_ADAPTER.validate_python(data)
    except PayloadError as exc:
        raise UpstreamError(
            "tmdb",
            "unexpected payload for listing result",
            details={"errors": exc.error_count()},
        ) from exc

    if isinstance(result, TMDBPersonResult):
        return None
    if isinstance(result, TMDBMovieResult):
        title, date_value, kind = result.title, result.release_date, "movie"
    else:
        title, date_value, kind = result.name, result.first_air_date, "tv"
    return NormalizedItem(
        external_id=str(result.id),
        title=title,
        media_kind=kind,
        overview=result.overview,
        poster=_image(result.poster_path, image_base_url, POSTER_SIZE),
        backdrop=_image(result.backdrop_path, image_base_url, BACKDROP_SIZE),
        popularity=result.popularity,
        rating=result.vote_average,
        year=parse_year(date_value),
        release_date=parse_date(date_value),
        language=result.original_language,
    )


def transform_page(
    payload: Mapping[str, Any],
    *,
    default_kind: MediaKind | None = None,
    image_base_url: str = DEFAULT_IMAGE_BASE_URL,
) -> ListingPage:
    page: TMDBPage = _validate(TMDBPage, payload)
    items: list[NormalizedItem] = []
    for entry in page.results:
        item = transform_listing(
            entry, default_kind=default_kind, image_base_url=image_base_url
        )
        if item is not None:
            items.append(item)
    return ListingPage(
        items=items,
        page=page.page,
        total_pages=page.total_pages,
        total_results=page.total_results,
    )


def transform_season(
    payload: Mapping[str, Any], image_base_url: str = DEFAULT_IMAGE_BASE_URL
) -> dict[str, Any]:
    """Flatten a TMDB season payload into the shape served to the frontend."""

    if not isinstance(payload, Mapping) or "season_number" not in payload:
        raise UpstreamError("tmdb", "unexpected payload for season")
    episodes = payload.get("episodes") or []
    return {
        "id": payload.get("id"),
        "name": payload.get("name"),
        "overview": payload.get("overview"),
        "airDate": payload.get("air_date"),
        "episodeCount": len(episodes) or payload.get("episode_count"),
        "poster": build_image_url(payload.get("poster_path"), image_base_url, POSTER_SIZE),
        "seasonNumber": payload.get("season_number"),
        "episodes": [
            {
                "id": episode.get("id"),
                "name": episode.get("name"),
                "overview": episode.get("overview"),
                "episodeNumber": episode.get("episode_number"),
                "airDate": episode.get("air_date"),
                "runtime": episode.get("runtime"),
                "still": build_image_url(episode.get("still_path"), image_base_url, "w300"),
                "rating": episode.get("vote_average"),
            }
            for episode in episodes
            if isinstance(episode, Mapping)
        ],
    }


class TMDBClient(UpstreamClient):
    """Client for TMDB listings, search and details lookups."""

    provider = "tmdb"
    OPERATIONS: ClassVar[Mapping[str, str]] = {
        "search_multi": "/search/multi",
        "trending": "/trending/{media_type}/{time_window}",
        "popular_movies": "/movie/popular",
        "popular_tv": "/tv/popular",
        "top_rated_movies": "/movie/top_rated",
        "top_rated_tv": "/tv/top_rated",
        "upcoming_movies": "/movie/upcoming",
        "now_playing_movies": "/movie/now_playing",
        "movie_details": "/movie/{id}",
        "tv_details": "/tv/{id}",
        "tv_season": "/tv/{id}/season/{season_number}",
        "movie_genres": "/genre/movie/list",
        "tv_genres": "/genre/tv/list",
        "discover_movies": "/discover/movie",
        "discover_tv": "/discover/tv",
        "movie_similar": "/movie/{id}/similar",
        "tv_similar": "/tv/{id}/similar",
        "movie_recommendations": "/movie/{id}/recommendations",
        "tv_recommendations": "/tv/{id}/recommendations",
    }
    _DETAILS_APPEND = "credits,videos,external_ids"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: TTLCache,
        *,
        api_key: str | None,
        image_base_url: str = DEFAULT_IMAGE_BASE_URL,
        reference_ttl: float | None = None,
    ) -> None:
        super().__init__(http_client, cache, credential=api_key)
        self._image_base_url = image_base_url.rstrip("/")
        self._reference_ttl = reference_ttl

    def resolve_auth(self, credential: str | None) -> AuthStrategy | None:
        if not credential:
            return None
        if credential.startswith("eyJ") or len(credential) > 50:
            return AuthStrategy(
                scheme="bearer", headers={"Authorization": f"Bearer {credential}"}
            )
        return AuthStrategy(scheme="query", params={"api_key": credential})

    async def _listing(
        self,
        operation_id: str,
        params: Mapping[str, Any] | None = None,
        *,
        default_kind: MediaKind | None = None,
    ) -> ListingPage:
        payload = await self.cached(operation_id, params)
        return transform_page(
            payload, default_kind=default_kind, image_base_url=self._image_base_url
        )

    async def search(
        self, query: str, page: int = 1, *, include_adult: bool = False
    ) -> ListingPage:
        """Multi-search across movies, TV shows and people (people are dropped)."""

        return await self._listing(
            "search_multi",
            {"query": query, "page": page, "include_adult": include_adult},
        )

    async def trending(
        self, media_type: str = "all", time_window: str = "day", page: int = 1
    ) -> ListingPage:
        default_kind = media_type if media_type in ("movie", "tv") else None
        return await self._listing(
            "trending",
            {"media_type": media_type, "time_window": time_window, "page": page},
            default_kind=default_kind,  # type: ignore[arg-type]
        )

    async def popular_movies(self, page: int = 1) -> ListingPage:
        return await self._listing("popular_movies", {"page": page}, default_kind="movie")

    async def popular_tv(self, page: int = 1) -> ListingPage:
        return await self._listing("popular_tv", {"page": page}, default_kind="tv")

    async def top_rated_movies(self, page: int = 1) -> ListingPage:
        return await self._listing("top_rated_movies", {"page": page}, default_kind="movie")

    async def top_rated_tv(self, page: int = 1) -> ListingPage:
        return await self._listing("top_rated_tv", {"page": page}, default_kind="tv")

    async def upcoming_movies(self, page: int = 1) -> ListingPage:
        return await self._listing("upcoming_movies", {"page": page}, default_kind="movie")

    async def now_playing_movies(self, page: int = 1) -> ListingPage:
        return await self._listing(
            "now_playing_movies", {"page": page}, default_kind="movie"
        )

    async def details(self, kind: MediaKind, tmdb_id: str) -> NormalizedItem:
        """Return full details, including trailers and cast, for a movie or show."""

        return (await self.details_lookup(kind, tmdb_id)).value

    async def details_lookup(
        self, kind: MediaKind, tmdb_id: str
    ) -> CacheLookup[NormalizedItem]:
        """Details plus whether they came from a stale cache fallback."""

        if kind not in ("movie", "tv"):
            raise ValidationError(f"TMDB has no details for content type {kind}")
        lookup = await self.cached_lookup(
            f"{kind}_details", {"id": tmdb_id, "append_to_response": self._DETAILS_APPEND}
        )
        transform = transform_movie if kind == "movie" else transform_tv
        return CacheLookup(
            value=transform(lookup.value, self._image_base_url),
            is_fresh=lookup.is_fresh,
            error=lookup.error,
        )

    async def tv_season(self, tv_id: str, season_number: int) -> dict[str, Any]:
        payload = await self.cached(
            "tv_season", {"id": tv_id, "season_number": season_number}
        )
        return transform_season(payload, self._image_base_url)

    async def genres(self, kind: MediaKind) -> list[Genre]:
        if kind not in ("movie", "tv"):
            raise ValidationError("Genres are only available for movie or tv")
        operation_id = "movie_genres" if kind == "movie" else "tv_genres"
        payload = await self.cached(operation_id, ttl=self._reference_ttl)
        genre_list: TMDBGenreList = _validate(TMDBGenreList, payload)
        return [Genre(id=str(genre.id), name=genre.name) for genre in genre_list.genres]

    async def discover(self, kind: MediaKind, filters: Mapping[str, Any]) -> ListingPage:
        if kind not in ("movie", "tv"):
            raise ValidationError("Discover is only available for movie or tv")
        params: dict[str, Any] = {
            "page": 1,
            "sort_by": "popularity.desc",
            "include_adult": False,
        }
        if kind == "movie":
            params["include_video"] = False
        params.update({key: value for key, value in filters.items() if value is not None})
        operation_id = "discover_movies" if kind == "movie" else "discover_tv"
        return await self._listing(operation_id, params, default_kind=kind)

    async def similar(self, kind: MediaKind, tmdb_id: str, page: int = 1) -> ListingPage:
        if kind not in ("movie", "tv"):
            raise ValidationError("Similar titles are only available for movie or tv")
        return await self._listing(
            f"{kind}_similar", {"id": tmdb_id, "page": page}, default_kind=kind
        )

    async def recommendations(
        self, kind: MediaKind, tmdb_id: str, page: int = 1
    ) -> ListingPage:
        if kind not in ("movie", "tv"):
            raise ValidationError("Recommendations are only available for movie or tv")
        return await self._listing(
            f"{kind}_recommendations", {"id": tmdb_id, "page": page}, default_kind=kind
        )
