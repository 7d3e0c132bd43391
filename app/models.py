"""Pydantic models describing normalized content and API payloads."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MediaKind = Literal["movie", "tv", "radio"]
MEDIA_KINDS: tuple[str, ...] = ("movie", "tv", "radio")
SortKey = Literal["popularity", "rating", "year", "title"]
SORT_KEYS: tuple[str, ...] = ("popularity", "rating", "year", "title")


class ApiModel(BaseModel):
    """Base model serialised with camelCase keys for the frontend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ImageRef(ApiModel):
    path: str | None = None
    url: str | None = None


class SubtitleTrack(ApiModel):
    language: str
    url: str
    label: str | None = None


class StreamSource(ApiModel):
    """One playable or embeddable reference owned by a NormalizedItem."""

    provider: Literal["video-platform", "archive", "custom"]
    url: str
    quality: Literal["240p", "360p", "480p", "720p", "1080p", "auto"] = "auto"
    type: Literal["embed", "direct", "stream"] = "embed"
    purpose: Literal["trailer", "feature", "clip"] = "feature"
    language: str = "en"
    subtitles: list[SubtitleTrack] = Field(default_factory=list)
    is_active: bool = True
    title: str | None = None
    video_id: str | None = None
    published_at: str | None = None


class NormalizedItem(ApiModel):
    """Provider-agnostic view of a movie, TV show or radio station."""

    external_id: str
    title: str
    media_kind: MediaKind
    original_title: str | None = None
    overview: str | None = None
    poster: ImageRef = Field(default_factory=ImageRef)
    backdrop: ImageRef = Field(default_factory=ImageRef)
    popularity: float = 0.0
    rating: float | None = None
    vote_count: int = 0
    year: int | None = None
    release_date: date | None = None
    genres: list[str] = Field(default_factory=list)
    runtime: int | None = None
    language: str | None = None
    sources: list[StreamSource] = Field(default_factory=list)
    external_ids: dict[str, str] = Field(default_factory=dict)
    seasons: list[dict[str, Any]] = Field(default_factory=list)
    cast: list[dict[str, Any]] = Field(default_factory=list)
    stream_url: str | None = None
    listeners: int | None = None
    country: str | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def trailers(self) -> list[StreamSource]:
        return [source for source in self.sources if source.purpose == "trailer"]

    @property
    def active_sources(self) -> list[StreamSource]:
        return [source for source in self.sources if source.is_active]

    @property
    def popularity_score(self) -> float:
        """Popularity used for ranking; radio stations fall back to listeners."""

        if self.popularity:
            return self.popularity
        return float(self.listeners or 0)

    def with_sources(self, sources: list[StreamSource]) -> "NormalizedItem":
        return self.model_copy(update={"sources": [*self.sources, *sources]})


class RadioStationRecord(ApiModel):
    """Directory-sourced internet radio station."""

    uuid: str
    name: str
    stream_url: str
    homepage: str | None = None
    favicon: str | None = None
    tags: list[str] = Field(default_factory=list)
    country: str | None = None
    country_code: str | None = None
    language: str | None = None
    codec: str | None = None
    bitrate: int = 0
    quality: Literal["high", "medium", "low"] = "low"
    click_count: int = 0
    votes: int = 0

    def to_item(self) -> NormalizedItem:
        return NormalizedItem(
            external_id=self.uuid,
            title=self.name,
            media_kind="radio",
            poster=ImageRef(url=self.favicon or None),
            popularity=0.0,
            stream_url=self.stream_url,
            listeners=self.click_count,
            country=self.country,
            language=self.language,
            tags=list(self.tags),
            genres=list(self.tags[:3]),
            sources=[
                StreamSource(
                    provider="custom",
                    url=self.stream_url,
                    type="stream",
                    purpose="feature",
                    language=self.language or "en",
                )
            ],
        )


class StoredContent(ApiModel):
    """Persisted envelope around a normalized item."""

    item: NormalizedItem
    views: int = 0
    cache_expiry: datetime
    last_updated: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.cache_expiry <= (now or datetime.utcnow())


class ResolvedContent(ApiModel):
    item: NormalizedItem
    views: int = 0
    degraded: bool = False
    reason: str | None = None


class SearchBreakdown(ApiModel):
    movies: int = 0
    tv: int = 0
    radio: int = 0
    total: int = 0


class Pagination(ApiModel):
    current_page: int
    limit: int
    has_more: bool


class SearchPage(ApiModel):
    query: str
    results: list[NormalizedItem] = Field(default_factory=list)
    breakdown: SearchBreakdown = Field(default_factory=SearchBreakdown)
    pagination: Pagination
    degraded_sources: list[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_sources)


class CategoryPage(ApiModel):
    category: str
    items: list[NormalizedItem] = Field(default_factory=list)
    pagination: Pagination
    total_pages: int | None = None
    total_results: int | None = None


class HomepageSection(ApiModel):
    title: str
    type: str
    items: list[NormalizedItem] = Field(default_factory=list)


class Homepage(ApiModel):
    hero: list[NormalizedItem] = Field(default_factory=list)
    sections: list[HomepageSection] = Field(default_factory=list)
    degraded_sections: list[str] = Field(default_factory=list)


class Genre(ApiModel):
    id: str
    name: str
    count: int | None = None


class LibraryEntry(ApiModel):
    content_id: str
    content_type: MediaKind
    title: str | None = None
    poster: str | None = None
    added_at: datetime = Field(default_factory=datetime.utcnow)


class WatchHistoryEntry(LibraryEntry):
    progress: float = Field(default=0.0, ge=0, le=100)
    duration: int | None = None
    watched_at: datetime = Field(default_factory=datetime.utcnow)


class RatingEntry(LibraryEntry):
    rating: float = Field(ge=0.5, le=10)


class CustomList(ApiModel):
    id: str
    name: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_public: bool = False
    items: list[LibraryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class UserProfile(ApiModel):
    id: str
    username: str | None = None
    watch_history: list[WatchHistoryEntry] = Field(default_factory=list)
    favorites: list[LibraryEntry] = Field(default_factory=list)
    watchlist: list[LibraryEntry] = Field(default_factory=list)
    ratings: list[RatingEntry] = Field(default_factory=list)
    lists: list[CustomList] = Field(default_factory=list)


class Suggestions(ApiModel):
    query: str
    items: list[NormalizedItem] = Field(default_factory=list)
    degraded_sources: list[str] = Field(default_factory=list)


class StreamListing(ApiModel):
    """Playable sources for one title or station."""

    content_id: str
    content_type: MediaKind
    sources: list[StreamSource] = Field(default_factory=list)
    degraded: bool = False
    reason: str | None = None


class PlayerData(ApiModel):
    type: Literal["audio", "video"]
    url: str
    title: str
    poster: str | None = None
    backdrop: str | None = None
    duration: int | None = None
    subtitles: list[SubtitleTrack] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    degraded: bool = False


class ProgressUpdate(ApiModel):
    progress: float = Field(ge=0, le=100)
    duration: int | None = Field(default=None, ge=0)
    current_time: float | None = None
