"""Adapter for the community Radio Browser directory."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, ClassVar, Literal, Mapping

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PayloadError

from ..cache import TTLCache
from ..errors import MediaHubError, UpstreamError, UpstreamRateLimited, ValidationError
from ..models import Genre, RadioStationRecord
from ..utils import is_valid_stream_url
from .upstream import AuthStrategy, UpstreamClient

logger = logging.getLogger(__name__)

USER_AGENT = "MediaHub/1.0"
MIN_GENRE_STATIONS = 10


class RequestWindowLimiter:
    """Fixed-window counter allowing ``max_requests`` calls per ``window`` seconds."""

    def __init__(
        self,
        max_requests: int,
        window: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._count = 0
        self._window_start = clock()

    def _roll(self) -> None:
        now = self._clock()
        if now - self._window_start > self.window:
            self._count = 0
            self._window_start = now

    def acquire(self) -> bool:
        self._roll()
        if self._count >= self.max_requests:
            return False
        self._count += 1
        return True

    @property
    def remaining(self) -> int:
        self._roll()
        return max(self.max_requests - self._count, 0)

    def retry_after(self) -> float:
        return max(self.window - (self._clock() - self._window_start), 0.0)


class RadioStationPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stationuuid: str
    name: str
    url: str | None = None
    url_resolved: str | None = None
    homepage: str | None = None
    favicon: str | None = None
    tags: list[str] = Field(default_factory=list)
    country: str | None = None
    countrycode: str | None = None
    language: str | None = None
    codec: str | None = None
    bitrate: int = 0
    clickcount: int = 0
    votes: int = 0

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [tag.strip() for tag in value.split(",") if tag.strip()]
        return value

    @field_validator("bitrate", "clickcount", "votes", mode="before")
    @classmethod
    def _null_counts(cls, value: Any) -> Any:
        return 0 if value in (None, "") else value


class RadioCountryPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    iso_3166_1: str | None = None
    stationcount: int = 0


class RadioTagPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    stationcount: int = 0


def stream_quality(bitrate: int) -> Literal["high", "medium", "low"]:
    if bitrate > 128:
        return "high"
    if bitrate > 64:
        return "medium"
    return "low"


def _parse(model: type[BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except PayloadError as exc:
        raise UpstreamError(
            "radio-browser",
            f"unexpected payload for {model.__name__}",
            details={"errors": exc.error_count()},
        ) from exc


def transform_station(payload: Mapping[str, Any]) -> RadioStationRecord:
    """Map one directory row onto a station record with a quality tier."""

    station: RadioStationPayload = _parse(RadioStationPayload, payload)
    if not is_valid_stream_url(station.url_resolved):
        raise UpstreamError(
            "radio-browser",
            "station has no playable stream",
            details={"uuid": station.stationuuid},
        )
    return RadioStationRecord(
        uuid=station.stationuuid,
        name=station.name.strip() or station.stationuuid,
        stream_url=station.url_resolved.strip(),  # type: ignore[union-attr]
        homepage=station.homepage or None,
        favicon=station.favicon or None,
        tags=station.tags,
        country=station.country or None,
        country_code=station.countrycode or None,
        language=station.language or None,
        codec=station.codec or None,
        bitrate=station.bitrate,
        quality=stream_quality(station.bitrate),
        click_count=station.clickcount,
        votes=station.votes,
    )


def transform_station_list(payload: Any, limit: int) -> list[RadioStationRecord]:
    """Drop rows without a usable stream URL, then trim to ``limit``."""

    if not isinstance(payload, list):
        raise UpstreamError("radio-browser", "unexpected payload for station list")
    valid = [
        row
        for row in payload
        if isinstance(row, Mapping) and is_valid_stream_url(row.get("url_resolved"))
    ]
    return [transform_station(row) for row in valid[:limit]]


class RadioBrowserClient(UpstreamClient):
    """Client for station listings, lookups and click tracking."""

    provider = "radio-browser"
    requires_credential = False
    OPERATIONS: ClassVar[Mapping[str, str]] = {
        "stations": "/json/stations",
        "stations_by_country": "/json/stations/bycountrycodeexact/{code}",
        "stations_by_tag": "/json/stations/bytagexact/{tag}",
        "stations_search": "/json/stations/search",
        "station_by_uuid": "/json/stations/byuuid/{uuid}",
        "click": "/json/url/{uuid}",
        "countries": "/json/countries",
        "tags": "/json/tags",
        "stats": "/json/stats",
    }

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        cache: TTLCache,
        *,
        limiter: RequestWindowLimiter | None = None,
        reference_ttl: float | None = None,
    ) -> None:
        super().__init__(http_client, cache)
        self._limiter = limiter or RequestWindowLimiter(100)
        self._reference_ttl = reference_ttl

    def resolve_auth(self, credential: str | None) -> AuthStrategy | None:
        return AuthStrategy(scheme="none", headers={"User-Agent": USER_AGENT})

    @property
    def limiter(self) -> RequestWindowLimiter:
        return self._limiter

    @property
    def cache_key_count(self) -> int:
        return len(self._cache)

    async def fetch(self, operation_id: str, params: Mapping[str, Any] | None = None) -> Any:
        if not self._limiter.acquire():
            logger.warning("Radio Browser local rate limit reached for %s", operation_id)
            raise UpstreamRateLimited(
                self.provider,
                "local request limit reached, try again later",
                retry_after=self._limiter.retry_after(),
            )
        return await super().fetch(operation_id, params)

    async def _stations(
        self, operation_id: str, params: Mapping[str, Any], limit: int, offset: int
    ) -> list[RadioStationRecord]:
        if limit < 1:
            raise ValidationError("Limit must be greater than or equal to 1")
        if offset < 0:
            raise ValidationError("Offset must not be negative")
        query = {
            **params,
            "order": "clickcount",
            "reverse": True,
            "hidebroken": True,
            "limit": limit * 2,
            "offset": offset,
        }
        payload = await self.cached(operation_id, query)
        stations = transform_station_list(payload, limit)
        logger.debug("Radio Browser %s returned %d stations", operation_id, len(stations))
        return stations

    async def popular_stations(self, limit: int = 50, offset: int = 0) -> list[RadioStationRecord]:
        return await self._stations("stations", {}, limit, offset)

    async def stations_by_country(
        self, code: str = "US", limit: int = 50, offset: int = 0
    ) -> list[RadioStationRecord]:
        if not code or not code.strip():
            raise ValidationError("Country code must not be empty")
        return await self._stations(
            "stations_by_country", {"code": code.strip().upper()}, limit, offset
        )

    async def stations_by_genre(
        self, tag: str, limit: int = 50, offset: int = 0
    ) -> list[RadioStationRecord]:
        if not tag or not tag.strip():
            raise ValidationError("Genre must not be empty")
        return await self._stations(
            "stations_by_tag", {"tag": tag.strip().lower()}, limit, offset
        )

    async def search_stations(
        self, query: str, limit: int = 50, offset: int = 0
    ) -> list[RadioStationRecord]:
        if not query or not query.strip():
            raise ValidationError("Station search query must not be empty")
        return await self._stations(
            "stations_search", {"name": query.strip()}, limit, offset
        )

    async def station(self, uuid: str) -> RadioStationRecord | None:
        """Return one station by uuid, or ``None`` when the directory has no such row."""

        payload = await self.cached("station_by_uuid", {"uuid": uuid})
        if not isinstance(payload, list):
            raise UpstreamError("radio-browser", "unexpected payload for station lookup")
        if not payload:
            return None
        return transform_station(payload[0])

    async def stream_info(self, uuid: str) -> dict[str, Any] | None:
        station = await self.station(uuid)
        if station is None:
            return None
        return {
            "streamUrl": station.stream_url,
            "quality": station.quality,
            "bitrate": station.bitrate,
            "codec": station.codec,
        }

    async def click(self, uuid: str) -> bool:
        """Report a play to the directory; failures are logged and reported as ``False``."""

        try:
            await self.fetch("click", {"uuid": uuid})
        except MediaHubError as exc:
            logger.warning("Failed to record click for station %s: %s", uuid, exc.kind)
            return False
        logger.debug("Recorded click for station %s", uuid)
        return True

    async def countries(self) -> list[dict[str, Any]]:
        payload = await self.cached("countries", ttl=self._reference_ttl)
        if not isinstance(payload, list):
            raise UpstreamError("radio-browser", "unexpected payload for countries")
        countries = [_parse(RadioCountryPayload, row) for row in payload]
        return [
            {"name": country.name, "code": country.iso_3166_1, "stationCount": country.stationcount}
            for country in countries
        ]

    async def genres(self, limit: int = 50) -> list[Genre]:
        """Return the most used tags as genres, largest first."""

        payload = await self.cached("tags", ttl=self._reference_ttl)
        if not isinstance(payload, list):
            raise UpstreamError("radio-browser", "unexpected payload for tags")
        tags = [_parse(RadioTagPayload, row) for row in payload]
        popular = sorted(
            (tag for tag in tags if tag.stationcount > MIN_GENRE_STATIONS),
            key=lambda tag: tag.stationcount,
            reverse=True,
        )
        return [
            Genre(id=tag.name, name=tag.name, count=tag.stationcount)
            for tag in popular[:limit]
        ]

    async def health_check(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "cacheKeys": self.cache_key_count,
            "rateLimitRemaining": self._limiter.remaining,
        }
        try:
            stats = await self.fetch("stats")
        except MediaHubError as exc:
            logger.warning("Radio Browser health check failed: %s", exc)
            status.update({"status": "unhealthy", "error": exc.message})
            status["rateLimitRemaining"] = self._limiter.remaining
            return status
        status.update({"status": "healthy", "serverStats": stats})
        status["rateLimitRemaining"] = self._limiter.remaining
        return status

    def clear_cache(self) -> int:
        return self._cache.clear()
