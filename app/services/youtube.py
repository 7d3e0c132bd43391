"""Adapter for the YouTube Data API, used to find trailers."""

from __future__ import annotations

import logging
import re
from typing import Any, ClassVar, Mapping
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadError

from ..cache import TTLCache
from ..errors import UpstreamError, ValidationError
from ..models import StreamSource
from .upstream import AuthStrategy, UpstreamClient

logger = logging.getLogger(__name__)

EMBED_BASE_URL = "https://www.youtube.com/embed"
THUMBNAIL_BASE_URL = "https://img.youtube.com/vi"
TRAILER_CANDIDATES = 5
MAX_TRAILERS = 3

_VIDEO_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([^&\n?#]+)"),
    re.compile(r"youtube\.com/watch\?.*v=([^&\n?#]+)"),
)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class YouTubeSnippet(_Payload):
    title: str = ""
    description: str | None = None
    published_at: str | None = Field(default=None, alias="publishedAt")
    channel_title: str | None = Field(default=None, alias="channelTitle")
    thumbnails: dict[str, Any] = Field(default_factory=dict)


class YouTubeSearchId(_Payload):
    kind: str | None = None
    video_id: str | None = Field(default=None, alias="videoId")


class YouTubeSearchItem(_Payload):
    id: YouTubeSearchId
    snippet: YouTubeSnippet = Field(default_factory=YouTubeSnippet)


class YouTubeSearchResponse(_Payload):
    items: list[YouTubeSearchItem] = Field(default_factory=list)


class YouTubeVideoStatus(_Payload):
    embeddable: bool = False
    privacy_status: str | None = Field(default=None, alias="privacyStatus")


class YouTubeVideo(_Payload):
    id: str
    snippet: YouTubeSnippet = Field(default_factory=YouTubeSnippet)
    status: YouTubeVideoStatus = Field(default_factory=YouTubeVideoStatus)
    content_details: dict[str, Any] = Field(default_factory=dict, alias="contentDetails")
    statistics: dict[str, Any] = Field(default_factory=dict)


class YouTubeVideoResponse(_Payload):
    items: list[YouTubeVideo] = Field(default_factory=list)


def embed_url(
    video_id: str,
    *,
    autoplay: bool = False,
    controls: bool = True,
    subtitles: bool = False,
) -> str:
    """Build a privacy-friendly embed URL for ``video_id``."""

    params = {
        "autoplay": "1" if autoplay else "0",
        "controls": "1" if controls else "0",
        "rel": "0",
        "modestbranding": "1",
        "fs": "1",
        "cc_load_policy": "1" if subtitles else "0",
        "iv_load_policy": "3",
    }
    return f"{EMBED_BASE_URL}/{video_id}?{urlencode(params)}"


def thumbnail_url(video_id: str, quality: str = "maxresdefault") -> str:
    return f"{THUMBNAIL_BASE_URL}/{video_id}/{quality}.jpg"


def extract_video_id(url: str | None) -> str | None:
    """Return the video id from watch, short or embed URLs."""

    if not url:
        return None
    for pattern in _VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def _parse(model: type[_Payload], payload: Any) -> Any:
    try:
        return model.model_validate(payload)
    except PayloadError as exc:
        raise UpstreamError(
            "youtube",
            f"unexpected payload for {model.__name__}",
            details={"errors": exc.error_count()},
        ) from exc


def transform_video(payload: Mapping[str, Any]) -> StreamSource:
    """Map a search hit onto a trailer stream source."""

    item: YouTubeSearchItem = _parse(YouTubeSearchItem, payload)
    if not item.id.video_id:
        raise UpstreamError("youtube", "unexpected payload: search hit without videoId")
    return StreamSource(
        provider="video-platform",
        url=embed_url(item.id.video_id),
        type="embed",
        purpose="trailer",
        language="en",
        title=item.snippet.title or None,
        video_id=item.id.video_id,
        published_at=item.snippet.published_at,
    )


def select_trailers(items: list[YouTubeSearchItem]) -> list[YouTubeSearchItem]:
    """Prefer hits that look like trailers; fall back to every hit."""

    preferred = [
        item
        for item in items
        if "trailer" in item.snippet.title.lower() or "official" in item.snippet.title.lower()
    ]
    return preferred or list(items)


class YouTubeClient(UpstreamClient):
    provider = "youtube"
    OPERATIONS: ClassVar[Mapping[str, str]] = {
        "search": "/search",
        "videos": "/videos",
    }

    def __init__(self, http_client: httpx.AsyncClient, cache: TTLCache, *, api_key: str | None):
        super().__init__(http_client, cache, credential=api_key)

    def resolve_auth(self, credential: str | None) -> AuthStrategy | None:
        if not credential:
            return None
        return AuthStrategy(scheme="query", params={"key": credential})

    async def search_videos(self, query: str, max_results: int = 25) -> list[YouTubeSearchItem]:
        if not query or not query.strip():
            raise ValidationError("YouTube search query must not be empty")
        payload = await self.cached(
            "search",
            {
                "part": "snippet",
                "q": query.strip(),
                "type": "video",
                "maxResults": max(1, min(int(max_results), 50)),
                "order": "relevance",
                "safeSearch": "moderate",
            },
        )
        response: YouTubeSearchResponse = _parse(YouTubeSearchResponse, payload)
        return [item for item in response.items if item.id.video_id]

    async def search_trailer(
        self,
        title: str,
        year: int | None = None,
        season: int | None = None,
    ) -> list[StreamSource]:
        """Search for official trailers of a title and return embeddable sources."""

        query = title.strip()
        if year:
            query = f"{query} {year}"
        if season:
            query = f"{query} season {season}"
        items = await self.search_videos(f"{query} official trailer", TRAILER_CANDIDATES)
        chosen = select_trailers(items)[:MAX_TRAILERS]
        logger.debug("Found %d trailer candidates for %r", len(chosen), title)
        return [
            transform_video(item.model_dump(by_alias=True)) for item in chosen
        ]

    async def video_details(self, video_id: str) -> YouTubeVideo | None:
        payload = await self.cached(
            "videos", {"part": "snippet,contentDetails,statistics,status", "id": video_id}
        )
        response: YouTubeVideoResponse = _parse(YouTubeVideoResponse, payload)
        return response.items[0] if response.items else None

    async def is_embeddable(self, video_id: str) -> bool:
        """Return whether the video exists, is embeddable and is not private."""

        video = await self.video_details(video_id)
        if video is None:
            return False
        return video.status.embeddable and video.status.privacy_status != "private"
