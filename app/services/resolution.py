"""Resolve a content request to a normalized document, via the store or upstream."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

from ..errors import MediaHubError, NotFoundError, ValidationError
from ..models import (
    MEDIA_KINDS,
    MediaKind,
    NormalizedItem,
    PlayerData,
    RadioStationRecord,
    ResolvedContent,
    StoredContent,
    StreamListing,
    StreamSource,
    WatchHistoryEntry,
)
from ..results import Degraded, Err, Ok, Result
from .content_store import ContentStore
from .radio_browser import RadioBrowserClient
from .tmdb import TMDBClient
from .user_store import UserStore
from .youtube import YouTubeClient, embed_url, extract_video_id, thumbnail_url

logger = logging.getLogger(__name__)


def _check_request(kind: str, external_id: str | None) -> str:
    if kind not in MEDIA_KINDS:
        raise ValidationError(
            "Invalid content type", details={"type": kind, "allowed": list(MEDIA_KINDS)}
        )
    cleaned = (external_id or "").strip()
    if not cleaned:
        raise ValidationError("Content id must not be empty")
    return cleaned


def _source_video_id(source: StreamSource) -> str | None:
    return source.video_id or extract_video_id(source.url)


class ContentResolutionService:
    """Serve movie, TV and radio documents with store-first caching.

    Movie and TV documents are read from the content store while their
    ``cache_expiry`` lies in the future. Otherwise they are refetched from TMDB,
    enriched with YouTube trailers when TMDB has none, and written back. A
    failed refetch falls back to the stored document, however old, and so does
    a refetch the TMDB adapter could only answer from its own stale cache.
    Radio stations are always read live from the directory.
    """

    def __init__(
        self,
        *,
        tmdb: TMDBClient,
        youtube: YouTubeClient,
        radio: RadioBrowserClient,
        content_store: ContentStore,
        user_store: UserStore | None = None,
        content_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._tmdb = tmdb
        self._youtube = youtube
        self._radio = radio
        self._content_store = content_store
        self._user_store = user_store
        self._content_ttl = content_ttl
        self._clock = clock
        self._background: set[asyncio.Task[None]] = set()

    async def resolve_content(
        self, kind: str, external_id: str, viewer_id: str | None = None
    ) -> ResolvedContent:
        external_id = _check_request(kind, external_id)
        if kind == "radio":
            station = await self._station(external_id)
            return ResolvedContent(item=station.to_item())

        media_kind: MediaKind = kind  # type: ignore[assignment]
        outcome = await self._document(media_kind, external_id)
        if isinstance(outcome, Err):
            raise outcome.error

        document = outcome.value
        self._count_view(media_kind, external_id)
        if viewer_id:
            self._record_history(viewer_id, document.item)

        if isinstance(outcome, Degraded):
            return ResolvedContent(
                item=document.item,
                views=document.views,
                degraded=True,
                reason=outcome.reason,
            )
        return ResolvedContent(item=document.item, views=document.views)

    async def sources(self, kind: str, external_id: str) -> StreamListing:
        """Active stream sources, searching YouTube when a title has none."""

        external_id = _check_request(kind, external_id)
        if kind == "radio":
            station = await self._station(external_id, click=False)
            return StreamListing(
                content_id=external_id,
                content_type="radio",
                sources=station.to_item().active_sources,
            )
        media_kind: MediaKind = kind  # type: ignore[assignment]
        outcome, sources = await self._playable(media_kind, external_id)
        return StreamListing(
            content_id=external_id,
            content_type=media_kind,
            sources=sources,
            degraded=isinstance(outcome, Degraded),
            reason=outcome.reason if isinstance(outcome, Degraded) else None,
        )

    async def player(
        self,
        kind: str,
        external_id: str,
        *,
        video_id: str | None = None,
        autoplay: bool = False,
        viewer_id: str | None = None,
    ) -> PlayerData:
        """Describe what the frontend player should load for a title or station."""

        external_id = _check_request(kind, external_id)
        if kind == "radio":
            station = await self._station(external_id)
            return PlayerData(
                type="audio",
                url=station.stream_url,
                title=station.name,
                poster=station.favicon,
                metadata={
                    "genres": station.tags[:3],
                    "country": station.country,
                    "bitrate": station.bitrate,
                    "codec": station.codec,
                },
            )

        media_kind: MediaKind = kind  # type: ignore[assignment]
        outcome, sources = await self._playable(media_kind, external_id)
        item = outcome.value.item
        if not sources:
            raise NotFoundError("stream source", external_id)
        if video_id:
            selected = next(
                (source for source in sources if _source_video_id(source) == video_id),
                None,
            )
            if selected is None:
                raise NotFoundError("stream source", video_id)
        else:
            selected = sources[0]

        url = selected.url
        poster = item.poster.url
        if selected.provider == "video-platform":
            selected_id = _source_video_id(selected)
            if selected_id:
                url = embed_url(selected_id, autoplay=autoplay, controls=True, subtitles=True)
                poster = poster or thumbnail_url(selected_id)

        self._count_view(media_kind, external_id)
        if viewer_id:
            self._record_history(viewer_id, item)
        return PlayerData(
            type="video",
            url=url,
            title=item.title,
            poster=poster,
            backdrop=item.backdrop.url,
            duration=item.runtime,
            subtitles=selected.subtitles,
            metadata={
                "year": item.year,
                "rating": item.rating,
                "genres": item.genres,
                "overview": item.overview,
            },
            degraded=isinstance(outcome, Degraded),
        )

    async def record_progress(
        self,
        viewer_id: str,
        kind: str,
        external_id: str,
        progress: float,
        duration: int | None = None,
    ) -> WatchHistoryEntry | None:
        """Store playback progress in the viewer's history.

        Returns ``None`` when nothing was recorded: radio has no progress, and a
        title never resolved before has no stored document to describe it.
        """

        external_id = _check_request(kind, external_id)
        if not 0 <= progress <= 100:
            raise ValidationError("Progress must be between 0 and 100")
        if kind == "radio" or self._user_store is None:
            return None

        profile = await self._user_store.find_user(viewer_id)
        existing = None
        if profile is not None:
            existing = next(
                (item for item in profile.watch_history if item.content_id == external_id),
                None,
            )
        if existing is not None:
            entry = existing.model_copy(
                update={
                    "progress": progress,
                    "duration": duration if duration is not None else existing.duration,
                    "watched_at": self._clock(),
                }
            )
        else:
            stored = await self._lookup(kind, external_id)  # type: ignore[arg-type]
            if stored is None:
                return None
            entry = WatchHistoryEntry(
                content_id=external_id,
                content_type=kind,  # type: ignore[arg-type]
                title=stored.item.title,
                poster=stored.item.poster.url,
                progress=progress,
                duration=duration,
                watched_at=self._clock(),
            )
        await self._user_store.add_to_watch_history(viewer_id, entry)
        return entry

    async def _station(self, uuid: str, *, click: bool = True) -> RadioStationRecord:
        station = await self._radio.station(uuid)
        if station is None:
            raise NotFoundError("radio station", uuid)
        if click:
            self._spawn(lambda: self._radio.click(uuid), f"click for station {uuid}")
        return station

    async def _document(
        self, kind: MediaKind, external_id: str
    ) -> Result[StoredContent]:
        stored = await self._lookup(kind, external_id)
        if stored is not None and not stored.is_expired(self._clock()):
            logger.debug("Serving stored %s %s", kind, external_id)
            return Ok(stored)
        return await self._refresh(kind, external_id, stored)

    async def _playable(
        self, kind: MediaKind, external_id: str
    ) -> tuple[Ok[StoredContent] | Degraded[StoredContent], list[StreamSource]]:
        outcome = await self._document(kind, external_id)
        if isinstance(outcome, Err):
            raise outcome.error
        document = outcome.value
        sources = document.item.active_sources
        if sources:
            return outcome, sources

        enriched = await self._enrich(kind, document.item)
        if enriched is document.item:
            return outcome, []
        if isinstance(outcome, Ok):
            await self._persist(enriched, document, expires_at=document.cache_expiry)
        return outcome, enriched.active_sources

    async def _lookup(self, kind: MediaKind, external_id: str) -> StoredContent | None:
        try:
            return await self._content_store.find_one(external_id, kind)
        except SQLAlchemyError as exc:
            logger.warning("Content store lookup for %s %s failed: %s", kind, external_id, exc)
            return None

    async def _refresh(
        self, kind: MediaKind, external_id: str, stored: StoredContent | None
    ) -> Result[StoredContent]:
        fetched = await self._fetch(kind, external_id)
        if isinstance(fetched, Ok):
            item = await self._enrich(kind, fetched.value)
            return Ok(await self._persist(item, stored))

        if stored is not None:
            reason = fetched.kind if isinstance(fetched, Err) else fetched.reason
            logger.warning(
                "Refreshing %s %s failed (%s); serving stored copy from %s",
                kind,
                external_id,
                reason,
                stored.last_updated.isoformat(),
            )
            return Degraded(stored, reason=reason)
        if isinstance(fetched, Err):
            return fetched

        # Only the adapter's stale copy is left; serve it without storing it.
        now = self._clock()
        logger.warning(
            "Refreshing %s %s failed (%s); serving stale provider copy",
            kind,
            external_id,
            fetched.reason,
        )
        return Degraded(
            StoredContent(item=fetched.value, cache_expiry=now, last_updated=now),
            reason=fetched.reason,
        )

    async def _fetch(self, kind: MediaKind, external_id: str) -> Result[NormalizedItem]:
        try:
            lookup = await self._tmdb.details_lookup(kind, external_id)
        except MediaHubError as exc:
            return Err(exc)
        if lookup.is_fresh:
            return Ok(lookup.value)
        error = lookup.error
        reason = error.kind if isinstance(error, MediaHubError) else "upstream-error"
        return Degraded(lookup.value, reason=reason)

    async def _enrich(self, kind: MediaKind, item: NormalizedItem) -> NormalizedItem:
        """Attach YouTube trailers when the metadata provider supplied none."""

        if item.trailers:
            return item
        try:
            if kind == "movie":
                trailers = await self._youtube.search_trailer(item.title, item.year)
            else:
                trailers = await self._youtube.search_trailer(item.title)
        except MediaHubError as exc:
            logger.warning(
                "Trailer search for %s %s failed: %s", kind, item.external_id, exc.kind
            )
            return item
        if not trailers:
            return item
        return item.with_sources(trailers)

    async def _persist(
        self,
        item: NormalizedItem,
        stored: StoredContent | None,
        *,
        expires_at: datetime | None = None,
    ) -> StoredContent:
        now = self._clock()
        expires_at = expires_at or now + self._content_ttl
        try:
            return await self._content_store.upsert(item, expires_at)
        except SQLAlchemyError as exc:
            logger.warning(
                "Persisting %s %s failed: %s", item.media_kind, item.external_id, exc
            )
            return StoredContent(
                item=item,
                views=stored.views if stored else 0,
                cache_expiry=expires_at,
                last_updated=now,
            )

    def _count_view(self, kind: MediaKind, external_id: str) -> None:
        self._spawn(
            lambda: self._content_store.increment_views(external_id, kind),
            f"view count for {kind} {external_id}",
        )

    def _record_history(self, viewer_id: str, item: NormalizedItem) -> None:
        if self._user_store is None:
            return
        user_store = self._user_store
        entry = WatchHistoryEntry(
            content_id=item.external_id,
            content_type=item.media_kind,
            title=item.title,
            poster=item.poster.url,
        )
        self._spawn(
            lambda: user_store.add_to_watch_history(viewer_id, entry),
            f"watch history for user {viewer_id}",
        )

    def _spawn(self, factory: Callable[[], Awaitable[object]], label: str) -> None:
        async def _runner() -> None:
            try:
                await factory()
            except Exception as exc:
                logger.warning("Background task (%s) failed: %s", label, exc)

        task = asyncio.create_task(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for scheduled side effects to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def stop(self, timeout: float = 5.0) -> None:
        """Drain side effects, cancelling any still running after ``timeout``."""

        try:
            await asyncio.wait_for(self.drain(), timeout)
        except asyncio.TimeoutError:
            pending = list(self._background)
            logger.warning("Cancelling %d unfinished background tasks", len(pending))
            for task in pending:
                task.cancel()
            for task in pending:
                with suppress(asyncio.CancelledError):
                    await task
        self._background.clear()
