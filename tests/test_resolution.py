"""Tests for the content resolution pipeline."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.cache import CacheLookup, TTLCache
from app.errors import NotFoundError, UpstreamError, UpstreamTimeout, ValidationError
from app.models import (
    NormalizedItem,
    RadioStationRecord,
    StoredContent,
    StreamSource,
    UserProfile,
    WatchHistoryEntry,
)
from app.services.resolution import ContentResolutionService
from app.services.tmdb import TMDBClient

NOW = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def make_item(external_id: str = "1", title: str = "Dune", **extra: Any) -> NormalizedItem:
    return NormalizedItem(external_id=external_id, title=title, media_kind="movie", year=2021, **extra)


def trailer(video_id: str) -> StreamSource:
    return StreamSource(
        provider="video-platform",
        url=f"https://www.youtube.com/embed/{video_id}",
        purpose="trailer",
        video_id=video_id,
    )


class FakeTMDB:
    def __init__(self, item: NormalizedItem | None = None, error: Exception | None = None):
        self.item = item
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def details_lookup(self, kind: str, external_id: str) -> CacheLookup[NormalizedItem]:
        self.calls.append((kind, external_id))
        if self.error is not None:
            raise self.error
        assert self.item is not None
        return CacheLookup(value=self.item, is_fresh=True)


class FakeYouTube:
    def __init__(self, trailers: list[StreamSource] | None = None, error: Exception | None = None):
        self.trailers = trailers or []
        self.error = error
        self.calls: list[tuple[Any, ...]] = []

    async def search_trailer(self, title: str, year: int | None = None, season: int | None = None):
        self.calls.append((title, year))
        if self.error is not None:
            raise self.error
        return self.trailers


class FakeRadio:
    def __init__(self, station: RadioStationRecord | None = None):
        self._station = station
        self.clicks: list[str] = []

    async def station(self, uuid: str) -> RadioStationRecord | None:
        return self._station

    async def click(self, uuid: str) -> bool:
        self.clicks.append(uuid)
        return True


class FakeStore:
    def __init__(
        self,
        stored: StoredContent | None = None,
        *,
        read_error: Exception | None = None,
        write_error: Exception | None = None,
        views_error: Exception | None = None,
    ):
        self.stored = stored
        self.read_error = read_error
        self.write_error = write_error
        self.views_error = views_error
        self.calls: list[str] = []
        self.upserts: list[tuple[NormalizedItem, datetime]] = []
        self.view_increments = 0

    async def find_one(self, external_id: str, kind: str) -> StoredContent | None:
        self.calls.append("find_one")
        if self.read_error is not None:
            raise self.read_error
        return self.stored

    async def upsert(self, item: NormalizedItem, expires_at: datetime) -> StoredContent:
        self.calls.append("upsert")
        if self.write_error is not None:
            raise self.write_error
        self.upserts.append((item, expires_at))
        views = self.stored.views if self.stored else 0
        self.stored = StoredContent(item=item, views=views, cache_expiry=expires_at, last_updated=NOW)
        return self.stored

    async def increment_views(self, external_id: str, kind: str) -> bool:
        self.view_increments += 1
        if self.views_error is not None:
            raise self.views_error
        return True


class FakeUsers:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.history: list[tuple[str, WatchHistoryEntry]] = []
        self.profile: UserProfile | None = None

    async def find_user(self, user_id: str) -> UserProfile | None:
        return self.profile

    async def add_to_watch_history(self, user_id: str, entry: WatchHistoryEntry) -> None:
        if self.error is not None:
            raise self.error
        self.history.append((user_id, entry))


def build_service(
    *,
    tmdb: Any = None,
    youtube: FakeYouTube | None = None,
    radio: FakeRadio | None = None,
    store: FakeStore | None = None,
    users: FakeUsers | None = None,
    clock: Any = None,
) -> ContentResolutionService:
    return ContentResolutionService(
        tmdb=tmdb or FakeTMDB(make_item()),
        youtube=youtube or FakeYouTube(),  # type: ignore[arg-type]
        radio=radio or FakeRadio(),  # type: ignore[arg-type]
        content_store=store or FakeStore(),  # type: ignore[arg-type]
        user_store=users,  # type: ignore[arg-type]
        clock=clock or (lambda: NOW),
    )


def stored_copy(expiry: datetime, views: int = 4) -> StoredContent:
    return StoredContent(
        item=make_item(title="Stored Dune"),
        views=views,
        cache_expiry=expiry,
        last_updated=NOW - timedelta(days=3),
    )


@pytest.mark.anyio("asyncio")
async def test_unknown_kind_is_rejected_before_any_io() -> None:
    tmdb, store = FakeTMDB(make_item()), FakeStore()
    service = build_service(tmdb=tmdb, store=store)

    with pytest.raises(ValidationError):
        await service.resolve_content("podcast", "1")
    assert tmdb.calls == []
    assert store.calls == []


@pytest.mark.anyio("asyncio")
async def test_fresh_document_is_served_from_store() -> None:
    tmdb = FakeTMDB(make_item())
    store = FakeStore(stored_copy(NOW + timedelta(hours=1)))
    service = build_service(tmdb=tmdb, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Stored Dune"
    assert resolved.degraded is False
    assert resolved.views == 4
    assert tmdb.calls == []
    assert store.view_increments == 1


@pytest.mark.anyio("asyncio")
async def test_expired_document_is_refreshed_and_persisted() -> None:
    tmdb = FakeTMDB(make_item(title="Fresh Dune", sources=[trailer("t1")]))
    youtube = FakeYouTube([trailer("yt")])
    store = FakeStore(stored_copy(NOW - timedelta(minutes=1)))
    service = build_service(tmdb=tmdb, youtube=youtube, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Fresh Dune"
    assert youtube.calls == []
    item, expires_at = store.upserts[0]
    assert expires_at == NOW + timedelta(hours=24)
    assert [source.video_id for source in item.trailers] == ["t1"]


@pytest.mark.anyio("asyncio")
async def test_missing_trailers_are_filled_from_video_search() -> None:
    youtube = FakeYouTube([trailer("yt1"), trailer("yt2")])
    store = FakeStore()
    service = build_service(youtube=youtube, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert youtube.calls == [("Dune", 2021)]
    assert [source.video_id for source in resolved.item.trailers] == ["yt1", "yt2"]
    assert store.upserts[0][0].trailers == resolved.item.trailers


@pytest.mark.anyio("asyncio")
async def test_trailer_search_failure_is_swallowed() -> None:
    youtube = FakeYouTube(error=UpstreamTimeout("youtube"))
    service = build_service(youtube=youtube)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.trailers == []
    assert resolved.degraded is False


@pytest.mark.anyio("asyncio")
async def test_failed_refresh_falls_back_to_expired_document() -> None:
    tmdb = FakeTMDB(error=UpstreamError("tmdb", "boom", status=500))
    store = FakeStore(stored_copy(NOW - timedelta(days=2)))
    service = build_service(tmdb=tmdb, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Stored Dune"
    assert resolved.degraded is True
    assert resolved.reason == "upstream-error"
    assert store.upserts == []


@pytest.mark.anyio("asyncio")
async def test_failed_fetch_without_document_propagates() -> None:
    tmdb = FakeTMDB(error=NotFoundError("tmdb resource", "/movie/1"))
    service = build_service(tmdb=tmdb)

    with pytest.raises(NotFoundError):
        await service.resolve_content("movie", "1")


@pytest.mark.anyio("asyncio")
async def test_viewer_history_is_recorded_in_background() -> None:
    users = FakeUsers()
    service = build_service(users=users)

    await service.resolve_content("movie", "1", viewer_id="viewer-1")
    await service.stop()

    assert len(users.history) == 1
    user_id, entry = users.history[0]
    assert user_id == "viewer-1"
    assert entry.content_id == "1"
    assert entry.content_type == "movie"


@pytest.mark.anyio("asyncio")
async def test_radio_station_is_served_live_and_clicked() -> None:
    station = RadioStationRecord(uuid="s1", name="Jazz FM", stream_url="https://jazz/live", click_count=7)
    radio = FakeRadio(station)
    store = FakeStore()
    users = FakeUsers()
    service = build_service(radio=radio, store=store, users=users)

    resolved = await service.resolve_content("radio", "s1", viewer_id="viewer-1")
    await service.stop()

    assert resolved.item.media_kind == "radio"
    assert resolved.item.listeners == 7
    assert radio.clicks == ["s1"]
    assert store.calls == []
    assert users.history == []


@pytest.mark.anyio("asyncio")
async def test_unknown_radio_station_is_not_found() -> None:
    service = build_service(radio=FakeRadio(None))

    with pytest.raises(NotFoundError):
        await service.resolve_content("radio", "missing")


class MovingClock:
    """Wall clock for the service and monotonic clock for the adapter cache."""

    def __init__(self) -> None:
        self.now = NOW
        self.seconds = 0.0

    def wall(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.seconds

    def advance(self, delta: timedelta) -> None:
        self.now += delta
        self.seconds += delta.total_seconds()


def flaky_tmdb(clock: MovingClock) -> tuple[TMDBClient, list[str]]:
    """A real TMDB client whose upstream answers once and then fails."""

    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request.url.path)
        if len(requests) == 1:
            return httpx.Response(
                200, json={"id": 1, "title": "Dune", "release_date": "2021-09-15"}
            )
        return httpx.Response(503, json={"status_message": "Service unavailable"})

    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="https://tmdb.test/3"
    )
    cache = TTLCache(60, clock=clock.monotonic)
    return TMDBClient(http_client, cache, api_key="short-key"), requests


@pytest.mark.anyio("asyncio")
async def test_stale_provider_copy_is_served_degraded_and_not_restored() -> None:
    clock = MovingClock()
    tmdb, requests = flaky_tmdb(clock)
    store = FakeStore()
    service = build_service(tmdb=tmdb, store=store, clock=clock.wall)

    first = await service.resolve_content("movie", "1")
    clock.advance(timedelta(hours=25))
    second = await service.resolve_content("movie", "1")
    await service.stop()

    assert first.degraded is False
    assert second.degraded is True
    assert second.reason == "upstream-error"
    assert second.item.title == "Dune"
    assert len(store.upserts) == 1
    assert store.upserts[0][1] == NOW + timedelta(hours=24)
    assert len(requests) == 2


@pytest.mark.anyio("asyncio")
async def test_stale_provider_copy_without_stored_document_is_degraded() -> None:
    clock = MovingClock()
    tmdb, _ = flaky_tmdb(clock)
    warm = build_service(tmdb=tmdb, clock=clock.wall)
    await warm.resolve_content("movie", "1")
    await warm.stop()
    clock.advance(timedelta(hours=1))

    store = FakeStore()
    service = build_service(tmdb=tmdb, store=store, clock=clock.wall)
    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Dune"
    assert resolved.degraded is True
    assert resolved.reason == "upstream-error"
    assert store.upserts == []


@pytest.mark.anyio("asyncio")
async def test_failing_side_effects_do_not_reach_the_caller() -> None:
    store = FakeStore(views_error=OperationalError("UPDATE", {}, Exception("locked")))
    users = FakeUsers(error=RuntimeError("history unavailable"))
    service = build_service(store=store, users=users)

    resolved = await service.resolve_content("movie", "1", viewer_id="viewer-1")
    await service.stop()

    assert resolved.item.title == "Dune"
    assert store.view_increments == 1
    assert users.history == []


@pytest.mark.anyio("asyncio")
async def test_store_read_failure_is_treated_as_a_miss() -> None:
    tmdb = FakeTMDB(make_item(title="Fresh Dune"))
    store = FakeStore(read_error=OperationalError("SELECT", {}, Exception("locked")))
    service = build_service(tmdb=tmdb, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Fresh Dune"
    assert resolved.degraded is False
    assert tmdb.calls == [("movie", "1")]
    assert store.calls == ["find_one", "upsert"]


@pytest.mark.anyio("asyncio")
async def test_store_write_failure_still_serves_fresh_item() -> None:
    tmdb = FakeTMDB(make_item(title="Fresh Dune"))
    store = FakeStore(
        stored_copy(NOW - timedelta(hours=1), views=9),
        write_error=OperationalError("INSERT", {}, Exception("disk full")),
    )
    service = build_service(tmdb=tmdb, store=store)

    resolved = await service.resolve_content("movie", "1")
    await service.stop()

    assert resolved.item.title == "Fresh Dune"
    assert resolved.views == 9
    assert resolved.degraded is False
    assert store.upserts == []


class HangingStore(FakeStore):
    def __init__(self) -> None:
        super().__init__()
        self.cancelled = False

    async def increment_views(self, external_id: str, kind: str) -> bool:
        self.view_increments += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return True


@pytest.mark.anyio("asyncio")
async def test_stop_cancels_side_effects_that_outlive_the_timeout() -> None:
    store = HangingStore()
    service = build_service(store=store)

    await service.resolve_content("movie", "1")
    await service.stop(timeout=0.05)

    assert store.view_increments == 1
    assert store.cancelled is True
    await asyncio.wait_for(service.stop(timeout=0.05), 1)


@pytest.mark.anyio("asyncio")
async def test_sources_lists_active_sources_of_the_document() -> None:
    inactive = trailer("old").model_copy(update={"is_active": False})
    tmdb = FakeTMDB(make_item(sources=[trailer("t1"), inactive]))
    youtube = FakeYouTube([trailer("yt")])
    service = build_service(tmdb=tmdb, youtube=youtube)

    listing = await service.sources("movie", "1")
    await service.stop()

    assert [source.video_id for source in listing.sources] == ["t1"]
    assert listing.content_type == "movie"
    assert listing.degraded is False
    assert youtube.calls == []


@pytest.mark.anyio("asyncio")
async def test_sources_fall_back_to_video_search_and_keep_the_expiry() -> None:
    youtube = FakeYouTube([trailer("yt1")])
    store = FakeStore(stored_copy(NOW + timedelta(hours=2)))
    service = build_service(youtube=youtube, store=store)

    listing = await service.sources("movie", "1")

    assert [source.video_id for source in listing.sources] == ["yt1"]
    item, expires_at = store.upserts[0]
    assert expires_at == NOW + timedelta(hours=2)
    assert [source.video_id for source in item.sources] == ["yt1"]


@pytest.mark.anyio("asyncio")
async def test_sources_for_degraded_document_are_not_persisted() -> None:
    tmdb = FakeTMDB(error=UpstreamTimeout("tmdb"))
    youtube = FakeYouTube([trailer("yt1")])
    store = FakeStore(stored_copy(NOW - timedelta(days=1)))
    service = build_service(tmdb=tmdb, youtube=youtube, store=store)

    listing = await service.sources("movie", "1")

    assert [source.video_id for source in listing.sources] == ["yt1"]
    assert listing.degraded is True
    assert listing.reason == "upstream-timeout"
    assert store.upserts == []


@pytest.mark.anyio("asyncio")
async def test_radio_sources_are_the_live_stream() -> None:
    station = RadioStationRecord(uuid="s1", name="Jazz FM", stream_url="https://jazz/live")
    radio = FakeRadio(station)
    service = build_service(radio=radio)

    listing = await service.sources("radio", "s1")

    assert [source.url for source in listing.sources] == ["https://jazz/live"]
    assert listing.content_type == "radio"
    assert radio.clicks == []


@pytest.mark.anyio("asyncio")
async def test_player_embeds_the_requested_video() -> None:
    tmdb = FakeTMDB(make_item(sources=[trailer("t1"), trailer("t2")], runtime=155))
    store = FakeStore()
    users = FakeUsers()
    service = build_service(tmdb=tmdb, store=store, users=users)

    player = await service.player("movie", "1", video_id="t2", autoplay=True, viewer_id="v1")
    await service.stop()

    assert player.type == "video"
    assert player.url.startswith("https://www.youtube.com/embed/t2?")
    assert "autoplay=1" in player.url
    assert "cc_load_policy=1" in player.url
    assert player.poster == "https://img.youtube.com/vi/t2/maxresdefault.jpg"
    assert player.duration == 155
    assert player.metadata["year"] == 2021
    assert store.view_increments == 1
    assert [user for user, _ in users.history] == ["v1"]


@pytest.mark.anyio("asyncio")
async def test_player_defaults_to_the_first_source() -> None:
    tmdb = FakeTMDB(make_item(sources=[trailer("t1"), trailer("t2")]))
    service = build_service(tmdb=tmdb)

    player = await service.player("movie", "1")
    await service.stop()

    assert player.url.startswith("https://www.youtube.com/embed/t1?")
    assert "autoplay=0" in player.url


@pytest.mark.anyio("asyncio")
async def test_player_rejects_unknown_video_and_titles_without_sources() -> None:
    with_sources = build_service(tmdb=FakeTMDB(make_item(sources=[trailer("t1")])))
    with pytest.raises(NotFoundError):
        await with_sources.player("movie", "1", video_id="nope")

    without_sources = build_service(youtube=FakeYouTube([]))
    with pytest.raises(NotFoundError):
        await without_sources.player("movie", "1")


@pytest.mark.anyio("asyncio")
async def test_radio_player_streams_audio() -> None:
    station = RadioStationRecord(
        uuid="s1",
        name="Jazz FM",
        stream_url="https://jazz/live",
        tags=["jazz", "smooth", "blues", "soul"],
        country="Kenya",
        bitrate=128,
        codec="MP3",
    )
    radio = FakeRadio(station)
    service = build_service(radio=radio)

    player = await service.player("radio", "s1")
    await service.stop()

    assert player.type == "audio"
    assert player.url == "https://jazz/live"
    assert player.metadata == {
        "genres": ["jazz", "smooth", "blues"],
        "country": "Kenya",
        "bitrate": 128,
        "codec": "MP3",
    }
    assert radio.clicks == ["s1"]


@pytest.mark.anyio("asyncio")
async def test_progress_updates_an_existing_history_entry() -> None:
    users = FakeUsers()
    users.profile = UserProfile(
        id="v1",
        watch_history=[
            WatchHistoryEntry(
                content_id="1",
                content_type="movie",
                title="Dune",
                progress=10,
                duration=9300,
                watched_at=NOW - timedelta(days=1),
            )
        ],
    )
    store = FakeStore()
    service = build_service(store=store, users=users)

    entry = await service.record_progress("v1", "movie", "1", 55.0)

    assert entry is not None
    assert entry.progress == 55.0
    assert entry.duration == 9300
    assert entry.watched_at == NOW
    assert users.history == [("v1", entry)]
    assert store.calls == []


@pytest.mark.anyio("asyncio")
async def test_progress_for_new_title_is_described_from_the_store() -> None:
    users = FakeUsers()
    store = FakeStore(stored_copy(NOW - timedelta(days=1)))
    service = build_service(store=store, users=users)

    entry = await service.record_progress("v1", "movie", "1", 30.0, duration=5400)

    assert entry is not None
    assert entry.title == "Stored Dune"
    assert entry.progress == 30.0
    assert entry.duration == 5400
    assert users.history == [("v1", entry)]


@pytest.mark.anyio("asyncio")
async def test_progress_is_not_recorded_for_radio_or_unknown_titles() -> None:
    users = FakeUsers()
    service = build_service(store=FakeStore(), users=users)

    assert await service.record_progress("v1", "radio", "s1", 10.0) is None
    assert await service.record_progress("v1", "movie", "404", 10.0) is None
    assert users.history == []


@pytest.mark.anyio("asyncio")
async def test_progress_outside_percentage_range_is_rejected() -> None:
    service = build_service(users=FakeUsers())

    with pytest.raises(ValidationError):
        await service.record_progress("v1", "movie", "1", 150.0)
