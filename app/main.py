"""Entry point for the FastAPI-powered MediaHub backend."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import timedelta
from typing import Any

import httpx
from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .cache import TTLCache
from .config import settings
from .database import Database
from .errors import MediaHubError, NotFoundError, ValidationError
from .models import ProgressUpdate
from .services.content_store import ContentStore
from .services.discovery import DiscoveryService
from .services.radio_browser import RadioBrowserClient, RequestWindowLimiter
from .services.resolution import ContentResolutionService
from .services.search import SearchService
from .services.tmdb import TMDBClient
from .services.user_store import UserStore
from .services.youtube import YouTubeClient

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(_: FastAPI):
    exit_stack = AsyncExitStack()
    tmdb_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.tmdb_api_url),
            timeout=httpx.Timeout(settings.tmdb_timeout_seconds, connect=10.0),
        )
    )
    youtube_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.youtube_api_url),
            timeout=httpx.Timeout(settings.youtube_timeout_seconds, connect=5.0),
        )
    )
    radio_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.radio_browser_url),
            timeout=httpx.Timeout(settings.radio_browser_timeout_seconds, connect=5.0),
            follow_redirects=True,
        )
    )
    database = Database(settings.database_url)
    try:
        await database.create_all()
    except Exception:
        await database.dispose()
        await exit_stack.aclose()
        raise

    tmdb = TMDBClient(
        tmdb_http,
        TTLCache(settings.cache_ttl_seconds, name="tmdb"),
        api_key=settings.tmdb_api_key,
        image_base_url=str(settings.tmdb_image_url),
        reference_ttl=settings.reference_cache_ttl_seconds,
    )
    youtube = YouTubeClient(
        youtube_http,
        TTLCache(settings.cache_ttl_seconds, name="youtube"),
        api_key=settings.youtube_api_key,
    )
    radio = RadioBrowserClient(
        radio_http,
        TTLCache(settings.cache_ttl_seconds, name="radio-browser"),
        limiter=RequestWindowLimiter(settings.radio_rate_limit_per_minute),
        reference_ttl=settings.reference_cache_ttl_seconds,
    )
    content_store = ContentStore(database.session_factory)
    user_store = UserStore(database.session_factory)
    resolution = ContentResolutionService(
        tmdb=tmdb,
        youtube=youtube,
        radio=radio,
        content_store=content_store,
        user_store=user_store,
        content_ttl=timedelta(hours=settings.content_cache_hours),
    )

    app.state.database = database
    app.state.radio_client = radio
    app.state.content_store = content_store
    app.state.user_store = user_store
    app.state.resolution_service = resolution
    app.state.search_service = SearchService(
        tmdb=tmdb, radio=radio, max_upstream_pages=settings.search_max_upstream_pages
    )
    app.state.discovery_service = DiscoveryService(
        tmdb=tmdb, radio=radio, user_store=user_store
    )
    logger.info("%s ready", settings.app_name)

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await resolution.stop()
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Movie, TV and internet radio aggregation API",
        version="1.0.0",
        lifespan=lifespan,
    )

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    register_routes(fastapi_app)
    return fastapi_app


def _service(fastapi_app: FastAPI, name: str, expected: type) -> Any:
    service = getattr(fastapi_app.state, name, None)
    if not isinstance(service, expected):
        raise RuntimeError(f"{expected.__name__} not initialised")
    return service


def get_resolution_service(fastapi_app: FastAPI) -> ContentResolutionService:
    return _service(fastapi_app, "resolution_service", ContentResolutionService)


def get_search_service(fastapi_app: FastAPI) -> SearchService:
    return _service(fastapi_app, "search_service", SearchService)


def get_discovery_service(fastapi_app: FastAPI) -> DiscoveryService:
    return _service(fastapi_app, "discovery_service", DiscoveryService)


def get_radio_client(fastapi_app: FastAPI) -> RadioBrowserClient:
    return _service(fastapi_app, "radio_client", RadioBrowserClient)


def _ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.exception_handler(MediaHubError)
    async def mediahub_error_handler(_: Request, exc: MediaHubError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("Request failed with %s: %s", exc.error_code, exc.message)
        headers: dict[str, str] = {}
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    @fastapi_app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        _: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = ValidationError(
            "Invalid request parameters",
            details={"errors": [err.get("msg") for err in exc.errors()]},
        )
        return JSONResponse(error.to_dict(), status_code=error.status_code)

    @fastapi_app.get("/healthz")
    async def healthcheck() -> dict[str, Any]:
        store = getattr(fastapi_app.state, "content_store", None)
        if not isinstance(store, ContentStore):
            return {"status": "ok"}
        return {
            "status": "ok",
            "documents": await store.count_documents(),
            "content": await store.aggregate_by_kind(),
        }

    @fastapi_app.get("/api/search")
    async def search(
        q: str = Query(""),
        content_type: str = Query("all", alias="type"),
        page: int = Query(1),
        limit: int = Query(20),
        sort_by: str = Query("popularity", alias="sortBy"),
        year: int | None = Query(None),
        genre: str | None = Query(None),
    ) -> dict[str, Any]:
        service = get_search_service(fastapi_app)
        result = await service.search(
            q,
            kind=content_type,
            page=page,
            limit=limit,
            sort_by=sort_by,
            year=year,
            genre=genre,
        )
        payload = _ok(result.to_payload())
        if result.degraded:
            payload["degraded"] = True
            payload["degradedSources"] = result.degraded_sources
        return payload

    @fastapi_app.get("/api/search/suggestions")
    async def search_suggestions(
        q: str = Query(""), limit: int = Query(10)
    ) -> dict[str, Any]:
        service = get_search_service(fastapi_app)
        suggestions = await service.suggest(q, limit=limit)
        payload = _ok([item.to_payload() for item in suggestions.items])
        if suggestions.degraded_sources:
            payload["degraded"] = True
            payload["degradedSources"] = suggestions.degraded_sources
        return payload

    @fastapi_app.get("/api/content/homepage")
    async def homepage(
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        result = await service.homepage(viewer_id=x_user_id)
        payload = _ok(result.to_payload())
        if result.degraded_sections:
            payload["degraded"] = True
            payload["degradedSections"] = result.degraded_sections
        return payload

    @fastapi_app.get("/api/content/category/{category}")
    async def category(
        category: str,
        page: int = Query(1),
        limit: int = Query(20),
        country: str | None = Query(None),
        genre: str | None = Query(None),
        search: str | None = Query(None),
        featured: bool = Query(False),
    ) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        result = await service.list_category(
            category,
            page,
            limit,
            country=country,
            genre=genre,
            query=search,
            featured=featured,
        )
        data = result.to_payload()
        return _ok(data.pop("items"), **data)

    @fastapi_app.get("/api/content/discover/{kind}")
    async def discover(
        kind: str,
        page: int = Query(1),
        sort_by: str = Query("popularity.desc", alias="sortBy"),
        with_genres: str | None = Query(None, alias="withGenres"),
        year: int | None = Query(None),
        vote_average_gte: float | None = Query(None, alias="voteAverageGte"),
        vote_average_lte: float | None = Query(None, alias="voteAverageLte"),
        runtime_gte: int | None = Query(None, alias="withRuntimeGte"),
        runtime_lte: int | None = Query(None, alias="withRuntimeLte"),
        include_adult: bool = Query(False, alias="includeAdult"),
    ) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        result = await service.discover(
            kind,
            page,
            sort_by=sort_by,
            genres=with_genres,
            year=year,
            rating_min=vote_average_gte,
            rating_max=vote_average_lte,
            runtime_min=runtime_gte,
            runtime_max=runtime_lte,
            include_adult=include_adult,
        )
        data = result.to_payload()
        return _ok(data.pop("items"), **data)

    @fastapi_app.get("/api/content/genres/{kind}")
    async def genres(kind: str) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        return _ok([genre.to_payload() for genre in await service.genres(kind)])

    @fastapi_app.get("/api/content/tv/{tv_id}/season/{season_number}")
    async def tv_season(tv_id: str, season_number: int) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        return _ok(await service.season(tv_id, season_number))

    @fastapi_app.get("/api/content/{kind}/{external_id}/{relation}")
    async def related_content(
        kind: str, external_id: str, relation: str, page: int = Query(1)
    ) -> dict[str, Any]:
        service = get_discovery_service(fastapi_app)
        result = await service.related(kind, external_id, relation, page)
        data = result.to_payload()
        return _ok(data.pop("items"), **data)

    @fastapi_app.get("/api/content/{kind}/{external_id}")
    async def content_details(
        kind: str,
        external_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        service = get_resolution_service(fastapi_app)
        resolved = await service.resolve_content(kind, external_id, viewer_id=x_user_id)
        payload = _ok({**resolved.item.to_payload(), "views": resolved.views})
        if resolved.degraded:
            payload["degraded"] = True
            payload["reason"] = resolved.reason
        return payload

    @fastapi_app.get("/api/stream/{kind}/{external_id}/sources")
    async def stream_sources(kind: str, external_id: str) -> dict[str, Any]:
        service = get_resolution_service(fastapi_app)
        listing = await service.sources(kind, external_id)
        return _ok(listing.to_payload())

    @fastapi_app.get("/api/stream/{kind}/{external_id}/player")
    async def stream_player(
        kind: str,
        external_id: str,
        video_id: str | None = Query(None, alias="videoId"),
        autoplay: bool = Query(False),
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        service = get_resolution_service(fastapi_app)
        player = await service.player(
            kind, external_id, video_id=video_id, autoplay=autoplay, viewer_id=x_user_id
        )
        return _ok(player.to_payload())

    @fastapi_app.post("/api/stream/{kind}/{external_id}/progress")
    async def stream_progress(
        kind: str,
        external_id: str,
        update: ProgressUpdate,
        x_user_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        if not x_user_id:
            return {"success": True, "message": "Progress not saved (no viewer)"}
        service = get_resolution_service(fastapi_app)
        entry = await service.record_progress(
            x_user_id, kind, external_id, update.progress, update.duration
        )
        if entry is None:
            return {"success": True, "message": "Progress not recorded"}
        return _ok(
            {
                "progress": update.progress,
                "currentTime": update.current_time,
                "duration": entry.duration,
            },
            message="Watch progress updated",
        )

    @fastapi_app.get("/api/radio/countries")
    async def radio_countries() -> dict[str, Any]:
        radio = get_radio_client(fastapi_app)
        return _ok(await radio.countries())

    @fastapi_app.get("/api/radio/health")
    async def radio_health() -> dict[str, Any]:
        radio = get_radio_client(fastapi_app)
        return _ok(await radio.health_check())

    @fastapi_app.post("/api/radio/cache/clear")
    async def radio_clear_cache() -> dict[str, Any]:
        radio = get_radio_client(fastapi_app)
        cleared = radio.clear_cache()
        return _ok({"cleared": cleared}, message="Cache cleared successfully")

    @fastapi_app.get("/api/radio/{uuid}/stream")
    async def radio_stream(uuid: str) -> dict[str, Any]:
        radio = get_radio_client(fastapi_app)
        info = await radio.stream_info(uuid)
        if info is None:
            raise NotFoundError("radio station", uuid)
        return _ok(info)

    @fastapi_app.post("/api/radio/{uuid}/click")
    async def radio_click(uuid: str) -> dict[str, Any]:
        radio = get_radio_client(fastapi_app)
        return _ok({"recorded": await radio.click(uuid)})

    @fastapi_app.get("/api/users/{user_id}/history")
    async def user_history(user_id: str, limit: int = Query(20)) -> dict[str, Any]:
        user_store = _service(fastapi_app, "user_store", UserStore)
        if not 1 <= limit <= 100:
            raise ValidationError("Limit must be between 1 and 100")
        profile = await user_store.find_user(user_id)
        entries = profile.watch_history[:limit] if profile else []
        return _ok([entry.to_payload() for entry in entries])


app = create_app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.environment == "development",
    )
