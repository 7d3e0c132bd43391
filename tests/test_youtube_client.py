"""Tests for the YouTube trailer adapter."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.cache import TTLCache
from app.errors import ConfigurationError, UpstreamError
from app.services.youtube import (
    YouTubeClient,
    embed_url,
    extract_video_id,
    transform_video,
)


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


def hit(video_id: str, title: str) -> dict[str, object]:
    return {
        "id": {"kind": "youtube#video", "videoId": video_id},
        "snippet": {"title": title, "publishedAt": "2021-07-22T16:00:00Z"},
    }


def build_client(handler, api_key: str | None = "yt-key") -> YouTubeClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://youtube.test/youtube/v3",
    )
    return YouTubeClient(http_client, TTLCache(300), api_key=api_key)


def test_embed_url_parameters() -> None:
    url = embed_url("abc123", autoplay=True, subtitles=True)
    parsed = urlparse(url)
    params = {key: values[0] for key, values in parse_qs(parsed.query).items()}

    assert parsed.path == "/embed/abc123"
    assert params == {
        "autoplay": "1",
        "controls": "1",
        "rel": "0",
        "modestbranding": "1",
        "fs": "1",
        "cc_load_policy": "1",
        "iv_load_policy": "3",
    }


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?t=10", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/embed/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://vimeo.com/12345", None),
        ("", None),
    ],
)
def test_extract_video_id(url: str, expected: str | None) -> None:
    assert extract_video_id(url) == expected


def test_transform_video_builds_trailer_source() -> None:
    source = transform_video(hit("vid1", "Dune Official Trailer"))

    assert source.provider == "video-platform"
    assert source.purpose == "trailer"
    assert source.type == "embed"
    assert source.video_id == "vid1"
    assert source.title == "Dune Official Trailer"


def test_transform_video_rejects_hits_without_video_id() -> None:
    with pytest.raises(UpstreamError):
        transform_video({"id": {"kind": "youtube#channel"}, "snippet": {"title": "x"}})


@pytest.mark.anyio("asyncio")
async def test_search_trailer_prefers_trailer_titles() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(
            200,
            json={
                "items": [
                    hit("a", "Dune review"),
                    hit("b", "Dune Official Trailer"),
                    hit("c", "Dune - Trailer 2"),
                    hit("d", "Dune behind the scenes"),
                ]
            },
        )

    client = build_client(handler)
    trailers = await client.search_trailer("Dune", 2021)

    params = captured[0].url.params
    assert params["q"] == "Dune 2021 official trailer"
    assert params["maxResults"] == "5"
    assert params["key"] == "yt-key"
    assert [source.video_id for source in trailers] == ["b", "c"]


@pytest.mark.anyio("asyncio")
async def test_search_trailer_falls_back_to_all_hits_capped_at_three() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["q"] == "Severance season 2 official trailer"
        return httpx.Response(
            200, json={"items": [hit(str(index), f"Clip {index}") for index in range(5)]}
        )

    client = build_client(handler)
    trailers = await client.search_trailer("Severance", season=2)

    assert [source.video_id for source in trailers] == ["0", "1", "2"]


@pytest.mark.anyio("asyncio")
async def test_missing_key_is_a_configuration_error() -> None:
    client = build_client(lambda request: httpx.Response(200, json={}), api_key=None)

    with pytest.raises(ConfigurationError):
        await client.search_trailer("Dune")


@pytest.mark.anyio("asyncio")
async def test_is_embeddable_checks_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        video_id = request.url.params["id"]
        status = {"embeddable": True, "privacyStatus": "public"}
        if video_id == "private":
            status = {"embeddable": True, "privacyStatus": "private"}
        if video_id == "missing":
            return httpx.Response(200, json={"items": []})
        return httpx.Response(200, json={"items": [{"id": video_id, "status": status}]})

    client = build_client(handler)

    assert await client.is_embeddable("public") is True
    assert await client.is_embeddable("private") is False
    assert await client.is_embeddable("missing") is False
