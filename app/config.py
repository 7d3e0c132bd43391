"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="MediaHub", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=5000, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_url: HttpUrl = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_URL"
    )
    tmdb_timeout_seconds: float = Field(
        default=30.0, alias="TMDB_TIMEOUT", gt=0, le=120
    )

    youtube_api_key: str | None = Field(default=None, alias="YOUTUBE_API_KEY")
    youtube_api_url: HttpUrl = Field(
        default="https://www.googleapis.com/youtube/v3", alias="YOUTUBE_API_URL"
    )
    youtube_timeout_seconds: float = Field(
        default=10.0, alias="YOUTUBE_TIMEOUT", gt=0, le=120
    )

    radio_browser_url: HttpUrl = Field(
        default="https://de1.api.radio-browser.info", alias="RADIO_BROWSER_URL"
    )
    radio_browser_timeout_seconds: float = Field(
        default=15.0, alias="RADIO_BROWSER_TIMEOUT", gt=0, le=120
    )
    radio_rate_limit_per_minute: int = Field(
        default=100, alias="RADIO_RATE_LIMIT", ge=1, le=10_000
    )

    cache_ttl_seconds: int = Field(default=300, alias="CACHE_TTL", ge=1)
    reference_cache_ttl_seconds: int = Field(
        default=3_600, alias="REFERENCE_CACHE_TTL", ge=1
    )
    content_cache_hours: int = Field(
        default=24, alias="CONTENT_CACHE_HOURS", ge=1, le=24 * 30
    )
    search_max_upstream_pages: int = Field(
        default=5, alias="SEARCH_MAX_UPSTREAM_PAGES", ge=1, le=20
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediahub.db", alias="DATABASE_URL"
    )
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("tmdb_api_key", "youtube_api_key", mode="before")
    @classmethod
    def _blank_credentials_are_missing(cls, value: object) -> object:
        """Treat empty credential strings as unset."""

        if isinstance(value, str) and not value.strip():
            return None
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, value: object) -> str:
        level = str(value or "INFO").strip().upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError("LOG_LEVEL must be a standard logging level name")
        return level

    @property
    def allowed_origins(self) -> list[str]:
        """Return the configured CORS origins as a list."""

        origins = [part.strip().rstrip("/") for part in self.cors_origins.split(",")]
        return [origin for origin in origins if origin] or ["*"]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
