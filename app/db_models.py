"""SQLAlchemy ORM models backing the persistent state."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Float, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class ContentRecord(Base):
    """Normalized movie/TV document cached from the metadata provider."""

    __tablename__ = "contents"
    __table_args__ = (
        UniqueConstraint("external_id", "media_kind", name="uq_content_kind"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(64), index=True)
    media_kind: Mapped[str] = mapped_column(String(16), index=True)
    title: Mapped[str] = mapped_column(String(255))
    popularity: Mapped[float] = mapped_column(Float, default=0.0)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON)
    views: Mapped[int] = mapped_column(Integer, default=0)
    cache_expiry: Mapped[datetime] = mapped_column(DateTime)
    last_updated: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )


class UserRecord(Base):
    """Per-user personalization collections stored as JSON documents."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str | None] = mapped_column(String(30), nullable=True)
    watch_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    favorites: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    watchlist: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    ratings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    lists: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
