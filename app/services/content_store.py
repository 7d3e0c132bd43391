"""Persistence of normalized movie and TV documents."""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import ContentRecord
from ..errors import ConfigurationError
from ..models import MediaKind, NormalizedItem, StoredContent

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {"sqlite": sqlite_insert, "postgresql": postgresql_insert}


class ContentStore:
    """Document store keyed by ``(external_id, media_kind)``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_one(self, external_id: str, kind: MediaKind) -> StoredContent | None:
        async with self._session_factory() as session:
            stmt = select(ContentRecord).where(
                ContentRecord.external_id == external_id,
                ContentRecord.media_kind == kind,
            )
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            if record is None:
                return None
            payload = record.payload
            views = record.views or 0
            cache_expiry = record.cache_expiry
            last_updated = record.last_updated
        try:
            item = NormalizedItem.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Stored %s document %s is invalid: %s", kind, external_id, exc
            )
            return None
        return StoredContent(
            item=item,
            views=views,
            cache_expiry=cache_expiry,
            last_updated=last_updated,
        )

    async def upsert(self, item: NormalizedItem, expires_at: datetime) -> StoredContent:
        """Insert or replace the document for ``item``, keeping its view count."""

        now = datetime.utcnow()
        values = {
            "title": item.title,
            "popularity": item.popularity,
            "payload": item.model_dump(mode="json"),
            "cache_expiry": expires_at,
            "last_updated": now,
            "updated_at": now,
        }
        async with self._session_factory() as session:
            dialect = session.bind.dialect.name
            insert = _UPSERT_INSERTS.get(dialect)
            if insert is None:
                raise ConfigurationError(
                    f"Content store does not support the {dialect} dialect",
                    details={"dialect": dialect},
                )
            stmt = insert(ContentRecord).values(
                external_id=item.external_id,
                media_kind=item.media_kind,
                views=0,
                created_at=now,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ContentRecord.external_id, ContentRecord.media_kind],
                set_={name: stmt.excluded[name] for name in values},
            )
            await session.execute(stmt)
            views = await session.scalar(
                select(ContentRecord.views).where(
                    ContentRecord.external_id == item.external_id,
                    ContentRecord.media_kind == item.media_kind,
                )
            )
            await session.commit()
        logger.debug("Stored %s %s until %s", item.media_kind, item.external_id, expires_at)
        return StoredContent(
            item=item, views=views or 0, cache_expiry=expires_at, last_updated=now
        )

    async def increment_views(self, external_id: str, kind: MediaKind) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(ContentRecord)
                .where(
                    ContentRecord.external_id == external_id,
                    ContentRecord.media_kind == kind,
                )
                .values(views=ContentRecord.views + 1)
            )
            await session.commit()
        return bool(result.rowcount)

    async def count_documents(self, kind: MediaKind | None = None) -> int:
        async with self._session_factory() as session:
            stmt = select(func.count(ContentRecord.id))
            if kind is not None:
                stmt = stmt.where(ContentRecord.media_kind == kind)
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def aggregate_by_kind(self) -> dict[str, dict[str, int]]:
        """Return document counts and total views grouped by media kind."""

        async with self._session_factory() as session:
            stmt = select(
                ContentRecord.media_kind,
                func.count(ContentRecord.id),
                func.coalesce(func.sum(ContentRecord.views), 0),
            ).group_by(ContentRecord.media_kind)
            result = await session.execute(stmt)
            rows = result.all()
        return {
            kind: {"count": int(count), "views": int(views)}
            for kind, count, views in rows
        }
