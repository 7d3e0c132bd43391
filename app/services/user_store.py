"""Per-user personalization state: history, favorites, watchlist, ratings and lists."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4
from weakref import WeakValueDictionary

from pydantic import ValidationError as PayloadError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db_models import UserRecord
from ..errors import NotFoundError, ValidationError
from ..models import (
    CustomList,
    LibraryEntry,
    RatingEntry,
    UserProfile,
    WatchHistoryEntry,
)

logger = logging.getLogger(__name__)

MAX_WATCH_HISTORY = 100

_COLLECTIONS = ("watch_history", "favorites", "watchlist", "ratings", "lists")


def _profile_from_record(record: UserRecord) -> UserProfile:
    return UserProfile.model_validate(
        {
            "id": record.id,
            "username": record.username,
            **{name: getattr(record, name) or [] for name in _COLLECTIONS},
        }
    )


def _write_profile(record: UserRecord, profile: UserProfile) -> None:
    data = profile.model_dump(mode="json")
    record.username = profile.username
    for name in _COLLECTIONS:
        setattr(record, name, data[name])
    record.updated_at = datetime.utcnow()


def _find_list(profile: UserProfile, list_id: str) -> CustomList:
    for custom_list in profile.lists:
        if custom_list.id == list_id:
            return custom_list
    raise NotFoundError("list", list_id)


def _ensure_unique_name(profile: UserProfile, name: str, *, exclude: str | None = None) -> None:
    lowered = name.lower()
    for custom_list in profile.lists:
        if custom_list.id != exclude and custom_list.name.lower() == lowered:
            raise ValidationError(
                "A list with this name already exists", details={"name": name}
            )


class UserStore:
    """Async SQLAlchemy-backed store for :class:`UserProfile` documents.

    Every mutator loads the profile, applies the change and writes it back in a
    single session, creating the user on first use.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()

    async def find_user(self, user_id: str) -> UserProfile | None:
        async with self._session_factory() as session:
            record = await session.get(UserRecord, user_id)
            if record is None:
                return None
            return _profile_from_record(record)

    async def save_user(self, profile: UserProfile) -> UserProfile:
        def change(current: UserProfile) -> None:
            for name in ("username", *_COLLECTIONS):
                setattr(current, name, getattr(profile, name))

        return await self._mutate(profile.id, change)

    async def get_or_create(self, user_id: str, username: str | None = None) -> UserProfile:
        profile = await self.find_user(user_id)
        if profile is not None:
            return profile
        logger.info("Creating user profile %s", user_id)
        return await self.save_user(UserProfile(id=user_id, username=username))

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def _mutate(
        self, user_id: str, change: Callable[[UserProfile], Any]
    ) -> UserProfile:
        if not user_id or not user_id.strip():
            raise ValidationError("User id must not be empty")
        async with self._lock_for(user_id):
            try:
                return await self._apply(user_id, change)
            except IntegrityError:
                # Another writer inserted the user first; the retry loads its row.
                logger.info("Retrying write for user %s after a concurrent insert", user_id)
                return await self._apply(user_id, change)

    async def _apply(
        self, user_id: str, change: Callable[[UserProfile], Any]
    ) -> UserProfile:
        async with self._session_factory() as session:
            record = await session.get(UserRecord, user_id)
            if record is None:
                record = UserRecord(id=user_id, created_at=datetime.utcnow())
                session.add(record)
                profile = UserProfile(id=user_id)
            else:
                profile = _profile_from_record(record)
            try:
                change(profile)
            except PayloadError as exc:
                raise ValidationError(
                    "Invalid user data", details={"errors": exc.error_count()}
                ) from exc
            _write_profile(record, profile)
            await session.commit()
        return profile

    async def add_to_watch_history(
        self, user_id: str, entry: WatchHistoryEntry
    ) -> UserProfile:
        """Move ``entry`` to the front of the history, dropping older duplicates."""

        def change(profile: UserProfile) -> None:
            history = [
                item for item in profile.watch_history if item.content_id != entry.content_id
            ]
            profile.watch_history = [entry, *history][:MAX_WATCH_HISTORY]

        return await self._mutate(user_id, change)

    async def add_to_favorites(self, user_id: str, entry: LibraryEntry) -> UserProfile:
        def change(profile: UserProfile) -> None:
            if not any(item.content_id == entry.content_id for item in profile.favorites):
                profile.favorites.append(entry)

        return await self._mutate(user_id, change)

    async def remove_from_favorites(self, user_id: str, content_id: str) -> UserProfile:
        def change(profile: UserProfile) -> None:
            profile.favorites = [
                item for item in profile.favorites if item.content_id != content_id
            ]

        return await self._mutate(user_id, change)

    async def add_to_watchlist(self, user_id: str, entry: LibraryEntry) -> UserProfile:
        def change(profile: UserProfile) -> None:
            if not any(item.content_id == entry.content_id for item in profile.watchlist):
                profile.watchlist.append(entry)

        return await self._mutate(user_id, change)

    async def remove_from_watchlist(self, user_id: str, content_id: str) -> UserProfile:
        def change(profile: UserProfile) -> None:
            profile.watchlist = [
                item for item in profile.watchlist if item.content_id != content_id
            ]

        return await self._mutate(user_id, change)

    async def add_rating(self, user_id: str, entry: RatingEntry) -> UserProfile:
        """Record a rating, replacing any earlier rating of the same content."""

        def change(profile: UserProfile) -> None:
            profile.ratings = [
                item for item in profile.ratings if item.content_id != entry.content_id
            ]
            profile.ratings.append(entry)

        return await self._mutate(user_id, change)

    async def remove_rating(self, user_id: str, content_id: str) -> UserProfile:
        def change(profile: UserProfile) -> None:
            profile.ratings = [
                item for item in profile.ratings if item.content_id != content_id
            ]

        return await self._mutate(user_id, change)

    async def get_rating(self, user_id: str, content_id: str) -> float | None:
        profile = await self.find_user(user_id)
        if profile is None:
            return None
        for item in profile.ratings:
            if item.content_id == content_id:
                return item.rating
        return None

    async def create_list(
        self,
        user_id: str,
        name: str,
        *,
        description: str | None = None,
        is_public: bool = False,
    ) -> CustomList:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("List name must not be empty")
        created: list[CustomList] = []

        def change(profile: UserProfile) -> None:
            _ensure_unique_name(profile, cleaned)
            custom_list = CustomList(
                id=uuid4().hex,
                name=cleaned,
                description=description,
                is_public=is_public,
            )
            profile.lists.append(custom_list)
            created.append(custom_list)

        await self._mutate(user_id, change)
        return created[-1]

    async def update_list(
        self,
        user_id: str,
        list_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        is_public: bool | None = None,
    ) -> CustomList:
        updated: list[CustomList] = []

        def change(profile: UserProfile) -> None:
            custom_list = _find_list(profile, list_id)
            values: dict[str, Any] = {"updated_at": datetime.utcnow()}
            if name is not None:
                cleaned = name.strip()
                if not cleaned:
                    raise ValidationError("List name must not be empty")
                _ensure_unique_name(profile, cleaned, exclude=list_id)
                values["name"] = cleaned
            if description is not None:
                values["description"] = description
            if is_public is not None:
                values["is_public"] = is_public
            replacement = CustomList.model_validate(
                {**custom_list.model_dump(), **values}
            )
            profile.lists = [
                replacement if item.id == list_id else item for item in profile.lists
            ]
            updated.append(replacement)

        await self._mutate(user_id, change)
        return updated[-1]

    async def delete_list(self, user_id: str, list_id: str) -> UserProfile:
        def change(profile: UserProfile) -> None:
            _find_list(profile, list_id)
            profile.lists = [item for item in profile.lists if item.id != list_id]

        return await self._mutate(user_id, change)

    async def add_to_list(
        self, user_id: str, list_id: str, entry: LibraryEntry
    ) -> CustomList:
        updated: list[CustomList] = []

        def change(profile: UserProfile) -> None:
            custom_list = _find_list(profile, list_id)
            if any(item.content_id == entry.content_id for item in custom_list.items):
                raise ValidationError(
                    "Content is already in this list",
                    details={"contentId": entry.content_id},
                )
            custom_list.items.append(entry)
            custom_list.updated_at = datetime.utcnow()
            updated.append(custom_list)

        await self._mutate(user_id, change)
        return updated[-1]

    async def remove_from_list(
        self, user_id: str, list_id: str, content_id: str
    ) -> CustomList:
        updated: list[CustomList] = []

        def change(profile: UserProfile) -> None:
            custom_list = _find_list(profile, list_id)
            custom_list.items = [
                item for item in custom_list.items if item.content_id != content_id
            ]
            custom_list.updated_at = datetime.utcnow()
            updated.append(custom_list)

        await self._mutate(user_id, change)
        return updated[-1]

    async def get_stats(self, user_id: str) -> dict[str, Any]:
        profile = await self.find_user(user_id)
        if profile is None:
            raise NotFoundError("user", user_id)
        ratings = [item.rating for item in profile.ratings]
        average = round(sum(ratings) / len(ratings), 1) if ratings else 0.0
        watch_time = sum(
            (item.duration or 0) * item.progress / 100 for item in profile.watch_history
        )
        return {
            "watchHistoryCount": len(profile.watch_history),
            "favoritesCount": len(profile.favorites),
            "watchlistCount": len(profile.watchlist),
            "ratingsCount": len(profile.ratings),
            "listsCount": len(profile.lists),
            "averageRating": average,
            "totalWatchTime": watch_time,
        }
