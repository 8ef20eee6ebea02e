"""Durable favorites store.

Favorites live in their own SQLite file, independent of the tiered cache,
so a cache version bump never touches them.  The store holds at most
``max_favorites`` records; adding a new one at capacity evicts the oldest
by ``dateAdded`` in the same transaction.

Writes for the same object id are serialised with a per-id lock; reads
never wait on them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from artrelay.core.data_models import ArtworkRecord, FavoriteRecord
from artrelay.storage.database import Database
from artrelay.storage.thumbnails import ThumbnailPipeline

ArtworkLike = Union[ArtworkRecord, Dict[str, Any]]
Notifier = Callable[[int, Optional[str]], Awaitable[Any]]


async def _no_notify(object_id: int, image_url: Optional[str]) -> None:
    return None


class FavoritesStore:
    """User-curated artworks persisted with their thumbnails."""

    def __init__(
        self,
        db_path: str = "artrelay-favorites.db",
        max_favorites: int = 100,
        thumbnails: Optional[ThumbnailPipeline] = None,
        notifier: Optional[Notifier] = None,
        db: Optional[Database] = None,
    ) -> None:
        """
        Args:
            db_path: SQLite file for favorites and the thumbnail cache
            max_favorites: Capacity; the oldest favorite is evicted beyond it
            thumbnails: Pipeline deriving thumbnails (none are made without it)
            notifier: Called with ``(object_id, image_url)`` after each add
            db: Already-open database, mostly for tests
        """
        if max_favorites < 1:
            raise ValueError("max_favorites must be at least 1")
        self.db_path = db_path
        self.max_favorites = max_favorites
        self.thumbnails = thumbnails
        self.notifier = notifier or _no_notify
        self.logger = logging.getLogger(self.__class__.__name__)
        self._db = db
        self._init_task: Optional[asyncio.Future] = None
        self._locks: Dict[int, asyncio.Lock] = {}
        self._lock_users: Dict[int, int] = {}

    @classmethod
    def from_config(
        cls,
        config,
        thumbnails: Optional[ThumbnailPipeline] = None,
        notifier: Optional[Notifier] = None,
    ) -> "FavoritesStore":
        return cls(
            db_path=config.get("favorites.path", "artrelay-favorites.db"),
            max_favorites=int(config.get("favorites.max_favorites", 100)),
            thumbnails=thumbnails,
            notifier=notifier,
        )

    @property
    def thumbnail_cache_limit(self) -> int:
        return self.max_favorites * 2

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def init(self) -> Database:
        """Open the store once; concurrent callers share the same opening."""
        if self._db is not None:
            return self._db
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(asyncio.to_thread(Database, self.db_path))
        try:
            db = await asyncio.shield(self._init_task)
        except Exception:
            self._init_task = None
            raise
        if self._db is None:
            self._db = db
            self.logger.info("Favorites store opened at %s", self.db_path)
        return self._db

    @property
    def db(self) -> Database:
        if self._db is None:
            raise RuntimeError("FavoritesStore.init() has not completed")
        return self._db

    @asynccontextmanager
    async def _locked(self, object_id: int) -> AsyncIterator[None]:
        """Hold the write lock for ``object_id``; the lock is dropped once unused."""
        lock = self._locks.get(object_id)
        if lock is None:
            lock = self._locks[object_id] = asyncio.Lock()
        self._lock_users[object_id] = self._lock_users.get(object_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[object_id] -= 1
            if not self._lock_users[object_id]:
                del self._lock_users[object_id]
                del self._locks[object_id]

    @staticmethod
    def _coerce(artwork: ArtworkLike) -> ArtworkRecord:
        if isinstance(artwork, ArtworkRecord):
            return artwork
        return ArtworkRecord.from_dict(artwork)

    @staticmethod
    def _row_to_record(row: Dict[str, Any]) -> FavoriteRecord:
        data = json.loads(row["record"])
        data["thumbnail"] = row["thumbnail"]
        data["dateAdded"] = row["date_added"]
        return FavoriteRecord.from_dict(data)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _thumbnail_for(self, record: ArtworkRecord) -> Optional[str]:
        cached = self.db.thumbnail_get(record.object_id)
        if cached:
            self.logger.debug("Using cached thumbnail for %d", record.object_id)
            return cached
        source = record.thumbnail_source
        if not source or self.thumbnails is None:
            return None
        return await self.thumbnails.create(record.object_id, source)

    async def _write(self, record: ArtworkRecord) -> None:
        """Store ``record``; the caller holds its lock."""
        thumbnail = await self._thumbnail_for(record)
        evicted = self.db.favorite_upsert(
            record.object_id,
            json.dumps(record.to_dict()),
            datetime.now(timezone.utc).isoformat(),
            thumbnail,
            self.max_favorites,
            thumbnail_cache_limit=self.thumbnail_cache_limit,
        )
        if evicted is not None:
            self.logger.info("Favorites full, removed oldest favorite %d", evicted)
        self.logger.info("Added favorite %d", record.object_id)

    async def _notify(self, record: ArtworkRecord) -> None:
        try:
            await self.notifier(record.object_id, record.primary_image or record.thumbnail_source)
        except Exception as e:
            self.logger.warning("Favorite notification for %d failed: %s", record.object_id, e)

    async def upsert(self, artwork: ArtworkLike) -> bool:
        """Add or refresh a favorite.

        Raises:
            ValueError: If the artwork has no usable ``objectID``
            StorageError: If the record could not be saved
        """
        record = self._coerce(artwork)
        await self.init()
        async with self._locked(record.object_id):
            await self._write(record)
        await self._notify(record)
        return True

    async def remove(self, object_id: int) -> bool:
        await self.init()
        async with self._locked(object_id):
            removed = self.db.favorite_delete(object_id)
        if removed:
            self.logger.info("Removed favorite %d", object_id)
        return removed

    async def toggle(self, artwork: ArtworkLike) -> bool:
        """Remove the artwork if favorited, add it otherwise.

        Returns:
            Whether the artwork is a favorite afterwards
        """
        record = self._coerce(artwork)
        await self.init()
        async with self._locked(record.object_id):
            if self.db.favorite_exists(record.object_id):
                self.db.favorite_delete(record.object_id)
                self.logger.info("Removed favorite %d", record.object_id)
                return False
            await self._write(record)
        await self._notify(record)
        return True

    async def clear(self) -> int:
        await self.init()
        return self.db.favorite_clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, object_id: int) -> Optional[FavoriteRecord]:
        await self.init()
        row = self.db.favorite_get(object_id)
        return self._row_to_record(row) if row else None

    async def is_favorited(self, object_id: int) -> bool:
        await self.init()
        return self.db.favorite_exists(object_id)

    async def list_all(self) -> List[FavoriteRecord]:
        """All favorites, newest first."""
        await self.init()
        return [self._row_to_record(row) for row in self.db.favorite_list()]

    async def count(self) -> int:
        await self.init()
        return self.db.favorite_count()
