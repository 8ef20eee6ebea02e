"""Tiered cache manager.

Three independently bounded partitions back the resilience layer:

- ``static``: application assets, served cache-first
- ``api``: collection API responses, served network-first
- ``media``: images, network-first but persisted only under a byte ceiling

Partition names carry the cache format version.  ``open()`` deletes every
partition whose name does not match the current version; there is no
migration.  Cache writes are best effort: a storage failure is logged and
never reaches the content path.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlsplit

from artrelay.core.data_models import CacheEntry, Payload
from artrelay.core.errors import FetchError, RequestSuperseded, StorageError
from artrelay.core.logging_setup import log_performance
from artrelay.storage.database import Database

logger = logging.getLogger(__name__)

DEFAULT_MEDIA_MAX_BYTES = 5 * 1024 * 1024

_API_PATH = re.compile(r"/(objects|departments|search)(/|$)")
_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".svg")
_OBJECT_PATH = re.compile(r"/objects/(\d+)$")

Fetcher = Callable[[], Awaitable[Payload]]


class Partition(Enum):
    """Cache partitions."""

    STATIC = "static"
    API = "api"
    MEDIA = "media"


class RequestClass(Enum):
    """Kinds of request, each with its own strategy and partition."""

    STATIC = "static"  # cache-first
    API = "api"  # network-first
    MEDIA = "media"  # network-first, size-capped


class StrategyStatus(Enum):
    OK = "ok"
    UNAVAILABLE = "unavailable"
    OFFLINE = "offline"


class ResultSource(Enum):
    NETWORK = "network"
    CACHE = "cache"
    NONE = "none"


@dataclass
class StrategyResult:
    """Outcome of a cache strategy.  Never raised, always returned."""

    status: StrategyStatus
    payload: Optional[Payload] = None
    source: ResultSource = ResultSource.NONE
    persisted: bool = False
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status is StrategyStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "source": self.source.value,
            "persisted": self.persisted,
            "url": self.payload.url if self.payload else None,
            "bytes": len(self.payload.content) if self.payload else 0,
            "error": str(self.error) if self.error else None,
        }


def classify_request(url: str, api_host: Optional[str] = None) -> RequestClass:
    """Pick the request class for ``url``.

    API host or an ``/objects``, ``/departments`` or ``/search`` path is an
    API request; image hosts and image extensions are media; everything
    else is static.
    """
    parts = urlsplit(url)
    if api_host and parts.netloc == api_host:
        return RequestClass.API
    if _API_PATH.search(parts.path):
        return RequestClass.API
    if parts.netloc.startswith("images.") or parts.path.lower().endswith(_IMAGE_EXTENSIONS):
        return RequestClass.MEDIA
    return RequestClass.STATIC


class TieredCacheManager:
    """Versioned, bounded, multi-partition persistent cache."""

    def __init__(
        self,
        db: Optional[Database] = None,
        db_path: str = "artrelay-cache.db",
        prefix: str = "artrelay",
        version: str = "1",
        max_items: Optional[Dict[Partition, int]] = None,
        media_max_bytes: int = DEFAULT_MEDIA_MAX_BYTES,
        refresh_batch: int = 5,
        cleanup_interval: float = 3600.0,
        api_host: Optional[str] = None,
    ) -> None:
        """Initialize the cache manager.

        Args:
            db: Database holding the cache tables (opened by ``open()`` if omitted)
            db_path: SQLite file used when ``db`` is omitted
            prefix: Partition name prefix
            version: Cache format version carried in every partition name
            max_items: Per-partition entry caps
            media_max_bytes: Largest media response that is persisted
            refresh_batch: API entries refreshed per maintenance pass
            cleanup_interval: Seconds between maintenance passes
            api_host: Upstream API host, used to classify requests
        """
        self._db = db
        self.db_path = db_path
        self.prefix = prefix
        self.version = str(version)
        self.max_items: Dict[Partition, int] = {
            Partition.STATIC: 100,
            Partition.API: 50,
            Partition.MEDIA: 50,
        }
        self.max_items.update(max_items or {})
        self.media_max_bytes = media_max_bytes
        self.refresh_batch = refresh_batch
        self.cleanup_interval = cleanup_interval
        self.api_host = api_host
        self.logger = logging.getLogger(self.__class__.__name__)
        self._opened = False
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_config(cls, config, db: Optional[Database] = None) -> "TieredCacheManager":
        base_url = config.get("api.base_url", "")
        return cls(
            db=db,
            db_path=config.get("cache.path", "artrelay-cache.db"),
            prefix=config.get("cache.prefix", "artrelay"),
            version=str(config.get("cache.version", "1")),
            max_items={
                Partition.STATIC: int(config.get("cache.max_static_items", 100)),
                Partition.API: int(config.get("cache.max_cached_artworks", 50)),
                Partition.MEDIA: int(config.get("cache.max_cached_images", 50)),
            },
            media_max_bytes=int(config.get("cache.media_max_bytes", DEFAULT_MEDIA_MAX_BYTES)),
            refresh_batch=int(config.get("cache.refresh_batch", 5)),
            cleanup_interval=float(config.get("cache.cleanup_interval", 3600.0)),
            api_host=urlsplit(base_url).netloc or None,
        )

    def partition_name(self, partition: Partition) -> str:
        return f"{self.prefix}-{partition.value}-v{self.version}"

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def db(self) -> Database:
        if self._db is None:
            raise RuntimeError("TieredCacheManager.open() has not completed")
        return self._db

    @property
    def current_partitions(self) -> List[str]:
        return [self.partition_name(partition) for partition in Partition]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> List[str]:
        """Register the current partitions and delete every stale one.

        Returns:
            Names of the partitions that were deleted
        """
        if self._db is None:
            self._db = await asyncio.to_thread(Database, self.db_path)
        for partition in Partition:
            self.db.register_partition(self.partition_name(partition), partition.value, self.version)
        purged = await self.purge_stale()
        self._opened = True
        return purged

    async def purge_stale(self) -> List[str]:
        current = set(self.current_partitions)
        purged = []
        for row in self.db.list_partitions():
            name = row["name"]
            if name in current:
                continue
            self.db.drop_partition(name)
            purged.append(name)
        if purged:
            self.logger.info("Deleted stale cache partitions: %s", ", ".join(purged))
        return purged

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def get(self, partition: Partition, key: str) -> Optional[CacheEntry]:
        try:
            entry = self.db.cache_get(self.partition_name(partition), key)
        except StorageError as e:
            self.logger.warning("Cache read failed for %s: %s", key, e)
            return None
        if entry is None:
            self._misses += 1
            self.logger.debug("Cache miss for key: %s", key)
        else:
            self._hits += 1
            self.logger.debug("Cache hit for key: %s", key)
        return entry

    async def put(
        self,
        partition: Partition,
        key: str,
        payload: bytes,
        content_type: Optional[str] = None,
    ) -> bool:
        """Store ``payload`` and trim the partition back to its cap.

        Returns:
            True if the entry was stored
        """
        try:
            evicted = self.db.cache_put(
                self.partition_name(partition),
                key,
                payload,
                content_type=content_type,
                max_items=self.max_items[partition],
            )
        except StorageError as e:
            self.logger.warning("Cache write failed for %s: %s", key, e)
            return False
        if evicted:
            self.logger.debug("Evicted %d entries from %s", evicted, partition.value)
        return True

    async def put_payload(self, partition: Partition, key: str, payload: Payload) -> bool:
        return await self.put(partition, key, payload.content, payload.content_type)

    async def delete(self, partition: Partition, key: str) -> bool:
        try:
            return self.db.cache_delete(self.partition_name(partition), key)
        except StorageError as e:
            self.logger.warning("Cache delete failed for %s: %s", key, e)
            return False

    async def keys(self, partition: Partition) -> List[str]:
        """Keys of ``partition``, oldest first."""
        return self.db.cache_keys(self.partition_name(partition))

    async def count(self, partition: Partition) -> int:
        return self.db.cache_count(self.partition_name(partition))

    async def clear(self, partition: Optional[Partition] = None) -> int:
        if partition is not None:
            return self.db.cache_clear(self.partition_name(partition))
        return sum(self.db.cache_clear(name) for name in self.current_partitions)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _from_entry(self, partition: Partition, entry: CacheEntry) -> Payload:
        return Payload.from_cache_entry(entry, parse_json=partition is Partition.API)

    async def cache_first(self, partition: Partition, key: str, fetcher: Fetcher) -> StrategyResult:
        """Serve the cached value; otherwise fetch, store and return.

        A failed fetch with nothing cached is an ``unavailable`` result.
        """
        entry = await self.get(partition, key)
        if entry is not None:
            return StrategyResult(
                StrategyStatus.OK,
                payload=self._from_entry(partition, entry),
                source=ResultSource.CACHE,
            )

        try:
            payload = await fetcher()
        except RequestSuperseded:
            raise
        except FetchError as e:
            self.logger.debug("Cache-first fetch failed for %s: %s", key, e)
            return StrategyResult(StrategyStatus.UNAVAILABLE, error=e)

        persisted = await self.put_payload(partition, key, payload)
        return StrategyResult(
            StrategyStatus.OK,
            payload=payload,
            source=ResultSource.NETWORK,
            persisted=persisted,
        )

    async def network_first(
        self,
        partition: Partition,
        key: str,
        fetcher: Fetcher,
        max_bytes: Optional[int] = None,
    ) -> StrategyResult:
        """Try the network; on failure fall back to the cache.

        With ``max_bytes`` set, responses larger than the ceiling are
        returned but not persisted.  A failed fetch with nothing cached is
        an ``offline`` result.
        """
        try:
            payload = await fetcher()
        except RequestSuperseded:
            raise
        except FetchError as e:
            entry = await self.get(partition, key)
            if entry is not None:
                self.logger.info("Network failed for %s, serving cached copy", key)
                return StrategyResult(
                    StrategyStatus.OK,
                    payload=self._from_entry(partition, entry),
                    source=ResultSource.CACHE,
                    error=e,
                )
            return StrategyResult(StrategyStatus.OFFLINE, error=e)

        persisted = False
        if max_bytes is not None and len(payload.content) > max_bytes:
            self.logger.info(
                "Not caching %s: %d bytes exceeds the %d byte limit",
                key,
                len(payload.content),
                max_bytes,
            )
        else:
            persisted = await self.put_payload(partition, key, payload)
        return StrategyResult(
            StrategyStatus.OK,
            payload=payload,
            source=ResultSource.NETWORK,
            persisted=persisted,
        )

    async def media_with_size_cap(self, key: str, fetcher: Fetcher) -> StrategyResult:
        return await self.network_first(
            Partition.MEDIA, key, fetcher, max_bytes=self.media_max_bytes
        )

    async def respond(
        self,
        key: str,
        fetcher: Fetcher,
        request_class: Optional[RequestClass] = None,
    ) -> StrategyResult:
        """Dispatch ``key`` to the strategy of its request class."""
        request_class = request_class or classify_request(key, self.api_host)
        if request_class is RequestClass.API:
            return await self.network_first(Partition.API, key, fetcher)
        if request_class is RequestClass.MEDIA:
            return await self.media_with_size_cap(key, fetcher)
        return await self.cache_first(Partition.STATIC, key, fetcher)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def cached_artworks(self) -> List[Dict[str, Any]]:
        """Artworks held in the API partition, oldest first.

        Only ``/objects/{id}`` responses that decode to an object with an
        ``objectID`` count; listings and search responses do not.
        """
        artworks = []
        entries = self.db.cache_entries(self.partition_name(Partition.API), key_like="%/objects/%")
        for entry in entries:
            if not _OBJECT_PATH.search(urlsplit(entry.key).path):
                continue
            try:
                data = entry.json()
            except ValueError:
                continue
            if isinstance(data, dict) and data.get("objectID"):
                artworks.append(data)
        return artworks

    async def cache_info(self) -> Dict[str, Any]:
        partitions = {name: self.db.cache_count(name) for name in self.current_partitions}
        cached_images = partitions[self.partition_name(Partition.MEDIA)]
        cached_artworks = len(await self.cached_artworks())
        return {
            "cachedImages": cached_images,
            "cachedArtworks": cached_artworks,
            "maxImages": self.max_items[Partition.MEDIA],
            "totalCached": cached_images + cached_artworks,
            "partitions": partitions,
        }

    @property
    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def enforce_limits(self) -> Dict[str, int]:
        """Trim every partition to its cap.

        Returns:
            Evicted entry count per partition
        """
        evicted = {}
        for partition in Partition:
            evicted[partition.value] = self.db.cache_trim(
                self.partition_name(partition), self.max_items[partition]
            )
        return evicted

    async def refresh_entries(
        self,
        refresher: Callable[[str], Awaitable[Any]],
        limit: Optional[int] = None,
    ) -> int:
        """Re-fetch up to ``limit`` API entries, oldest first.

        A refresher returning False skipped its key; it is not counted.

        Returns:
            Number of entries refreshed
        """
        limit = self.refresh_batch if limit is None else limit
        keys = (await self.keys(Partition.API))[:limit]
        refreshed = 0
        for key in keys:
            try:
                if await refresher(key) is False:
                    continue
                refreshed += 1
            except FetchError as e:
                self.logger.debug("Refresh failed for %s: %s", key, e)
        if keys:
            self.logger.info("Refreshed %d/%d cached API entries", refreshed, len(keys))
        return refreshed

    async def maintenance_pass(
        self,
        refresher: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> Dict[str, Any]:
        with log_performance("cache_maintenance", self.logger):
            evicted = await self.enforce_limits()
            refreshed = await self.refresh_entries(refresher) if refresher else 0
        return {"evicted": evicted, "refreshed": refreshed}

    async def run_maintenance(
        self,
        refresher: Optional[Callable[[str], Awaitable[Any]]] = None,
        interval: Optional[float] = None,
    ) -> None:
        """Run ``maintenance_pass`` every ``interval`` seconds until cancelled."""
        interval = self.cleanup_interval if interval is None else interval
        self.logger.info("Cache maintenance started (interval: %.0fs)", interval)
        while True:
            try:
                await self.maintenance_pass(refresher)
            except StorageError as e:
                self.logger.error("Cache maintenance failed: %s", e)
            await asyncio.sleep(interval)
