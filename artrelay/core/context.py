"""Service context.

``ServiceContext`` builds every component from one ``Config`` and owns
their lifecycle, replacing module-level globals: ``open()`` opens the
databases, purges stale cache partitions and starts the persistence
worker; ``close()`` stops background tasks and the HTTP client.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from artrelay.core.bridge import MessageBridge, PersistenceWorker
from artrelay.core.collection import CollectionClient
from artrelay.core.config import Config
from artrelay.core.connectivity import ConnectivityMonitor
from artrelay.core.errors import ThumbnailError
from artrelay.core.http_client import FetchEngine
from artrelay.core.logging_setup import PerformanceLogger
from artrelay.storage.favorites import FavoritesStore
from artrelay.storage.thumbnails import ThumbnailPipeline
from artrelay.storage.tiered_cache import TieredCacheManager


class ServiceContext:
    """All artrelay components wired together."""

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[httpx.AsyncClient] = None,
        online: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        performance_logger: Optional[PerformanceLogger] = None,
        image_loader: Optional[Callable[[str], Awaitable[bytes]]] = None,
    ) -> None:
        """
        Args:
            config: Settings (loaded from the usual sources if omitted)
            client: HTTP client shared by all network calls
            online: Initial connectivity
            sleep: Backoff sleep used by the fetch engine
            performance_logger: Receives per-fetch timings
            image_loader: Source of image bytes for thumbnails; defaults to
                the fetch engine's media strategy
        """
        self.config = config or Config()
        self.logger = logging.getLogger(self.__class__.__name__)

        self.monitor = ConnectivityMonitor(online=online)
        self.cache = TieredCacheManager.from_config(self.config)
        self.engine = FetchEngine.from_config(
            self.config,
            client=client,
            cache=self.cache,
            monitor=self.monitor,
            performance_logger=performance_logger,
            sleep=sleep,
        )
        self.bridge = MessageBridge(reply_timeout=float(self.config.get("bridge.reply_timeout", 2.0)))
        self.worker = PersistenceWorker(
            self.bridge,
            self.cache,
            api_base_url=self.engine.base_url,
            media_fetcher=self.engine.fetch_media,
        )
        self.thumbnails = ThumbnailPipeline.from_config(
            self.config, loader=image_loader or self._load_image
        )
        self.favorites = FavoritesStore.from_config(
            self.config, thumbnails=self.thumbnails, notifier=self._notify_favorite
        )
        self.collection = CollectionClient(self.engine, favorites=self.favorites)

        self.purged_partitions: List[str] = []
        self._background: List[asyncio.Task] = []
        self._opened = False

    async def _load_image(self, url: str) -> bytes:
        result = await self.engine.fetch_media(url)
        if not result.ok or result.payload is None:
            raise ThumbnailError(f"Image unavailable: {url}")
        return result.payload.content

    async def _notify_favorite(self, object_id: int, image_url: Optional[str]) -> None:
        await self.bridge.cache_favorite(object_id, image_url)

    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(
        self,
        maintenance: bool = False,
        watch_interval: Optional[float] = None,
    ) -> "ServiceContext":
        """Open storage and start the background components.

        Args:
            maintenance: Run periodic cache maintenance in the background
            watch_interval: Poll connectivity every this many seconds
        """
        if self._opened:
            return self
        purged = await self.cache.open()
        self.purged_partitions = purged
        await self.favorites.init()
        await self.worker.start()
        self.monitor.add_warmup(self.engine.warm_up)

        if maintenance:
            self._background.append(
                asyncio.create_task(self.cache.run_maintenance(self.engine.refresh_entry))
            )
        if watch_interval:
            self.monitor.start_watch(self.engine.check_online, watch_interval)

        self._opened = True
        self.logger.info(
            "Service context opened (cache v%s, %d stale partitions purged)",
            self.cache.version,
            len(purged),
        )
        return self

    async def close(self) -> None:
        for task in self._background:
            task.cancel()
        for task in self._background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background.clear()
        await self.worker.stop()
        await self.monitor.close()
        await self.engine.aclose()
        self._opened = False
        self.logger.debug("Service context closed")

    async def __aenter__(self) -> "ServiceContext":
        return await self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
