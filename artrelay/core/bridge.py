"""Request/reply bridge to the background persistence context.

The interactive side calls ``MessageBridge.request``; each message is put
on a queue together with a reply future.  ``PersistenceWorker`` consumes
the queue in its own task and resolves the future.  A caller always gets
either the real reply or the message type's default reply once the
timeout expires, so it never blocks indefinitely.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from artrelay.storage.tiered_cache import Partition, TieredCacheManager

logger = logging.getLogger(__name__)


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class GetCachedArtworks(_Message):
    """List artworks held in the API partition."""

    type: Literal["GET_CACHED_ARTWORKS"] = "GET_CACHED_ARTWORKS"


class CacheArtwork(_Message):
    """Store an artwork's data (and optionally its image) in the cache."""

    type: Literal["CACHE_ARTWORK"] = "CACHE_ARTWORK"
    object_id: int = Field(..., alias="objectID", gt=0)
    image_url: Optional[str] = Field(None, alias="imageUrl")
    artwork_data: Optional[Dict[str, Any]] = Field(None, alias="artworkData")


class GetCacheInfo(_Message):
    """Report partition sizes."""

    type: Literal["GET_CACHE_INFO"] = "GET_CACHE_INFO"


class CacheFavorite(_Message):
    """Keep a favorite's full-size image in the media partition."""

    type: Literal["CACHE_FAVORITE"] = "CACHE_FAVORITE"
    object_id: int = Field(..., alias="objectID", gt=0)
    image_url: Optional[str] = Field(None, alias="imageUrl")


BridgeMessage = Annotated[
    Union[GetCachedArtworks, CacheArtwork, GetCacheInfo, CacheFavorite],
    Field(discriminator="type"),
]

_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(BridgeMessage)


def parse_message(raw: Union[str, bytes, Dict[str, Any], BaseModel]) -> BridgeMessage:
    """Validate a JSON string or dict into a bridge message.

    Raises:
        ValueError: Unknown ``type`` or missing/invalid fields
            (``pydantic.ValidationError`` is a ``ValueError``)
    """
    if isinstance(raw, BaseModel):
        return raw
    if isinstance(raw, (str, bytes)):
        return _MESSAGE_ADAPTER.validate_json(raw)
    return _MESSAGE_ADAPTER.validate_python(raw)


def default_reply(message: BridgeMessage) -> Any:
    """Reply used when the persistence context does not answer in time."""
    if isinstance(message, GetCachedArtworks):
        return []
    if isinstance(message, GetCacheInfo):
        return {
            "cachedImages": 0,
            "cachedArtworks": 0,
            "maxImages": 0,
            "totalCached": 0,
            "partitions": {},
        }
    return {"ok": False}


class MessageBridge:
    """Interactive side of the bridge."""

    def __init__(self, reply_timeout: float = 2.0) -> None:
        self.reply_timeout = reply_timeout
        self.logger = logging.getLogger(self.__class__.__name__)
        self._queue: Optional[asyncio.Queue] = None

    @property
    def has_worker(self) -> bool:
        return self._queue is not None

    def attach(self) -> asyncio.Queue:
        """Create the queue a worker consumes."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        return self._queue

    def detach(self) -> None:
        self._queue = None

    async def request(
        self,
        message: Union[BridgeMessage, Dict[str, Any], str],
        timeout: Optional[float] = None,
    ) -> Any:
        """Send ``message`` and wait for its reply.

        Returns the default reply for the message type when no worker is
        attached or none answers within ``timeout`` (default
        ``reply_timeout``).
        """
        message = parse_message(message)
        if self._queue is None:
            self.logger.debug("No persistence worker, default reply for %s", message.type)
            return default_reply(message)

        reply: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((message, reply))
        timeout = self.reply_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(reply, timeout)
        except asyncio.TimeoutError:
            self.logger.warning("No reply to %s within %.1fs", message.type, timeout)
            return default_reply(message)

    async def get_cached_artworks(self) -> List[Dict[str, Any]]:
        return await self.request(GetCachedArtworks())

    async def get_cache_info(self) -> Dict[str, Any]:
        return await self.request(GetCacheInfo())

    async def cache_artwork(
        self,
        object_id: int,
        image_url: Optional[str] = None,
        artwork_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await self.request(
            CacheArtwork(objectID=object_id, imageUrl=image_url, artworkData=artwork_data)
        )

    async def cache_favorite(self, object_id: int, image_url: Optional[str] = None) -> Dict[str, Any]:
        return await self.request(CacheFavorite(objectID=object_id, imageUrl=image_url))


class PersistenceWorker:
    """Background side of the bridge, backed by the tiered cache."""

    def __init__(
        self,
        bridge: MessageBridge,
        cache: TieredCacheManager,
        api_base_url: str,
        media_fetcher: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> None:
        """
        Args:
            bridge: Bridge whose queue this worker consumes
            cache: Cache the messages operate on
            api_base_url: Base used to build ``/objects/{id}`` cache keys
            media_fetcher: Coroutine function storing an image URL in the
                media partition (e.g. ``FetchEngine.fetch_media``)
        """
        self.bridge = bridge
        self.cache = cache
        self.api_base_url = api_base_url.rstrip("/")
        self.media_fetcher = media_fetcher
        self.logger = logging.getLogger(self.__class__.__name__)
        self._task: Optional[asyncio.Task] = None
        self._handled = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            self.logger.warning("Persistence worker is already running")
            return
        queue = self.bridge.attach()
        self._task = asyncio.create_task(self._run(queue))
        self.logger.debug("Persistence worker started")

    async def stop(self) -> None:
        self.bridge.detach()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.logger.debug("Persistence worker stopped (handled=%d)", self._handled)

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            item: Tuple[BridgeMessage, asyncio.Future] = await queue.get()
            message, reply = item
            try:
                result = await self.handle(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Failed to handle %s: %s", message.type, e, exc_info=True)
                result = default_reply(message)
            finally:
                queue.task_done()
            self._handled += 1
            if not reply.done():
                reply.set_result(result)

    async def handle(self, message: BridgeMessage) -> Any:
        """Produce the reply for one message."""
        if isinstance(message, GetCachedArtworks):
            return await self.cache.cached_artworks()
        if isinstance(message, GetCacheInfo):
            return await self.cache.cache_info()
        if isinstance(message, CacheArtwork):
            return await self._cache_artwork(message)
        if isinstance(message, CacheFavorite):
            return await self._cache_favorite(message)
        raise ValueError(f"Unsupported message type: {message.type}")

    async def _cache_image(self, image_url: str) -> bool:
        if await self.cache.get(Partition.MEDIA, image_url) is not None:
            self.logger.debug("Image already cached: %s", image_url)
            return True
        if self.media_fetcher is None:
            return False
        result = await self.media_fetcher(image_url)
        return bool(getattr(result, "persisted", False))

    async def _cache_artwork(self, message: CacheArtwork) -> Dict[str, Any]:
        stored = False
        if message.artwork_data:
            key = f"{self.api_base_url}/objects/{message.object_id}"
            stored = await self.cache.put(
                Partition.API,
                key,
                json.dumps(message.artwork_data).encode("utf-8"),
                content_type="application/json",
            )
        image_cached = await self._cache_image(message.image_url) if message.image_url else False
        self.logger.info("Cached artwork %d", message.object_id)
        return {"ok": True, "stored": stored, "imageCached": image_cached}

    async def _cache_favorite(self, message: CacheFavorite) -> Dict[str, Any]:
        if not message.image_url:
            return {"ok": True, "imageCached": False}
        image_cached = await self._cache_image(message.image_url)
        if image_cached:
            self.logger.debug("Cached favorite image for %d", message.object_id)
        return {"ok": True, "imageCached": image_cached}
