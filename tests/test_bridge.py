"""Tests for the persistence bridge."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError

from artrelay.core.bridge import (
    CacheArtwork,
    CacheFavorite,
    GetCacheInfo,
    GetCachedArtworks,
    MessageBridge,
    PersistenceWorker,
    default_reply,
    parse_message,
)
from artrelay.storage.tiered_cache import Partition, ResultSource, StrategyResult, StrategyStatus, TieredCacheManager

API_BASE = "https://collectionapi.metmuseum.org/public/collection/v1"
IMAGE_URL = "https://images.metmuseum.org/CRDImages/ep/original/DT1567.jpg"


class TestMessages:
    """Tests for message parsing."""

    def test_parse_json(self) -> None:
        message = parse_message(
            json.dumps({"type": "CACHE_ARTWORK", "objectID": 435809, "imageUrl": IMAGE_URL})
        )

        assert isinstance(message, CacheArtwork)
        assert message.object_id == 435809
        assert message.image_url == IMAGE_URL
        assert message.artwork_data is None

    def test_parse_dict(self) -> None:
        assert isinstance(parse_message({"type": "GET_CACHE_INFO"}), GetCacheInfo)
        assert isinstance(parse_message({"type": "GET_CACHED_ARTWORKS"}), GetCachedArtworks)

    def test_unknown_type(self) -> None:
        with pytest.raises(ValidationError):
            parse_message({"type": "DELETE_EVERYTHING"})

    def test_invalid_object_id(self) -> None:
        with pytest.raises(ValueError):
            parse_message({"type": "CACHE_FAVORITE", "objectID": 0})

    def test_default_replies(self) -> None:
        assert default_reply(GetCachedArtworks()) == []
        assert default_reply(GetCacheInfo())["totalCached"] == 0
        assert default_reply(CacheFavorite(objectID=1)) == {"ok": False}


class TestMessageBridge:
    """Tests for the request/reply side."""

    @pytest.mark.asyncio
    async def test_no_worker_returns_default(self) -> None:
        bridge = MessageBridge()

        assert await bridge.get_cached_artworks() == []
        assert await bridge.cache_favorite(1, IMAGE_URL) == {"ok": False}

    @pytest.mark.asyncio
    async def test_timeout_returns_default(self) -> None:
        """Test that an unanswered request resolves to the default reply."""
        bridge = MessageBridge(reply_timeout=0.05)
        bridge.attach()

        info = await bridge.get_cache_info()

        assert info == default_reply(GetCacheInfo())


class TestPersistenceWorker:
    """Tests for the background side."""

    @pytest.fixture
    def cache(self, temp_db) -> TieredCacheManager:
        return TieredCacheManager(db=temp_db)

    @pytest.mark.asyncio
    async def test_cache_artwork_then_list(self, cache) -> None:
        """Test that a cached artwork is listed and counted."""
        await cache.open()
        bridge = MessageBridge()
        worker = PersistenceWorker(bridge, cache, api_base_url=API_BASE)
        await worker.start()
        try:
            reply = await bridge.cache_artwork(
                435809, artwork_data={"objectID": 435809, "title": "Sunflowers"}
            )
            artworks = await bridge.get_cached_artworks()
            info = await bridge.get_cache_info()
        finally:
            await worker.stop()

        assert reply == {"ok": True, "stored": True, "imageCached": False}
        assert artworks == [{"objectID": 435809, "title": "Sunflowers"}]
        assert info["cachedArtworks"] == 1
        assert (await cache.get(Partition.API, f"{API_BASE}/objects/435809")) is not None
        assert not bridge.has_worker

    @pytest.mark.asyncio
    async def test_cache_favorite_fetches_image(self, cache) -> None:
        await cache.open()
        fetched = []

        async def media_fetcher(url: str) -> StrategyResult:
            fetched.append(url)
            await cache.put(Partition.MEDIA, url, b"img")
            return StrategyResult(StrategyStatus.OK, source=ResultSource.NETWORK, persisted=True)

        bridge = MessageBridge()
        worker = PersistenceWorker(bridge, cache, API_BASE, media_fetcher=media_fetcher)
        await worker.start()
        try:
            first = await bridge.cache_favorite(435809, IMAGE_URL)
            second = await bridge.cache_favorite(435809, IMAGE_URL)
        finally:
            await worker.stop()

        assert first == {"ok": True, "imageCached": True}
        assert second == {"ok": True, "imageCached": True}
        assert fetched == [IMAGE_URL]

    @pytest.mark.asyncio
    async def test_cache_favorite_without_image(self, cache) -> None:
        await cache.open()
        worker = PersistenceWorker(MessageBridge(), cache, API_BASE)

        assert await worker.handle(CacheFavorite(objectID=1)) == {"ok": True, "imageCached": False}

    @pytest.mark.asyncio
    async def test_handler_failure_yields_default(self) -> None:
        """Test that a failing handler answers with the default and keeps running."""
        cache = MagicMock()
        cache.cached_artworks = AsyncMock(side_effect=RuntimeError("disk gone"))
        cache.cache_info = AsyncMock(return_value={"totalCached": 3})
        bridge = MessageBridge()
        worker = PersistenceWorker(bridge, cache, API_BASE)
        await worker.start()
        try:
            artworks = await bridge.get_cached_artworks()
            info = await bridge.get_cache_info()
            assert worker.running
        finally:
            await worker.stop()

        assert artworks == []
        assert info == {"totalCached": 3}

    @pytest.mark.asyncio
    async def test_raw_json_request(self, cache) -> None:
        await cache.open()
        bridge = MessageBridge()
        worker = PersistenceWorker(bridge, cache, API_BASE)
        await worker.start()
        try:
            reply = await bridge.request('{"type": "GET_CACHE_INFO"}')
        finally:
            await worker.stop()

        assert reply["maxImages"] == 50
