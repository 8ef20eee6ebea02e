"""Client for the public collection API.

Wraps the upstream endpoints (``/departments``, ``/objects``,
``/objects/{id}``, ``/search``) on top of ``FetchEngine`` and adds the
fallbacks a browsing client needs: cached copies and favorites when the
network cannot deliver.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from artrelay.core.data_models import ArtworkRecord
from artrelay.core.errors import FetchError, RequestSuperseded
from artrelay.core.http_client import FetchEngine
from artrelay.storage.tiered_cache import Partition

# Objects known to have public-domain images, used when the listing fails
KNOWN_OBJECT_IDS: Tuple[int, ...] = (
    435809,
    11737,
    436944,
    436964,
    436965,
    438144,
    438821,
    437386,
    435888,
    437394,
)

MAX_SEARCH_RESULTS = 500
MAX_RANDOM_ATTEMPTS = 5


def build_search_query(
    query: Optional[str] = None,
    department_id: Optional[int] = None,
    date_begin: Optional[int] = None,
    date_end: Optional[int] = None,
    medium: Optional[str] = None,
    geo_location: Optional[str] = None,
    title: bool = False,
    artist_or_culture: bool = False,
    is_highlight: bool = False,
    is_public_domain: Optional[bool] = None,
    has_images: bool = True,
) -> str:
    """Relative ``search?...`` resource for the given filters.

    The date range is only sent when both ends are given.
    """
    params: List[Tuple[str, Any]] = [("q", query or "*")]
    if has_images:
        params.append(("hasImages", "true"))
    if department_id:
        params.append(("departmentIds", int(department_id)))
    if date_begin is not None and date_end is not None:
        params.append(("dateBegin", int(date_begin)))
        params.append(("dateEnd", int(date_end)))
    if medium:
        params.append(("medium", medium))
    if geo_location:
        params.append(("geoLocation", geo_location))
    if title:
        params.append(("title", "true"))
    if artist_or_culture:
        params.append(("artistOrCulture", "true"))
    if is_highlight:
        params.append(("isHighlight", "true"))
    if is_public_domain is not None:
        params.append(("isPublicDomain", "true" if is_public_domain else "false"))
    return f"search?{urlencode(params)}"


class CollectionClient:
    """High-level access to collection objects with offline fallbacks."""

    def __init__(
        self,
        engine: FetchEngine,
        favorites=None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.engine = engine
        self.favorites = favorites
        self.rng = rng or random.Random()
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def is_online(self) -> bool:
        monitor = self.engine.monitor
        return monitor is None or monitor.is_online

    async def get_departments(self) -> List[Dict[str, Any]]:
        data = await self.engine.fetch_json("departments")
        return list((data or {}).get("departments") or [])

    async def get_object_ids(self, department_id: Optional[int] = None) -> List[int]:
        resource = "objects"
        if department_id:
            resource = f"objects?{urlencode({'departmentIds': int(department_id)})}"
        data = await self.engine.fetch_json(resource)
        return list((data or {}).get("objectIDs") or [])

    async def search(self, query: Optional[str] = None, **filters: Any) -> List[int]:
        """Object IDs matching ``query`` and ``filters``, at most 500."""
        data = await self.engine.fetch_json(build_search_query(query, **filters))
        ids = list((data or {}).get("objectIDs") or [])
        if len(ids) > MAX_SEARCH_RESULTS:
            self.logger.info(
                "Limited %d search results to %d", len(ids), MAX_SEARCH_RESULTS
            )
            ids = ids[:MAX_SEARCH_RESULTS]
        return ids

    async def _cached_object(self, object_id: int) -> Optional[Dict[str, Any]]:
        if self.engine.cache is None:
            return None
        entry = await self.engine.cache.get(
            Partition.API, self.engine.resolve(f"objects/{object_id}")
        )
        if entry is None:
            return None
        try:
            return entry.json()
        except ValueError:
            return None

    async def get_object(self, object_id: int) -> Optional[ArtworkRecord]:
        """One object, falling back to the cache and then to favorites.

        Returns None when no source has it.
        """
        data: Any = None
        try:
            data = (await self.engine.fetch(f"objects/{object_id}")).data
        except RequestSuperseded:
            raise
        except FetchError as e:
            self.logger.warning("Fetching object %d failed: %s", object_id, e)
            data = await self._cached_object(object_id)
            if data is None and self.favorites is not None:
                favorite = await self.favorites.get(object_id)
                if favorite is not None:
                    self.logger.info("Serving object %d from favorites", object_id)
                    return favorite.artwork

        if not isinstance(data, dict) or not data.get("objectID"):
            return None
        return ArtworkRecord.from_dict(data)

    async def get_cached_artworks(self) -> List[ArtworkRecord]:
        if self.engine.cache is None:
            return []
        records = []
        for data in await self.engine.cache.cached_artworks():
            try:
                records.append(ArtworkRecord.from_dict(data))
            except ValueError:
                continue
        return records

    async def random_offline_artwork(self) -> Optional[ArtworkRecord]:
        """A random cached artwork with an image, else a random favorite."""
        cached = [record for record in await self.get_cached_artworks() if record.has_image]
        if cached:
            return self.rng.choice(cached)
        if self.favorites is not None:
            favorites = await self.favorites.list_all()
            if favorites:
                return self.rng.choice(favorites).artwork
        return None

    async def get_random_artwork(self, department_id: Optional[int] = None) -> Optional[ArtworkRecord]:
        """A random artwork that has an image.

        Tries up to five random IDs.  Offline, or when nothing is found,
        a cached or favorited artwork is returned instead.
        """
        if not self.is_online:
            artwork = await self.random_offline_artwork()
            if artwork is not None:
                return artwork

        try:
            object_ids = await self.get_object_ids(department_id)
        except FetchError as e:
            self.logger.warning("Object listing failed, using known IDs: %s", e)
            object_ids = []
        if not object_ids:
            object_ids = list(KNOWN_OBJECT_IDS)

        candidates = list(object_ids)
        for attempt in range(min(MAX_RANDOM_ATTEMPTS, len(candidates))):
            object_id = candidates.pop(self.rng.randrange(len(candidates)))
            self.logger.debug("Attempt %d: trying object %d", attempt + 1, object_id)
            artwork = await self.get_object(object_id)
            if artwork is not None and artwork.has_image:
                return artwork

        self.logger.warning("No artwork with an image found, trying offline sources")
        return await self.random_offline_artwork()

    async def test_connection(self) -> bool:
        """True if the API answered over the network."""
        try:
            payload = await self.engine.fetch("departments")
        except FetchError as e:
            self.logger.error("API connection failed: %s", e)
            return False
        return not payload.from_cache
