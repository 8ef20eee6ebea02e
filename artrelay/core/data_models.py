"""Data models used throughout artrelay.

``ArtworkRecord`` is the normalised form of an upstream collection object.
``FavoriteRecord`` is the subset persisted by the favorites store, together
with its derived thumbnail.  ``CacheEntry``, ``ProxyEndpoint`` and
``Payload`` describe the resilience layer's own state.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# Upstream camelCase key -> attribute name
_ARTWORK_FIELDS = {
    "objectID": "object_id",
    "title": "title",
    "artistDisplayName": "artist_display_name",
    "artistNationality": "artist_nationality",
    "artistBeginDate": "artist_begin_date",
    "artistEndDate": "artist_end_date",
    "objectDate": "object_date",
    "objectBeginDate": "object_begin_date",
    "objectEndDate": "object_end_date",
    "department": "department",
    "medium": "medium",
    "dimensions": "dimensions",
    "creditLine": "credit_line",
    "repository": "repository",
    "GalleryNumber": "gallery_number",
    "primaryImage": "primary_image",
    "primaryImageSmall": "primary_image_small",
    "objectURL": "object_url",
    "isHighlight": "is_highlight",
    "isPublicDomain": "is_public_domain",
}


@dataclass(frozen=True)
class ArtworkRecord:
    """A collection object as returned by ``GET /objects/{id}``.

    Attributes:
        object_id: Numeric upstream identifier
        title: "Untitled" when the upstream omits it; other text fields default to ""
        primary_image: Full-size image URL, if any
        primary_image_small: Small image URL, if any
        is_public_domain: Whether the image may be reproduced freely
    """

    object_id: int
    title: str = "Untitled"
    artist_display_name: str = "Unknown Artist"
    artist_nationality: str = ""
    artist_begin_date: str = ""
    artist_end_date: str = ""
    object_date: str = ""
    object_begin_date: int = 0
    object_end_date: int = 0
    department: str = ""
    medium: str = ""
    dimensions: str = ""
    credit_line: str = ""
    repository: str = ""
    gallery_number: str = ""
    primary_image: Optional[str] = None
    primary_image_small: Optional[str] = None
    object_url: Optional[str] = None
    is_highlight: bool = False
    is_public_domain: bool = False

    @property
    def has_image(self) -> bool:
        return bool(self.primary_image or self.primary_image_small)

    @property
    def thumbnail_source(self) -> Optional[str]:
        """Image URL a thumbnail should be derived from, smallest first."""
        return self.primary_image_small or self.primary_image or None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArtworkRecord":
        """Build a record from upstream JSON.

        Raises:
            ValueError: If ``objectID`` is missing or not an integer
        """
        raw_id = data.get("objectID")
        if raw_id is None or raw_id == "":
            raise ValueError("Artwork requires an 'objectID' field")
        try:
            object_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid objectID: {raw_id!r}") from exc

        kwargs: Dict[str, Any] = {"object_id": object_id}
        for key, attr in _ARTWORK_FIELDS.items():
            if key == "objectID" or key not in data:
                continue
            value = data[key]
            if value is None or value == "":
                continue
            kwargs[attr] = value
        kwargs["is_highlight"] = bool(kwargs.get("is_highlight", False))
        kwargs["is_public_domain"] = bool(kwargs.get("is_public_domain", False))
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Serialise back to the upstream camelCase shape."""
        return {key: getattr(self, attr) for key, attr in _ARTWORK_FIELDS.items()}


@dataclass(frozen=True)
class FavoriteRecord:
    """An artwork the user chose to keep, with its derived thumbnail."""

    artwork: ArtworkRecord
    thumbnail: Optional[str] = None
    date_added: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def object_id(self) -> int:
        return self.artwork.object_id

    def to_dict(self) -> Dict[str, Any]:
        data = self.artwork.to_dict()
        data["thumbnail"] = self.thumbnail
        data["dateAdded"] = self.date_added.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FavoriteRecord":
        date_added = data.get("dateAdded")
        if isinstance(date_added, str):
            date_added = datetime.fromisoformat(date_added)
        elif date_added is None:
            date_added = datetime.now(timezone.utc)
        return cls(
            artwork=ArtworkRecord.from_dict(data),
            thumbnail=data.get("thumbnail"),
            date_added=date_added,
        )


@dataclass
class CacheEntry:
    """A stored response in one tiered-cache partition."""

    partition: str
    key: str
    payload: bytes
    stored_at: float = field(default_factory=time.time)
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)

    def json(self) -> Any:
        """Decode the payload as JSON."""
        return json.loads(self.payload.decode("utf-8"))


class AddressingMode(Enum):
    """How a relay expects the upstream URL to be encoded."""

    QUERY = "query"  # {base}?url={encoded}
    PATH = "path"  # {base}{encoded}
    DIRECT = "direct"  # no relay, upstream URL as-is


@dataclass
class ProxyEndpoint:
    """A relay endpoint and its last observed health."""

    name: str
    url: str
    mode: AddressingMode = AddressingMode.QUERY
    healthy: bool = True
    last_checked: Optional[float] = None
    response_time: Optional[float] = None

    def record_success(self, response_time: Optional[float] = None) -> None:
        if not self.healthy:
            logger.info("Proxy %s recovered", self.name)
        self.healthy = True
        self.last_checked = time.time()
        self.response_time = response_time

    def record_failure(self) -> None:
        if self.healthy:
            logger.warning("Proxy %s marked unhealthy", self.name)
        self.healthy = False
        self.last_checked = time.time()
        self.response_time = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyEndpoint":
        if not data.get("url") and data.get("mode") != AddressingMode.DIRECT.value:
            raise ValueError("Proxy endpoint requires a 'url'")
        return cls(
            name=str(data.get("name") or data.get("url") or "direct"),
            url=str(data.get("url") or ""),
            mode=AddressingMode(data.get("mode", AddressingMode.QUERY.value)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "url": self.url,
            "mode": self.mode.value,
            "healthy": self.healthy,
            "last_checked": self.last_checked,
            "response_time": self.response_time,
        }


@dataclass
class Payload:
    """The outcome of a successful logical resource request."""

    resource: str
    url: str
    content: bytes
    status_code: int = 200
    content_type: Optional[str] = None
    data: Any = None
    from_cache: bool = False
    proxy: Optional[str] = None
    attempts: int = 1

    @property
    def retries(self) -> int:
        """Attempts beyond the first one."""
        return max(self.attempts - 1, 0)

    @classmethod
    def from_cache_entry(cls, entry: CacheEntry, parse_json: bool = False) -> "Payload":
        """Wrap a stored entry; an undecodable JSON body leaves ``data`` unset."""
        data = None
        if parse_json:
            try:
                data = entry.json()
            except ValueError:
                logger.warning("Cached entry for %s is not valid JSON", entry.key)
        return cls(
            resource=entry.key,
            url=entry.key,
            content=entry.payload,
            content_type=entry.content_type,
            data=data,
            from_cache=True,
            attempts=0,
        )

    def __repr__(self) -> str:
        return (
            f"Payload(url={self.url!r}, bytes={len(self.content)}, "
            f"from_cache={self.from_cache}, proxy={self.proxy!r})"
        )
