"""Thumbnail derivation for favorites.

A job moves through ``REQUESTED -> DECODING -> RESIZING -> ENCODING ->
CACHED``; any step may end in ``FAILED``.  Decoding, resizing and encoding
run in a worker thread with Pillow and the whole job is bounded by a
timeout.  A failed job yields no thumbnail, never an exception.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from PIL import Image

from artrelay.core.errors import FetchError, ThumbnailError

ImageLoader = Callable[[str], Awaitable[bytes]]

_MIME_TYPES = {"WEBP": "image/webp", "JPEG": "image/jpeg", "PNG": "image/png"}


class ThumbnailState(Enum):
    """Steps of a thumbnail job."""

    REQUESTED = "requested"
    DECODING = "decoding"
    RESIZING = "resizing"
    ENCODING = "encoding"
    CACHED = "cached"
    FAILED = "failed"


@dataclass
class ThumbnailJob:
    """One thumbnail derivation and the states it went through."""

    object_id: int
    source_url: str
    state: ThumbnailState = ThumbnailState.REQUESTED
    result: Optional[str] = None
    error: Optional[str] = None
    history: List[ThumbnailState] = field(default_factory=lambda: [ThumbnailState.REQUESTED])

    def advance(self, state: ThumbnailState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, reason: str) -> None:
        self.error = reason
        self.advance(ThumbnailState.FAILED)


def _decode(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ThumbnailError(f"Cannot decode image: {e}") from e
    return image


def _resize(image: Image.Image, max_size: int) -> Image.Image:
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    image.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    return image


def _encode(image: Image.Image, quality: float, formats: Sequence[str]) -> Tuple[str, bytes]:
    """Encode with the first format that works."""
    last_error: Optional[Exception] = None
    for fmt in formats:
        candidate = image
        if fmt == "JPEG" and candidate.mode != "RGB":
            candidate = candidate.convert("RGB")
        buffer = io.BytesIO()
        try:
            candidate.save(buffer, format=fmt, quality=int(round(quality * 100)))
        except (OSError, KeyError, ValueError) as e:
            last_error = e
            continue
        return fmt, buffer.getvalue()
    raise ThumbnailError(f"No usable encoder among {list(formats)}: {last_error}")


def to_data_url(fmt: str, data: bytes) -> str:
    mime = _MIME_TYPES.get(fmt, "application/octet-stream")
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class ThumbnailPipeline:
    """Decode, resize and re-encode a source image into a small data URL."""

    def __init__(
        self,
        loader: Optional[ImageLoader] = None,
        max_size: int = 300,
        quality: float = 0.85,
        timeout: float = 5.0,
        formats: Sequence[str] = ("WEBP", "JPEG"),
    ) -> None:
        """
        Args:
            loader: Coroutine function returning the raw bytes of an image URL.
                Without one every job fails and favorites are stored without
                a thumbnail.
            max_size: Maximum width and height in pixels
            quality: Encoder quality in (0, 1]
            timeout: Seconds allowed for one whole job
            formats: Encoders to try, preferred first
        """
        self.loader = loader
        self.max_size = max_size
        self.quality = quality
        self.timeout = timeout
        self.formats = tuple(formats)
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(cls, config, loader: Optional[ImageLoader] = None) -> "ThumbnailPipeline":
        return cls(
            loader=loader,
            max_size=int(config.get("favorites.thumbnail_max_size", 300)),
            quality=float(config.get("favorites.thumbnail_quality", 0.85)),
            timeout=float(config.get("favorites.thumbnail_timeout", 5.0)),
        )

    async def _derive(self, job: ThumbnailJob) -> None:
        if self.loader is None:
            raise ThumbnailError("No image loader configured")
        data = await self.loader(job.source_url)
        if not data:
            raise ThumbnailError(f"Empty image body from {job.source_url}")

        job.advance(ThumbnailState.DECODING)
        image = await asyncio.to_thread(_decode, data)

        job.advance(ThumbnailState.RESIZING)
        image = await asyncio.to_thread(_resize, image, self.max_size)

        job.advance(ThumbnailState.ENCODING)
        fmt, encoded = await asyncio.to_thread(_encode, image, self.quality, self.formats)

        job.result = to_data_url(fmt, encoded)
        job.advance(ThumbnailState.CACHED)

    async def run(self, object_id: int, source_url: str) -> ThumbnailJob:
        """Run one job to ``CACHED`` or ``FAILED``."""
        job = ThumbnailJob(object_id=object_id, source_url=source_url)
        try:
            await asyncio.wait_for(self._derive(job), self.timeout)
        except asyncio.TimeoutError:
            job.fail(f"timed out after {self.timeout:.1f}s")
        except (ThumbnailError, FetchError) as e:
            job.fail(str(e))

        if job.state is ThumbnailState.FAILED:
            self.logger.warning("Thumbnail for %d failed: %s", object_id, job.error)
        else:
            self.logger.debug("Thumbnail for %d created (%d chars)", object_id, len(job.result or ""))
        return job

    async def create(self, object_id: int, source_url: str) -> Optional[str]:
        """Thumbnail data URL, or None if it could not be derived."""
        return (await self.run(object_id, source_url)).result
