"""Exception hierarchy for artrelay.

Every failure the core reports to callers is an ``ArtRelayError``.  Fetch
failures share the ``FetchError`` base so a caller can treat them as one
"fetch failed" signal and move on to its cache or favorites fallback.
Low-level ``httpx`` and ``sqlite3`` exceptions are translated at the
component boundary and never escape.
"""

from __future__ import annotations

from typing import Optional


class ArtRelayError(Exception):
    """Base class for all artrelay errors."""


class FetchError(ArtRelayError):
    """A logical resource request could not be satisfied."""

    def __init__(self, resource: str, message: Optional[str] = None) -> None:
        self.resource = resource
        super().__init__(message or f"Fetch failed for {resource}")


class NetworkError(FetchError):
    """Transport-level failure (connection refused, reset, DNS...)."""


class FetchTimeoutError(NetworkError):
    """A single attempt did not complete within its timeout."""

    def __init__(self, resource: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(resource, f"Request for {resource} timed out after {timeout:.1f}s")


class OfflineError(NetworkError):
    """Network was skipped or abandoned because the client is offline."""

    def __init__(self, resource: str) -> None:
        super().__init__(resource, f"Offline: no network attempt made for {resource}")


class RequestSuperseded(FetchError):
    """A newer request for the same resource aborted this one."""

    def __init__(self, resource: str) -> None:
        super().__init__(resource, f"Request for {resource} superseded by a newer request")


class HTTPError(FetchError):
    """Upstream or relay answered with a non-2xx status; always retried."""

    def __init__(
        self,
        resource: str,
        status: int,
        retry_after: Optional[float] = None,
    ) -> None:
        self.status = status
        self.retry_after = retry_after
        super().__init__(resource, f"HTTP {status} for {resource}")


class ProxyExhaustedError(FetchError):
    """Every permitted attempt on every permitted proxy failed."""

    def __init__(
        self,
        resource: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(resource, f"All {attempts} attempts failed for {resource}{detail}")


class ParseError(FetchError):
    """Response body could not be decoded."""


class StorageError(ArtRelayError):
    """Persistent storage failure (quota, locking, schema or version conflict)."""


class ThumbnailError(ArtRelayError):
    """Thumbnail derivation failed; never surfaces past the thumbnail pipeline."""
