"""Core functionality for artrelay.

This package contains the resilience layer: configuration, logging, the
error taxonomy, data models, retry policy, relay endpoints, the fetch
engine, the connectivity monitor and the message bridge.
"""

from .errors import (  # noqa: F401
    ArtRelayError,
    FetchError,
    HTTPError,
    NetworkError,
    OfflineError,
    ParseError,
    ProxyExhaustedError,
    StorageError,
)
from .data_models import ArtworkRecord, FavoriteRecord, Payload, ProxyEndpoint  # noqa: F401
from .config import Config, ValidationResult  # noqa: F401
from .logging_setup import configure_logging  # noqa: F401
from .retry import RetryPolicy  # noqa: F401
from .proxy import ProxyPool  # noqa: F401
from .connectivity import ConnectivityMonitor  # noqa: F401
from .http_client import FetchEngine  # noqa: F401

__all__ = [
    # Errors
    "ArtRelayError",
    "FetchError",
    "HTTPError",
    "NetworkError",
    "OfflineError",
    "ParseError",
    "ProxyExhaustedError",
    "StorageError",
    # Models
    "ArtworkRecord",
    "FavoriteRecord",
    "Payload",
    "ProxyEndpoint",
    # Config
    "Config",
    "ValidationResult",
    "configure_logging",
    # Fetching
    "RetryPolicy",
    "ProxyPool",
    "ConnectivityMonitor",
    "FetchEngine",
]
