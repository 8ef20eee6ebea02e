"""artrelay - resilient, offline-capable client for a public collection API.

Fetches collection objects through unreliable CORS relays with retry,
backoff and failover, keeps a versioned tiered cache and a durable
favorites store, and keeps working from those when the network is gone.
"""

__version__ = "0.1.0"
__author__ = "artrelay contributors"

from artrelay.core.context import ServiceContext
from artrelay.core.config import Config

__all__ = ["ServiceContext", "Config", "__version__"]
