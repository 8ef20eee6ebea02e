"""Storage layer for artrelay.

This package contains:
- SQLite persistence
- The versioned tiered cache
- The durable favorites store and its thumbnail pipeline
"""

from artrelay.storage.database import Database
from artrelay.storage.tiered_cache import Partition, TieredCacheManager
from artrelay.storage.favorites import FavoritesStore

__all__ = ["Database", "Partition", "TieredCacheManager", "FavoritesStore"]
