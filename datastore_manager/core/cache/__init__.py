"""
In-process cache for datastore values.

Read-through, write-invalidate: the access layer populates entries after a
confirmed backend read and removes them around every write or delete.
"""

from datastore_manager.core.cache.ttl_cache import (
    CacheEntry,
    CacheStats,
    TTLCache,
    make_cache_key,
)

__all__ = [
    "TTLCache",
    "CacheEntry",
    "CacheStats",
    "make_cache_key",
]
