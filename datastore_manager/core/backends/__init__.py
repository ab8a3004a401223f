"""
Remote key-value store backends.

- `DataStoreBackend`: protocol the access layer consumes
- `InMemoryDataStoreBackend`: process-local store for development and tests
- `RedisDataStoreBackend`: redis.asyncio implementation
"""

from datastore_manager.core.backends.base import DataStoreBackend
from datastore_manager.core.backends.memory import InMemoryDataStoreBackend
from datastore_manager.core.backends.redis_backend import RedisDataStoreBackend

__all__ = [
    "DataStoreBackend",
    "InMemoryDataStoreBackend",
    "RedisDataStoreBackend",
]
