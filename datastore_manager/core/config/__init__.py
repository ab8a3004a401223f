"""
Configuration package.

- `Config`: static process settings from the environment (.env aware)
- `DataStoreConfig`: immutable access layer settings passed at construction
"""

from datastore_manager.core.config.config import Config, Environment
from datastore_manager.core.config.errors import (
    ConfigError,
    ConfigLoadError,
    ConfigValidationError,
)
from datastore_manager.core.config.settings import DataStoreConfig

__all__ = [
    "Config",
    "Environment",
    "DataStoreConfig",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
]
