"""
Core infrastructure for the datastore access layer.

Purpose
-------
Provide a single import surface for the subsystems:

- Configuration (Config, DataStoreConfig)
- Logging (structured logging, logger factory, LogContext)
- Cache (TTLCache)
- DataStore access (DataStoreAccessLayer, RequestBudget, RetryPolicy,
  MetricsRecorder, AdaptiveController)
- Backends (in-memory, Redis)
- Exceptions (DataStoreError hierarchy)

Design Decisions
----------------
- Thin module: re-exports only, no logic and no I/O
- Public API is explicit via __all__
"""

from datastore_manager.core.exceptions import (
    BackendError,
    BudgetExceeded,
    DataStoreError,
    ErrorSeverity,
    InvalidKey,
    InvalidPayload,
    OperationTimeout,
    PayloadTooLarge,
    RetryExhausted,
    Throttled,
    TransientError,
    Unauthorized,
)
from datastore_manager.core.config import Config, DataStoreConfig
from datastore_manager.core.logging import LogContext, get_logger, setup_logging, shutdown_logging
from datastore_manager.core.cache import TTLCache
from datastore_manager.core.datastore import (
    AdaptiveController,
    DataStoreAccessLayer,
    MetricsRecorder,
    OperationType,
    RequestBudget,
    RetryPolicy,
)
from datastore_manager.core.backends import (
    DataStoreBackend,
    InMemoryDataStoreBackend,
    RedisDataStoreBackend,
)

__all__ = [
    # Config
    "Config",
    "DataStoreConfig",
    # Logging
    "setup_logging",
    "shutdown_logging",
    "get_logger",
    "LogContext",
    # Components
    "TTLCache",
    "RequestBudget",
    "RetryPolicy",
    "MetricsRecorder",
    "DataStoreAccessLayer",
    "AdaptiveController",
    "OperationType",
    # Backends
    "DataStoreBackend",
    "InMemoryDataStoreBackend",
    "RedisDataStoreBackend",
    # Exceptions
    "DataStoreError",
    "ErrorSeverity",
    "BudgetExceeded",
    "Throttled",
    "TransientError",
    "PayloadTooLarge",
    "InvalidPayload",
    "InvalidKey",
    "Unauthorized",
    "BackendError",
    "RetryExhausted",
    "OperationTimeout",
]
