"""
DataStore access subsystem.

Request budgeting, retry, metrics and the DataStoreAccessLayer facade that
composes them with the cache. AdaptiveController is an optional overlay.
"""

from datastore_manager.core.datastore.adaptive import AdaptiveController, Optimization
from datastore_manager.core.datastore.budget import BudgetLimit, RequestBudget, RequestBudgetState
from datastore_manager.core.datastore.metrics import (
    Alert,
    MetricsRecorder,
    MetricsSummary,
    OperationRecord,
)
from datastore_manager.core.datastore.retry_policy import RetryPolicy, classify_error
from datastore_manager.core.datastore.service import DataStoreAccessLayer, WriteFence
from datastore_manager.core.datastore.types import (
    DeleteResult,
    ErrorClass,
    GetResult,
    HealthStatus,
    KeyInfo,
    KeyPage,
    ListKeysResult,
    ListVersionsResult,
    OperationType,
    Outcome,
    PerformanceSnapshot,
    VersionedValue,
    VersionInfo,
    VersionPage,
    WriteResult,
)

__all__ = [
    # Facade
    "DataStoreAccessLayer",
    "WriteFence",
    "AdaptiveController",
    "Optimization",
    # Components
    "RequestBudget",
    "BudgetLimit",
    "RequestBudgetState",
    "RetryPolicy",
    "classify_error",
    "MetricsRecorder",
    "MetricsSummary",
    "OperationRecord",
    "Alert",
    # Types
    "OperationType",
    "Outcome",
    "ErrorClass",
    "HealthStatus",
    "VersionedValue",
    "KeyInfo",
    "KeyPage",
    "VersionInfo",
    "VersionPage",
    "GetResult",
    "WriteResult",
    "DeleteResult",
    "ListKeysResult",
    "ListVersionsResult",
    "PerformanceSnapshot",
]
