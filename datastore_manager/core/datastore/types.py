"""
Shared value types for the datastore access layer.

Enums for operation classes and outcomes, the values exchanged with
backends, and the result objects returned to callers. Expected failures
(budget exhausted, throttled, not-authorized, ...) travel in the `error`
field of a result; `found=False` on a GetResult is not an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from datastore_manager.core.exceptions import DataStoreError


class OperationType(str, Enum):
    """Operation class; each class has its own request budget."""

    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    LIST = "list"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    THROTTLED = "throttled"


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# ============================================================================
# Backend exchange types
# ============================================================================


@dataclass(frozen=True)
class VersionedValue:
    """A value as stored by the backend, with its opaque version token."""

    value: Any
    version: Optional[str] = None
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class KeyInfo:
    name: str
    version: Optional[str] = None
    updated_at: Optional[float] = None


@dataclass(frozen=True)
class KeyPage:
    keys: Tuple[KeyInfo, ...]
    next_page_token: Optional[str] = None


@dataclass(frozen=True)
class VersionInfo:
    version: str
    created_at: float
    size_bytes: int = 0
    deleted: bool = False


@dataclass(frozen=True)
class VersionPage:
    versions: Tuple[VersionInfo, ...]
    next_page_token: Optional[str] = None


# ============================================================================
# Caller-facing results
# ============================================================================


@dataclass(frozen=True)
class GetResult:
    value: Any = None
    found: bool = False
    version: Optional[str] = None
    from_cache: bool = False
    error: Optional[DataStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class WriteResult:
    """Outcome of set/update; `value` is what was written, independent of cache."""

    success: bool
    value: Any = None
    version: Optional[str] = None
    error: Optional[DataStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DeleteResult:
    success: bool
    existed: bool = False
    error: Optional[DataStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ListKeysResult:
    keys: List[KeyInfo] = field(default_factory=list)
    next_page_token: Optional[str] = None
    error: Optional[DataStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def names(self) -> List[str]:
        return [k.name for k in self.keys]


@dataclass(frozen=True)
class ListVersionsResult:
    versions: List[VersionInfo] = field(default_factory=list)
    next_page_token: Optional[str] = None
    error: Optional[DataStoreError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PerformanceSnapshot:
    """Dashboard view of the access layer at one point in time."""

    avg_latency_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    success_rate: float
    error_rate: float
    throughput_per_second: float
    total_operations: int
    cache_hit_rate: float
    cache_entries: int
    cache_bytes: int
    budget_remaining: Dict[str, int]
    budget_denials: int
    status: HealthStatus
    recommendations: Tuple[str, ...] = ()
    operation_counts: Dict[str, int] = field(default_factory=dict)
    recent_errors: Tuple[Dict[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "p50_ms": round(self.p50_ms, 2),
            "p95_ms": round(self.p95_ms, 2),
            "p99_ms": round(self.p99_ms, 2),
            "success_rate": round(self.success_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "throughput_per_second": round(self.throughput_per_second, 2),
            "total_operations": self.total_operations,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "cache_entries": self.cache_entries,
            "cache_bytes": self.cache_bytes,
            "budget_remaining": dict(self.budget_remaining),
            "budget_denials": self.budget_denials,
            "status": self.status.value,
            "recommendations": list(self.recommendations),
            "operation_counts": dict(self.operation_counts),
            "recent_errors": [dict(e) for e in self.recent_errors],
        }
