"""
DataStore Metrics Recorder

Purpose
-------
Maintain rolling operation statistics for the access layer (latency
percentiles, success and error rates, throughput, cache hit rate) in bounded
memory, and raise alerts when thresholds are crossed.

Responsibilities
----------------
- O(1) append of OperationRecords to a fixed-capacity ring buffer
- Windowed summaries: avg / p50 / p95 / p99 latency, success rate,
  error rate, throughput
- Cache hit/miss counters kept apart from operation records
- Budget denial counters per operation class
- Threshold alerts with a per-alert cooldown and bounded alert history
- Operation history, recent failures and per-type counts for dashboards
- Operation listeners notified of every record

Non-Responsibilities
--------------------
- No remote I/O
- No tuning decisions (handled by adaptive.py)
- No metric persistence (in-memory only; resets on restart)

Configuration Keys
------------------
- metrics_capacity        : int   (default 50000)
- alert_cooldown_seconds  : float (default 30)

Architecture Notes
------------------
- collections.deque(maxlen=capacity) drops the oldest record silently
- Thread-safe via threading.Lock, never held while callbacks run
- Thresholds are evaluated at most once per second from `record()`
- Empty data yields a zero-valued summary, never an error
"""

from __future__ import annotations

import time
import uuid
from collections import Counter, deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from datastore_manager.core import constants as C
from datastore_manager.core.datastore.types import HealthStatus, OperationType, Outcome
from datastore_manager.core.exceptions import ErrorSeverity
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# METRIC DATA STRUCTURES
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class OperationRecord:
    """One finished access layer call."""

    type: OperationType
    key: str
    started_at: float
    completed_at: float
    attempts: int = 1
    outcome: Outcome = Outcome.SUCCESS
    payload_size: int = 0
    store: Optional[str] = None
    error_code: Optional[str] = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.completed_at < self.started_at:
            raise ValueError("completed_at precedes started_at")

    @property
    def latency_ms(self) -> float:
        return (self.completed_at - self.started_at) * 1000.0

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "store": self.store,
            "key": self.key,
            "attempts": self.attempts,
            "outcome": self.outcome.value,
            "latency_ms": round(self.latency_ms, 3),
            "payload_size": self.payload_size,
            "error_code": self.error_code,
        }


@dataclass(frozen=True)
class MetricsSummary:
    total: int = 0
    avg_latency_ms: float = 0.0
    p50_ms: float = 0.0
    p95_ms: float = 0.0
    p99_ms: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    throughput_per_second: float = 0.0
    operation_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "operation_counts": dict(self.operation_counts),
            "avg_latency_ms": round(self.avg_latency_ms, 3),
            "p50_ms": round(self.p50_ms, 3),
            "p95_ms": round(self.p95_ms, 3),
            "p99_ms": round(self.p99_ms, 3),
            "success_rate": round(self.success_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "throughput_per_second": round(self.throughput_per_second, 3),
        }


@dataclass(frozen=True)
class Alert:
    name: str
    severity: ErrorSeverity
    message: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


AlertCallback = Callable[[Alert], Any]
OperationListener = Callable[[OperationRecord], Any]


def _count_by_type(records: Sequence[OperationRecord]) -> Dict[str, int]:
    counts = Counter(r.type.value for r in records)
    return {op.value: counts[op.value] for op in OperationType}


def _percentile(sorted_values: Sequence[float], p: float) -> float:
    if not sorted_values:
        return 0.0
    idx = int(len(sorted_values) * (p / 100.0))
    return sorted_values[min(idx, len(sorted_values) - 1)]


# ═════════════════════════════════════════════════════════════════════════════
# METRICS RECORDER
# ═════════════════════════════════════════════════════════════════════════════


class MetricsRecorder:
    """
    Bounded in-memory operation metrics with threshold alerting.

    Example
    -------
    >>> recorder = MetricsRecorder(capacity=50_000)
    >>> recorder.on_alert(lambda alert: print(alert.message))
    >>> recorder.record(OperationRecord(OperationType.READ, "p1", t0, t1))
    >>> recorder.summary(window_seconds=60).p95_ms
    """

    def __init__(
        self,
        capacity: int = C.DEFAULT_METRICS_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
        *,
        aggregation_window: float = C.DEFAULT_AGGREGATION_WINDOW_SECONDS,
        alert_cooldown: float = C.DEFAULT_ALERT_COOLDOWN_SECONDS,
        alert_check_interval: float = C.ALERT_CHECK_MIN_INTERVAL_SECONDS,
        latency_warning_ms: float = C.LATENCY_WARNING_MS,
        latency_critical_ms: float = C.LATENCY_CRITICAL_MS,
        success_rate_critical: float = C.SUCCESS_RATE_CRITICAL,
        cache_hit_rate_warning: float = C.CACHE_HIT_RATE_WARNING,
        cache_hit_rate_critical: float = C.CACHE_HIT_RATE_CRITICAL,
        cache_min_samples: int = C.CACHE_HIT_RATE_MIN_SAMPLES,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self.capacity = capacity
        self._clock = clock
        self._lock = Lock()
        self._records: Deque[OperationRecord] = deque(maxlen=capacity)

        self._cache_hits = 0
        self._cache_misses = 0
        self._budget_denials: Counter = Counter()

        self.aggregation_window = aggregation_window
        self.alert_cooldown = alert_cooldown
        self.alert_check_interval = alert_check_interval
        self.latency_warning_ms = latency_warning_ms
        self.latency_critical_ms = latency_critical_ms
        self.success_rate_critical = success_rate_critical
        self.cache_hit_rate_warning = cache_hit_rate_warning
        self.cache_hit_rate_critical = cache_hit_rate_critical
        self.cache_min_samples = cache_min_samples

        self._callbacks: List[AlertCallback] = []
        self._operation_listeners: List[OperationListener] = []
        self._last_alert_at: Dict[str, float] = {}
        self._alerts: Deque[Alert] = deque(maxlen=C.ALERT_HISTORY_LIMIT)
        self._last_check_at: Optional[float] = None

    # ═══════════════════════════════════════════════════════════════════════
    # RECORDING
    # ═══════════════════════════════════════════════════════════════════════

    def record(self, record: OperationRecord) -> None:
        """
        Append one record.

        Operation listeners are notified every time; alert thresholds are
        evaluated at most once per `alert_check_interval`.
        """
        with self._lock:
            self._records.append(record)
            now = self._clock()
            due = (
                self._last_check_at is None
                or now - self._last_check_at >= self.alert_check_interval
            )
            if due:
                self._last_check_at = now

        if record.latency_ms > self.latency_critical_ms:
            logger.warning(
                "Slow datastore operation",
                extra={
                    "operation": record.type.value,
                    "store": record.store,
                    "key": record.key,
                    "latency_ms": round(record.latency_ms, 2),
                    "attempts": record.attempts,
                },
            )

        for listener in list(self._operation_listeners):
            try:
                listener(record)
            except Exception:
                logger.exception(
                    "Operation listener failed", extra={"operation": record.type.value}
                )

        if due:
            self.check_thresholds()

    def record_cache_hit(self) -> None:
        with self._lock:
            self._cache_hits += 1

    def record_cache_miss(self) -> None:
        with self._lock:
            self._cache_misses += 1

    def record_budget_denial(self, operation_class: OperationType) -> None:
        with self._lock:
            self._budget_denials[operation_class.value] += 1

    # ═══════════════════════════════════════════════════════════════════════
    # QUERIES
    # ═══════════════════════════════════════════════════════════════════════

    def summary(self, window_seconds: Optional[float] = None) -> MetricsSummary:
        """
        Statistics over records completed in the trailing window.

        With no window, all retained records are used and throughput is
        measured over the span from the oldest retained record to now.
        """
        now = self._clock()
        with self._lock:
            if window_seconds is None:
                records = list(self._records)
            else:
                cutoff = now - window_seconds
                records = [r for r in self._records if r.completed_at >= cutoff]

        if not records:
            return MetricsSummary()

        latencies = sorted(r.latency_ms for r in records)
        total = len(records)
        successes = sum(1 for r in records if r.succeeded)

        if window_seconds is not None:
            span = window_seconds
        else:
            span = now - min(r.started_at for r in records)

        return MetricsSummary(
            total=total,
            avg_latency_ms=sum(latencies) / total,
            p50_ms=_percentile(latencies, 50),
            p95_ms=_percentile(latencies, 95),
            p99_ms=_percentile(latencies, 99),
            success_rate=successes / total,
            error_rate=(total - successes) / total,
            throughput_per_second=total / span if span > 0 else 0.0,
            operation_counts=_count_by_type(records),
        )

    def cache_hit_rate(self) -> float:
        with self._lock:
            lookups = self._cache_hits + self._cache_misses
            return self._cache_hits / lookups if lookups else 0.0

    def cache_lookups(self) -> int:
        with self._lock:
            return self._cache_hits + self._cache_misses

    def budget_denials(self, operation_class: Optional[OperationType] = None) -> int:
        with self._lock:
            if operation_class is None:
                return sum(self._budget_denials.values())
            return self._budget_denials[operation_class.value]

    def history(
        self,
        limit: int = C.DEFAULT_OPERATION_HISTORY_LIMIT,
        op_type: Optional[OperationType] = None,
    ) -> List[OperationRecord]:
        """Most recent records first, optionally filtered by operation class."""
        result: List[OperationRecord] = []
        with self._lock:
            for record in reversed(self._records):
                if op_type is not None and record.type is not op_type:
                    continue
                result.append(record)
                if len(result) >= limit:
                    break
        return result

    def recent_errors(self, limit: int = C.RECENT_ERRORS_LIMIT) -> List[OperationRecord]:
        """Most recent failed or throttled records first."""
        result: List[OperationRecord] = []
        with self._lock:
            for record in reversed(self._records):
                if record.succeeded:
                    continue
                result.append(record)
                if len(result) >= limit:
                    break
        return result

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ═══════════════════════════════════════════════════════════════════════
    # ALERTING
    # ═══════════════════════════════════════════════════════════════════════

    def on_alert(self, callback: AlertCallback) -> None:
        self._callbacks.append(callback)

    def on_operation(self, listener: OperationListener) -> None:
        """Call `listener` with every recorded OperationRecord."""
        self._operation_listeners.append(listener)

    def recent_alerts(self, limit: int = 20) -> List[Alert]:
        with self._lock:
            return list(self._alerts)[-limit:][::-1]

    def check_thresholds(self) -> List[Alert]:
        """Evaluate thresholds over the aggregation window; returns fired alerts."""
        summary = self.summary(self.aggregation_window)
        candidates: List[Alert] = []
        now = self._clock()

        if summary.total:
            if summary.p95_ms > self.latency_critical_ms:
                candidates.append(self._alert(
                    "high_latency", ErrorSeverity.CRITICAL, now,
                    f"p95 latency {summary.p95_ms:.0f}ms exceeds {self.latency_critical_ms:.0f}ms",
                    p95_ms=summary.p95_ms,
                ))
            elif summary.p95_ms > self.latency_warning_ms:
                candidates.append(self._alert(
                    "high_latency", ErrorSeverity.WARNING, now,
                    f"p95 latency {summary.p95_ms:.0f}ms exceeds {self.latency_warning_ms:.0f}ms",
                    p95_ms=summary.p95_ms,
                ))

            if summary.success_rate < self.success_rate_critical:
                candidates.append(self._alert(
                    "low_success_rate", ErrorSeverity.CRITICAL, now,
                    f"success rate {summary.success_rate:.1%} below {self.success_rate_critical:.0%}",
                    success_rate=summary.success_rate,
                ))

        if self.cache_lookups() >= self.cache_min_samples:
            hit_rate = self.cache_hit_rate()
            if hit_rate < self.cache_hit_rate_critical:
                candidates.append(self._alert(
                    "low_cache_hit_rate", ErrorSeverity.CRITICAL, now,
                    f"cache hit rate {hit_rate:.1%} below {self.cache_hit_rate_critical:.0%}",
                    cache_hit_rate=hit_rate,
                ))
            elif hit_rate < self.cache_hit_rate_warning:
                candidates.append(self._alert(
                    "low_cache_hit_rate", ErrorSeverity.WARNING, now,
                    f"cache hit rate {hit_rate:.1%} below {self.cache_hit_rate_warning:.0%}",
                    cache_hit_rate=hit_rate,
                ))

        fired: List[Alert] = []
        with self._lock:
            for alert in candidates:
                last = self._last_alert_at.get(alert.name)
                if last is not None and now - last < self.alert_cooldown:
                    continue
                self._last_alert_at[alert.name] = now
                self._alerts.append(alert)
                fired.append(alert)

        for alert in fired:
            self._dispatch(alert)
        return fired

    @staticmethod
    def _alert(name: str, severity: ErrorSeverity, now: float, message: str, **data: Any) -> Alert:
        return Alert(name=name, severity=severity, message=message, timestamp=now, data=data)

    def _dispatch(self, alert: Alert) -> None:
        log = logger.critical if alert.severity is ErrorSeverity.CRITICAL else logger.warning
        log(
            "DataStore alert",
            extra={"alert": alert.name, "severity": alert.severity.value, "detail": alert.message},
        )
        for callback in list(self._callbacks):
            try:
                callback(alert)
            except Exception:
                # Alert consumers must never break the recording path.
                logger.exception("Alert callback failed", extra={"alert": alert.name})

    # ═══════════════════════════════════════════════════════════════════════
    # HEALTH
    # ═══════════════════════════════════════════════════════════════════════

    def assess(self, summary: MetricsSummary) -> Tuple[HealthStatus, Tuple[str, ...]]:
        """Overall status for `summary` plus operator recommendations."""
        status = HealthStatus.HEALTHY
        recommendations: List[str] = []

        def escalate(level: HealthStatus) -> None:
            nonlocal status
            if level is HealthStatus.CRITICAL or status is HealthStatus.HEALTHY:
                status = level

        if summary.total:
            if summary.p95_ms > self.latency_critical_ms:
                escalate(HealthStatus.CRITICAL)
                recommendations.append("Latency is critical: reduce request rate or page size")
            elif summary.p95_ms > self.latency_warning_ms:
                escalate(HealthStatus.WARNING)
                recommendations.append("Latency is elevated: consider caching hot keys longer")
            if summary.success_rate < self.success_rate_critical:
                escalate(HealthStatus.CRITICAL)
                recommendations.append("Error rate is high: inspect backend errors and throttling")

        if self.cache_lookups() >= self.cache_min_samples:
            hit_rate = self.cache_hit_rate()
            if hit_rate < self.cache_hit_rate_critical:
                escalate(HealthStatus.CRITICAL)
                recommendations.append("Cache hit rate is very low: increase cache size or TTL")
            elif hit_rate < self.cache_hit_rate_warning:
                escalate(HealthStatus.WARNING)
                recommendations.append("Cache hit rate is low: consider a larger cache")

        return status, tuple(recommendations)

    # ═══════════════════════════════════════════════════════════════════════
    # RESET
    # ═══════════════════════════════════════════════════════════════════════

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._cache_hits = 0
            self._cache_misses = 0
            self._budget_denials.clear()
            self._last_alert_at.clear()
            self._alerts.clear()
            self._last_check_at = None
