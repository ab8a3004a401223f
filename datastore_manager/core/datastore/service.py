"""
DataStoreAccessLayer: single entry point to a rate-limited key-value backend.

Purpose
-------
Compose request budgeting, retry with backoff, TTL caching and metrics into
the get / set / update / delete / list operations callers use.

Responsibilities
----------------
- Validate names and payloads before any budget is consumed
- Serve reads from the cache when possible (read-through)
- Gate every remote call on the per-class RequestBudget
- Run remote calls under RetryPolicy, honouring caller timeouts
- Invalidate the cache around every write and delete (write-invalidate)
- Record one OperationRecord per remote operation
- Return typed results; expected failures travel in `result.error`

Non-Responsibilities
--------------------
- No queueing or waiting on budget exhaustion (callers decide)
- No cross-key transactions or querying

Operation Flow
--------------
    CACHE_CHECK (reads) -> BUDGET_CHECK -> REMOTE_CALL (RetryPolicy)
        -> success: populate (reads) / invalidate (writes) -> RECORD
        -> failure: RECORD -> error result

Write Fence
-----------
A read that overlaps a write or delete of the same key never populates the
cache. Each write bumps a per-key epoch at start and end; a read only
caches its result when no write of that key started or finished after the
read began and none is in flight. Combined with invalidation at both ends of
every write, a cached value is never older than the latest completed write.

Architecture Notes
------------------
- One instance owns its budget, cache, retry policy and metrics; nothing is
  process-global, so independent instances never interfere
- Cache, budget and metrics calls are synchronous; suspension happens only
  at the backend call, retry backoff, and the adaptive inter-request delay
- asyncio.CancelledError always propagates; consumed budget is not refunded
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, OrderedDict
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, TypeVar

from datastore_manager.core import constants as C
from datastore_manager.core.cache.ttl_cache import TTLCache, make_cache_key
from datastore_manager.core.config.settings import DataStoreConfig
from datastore_manager.core.datastore.budget import RequestBudget
from datastore_manager.core.datastore.metrics import MetricsRecorder, OperationListener, OperationRecord
from datastore_manager.core.datastore.retry_policy import RetryPolicy
from datastore_manager.core.datastore.types import (
    DeleteResult,
    GetResult,
    ListKeysResult,
    ListVersionsResult,
    OperationType,
    Outcome,
    PerformanceSnapshot,
    WriteResult,
)
from datastore_manager.core.datastore.validation import (
    validate_key,
    validate_name,
    validate_payload,
)
from datastore_manager.core.exceptions import (
    BudgetExceeded,
    DataStoreError,
    ErrorSeverity,
    InvalidKey,
    OperationTimeout,
    RetryExhausted,
    get_error_severity,
    should_alert,
)
from datastore_manager.core.logging.logger import LogContext, get_logger

if TYPE_CHECKING:
    from datastore_manager.core.backends.base import DataStoreBackend

logger = get_logger(__name__)

T = TypeVar("T")

_SEVERITY_LOG_LEVELS = {
    ErrorSeverity.DEBUG: logging.DEBUG,
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


def _validate_timeout(timeout: Optional[float]) -> None:
    if timeout is not None and timeout <= 0:
        raise ValueError("timeout must be positive")


# ═════════════════════════════════════════════════════════════════════════════
# WRITE FENCE
# ═════════════════════════════════════════════════════════════════════════════


class WriteFence:
    """
    Per-key write epochs guarding cache population.

    Tracks at most `max_tracked` keys; when an old key is dropped its epoch
    becomes the floor applied to every untracked key, so forgetting a key
    can only make population more conservative.
    """

    def __init__(self, max_tracked: int = 10_000) -> None:
        self._epoch = 0
        self._floor = 0
        self._max_tracked = max_tracked
        self._last_write: "OrderedDict[str, int]" = OrderedDict()
        self._inflight: Counter = Counter()

    def begin_read(self) -> int:
        return self._epoch

    def begin_write(self, key: str) -> None:
        self._inflight[key] += 1
        self.mark(key)

    def end_write(self, key: str) -> None:
        self._inflight[key] -= 1
        if self._inflight[key] <= 0:
            del self._inflight[key]
        self.mark(key)

    def mark(self, key: str) -> None:
        self._epoch += 1
        self._last_write[key] = self._epoch
        self._last_write.move_to_end(key)
        while len(self._last_write) > self._max_tracked:
            _, epoch = self._last_write.popitem(last=False)
            self._floor = max(self._floor, epoch)

    def mark_all(self) -> None:
        self._epoch += 1
        self._floor = self._epoch

    def can_populate(self, key: str, read_token: int) -> bool:
        if self._inflight.get(key):
            return False
        return max(self._last_write.get(key, 0), self._floor) <= read_token


# ═════════════════════════════════════════════════════════════════════════════
# ACCESS LAYER
# ═════════════════════════════════════════════════════════════════════════════


class DataStoreAccessLayer:
    """
    Resilient facade over a DataStoreBackend.

    Example
    -------
    >>> layer = DataStoreAccessLayer(InMemoryDataStoreBackend(), DataStoreConfig())
    >>> result = await layer.set("PlayerData", "player_1", {"level": 5})
    >>> result = await layer.get("PlayerData", "player_1")
    >>> if result.error is None and result.found:
    ...     print(result.value)
    """

    def __init__(
        self,
        backend: DataStoreBackend,
        config: Optional[DataStoreConfig] = None,
        *,
        budget: Optional[RequestBudget] = None,
        cache: Optional[TTLCache] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or DataStoreConfig()
        self._backend = backend
        self._clock = clock
        self._sleep = sleep

        self._budget = budget or RequestBudget.from_config(self.config, clock=clock)
        self._cache = cache or TTLCache(
            default_ttl=self.config.cache_ttl_seconds,
            max_entries=self.config.cache_max_entries,
            max_bytes=self.config.cache_max_bytes,
            clock=clock,
        )
        self._retry = retry_policy or RetryPolicy.from_config(self.config, sleep=sleep, clock=clock)
        self._metrics = metrics or MetricsRecorder(
            capacity=self.config.metrics_capacity,
            clock=clock,
            alert_cooldown=self.config.alert_cooldown_seconds,
        )
        self._fence = WriteFence()

        self._inter_request_delay = 0.0
        self._list_page_size = self.config.list_page_size

        logger.info(
            "DataStoreAccessLayer initialized",
            extra={"backend": type(backend).__name__, "config": self.config.to_dict()},
        )

    # ═══════════════════════════════════════════════════════════════════════
    # COMPONENTS & TUNABLES
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def backend(self) -> DataStoreBackend:
        return self._backend

    @property
    def budget(self) -> RequestBudget:
        return self._budget

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    @property
    def metrics(self) -> MetricsRecorder:
        return self._metrics

    @property
    def inter_request_delay(self) -> float:
        """Seconds slept before each remote call (adaptive throttling)."""
        return self._inter_request_delay

    def set_inter_request_delay(self, seconds: float) -> None:
        self._inter_request_delay = min(max(0.0, float(seconds)), C.MAX_INTER_REQUEST_DELAY_SECONDS)

    @property
    def list_page_size(self) -> int:
        """Default page size for list operations."""
        return self._list_page_size

    def set_list_page_size(self, size: int) -> None:
        self._list_page_size = min(max(C.MIN_LIST_PAGE_SIZE, int(size)), C.MAX_LIST_PAGE_SIZE)

    # ═══════════════════════════════════════════════════════════════════════
    # READS
    # ═══════════════════════════════════════════════════════════════════════

    async def get(
        self,
        store: str,
        key: str,
        *,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
        use_cache: bool = True,
    ) -> GetResult:
        """
        Read one key.

        `found=False` with no error means the backend confirmed absence.
        Timeouts and backend failures are errors, never false negatives.
        """
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope, key)
        if invalid:
            return GetResult(error=invalid)

        cache_key = make_cache_key(store, scope, key)
        if use_cache:
            value, found = self._cache.get(cache_key)
            if found:
                self._metrics.record_cache_hit()
                entry = self._cache.peek(cache_key)
                return GetResult(
                    value=value,
                    found=True,
                    version=entry.version if entry else None,
                    from_cache=True,
                )
            self._metrics.record_cache_miss()

        denied = self._admit(OperationType.READ)
        if denied:
            return GetResult(error=denied)

        read_token = self._fence.begin_read()
        async with LogContext(component="datastore", operation="get", store=store, key=key):
            stored, error = await self._run(
                OperationType.READ,
                store,
                key,
                lambda: self._backend.get(store, scope, key),
                timeout=timeout,
            )
        if error:
            return GetResult(error=error)
        if stored is None:
            return GetResult(found=False)

        if use_cache and self._fence.can_populate(cache_key, read_token):
            self._cache.put(cache_key, stored.value, version=stored.version)
        return GetResult(value=stored.value, found=True, version=stored.version)

    # ═══════════════════════════════════════════════════════════════════════
    # WRITES
    # ═══════════════════════════════════════════════════════════════════════

    async def set(
        self,
        store: str,
        key: str,
        value: Any,
        *,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> WriteResult:
        """
        Write one key.

        The cache entry is invalidated, not updated; the written value is
        returned on the result for the immediate caller.
        """
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope, key)
        if invalid:
            return WriteResult(success=False, value=value, error=invalid)

        async with LogContext(component="datastore", operation="set", store=store, key=key):
            return await self._write(store, scope, key, value, timeout=timeout)

    async def update(
        self,
        store: str,
        key: str,
        transform: Callable[[Any], Any],
        *,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> WriteResult:
        """
        Read-modify-write of one key.

        `transform` receives the current value (None when absent) read fresh
        from the backend. Returning None cancels the write: the result has
        `success=False`, no error, and the current value. Exceptions raised
        by `transform` propagate to the caller.
        """
        if not callable(transform):
            raise TypeError("transform must be callable")
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope, key)
        if invalid:
            return WriteResult(success=False, error=invalid)

        deadline = self._deadline(timeout)
        async with LogContext(component="datastore", operation="update", store=store, key=key):
            current = await self.get(store, key, scope=scope, timeout=timeout, use_cache=False)
            if current.error:
                return WriteResult(success=False, error=current.error)

            new_value = transform(current.value if current.found else None)
            if new_value is None:
                logger.debug("Update cancelled by transform")
                return WriteResult(success=False, value=current.value, version=current.version)

            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                return WriteResult(
                    success=False,
                    value=new_value,
                    error=OperationTimeout("update", timeout, 0),
                )
            return await self._write(store, scope, key, new_value, timeout=remaining)

    async def delete(
        self,
        store: str,
        key: str,
        *,
        scope: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> DeleteResult:
        """Remove one key. The cache entry is invalidated whatever the outcome."""
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope, key)
        if invalid:
            return DeleteResult(success=False, error=invalid)

        denied = self._admit(OperationType.DELETE)
        if denied:
            return DeleteResult(success=False, error=denied)

        cache_key = make_cache_key(store, scope, key)
        self._fence.begin_write(cache_key)
        self._cache.invalidate(cache_key)
        try:
            async with LogContext(component="datastore", operation="delete", store=store, key=key):
                existed, error = await self._run(
                    OperationType.DELETE,
                    store,
                    key,
                    lambda: self._backend.delete(store, scope, key),
                    timeout=timeout,
                )
        finally:
            self._cache.invalidate(cache_key)
            self._fence.end_write(cache_key)

        if error:
            return DeleteResult(success=False, error=error)
        return DeleteResult(success=True, existed=bool(existed))

    # ═══════════════════════════════════════════════════════════════════════
    # LISTING (never cached)
    # ═══════════════════════════════════════════════════════════════════════

    async def list_keys(
        self,
        store: str,
        *,
        scope: Optional[str] = None,
        prefix: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ListKeysResult:
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope)
        if invalid:
            return ListKeysResult(error=invalid)
        if prefix is not None and not isinstance(prefix, str):
            raise TypeError(f"prefix must be a str, got {type(prefix).__name__}")
        size = self._page_size(page_size)

        denied = self._admit(OperationType.LIST)
        if denied:
            return ListKeysResult(error=denied)

        async with LogContext(component="datastore", operation="list_keys", store=store):
            page, error = await self._run(
                OperationType.LIST,
                store,
                prefix or "*",
                lambda: self._backend.list_keys(
                    store, scope, prefix=prefix, page_token=page_token, page_size=size
                ),
                timeout=timeout,
            )
        if error:
            return ListKeysResult(error=error)
        return ListKeysResult(keys=list(page.keys), next_page_token=page.next_page_token)

    async def list_versions(
        self,
        store: str,
        key: str,
        *,
        scope: Optional[str] = None,
        page_token: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ListVersionsResult:
        _validate_timeout(timeout)
        scope, invalid = self._check_names(store, scope, key)
        if invalid:
            return ListVersionsResult(error=invalid)
        size = self._page_size(page_size)

        denied = self._admit(OperationType.LIST)
        if denied:
            return ListVersionsResult(error=denied)

        async with LogContext(component="datastore", operation="list_versions", store=store, key=key):
            page, error = await self._run(
                OperationType.LIST,
                store,
                key,
                lambda: self._backend.list_versions(
                    store, scope, key, page_token=page_token, page_size=size
                ),
                timeout=timeout,
            )
        if error:
            return ListVersionsResult(error=error)
        return ListVersionsResult(versions=list(page.versions), next_page_token=page.next_page_token)

    async def iter_key_pages(
        self,
        store: str,
        *,
        scope: Optional[str] = None,
        prefix: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[ListKeysResult]:
        """
        Walk every page of `store`.

        Each page is budget-gated like any list call. Iteration stops after
        yielding the first page that carries an error.
        """
        token: Optional[str] = None
        while True:
            result = await self.list_keys(
                store,
                scope=scope,
                prefix=prefix,
                page_token=token,
                page_size=page_size,
                timeout=timeout,
            )
            yield result
            if result.error or not result.next_page_token:
                return
            token = result.next_page_token

    # ═══════════════════════════════════════════════════════════════════════
    # CACHE CONTROL & REPORTING
    # ═══════════════════════════════════════════════════════════════════════

    def clear_cache(self, store: Optional[str] = None) -> int:
        """Drop cached entries for one store, or all of them."""
        self._fence.mark_all()
        if store is None:
            removed = self._cache.clear()
        else:
            removed = self._cache.invalidate_prefix(store)
        logger.info("Cache cleared", extra={"store": store, "entries_removed": removed})
        return removed

    def invalidate(self, store: str, key: str, scope: Optional[str] = None) -> bool:
        scope = self.config.default_scope if scope is None else scope
        cache_key = make_cache_key(store, scope, key)
        self._fence.mark(cache_key)
        return self._cache.invalidate(cache_key)

    def get_operation_history(
        self,
        limit: int = C.DEFAULT_OPERATION_HISTORY_LIMIT,
        op_type: Optional[OperationType] = None,
    ) -> List[OperationRecord]:
        return self._metrics.history(limit=limit, op_type=op_type)

    def on_operation(self, listener: OperationListener) -> None:
        """Call `listener` with every OperationRecord this layer produces."""
        self._metrics.on_operation(listener)

    def get_metrics_summary(self, window_seconds: Optional[float] = None) -> PerformanceSnapshot:
        summary = self._metrics.summary(window_seconds)
        status, recommendations = self._metrics.assess(summary)
        cache_stats = self._cache.stats()
        budget = {op.value: self._budget.remaining(op) for op in OperationType}

        return PerformanceSnapshot(
            avg_latency_ms=summary.avg_latency_ms,
            p50_ms=summary.p50_ms,
            p95_ms=summary.p95_ms,
            p99_ms=summary.p99_ms,
            success_rate=summary.success_rate,
            error_rate=summary.error_rate,
            throughput_per_second=summary.throughput_per_second,
            total_operations=summary.total,
            cache_hit_rate=self._metrics.cache_hit_rate(),
            cache_entries=cache_stats.entries,
            cache_bytes=cache_stats.size_bytes,
            budget_remaining=budget,
            budget_denials=self._metrics.budget_denials(),
            status=status,
            recommendations=recommendations,
            operation_counts=summary.operation_counts,
            recent_errors=tuple(r.to_dict() for r in self._metrics.recent_errors()),
        )

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNALS
    # ═══════════════════════════════════════════════════════════════════════

    def _check_names(
        self,
        store: str,
        scope: Optional[str],
        key: Optional[str] = None,
    ) -> Tuple[str, Optional[InvalidKey]]:
        scope = self.config.default_scope if scope is None else scope
        try:
            validate_name("store", store)
            validate_name("scope", scope)
            if key is not None:
                validate_key(key)
        except InvalidKey as exc:
            logger.debug("Rejected invalid name", extra=exc.log_extra())
            return scope, exc
        return scope, None

    def _page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self._list_page_size
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            raise ValueError(f"page_size must be a positive int, got {page_size!r}")
        return min(page_size, C.MAX_LIST_PAGE_SIZE)

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            return None
        _validate_timeout(timeout)
        return self._clock() + timeout

    def _admit(self, op_type: OperationType) -> Optional[BudgetExceeded]:
        if self._budget.admit(op_type):
            return None
        self._metrics.record_budget_denial(op_type)
        error = BudgetExceeded(op_type.value, self._budget.time_until_reset(op_type))
        logger.debug("Request budget exhausted", extra=error.log_extra())
        return error

    async def _write(
        self,
        store: str,
        scope: str,
        key: str,
        value: Any,
        *,
        timeout: Optional[float],
    ) -> WriteResult:
        try:
            size = validate_payload(value, self.config.max_payload_bytes)
        except DataStoreError as exc:
            logger.info("Rejected payload", extra=exc.log_extra())
            return WriteResult(success=False, value=value, error=exc)

        denied = self._admit(OperationType.WRITE)
        if denied:
            return WriteResult(success=False, value=value, error=denied)

        cache_key = make_cache_key(store, scope, key)
        self._fence.begin_write(cache_key)
        self._cache.invalidate(cache_key)
        try:
            version, error = await self._run(
                OperationType.WRITE,
                store,
                key,
                lambda: self._backend.set(store, scope, key, value),
                timeout=timeout,
                payload_size=size,
            )
        finally:
            self._cache.invalidate(cache_key)
            self._fence.end_write(cache_key)

        if error:
            return WriteResult(success=False, value=value, error=error)
        return WriteResult(success=True, value=value, version=version)

    async def _run(
        self,
        op_type: OperationType,
        store: str,
        key: str,
        call: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float],
        payload_size: int = 0,
    ) -> Tuple[Optional[T], Optional[DataStoreError]]:
        """Remote call under retry; records the outcome and returns (result, error)."""
        deadline = self._deadline(timeout)
        started = self._clock()
        attempts = 0

        async def attempt() -> T:
            nonlocal attempts
            attempts += 1
            return await call()

        try:
            await self._pace(op_type, deadline, timeout)
            result = await self._retry.execute(
                attempt, operation_name=op_type.value, deadline=deadline
            )
        except DataStoreError as exc:
            outcome = Outcome.FAILURE
            if isinstance(exc, RetryExhausted) and exc.caused_by_throttling:
                outcome = Outcome.THROTTLED
                self._budget.throttle(
                    op_type, self.config.throttle_cooldown_seconds, reason="backend throttling"
                )
            exc.with_context(store=store, key=key)
            self._record(op_type, store, key, started, max(attempts, 1), outcome, payload_size, exc.error_code)
            logger.log(
                _SEVERITY_LOG_LEVELS[get_error_severity(exc)],
                "DataStore operation failed",
                extra={
                    **exc.log_extra(),
                    "alert": should_alert(exc),
                    "latency_ms": round((self._clock() - started) * 1000, 2),
                },
            )
            return None, exc

        self._record(op_type, store, key, started, attempts, Outcome.SUCCESS, payload_size)
        logger.debug(
            "DataStore operation succeeded",
            extra={
                "attempts": attempts,
                "latency_ms": round((self._clock() - started) * 1000, 2),
            },
        )
        return result, None

    async def _pace(
        self,
        op_type: OperationType,
        deadline: Optional[float],
        timeout: Optional[float],
    ) -> None:
        delay = self._inter_request_delay
        if delay <= 0:
            return
        if deadline is not None and self._clock() + delay >= deadline:
            raise OperationTimeout(op_type.value, timeout, 0)
        await self._sleep(delay)

    def _record(
        self,
        op_type: OperationType,
        store: str,
        key: str,
        started: float,
        attempts: int,
        outcome: Outcome,
        payload_size: int,
        error_code: Optional[str] = None,
    ) -> None:
        self._metrics.record(
            OperationRecord(
                type=op_type,
                key=key,
                started_at=started,
                completed_at=max(self._clock(), started),
                attempts=attempts,
                outcome=outcome,
                payload_size=payload_size,
                store=store,
                error_code=error_code,
            )
        )
