"""
DataStore Retry Policy

Purpose
-------
Absorb transient backend failures (timeouts, connection resets, throttling)
without caller involvement while failing fast on permanent errors (invalid
key, payload too large, permission denied).

Responsibilities
----------------
- Execute an async operation with exponential backoff between attempts
- Classify each failure once as RETRYABLE or PERMANENT
- Honour a caller deadline at every suspension point
- Raise RetryExhausted wrapping the last error once attempts run out
- Log retry attempts and outcomes

Non-Responsibilities
--------------------
- No request budgeting (handled by budget.py)
- No metrics collection (handled by metrics.py)

Configuration Keys
------------------
- max_retries               : int   (default 3, total attempts)
- base_retry_delay_seconds  : float (default 0.5)
- max_retry_delay_seconds   : float (default 8.0)
- retry_jitter              : float (default 0.2)

Architecture Notes
------------------
- Delay before attempt n+1 = min(base * 2^(n-1), max_delay) * U(1-j, 1+j)
- A Throttled error with `retry_after` stretches the delay to at least that
  value, still capped at max_delay
- `max_attempts` counts every attempt including the first
- asyncio.CancelledError always propagates untouched
- sleep, clock and random source are injectable for deterministic tests
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from datastore_manager.core.config.settings import DataStoreConfig
from datastore_manager.core.datastore.types import ErrorClass
from datastore_manager.core.exceptions import (
    BackendError,
    DataStoreError,
    OperationTimeout,
    RetryExhausted,
    Throttled,
    is_transient_error,
)
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], ErrorClass]


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Default classifier.

    DataStoreError subclasses carry their own `is_retryable` flag; builtin
    TimeoutError and ConnectionError are retryable; everything else is
    permanent.
    """
    return ErrorClass.RETRYABLE if is_transient_error(exc) else ErrorClass.PERMANENT


class RetryPolicy:
    """
    Retry policy with exponential backoff and jitter.

    Example
    -------
    >>> policy = RetryPolicy(max_attempts=3, base_delay=0.5)
    >>> value = await policy.execute(
    ...     lambda: backend.get("PlayerData", "global", "p1"),
    ...     operation_name="read",
    ... )
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        jitter: float = 0.2,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("delays must not be negative")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

        logger.debug(
            "RetryPolicy initialized",
            extra={
                "max_attempts": max_attempts,
                "base_delay_seconds": base_delay,
                "max_delay_seconds": max_delay,
                "jitter": jitter,
            },
        )

    @classmethod
    def from_config(cls, config: DataStoreConfig, **overrides: Any) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retries,
            base_delay=config.base_retry_delay_seconds,
            max_delay=config.max_retry_delay_seconds,
            jitter=config.retry_jitter,
            **overrides,
        )

    # ═══════════════════════════════════════════════════════════════════════
    # RETRY EXECUTION
    # ═══════════════════════════════════════════════════════════════════════

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Classifier = classify_error,
        *,
        operation_name: str = "operation",
        deadline: Optional[float] = None,
    ) -> T:
        """
        Execute `operation` with retry logic.

        Parameters
        ----------
        operation : Callable
            Zero-argument callable returning a fresh awaitable per attempt
        classify : Callable
            Maps an exception to RETRYABLE or PERMANENT
        operation_name : str
            Human-readable operation name for logging and error context
        deadline : Optional[float]
            Absolute time on this policy's clock after which no further
            attempt or sleep starts

        Returns
        -------
        T
            The result of the first successful attempt

        Raises
        ------
        DataStoreError
            The original error on a permanent failure (foreign exceptions are
            wrapped in BackendError), with `attempts` set
        RetryExhausted
            When every attempt failed with a retryable error
        OperationTimeout
            When the deadline elapsed
        """
        attempt = 0

        while True:
            attempt += 1
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                raise OperationTimeout(operation_name, None, attempt - 1)

            try:
                if remaining is None:
                    result = await operation()
                else:
                    result = await asyncio.wait_for(operation(), timeout=remaining)
            except asyncio.TimeoutError as exc:
                # wait_for expiring is the caller deadline; a backend raising
                # TimeoutError on its own is an ordinary transient failure.
                if self._deadline_passed(deadline):
                    raise OperationTimeout(operation_name, remaining, attempt) from exc
                error: BaseException = exc
            except Exception as exc:
                error = exc
            else:
                if attempt > 1:
                    logger.info(
                        "DataStore operation succeeded after retry",
                        extra={"operation": operation_name, "attempt": attempt},
                    )
                return result

            if classify(error) is ErrorClass.PERMANENT:
                logger.warning(
                    "DataStore operation failed with non-retryable error",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "error": str(error),
                        "error_type": type(error).__name__,
                    },
                )
                wrapped = self._as_datastore_error(error, operation_name).with_context(
                    operation=operation_name, attempts=attempt
                )
                if wrapped is error:
                    raise wrapped
                raise wrapped from error

            if attempt >= self.max_attempts:
                logger.error(
                    "DataStore operation failed after all retries",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt,
                        "error": str(error),
                        "error_type": type(error).__name__,
                    },
                )
                raise RetryExhausted(operation_name, attempt, error)

            delay = self.compute_delay(attempt, error)
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= delay:
                raise OperationTimeout(operation_name, None, attempt) from error

            logger.warning(
                "DataStore operation failed, retrying",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "total_attempts": self.max_attempts,
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "retry_delay_seconds": round(delay, 3),
                },
            )
            await self._sleep(delay)

    # ═══════════════════════════════════════════════════════════════════════
    # BACKOFF CALCULATION
    # ═══════════════════════════════════════════════════════════════════════

    def base_delay_for(self, attempt: int) -> float:
        """Un-jittered delay after failed attempt `attempt` (1-indexed)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = self.base_delay_for(attempt)
        if self.jitter:
            delay *= self._rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)

        if isinstance(error, Throttled) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, self.max_delay))

        return max(0.0, delay)

    # ═══════════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - self._clock()

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self._clock() >= deadline

    @staticmethod
    def _as_datastore_error(error: BaseException, operation_name: str) -> DataStoreError:
        if isinstance(error, DataStoreError):
            return error
        return BackendError(operation_name, error)
