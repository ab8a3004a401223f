"""
Request Budget

Purpose
-------
Keep the access layer under the backend's request-rate ceiling. The backend
rejects calls beyond its budget outright, so every remote call is gated here
first.

Responsibilities
----------------
- One fixed window per operation class (read / write / delete / list)
- Non-blocking admission: `admit()` returns False when exhausted, never raises
- Report time until the window resets, for callers that prefer to wait
- Pause a class for a cooldown after the backend kept throttling it
- Count admissions and denials per class

Non-Responsibilities
--------------------
- No waiting or queueing (callers decide)
- No retries (handled by retry_policy.py)

Architecture Notes
------------------
- Reset-on-expiry fixed window: when `now - window_start >= window_seconds`
  the window restarts at `now` with `remaining = max_per_window`.
- `remaining` never goes negative.
- Each mutation happens under a threading.Lock held only for the in-memory
  update, so the budget is safe from worker threads as well as the loop.
- The clock is injectable for deterministic tests.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Mapping, Optional

from datastore_manager.core.config.settings import DataStoreConfig
from datastore_manager.core.datastore.types import OperationType
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class BudgetLimit:
    max_per_window: int
    window_seconds: float

    def __post_init__(self) -> None:
        if self.max_per_window < 1:
            raise ValueError("max_per_window must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass(frozen=True)
class RequestBudgetState:
    """Point-in-time view of one operation class."""

    operation_class: OperationType
    remaining: int
    window_start: float
    window_seconds: float
    max_per_window: int
    throttled_until: Optional[float]
    admitted: int
    denied: int


class _Window:
    __slots__ = (
        "limit",
        "remaining",
        "window_start",
        "throttled_until",
        "throttle_reason",
        "admitted",
        "denied",
    )

    def __init__(self, limit: BudgetLimit, now: float) -> None:
        self.limit = limit
        self.remaining = limit.max_per_window
        self.window_start = now
        self.throttled_until: Optional[float] = None
        self.throttle_reason: Optional[str] = None
        self.admitted = 0
        self.denied = 0

    def roll(self, now: float) -> None:
        if now - self.window_start >= self.limit.window_seconds:
            self.remaining = self.limit.max_per_window
            self.window_start = now
        if self.throttled_until is not None and now >= self.throttled_until:
            self.throttled_until = None
            self.throttle_reason = None


class RequestBudget:
    """
    Per-operation-class fixed-window request budget.

    Example
    -------
    >>> budget = RequestBudget.from_config(DataStoreConfig())
    >>> if not budget.admit(OperationType.READ):
    ...     wait = budget.time_until_reset(OperationType.READ)
    """

    def __init__(
        self,
        limits: Mapping[OperationType, BudgetLimit],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        missing = [op for op in OperationType if op not in limits]
        if missing:
            raise ValueError(f"Missing budget limits for: {[op.value for op in missing]}")

        self._clock = clock
        self._lock = Lock()
        now = clock()
        self._windows: Dict[OperationType, _Window] = {
            op: _Window(limits[op], now) for op in OperationType
        }

        logger.debug(
            "RequestBudget initialized",
            extra={
                "limits": {
                    op.value: {
                        "max_per_window": w.limit.max_per_window,
                        "window_seconds": w.limit.window_seconds,
                    }
                    for op, w in self._windows.items()
                }
            },
        )

    @classmethod
    def from_config(
        cls,
        config: DataStoreConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> "RequestBudget":
        limits = {
            op: BudgetLimit(config.request_budget_per_window, config.window_seconds(op.value))
            for op in OperationType
        }
        return cls(limits, clock=clock)

    # ════════════════════════════════════════════════════════════════════
    # Admission
    # ════════════════════════════════════════════════════════════════════

    def admit(self, operation_class: OperationType) -> bool:
        """
        Consume one request from the class budget if any is left.

        Returns
        -------
        bool
            True when admitted. False when the window is exhausted or the
            class is cooling down after backend throttling.
        """
        with self._lock:
            window = self._windows[operation_class]
            window.roll(self._clock())

            if window.throttled_until is not None or window.remaining <= 0:
                window.denied += 1
                return False

            window.remaining -= 1
            window.admitted += 1
            return True

    def time_until_reset(self, operation_class: OperationType) -> float:
        """Seconds until the class can be admitted again (0.0 if it can now)."""
        with self._lock:
            window = self._windows[operation_class]
            now = self._clock()
            window.roll(now)

            wait = 0.0
            if window.remaining <= 0:
                wait = window.window_start + window.limit.window_seconds - now
            if window.throttled_until is not None:
                wait = max(wait, window.throttled_until - now)
            return max(0.0, wait)

    def remaining(self, operation_class: OperationType) -> int:
        with self._lock:
            window = self._windows[operation_class]
            window.roll(self._clock())
            return window.remaining

    # ════════════════════════════════════════════════════════════════════
    # Backend throttle cooldown
    # ════════════════════════════════════════════════════════════════════

    def throttle(self, operation_class: OperationType, seconds: float, reason: str = "backend") -> None:
        """Refuse admission for `operation_class` for the next `seconds`."""
        if seconds <= 0:
            return
        with self._lock:
            window = self._windows[operation_class]
            until = self._clock() + seconds
            if window.throttled_until is None or until > window.throttled_until:
                window.throttled_until = until
                window.throttle_reason = reason

        logger.warning(
            "Operation class throttled",
            extra={
                "operation_class": operation_class.value,
                "cooldown_seconds": seconds,
                "reason": reason,
            },
        )

    def clear_throttle(self, operation_class: Optional[OperationType] = None) -> None:
        with self._lock:
            targets = [operation_class] if operation_class else list(OperationType)
            for op in targets:
                self._windows[op].throttled_until = None
                self._windows[op].throttle_reason = None

    def is_throttled(self, operation_class: OperationType) -> bool:
        with self._lock:
            window = self._windows[operation_class]
            window.roll(self._clock())
            return window.throttled_until is not None

    # ════════════════════════════════════════════════════════════════════
    # Inspection / reset
    # ════════════════════════════════════════════════════════════════════

    def state(self, operation_class: OperationType) -> RequestBudgetState:
        with self._lock:
            window = self._windows[operation_class]
            window.roll(self._clock())
            return RequestBudgetState(
                operation_class=operation_class,
                remaining=window.remaining,
                window_start=window.window_start,
                window_seconds=window.limit.window_seconds,
                max_per_window=window.limit.max_per_window,
                throttled_until=window.throttled_until,
                admitted=window.admitted,
                denied=window.denied,
            )

    def snapshot(self) -> Dict[str, RequestBudgetState]:
        return {op.value: self.state(op) for op in OperationType}

    def reset(self, operation_class: Optional[OperationType] = None) -> None:
        """Restore full budgets and clear counters (tests and operator tooling)."""
        with self._lock:
            now = self._clock()
            targets = [operation_class] if operation_class else list(OperationType)
            for op in targets:
                self._windows[op] = _Window(self._windows[op].limit, now)
