"""
Infrastructure exceptions for the datastore access layer.

Purpose
-------
Define the structured exception hierarchy for everything that can go wrong
between a caller and the remote key-value backend: request budget
exhaustion, backend throttling, transient network failures, permanent
rejections, and retry exhaustion.

Design Notes
------------
- All errors inherit from `DataStoreError`.
- Each exception carries:
  - `message`: human-readable description
  - `details`: additional structured context (dict)
  - `severity`: `ErrorSeverity` value for logging/alerting
  - `is_retryable`: whether RetryPolicy may try the call again
  - `error_code`: short, stable identifier for programmatic use
  - `operation` / `attempts`: filled in at the retry boundary
- The access layer returns these as values on its result objects for
  expected failures. They are raised only inside the layer (backends and
  RetryPolicy) and by RetryPolicy to its direct callers.
- Helper functions (`is_transient_error`, `get_error_severity`,
  `should_alert`) centralize common exception handling patterns.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(Enum):
    """Error severity levels for logging and alerting."""

    DEBUG = "debug"  # Expected, not concerning (e.g., budget denial)
    INFO = "info"  # Normal operation (e.g., invalid key from caller)
    WARNING = "warning"  # Concerning but handled (e.g., retryable errors)
    ERROR = "error"  # Unexpected errors requiring attention
    CRITICAL = "critical"  # System-level failures requiring immediate action


class DataStoreError(Exception):
    """
    Base exception for all datastore access errors.

    Args:
        message: Human-readable error message
        details: Additional structured data about the error
        severity: Error severity level for logging handlers
        is_retryable: Whether the operation can be retried
        error_code: Optional code for programmatic handling

    Example:
        >>> raise DataStoreError(
        ...     "Backend rejected request",
        ...     {"store": "PlayerData", "key": "player_1"}
        ... )
    """

    DEFAULT_SEVERITY: ErrorSeverity = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE: bool = False
    DEFAULT_ERROR_CODE: Optional[str] = None

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[ErrorSeverity] = None,
        is_retryable: Optional[bool] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        self.severity: ErrorSeverity = severity or self.DEFAULT_SEVERITY
        self.is_retryable: bool = (
            is_retryable if is_retryable is not None else self.DEFAULT_RETRYABLE
        )
        self.error_code: str = (
            error_code or self.DEFAULT_ERROR_CODE or self.__class__.__name__
        )
        self.operation: Optional[str] = None
        self.attempts: int = 0
        super().__init__(self.message)

    def with_context(
        self,
        operation: Optional[str] = None,
        attempts: Optional[int] = None,
        **details: Any,
    ) -> "DataStoreError":
        """Attach call-site context and return self for re-raising."""
        if operation is not None:
            self.operation = operation
        if attempts is not None:
            self.attempts = attempts
        self.details.update({k: v for k, v in details.items() if v is not None})
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "severity": self.severity.value,
            "is_retryable": self.is_retryable,
            "operation": self.operation,
            "attempts": self.attempts,
        }

    def log_extra(self) -> Dict[str, Any]:
        """to_dict() keyed for `logger.*(extra=...)`; LogRecord reserves `message`."""
        fields = self.to_dict()
        fields["error_message"] = fields.pop("message")
        return fields

    def __str__(self) -> str:
        details_str = f" | Details: {self.details}" if self.details else ""
        return f"[{self.error_code}] {self.message}{details_str}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"details={self.details!r}, "
            f"severity={self.severity.value!r}, "
            f"is_retryable={self.is_retryable!r}"
            ")"
        )


# ============================================================================
# Admission / rate limiting
# ============================================================================


class BudgetExceeded(DataStoreError):
    """
    Raised (or returned) when the local request budget for an operation class
    is exhausted.

    Never retried automatically: retrying inside the same window would fail
    again. Callers decide whether to wait `retry_after` seconds or degrade.
    """

    DEFAULT_SEVERITY = ErrorSeverity.DEBUG
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "DS003"

    def __init__(self, operation_class: str, retry_after: float) -> None:
        self.operation_class = operation_class
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Request budget exhausted for {operation_class} operations",
            details={
                "operation_class": operation_class,
                "retry_after_seconds": round(self.retry_after, 3),
            },
        )


class Throttled(DataStoreError):
    """Backend rejected this specific call because of its own rate limits."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True
    DEFAULT_ERROR_CODE = "THROTTLED"

    def __init__(
        self,
        message: str = "Request was throttled",
        retry_after: Optional[float] = None,
    ) -> None:
        self.retry_after = retry_after
        details = {"retry_after_seconds": retry_after} if retry_after is not None else {}
        super().__init__(message, details=details)


class TransientError(DataStoreError):
    """Timeout, connection reset or other temporary backend failure."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = True
    DEFAULT_ERROR_CODE = "TRANSIENT"

    def __init__(self, message: str, original_error: Optional[BaseException] = None) -> None:
        self.original_error = original_error
        details: Dict[str, Any] = {}
        if original_error is not None:
            details = {
                "error": str(original_error),
                "error_type": type(original_error).__name__,
            }
        super().__init__(message, details=details)


# ============================================================================
# Permanent rejections
# ============================================================================


class PayloadTooLarge(DataStoreError):
    """Serialized value exceeds the backend size ceiling."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "DS004"

    def __init__(self, size_bytes: int, limit_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"Data too large: {size_bytes} bytes exceeds limit of {limit_bytes} bytes",
            details={"size_bytes": size_bytes, "limit_bytes": limit_bytes},
        )


class InvalidPayload(DataStoreError):
    """Value cannot be serialized to JSON."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "INVALID_PAYLOAD"

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Value is not JSON-serializable: {reason}", details={"reason": reason})


class InvalidKey(DataStoreError):
    """Key, store name or scope does not satisfy the backend naming rules."""

    DEFAULT_SEVERITY = ErrorSeverity.INFO
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "INVALID_KEY"

    def __init__(self, field_name: str, value: str, reason: str) -> None:
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(
            f"Invalid {field_name} {value!r}: {reason}",
            details={"field": field_name, "value": value, "reason": reason},
        )


class Unauthorized(DataStoreError):
    """Caller lacks permission for the backend operation."""

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "DS002"

    def __init__(self, message: str = "Access denied by backend") -> None:
        super().__init__(message)


class BackendError(DataStoreError):
    """
    Wraps an unclassified backend exception.

    Unknown failures are treated as permanent: retrying an error nobody
    recognises risks repeating a side effect.
    """

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "BACKEND_ERROR"

    def __init__(self, operation: str, original_error: BaseException) -> None:
        self.original_error = original_error
        super().__init__(
            f"Backend error during {operation}: {original_error}",
            details={
                "error": str(original_error),
                "error_type": type(original_error).__name__,
            },
        )
        self.operation = operation


# ============================================================================
# Terminal outcomes
# ============================================================================


class RetryExhausted(DataStoreError):
    """All attempts failed with retryable errors; wraps the last one."""

    DEFAULT_SEVERITY = ErrorSeverity.ERROR
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}",
            details={
                "last_error": str(last_error),
                "last_error_type": type(last_error).__name__,
            },
        )
        self.operation = operation
        self.attempts = attempts
        self.__cause__ = last_error

    @property
    def caused_by_throttling(self) -> bool:
        """True when the backend was still throttling on the final attempt."""
        return isinstance(self.last_error, Throttled)


class OperationTimeout(DataStoreError):
    """Caller-supplied deadline elapsed before the operation completed."""

    DEFAULT_SEVERITY = ErrorSeverity.WARNING
    DEFAULT_RETRYABLE = False
    DEFAULT_ERROR_CODE = "TIMEOUT"

    def __init__(self, operation: str, timeout: Optional[float], attempts: int) -> None:
        super().__init__(
            f"{operation} timed out",
            details={"timeout_seconds": timeout},
        )
        self.operation = operation
        self.attempts = attempts


# ============================================================================
# Helper Functions
# ============================================================================


def is_transient_error(exc: BaseException) -> bool:
    """Return True when `exc` is worth retrying."""
    if isinstance(exc, DataStoreError):
        return exc.is_retryable
    return isinstance(exc, (TimeoutError, ConnectionError))


def get_error_severity(exc: BaseException) -> ErrorSeverity:
    """Severity for logging; unknown exceptions count as errors."""
    if isinstance(exc, DataStoreError):
        return exc.severity
    return ErrorSeverity.ERROR


def should_alert(exc: BaseException) -> bool:
    """Only ERROR and CRITICAL failures warrant operator attention."""
    return get_error_severity(exc) in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL)
