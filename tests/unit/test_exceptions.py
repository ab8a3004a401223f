"""
Unit tests for the datastore exception hierarchy and helpers.
"""

import pytest

from datastore_manager.core.exceptions import (
    BackendError,
    BudgetExceeded,
    DataStoreError,
    ErrorSeverity,
    InvalidKey,
    OperationTimeout,
    RetryExhausted,
    Throttled,
    TransientError,
    Unauthorized,
    get_error_severity,
    is_transient_error,
    should_alert,
)


@pytest.mark.unit
class TestDataStoreError:
    """Test base error behaviour."""

    def test_defaults(self):
        error = DataStoreError("boom")

        assert error.error_code == "DataStoreError"
        assert error.severity is ErrorSeverity.ERROR
        assert not error.is_retryable
        assert str(error) == "[DataStoreError] boom"

    def test_with_context_skips_none_and_returns_self(self):
        error = DataStoreError("boom")

        result = error.with_context(operation="read", attempts=2, store="Players", key=None)

        assert result is error
        assert error.operation == "read"
        assert error.attempts == 2
        assert error.details == {"store": "Players"}

    def test_to_dict_and_log_extra(self):
        error = Throttled(retry_after=2.0).with_context(operation="write")

        as_dict = error.to_dict()
        extra = error.log_extra()

        assert as_dict["message"] == "Request was throttled"
        assert as_dict["details"] == {"retry_after_seconds": 2.0}
        assert "message" not in extra
        assert extra["error_message"] == "Request was throttled"
        assert extra["operation"] == "write"


@pytest.mark.unit
class TestSubclasses:
    """Test the structured fields of each error."""

    def test_budget_exceeded_clamps_retry_after(self):
        error = BudgetExceeded("read", -1.0)

        assert error.retry_after == 0.0
        assert error.error_code == "DS003"
        assert not error.is_retryable

    def test_transient_error_records_original(self):
        original = ConnectionResetError("peer reset")

        error = TransientError("connection lost", original)

        assert error.is_retryable
        assert error.details["error_type"] == "ConnectionResetError"

    def test_invalid_key_fields(self):
        error = InvalidKey("key", "a b", "bad characters")

        assert error.details == {"field": "key", "value": "a b", "reason": "bad characters"}

    def test_retry_exhausted_chains_last_error(self):
        last = Throttled()

        error = RetryExhausted("read", 3, last)

        assert error.__cause__ is last
        assert error.attempts == 3
        assert error.caused_by_throttling

    def test_backend_error_keeps_operation(self):
        error = BackendError("list", ValueError("bad"))

        assert error.operation == "list"
        assert error.details["error"] == "bad"

    def test_timeout_details(self):
        error = OperationTimeout("get", 2.5, attempts=1)

        assert error.details == {"timeout_seconds": 2.5}


@pytest.mark.unit
class TestHelpers:
    """Test classification helpers."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (Throttled(), True),
            (TransientError("x"), True),
            (Unauthorized(), False),
            (TimeoutError(), True),
            (ConnectionError(), True),
            (ValueError(), False),
        ],
    )
    def test_is_transient_error(self, error, expected):
        assert is_transient_error(error) is expected

    def test_severity_and_alerting(self):
        assert get_error_severity(BudgetExceeded("read", 1.0)) is ErrorSeverity.DEBUG
        assert get_error_severity(RuntimeError()) is ErrorSeverity.ERROR
        assert should_alert(Unauthorized())
        assert not should_alert(Throttled())
