"""Tests for the error hierarchy and classification."""

import pytest

from recordops.errors import (
    BatchFailure,
    BatchSizeExceededError,
    ConfigurationError,
    ErrorClassifier,
    FatalError,
    InvalidSavepointError,
    RecordOpsError,
    RetryableError,
    StoreUnavailableError,
    TerminalFailure,
    TransactionStateError,
)
from recordops.models import ErrorDescriptor, Result, StatusCode


def _descriptor(code, *fields):
    return ErrorDescriptor(status_code=code, message="bad", affected_fields=set(fields))


class TestHierarchy:
    """Tests for exception classes."""

    @pytest.mark.parametrize(
        "error,recoverable",
        [
            (StoreUnavailableError(), True),
            (InvalidSavepointError("gone", savepoint_id="sp1"), False),
            (TransactionStateError("idle", state="no_active_transaction"), False),
            (BatchSizeExceededError(10, 5), False),
            (ConfigurationError("bad"), False),
            (BatchFailure(_descriptor(StatusCode.NOT_FOUND)), False),
        ],
    )
    def test_recoverable_flag(self, error, recoverable):
        assert isinstance(error, RecordOpsError)
        assert error.recoverable is recoverable

    def test_store_unavailable_is_retryable(self):
        assert isinstance(StoreUnavailableError(), RetryableError)
        assert StoreUnavailableError().code == "store_unavailable"

    def test_to_dict(self):
        """Test serialization includes type, code and details."""
        error = InvalidSavepointError("Savepoint gone", savepoint_id="sp_9")

        data = error.to_dict()

        assert data["type"] == "InvalidSavepointError"
        assert data["code"] == "invalid_savepoint"
        assert data["details"] == {"savepoint_id": "sp_9"}
        assert data["recoverable"] is False
        assert "timestamp" in data
        assert data["stack_trace"]

    def test_batch_failure_message(self):
        error = BatchFailure(_descriptor(StatusCode.VALIDATION_ERROR, "name"), index=4)

        assert error.index == 4
        assert error.code == "validation_error"
        assert "at index 4" in str(error)
        assert error.details["affected_fields"] == ["name"]

    def test_batch_failure_without_index(self):
        error = BatchFailure(_descriptor(StatusCode.STORE_UNAVAILABLE))

        assert error.index is None
        assert "index" not in str(error)

    def test_terminal_failure(self):
        """Test terminal failure lists every terminal index."""
        first = Result.failed(1, _descriptor(StatusCode.NOT_FOUND))
        second = Result.failed(3, _descriptor(StatusCode.CONSTRAINT_VIOLATION))

        error = TerminalFailure(first, {1: first, 3: second})

        assert isinstance(error, FatalError)
        assert error.code == "terminal_failure"
        assert error.result is first
        assert error.details == {"indexes": [1, 3]}
        assert error.outcome is None

    def test_terminal_failure_single(self):
        result = Result.failed(0, _descriptor(StatusCode.NOT_FOUND))

        assert TerminalFailure(result).failures == {0: result}


class TestErrorClassifier:
    """Tests for retryable/terminal classification."""

    @pytest.mark.parametrize(
        "code",
        [
            StatusCode.STORE_UNAVAILABLE,
            StatusCode.VALIDATION_ERROR,
            StatusCode.MISSING_IDENTITY,
            StatusCode.MISSING_EXTERNAL_KEY,
            StatusCode.DUPLICATE_VALUE,
        ],
    )
    def test_retryable_codes(self, code):
        assert ErrorClassifier().is_retryable(code)

    @pytest.mark.parametrize(
        "code",
        [
            StatusCode.NOT_FOUND,
            StatusCode.CONSTRAINT_VIOLATION,
            StatusCode.INVALID_SAVEPOINT,
            StatusCode.INVALID_FIELD,
        ],
    )
    def test_terminal_codes(self, code):
        assert not ErrorClassifier().is_retryable(code)

    def test_exceptions_use_recoverable(self):
        classifier = ErrorClassifier()

        assert classifier.is_retryable(StoreUnavailableError())
        assert not classifier.is_retryable(ConfigurationError("bad"))
        assert not classifier.is_retryable(KeyError("x"))

    def test_result_needs_every_error_retryable(self):
        """Test one terminal error makes the whole result terminal."""
        classifier = ErrorClassifier()
        mixed = Result.failed(
            0,
            _descriptor(StatusCode.VALIDATION_ERROR),
            _descriptor(StatusCode.NOT_FOUND),
        )

        assert not classifier.is_result_retryable(mixed)
        assert classifier.is_result_retryable(Result.failed(0, _descriptor(StatusCode.VALIDATION_ERROR)))
        assert not classifier.is_result_retryable(Result.ok(0, "x"))

    def test_custom_codes(self):
        classifier = ErrorClassifier([StatusCode.NOT_FOUND])

        assert classifier.is_retryable(_descriptor(StatusCode.NOT_FOUND))
        assert not classifier.is_retryable(_descriptor(StatusCode.VALIDATION_ERROR))
