"""Error handling for recordops.

Provides:
- Custom exception hierarchy for structured error handling
- Error classification system (retryable vs terminal)

Per-record failures are reported inside Results and never raised; the
exceptions here cover engine misuse, atomic batch failure, store outages and
retry exhaustion.
"""

import sys
import traceback
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, Mapping, Optional, Union

from recordops.logging import get_logger
from recordops.models import ErrorDescriptor, Result, StatusCode

if TYPE_CHECKING:
    from recordops.core.retry import RetryOutcome

logger = get_logger(__name__, component="errors")


# ============================================================================
# Exception Hierarchy
# ============================================================================


class RecordOpsError(Exception):
    """Base exception for all recordops errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN",
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now(timezone.utc)

        self.stack_trace = "".join(traceback.format_exception(*sys.exc_info()))
        if self.stack_trace.strip() == "NoneType: None" or not self.stack_trace.strip():
            self.stack_trace = "".join(traceback.format_stack())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
            "stack_trace": self.stack_trace,
        }


class RetryableError(RecordOpsError):
    """Errors that can be retried (transient failures)."""

    def __init__(self, message: str, code: str = "RETRYABLE", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details, recoverable=True)


class FatalError(RecordOpsError):
    """Errors that cannot be retried (permanent failures)."""

    def __init__(self, message: str, code: str = "FATAL", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details, recoverable=False)


class StoreUnavailableError(RetryableError):
    """The backing store could not be reached at all."""

    def __init__(self, message: str = "Store is unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=StatusCode.STORE_UNAVAILABLE.value, details=details)


class InvalidSavepointError(FatalError):
    """Savepoint is unknown, released, or superseded by a rollback."""

    def __init__(self, message: str, savepoint_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        if savepoint_id:
            details["savepoint_id"] = savepoint_id
        super().__init__(message, code=StatusCode.INVALID_SAVEPOINT.value, details=details)
        self.savepoint_id = savepoint_id


class TransactionStateError(FatalError):
    """Operation not allowed in the current transaction state."""

    def __init__(self, message: str, state: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        if state:
            details["state"] = state
        super().__init__(message, code="TRANSACTION_STATE", details=details)


class BatchSizeExceededError(FatalError):
    """Batch holds more records than the configured ceiling."""

    def __init__(self, size: int, max_size: int):
        super().__init__(
            f"Batch of {size} records exceeds the maximum of {max_size}",
            code="BATCH_SIZE_EXCEEDED",
            details={"size": size, "max_size": max_size},
        )
        self.size = size
        self.max_size = max_size


class ConfigurationError(FatalError):
    """Configuration errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class BatchFailure(FatalError):
    """An atomic batch failed as a whole, or the store was unreachable.

    ``error`` is the first failure encountered and ``index`` the position of
    the record it belongs to, when there is one.
    """

    def __init__(self, error: ErrorDescriptor, index: Optional[int] = None):
        where = f" at index {index}" if index is not None else ""
        super().__init__(
            f"Batch failed{where}: {error}",
            code=error.status_code.value,
            details={"index": index, "affected_fields": sorted(error.affected_fields)},
        )
        self.error = error
        self.index = index


class TerminalFailure(FatalError):
    """Retry budget exhausted, or a failure that cannot be retried.

    ``result`` is the last Result of the first terminal record; ``failures``
    maps every terminal index to its last Result; ``outcome`` holds the full
    ordered Result list.
    """

    def __init__(
        self,
        result: Result,
        failures: Optional[Mapping[int, Result]] = None,
        outcome: Optional["RetryOutcome"] = None,
    ):
        failures = dict(failures or {result.index: result})
        super().__init__(
            f"{len(failures)} record(s) failed terminally; first at index {result.index}: "
            f"{result.first_error}",
            code=StatusCode.TERMINAL_FAILURE.value,
            details={"indexes": sorted(failures)},
        )
        self.result = result
        self.failures = failures
        self.outcome = outcome


# ============================================================================
# Error Classification
# ============================================================================


DEFAULT_RETRYABLE_CODES = frozenset(
    {
        StatusCode.STORE_UNAVAILABLE,
        StatusCode.VALIDATION_ERROR,
        StatusCode.MISSING_IDENTITY,
        StatusCode.MISSING_EXTERNAL_KEY,
        StatusCode.DUPLICATE_VALUE,
        StatusCode.DUPLICATE_EXTERNAL_KEY,
    }
)


class ErrorClassifier:
    """Classifies failures as retryable or terminal.

    Validation-type kinds count as retryable because the caller can correct
    the record before resubmitting; ``CONSTRAINT_VIOLATION``, ``NOT_FOUND``
    and ``INVALID_SAVEPOINT`` are terminal.
    """

    def __init__(self, retryable_codes: Optional[Iterable[StatusCode]] = None):
        self.retryable_codes = (
            frozenset(retryable_codes) if retryable_codes is not None else DEFAULT_RETRYABLE_CODES
        )

    def is_retryable(self, error: Union[StatusCode, ErrorDescriptor, Exception]) -> bool:
        """Classify a status code, error descriptor or exception."""
        if isinstance(error, RecordOpsError):
            return error.recoverable
        if isinstance(error, ErrorDescriptor):
            return error.status_code in self.retryable_codes
        if isinstance(error, StatusCode):
            return error in self.retryable_codes
        logger.warning("error_classification_unknown", error=str(error))
        return False

    def is_result_retryable(self, result: Result) -> bool:
        """A failed result is retryable only if every error on it is."""
        if result.success:
            return False
        return all(self.is_retryable(error) for error in result.errors)
