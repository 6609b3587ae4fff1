"""Core engine: batch execution, savepoint transactions, retry."""

from recordops.core.executor import BatchExecutor
from recordops.core.retry import (
    FailedRecord,
    RecordState,
    RetryCoordinator,
    RetryOutcome,
    calculate_delay,
    extract_failures,
)
from recordops.core.transaction import Savepoint, TransactionManager, TransactionState

__all__ = [
    # Executor
    "BatchExecutor",
    # Transactions
    "Savepoint",
    "TransactionManager",
    "TransactionState",
    # Retry
    "FailedRecord",
    "RecordState",
    "RetryCoordinator",
    "RetryOutcome",
    "calculate_delay",
    "extract_failures",
]
