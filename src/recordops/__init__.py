"""recordops: batched record mutation with partial success.

Applies insert, update, delete, upsert and merge operations to ordered record
batches against a pluggable store, reports one Result per record, unwinds
work through savepoints and resubmits corrected failures.
"""

__version__ = "0.1.0"

# Logging exports
from recordops.logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Data model exports
from recordops.models import (
    BatchRequest,
    ErrorDescriptor,
    Operation,
    Record,
    Result,
    StatusCode,
)

# Error exports
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

# Config exports
from recordops.config import (
    BatchConfig,
    Config,
    LoggingConfig,
    RetryConfig,
    StoreConfig,
    load_config,
)

# Persistence exports
from recordops.persistence import InMemoryStore, Store

# Core exports
from recordops.core import (
    BatchExecutor,
    FailedRecord,
    RecordState,
    RetryCoordinator,
    RetryOutcome,
    Savepoint,
    TransactionManager,
    TransactionState,
    extract_failures,
)

__all__ = [
    "__version__",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Data model
    "BatchRequest",
    "ErrorDescriptor",
    "Operation",
    "Record",
    "Result",
    "StatusCode",
    # Errors
    "BatchFailure",
    "BatchSizeExceededError",
    "ConfigurationError",
    "ErrorClassifier",
    "FatalError",
    "InvalidSavepointError",
    "RecordOpsError",
    "RetryableError",
    "StoreUnavailableError",
    "TerminalFailure",
    "TransactionStateError",
    # Config
    "BatchConfig",
    "Config",
    "LoggingConfig",
    "RetryConfig",
    "StoreConfig",
    "load_config",
    # Persistence
    "InMemoryStore",
    "Store",
    # Core
    "BatchExecutor",
    "FailedRecord",
    "RecordState",
    "RetryCoordinator",
    "RetryOutcome",
    "Savepoint",
    "TransactionManager",
    "TransactionState",
    "extract_failures",
]
