"""Retry-after-correction for partially failed batches.

Given the records and Results of a non-atomic batch, the coordinator hands
each failed record to a caller-supplied correction function and resubmits the
corrected subset, bounded by a per-record budget.
"""

import random
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from recordops.config import RetryConfig
from recordops.core.executor import BatchExecutor
from recordops.errors import BatchFailure, ErrorClassifier, TerminalFailure
from recordops.logging import get_logger
from recordops.metrics import get_metrics_collector
from recordops.models import (
    BatchRequest,
    ErrorDescriptor,
    Operation,
    Record,
    Result,
    StatusCode,
)

logger = get_logger(__name__, component="retry")
metrics = get_metrics_collector()

Correction = Callable[[Record, List[ErrorDescriptor]], Optional[Record]]
IdempotencyCheck = Callable[[Record], Optional[str]]


class RecordState(str, Enum):
    """Per-record retry state."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class FailedRecord(BaseModel):
    """A failed record paired with the errors reported for it."""

    index: int = Field(ge=0, description="Position in the original batch")
    record: Record
    errors: List[ErrorDescriptor]


class RetryOutcome(BaseModel):
    """Merged view of a batch after resubmission."""

    results: List[Result] = Field(description="Latest Result per original index")
    states: Dict[int, RecordState] = Field(default_factory=dict)
    attempts: Dict[int, int] = Field(
        default_factory=dict, description="Resubmissions per originally failed index"
    )
    rounds: int = Field(default=0, ge=0)

    @property
    def succeeded(self) -> List[int]:
        return sorted(i for i, state in self.states.items() if state == RecordState.SUCCEEDED)

    @property
    def terminal(self) -> List[int]:
        return sorted(i for i, state in self.states.items() if state == RecordState.FAILED_TERMINAL)


def extract_failures(records: Sequence[Record], results: Sequence[Result]) -> List[FailedRecord]:
    """Pair every failed Result with the record at the same index.

    Raises:
        ValueError: If ``records`` and ``results`` are not index-aligned.
    """
    if len(records) != len(results):
        raise ValueError(f"Got {len(results)} results for {len(records)} records")
    failures = []
    for index, (record, result) in enumerate(zip(records, results)):
        if result.index != index:
            raise ValueError(f"Result at position {index} describes index {result.index}")
        if not result.success:
            failures.append(FailedRecord(index=index, record=record, errors=list(result.errors)))
    return failures


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate retry delay with exponential backoff and jitter.

    Args:
        attempt: Current round number (0-indexed).
        config: Retry configuration.

    Returns:
        Delay in seconds.
    """
    delay_ms = min(
        config.base_delay_ms * (config.exponential_base ** attempt),
        config.max_delay_ms,
    )

    if config.jitter:
        jitter_amount = delay_ms * config.jitter_ratio
        delay_ms += random.uniform(-jitter_amount, jitter_amount)

    return max(0, delay_ms) / 1000.0


class RetryCoordinator:
    """Drives bounded resubmission of corrected records.

    Example:
        >>> coordinator = RetryCoordinator(executor, RetryConfig(budget=2))
        >>> results = executor.execute(request)
        >>> def fill_name(record, errors):
        ...     return record.model_copy(update={"fields": {**record.fields, "name": "n/a"}})
        >>> outcome = coordinator.resubmit(request, results, fill_name)
    """

    def __init__(
        self,
        executor: BatchExecutor,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.config = config or RetryConfig()
        self.classifier = ErrorClassifier(self.config.retryable_codes)
        self._sleep = sleep

    def resubmit(
        self,
        request: BatchRequest,
        results: Sequence[Result],
        correct: Correction,
        already_applied: Optional[IdempotencyCheck] = None,
    ) -> RetryOutcome:
        """Correct and resubmit failed records until they succeed or run out
        of budget.

        Args:
            request: The original non-atomic request.
            results: Its Results, index-aligned with ``request.records``.
            correct: Returns the corrected record, or None to give up on it.
            already_applied: Consulted before resubmitting a record whose last
                failure was STORE_UNAVAILABLE; returning an identity marks the
                record as succeeded without resubmitting it. Its Result leaves
                ``created`` unset since the hook cannot tell insert from update.

        Returns:
            The merged outcome when every failed record ends up succeeding.

        Raises:
            ValueError: If the request is atomic or results are misaligned.
            TerminalFailure: If any record exhausts its budget, fails with a
                non-retryable error, or is abandoned by ``correct``.
        """
        if request.all_or_nothing:
            raise ValueError("Atomic batches fail as a whole and cannot be retried per record")

        failures = extract_failures(request.records, results)
        merged = list(results)
        states: Dict[int, RecordState] = {
            index: RecordState.SUCCEEDED for index, result in enumerate(results) if result.success
        }
        attempts: Dict[int, int] = {}
        current: Dict[int, Record] = {}
        for failure in failures:
            attempts[failure.index] = 0
            current[failure.index] = failure.record
            if self.classifier.is_result_retryable(merged[failure.index]):
                states[failure.index] = RecordState.FAILED_RETRYABLE
            else:
                states[failure.index] = RecordState.FAILED_TERMINAL

        logger.info(
            "retry_started",
            operation=request.operation.value,
            failed=len(failures),
            retryable=sum(1 for s in states.values() if s == RecordState.FAILED_RETRYABLE),
            budget=self.config.budget,
        )

        rounds = 0
        while True:
            batch_indexes: List[int] = []
            batch_records: List[Record] = []
            for index in sorted(i for i, s in states.items() if s == RecordState.FAILED_RETRYABLE):
                record = self._prepare(request, index, merged, states, current, correct, already_applied)
                if record is not None:
                    batch_indexes.append(index)
                    batch_records.append(record)
            if not batch_indexes:
                break

            delay = calculate_delay(rounds, self.config)
            if delay > 0:
                self._sleep(delay)
            rounds += 1
            metrics.increment_retry_round()
            logger.info("retry_round_started", round=rounds, records=len(batch_indexes))

            for index in batch_indexes:
                states[index] = RecordState.SUBMITTED
                attempts[index] += 1

            round_results = self._submit(request.resubmission(batch_records))
            for position, index in enumerate(batch_indexes):
                result = round_results[position].at(index)
                merged[index] = result
                current[index] = batch_records[position]
                states[index] = self._next_state(result, attempts[index])
                if result.success:
                    self._propagate_identity(request, index, result)

        outcome = RetryOutcome(results=merged, states=states, attempts=attempts, rounds=rounds)
        terminal = {index: merged[index] for index in outcome.terminal}
        if terminal:
            metrics.increment_retry_terminal(len(terminal))
            logger.warning(
                "retry_terminal_failure",
                terminal=sorted(terminal),
                rounds=rounds,
                succeeded=len(outcome.succeeded),
            )
            raise TerminalFailure(terminal[min(terminal)], terminal, outcome)

        logger.info("retry_completed", rounds=rounds, succeeded=len(outcome.succeeded))
        return outcome

    def _prepare(
        self,
        request: BatchRequest,
        index: int,
        merged: List[Result],
        states: Dict[int, RecordState],
        current: Dict[int, Record],
        correct: Correction,
        already_applied: Optional[IdempotencyCheck],
    ) -> Optional[Record]:
        """Move one retryable record to PENDING, or settle it without
        resubmitting."""
        last = merged[index]
        record = current[index]

        if already_applied is not None and StatusCode.STORE_UNAVAILABLE in last.status_codes:
            identity = already_applied(record)
            if identity is not None:
                merged[index] = Result.ok(index, identity)
                states[index] = RecordState.SUCCEEDED
                self._propagate_identity(request, index, merged[index])
                logger.info("retry_already_applied", index=index, identity=identity)
                return None

        corrected = correct(record, list(last.errors))
        if corrected is None:
            states[index] = RecordState.FAILED_TERMINAL
            logger.info("retry_record_abandoned", index=index)
            return None

        states[index] = RecordState.PENDING
        return corrected

    def _submit(self, request: BatchRequest) -> List[Result]:
        try:
            return self.executor.execute(request)
        except BatchFailure as e:
            if e.error.status_code != StatusCode.STORE_UNAVAILABLE:
                raise
            logger.warning("retry_round_store_unavailable", records=len(request))
            return [Result.failed(index, e.error) for index in range(len(request))]

    def _next_state(self, result: Result, attempts: int) -> RecordState:
        if result.success:
            return RecordState.SUCCEEDED
        if not self.classifier.is_result_retryable(result):
            return RecordState.FAILED_TERMINAL
        if attempts >= self.config.budget:
            return RecordState.FAILED_TERMINAL
        return RecordState.FAILED_RETRYABLE

    @staticmethod
    def _propagate_identity(request: BatchRequest, index: int, result: Result) -> None:
        if request.operation not in (Operation.INSERT, Operation.UPSERT):
            return
        original = request.records[index]
        if original.identity is None:
            original.identity = result.identity
