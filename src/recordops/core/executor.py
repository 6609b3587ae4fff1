"""Batch executor: one operation over an ordered list of records.

The executor checks what it can without the store (identities, external keys,
batch size), reduces upsert to update/insert with one key lookup, drives the
store and returns exactly one Result per submitted record, in order.
"""

from collections import defaultdict
from typing import Dict, List, Optional, Sequence

from recordops.config import BatchConfig
from recordops.errors import (
    BatchFailure,
    BatchSizeExceededError,
    FatalError,
    StoreUnavailableError,
)
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
from recordops.persistence import Store

logger = get_logger(__name__, component="executor")
metrics = get_metrics_collector()


def _error(code: StatusCode, message: str, *fields: str) -> ErrorDescriptor:
    return ErrorDescriptor(status_code=code, message=message, affected_fields=set(fields))


class BatchExecutor:
    """Applies BatchRequests to a store.

    Example:
        >>> executor = BatchExecutor(InMemoryStore())
        >>> results = executor.execute(BatchRequest.insert([Record(fields={"name": "a"})]))
        >>> results[0].success
        True
    """

    def __init__(self, store: Store, config: Optional[BatchConfig] = None):
        self.store = store
        self.config = config or BatchConfig()

    def execute(self, request: BatchRequest) -> List[Result]:
        """Execute a batch request.

        Args:
            request: Operation, records and atomicity switch.

        Returns:
            One Result per record, ``results[i]`` describing
            ``request.records[i]``.

        Raises:
            BatchSizeExceededError: If the batch is larger than
                ``max_batch_size``; the store is not touched.
            BatchFailure: In all-or-nothing mode when any record fails
                (nothing persists), or when the store is unreachable.
        """
        operation = request.operation.value
        if len(request) > self.config.max_batch_size:
            logger.warning(
                "batch_rejected_size",
                operation=operation,
                size=len(request),
                max_batch_size=self.config.max_batch_size,
            )
            raise BatchSizeExceededError(len(request), self.config.max_batch_size)

        metrics.increment_batch_count(operation, len(request))

        try:
            if request.all_or_nothing:
                results = self._execute_atomic(request)
            else:
                results = self._execute(request)
        except StoreUnavailableError as e:
            metrics.increment_batch_failure(operation)
            logger.error("batch_store_unavailable", operation=operation, error=e.message)
            raise BatchFailure(_error(StatusCode.STORE_UNAVAILABLE, e.message)) from e
        except BatchFailure as e:
            metrics.increment_batch_failure(operation)
            metrics.increment_error_count(e.error.status_code.value)
            logger.warning(
                "batch_failed_atomically",
                operation=operation,
                index=e.index,
                status_code=e.error.status_code.value,
                error=e.error.message,
            )
            raise

        self._assign_identities(request, results)

        succeeded = sum(1 for result in results if result.success)
        metrics.record_outcome(operation, True, succeeded)
        metrics.record_outcome(operation, False, len(results) - succeeded)
        for result in results:
            for error in result.errors:
                metrics.increment_error_count(error.status_code.value)

        logger.info(
            "batch_executed",
            operation=operation,
            size=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            all_or_nothing=request.all_or_nothing,
        )
        return results

    def _execute_atomic(self, request: BatchRequest) -> List[Result]:
        """Run every record under one store savepoint; revert on any failure.

        Records are attempted in full so the failure reported is the one
        with the lowest index, whichever check produced it.
        """
        token = self.store.begin_savepoint()
        try:
            results = self._execute(request)
        except Exception:
            self.store.rollback(token)
            self.store.release(token)
            raise
        failed = next((result for result in results if not result.success), None)
        if failed is not None:
            self.store.rollback(token)
            self.store.release(token)
            raise BatchFailure(failed.errors[0], index=failed.index)
        self.store.release(token)
        return results

    def _execute(self, request: BatchRequest) -> List[Result]:
        handler = {
            Operation.INSERT: self._insert,
            Operation.UPDATE: self._update_or_delete,
            Operation.DELETE: self._update_or_delete,
            Operation.UPSERT: self._upsert,
            Operation.MERGE: self._merge,
        }[request.operation]

        slots: List[Optional[Result]] = [None] * len(request)
        handler(request, slots)

        missing = [index for index, result in enumerate(slots) if result is None]
        if missing:
            raise FatalError(
                f"No outcome produced for indexes {missing}",
                code="RESULT_ALIGNMENT",
                details={"indexes": missing},
            )
        return slots  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Operation variants
    # ------------------------------------------------------------------

    def _insert(self, request: BatchRequest, slots: List[Optional[Result]]) -> None:
        rejected = {
            index: _error(StatusCode.INVALID_FIELD, "Cannot specify an identity on insert", "identity")
            for index, record in enumerate(request.records)
            if record.identity is not None
        }
        pending = self._reject(rejected, slots)
        self._submit(Operation.INSERT, request.records, pending, slots)

    def _update_or_delete(
        self, request: BatchRequest, slots: List[Optional[Result]]
    ) -> None:
        verb = request.operation.value
        rejected = {
            index: _error(StatusCode.MISSING_IDENTITY, f"Identity not specified on {verb}", "identity")
            for index, record in enumerate(request.records)
            if record.identity is None
        }
        pending = self._reject(rejected, slots)
        self._submit(request.operation, request.records, pending, slots)

    def _upsert(self, request: BatchRequest, slots: List[Optional[Result]]) -> None:
        key_field = request.key_field
        if key_field is None:
            raise ValueError("upsert requires a key_field")

        rejected: Dict[int, ErrorDescriptor] = {}
        first_seen: Dict[tuple, int] = {}
        keys: Dict[int, str] = {}
        for index, record in enumerate(request.records):
            key = record.key_value(key_field)
            if key is None:
                rejected[index] = _error(
                    StatusCode.MISSING_EXTERNAL_KEY,
                    f"No value for external key field {key_field}",
                    key_field,
                )
            elif (record.record_type, key) in first_seen:
                rejected[index] = _error(
                    StatusCode.DUPLICATE_EXTERNAL_KEY,
                    f"Key {key} already used at index {first_seen[(record.record_type, key)]}",
                    key_field,
                )
            else:
                first_seen[(record.record_type, key)] = index
                keys[index] = key
        pending = self._reject(rejected, slots)

        by_type: Dict[str, set] = defaultdict(set)
        for index in pending:
            by_type[request.records[index].record_type].add(keys[index])
        matches: Dict[str, Dict[str, str]] = {
            record_type: self.store.find_by_key(record_type, key_field, values)
            for record_type, values in by_type.items()
        }

        updates: Dict[int, Record] = {}
        inserts: List[int] = []
        conflicts: Dict[int, ErrorDescriptor] = {}
        for index in pending:
            record = request.records[index]
            matched = matches[record.record_type].get(keys[index])
            if matched is None:
                if record.identity is not None:
                    conflicts[index] = _error(
                        StatusCode.NOT_FOUND,
                        f"No {record.record_type} with key {keys[index]} for identity {record.identity}",
                        key_field,
                    )
                else:
                    inserts.append(index)
            elif record.identity is not None and record.identity != matched:
                conflicts[index] = _error(
                    StatusCode.INVALID_FIELD,
                    f"Identity {record.identity} conflicts with key match {matched}",
                    "identity",
                    key_field,
                )
            else:
                updates[index] = record.model_copy(update={"identity": matched})
        self._reject(conflicts, slots)

        logger.debug(
            "upsert_resolved",
            key_field=key_field,
            updates=len(updates),
            inserts=len(inserts),
            rejected=len(rejected) + len(conflicts),
        )

        if updates:
            update_indexes = list(updates)
            self._submit(
                Operation.UPDATE,
                [updates[index] for index in update_indexes],
                list(range(len(update_indexes))),
                slots,
                slot_indexes=update_indexes,
                created=False,
            )
        if inserts:
            self._submit(Operation.INSERT, request.records, inserts, slots, created=True)

    def _merge(self, request: BatchRequest, slots: List[Optional[Result]]) -> None:
        master = request.master
        if master is None:
            raise ValueError("merge requires a master record")

        rejected: Dict[int, ErrorDescriptor] = {}
        for index, duplicate in enumerate(request.records):
            if master.identity is None:
                rejected[index] = _error(
                    StatusCode.MISSING_IDENTITY, "Master record has no identity", "identity"
                )
            elif duplicate.identity is None:
                rejected[index] = _error(
                    StatusCode.MISSING_IDENTITY, "Duplicate record has no identity", "identity"
                )
            elif duplicate.identity == master.identity:
                rejected[index] = _error(
                    StatusCode.INVALID_FIELD, "A record cannot be merged into itself", "identity"
                )
            elif duplicate.record_type != master.record_type:
                rejected[index] = _error(
                    StatusCode.INVALID_FIELD,
                    f"Cannot merge {duplicate.record_type} record into {master.record_type} record",
                    "record_type",
                )
        pending = self._reject(rejected, slots)
        if not pending:
            return

        duplicate_ids = [request.records[index].identity for index in pending]
        results = self.store.reassign_and_delete(master.identity, duplicate_ids)
        self._place(results, pending, slots)

        merged = [result for result in results if result.success]
        logger.info(
            "records_merged",
            master_id=master.identity,
            merged=len(merged),
            reassigned=sum(len(result.related_ids) for result in merged),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reject(
        self,
        rejected: Dict[int, ErrorDescriptor],
        slots: List[Optional[Result]],
    ) -> List[int]:
        """Fill failure slots for rejected indexes; return the rest still open."""
        for index, error in rejected.items():
            slots[index] = Result.failed(index, error)
        return [index for index, result in enumerate(slots) if result is None and index not in rejected]

    def _submit(
        self,
        operation: Operation,
        records: Sequence[Record],
        positions: List[int],
        slots: List[Optional[Result]],
        slot_indexes: Optional[List[int]] = None,
        created: Optional[bool] = None,
    ) -> None:
        """Send ``records[p] for p in positions`` to the store.

        ``slot_indexes`` gives the original batch index of each submitted
        record when it differs from its position in ``records``.
        """
        if not positions:
            return
        targets = slot_indexes if slot_indexes is not None else positions
        results = self.store.apply(operation, [records[p] for p in positions])
        if created is not None:
            results = [
                result.model_copy(update={"created": created}) if result.success else result
                for result in results
            ]
        self._place(results, targets, slots)

    def _place(
        self,
        results: List[Result],
        targets: List[int],
        slots: List[Optional[Result]],
    ) -> None:
        if len(results) != len(targets):
            raise FatalError(
                f"Store returned {len(results)} results for {len(targets)} records",
                code="RESULT_ALIGNMENT",
            )
        for target, result in zip(targets, results):
            slots[target] = result.at(target)

    def _assign_identities(self, request: BatchRequest, results: List[Result]) -> None:
        if request.operation not in (Operation.INSERT, Operation.UPSERT):
            return
        for record, result in zip(request.records, results):
            if result.success and record.identity is None:
                record.identity = result.identity
