"""In-memory store backend for recordops.

Provides a simple in-memory store for testing and development. Data is not
persisted. Every mutation pushes an undo entry onto a journal; savepoints are
positions in that journal, and the journal is emptied whenever no savepoint is
open.
"""

import threading
from itertools import count
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

from recordops.config import StoreConfig
from recordops.errors import BatchFailure, InvalidSavepointError, StoreUnavailableError
from recordops.logging import get_logger
from recordops.models import ErrorDescriptor, Operation, Record, Result, StatusCode
from recordops.persistence.interface import Store

logger = get_logger(__name__, component="memory_store")

Undo = Callable[[], None]


def _missing(value: Any) -> bool:
    return value is None or value == ""


class InMemoryStore(Store):
    """In-memory store with savepoints, field rules and child references.

    Useful for testing and development. Field rules come from
    ``StoreConfig.required_fields`` and ``StoreConfig.unique_fields``;
    explicit ``external_key`` values are always unique per record type.
    """

    def __init__(self, config: Optional[StoreConfig] = None):
        super().__init__(config)
        self._rows: Dict[str, Record] = {}
        self._parents: Dict[str, str] = {}  # child id -> parent id
        self._pinned: Set[str] = set()  # children that may not be re-parented
        self._journal: List[Undo] = []
        self._savepoints: List[Tuple[str, int]] = []  # (token, journal position)
        self._token_ids = count(1)
        self._lock = threading.RLock()
        self._available = True
        self._transient_failures = 0

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def set_available(self, available: bool) -> None:
        """Make every store call raise StoreUnavailableError while False."""
        self._available = available

    def fail_next(self, n: int = 1) -> None:
        """Fail the next ``n`` record mutations with STORE_UNAVAILABLE."""
        self._transient_failures += n

    def _check_available(self) -> None:
        if not self._available:
            raise StoreUnavailableError(
                "In-memory store is offline", details={"namespace": self.config.namespace}
            )

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def add_child(self, parent_id: str, child_id: str, pinned: bool = False) -> None:
        """Make ``child_id`` reference ``parent_id``.

        A pinned reference cannot be moved by a merge; merging its parent
        away fails with CONSTRAINT_VIOLATION.
        """
        with self._lock:
            self._check_available()
            for identity in (parent_id, child_id):
                if identity not in self._rows:
                    raise KeyError(f"Unknown identity: {identity}")
            previous = self._parents.get(child_id)
            was_pinned = child_id in self._pinned
            self._parents[child_id] = parent_id
            if pinned:
                self._pinned.add(child_id)
            else:
                self._pinned.discard(child_id)
            self._journal.append(lambda: self._restore_parent(child_id, previous, was_pinned))
            self._trim_journal()

    def parent_of(self, identity: str) -> Optional[str]:
        with self._lock:
            return self._parents.get(identity)

    def children_of(self, identity: str) -> List[str]:
        with self._lock:
            self._check_available()
            return sorted(child for child, parent in self._parents.items() if parent == identity)

    def _restore_parent(self, child_id: str, parent_id: Optional[str], pinned: bool) -> None:
        if parent_id is None:
            self._parents.pop(child_id, None)
        else:
            self._parents[child_id] = parent_id
        if pinned:
            self._pinned.add(child_id)
        else:
            self._pinned.discard(child_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, identity: str) -> Optional[Record]:
        with self._lock:
            self._check_available()
            row = self._rows.get(identity)
            return row.model_copy(deep=True) if row else None

    def find_by_key(
        self,
        record_type: str,
        key_field: str,
        key_values: Iterable[str],
    ) -> Dict[str, str]:
        with self._lock:
            self._check_available()
            wanted = set(key_values)
            found: Dict[str, str] = {}
            for identity, row in self._rows.items():
                if row.record_type != record_type:
                    continue
                value = row.key_value(key_field)
                if value in wanted:
                    found[value] = identity
            logger.debug(
                "find_by_key",
                record_type=record_type,
                key_field=key_field,
                requested=len(wanted),
                matched=len(found),
            )
            return found

    def count(self, record_type: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for row in self._rows.values()
                if record_type is None or row.record_type == record_type
            )

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of every row and reference, for state comparison."""
        with self._lock:
            return {
                "rows": {
                    identity: row.model_dump() for identity, row in sorted(self._rows.items())
                },
                "parents": dict(sorted(self._parents.items())),
                "pinned": sorted(self._pinned),
            }

    # ------------------------------------------------------------------
    # Savepoints
    # ------------------------------------------------------------------

    def begin_savepoint(self) -> str:
        with self._lock:
            self._check_available()
            token = f"sp-{next(self._token_ids)}"
            self._savepoints.append((token, len(self._journal)))
            logger.debug("store_savepoint_taken", token=token, journal_position=len(self._journal))
            return token

    def rollback(self, token: Any) -> None:
        with self._lock:
            self._check_available()
            position = self._find_savepoint(token)
            _, journal_position = self._savepoints[position]
            undone = self._undo_to(journal_position)
            del self._savepoints[position + 1:]
            logger.debug("store_rolled_back", token=token, undone=undone)

    def release(self, token: Any) -> None:
        with self._lock:
            position = self._find_savepoint(token)
            del self._savepoints[position:]
            self._trim_journal()

    def commit(self) -> None:
        with self._lock:
            self._check_available()
            logger.debug("store_committed", mutations=len(self._journal))
            self._journal.clear()
            self._savepoints.clear()

    def _find_savepoint(self, token: Any) -> int:
        for position, (known, _) in enumerate(self._savepoints):
            if known == token:
                return position
        raise InvalidSavepointError(f"Unknown or superseded savepoint: {token}", savepoint_id=str(token))

    def _trim_journal(self) -> None:
        """Drop undo entries no open savepoint can reach."""
        if not self._savepoints:
            self._journal.clear()

    def _undo_to(self, journal_position: int) -> int:
        undone = 0
        while len(self._journal) > journal_position:
            self._journal.pop()()
            undone += 1
        return undone

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def apply(
        self,
        operation: Operation,
        records: Sequence[Record],
        all_or_nothing: bool = False,
    ) -> List[Result]:
        if operation not in self.APPLY_OPERATIONS:
            raise ValueError(f"Store cannot apply {operation.value} directly")

        handler = {
            Operation.INSERT: self._insert,
            Operation.UPDATE: self._update,
            Operation.DELETE: self._delete,
        }[operation]

        with self._lock:
            self._check_available()
            return self._run(lambda i: handler(i, records[i]), len(records), all_or_nothing)

    def reassign_and_delete(
        self,
        master_id: str,
        duplicate_ids: Sequence[str],
        all_or_nothing: bool = False,
    ) -> List[Result]:
        with self._lock:
            self._check_available()
            return self._run(
                lambda i: self._merge_one(i, master_id, duplicate_ids[i]),
                len(duplicate_ids),
                all_or_nothing,
            )

    def _run(
        self,
        step: Callable[[int], Result],
        size: int,
        all_or_nothing: bool,
    ) -> List[Result]:
        start = len(self._journal)
        results: List[Result] = []
        for index in range(size):
            result = self._transient_failure(index) or step(index)
            if all_or_nothing and not result.success:
                self._undo_to(start)
                logger.info("store_atomic_call_reverted", index=index, error=str(result.first_error))
                raise BatchFailure(result.errors[0], index=index)
            results.append(result)
        self._trim_journal()
        return results

    def _transient_failure(self, index: int) -> Optional[Result]:
        if self._transient_failures <= 0:
            return None
        self._transient_failures -= 1
        return Result.failed(
            index,
            ErrorDescriptor(
                status_code=StatusCode.STORE_UNAVAILABLE,
                message="Store temporarily unavailable",
            ),
        )

    def _insert(self, index: int, record: Record) -> Result:
        if record.identity is not None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.INVALID_FIELD,
                message="Cannot specify an identity on insert",
                affected_fields={"identity"},
            ))

        errors = self._validate(record, exclude=None)
        if errors:
            return Result.failed(index, *errors)

        identity = uuid4().hex
        self._rows[identity] = record.model_copy(update={"identity": identity}, deep=True)
        self._journal.append(lambda: self._rows.pop(identity, None))
        return Result.ok(index, identity)

    def _update(self, index: int, record: Record) -> Result:
        if record.identity is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.MISSING_IDENTITY,
                message="Identity not specified on update",
                affected_fields={"identity"},
            ))
        identity = record.identity
        current = self._rows.get(identity)
        if current is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.NOT_FOUND,
                message=f"No record with identity {identity}",
            ))

        merged = current.model_copy(deep=True)
        merged.fields.update(record.fields)
        if record.external_key is not None:
            merged.external_key = record.external_key

        errors = self._validate(merged, exclude=identity)
        if errors:
            return Result.failed(index, *errors)

        self._rows[identity] = merged
        self._journal.append(lambda: self._rows.__setitem__(identity, current))
        return Result.ok(index, identity)

    def _delete(self, index: int, record: Record) -> Result:
        if record.identity is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.MISSING_IDENTITY,
                message="Identity not specified on delete",
                affected_fields={"identity"},
            ))
        identity = record.identity
        current = self._rows.get(identity)
        if current is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.NOT_FOUND,
                message=f"No record with identity {identity}",
            ))
        children = self.children_of(identity)
        if children:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.CONSTRAINT_VIOLATION,
                message=f"Record {identity} is still referenced by {len(children)} child record(s)",
            ))

        self._remove_row(identity)
        return Result.ok(index, identity)

    def _merge_one(self, index: int, master_id: str, duplicate_id: str) -> Result:
        master = self._rows.get(master_id)
        if master is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.NOT_FOUND,
                message=f"Master record {master_id} not found",
            ))
        if duplicate_id == master_id:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.INVALID_FIELD,
                message="A record cannot be merged into itself",
                affected_fields={"identity"},
            ))
        duplicate = self._rows.get(duplicate_id)
        if duplicate is None:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.NOT_FOUND,
                message=f"Duplicate record {duplicate_id} not found",
            ))
        if duplicate.record_type != master.record_type:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.INVALID_FIELD,
                message=(
                    f"Cannot merge {duplicate.record_type} record into "
                    f"{master.record_type} record"
                ),
                affected_fields={"record_type"},
            ))

        children = [child for child in self.children_of(duplicate_id) if child != master_id]
        pinned = [child for child in children if child in self._pinned]
        if pinned:
            return Result.failed(index, ErrorDescriptor(
                status_code=StatusCode.CONSTRAINT_VIOLATION,
                message=f"Record {duplicate_id} has {len(pinned)} reference(s) that cannot be moved",
            ))

        # The master stops referencing the duplicate it absorbs
        if self._parents.get(master_id) == duplicate_id:
            was_pinned = master_id in self._pinned
            self._parents.pop(master_id)
            self._pinned.discard(master_id)
            self._journal.append(lambda: self._restore_parent(master_id, duplicate_id, was_pinned))
        for child in children:
            self._parents[child] = master_id
            self._journal.append(
                lambda child=child: self._parents.__setitem__(child, duplicate_id)
            )
        self._remove_row(duplicate_id)
        return Result.ok(index, master_id, related_ids=children)

    def _remove_row(self, identity: str) -> None:
        row = self._rows.pop(identity)
        parent = self._parents.pop(identity, None)
        pinned = identity in self._pinned
        self._pinned.discard(identity)

        def undo() -> None:
            self._rows[identity] = row
            self._restore_parent(identity, parent, pinned)

        self._journal.append(undo)

    def _validate(self, record: Record, exclude: Optional[str]) -> List[ErrorDescriptor]:
        errors: List[ErrorDescriptor] = []

        required = self.config.required_fields.get(record.record_type, [])
        missing = {name for name in required if _missing(record.fields.get(name))}
        if missing:
            errors.append(ErrorDescriptor(
                status_code=StatusCode.VALIDATION_ERROR,
                message="Required fields are missing",
                affected_fields=missing,
            ))

        for row_id, row in self._rows.items():
            if row_id == exclude or row.record_type != record.record_type:
                continue
            if record.external_key is not None and row.external_key == record.external_key:
                errors.append(ErrorDescriptor(
                    status_code=StatusCode.DUPLICATE_VALUE,
                    message=f"External key {record.external_key} already used by {row_id}",
                    affected_fields={"external_key"},
                ))
            for name in self.config.unique_fields.get(record.record_type, []):
                value = record.fields.get(name)
                if not _missing(value) and row.fields.get(name) == value:
                    errors.append(ErrorDescriptor(
                        status_code=StatusCode.DUPLICATE_VALUE,
                        message=f"Value for {name} already used by {row_id}",
                        affected_fields={name},
                    ))
        return errors
