"""Data model for batched record mutation.

Records are what callers submit, Results are what they get back. A Result is
an explicit success/failure value so partial success can be inspected without
exception handling at every call site.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set

from pydantic import BaseModel, Field, model_validator


class StatusCode(str, Enum):
    """Kinds of per-record and engine-level failure."""

    VALIDATION_ERROR = "validation_error"
    MISSING_IDENTITY = "missing_identity"
    MISSING_EXTERNAL_KEY = "missing_external_key"
    INVALID_SAVEPOINT = "invalid_savepoint"
    CONSTRAINT_VIOLATION = "constraint_violation"
    TERMINAL_FAILURE = "terminal_failure"
    STORE_UNAVAILABLE = "store_unavailable"
    NOT_FOUND = "not_found"
    DUPLICATE_VALUE = "duplicate_value"
    DUPLICATE_EXTERNAL_KEY = "duplicate_external_key"
    INVALID_FIELD = "invalid_field"


class Operation(str, Enum):
    """Mutation applied to every record of a batch."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"
    MERGE = "merge"


class Record(BaseModel):
    """One entity submitted for mutation.

    ``identity`` is assigned by the store on create and is never rewritten by
    the engine once set.
    """

    model_config = {"extra": "forbid", "validate_assignment": True}

    record_type: str = Field(default="record", min_length=1, description="Entity type")
    identity: Optional[str] = Field(default=None, description="Store-assigned unique key")
    fields: Dict[str, Any] = Field(default_factory=dict, description="Field values by name")
    external_key: Optional[str] = Field(
        default=None, description="Alternate unique key used by upsert"
    )

    def get(self, name: str, default: Any = None) -> Any:
        """Read a field value."""
        return self.fields.get(name, default)

    def key_value(self, key_field: str) -> Optional[str]:
        """Value used to match this record during upsert.

        The explicit ``external_key`` wins; otherwise the value of
        ``key_field`` is used. Empty strings count as missing. Keys compare
        as strings, so ``1`` and ``"1"`` name the same record.
        """
        value = self.external_key if self.external_key is not None else self.fields.get(key_field)
        if value is None or value == "":
            return None
        return str(value)


class ErrorDescriptor(BaseModel):
    """Structured description of why one record failed."""

    model_config = {"extra": "forbid", "frozen": True}

    status_code: StatusCode
    message: str
    affected_fields: Set[str] = Field(default_factory=set)

    def __str__(self) -> str:
        if self.affected_fields:
            return f"{self.status_code.value}: {self.message} ({', '.join(sorted(self.affected_fields))})"
        return f"{self.status_code.value}: {self.message}"


class Result(BaseModel):
    """Outcome for the record at ``index`` of the submitted batch."""

    model_config = {"extra": "forbid"}

    index: int = Field(ge=0, description="Position in the original batch")
    success: bool
    identity: Optional[str] = None
    created: Optional[bool] = Field(default=None, description="Set by upsert only")
    errors: List[ErrorDescriptor] = Field(default_factory=list)
    related_ids: List[str] = Field(
        default_factory=list, description="Children re-parented by a merge"
    )

    @model_validator(mode="after")
    def check_outcome(self) -> "Result":
        """Exactly one of success-with-identity or failure-with-errors."""
        if self.success:
            if self.identity is None:
                raise ValueError("successful result requires an identity")
            if self.errors:
                raise ValueError("successful result cannot carry errors")
        elif not self.errors:
            raise ValueError("failed result requires at least one error")
        return self

    @classmethod
    def ok(
        cls,
        index: int,
        identity: str,
        created: Optional[bool] = None,
        related_ids: Optional[Sequence[str]] = None,
    ) -> "Result":
        return cls(
            index=index,
            success=True,
            identity=identity,
            created=created,
            related_ids=list(related_ids or []),
        )

    @classmethod
    def failed(cls, index: int, *errors: ErrorDescriptor) -> "Result":
        return cls(index=index, success=False, errors=list(errors))

    @property
    def first_error(self) -> Optional[ErrorDescriptor]:
        return self.errors[0] if self.errors else None

    @property
    def status_codes(self) -> List[StatusCode]:
        return [error.status_code for error in self.errors]

    def at(self, index: int) -> "Result":
        """Copy of this result re-addressed to ``index``."""
        return self.model_copy(update={"index": index})


class BatchRequest(BaseModel):
    """One operation over an ordered list of records.

    For ``MERGE`` the records are the duplicates and ``master`` is the record
    they are folded into.
    """

    model_config = {"extra": "forbid"}

    operation: Operation
    records: List[Record] = Field(default_factory=list)
    all_or_nothing: bool = False
    key_field: Optional[str] = Field(default=None, description="Upsert match field")
    master: Optional[Record] = Field(default=None, description="Merge survivor")

    @model_validator(mode="after")
    def check_operation_arguments(self) -> "BatchRequest":
        if self.operation == Operation.UPSERT and not self.key_field:
            raise ValueError("upsert requires a key_field")
        if self.operation == Operation.MERGE:
            if self.master is None:
                raise ValueError("merge requires a master record")
            if not self.records:
                raise ValueError("merge requires at least one duplicate")
        return self

    def __len__(self) -> int:
        return len(self.records)

    @classmethod
    def insert(cls, records: Sequence[Record], all_or_nothing: bool = False) -> "BatchRequest":
        return cls(operation=Operation.INSERT, records=list(records), all_or_nothing=all_or_nothing)

    @classmethod
    def update(cls, records: Sequence[Record], all_or_nothing: bool = False) -> "BatchRequest":
        return cls(operation=Operation.UPDATE, records=list(records), all_or_nothing=all_or_nothing)

    @classmethod
    def delete(cls, records: Sequence[Record], all_or_nothing: bool = False) -> "BatchRequest":
        return cls(operation=Operation.DELETE, records=list(records), all_or_nothing=all_or_nothing)

    @classmethod
    def upsert(
        cls, records: Sequence[Record], key_field: str, all_or_nothing: bool = False
    ) -> "BatchRequest":
        return cls(
            operation=Operation.UPSERT,
            records=list(records),
            key_field=key_field,
            all_or_nothing=all_or_nothing,
        )

    @classmethod
    def merge(
        cls, master: Record, duplicates: Sequence[Record], all_or_nothing: bool = False
    ) -> "BatchRequest":
        return cls(
            operation=Operation.MERGE,
            master=master,
            records=list(duplicates),
            all_or_nothing=all_or_nothing,
        )

    def resubmission(self, records: Sequence[Record]) -> "BatchRequest":
        """Fresh non-atomic request of the same shape over ``records``."""
        return BatchRequest(
            operation=self.operation,
            records=list(records),
            all_or_nothing=False,
            key_field=self.key_field,
            master=self.master,
        )
