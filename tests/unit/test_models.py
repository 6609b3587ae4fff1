"""Tests for the record/result data model."""

import pytest
from pydantic import ValidationError

from recordops.models import (
    BatchRequest,
    ErrorDescriptor,
    Operation,
    Record,
    Result,
    StatusCode,
)


def _error(code=StatusCode.VALIDATION_ERROR, *fields):
    return ErrorDescriptor(status_code=code, message="bad", affected_fields=set(fields))


class TestRecord:
    """Tests for Record."""

    def test_defaults(self):
        """Test a bare record has no identity or key."""
        record = Record()

        assert record.identity is None
        assert record.external_key is None
        assert record.fields == {}
        assert record.record_type == "record"

    def test_get_field(self):
        """Test reading field values."""
        record = Record(fields={"name": "Acme"})

        assert record.get("name") == "Acme"
        assert record.get("missing") is None
        assert record.get("missing", "x") == "x"

    def test_key_value_prefers_external_key(self):
        """Test the explicit external key wins over the field value."""
        record = Record(fields={"code": "A-1"}, external_key="EXT-9")

        assert record.key_value("code") == "EXT-9"

    def test_key_value_from_field(self):
        """Test key read from the named field when no external key is set."""
        record = Record(fields={"code": 42})

        assert record.key_value("code") == "42"

    def test_key_value_missing(self):
        """Test empty and absent keys count as missing."""
        assert Record(fields={"code": ""}).key_value("code") is None
        assert Record().key_value("code") is None

    def test_unknown_attribute_rejected(self):
        """Test extra attributes are forbidden."""
        with pytest.raises(ValidationError):
            Record(colour="red")


class TestErrorDescriptor:
    """Tests for ErrorDescriptor."""

    def test_str_includes_fields(self):
        """Test string form lists affected fields."""
        error = _error(StatusCode.VALIDATION_ERROR, "name", "email")

        assert str(error) == "validation_error: bad (email, name)"

    def test_str_without_fields(self):
        error = _error(StatusCode.NOT_FOUND)

        assert str(error) == "not_found: bad"

    def test_frozen(self):
        """Test descriptors cannot be modified."""
        error = _error()

        with pytest.raises(ValidationError):
            error.message = "other"


class TestResult:
    """Tests for the Result success/failure invariant."""

    def test_ok(self):
        result = Result.ok(0, "id-1")

        assert result.success is True
        assert result.identity == "id-1"
        assert result.errors == []
        assert result.first_error is None

    def test_failed(self):
        result = Result.failed(2, _error(StatusCode.MISSING_IDENTITY))

        assert result.success is False
        assert result.index == 2
        assert result.status_codes == [StatusCode.MISSING_IDENTITY]

    def test_success_requires_identity(self):
        """Test success without identity is rejected."""
        with pytest.raises(ValidationError, match="requires an identity"):
            Result(index=0, success=True)

    def test_success_cannot_carry_errors(self):
        with pytest.raises(ValidationError, match="cannot carry errors"):
            Result(index=0, success=True, identity="x", errors=[_error()])

    def test_failure_requires_error(self):
        """Test failure without errors is rejected."""
        with pytest.raises(ValidationError, match="at least one error"):
            Result(index=0, success=False)

    def test_negative_index_rejected(self):
        with pytest.raises(ValidationError):
            Result.ok(-1, "x")

    def test_at_readdresses(self):
        """Test re-addressing keeps the outcome and changes only the index."""
        result = Result.ok(0, "id-1", created=True)

        moved = result.at(7)

        assert moved.index == 7
        assert moved.identity == "id-1"
        assert moved.created is True
        assert result.index == 0


class TestBatchRequest:
    """Tests for BatchRequest construction."""

    def test_insert_defaults_to_partial_success(self):
        request = BatchRequest.insert([Record(), Record()])

        assert request.operation == Operation.INSERT
        assert request.all_or_nothing is False
        assert len(request) == 2

    def test_records_are_not_copied(self):
        """Test the request holds the caller's record objects."""
        record = Record()

        request = BatchRequest.update([record])

        assert request.records[0] is record

    def test_upsert_requires_key_field(self):
        with pytest.raises(ValidationError, match="key_field"):
            BatchRequest(operation=Operation.UPSERT, records=[Record()])

    def test_merge_requires_master(self):
        with pytest.raises(ValidationError, match="master"):
            BatchRequest(operation=Operation.MERGE, records=[Record()])

    def test_merge_requires_duplicates(self):
        with pytest.raises(ValidationError, match="duplicate"):
            BatchRequest.merge(Record(identity="m"), [])

    def test_resubmission_keeps_shape(self):
        """Test resubmission keeps operation and key field, drops atomicity."""
        request = BatchRequest.upsert([Record(), Record()], key_field="code", all_or_nothing=True)
        replacement = Record(fields={"code": "x"})

        fresh = request.resubmission([replacement])

        assert fresh.operation == Operation.UPSERT
        assert fresh.key_field == "code"
        assert fresh.all_or_nothing is False
        assert fresh.records == [replacement]
