"""Tests for the operation result envelope."""

from mapflow.core.errors import (
    AlreadyRunningError,
    ConnectorUnavailableError,
    ErrorCategory,
    ExecutionNotFoundError,
    SchemaMismatchError,
    UnknownEntityError,
    ValidationFailedError,
)
from mapflow.ops.result import OperationResult, PagedResult, error_code


class TestErrorCode:
    def test_codes(self):
        assert error_code(UnknownEntityError("flow", "x")) == "NOT_FOUND"
        assert error_code(ExecutionNotFoundError("e1")) == "NOT_FOUND"
        assert error_code(AlreadyRunningError("orders", "e1")) == "ALREADY_RUNNING"
        assert error_code(ValidationFailedError("bad", [])) == "VALIDATION_FAILED"
        assert error_code(SchemaMismatchError("wide")) == "SCHEMA_MISMATCH"
        assert error_code(RuntimeError("boom")) == "INTERNAL"


class TestOperationResult:
    def test_ok(self):
        result = OperationResult.ok({"a": 1}, warnings=["careful"])
        assert result.success
        assert result.to_dict() == {"success": True, "data": {"a": 1}, "warnings": ["careful"]}

    def test_from_mapflow_error(self):
        error = ConnectorUnavailableError("down").with_context(connection_id="landing")
        result = OperationResult.from_error(error)

        assert not result.success
        assert result.error.code == "CONNECTOR_UNAVAILABLE"
        assert result.error.message == "down"
        assert result.error.retryable
        assert result.error.details["kind"] == "connector_unavailable"
        assert result.error.details["context"]["connection_id"] == "landing"

    def test_from_plain_exception(self):
        result = OperationResult.from_error(ValueError("nope"))
        assert result.error.code == "INTERNAL"
        assert result.error.category == ErrorCategory.VALIDATION
        assert not result.error.retryable

    def test_error_dict_omits_empty_details(self):
        d = OperationResult.fail("NOT_FOUND", "missing").to_dict()
        assert d == {"success": False, "error": {"code": "NOT_FOUND", "message": "missing", "retryable": False}}


class TestPagedResult:
    def test_has_more(self):
        page = PagedResult.from_items([1, 2], total=5, limit=2, offset=2)
        assert page.has_more
        assert page.to_dict()["total"] == 5

    def test_last_page(self):
        assert not PagedResult.from_items([5], total=5, limit=2, offset=4).has_more
