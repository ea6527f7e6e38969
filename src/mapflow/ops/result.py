"""
Operation result envelope.

Operation functions never raise engine exceptions at their callers.  They
return an :class:`OperationResult`; a failure carries an
:class:`OperationError` whose ``code`` the CLI can branch on:

    NOT_FOUND          unknown flow, mapping, entity or execution
    VALIDATION_FAILED  bad request or invalid definitions
    ALREADY_RUNNING    serialized flow has an active execution
    DUPLICATE_FIRING   trigger occurrence was already recorded
    NOT_CANCELLABLE    execution is already terminal
    <KIND>             any other MapflowError, e.g. CONNECTOR_UNAVAILABLE
    INTERNAL           anything else
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from mapflow.core.errors import (
    AlreadyRunningError,
    DefinitionError,
    DuplicateFiringError,
    ErrorCategory,
    ExecutionNotFoundError,
    MapflowError,
    UnknownEntityError,
    categorize_error,
    is_retryable,
)

T = TypeVar("T")

_CODES = (
    ((UnknownEntityError, ExecutionNotFoundError), "NOT_FOUND"),
    (AlreadyRunningError, "ALREADY_RUNNING"),
    (DuplicateFiringError, "DUPLICATE_FIRING"),
    (DefinitionError, "VALIDATION_FAILED"),
)


def error_code(error: BaseException) -> str:
    for types, code in _CODES:
        if isinstance(error, types):
            return code
    if isinstance(error, MapflowError):
        return error.kind.upper()
    return "INTERNAL"


@dataclass(frozen=True, slots=True)
class OperationError:
    """Why an operation failed.

    ``details`` holds the error ``kind``, its ``context`` and, for
    definition problems, the list of ``violations``.
    """

    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class OperationResult(Generic[T]):
    """Success/failure envelope; build with :meth:`ok`, :meth:`fail` or :meth:`from_error`."""

    success: bool
    data: T | None = None
    error: OperationError | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        data: T,
        *,
        warnings: list[str] | None = None,
        elapsed_ms: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> OperationResult[T]:
        return cls(True, data, None, list(warnings or []), elapsed_ms, dict(metadata or {}))

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        error = OperationError(code, message, category, dict(details or {}), retryable)
        return cls(False, error=error, elapsed_ms=elapsed_ms)

    @classmethod
    def from_error(
        cls,
        error: BaseException,
        *,
        details: dict[str, Any] | None = None,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        """Failed result for *error*; *details* are merged over its kind and context."""
        merged: dict[str, Any] = {}
        if isinstance(error, MapflowError):
            merged["kind"] = error.kind
            if context := error.context.to_dict():
                merged["context"] = context
        merged.update(details or {})
        return cls.fail(
            error_code(error),
            str(error),
            category=categorize_error(error),
            details=merged,
            retryable=is_retryable(error),
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            d["data"] = self.data
        optional = {
            "error": self.error.to_dict() if self.error else None,
            "warnings": self.warnings,
            "elapsed_ms": round(self.elapsed_ms, 2),
            "metadata": self.metadata,
        }
        d.update({k: v for k, v in optional.items() if v})
        return d


@dataclass
class PagedResult(OperationResult[list[T]]):
    """One page of a list operation."""

    total: int = 0
    limit: int = 50
    offset: int = 0
    has_more: bool = False

    @classmethod
    def from_items(
        cls,
        items: list[T],
        total: int,
        *,
        limit: int = 50,
        offset: int = 0,
        elapsed_ms: float = 0.0,
    ) -> PagedResult[T]:
        return cls(
            success=True,
            data=items,
            elapsed_ms=elapsed_ms,
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "has_more": self.has_more,
        }


@dataclass(slots=True)
class Stopwatch:
    started: float = field(default_factory=time.perf_counter)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


def start_timer() -> Stopwatch:
    return Stopwatch()


__all__ = ["OperationError", "OperationResult", "PagedResult", "Stopwatch", "error_code", "start_timer"]
