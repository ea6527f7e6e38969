"""
Structured error types for mapflow.

Every failure the engine records carries a category, a retry decision and
a machine-readable kind.  The hierarchy mirrors the four ways a run can go
wrong: the definitions are bad, a connector hiccupped, a connector refused,
or the run collided with another run.

Manifesto:
    - **Typed Error Hierarchy:** Definition, transient, terminal and
      concurrency errors are distinct classes, never string matching
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Machine-readable kind:** ``error_kind`` is what the ledger stores
    - **Error Chaining:** Driver exceptions are preserved as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────────┐
        │                       MapflowError                               │
        │  (category, retryable, context, cause)                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │  DefinitionError        TransientError       TerminalError       │
        │  (CONFIG)               (retryable=True)     (retryable=False)   │
        │       │                      │                    │              │
        │  ValidationFailedError  ConnectorTimeout     AuthorizationError  │
        │  ConflictingRuleError   ConnectorUnavailable SchemaMismatchError │
        │  CyclicFlowError        LockContentionError  MalformedDataError  │
        │  MissingDependencyError                      SourceNotFoundError │
        │  UnknownEntityError                          UnsupportedCapab.   │
        │  RuleExpressionError                                             │
        │  MappingLogicError                                               │
        │                                                                  │
        │  ConcurrencyError (ORCHESTRATION)                                │
        │       │                                                          │
        │  AlreadyRunningError(execution_id)                               │
        │  DuplicateFiringError(flow_id, fire_key)                         │
        └─────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ DON'T: Raise bare ``Exception`` from a connector
    ✅ DO: Translate driver errors into Transient/Terminal subclasses

    ❌ DON'T: Treat ``AlreadyRunningError`` as a failure
    ✅ DO: Read ``execution_id`` off it and report the in-flight run

Tags:
    error-handling, exception-hierarchy, retry-logic, mapflow
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"

    # Source/data errors
    SOURCE = "SOURCE"
    PARSE = "PARSE"
    VALIDATION = "VALIDATION"

    # Definition errors (never retryable)
    CONFIG = "CONFIG"
    AUTH = "AUTH"

    # Engine errors
    ORCHESTRATION = "ORCHESTRATION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        flow_id: Flow being run when the error occurred
        execution_id: Execution identifier
        step_id: Step identifier
        entity_id: Definition entity the error refers to
        connection_id: Connection the connector was talking to
        location: Path or table name being read/written
        metadata: Additional key-value pairs
    """

    flow_id: str | None = None
    execution_id: str | None = None
    step_id: str | None = None
    entity_id: str | None = None
    connection_id: str | None = None
    location: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["flow_id", "execution_id", "step_id", "entity_id", "connection_id", "location"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


_KIND_RE = re.compile(r"(?<!^)(?=[A-Z])")


class MapflowError(Exception):
    """
    Base exception for all mapflow errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override both per instance.  ``kind`` is the snake-case class name
    without the ``Error`` suffix and is what the run ledger persists as the
    machine-readable failure kind.

    Examples:
        >>> err = SchemaMismatchError("column 'qty' does not exist")
        >>> err.kind
        'schema_mismatch'
        >>> err.retryable
        False
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> str:
        name = self.__class__.__name__
        if name.endswith("Error") and name != "Error":
            name = name[: -len("Error")]
        return _KIND_RE.sub("_", name).lower()

    def with_context(self, **kwargs: Any) -> MapflowError:
        """
        Add context to this error (fluent API).

        Usage:
            raise SourceNotFoundError("missing").with_context(
                connection_id="landing", location="orders/2024.csv"
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "kind": self.kind,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# DEFINITION ERRORS (rejected before a run is recorded)
# =============================================================================


class DefinitionError(MapflowError):
    """A table, mapping, step or flow definition is invalid."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class ValidationFailedError(DefinitionError):
    """One or more definition invariants do not hold."""

    def __init__(self, message: str, violations: list[Any] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.violations = list(violations or [])


class UnknownEntityError(DefinitionError):
    """A definition references an entity identity the store does not have."""

    def __init__(self, entity_type: str, entity_id: str, **kwargs: Any):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Unknown {entity_type}: {entity_id}", **kwargs)


class ConflictingRuleError(DefinitionError):
    """Override rules name columns the target does not have, or two writers disagree."""

    def __init__(self, message: str, columns: list[str] | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.columns = sorted(columns or [])


class CyclicFlowError(DefinitionError):
    """The flow's step dependency graph contains a cycle."""

    def __init__(self, cycle: list[str], **kwargs: Any):
        self.cycle = cycle
        self.steps = sorted(set(cycle))
        cycle_str = " -> ".join(cycle)
        super().__init__(f"Cycle detected in flow dependency graph: {cycle_str}", **kwargs)


class MissingDependencyError(DefinitionError):
    """A step declares a dependency on a step that is not part of the flow."""

    def __init__(self, step_id: str, missing: list[str], **kwargs: Any):
        self.step_id = step_id
        self.missing = missing
        super().__init__(
            f"Step '{step_id}' depends on steps outside the flow: {', '.join(missing)}",
            **kwargs,
        )


class RuleExpressionError(DefinitionError):
    """A rule expression cannot be parsed or evaluated."""

    def __init__(self, expression: str, reason: str, **kwargs: Any):
        self.expression = expression
        super().__init__(f"Invalid rule expression {expression!r}: {reason}", **kwargs)


class MappingLogicError(DefinitionError):
    """The declarative join/select logic of a mapping is invalid."""

    pass


# =============================================================================
# TRANSIENT EXECUTION ERRORS (retried with backoff)
# =============================================================================


class TransientError(MapflowError):
    """Temporary connector failure that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class ConnectorTimeoutError(TransientError):
    """A connector call timed out."""

    pass


class ConnectorUnavailableError(TransientError):
    """The remote endpoint refused or reset the connection."""

    pass


class LockContentionError(TransientError):
    """The target store is locked by another writer."""

    default_category = ErrorCategory.DATABASE


# =============================================================================
# TERMINAL EXECUTION ERRORS (fail the step, no retry)
# =============================================================================


class TerminalError(MapflowError):
    """Connector failure that will not succeed on retry."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class AuthorizationError(TerminalError):
    """Credentials were rejected by the remote store."""

    default_category = ErrorCategory.AUTH


class SchemaMismatchError(TerminalError):
    """The rows do not fit the target's schema at write time."""

    default_category = ErrorCategory.VALIDATION


class MalformedDataError(TerminalError):
    """Source data could not be decoded."""

    default_category = ErrorCategory.PARSE


class SourceNotFoundError(TerminalError):
    """A source location does not exist."""

    default_category = ErrorCategory.SOURCE


class UnsupportedCapabilityError(TerminalError):
    """The connector variant does not offer the requested capability."""

    default_category = ErrorCategory.CONFIG


# =============================================================================
# CONCURRENCY-POLICY ERRORS (not failures)
# =============================================================================


class ConcurrencyError(MapflowError):
    """A run request collided with existing run state."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class AlreadyRunningError(ConcurrencyError):
    """The flow already has an active execution; carries its identity."""

    def __init__(self, flow_id: str, execution_id: str, **kwargs: Any):
        self.flow_id = flow_id
        self.execution_id = execution_id
        super().__init__(
            f"Flow '{flow_id}' is already running as execution {execution_id}",
            **kwargs,
        )


class DuplicateFiringError(ConcurrencyError):
    """A trigger occurrence was already recorded for this flow."""

    def __init__(self, flow_id: str, fire_key: str, **kwargs: Any):
        self.flow_id = flow_id
        self.fire_key = fire_key
        super().__init__(f"Trigger {fire_key!r} already fired for flow '{flow_id}'", **kwargs)


class ExecutionNotFoundError(MapflowError):
    """No execution with the given identity exists."""

    default_category = ErrorCategory.ORCHESTRATION

    def __init__(self, execution_id: str, **kwargs: Any):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", **kwargs)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, MapflowError):
        return error.retryable
    # Socket-level failures from drivers that were not translated
    return isinstance(error, (TimeoutError, ConnectionError))


def error_kind(error: BaseException) -> str:
    """Machine-readable kind recorded on failed step outcomes."""
    if isinstance(error, MapflowError):
        return error.kind
    if isinstance(error, (TimeoutError, ConnectionError)):
        return "transient"
    return "internal"


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, MapflowError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MapflowError",
    # Definition
    "DefinitionError",
    "ValidationFailedError",
    "UnknownEntityError",
    "ConflictingRuleError",
    "CyclicFlowError",
    "MissingDependencyError",
    "RuleExpressionError",
    "MappingLogicError",
    # Transient
    "TransientError",
    "ConnectorTimeoutError",
    "ConnectorUnavailableError",
    "LockContentionError",
    # Terminal
    "TerminalError",
    "AuthorizationError",
    "SchemaMismatchError",
    "MalformedDataError",
    "SourceNotFoundError",
    "UnsupportedCapabilityError",
    # Concurrency
    "ConcurrencyError",
    "AlreadyRunningError",
    "DuplicateFiringError",
    "ExecutionNotFoundError",
    # Utilities
    "is_retryable",
    "error_kind",
    "categorize_error",
]
