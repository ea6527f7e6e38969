"""Execution domain models.

Defines the core data structures of the run ledger:
- Execution: one run attempt of a flow
- StepOutcome: per-step result within an execution
- ExecutionEvent: append-only lifecycle events
- TriggerFiring: the (flow, fire key) record that makes a trigger fire once

These models are used by RunLedger, ExecutionEngine and the ops layer.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class InvalidTransitionError(ValueError):
    """Raised when an illegal state transition is attempted.

    Terminal executions never move again; a ``succeeded`` run cannot be
    re-opened as ``running``.
    """

    def __init__(self, current: str, target: str, enum_name: str = "Status") -> None:
        self.current = current
        self.target = target
        super().__init__(f"Invalid {enum_name} transition: {current} → {target}")


class ExecutionStatus(str, Enum):
    """Status of a flow execution.

    Valid transition graph::

        PENDING   → RUNNING | CANCELLED | FAILED (orphaned)
        RUNNING   → SUCCEEDED | FAILED | CANCELLED
        SUCCEEDED → (terminal)
        FAILED    → (terminal)
        CANCELLED → (terminal)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.SUCCEEDED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

EXECUTION_VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.FAILED,  # orphan recovery
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.SUCCEEDED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.SUCCEEDED: frozenset(),  # terminal
    ExecutionStatus.FAILED: frozenset(),  # terminal
    ExecutionStatus.CANCELLED: frozenset(),  # terminal
}


def validate_execution_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal.

    Example:
        >>> validate_execution_transition(ExecutionStatus.RUNNING, ExecutionStatus.SUCCEEDED)
        >>> validate_execution_transition(ExecutionStatus.SUCCEEDED, ExecutionStatus.RUNNING)
        Traceback (most recent call last):
        InvalidTransitionError: Invalid ExecutionStatus transition: succeeded → running
    """
    allowed = EXECUTION_VALID_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        raise InvalidTransitionError(current.value, target.value, "ExecutionStatus")


class StepStatus(str, Enum):
    """Status of one step within an execution."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.CANCELLED)


STEP_VALID_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.CANCELLED}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCEEDED, StepStatus.FAILED}),
    StepStatus.SUCCEEDED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.CANCELLED: frozenset(),
}


def validate_step_transition(current: StepStatus, target: StepStatus) -> None:
    """Raise :class:`InvalidTransitionError` if *current → target* is illegal."""
    if target not in STEP_VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(current.value, target.value, "StepStatus")


class EventType(str, Enum):
    """Canonical event types for the execution lifecycle."""

    CREATED = "created"
    STARTED = "started"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    ORPHANED = "orphaned"

    STEP_STARTED = "step_started"
    STEP_RETRIED = "step_retried"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    STEP_CANCELLED = "step_cancelled"


class TriggerSource(str, Enum):
    """Source that requested the execution."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    FILE_ARRIVAL = "file_arrival"
    API = "api"
    CLI = "cli"


@dataclass
class StepOutcome:
    """Per-step result within an execution."""

    execution_id: str
    step_id: str
    position: int
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    attempts: int = 0
    rows_read: int = 0
    rows_written: int = 0
    error_kind: str | None = None
    error_detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "position": self.position,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "attempts": self.attempts,
            "rows_read": self.rows_read,
            "rows_written": self.rows_written,
            "error_kind": self.error_kind,
            "error_detail": self.error_detail,
        }


@dataclass
class Execution:
    """One run attempt of a flow.

    Example:
        >>> execution = Execution.create("orders_nightly", trigger_source=TriggerSource.CLI)
        >>> execution.status
        <ExecutionStatus.PENDING: 'pending'>
    """

    id: str
    flow_id: str
    status: ExecutionStatus
    trigger_source: TriggerSource
    created_at: datetime
    params: dict[str, Any] = field(default_factory=dict)
    fire_key: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error_kind: str | None = None
    error_detail: str | None = None
    cancel_requested: bool = False
    outcomes: list[StepOutcome] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        flow_id: str,
        params: dict[str, Any] | None = None,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        fire_key: str | None = None,
    ) -> "Execution":
        """Create a new execution in PENDING status."""
        return cls(
            id=str(uuid.uuid4()),
            flow_id=flow_id,
            status=ExecutionStatus.PENDING,
            trigger_source=trigger_source,
            created_at=utcnow(),
            params=params or {},
            fire_key=fire_key,
        )

    def outcome(self, step_id: str) -> StepOutcome | None:
        for outcome in self.outcomes:
            if outcome.step_id == step_id:
                return outcome
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "flow_id": self.flow_id,
            "status": self.status.value,
            "trigger_source": self.trigger_source.value,
            "fire_key": self.fire_key,
            "params": self.params,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error_kind": self.error_kind,
            "error_detail": self.error_detail,
            "cancel_requested": self.cancel_requested,
            "steps": [o.to_dict() for o in self.outcomes],
        }


@dataclass
class ExecutionEvent:
    """Event in the execution lifecycle.

    Events are immutable, append-only records; ``seq`` orders them within
    one execution.
    """

    id: str
    execution_id: str
    event_type: EventType
    timestamp: datetime
    seq: int = 0
    step_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        execution_id: str,
        event_type: "EventType | str",
        data: dict[str, Any] | None = None,
        step_id: str | None = None,
    ) -> "ExecutionEvent":
        if isinstance(event_type, str) and not isinstance(event_type, EventType):
            event_type = EventType(event_type)
        return cls(
            id=str(uuid.uuid4()),
            execution_id=execution_id,
            event_type=event_type,
            timestamp=utcnow(),
            step_id=step_id,
            data=data or {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "seq": self.seq,
            "event_type": self.event_type.value,
            "step_id": self.step_id,
            "timestamp": _iso(self.timestamp),
            "data": self.data,
        }


@dataclass(frozen=True)
class TriggerFiring:
    """A trigger occurrence: ``schedule:<instant>`` or ``arrival:<token>``."""

    flow_id: str
    fire_key: str


__all__ = [
    "EXECUTION_VALID_TRANSITIONS",
    "STEP_VALID_TRANSITIONS",
    "TERMINAL_STATUSES",
    "EventType",
    "Execution",
    "ExecutionEvent",
    "ExecutionStatus",
    "InvalidTransitionError",
    "StepOutcome",
    "StepStatus",
    "TriggerFiring",
    "TriggerSource",
    "utcnow",
    "validate_execution_transition",
    "validate_step_transition",
]
