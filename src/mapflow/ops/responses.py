"""
Typed response objects for operations.

Plain dataclasses; the CLI renders them with ``dataclasses.asdict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ValidationReport:
    """Outcome of validating one or more entities."""

    valid: bool
    checked: int = 0
    violations: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RulePreview:
    """A mapping's effective rules, column by column."""

    mapping_id: str
    target: str
    rules: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass(slots=True)
class FlowPlan:
    flow_id: str
    order: list[str] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    edges: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RunAccepted:
    """Returned when a run request is accepted.

    ``already_running`` is set when a serialized flow had an active
    execution; ``execution_id`` then names that execution and nothing new
    was recorded.
    """

    execution_id: str | None = None
    flow_id: str = ""
    status: str = ""
    already_running: bool = False
    dry_run: bool = False


@dataclass(slots=True)
class RunSummary:
    """Compact run representation for list views."""

    execution_id: str
    flow_id: str
    status: str = ""
    trigger_source: str = ""
    created_at: str | None = None
    ended_at: str | None = None
    error_kind: str | None = None


@dataclass(slots=True)
class CancelOutcome:
    execution_id: str
    status: str
