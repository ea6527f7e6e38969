"""
Typed request objects for operations.

Each dataclass is the *input* contract for one operation function.
Requests carry only validated, transport-agnostic data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# ------------------------------------------------------------------ #
# Definition operations
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class ValidateRequest:
    """Request for :func:`mapflow.ops.definitions.validate_definitions`.

    With no *entity_id* every loaded entity is validated.
    """

    entity_type: str | None = None  # table | mapping | step | flow | connection
    entity_id: str | None = None


@dataclass(frozen=True, slots=True)
class PreviewRulesRequest:
    mapping_id: str = ""


@dataclass(frozen=True, slots=True)
class PlanRequest:
    flow_id: str = ""


# ------------------------------------------------------------------ #
# Run operations
# ------------------------------------------------------------------ #


@dataclass(frozen=True, slots=True)
class SubmitRunRequest:
    """Request for :func:`mapflow.ops.runs.request_run`.

    Attributes:
        flow_id: Flow to run.
        params: Run parameters, visible to steps as ``param.*``.
        wait: Block until the execution is terminal.
        trigger_source: ``"cli"``, ``"api"`` or ``"manual"``.
    """

    flow_id: str = ""
    params: dict[str, Any] = field(default_factory=dict)
    wait: bool = False
    trigger_source: str = "manual"


@dataclass(frozen=True, slots=True)
class CancelRunRequest:
    execution_id: str = ""


@dataclass(frozen=True, slots=True)
class GetRunRequest:
    execution_id: str = ""
    include_events: bool = False


@dataclass(frozen=True, slots=True)
class ListRunsRequest:
    flow_id: str | None = None
    status: str | None = None
    limit: int = 50
    offset: int = 0
