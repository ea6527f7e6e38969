"""
Operations layer - typed entry points for the CLI and SDK callers.

Every function takes an :class:`OperationContext` and a request object and
returns an :class:`OperationResult`; engine exceptions never escape.
"""

from .context import OperationContext, open_context
from .definitions import plan_flow, preview_effective_rules, validate_definitions
from .requests import (
    CancelRunRequest,
    GetRunRequest,
    ListRunsRequest,
    PlanRequest,
    PreviewRulesRequest,
    SubmitRunRequest,
    ValidateRequest,
)
from .result import OperationError, OperationResult, PagedResult
from .runs import cancel_run, get_execution_status, list_runs, recover_orphans, request_run

__all__ = [
    "CancelRunRequest",
    "GetRunRequest",
    "ListRunsRequest",
    "OperationContext",
    "OperationError",
    "OperationResult",
    "PagedResult",
    "PlanRequest",
    "PreviewRulesRequest",
    "SubmitRunRequest",
    "ValidateRequest",
    "cancel_run",
    "get_execution_status",
    "list_runs",
    "open_context",
    "plan_flow",
    "preview_effective_rules",
    "recover_orphans",
    "request_run",
    "validate_definitions",
]
