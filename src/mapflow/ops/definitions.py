"""
Definition operations.

Validate entities, preview a mapping's effective rules and show a flow's
execution plan.  Nothing here records anything in the run ledger.
"""

from __future__ import annotations

from typing import Any

from mapflow.core.errors import MapflowError, ValidationFailedError
from mapflow.core.logging import get_logger
from mapflow.model.validation import validate, validate_all
from mapflow.rules.resolver import resolve_for_mapping

from .context import OperationContext
from .requests import PlanRequest, PreviewRulesRequest, ValidateRequest
from .responses import FlowPlan, RulePreview, ValidationReport
from .result import OperationResult, start_timer

logger = get_logger(__name__)

_ENTITY_TYPES = ("table", "mapping", "step", "flow", "connection")


def _lookup(ctx: OperationContext, entity_type: str, entity_id: str) -> Any:
    return getattr(ctx.store, f"get_{entity_type}")(entity_id)


def validate_definitions(
    ctx: OperationContext,
    request: ValidateRequest,
) -> OperationResult[ValidationReport]:
    """Validate one entity, or every loaded entity.

    Violations are data, not a failure: the result is ``ok`` with
    ``valid=False``.  Only an unknown entity fails (``NOT_FOUND``).
    """
    timer = start_timer()

    if request.entity_type and request.entity_type not in _ENTITY_TYPES:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            f"entity_type must be one of: {', '.join(_ENTITY_TYPES)}",
            elapsed_ms=timer.elapsed_ms,
        )

    if request.entity_id:
        types = (request.entity_type,) if request.entity_type else _ENTITY_TYPES
        entities = [e for t in types if (e := _lookup(ctx, t, request.entity_id)) is not None]
        if not entities:
            return OperationResult.fail(
                "NOT_FOUND",
                f"No {request.entity_type or 'entity'} named '{request.entity_id}'",
                elapsed_ms=timer.elapsed_ms,
            )
        violations = [v for entity in entities for v in validate(entity, ctx.store)]
        checked = len(entities)
    else:
        violations = validate_all(ctx.store)
        checked = len(ctx.store.all_entities())

    report = ValidationReport(
        valid=not violations,
        checked=checked,
        violations=[v.to_dict() for v in violations],
    )
    logger.info("ops.validated", checked=checked, violations=len(violations))
    return OperationResult.ok(report, elapsed_ms=timer.elapsed_ms)


def preview_effective_rules(
    ctx: OperationContext,
    request: PreviewRulesRequest,
) -> OperationResult[RulePreview]:
    """Show the rules a mapping's step would write with, and their origin."""
    timer = start_timer()

    if not request.mapping_id:
        return OperationResult.fail("VALIDATION_FAILED", "mapping_id is required", elapsed_ms=timer.elapsed_ms)

    mapping = ctx.store.get_mapping(request.mapping_id)
    if mapping is None:
        return OperationResult.fail(
            "NOT_FOUND", f"Mapping '{request.mapping_id}' not found", elapsed_ms=timer.elapsed_ms
        )
    target = ctx.store.get_table(mapping.target)
    if target is None:
        return OperationResult.fail(
            "NOT_FOUND",
            f"Mapping '{mapping.id}' targets unknown table '{mapping.target}'",
            elapsed_ms=timer.elapsed_ms,
        )

    try:
        rule_set = resolve_for_mapping(mapping, target)
    except MapflowError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    preview = RulePreview(mapping_id=mapping.id, target=target.id, rules=rule_set.to_dict())
    return OperationResult.ok(preview, elapsed_ms=timer.elapsed_ms)


def plan_flow(
    ctx: OperationContext,
    request: PlanRequest,
) -> OperationResult[FlowPlan]:
    """Validate a flow and return its step order and parallel layers."""
    timer = start_timer()

    if not request.flow_id:
        return OperationResult.fail("VALIDATION_FAILED", "flow_id is required", elapsed_ms=timer.elapsed_ms)

    try:
        _, graph = ctx.engine.prepare(request.flow_id)
    except ValidationFailedError as exc:
        return OperationResult.from_error(
            exc,
            details={"violations": [v.to_dict() for v in exc.violations]},
            elapsed_ms=timer.elapsed_ms,
        )
    except MapflowError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    plan = graph.to_dict()
    return OperationResult.ok(
        FlowPlan(flow_id=graph.flow_id, order=plan["order"], layers=plan["layers"], edges=plan["edges"]),
        elapsed_ms=timer.elapsed_ms,
    )


__all__ = ["plan_flow", "preview_effective_rules", "validate_definitions"]
