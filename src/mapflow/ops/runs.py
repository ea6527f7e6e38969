"""
Run operations.

Request, cancel and inspect flow executions.  These wrap
:class:`~mapflow.execution.engine.ExecutionEngine` and
:class:`~mapflow.execution.ledger.RunLedger` with typed request/response
contracts.

A run request against a serialized flow that already has an active
execution is *not* a failure: the result is ``ok`` with
``already_running=True`` and the active execution's id, and nothing new is
recorded.
"""

from __future__ import annotations

from typing import Any

from mapflow.core.errors import AlreadyRunningError, ExecutionNotFoundError, MapflowError
from mapflow.core.logging import get_logger
from mapflow.execution.models import Execution, ExecutionStatus, TriggerSource

from .context import OperationContext
from .requests import CancelRunRequest, GetRunRequest, ListRunsRequest, SubmitRunRequest
from .responses import CancelOutcome, RunAccepted, RunSummary
from .result import OperationResult, PagedResult, start_timer

logger = get_logger(__name__)


def request_run(
    ctx: OperationContext,
    request: SubmitRunRequest,
) -> OperationResult[RunAccepted]:
    """Record and start an execution of ``request.flow_id``."""
    timer = start_timer()

    if not request.flow_id:
        return OperationResult.fail("VALIDATION_FAILED", "flow_id is required", elapsed_ms=timer.elapsed_ms)
    try:
        source = TriggerSource(request.trigger_source)
    except ValueError:
        return OperationResult.fail(
            "VALIDATION_FAILED",
            f"Unknown trigger source '{request.trigger_source}'",
            elapsed_ms=timer.elapsed_ms,
        )

    try:
        if ctx.dry_run:
            ctx.engine.prepare(request.flow_id)
            return OperationResult.ok(
                RunAccepted(flow_id=request.flow_id, dry_run=True),
                elapsed_ms=timer.elapsed_ms,
            )
        execution = ctx.engine.request_run(
            request.flow_id,
            trigger_source=source,
            params=dict(request.params),
            wait=request.wait,
        )
    except AlreadyRunningError as exc:
        logger.info("ops.run_already_active", flow_id=request.flow_id, execution_id=exc.execution_id)
        active = ctx.ledger.get_execution(exc.execution_id) if exc.execution_id else None
        return OperationResult.ok(
            RunAccepted(
                execution_id=exc.execution_id,
                flow_id=request.flow_id,
                status=active.status.value if active else ExecutionStatus.RUNNING.value,
                already_running=True,
            ),
            warnings=[str(exc)],
            elapsed_ms=timer.elapsed_ms,
        )
    except MapflowError as exc:
        return OperationResult.from_error(exc, details=_violations(exc), elapsed_ms=timer.elapsed_ms)
    except Exception as exc:
        logger.exception("op_failed", error=str(exc))
        return OperationResult.fail("INTERNAL", f"Failed to request run: {exc}", elapsed_ms=timer.elapsed_ms)

    return OperationResult.ok(
        RunAccepted(execution_id=execution.id, flow_id=execution.flow_id, status=execution.status.value),
        elapsed_ms=timer.elapsed_ms,
        metadata={"request_id": ctx.request_id, "caller": ctx.caller},
    )


def cancel_run(
    ctx: OperationContext,
    request: CancelRunRequest,
) -> OperationResult[CancelOutcome]:
    """Cancel a pending execution, or flag a running one for cancellation."""
    timer = start_timer()

    if not request.execution_id:
        return OperationResult.fail("VALIDATION_FAILED", "execution_id is required", elapsed_ms=timer.elapsed_ms)

    execution = ctx.ledger.get_execution(request.execution_id)
    if execution is None:
        return OperationResult.fail(
            "NOT_FOUND", f"Execution '{request.execution_id}' not found", elapsed_ms=timer.elapsed_ms
        )
    if execution.status.is_terminal:
        return OperationResult.fail(
            "NOT_CANCELLABLE",
            f"Execution is already in terminal status '{execution.status.value}'",
            elapsed_ms=timer.elapsed_ms,
        )
    if ctx.dry_run:
        return OperationResult.ok(
            CancelOutcome(execution_id=execution.id, status=execution.status.value),
            elapsed_ms=timer.elapsed_ms,
        )

    try:
        status = ctx.engine.cancel_run(execution.id)
    except ExecutionNotFoundError as exc:
        return OperationResult.from_error(exc, elapsed_ms=timer.elapsed_ms)

    warnings = []
    if status == ExecutionStatus.RUNNING:
        warnings.append("Cancellation requested; started steps will finish first")
    return OperationResult.ok(
        CancelOutcome(execution_id=execution.id, status=status.value),
        warnings=warnings,
        elapsed_ms=timer.elapsed_ms,
    )


def get_execution_status(
    ctx: OperationContext,
    request: GetRunRequest,
) -> OperationResult[dict[str, Any]]:
    """Execution record with per-step outcomes (and events, on request)."""
    timer = start_timer()

    if not request.execution_id:
        return OperationResult.fail("VALIDATION_FAILED", "execution_id is required", elapsed_ms=timer.elapsed_ms)

    try:
        execution = ctx.engine.get_execution_status(request.execution_id)
    except ExecutionNotFoundError:
        return OperationResult.fail(
            "NOT_FOUND", f"Execution '{request.execution_id}' not found", elapsed_ms=timer.elapsed_ms
        )

    detail = execution.to_dict()
    if request.include_events:
        detail["events"] = [e.to_dict() for e in ctx.ledger.get_events(execution.id)]
    return OperationResult.ok(detail, elapsed_ms=timer.elapsed_ms)


def list_runs(
    ctx: OperationContext,
    request: ListRunsRequest,
) -> PagedResult[RunSummary]:
    """List executions newest first, optionally by flow and status."""
    timer = start_timer()

    status = None
    if request.status:
        try:
            status = ExecutionStatus(request.status)
        except ValueError:
            return PagedResult.fail(
                "VALIDATION_FAILED",
                f"Unknown status '{request.status}'",
                elapsed_ms=timer.elapsed_ms,
            )

    try:
        executions = ctx.ledger.list_executions(
            request.flow_id, status, limit=request.limit, offset=request.offset
        )
        total = ctx.ledger.count_executions(request.flow_id, status)
    except Exception as exc:
        logger.exception("op_failed", error=str(exc))
        return PagedResult.fail("INTERNAL", f"Failed to list runs: {exc}", elapsed_ms=timer.elapsed_ms)

    return PagedResult.from_items(
        [_summary(e) for e in executions],
        total=total,
        limit=request.limit,
        offset=request.offset,
        elapsed_ms=timer.elapsed_ms,
    )


def recover_orphans(ctx: OperationContext, *, include_live: bool = False) -> OperationResult[list[str]]:
    """Fail executions a dead process left active.

    ``include_live`` also fails runs whose owner still looks alive, for
    an operator who knows the owning host is gone.
    """
    timer = start_timer()
    if ctx.dry_run:
        return OperationResult.ok([], elapsed_ms=timer.elapsed_ms)
    recovered = ctx.ledger.recover_orphans(include_live=include_live)
    return OperationResult.ok(recovered, elapsed_ms=timer.elapsed_ms)


def _summary(execution: Execution) -> RunSummary:
    return RunSummary(
        execution_id=execution.id,
        flow_id=execution.flow_id,
        status=execution.status.value,
        trigger_source=execution.trigger_source.value,
        created_at=execution.created_at.isoformat() if execution.created_at else None,
        ended_at=execution.ended_at.isoformat() if execution.ended_at else None,
        error_kind=execution.error_kind,
    )


def _violations(exc: MapflowError) -> dict[str, Any]:
    violations = getattr(exc, "violations", None)
    return {"violations": [v.to_dict() for v in violations]} if violations else {}


__all__ = ["cancel_run", "get_execution_status", "list_runs", "recover_orphans", "request_run"]
