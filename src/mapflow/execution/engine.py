"""
Execution Engine - run a flow's steps in dependency order.

Manifesto:
    A run request either becomes exactly one recorded Execution or is
    rejected before anything is written.  Once recorded, every step ends
    in a terminal state:

    - a step starts only after all its predecessors are terminal
    - independent steps run concurrently on a worker pool
    - a failed step cancels its descendants; unrelated steps carry on
    - cancellation is cooperative: started steps finish, the rest are
      ``cancelled``
    - there is no cross-step rollback; each step's write is atomic

Architecture:
    ::

        request_run(flow_id)
             │
             ▼
        take_snapshot ─► ensure_flow_valid ─► build_graph ─► writer check
             │
             ▼
        RunLedger.start_execution   (AlreadyRunning / DuplicateFiring here)
             │
             ▼
        _run (caller thread when wait=True, else a run thread)
             │
             ▼
        readiness loop ── ThreadPoolExecutor ── StepRunner.run ── connectors
             │
             ▼
        RunLedger.finish_execution(succeeded | failed | cancelled)

Tags:
    execution, engine, dag, thread-pool, mapflow
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from mapflow.connectors.registry import ConnectorRegistry, default_registry
from mapflow.core.config import MapflowSettings, get_settings
from mapflow.core.errors import ExecutionNotFoundError, error_kind
from mapflow.core.logging import LogContext, get_logger
from mapflow.core.watermarks import WatermarkAdvance
from mapflow.model.snapshot import MetadataSnapshot, take_snapshot
from mapflow.model.store import MetadataStore
from mapflow.model.validation import ensure_flow_valid
from mapflow.orchestration.graph import FlowGraph, build_graph
from mapflow.rules.resolver import check_writer_agreement, resolve_for_mapping

from .ledger import RunLedger
from .models import (
    EventType,
    Execution,
    ExecutionStatus,
    StepStatus,
    TriggerFiring,
    TriggerSource,
)
from .retry import ExponentialBackoff, RetryStrategy
from .step_runner import ConnectorPool, StepFailure, StepRunner

logger = get_logger(__name__)


@dataclass
class _RunState:
    """Step bookkeeping for one execution (guarded by ``lock``)."""

    pending: set[str]
    succeeded: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    cancelled: set[str] = field(default_factory=set)
    first_error: tuple[str, str, str] | None = None
    lock: threading.Lock = field(default_factory=threading.Lock)


class ExecutionEngine:
    """Runs flows recorded in a :class:`RunLedger`.

    Example:
        >>> engine = ExecutionEngine(store, ledger, registry)
        >>> execution = engine.request_run("orders_nightly", wait=True)
        >>> execution.status
        <ExecutionStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        store: MetadataStore,
        ledger: RunLedger,
        registry: ConnectorRegistry | None = None,
        *,
        max_workers: int | None = None,
        retry_strategy: RetryStrategy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        settings: MapflowSettings | None = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.ledger = ledger
        self.registry = registry or default_registry()
        self.max_workers = max_workers or settings.max_workers
        self.retry_strategy = retry_strategy or ExponentialBackoff.from_settings(settings)
        self.sleep = sleep
        self._threads: dict[str, threading.Thread] = {}
        self._done: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def prepare(self, flow_id: str) -> tuple[MetadataSnapshot, FlowGraph]:
        """Snapshot and validate *flow_id* and build its plan without recording anything.

        Validation reads the snapshot, so the run executes exactly the
        definitions that were checked.
        """
        snapshot = take_snapshot(self.store, flow_id, strict=False)
        ensure_flow_valid(snapshot.flow, snapshot)
        graph = build_graph(snapshot)
        check_writer_agreement(
            (step_id, mapping.target, resolve_for_mapping(mapping, snapshot.table(mapping.target)))
            for step_id in snapshot.flow.steps
            for mapping in (snapshot.mapping_for_step(step_id),)
        )
        return snapshot, graph

    def request_run(
        self,
        flow_id: str,
        *,
        trigger_source: TriggerSource = TriggerSource.MANUAL,
        params: dict[str, Any] | None = None,
        firing: TriggerFiring | None = None,
        watermarks: Iterable[WatermarkAdvance] = (),
        wait: bool = False,
    ) -> Execution:
        """Record a new execution of *flow_id* and run it.

        Args:
            flow_id: Flow to run.
            trigger_source: Who asked.
            params: Run parameters, visible to steps as ``param.*``.
            firing: Trigger occurrence recorded with the execution.
            watermarks: Watermark advances recorded with the execution.
            wait: Run on the caller's thread and return the finished record.

        Raises:
            DefinitionError: The flow is invalid; nothing is recorded.
            AlreadyRunningError: A serialized flow already has an active
                execution; ``execution_id`` names it.
            DuplicateFiringError: *firing* was already recorded.
        """
        snapshot, graph = self.prepare(flow_id)
        execution = Execution.create(
            flow_id,
            params=params,
            trigger_source=trigger_source,
            fire_key=firing.fire_key if firing else None,
        )
        self.ledger.start_execution(
            execution,
            exclusive=snapshot.flow.exclusive,
            step_ids=graph.order,
            firing=firing,
            watermarks=watermarks,
        )
        logger.info(
            "engine.run_requested",
            flow_id=flow_id,
            execution_id=execution.id,
            trigger_source=trigger_source.value,
            steps=len(graph.order),
        )

        done = threading.Event()
        with self._lock:
            self._done[execution.id] = done

        if wait:
            self._run(execution, snapshot, graph, done)
            return self.ledger.require_execution(execution.id)

        thread = threading.Thread(
            target=self._run,
            args=(execution, snapshot, graph, done),
            name=f"mapflow-run-{execution.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[execution.id] = thread
        thread.start()
        return execution

    def cancel_run(self, execution_id: str) -> ExecutionStatus:
        """Request cancellation; returns the status after the request."""
        status = self.ledger.request_cancel(execution_id)
        logger.info("engine.cancel_requested", execution_id=execution_id, status=status.value)
        if status == ExecutionStatus.CANCELLED:
            with self._lock:
                done = self._done.get(execution_id)
            if done is not None:
                done.set()
        return status

    def get_execution_status(self, execution_id: str) -> Execution:
        """Execution record with per-step outcomes.

        Raises:
            ExecutionNotFoundError: Unknown id.
        """
        return self.ledger.require_execution(execution_id)

    def wait(self, execution_id: str, timeout: float | None = None) -> Execution:
        """Block until the execution is terminal (or *timeout* elapses)."""
        with self._lock:
            done = self._done.get(execution_id)
        if done is not None:
            done.wait(timeout)
        execution = self.ledger.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def shutdown(self, timeout: float | None = None) -> None:
        """Wait for in-flight runs started by this engine."""
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    def _run(
        self,
        execution: Execution,
        snapshot: MetadataSnapshot,
        graph: FlowGraph,
        done: threading.Event,
    ) -> None:
        with LogContext(flow_id=execution.flow_id, execution_id=execution.id):
            try:
                if not self.ledger.mark_running(execution.id):
                    logger.info("engine.run_skipped", reason="cancelled_before_start")
                    return
                pool = ConnectorPool(snapshot, self.registry)
                try:
                    state = self._execute_steps(execution, snapshot, graph, pool)
                finally:
                    pool.close()
                self._finish(execution.id, state)
            except Exception as e:
                logger.exception("engine.run_crashed", error=str(e))
                current = self.ledger.get_execution(execution.id)
                if current is not None and not current.status.is_terminal:
                    self.ledger.finish_execution(
                        execution.id,
                        ExecutionStatus.FAILED,
                        error_kind=error_kind(e),
                        error_detail=str(e),
                    )
            finally:
                done.set()
                with self._lock:
                    self._threads.pop(execution.id, None)
                    self._done.pop(execution.id, None)

    def _execute_steps(
        self,
        execution: Execution,
        snapshot: MetadataSnapshot,
        graph: FlowGraph,
        pool: ConnectorPool,
    ) -> _RunState:
        """
        Run steps as their predecessors become terminal.

        Steps whose predecessors all succeeded are submitted to the pool;
        steps downstream of a failure are cancelled without running.
        """
        state = _RunState(pending=set(graph.order))
        position = {step_id: i for i, step_id in enumerate(graph.order)}

        def on_retry(step_id: str, attempt: int, error: BaseException, delay: float) -> None:
            self.ledger.record_event(
                execution.id,
                EventType.STEP_RETRIED,
                {"attempt": attempt, "delay": round(delay, 3), "error_kind": error_kind(error), "error": str(error)},
                step_id=step_id,
            )

        runner = StepRunner(snapshot, pool, self.retry_strategy, sleep=self.sleep, on_retry=on_retry)

        def run_step(step_id: str):
            self.ledger.record_step_started(execution.id, step_id)
            return runner.run(step_id, execution.id, execution.params)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mapflow-step") as executor:
            futures: dict[Future, str] = {}

            while state.pending or futures:
                if state.pending and self.ledger.is_cancel_requested(execution.id):
                    with state.lock:
                        to_cancel = sorted(state.pending, key=position.__getitem__)
                    for step_id in to_cancel:
                        self._cancel_step(execution.id, step_id, state, reason="cancel_requested")

                with state.lock:
                    blocked = [
                        s for s in state.pending
                        if graph.predecessors[s] & (state.failed | state.cancelled)
                    ]
                for step_id in sorted(blocked, key=position.__getitem__):
                    self._cancel_step(execution.id, step_id, state, reason="dependency_failed")

                with state.lock:
                    ready = sorted(
                        (s for s in state.pending if graph.predecessors[s] <= state.succeeded),
                        key=position.__getitem__,
                    )
                slots = self.max_workers - len(futures)
                for step_id in ready[:slots]:
                    with state.lock:
                        state.pending.discard(step_id)
                    futures[executor.submit(run_step, step_id)] = step_id
                    logger.debug("engine.step_submitted", step_id=step_id, active=len(futures))

                if not futures:
                    # Nothing running and nothing ready: the rest can never run.
                    with state.lock:
                        stranded = sorted(state.pending, key=position.__getitem__)
                    for step_id in stranded:
                        self._cancel_step(execution.id, step_id, state, reason="unreachable")
                    break

                finished, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in finished:
                    step_id = futures.pop(future)
                    self._collect(execution.id, step_id, future, state)

        return state

    def _collect(self, execution_id: str, step_id: str, future: Future, state: _RunState) -> None:
        try:
            result = future.result()
        except StepFailure as failure:
            kind = error_kind(failure.error)
            detail = str(failure.error)
            self.ledger.record_step_outcome(
                execution_id,
                step_id,
                StepStatus.FAILED,
                attempts=failure.attempts,
                rows_read=failure.rows_read,
                error_kind=kind,
                error_detail=detail,
            )
            with state.lock:
                state.failed.add(step_id)
                if state.first_error is None:
                    state.first_error = (step_id, kind, detail)
            logger.error("engine.step_failed", step_id=step_id, error_kind=kind, error=detail, attempts=failure.attempts)
            return
        except Exception as e:
            # Raised before the step ran (ledger), so no outcome row moves.
            kind, detail = error_kind(e), str(e)
            logger.exception("engine.step_crashed", step_id=step_id, error=detail)
            with state.lock:
                state.failed.add(step_id)
                if state.first_error is None:
                    state.first_error = (step_id, kind, detail)
            return

        self.ledger.record_step_outcome(
            execution_id,
            step_id,
            StepStatus.SUCCEEDED,
            attempts=result.attempts,
            rows_read=result.rows_read,
            rows_written=result.rows_written,
        )
        with state.lock:
            state.succeeded.add(step_id)
        logger.info(
            "engine.step_succeeded",
            step_id=step_id,
            rows_read=result.rows_read,
            rows_written=result.rows_written,
            attempts=result.attempts,
        )

    def _cancel_step(self, execution_id: str, step_id: str, state: _RunState, *, reason: str) -> None:
        with state.lock:
            if step_id not in state.pending:
                return
            state.pending.discard(step_id)
            state.cancelled.add(step_id)
        self.ledger.record_step_outcome(
            execution_id, step_id, StepStatus.CANCELLED, error_kind=reason
        )
        logger.warning("engine.step_cancelled", step_id=step_id, reason=reason)

    def _finish(self, execution_id: str, state: _RunState) -> None:
        if state.failed:
            step_id, kind, detail = state.first_error or ("", "internal", "")
            self.ledger.finish_execution(
                execution_id,
                ExecutionStatus.FAILED,
                error_kind=kind,
                error_detail=f"Step '{step_id}' failed: {detail}",
            )
            status = ExecutionStatus.FAILED
        elif state.cancelled:
            self.ledger.finish_execution(execution_id, ExecutionStatus.CANCELLED)
            status = ExecutionStatus.CANCELLED
        else:
            self.ledger.finish_execution(execution_id, ExecutionStatus.SUCCEEDED)
            status = ExecutionStatus.SUCCEEDED
        logger.info(
            "engine.run_finished",
            status=status.value,
            succeeded=len(state.succeeded),
            failed=len(state.failed),
            cancelled=len(state.cancelled),
        )


__all__ = ["ExecutionEngine"]
