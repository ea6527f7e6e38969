"""Run ledger - persistent record of every execution, step outcome and event.

The RunLedger is the single source of truth for run state.  It is also
the concurrency arbiter: the partial unique index on ``mf_executions``
admits one active execution per serialized flow, and the primary key on
``mf_trigger_firings`` admits one execution per trigger occurrence.  Both
checks happen inside the transaction that records the execution, together
with the watermark advance, so a crash can never leave a firing recorded
without its execution (or the reverse).

Architecture:

    .. code-block:: text

        RunLedger
        ┌───────────────────────────────────────────────────────────┐
        │  start_execution()   ── one transaction ──────────────┐   │
        │     firing insert        (PK → DuplicateFiringError)  │   │
        │     execution insert     (index → AlreadyRunningError)│   │
        │     step outcome rows    (pending)                    │   │
        │     watermark advances   (forward-only)               │   │
        │     "created" event                                   │   │
        │  ─────────────────────────────────────────────────────┘   │
        │  mark_running / record_step_started / record_step_outcome │
        │  finish_execution / request_cancel / recover_orphans      │
        │  get_execution / list_executions / find_active / get_events│
        ├───────────────────────────────────────────────────────────┤
        │  mf_executions ──< mf_step_outcomes                        │
        │        └───────< mf_execution_events (append-only)         │
        │  mf_trigger_firings    mf_watermarks                       │
        └───────────────────────────────────────────────────────────┘

Example:
    >>> conn, _ = create_connection(":memory:", init_schema=True)
    >>> ledger = RunLedger(conn)
    >>> execution = Execution.create("orders_nightly")
    >>> ledger.start_execution(execution, exclusive=True, step_ids=["load"])
"""

import json
import os
import platform
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from mapflow.core.errors import AlreadyRunningError, DuplicateFiringError, ExecutionNotFoundError
from mapflow.core.logging import get_logger
from mapflow.core.watermarks import WatermarkAdvance, WatermarkStore

from .models import (
    EventType,
    Execution,
    ExecutionEvent,
    ExecutionStatus,
    StepOutcome,
    StepStatus,
    TriggerFiring,
    TriggerSource,
    utcnow,
    validate_execution_transition,
    validate_step_transition,
)

logger = get_logger(__name__)

ORPHANED = "orphaned"


def process_owner() -> str:
    """``host:pid`` of the current process."""
    return f"{platform.node()}:{os.getpid()}"


def owner_alive(owner: str | None) -> bool:
    """Whether the process named by *owner* may still be running.

    Processes on other hosts cannot be checked and count as alive.
    """
    if not owner:
        return False
    host, _, pid_text = owner.rpartition(":")
    if host != platform.node() or not pid_text.isdigit():
        return True
    pid = int(pid_text)
    if pid == os.getpid() or os.name == "nt":
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


_EXECUTION_COLUMNS = (
    "id, flow_id, status, trigger_source, fire_key, params, created_at, "
    "started_at, ended_at, error_kind, error_detail, cancel_requested"
)
_OUTCOME_COLUMNS = (
    "execution_id, step_id, position, status, started_at, ended_at, "
    "attempts, rows_read, rows_written, error_kind, error_detail"
)

_STEP_EVENTS = {
    StepStatus.SUCCEEDED: EventType.STEP_SUCCEEDED,
    StepStatus.FAILED: EventType.STEP_FAILED,
    StepStatus.CANCELLED: EventType.STEP_CANCELLED,
}
_FINISH_EVENTS = {
    ExecutionStatus.SUCCEEDED: EventType.SUCCEEDED,
    ExecutionStatus.FAILED: EventType.FAILED,
    ExecutionStatus.CANCELLED: EventType.CANCELLED,
}


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RunLedger:
    """Manages executions, step outcomes, events, firings and watermarks.

    Thread-safe: engine workers report step outcomes concurrently, so all
    access to the shared sqlite connection is serialized by a lock.
    """

    def __init__(self, conn: sqlite3.Connection, owner: str | None = None):
        self._conn = conn
        self.owner = owner or process_owner()
        self._lock = threading.RLock()
        self.watermarks = WatermarkStore(conn)

    # =========================================================================
    # EXECUTION LIFECYCLE
    # =========================================================================

    def start_execution(
        self,
        execution: Execution,
        *,
        exclusive: bool,
        step_ids: Iterable[str],
        firing: TriggerFiring | None = None,
        watermarks: Iterable[WatermarkAdvance] = (),
    ) -> Execution:
        """Record a new pending execution atomically.

        Args:
            execution: A freshly created PENDING execution.
            exclusive: The flow is ``serialize``; at most one active run.
            step_ids: Steps in plan order; a ``pending`` outcome row each.
            firing: Trigger occurrence that caused this run, if any.
            watermarks: Watermark advances committed with the record.

        Raises:
            DuplicateFiringError: *firing* was already recorded.
            AlreadyRunningError: The flow has an active execution.
        """
        step_ids = list(step_ids)
        execution.outcomes = [
            StepOutcome(execution_id=execution.id, step_id=step_id, position=position)
            for position, step_id in enumerate(step_ids)
        ]
        with self._lock:
            try:
                if firing is not None:
                    try:
                        self._conn.execute(
                            "INSERT INTO mf_trigger_firings (flow_id, fire_key, execution_id, fired_at) "
                            "VALUES (?, ?, ?, ?)",
                            (firing.flow_id, firing.fire_key, execution.id, execution.created_at.isoformat()),
                        )
                    except sqlite3.IntegrityError as e:
                        raise DuplicateFiringError(firing.flow_id, firing.fire_key, cause=e) from e

                try:
                    self._conn.execute(
                        "INSERT INTO mf_executions (id, flow_id, status, exclusive, trigger_source, "
                        "fire_key, params, created_at, owner) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            execution.id,
                            execution.flow_id,
                            execution.status.value,
                            1 if exclusive else 0,
                            execution.trigger_source.value,
                            execution.fire_key,
                            json.dumps(execution.params, default=str),
                            execution.created_at.isoformat(),
                            self.owner,
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    active = self._active_id(execution.flow_id)
                    if active is None:
                        raise
                    raise AlreadyRunningError(execution.flow_id, active, cause=e) from e

                self._conn.executemany(
                    "INSERT INTO mf_step_outcomes (execution_id, step_id, position, status) "
                    "VALUES (?, ?, ?, ?)",
                    [(o.execution_id, o.step_id, o.position, o.status.value) for o in execution.outcomes],
                )
                for advance in watermarks:
                    self.watermarks.advance(
                        advance.flow_id,
                        advance.location,
                        advance.high_water,
                        metadata=advance.metadata,
                        commit=False,
                    )
                self._insert_event(
                    ExecutionEvent.create(
                        execution.id,
                        EventType.CREATED,
                        {
                            "flow_id": execution.flow_id,
                            "trigger_source": execution.trigger_source.value,
                            "fire_key": execution.fire_key,
                        },
                    )
                )
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise

        logger.info(
            "ledger.execution_created",
            execution_id=execution.id,
            flow_id=execution.flow_id,
            fire_key=execution.fire_key,
            steps=len(step_ids),
        )
        return execution

    def mark_running(self, execution_id: str) -> bool:
        """Move a pending execution to RUNNING.

        Returns ``False`` if it is no longer pending (cancelled before it
        started).
        """
        with self._lock:
            current = self._status(execution_id)
            if current != ExecutionStatus.PENDING:
                return False
            self._conn.execute(
                "UPDATE mf_executions SET status = ?, started_at = ? WHERE id = ?",
                (ExecutionStatus.RUNNING.value, utcnow().isoformat(), execution_id),
            )
            self._insert_event(ExecutionEvent.create(execution_id, EventType.STARTED))
            self._conn.commit()
        return True

    def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error_kind: str | None = None,
        error_detail: str | None = None,
    ) -> None:
        """Record the terminal status of an execution."""
        with self._lock:
            validate_execution_transition(self._status(execution_id), status)
            self._conn.execute(
                "UPDATE mf_executions SET status = ?, ended_at = ?, error_kind = ?, error_detail = ? "
                "WHERE id = ?",
                (status.value, utcnow().isoformat(), error_kind, error_detail, execution_id),
            )
            self._insert_event(
                ExecutionEvent.create(
                    execution_id,
                    _FINISH_EVENTS[status],
                    {"error_kind": error_kind, "error_detail": error_detail} if error_kind else {},
                )
            )
            self._conn.commit()
        logger.info("ledger.execution_finished", execution_id=execution_id, status=status.value)

    def request_cancel(self, execution_id: str) -> ExecutionStatus:
        """Cancel a pending execution now, or flag a running one.

        Returns the execution's status after the request.  Terminal
        executions are left untouched.
        """
        with self._lock:
            current = self._status(execution_id)
            if current == ExecutionStatus.PENDING:
                now = utcnow().isoformat()
                self._conn.execute(
                    "UPDATE mf_executions SET status = ?, ended_at = ?, cancel_requested = 1 WHERE id = ?",
                    (ExecutionStatus.CANCELLED.value, now, execution_id),
                )
                self._conn.execute(
                    "UPDATE mf_step_outcomes SET status = ?, ended_at = ? "
                    "WHERE execution_id = ? AND status = ?",
                    (StepStatus.CANCELLED.value, now, execution_id, StepStatus.PENDING.value),
                )
                self._insert_event(ExecutionEvent.create(execution_id, EventType.CANCELLED))
                self._conn.commit()
                return ExecutionStatus.CANCELLED
            if current == ExecutionStatus.RUNNING:
                self._conn.execute(
                    "UPDATE mf_executions SET cancel_requested = 1 WHERE id = ?",
                    (execution_id,),
                )
                self._insert_event(ExecutionEvent.create(execution_id, EventType.CANCEL_REQUESTED))
                self._conn.commit()
            return current

    def is_cancel_requested(self, execution_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT cancel_requested FROM mf_executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return bool(row and row[0])

    def recover_orphans(self, *, include_live: bool = False) -> list[str]:
        """Fail executions left active by a process that died.

        Only runs whose owner is gone are touched: a run started on this
        host by a process that no longer exists, or one with no recorded
        owner.  Runs owned by a live process, or by another host, are left
        alone unless ``include_live`` is set.  Unstarted steps become
        ``cancelled``; steps caught mid-flight become ``failed`` with kind
        ``orphaned``.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, owner FROM mf_executions WHERE status IN (?, ?)",
                (ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value),
            ).fetchall()
            orphaned = [row[0] for row in rows if include_live or not owner_alive(row[1])]
            now = utcnow().isoformat()
            for execution_id in orphaned:
                self._conn.execute(
                    "UPDATE mf_step_outcomes SET status = ?, ended_at = ?, error_kind = ?, "
                    "error_detail = ? WHERE execution_id = ? AND status = ?",
                    (
                        StepStatus.FAILED.value,
                        now,
                        ORPHANED,
                        "Process ended while the step was running",
                        execution_id,
                        StepStatus.RUNNING.value,
                    ),
                )
                self._conn.execute(
                    "UPDATE mf_step_outcomes SET status = ?, ended_at = ? "
                    "WHERE execution_id = ? AND status = ?",
                    (StepStatus.CANCELLED.value, now, execution_id, StepStatus.PENDING.value),
                )
                self._conn.execute(
                    "UPDATE mf_executions SET status = ?, ended_at = ?, error_kind = ?, error_detail = ? "
                    "WHERE id = ?",
                    (
                        ExecutionStatus.FAILED.value,
                        now,
                        ORPHANED,
                        "Process ended before the execution finished",
                        execution_id,
                    ),
                )
                self._insert_event(ExecutionEvent.create(execution_id, EventType.ORPHANED))
            self._conn.commit()
        if orphaned:
            logger.warning("ledger.orphans_recovered", count=len(orphaned), execution_ids=orphaned)
        return orphaned

    # =========================================================================
    # STEP OUTCOMES
    # =========================================================================

    def record_step_started(self, execution_id: str, step_id: str) -> None:
        with self._lock:
            validate_step_transition(self._step_status(execution_id, step_id), StepStatus.RUNNING)
            self._conn.execute(
                "UPDATE mf_step_outcomes SET status = ?, started_at = ? WHERE execution_id = ? AND step_id = ?",
                (StepStatus.RUNNING.value, utcnow().isoformat(), execution_id, step_id),
            )
            self._insert_event(ExecutionEvent.create(execution_id, EventType.STEP_STARTED, step_id=step_id))
            self._conn.commit()

    def record_step_outcome(
        self,
        execution_id: str,
        step_id: str,
        status: StepStatus,
        *,
        attempts: int = 0,
        rows_read: int = 0,
        rows_written: int = 0,
        error_kind: str | None = None,
        error_detail: str | None = None,
    ) -> None:
        """Record the terminal outcome of one step."""
        with self._lock:
            validate_step_transition(self._step_status(execution_id, step_id), status)
            self._conn.execute(
                "UPDATE mf_step_outcomes SET status = ?, ended_at = ?, attempts = ?, rows_read = ?, "
                "rows_written = ?, error_kind = ?, error_detail = ? WHERE execution_id = ? AND step_id = ?",
                (
                    status.value,
                    utcnow().isoformat(),
                    attempts,
                    rows_read,
                    rows_written,
                    error_kind,
                    error_detail,
                    execution_id,
                    step_id,
                ),
            )
            data: dict[str, Any] = {"attempts": attempts, "rows_read": rows_read, "rows_written": rows_written}
            if error_kind:
                data.update(error_kind=error_kind, error_detail=error_detail)
            self._insert_event(ExecutionEvent.create(execution_id, _STEP_EVENTS[status], data, step_id=step_id))
            self._conn.commit()

    # =========================================================================
    # EVENTS
    # =========================================================================

    def record_event(
        self,
        execution_id: str,
        event_type: "EventType | str",
        data: dict[str, Any] | None = None,
        *,
        step_id: str | None = None,
    ) -> ExecutionEvent:
        """Append an event to an execution's log."""
        event = ExecutionEvent.create(execution_id, event_type, data, step_id=step_id)
        with self._lock:
            self._insert_event(event)
            self._conn.commit()
        return event

    def get_events(self, execution_id: str) -> list[ExecutionEvent]:
        """All events for an execution in the order they were recorded."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, execution_id, event_type, timestamp, seq, step_id, data "
                "FROM mf_execution_events WHERE execution_id = ? ORDER BY seq ASC",
                (execution_id,),
            ).fetchall()
        return [
            ExecutionEvent(
                id=row[0],
                execution_id=row[1],
                event_type=EventType(row[2]),
                timestamp=datetime.fromisoformat(row[3]),
                seq=row[4],
                step_id=row[5],
                data=json.loads(row[6]) if row[6] else {},
            )
            for row in rows
        ]

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_execution(self, execution_id: str) -> Execution | None:
        """Execution with its step outcomes, or ``None``."""
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_EXECUTION_COLUMNS} FROM mf_executions WHERE id = ?", (execution_id,)
            ).fetchone()
            if row is None:
                return None
            execution = self._row_to_execution(row)
            rows = self._conn.execute(
                f"SELECT {_OUTCOME_COLUMNS} FROM mf_step_outcomes WHERE execution_id = ? ORDER BY position",
                (execution_id,),
            ).fetchall()
        execution.outcomes = [self._row_to_outcome(r) for r in rows]
        return execution

    def require_execution(self, execution_id: str) -> Execution:
        execution = self.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    def find_active(self, flow_id: str) -> Execution | None:
        """The flow's pending or running execution, if any."""
        active_id = self._active_id(flow_id)
        return self.get_execution(active_id) if active_id else None

    def list_executions(
        self,
        flow_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Execution]:
        """Executions newest first, without step outcomes."""
        where, params = self._filters(flow_id, status)
        query = f"SELECT {_EXECUTION_COLUMNS} FROM mf_executions{where} ORDER BY created_at DESC, id LIMIT ? OFFSET ?"
        with self._lock:
            rows = self._conn.execute(query, [*params, limit, offset]).fetchall()
        return [self._row_to_execution(row) for row in rows]

    def count_executions(self, flow_id: str | None = None, status: ExecutionStatus | None = None) -> int:
        where, params = self._filters(flow_id, status)
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM mf_executions{where}", params).fetchone()
        return row[0] if row else 0

    @staticmethod
    def _filters(flow_id: str | None, status: ExecutionStatus | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if flow_id:
            clauses.append("flow_id = ?")
            params.append(flow_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        return (" WHERE " + " AND ".join(clauses) if clauses else ""), params

    def last_firing(self, flow_id: str, prefix: str = "") -> str | None:
        """Greatest recorded fire key for *flow_id* starting with *prefix*."""
        with self._lock:
            row = self._conn.execute(
                "SELECT MAX(fire_key) FROM mf_trigger_firings WHERE flow_id = ? AND fire_key LIKE ?",
                (flow_id, f"{prefix}%"),
            ).fetchone()
        return row[0] if row else None

    # -- internal -------------------------------------------------------------

    def _status(self, execution_id: str) -> ExecutionStatus:
        row = self._conn.execute("SELECT status FROM mf_executions WHERE id = ?", (execution_id,)).fetchone()
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionStatus(row[0])

    def _step_status(self, execution_id: str, step_id: str) -> StepStatus:
        row = self._conn.execute(
            "SELECT status FROM mf_step_outcomes WHERE execution_id = ? AND step_id = ?",
            (execution_id, step_id),
        ).fetchone()
        if row is None:
            raise ExecutionNotFoundError(f"{execution_id}/{step_id}")
        return StepStatus(row[0])

    def _active_id(self, flow_id: str) -> str | None:
        row = self._conn.execute(
            "SELECT id FROM mf_executions WHERE flow_id = ? AND status IN (?, ?) "
            "ORDER BY exclusive DESC, created_at ASC LIMIT 1",
            (flow_id, ExecutionStatus.PENDING.value, ExecutionStatus.RUNNING.value),
        ).fetchone()
        return row[0] if row else None

    def _insert_event(self, event: ExecutionEvent) -> None:
        row = self._conn.execute(
            "SELECT COALESCE(MAX(seq), 0) + 1 FROM mf_execution_events WHERE execution_id = ?",
            (event.execution_id,),
        ).fetchone()
        event.seq = row[0]
        self._conn.execute(
            "INSERT INTO mf_execution_events (id, execution_id, seq, event_type, step_id, timestamp, data) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.execution_id,
                event.seq,
                event.event_type.value,
                event.step_id,
                event.timestamp.isoformat(),
                json.dumps(event.data, default=str),
            ),
        )

    @staticmethod
    def _row_to_execution(row: tuple) -> Execution:
        return Execution(
            id=row[0],
            flow_id=row[1],
            status=ExecutionStatus(row[2]),
            trigger_source=TriggerSource(row[3]),
            fire_key=row[4],
            params=json.loads(row[5]) if row[5] else {},
            created_at=datetime.fromisoformat(row[6]),
            started_at=_dt(row[7]),
            ended_at=_dt(row[8]),
            error_kind=row[9],
            error_detail=row[10],
            cancel_requested=bool(row[11]),
        )

    @staticmethod
    def _row_to_outcome(row: tuple) -> StepOutcome:
        return StepOutcome(
            execution_id=row[0],
            step_id=row[1],
            position=row[2],
            status=StepStatus(row[3]),
            started_at=_dt(row[4]),
            ended_at=_dt(row[5]),
            attempts=row[6],
            rows_read=row[7],
            rows_written=row[8],
            error_kind=row[9],
            error_detail=row[10],
        )


__all__ = ["ORPHANED", "RunLedger", "owner_alive", "process_owner"]
