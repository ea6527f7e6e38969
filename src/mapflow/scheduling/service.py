"""
Trigger Scheduler - request runs when schedules come due or files arrive.

Manifesto:
    The scheduler never runs anything itself; it only asks the engine for
    runs.  Exactly-once firing is not the scheduler's memory but the
    ledger's: a scheduled instant is a ``mf_trigger_firings`` row and a
    file arrival is a watermark advance, both written in the transaction
    that records the execution.  A scheduler that crashes mid-tick and
    restarts simply detects the same occurrence again and either records
    it (it was never recorded) or gets ``DuplicateFiringError`` (it was).

Per-flow state machine::

    idle ──detect──► trigger_detected ──request──► run_requested ──► idle
                           │
                           └── AlreadyRunning ──► pending (coalesced)

    While a flow is running, one pending request is remembered; newer
    occurrences replace it instead of queueing behind it.  The pending
    request is retried on every tick until the running execution ends.

Tags:
    scheduling, triggers, cron, file-arrival, beat-as-poller, mapflow
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from mapflow.connectors.registry import ConnectorRegistry
from mapflow.core.errors import AlreadyRunningError, DuplicateFiringError
from mapflow.core.logging import get_logger
from mapflow.execution.engine import ExecutionEngine
from mapflow.execution.models import TriggerFiring, TriggerSource
from mapflow.model.entities import Flow, TriggerKind

from .clock import Clock, SystemClock
from .protocol import SchedulerBackend
from .thread_backend import ThreadSchedulerBackend
from .triggers import SCHEDULE_PREFIX, Detection, detect_arrivals, detect_schedule

logger = get_logger(__name__)


class TriggerState(str, Enum):
    IDLE = "idle"
    TRIGGER_DETECTED = "trigger_detected"
    RUN_REQUESTED = "run_requested"


@dataclass
class FlowTriggerState:
    """Scheduler-side state of one flow."""

    flow_id: str
    state: TriggerState = TriggerState.IDLE
    pending: Detection | None = None
    last_execution_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "state": self.state.value,
            "pending_fire_key": self.pending.fire_key if self.pending else None,
            "last_execution_id": self.last_execution_id,
        }


@dataclass
class SchedulerStats:
    """Statistics for the trigger scheduler."""

    ticks: int = 0
    requested: int = 0
    coalesced: int = 0
    duplicates: int = 0
    errors: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "requested": self.requested,
            "coalesced": self.coalesced,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


_TRIGGER_SOURCES = {
    TriggerKind.SCHEDULE: TriggerSource.SCHEDULE,
    TriggerKind.FILE_ARRIVAL: TriggerSource.FILE_ARRIVAL,
}


class TriggerScheduler:
    """Poll loop over every flow with a schedule or file-arrival trigger.

    Example:
        >>> scheduler = TriggerScheduler(engine, clock=ManualClock(start))
        >>> scheduler.tick()          # anchor; fires nothing before *start*
        >>> clock.advance(minutes=1)
        >>> scheduler.tick()          # requests the run due at start + 1m
        ['3f0c...']
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        *,
        clock: Clock | None = None,
        registry: ConnectorRegistry | None = None,
        backend: SchedulerBackend | None = None,
        interval_seconds: float = 10.0,
        wait_for_runs: bool = False,
        anchor: datetime | None = None,
    ):
        self.engine = engine
        self.store = engine.store
        self.ledger = engine.ledger
        self.registry = registry or engine.registry
        self.clock = clock or SystemClock()
        self.backend = backend or ThreadSchedulerBackend()
        self.interval = interval_seconds
        self.wait_for_runs = wait_for_runs

        # Scheduled instants before the anchor never fire; defaults to the first tick.
        self.anchor: datetime | None = anchor
        self.stats = SchedulerStats()
        self._states: dict[str, FlowTriggerState] = {}
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        if self._running:
            logger.warning("scheduler.already_running")
            return
        logger.info("scheduler.starting", backend=self.backend.name, interval_seconds=self.interval)
        self.backend.start(self.tick, self.interval)
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self.backend.stop()
        self._running = False
        logger.info("scheduler.stopped", ticks=self.stats.ticks)

    @property
    def is_running(self) -> bool:
        return self._running

    def health(self) -> dict[str, Any]:
        return {
            "healthy": self._running,
            "backend": self.backend.health(),
            "anchor": self.anchor.isoformat() if self.anchor else None,
            "stats": self.stats.to_dict(),
            "flows": [s.to_dict() for s in self._states.values()],
        }

    def state_of(self, flow_id: str) -> FlowTriggerState:
        return self._states.setdefault(flow_id, FlowTriggerState(flow_id))

    # === Tick ===

    def tick(self) -> list[str]:
        """Evaluate every triggered flow once.

        Returns:
            Ids of executions requested on this tick.
        """
        now = self.clock.now()
        if self.anchor is None:
            self.anchor = now
        self.stats.ticks += 1
        self.stats.last_tick = now

        requested: list[str] = []
        for flow in self.store.list_flows():
            if flow.trigger.kind not in _TRIGGER_SOURCES:
                continue
            try:
                execution_id = self._evaluate(flow, now)
            except Exception as e:
                self.stats.errors += 1
                self.stats.last_error = f"{flow.id}: {e}"
                self.state_of(flow.id).state = TriggerState.IDLE
                logger.error("scheduler.flow_failed", flow_id=flow.id, error=str(e))
                continue
            if execution_id is not None:
                requested.append(execution_id)

        logger.debug("scheduler.tick", now=now.isoformat(), requested=len(requested))
        return requested

    def _detect(self, flow: Flow, now: datetime) -> Detection | None:
        if flow.trigger.kind == TriggerKind.SCHEDULE:
            return detect_schedule(
                flow,
                now,
                anchor=self.anchor or now,
                last_fire_key=self.ledger.last_firing(flow.id, SCHEDULE_PREFIX),
            )
        watch = flow.trigger.watch
        if watch is None:
            return None
        connection = self.store.get_connection(watch.connection_id)
        if connection is None:
            return None
        with self.registry.open(connection) as connector:
            return detect_arrivals(flow, connector, self.ledger.watermarks)

    def _evaluate(self, flow: Flow, now: datetime) -> str | None:
        state = self.state_of(flow.id)
        detection = self._detect(flow, now)
        if detection is None:
            if state.pending is None:
                state.state = TriggerState.IDLE
                return None
            detection = state.pending
        elif state.pending is not None and state.pending.fire_key != detection.fire_key:
            self.stats.coalesced += 1
            logger.info(
                "scheduler.coalesced",
                flow_id=flow.id,
                replaced=state.pending.fire_key,
                fire_key=detection.fire_key,
            )

        state.state = TriggerState.TRIGGER_DETECTED
        try:
            execution = self.engine.request_run(
                flow.id,
                trigger_source=_TRIGGER_SOURCES[flow.trigger.kind],
                params=dict(detection.params),
                firing=TriggerFiring(flow.id, detection.fire_key),
                watermarks=detection.watermarks,
                wait=self.wait_for_runs,
            )
        except DuplicateFiringError:
            self.stats.duplicates += 1
            state.pending = None
            state.state = TriggerState.IDLE
            logger.debug("scheduler.duplicate_firing", flow_id=flow.id, fire_key=detection.fire_key)
            return None
        except AlreadyRunningError as e:
            state.pending = detection
            state.state = TriggerState.IDLE
            logger.info(
                "scheduler.deferred",
                flow_id=flow.id,
                fire_key=detection.fire_key,
                running_execution_id=e.execution_id,
            )
            return None

        state.state = TriggerState.RUN_REQUESTED
        state.pending = None
        state.last_execution_id = execution.id
        self.stats.requested += 1
        logger.info(
            "scheduler.run_requested",
            flow_id=flow.id,
            fire_key=detection.fire_key,
            execution_id=execution.id,
        )
        state.state = TriggerState.IDLE
        return execution.id


__all__ = [
    "FlowTriggerState",
    "SchedulerStats",
    "TriggerScheduler",
    "TriggerState",
]
