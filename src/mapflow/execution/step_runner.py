"""Step runner - execute one step of a flow against its connectors.

One attempt is:

1. Resolve the mapping's effective rule set against the target table
2. Open a lazy row sequence for every source table
3. Join, filter and select with the mapping's compiled logic
4. Write the mapped rows to the target location; the connector applies
   the rule set to each row and makes the write atomic

The whole attempt is retried on transient errors, so a retried step
re-reads its sources from the start.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from mapflow.connectors.base import Connector
from mapflow.connectors.registry import ConnectorRegistry
from mapflow.core.errors import DefinitionError
from mapflow.core.logging import get_logger
from mapflow.model.entities import Table
from mapflow.model.snapshot import MetadataSnapshot
from mapflow.orchestration.logic import compile_logic, run_logic
from mapflow.rules.evaluator import WriteContext
from mapflow.rules.resolver import resolve_for_mapping

from .models import utcnow
from .retry import RetryContext, RetryStrategy

logger = get_logger(__name__)


@dataclass(frozen=True)
class StepResult:
    """What a successful step did."""

    step_id: str
    rows_read: int
    rows_written: int
    attempts: int


class StepFailure(Exception):
    """Wraps the error that failed a step with the attempts it took."""

    def __init__(self, step_id: str, error: BaseException, attempts: int, rows_read: int = 0):
        super().__init__(str(error))
        self.step_id = step_id
        self.error = error
        self.attempts = attempts
        self.rows_read = rows_read


class ConnectorPool:
    """Connectors opened lazily for one execution and closed at its end."""

    def __init__(self, snapshot: MetadataSnapshot, registry: ConnectorRegistry):
        self._snapshot = snapshot
        self._registry = registry
        self._connectors: dict[str, Connector] = {}
        self._lock = threading.Lock()

    def get(self, connection_id: str) -> Connector:
        with self._lock:
            connector = self._connectors.get(connection_id)
            if connector is None:
                connector = self._registry.open(self._snapshot.connection(connection_id))
                self._connectors[connection_id] = connector
            return connector

    def close(self) -> None:
        with self._lock:
            connectors, self._connectors = list(self._connectors.values()), {}
        for connector in connectors:
            try:
                connector.close()
            except Exception as e:  # noqa: BLE001
                logger.warning("connector.close_failed", connection_id=connector.connection_id, error=str(e))


class _Counter:
    def __init__(self) -> None:
        self.value = 0
        self._lock = threading.Lock()

    def count(self, rows: Iterable[Mapping[str, Any]]) -> Iterator[Mapping[str, Any]]:
        for row in rows:
            with self._lock:
                self.value += 1
            yield row


class StepRunner:
    """Runs single steps of one execution."""

    def __init__(
        self,
        snapshot: MetadataSnapshot,
        connectors: ConnectorPool,
        strategy: RetryStrategy,
        *,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[str, int, BaseException, float], None] | None = None,
    ):
        self.snapshot = snapshot
        self.connectors = connectors
        self.strategy = strategy
        self.sleep = sleep
        self.on_retry = on_retry

    def run(self, step_id: str, execution_id: str, run_params: Mapping[str, Any] | None = None) -> StepResult:
        """Run *step_id* with retries.

        Raises:
            StepFailure: The step failed terminally or ran out of attempts.
        """
        counter = _Counter()

        def attempt() -> int:
            counter.value = 0
            return self._attempt(step_id, execution_id, run_params or {}, counter)

        def report(attempt_no: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "step.retrying",
                step_id=step_id,
                attempt=attempt_no,
                delay=round(delay, 3),
                error=str(error),
            )
            if self.on_retry:
                self.on_retry(step_id, attempt_no, error, delay)

        ctx = RetryContext(self.strategy, on_retry=report, sleep=self.sleep)
        try:
            rows_written = ctx.run(attempt)
        except Exception as e:
            raise StepFailure(step_id, e, ctx.attempts, counter.value) from e
        return StepResult(step_id, counter.value, rows_written, ctx.attempts)

    def _attempt(
        self,
        step_id: str,
        execution_id: str,
        run_params: Mapping[str, Any],
        counter: _Counter,
    ) -> int:
        step = self.snapshot.step(step_id)
        mapping = self.snapshot.mapping(step.mapping_id)
        target = self.snapshot.table(mapping.target)
        rules = resolve_for_mapping(mapping, target)
        params = {**run_params, **step.params}

        sources: dict[str, Iterable[Mapping[str, Any]]] = {}
        for table_id in mapping.sources:
            table = self.snapshot.table(table_id)
            location = self._location(table)
            sources[table_id] = counter.count(self.connectors.get(location.connection_id).read(location))

        compiled = compile_logic(
            mapping,
            params,
            {t: self.snapshot.table(t).column_names for t in mapping.sources},
        )
        rows = run_logic(compiled, sources, target.column_names)

        target_location = self._location(target)
        context = WriteContext(now=utcnow(), params=params, execution_id=execution_id, step_id=step_id)
        result = self.connectors.get(target_location.connection_id).write(
            target_location,
            rules,
            rows,
            context,
            columns=target.column_names or None,
        )
        return result.rows_written

    @staticmethod
    def _location(table: Table):
        if table.location is None:
            raise DefinitionError(f"Table '{table.id}' has no location").with_context(entity_id=table.id)
        return table.location


__all__ = ["ConnectorPool", "StepFailure", "StepResult", "StepRunner"]
