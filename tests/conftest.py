"""
Shared pytest fixtures and configuration for mapflow tests.

This module provides:
- An in-memory connector (``MemoryConnector``) with failure injection
- A ledger on an in-memory sqlite database
- Settings with zero-delay retries
- Definitions documents for the two canonical scenarios:
  the orders override scenario and the three-step pipeline

Usage:
    Fixtures are auto-discovered by pytest::

        def test_something(make_engine, pipeline_store, storage):
            engine = make_engine(pipeline_store)
            ...
"""

import copy
import platform
import sys
import threading
from collections.abc import Generator, Iterable, Mapping
from pathlib import Path
from typing import Any

import pytest

# Ensure mapflow package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mapflow.connectors.base import Arrival, Capability, Connector, RowSequence, WriteMode, WriteResult
from mapflow.connectors.registry import ConnectorRegistry
from mapflow.core.config import MapflowSettings, clear_settings_cache
from mapflow.core.connection import create_connection
from mapflow.core.logging import clear_context
from mapflow.execution.engine import ExecutionEngine
from mapflow.execution.ledger import RunLedger
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.model.store import InMemoryMetadataStore
from mapflow.rules.evaluator import MappedRow, WriteContext


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)
        if test_path.parts[0] in ("connectors", "cli"):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_settings_and_context() -> Generator[None, None, None]:
    """Drop cached settings and bound log context around every test."""
    clear_settings_cache()
    clear_context()
    yield
    clear_settings_cache()
    clear_context()


# =============================================================================
# In-memory connector
# =============================================================================


class MemoryStorage:
    """Backing store shared by every ``MemoryConnector`` of one test.

    ``tables`` maps a location path to its rows; ``arrivals`` maps a
    watched directory to the items listed there.  ``fail_reads`` /
    ``fail_writes`` queue exceptions raised by the next calls for a path;
    ``gate`` holds reads of a path until the returned event is set.
    """

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.arrivals: dict[str, list[Arrival]] = {}
        self.read_failures: dict[str, list[BaseException]] = {}
        self.write_failures: dict[str, list[BaseException]] = {}
        self.gates: dict[str, threading.Event] = {}
        self.reads: list[str] = []
        self.writes: list[str] = []
        self.lock = threading.Lock()

    def fail_reads(self, path: str, *errors: BaseException) -> None:
        self.read_failures.setdefault(path, []).extend(errors)

    def fail_writes(self, path: str, *errors: BaseException) -> None:
        self.write_failures.setdefault(path, []).extend(errors)

    def gate(self, path: str) -> threading.Event:
        event = threading.Event()
        self.gates[path] = event
        return event

    def arrive(self, directory: str, key: str, token: str) -> None:
        self.arrivals.setdefault(directory, []).append(Arrival(token=token, key=key))

    def _pop_failure(self, failures: dict[str, list[BaseException]], path: str) -> BaseException | None:
        with self.lock:
            queued = failures.get(path)
            return queued.pop(0) if queued else None


class MemoryConnector(Connector):
    """Local-filesystem stand-in that keeps rows in a ``MemoryStorage``."""

    kind = ConnectionKind.LOCAL_FILESYSTEM
    capabilities = frozenset(
        {Capability.READ, Capability.WRITE, Capability.LIST_NEW_ARRIVALS, Capability.EXISTS}
    )

    def __init__(self, spec: ConnectionSpec, storage: MemoryStorage):
        super().__init__(spec)
        self.storage = storage
        self.closed = False

    def read(self, location: Location) -> RowSequence:
        storage = self.storage
        path = location.path

        def rows():
            gate = storage.gates.get(path)
            if gate is not None:
                gate.wait(timeout=10)
            with storage.lock:
                storage.reads.append(path)
            error = storage._pop_failure(storage.read_failures, path)
            if error is not None:
                raise error
            with storage.lock:
                snapshot = [dict(r) for r in storage.tables.get(path, [])]
            yield from snapshot

        return RowSequence(rows, description=f"memory:{path}")

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        prepared = list(self.prepare_rows(rules, rows, context, columns))
        error = self.storage._pop_failure(self.storage.write_failures, location.path)
        if error is not None:
            raise error
        mode = self.write_mode(location)
        with self.storage.lock:
            self.storage.writes.append(location.path)
            if mode == WriteMode.APPEND:
                self.storage.tables.setdefault(location.path, []).extend(prepared)
            else:
                self.storage.tables[location.path] = prepared
        return WriteResult(rows_written=len(prepared), location=location.path, mode=mode)

    def list_new_arrivals(self, location: Location, watermark: str | None) -> list[Arrival]:
        with self.storage.lock:
            arrivals = list(self.storage.arrivals.get(location.path, []))
        return self.filter_new(arrivals, watermark)

    def exists(self, location: Location) -> bool:
        with self.storage.lock:
            return location.path in self.storage.tables

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def registry(storage: MemoryStorage) -> ConnectorRegistry:
    """Registry whose local-filesystem kind opens ``MemoryConnector``."""
    registry = ConnectorRegistry()
    registry.register(ConnectionKind.LOCAL_FILESYSTEM, lambda spec: MemoryConnector(spec, storage))
    return registry


# =============================================================================
# Ledger, settings, engine
# =============================================================================


@pytest.fixture
def settings() -> MapflowSettings:
    return MapflowSettings(
        database_url=":memory:",
        max_workers=4,
        retry_max_attempts=3,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=False,
    )


@pytest.fixture
def ledger() -> Generator[RunLedger, None, None]:
    conn, _ = create_connection(":memory:", init_schema=True)
    yield RunLedger(conn)
    conn.close()


# Above any real pid_max, so no process on this host has it.
DEAD_OWNER = f"{platform.node()}:999999999"


@pytest.fixture
def dead_ledger(ledger) -> RunLedger:
    """Second ledger on the same database, owned by a process that is gone."""
    return RunLedger(ledger._conn, owner=DEAD_OWNER)


@pytest.fixture
def make_engine(ledger, registry, settings):
    """Factory for engines sharing the test's ledger and registry."""
    engines: list[ExecutionEngine] = []

    def _make(store, **kwargs: Any) -> ExecutionEngine:
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("sleep", lambda _: None)
        engine = ExecutionEngine(store, ledger, registry, **kwargs)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.shutdown(timeout=10)


# =============================================================================
# Definitions
# =============================================================================


def _memory_table(table_id: str, kind: str, columns: list[str], **extra: Any) -> dict[str, Any]:
    return {
        "id": table_id,
        "kind": kind,
        "columns": columns,
        "location": {"connection": "mem", "path": table_id},
        **extra,
    }


_MEMORY_CONNECTION = {"id": "mem", "kind": "local-filesystem", "config": {"root": "/unused"}}


@pytest.fixture
def orders_definitions() -> dict[str, Any]:
    """
    Two mappings writing ``orders``, which defaults ``updated_at`` to now.

    ``m1`` keeps the default; ``m2`` overrides it with the source's
    ``modified_ts``.  Each runs in its own flow.
    """
    return copy.deepcopy({
        "connections": [_MEMORY_CONNECTION],
        "tables": [
            _memory_table("raw_orders", "source", ["order_id", "amount", "modified_ts"]),
            _memory_table(
                "orders",
                "target",
                ["order_id", "amount", "updated_at", "loaded_by"],
                default_rules={"updated_at": "now", "loaded_by": "'mapflow'"},
            ),
        ],
        "mappings": [
            {"id": "m1", "sources": ["raw_orders"], "target": "orders"},
            {
                "id": "m2",
                "sources": ["raw_orders"],
                "target": "orders",
                "overrides": {"updated_at": "source.modified_ts"},
            },
        ],
        "steps": [
            {"id": "load_m1", "mapping": "m1"},
            {"id": "load_m2", "mapping": "m2"},
        ],
        "flows": [
            {"id": "orders_m1", "steps": ["load_m1"]},
            {"id": "orders_m2", "steps": ["load_m2"]},
        ],
    })


@pytest.fixture
def pipeline_definitions() -> dict[str, Any]:
    """
    Three steps: S1 writes t1, S2 reads t1 and writes t2, S3 is unrelated.

        S1 ──t1──► S2
        S3
    """
    columns = ["id", "v"]
    return copy.deepcopy({
        "connections": [_MEMORY_CONNECTION],
        "tables": [
            _memory_table("src_a", "source", columns),
            _memory_table("src_c", "source", columns),
            _memory_table("t1", "target", columns),
            _memory_table("t2", "target", columns),
            _memory_table("t3", "target", columns),
        ],
        "mappings": [
            {"id": "ma", "sources": ["src_a"], "target": "t1"},
            {"id": "mb", "sources": ["t1"], "target": "t2"},
            {"id": "mc", "sources": ["src_c"], "target": "t3"},
        ],
        "steps": [
            {"id": "S1", "mapping": "ma"},
            {"id": "S2", "mapping": "mb"},
            {"id": "S3", "mapping": "mc"},
        ],
        "flows": [{"id": "pipeline", "steps": ["S1", "S2", "S3"]}],
    })


@pytest.fixture
def orders_store(orders_definitions, storage) -> InMemoryMetadataStore:
    storage.tables["raw_orders"] = [
        {"order_id": "1", "amount": "10.5", "modified_ts": "2025-01-01T08:00:00"},
        {"order_id": "2", "amount": "7.25", "modified_ts": "2025-01-02T09:30:00"},
    ]
    return InMemoryMetadataStore.from_dict(orders_definitions)


@pytest.fixture
def pipeline_store(pipeline_definitions, storage) -> InMemoryMetadataStore:
    storage.tables["src_a"] = [{"id": "1", "v": "a"}, {"id": "2", "v": "b"}]
    storage.tables["src_c"] = [{"id": "9", "v": "c"}]
    return InMemoryMetadataStore.from_dict(pipeline_definitions)
