"""
Request-scoped context for operations.

Every operation function receives an :class:`OperationContext` as its first
argument.  The context carries the metadata store, the run ledger, the
execution engine, caller identity, dry-run flag and arbitrary metadata.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from mapflow.connectors.registry import ConnectorRegistry
from mapflow.core.config import MapflowSettings, get_settings
from mapflow.core.connection import create_connection
from mapflow.core.logging import get_logger
from mapflow.execution.engine import ExecutionEngine
from mapflow.execution.ledger import RunLedger
from mapflow.model.store import InMemoryMetadataStore, MetadataStore

logger = get_logger(__name__)


@dataclass
class OperationContext:
    """Context passed to every operation function.

    Attributes:
        store: Definitions the operation reads.
        ledger: Durable run records.
        engine: Engine used to request and cancel runs.
        request_id: Unique ID for this operation invocation (auto-generated).
        caller: Origin of the request: ``"cli"``, ``"sdk"`` or ``"scheduler"``.
        user: Optional user identifier.
        dry_run: When ``True``, operations return a preview without side effects.
        metadata: Arbitrary key/value pairs forwarded to logging.
    """

    store: MetadataStore
    ledger: RunLedger
    engine: ExecutionEngine
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    caller: str = "sdk"
    user: str | None = None
    dry_run: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


def open_context(
    *,
    definitions: str | None = None,
    database: str | None = None,
    registry: ConnectorRegistry | None = None,
    caller: str = "sdk",
    dry_run: bool = False,
    settings: MapflowSettings | None = None,
) -> OperationContext:
    """Load definitions, open the ledger and build an engine.

    *definitions* and *database* default to the settings'
    ``definitions_path`` and ``database_url``.

    Raises:
        DefinitionError: The definitions document is missing or malformed.
    """
    settings = settings or get_settings()
    store = InMemoryMetadataStore.from_yaml(definitions or settings.definitions_path)
    conn, info = create_connection(database or settings.database_url, init_schema=True)
    ledger = RunLedger(conn)
    engine = ExecutionEngine(store, ledger, registry, settings=settings)
    logger.debug("ops.context_opened", caller=caller, ledger=repr(info))
    return OperationContext(store=store, ledger=ledger, engine=engine, caller=caller, dry_run=dry_run)


__all__ = ["OperationContext", "open_context"]
