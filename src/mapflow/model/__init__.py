"""Entity model: definitions, metadata store and per-run snapshots."""

from mapflow.model.entities import (
    Column,
    ConcurrencyPolicy,
    ConnectionKind,
    ConnectionSpec,
    Flow,
    Location,
    Mapping,
    Step,
    Table,
    TableKind,
    TriggerKind,
    TriggerSpec,
)
from mapflow.model.snapshot import MetadataSnapshot, take_snapshot
from mapflow.model.store import InMemoryMetadataStore, MetadataStore

__all__ = [
    "Column",
    "ConcurrencyPolicy",
    "ConnectionKind",
    "ConnectionSpec",
    "Flow",
    "InMemoryMetadataStore",
    "Location",
    "Mapping",
    "MetadataSnapshot",
    "MetadataStore",
    "Step",
    "Table",
    "TableKind",
    "TriggerKind",
    "TriggerSpec",
    "take_snapshot",
]
