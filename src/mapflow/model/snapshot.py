"""Per-run immutable metadata snapshot.

A run is unaffected by concurrent edits to its own definitions: before
anything is recorded, the engine copies every entity reachable from the
flow (steps, their mappings, the mappings' tables, the tables'
connections) into a :class:`MetadataSnapshot`.  Lookups during the run go
to the snapshot, never back to the store.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping as MappingType

from mapflow.core.errors import UnknownEntityError

from .entities import ConnectionSpec, Flow, Mapping, Step, Table
from .store import MetadataStore


@dataclass(frozen=True)
class MetadataSnapshot:
    """Read-only view of one flow's definitions."""

    flow: Flow
    steps: MappingType[str, Step]
    mappings: MappingType[str, Mapping]
    tables: MappingType[str, Table]
    connections: MappingType[str, ConnectionSpec]

    def step(self, step_id: str) -> Step:
        try:
            return self.steps[step_id]
        except KeyError:
            raise UnknownEntityError("step", step_id) from None

    def mapping(self, mapping_id: str) -> Mapping:
        try:
            return self.mappings[mapping_id]
        except KeyError:
            raise UnknownEntityError("mapping", mapping_id) from None

    def table(self, table_id: str) -> Table:
        try:
            return self.tables[table_id]
        except KeyError:
            raise UnknownEntityError("table", table_id) from None

    def connection(self, connection_id: str) -> ConnectionSpec:
        try:
            return self.connections[connection_id]
        except KeyError:
            raise UnknownEntityError("connection", connection_id) from None

    def mapping_for_step(self, step_id: str) -> Mapping:
        return self.mapping(self.step(step_id).mapping_id)

    # -- MetadataStore lookups, so validators can run against the snapshot --

    def get_flow(self, flow_id: str) -> Flow | None:
        return self.flow if flow_id == self.flow.id else None

    def get_step(self, step_id: str) -> Step | None:
        return self.steps.get(step_id)

    def get_mapping(self, mapping_id: str) -> Mapping | None:
        return self.mappings.get(mapping_id)

    def get_table(self, table_id: str) -> Table | None:
        return self.tables.get(table_id)

    def get_connection(self, connection_id: str) -> ConnectionSpec | None:
        return self.connections.get(connection_id)

    def list_flows(self) -> list[Flow]:
        return [self.flow]



def _require(value, entity_type: str, entity_id: str):
    if value is None:
        raise UnknownEntityError(entity_type, entity_id)
    return copy.deepcopy(value)


def take_snapshot(store: MetadataStore, flow_id: str, *, strict: bool = True) -> MetadataSnapshot:
    """Deep-copy everything ``flow_id`` needs out of *store*.

    With ``strict=False`` dangling references are left out of the snapshot
    instead of raising, so the snapshot itself can be validated and the
    run executes exactly what was checked.

    Raises:
        UnknownEntityError: If the flow, or (when strict) anything it
            references, is missing.
    """
    flow = _require(store.get_flow(flow_id), "flow", flow_id)

    steps: dict[str, Step] = {}
    mappings: dict[str, Mapping] = {}
    tables: dict[str, Table] = {}
    connections: dict[str, ConnectionSpec] = {}

    def fetch(value, entity_type: str, entity_id: str):
        if value is None and not strict:
            return None
        return _require(value, entity_type, entity_id)

    def add_connection(connection_id: str) -> None:
        if connection_id in connections:
            return
        spec = fetch(store.get_connection(connection_id), "connection", connection_id)
        if spec is not None:
            connections[connection_id] = spec

    def add_table(table_id: str) -> None:
        if table_id in tables:
            return
        table = fetch(store.get_table(table_id), "table", table_id)
        if table is None:
            return
        tables[table_id] = table
        if table.location is not None:
            add_connection(table.location.connection_id)

    for step_id in flow.steps:
        step = fetch(store.get_step(step_id), "step", step_id)
        if step is None:
            continue
        steps[step_id] = step
        if step.mapping_id in mappings:
            continue
        mapping = fetch(store.get_mapping(step.mapping_id), "mapping", step.mapping_id)
        if mapping is None:
            continue
        mappings[mapping.id] = mapping
        for table_id in (*mapping.sources, mapping.target):
            add_table(table_id)

    if flow.trigger.watch is not None:
        add_connection(flow.trigger.watch.connection_id)

    return MetadataSnapshot(
        flow=flow,
        steps=MappingProxyType(steps),
        mappings=MappingProxyType(mappings),
        tables=MappingProxyType(tables),
        connections=MappingProxyType(connections),
    )


__all__ = ["MetadataSnapshot", "take_snapshot"]
