"""Metadata store interface and an in-memory implementation.

The engine only needs read access by identity.  ``MetadataStore`` is the
narrow protocol it consumes; the editor/API layer that owns the real
store is an external collaborator.  ``InMemoryMetadataStore`` backs the
CLI (loaded from a YAML document) and the tests.

YAML layout::

    connections:
      - {id: landing, kind: local-filesystem, config: {root: /data/in}}
    tables:
      - id: raw_orders
        kind: source
        columns: [order_id, amount:float, modified_ts]
        location: {connection: landing, path: orders.csv}
    mappings:
      - {id: m1, sources: [raw_orders], target: orders}
    steps:
      - {id: load_orders, mapping: m1}
    flows:
      - id: nightly
        steps: [load_orders]
        trigger: {kind: schedule, expression: "0 2 * * *"}
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from mapflow.core.errors import DefinitionError

from .entities import ConnectionSpec, Entity, Flow, Mapping, Step, Table


@runtime_checkable
class MetadataStore(Protocol):
    """Read-side contract the engine needs from the metadata store."""

    def get_table(self, table_id: str) -> Table | None: ...

    def get_mapping(self, mapping_id: str) -> Mapping | None: ...

    def get_step(self, step_id: str) -> Step | None: ...

    def get_flow(self, flow_id: str) -> Flow | None: ...

    def get_connection(self, connection_id: str) -> ConnectionSpec | None: ...

    def list_flows(self) -> list[Flow]: ...


_SECTIONS: tuple[tuple[str, type], ...] = (
    ("connections", ConnectionSpec),
    ("tables", Table),
    ("mappings", Mapping),
    ("steps", Step),
    ("flows", Flow),
)


class InMemoryMetadataStore:
    """Dict-backed metadata store.

    Entities are replaced wholesale on ``add``; since they are frozen,
    a snapshot taken before an edit keeps seeing the old definition.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entities: dict[type, dict[str, Any]] = {cls: {} for _, cls in _SECTIONS}

    # -- write side ------------------------------------------------------------

    def add(self, entity: Entity) -> Entity:
        with self._lock:
            bucket = self._entities.get(type(entity))
            if bucket is None:
                raise TypeError(f"Not a mapflow entity: {type(entity).__name__}")
            bucket[entity.id] = entity
        return entity

    def add_all(self, entities: list[Entity]) -> None:
        for entity in entities:
            self.add(entity)

    def remove(self, entity_type: type, entity_id: str) -> bool:
        with self._lock:
            return self._entities[entity_type].pop(entity_id, None) is not None

    # -- read side -------------------------------------------------------------

    def _get(self, cls: type, entity_id: str) -> Any:
        with self._lock:
            return self._entities[cls].get(entity_id)

    def get_table(self, table_id: str) -> Table | None:
        return self._get(Table, table_id)

    def get_mapping(self, mapping_id: str) -> Mapping | None:
        return self._get(Mapping, mapping_id)

    def get_step(self, step_id: str) -> Step | None:
        return self._get(Step, step_id)

    def get_flow(self, flow_id: str) -> Flow | None:
        return self._get(Flow, flow_id)

    def get_connection(self, connection_id: str) -> ConnectionSpec | None:
        return self._get(ConnectionSpec, connection_id)

    def list_tables(self) -> list[Table]:
        with self._lock:
            return list(self._entities[Table].values())

    def list_mappings(self) -> list[Mapping]:
        with self._lock:
            return list(self._entities[Mapping].values())

    def list_steps(self) -> list[Step]:
        with self._lock:
            return list(self._entities[Step].values())

    def list_flows(self) -> list[Flow]:
        with self._lock:
            return list(self._entities[Flow].values())

    def list_connections(self) -> list[ConnectionSpec]:
        with self._lock:
            return list(self._entities[ConnectionSpec].values())

    def all_entities(self) -> list[Entity]:
        with self._lock:
            return [e for _, cls in _SECTIONS for e in self._entities[cls].values()]

    # -- loading ---------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryMetadataStore:
        """Build a store from a definitions document."""
        store = cls()
        for section, entity_cls in _SECTIONS:
            for index, item in enumerate(data.get(section) or []):
                try:
                    store.add(entity_cls.from_dict(item))
                except (KeyError, ValueError, TypeError) as e:
                    raise DefinitionError(
                        f"Invalid entry #{index} in '{section}': {e}",
                        cause=e,
                    ) from e
        return store

    @classmethod
    def from_yaml(cls, path: str | Path) -> InMemoryMetadataStore:
        """Load definitions from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise DefinitionError(f"Definitions file not found: {path}")
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise DefinitionError(f"Definitions file must contain a mapping: {path}")
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            result: dict[str, Any] = {}
            for section, entity_cls in _SECTIONS:
                items = self._entities[entity_cls].values()
                if entity_cls is ConnectionSpec:
                    result[section] = [e.to_dict(include_config=True) for e in items]
                else:
                    result[section] = [e.to_dict() for e in items]
            return result


__all__ = ["InMemoryMetadataStore", "MetadataStore"]
