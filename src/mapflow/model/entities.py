"""
Entity model - tables, mappings, steps, flows and connections.

These are pure data structures with no dependencies on connectors or the
engine.  Entities reference each other by identity only (a mapping names
its source and target tables, a step names its mapping, a flow names its
steps); resolution happens against a metadata store, so a step can be
shared by any number of flows without being owned by one.

Design Principles:
- Immutable (frozen dataclasses, tuples for ordered references)
- No business logic (invariants live in ``model.validation``)
- Round-trips through ``to_dict``/``from_dict`` for YAML and JSON
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TableKind(str, Enum):
    """Role a table plays in mappings."""

    SOURCE = "source"
    TARGET = "target"


class ConnectionKind(str, Enum):
    """Connector variants."""

    DATABASE = "database"
    OBJECT_STORE = "object-store"
    FTP = "ftp"
    LOCAL_FILESYSTEM = "local-filesystem"


class TriggerKind(str, Enum):
    """How a flow is started."""

    MANUAL = "manual"
    SCHEDULE = "schedule"
    FILE_ARRIVAL = "file_arrival"


class ConcurrencyPolicy(str, Enum):
    """Whether runs of the same flow may overlap."""

    SERIALIZE = "serialize"          # At most one active execution (default)
    ALLOW_OVERLAP = "allow_overlap"  # Relaxed: overlapping runs permitted


def _as_tuple(value: Any) -> tuple:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class Column:
    """A column of a table schema."""

    name: str
    type: str = "string"
    nullable: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | str) -> Column:
        # "name" or "name:type" shorthand
        if isinstance(data, str):
            name, _, type_ = data.partition(":")
            return cls(name=name.strip(), type=type_.strip() or "string")
        return cls(
            name=data["name"],
            type=data.get("type", "string"),
            nullable=data.get("nullable", True),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "nullable": self.nullable}


@dataclass(frozen=True)
class Location:
    """
    Physical location descriptor: a connection reference plus a path.

    ``path`` is a table name for database connections, a key or key prefix
    for object stores, and a relative file path or directory for FTP and
    local filesystems.  ``options`` carries variant-specific knobs such as
    ``format``, ``pattern`` or ``query``.
    """

    connection_id: str
    path: str
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Stable identity used for watermarks."""
        return f"{self.connection_id}:{self.path}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Location:
        return cls(
            connection_id=data["connection"] if "connection" in data else data["connection_id"],
            path=data.get("path", ""),
            options=dict(data.get("options", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"connection": self.connection_id, "path": self.path}
        if self.options:
            result["options"] = dict(self.options)
        return result


@dataclass(frozen=True)
class Table:
    """
    A declared source or target dataset.

    Attributes:
        id: Unique table identity
        kind: ``source`` or ``target``
        columns: Ordered schema
        default_rules: Column → rule expression applied on every write
        location: Where the data lives
    """

    id: str
    kind: TableKind
    columns: tuple[Column, ...] = ()
    default_rules: dict[str, str] = field(default_factory=dict)
    location: Location | None = None
    description: str = ""

    def __post_init__(self):
        if isinstance(self.kind, str) and not isinstance(self.kind, TableKind):
            object.__setattr__(self, "kind", TableKind(self.kind))
        if isinstance(self.columns, list):
            object.__setattr__(self, "columns", tuple(self.columns))

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def has_column(self, name: str) -> bool:
        return any(c.name == name for c in self.columns)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Table:
        location = data.get("location")
        return cls(
            id=data["id"],
            kind=TableKind(data.get("kind", "source")),
            columns=tuple(Column.from_dict(c) for c in data.get("columns", [])),
            default_rules={str(k): str(v) for k, v in (data.get("default_rules") or {}).items()},
            location=Location.from_dict(location) if location else None,
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "columns": [c.to_dict() for c in self.columns],
        }
        if self.default_rules:
            result["default_rules"] = dict(self.default_rules)
        if self.location is not None:
            result["location"] = self.location.to_dict()
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class Mapping:
    """
    A decoupled transformation from one or more sources to one target.

    Attributes:
        id: Unique mapping identity
        sources: Ordered source table ids (the first is the driving table)
        target: Target table id
        logic: Declarative join/select logic (see ``orchestration.logic``)
        overrides: Column → rule expression, wins over the target's defaults
    """

    id: str
    sources: tuple[str, ...]
    target: str
    logic: dict[str, Any] = field(default_factory=dict)
    overrides: dict[str, str] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.sources, tuple):
            object.__setattr__(self, "sources", _as_tuple(self.sources))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mapping:
        return cls(
            id=data["id"],
            sources=_as_tuple(data.get("sources")),
            target=data.get("target", ""),
            logic=dict(data.get("logic") or {}),
            overrides={str(k): str(v) for k, v in (data.get("overrides") or {}).items()},
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "sources": list(self.sources),
            "target": self.target,
        }
        if self.logic:
            result["logic"] = self.logic
        if self.overrides:
            result["overrides"] = dict(self.overrides)
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class Step:
    """
    A reusable, parameterised instantiation of a mapping.

    Invariants:
        - mapping_id must exist in the store
        - depends_on must reference steps of every flow that uses this step
    """

    id: str
    mapping_id: str
    params: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.depends_on, tuple):
            object.__setattr__(self, "depends_on", _as_tuple(self.depends_on))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        return cls(
            id=data["id"],
            mapping_id=data.get("mapping") or data.get("mapping_id", ""),
            params=dict(data.get("params") or {}),
            depends_on=_as_tuple(data.get("depends_on")),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "mapping": self.mapping_id}
        if self.params:
            result["params"] = dict(self.params)
        if self.depends_on:
            result["depends_on"] = list(self.depends_on)
        return result


@dataclass(frozen=True)
class TriggerSpec:
    """
    When a flow runs.

    ``schedule`` triggers carry a cron ``expression``; ``file_arrival``
    triggers carry a ``watch`` location whose ``options.pattern`` narrows
    which items count as arrivals.
    """

    kind: TriggerKind = TriggerKind.MANUAL
    expression: str | None = None
    watch: Location | None = None

    def __post_init__(self):
        if isinstance(self.kind, str) and not isinstance(self.kind, TriggerKind):
            object.__setattr__(self, "kind", TriggerKind(self.kind))

    @classmethod
    def manual(cls) -> TriggerSpec:
        return cls(kind=TriggerKind.MANUAL)

    @classmethod
    def schedule(cls, expression: str) -> TriggerSpec:
        return cls(kind=TriggerKind.SCHEDULE, expression=expression)

    @classmethod
    def file_arrival(cls, watch: Location) -> TriggerSpec:
        return cls(kind=TriggerKind.FILE_ARRIVAL, watch=watch)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TriggerSpec:
        if not data:
            return cls.manual()
        watch = data.get("watch")
        return cls(
            kind=TriggerKind(data.get("kind", "manual")),
            expression=data.get("expression") or data.get("cron"),
            watch=Location.from_dict(watch) if watch else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind.value}
        if self.expression:
            result["expression"] = self.expression
        if self.watch is not None:
            result["watch"] = self.watch.to_dict()
        return result


@dataclass(frozen=True)
class Flow:
    """
    A named collection of steps with a trigger.

    Step order in ``steps`` is the tie-breaker for the plan; actual ordering
    comes from the dependency graph.
    """

    id: str
    steps: tuple[str, ...]
    trigger: TriggerSpec = field(default_factory=TriggerSpec)
    concurrency: ConcurrencyPolicy = ConcurrencyPolicy.SERIALIZE
    description: str = ""

    def __post_init__(self):
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", _as_tuple(self.steps))
        if isinstance(self.concurrency, str) and not isinstance(self.concurrency, ConcurrencyPolicy):
            object.__setattr__(self, "concurrency", ConcurrencyPolicy(self.concurrency))

    @property
    def exclusive(self) -> bool:
        return self.concurrency == ConcurrencyPolicy.SERIALIZE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flow:
        return cls(
            id=data["id"],
            steps=_as_tuple(data.get("steps")),
            trigger=TriggerSpec.from_dict(data.get("trigger")),
            concurrency=ConcurrencyPolicy(data.get("concurrency", "serialize")),
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "steps": list(self.steps),
            "trigger": self.trigger.to_dict(),
            "concurrency": self.concurrency.value,
        }
        if self.description:
            result["description"] = self.description
        return result


@dataclass(frozen=True)
class ConnectionSpec:
    """
    A named connection.  ``config`` is opaque outside the connector for
    ``kind`` and is never logged or rendered.
    """

    id: str
    kind: ConnectionKind
    config: dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if isinstance(self.kind, str) and not isinstance(self.kind, ConnectionKind):
            object.__setattr__(self, "kind", ConnectionKind(self.kind))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectionSpec:
        return cls(
            id=data["id"],
            kind=ConnectionKind(data["kind"]),
            config=dict(data.get("config") or {}),
        )

    def to_dict(self, *, include_config: bool = False) -> dict[str, Any]:
        result: dict[str, Any] = {"id": self.id, "kind": self.kind.value}
        if include_config:
            result["config"] = dict(self.config)
        return result


Entity = Table | Mapping | Step | Flow | ConnectionSpec

__all__ = [
    "Column",
    "ConcurrencyPolicy",
    "ConnectionKind",
    "ConnectionSpec",
    "Entity",
    "Flow",
    "Location",
    "Mapping",
    "Step",
    "Table",
    "TableKind",
    "TriggerKind",
    "TriggerSpec",
]
