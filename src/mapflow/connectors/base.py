"""
Connector abstraction - one capability-based interface over every store.

Manifesto:
    The engine should not know whether a table lives in Postgres, a bucket,
    an FTP drop or a local directory.  It asks a connector for four things
    and nothing else:

    - **read:** a lazy, finite, restartable sequence of rows
    - **write:** rows with the effective rules applied, atomically per step
    - **list_new_arrivals:** items past a watermark token
    - **exists:** whether a location is there

    Credentials live in the connection's opaque ``config`` and are only
    ever read by the connector for that kind.

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────┐
        │                      Connector (ABC)                       │
        │  capabilities: frozenset[Capability]                       │
        │  read / write / list_new_arrivals / exists / close         │
        ├───────────────┬───────────────┬─────────────┬─────────────┤
        │ Database      │ ObjectStore   │ Ftp         │ LocalFile   │
        │ (SQLAlchemy)  │ (boto3 S3)    │ (ftplib)    │ (os/pathlib)│
        └───────────────┴───────────────┴─────────────┴─────────────┘

Guardrails:
    ❌ DON'T: Let a driver exception escape a connector untranslated
    ✅ DO: Map it to a TransientError or TerminalError subclass

    ❌ DON'T: Log ``spec.config``
    ✅ DO: Log the connection id and the location path

Tags:
    connector, storage, capability, mapflow
"""

from __future__ import annotations

from abc import ABC
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from mapflow.core.errors import UnsupportedCapabilityError
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.rules.evaluator import MappedRow, WriteContext, apply_rules


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    LIST_NEW_ARRIVALS = "list_new_arrivals"
    EXISTS = "exists"


class WriteMode(str, Enum):
    REPLACE = "replace"
    APPEND = "append"


class RowSequence:
    """A lazy, finite, restartable sequence of rows.

    Each iteration calls *factory* afresh, so a retried step re-reads its
    sources from the start instead of resuming a half-consumed cursor.

    Example:
        >>> seq = RowSequence(lambda: iter([{"a": 1}, {"a": 2}]))
        >>> list(seq) == list(seq)
        True
    """

    def __init__(self, factory: Callable[[], Iterable[dict[str, Any]]], *, description: str = ""):
        self._factory = factory
        self.description = description

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self._factory())

    def materialize(self) -> list[dict[str, Any]]:
        return list(self)

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, Any]], *, description: str = "") -> RowSequence:
        frozen = [dict(r) for r in rows]
        return cls(lambda: (dict(r) for r in frozen), description=description)

    def __repr__(self) -> str:
        return f"RowSequence({self.description or '?'})"


@dataclass(frozen=True, order=True)
class Arrival:
    """One new item at a watched location.  Ordered by ``token``."""

    token: str
    key: str
    size: int | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "token": self.token, "size": self.size}


@dataclass(frozen=True)
class WriteResult:
    rows_written: int
    location: str
    mode: WriteMode = WriteMode.REPLACE


class Connector(ABC):
    """Base class for connector variants.

    Subclasses declare ``kind`` and ``capabilities`` and override the
    methods they support; everything else raises
    :class:`UnsupportedCapabilityError`.
    """

    kind: ClassVar[ConnectionKind]
    capabilities: ClassVar[frozenset[Capability]] = frozenset()
    default_write_mode: ClassVar[WriteMode] = WriteMode.REPLACE

    def __init__(self, spec: ConnectionSpec):
        self.spec = spec

    @property
    def connection_id(self) -> str:
        return self.spec.id

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def _unsupported(self, capability: Capability) -> UnsupportedCapabilityError:
        return UnsupportedCapabilityError(
            f"{self.kind.value} connector '{self.spec.id}' does not support {capability.value}"
        ).with_context(connection_id=self.spec.id)

    # -- capabilities ------------------------------------------------------------

    def read(self, location: Location) -> RowSequence:
        raise self._unsupported(Capability.READ)

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        raise self._unsupported(Capability.WRITE)

    def list_new_arrivals(self, location: Location, watermark: str | None) -> list[Arrival]:
        raise self._unsupported(Capability.LIST_NEW_ARRIVALS)

    def exists(self, location: Location) -> bool:
        raise self._unsupported(Capability.EXISTS)

    def close(self) -> None:
        """Release sessions/clients.  Safe to call twice."""

    # -- helpers -----------------------------------------------------------------

    def write_mode(self, location: Location) -> WriteMode:
        return WriteMode(location.options.get("mode", self.default_write_mode.value))

    @staticmethod
    def prepare_rows(
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """Apply the effective rule set to each row before persisting."""
        return apply_rules(rules, rows, context, columns)

    @staticmethod
    def filter_new(arrivals: Iterable[Arrival], watermark: str | None) -> list[Arrival]:
        """Arrivals strictly past *watermark*, oldest first."""
        return sorted(a for a in arrivals if watermark is None or a.token > watermark)

    def __enter__(self) -> Connector:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self.spec.id!r})"


__all__ = [
    "Arrival",
    "Capability",
    "Connector",
    "RowSequence",
    "WriteMode",
    "WriteResult",
]
