"""Database connector built on SQLAlchemy Core.

Configuration::

    id: warehouse
    kind: database
    config:
      url: postgresql+psycopg://mapflow:...@db/warehouse
      pool_pre_ping: true     # optional
      echo: false             # optional

``location.path`` names a table (``schema.table`` allowed).  A source
location may instead carry ``options.query``, a SELECT whose rows are
streamed.  Writes run inside a single ``engine.begin()`` transaction, so a
failing step leaves the target untouched; ``mode: replace`` deletes the
table's rows in that same transaction first.  Tables default to ``append``.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from itertools import groupby
from typing import Any

from sqlalchemy import MetaData, Table, create_engine, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    CompileError,
    DataError,
    IntegrityError,
    NoSuchTableError,
    OperationalError,
    ProgrammingError,
    SQLAlchemyError,
)

from mapflow.core.errors import (
    AuthorizationError,
    ConnectorUnavailableError,
    LockContentionError,
    MapflowError,
    SchemaMismatchError,
    SourceNotFoundError,
    TerminalError,
)
from mapflow.core.logging import get_logger
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.rules.evaluator import MappedRow, WriteContext

from .base import Capability, Connector, RowSequence, WriteMode, WriteResult

logger = get_logger(__name__)

_AUTH_MARKERS = ("access denied", "authentication", "password", "permission denied")
_LOCK_MARKERS = ("database is locked", "lock wait timeout", "deadlock")


def translate_error(exc: Exception, path: str = "") -> MapflowError:
    """Map a SQLAlchemy exception onto the mapflow taxonomy."""
    if isinstance(exc, NoSuchTableError):
        return SourceNotFoundError(f"No such table: {path}", cause=exc)
    message = str(getattr(exc, "orig", None) or exc)
    lowered = message.lower()
    if isinstance(exc, OperationalError):
        if any(marker in lowered for marker in _AUTH_MARKERS):
            return AuthorizationError(f"Database rejected credentials: {message}", cause=exc)
        if any(marker in lowered for marker in _LOCK_MARKERS):
            return LockContentionError(f"Lock contention on {path}: {message}", cause=exc)
        if "no such table" in lowered:
            return SourceNotFoundError(f"No such table: {path}", cause=exc)
        return ConnectorUnavailableError(f"Database unavailable: {message}", cause=exc)
    if isinstance(exc, (ProgrammingError, IntegrityError, DataError, CompileError)):
        return SchemaMismatchError(f"Rows do not fit {path}: {message}", cause=exc)
    return TerminalError(f"Database error on {path}: {message}", cause=exc)


def _split_table(path: str) -> tuple[str | None, str]:
    schema, _, name = path.rpartition(".")
    return (schema or None), name


class DatabaseConnector(Connector):
    kind = ConnectionKind.DATABASE
    capabilities = frozenset({Capability.READ, Capability.WRITE, Capability.EXISTS})
    default_write_mode = WriteMode.APPEND

    def __init__(self, spec: ConnectionSpec, engine: Engine | None = None):
        super().__init__(spec)
        self._engine = engine
        self._owns_engine = engine is None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            config = self.spec.config
            self._engine = create_engine(
                config["url"],
                pool_pre_ping=config.get("pool_pre_ping", True),
                echo=config.get("echo", False),
            )
        return self._engine

    def _reflect(self, path: str) -> Table:
        schema, name = _split_table(path)
        return Table(name, MetaData(), schema=schema, autoload_with=self.engine)

    def read(self, location: Location) -> RowSequence:
        query = location.options.get("query")
        path = location.path

        def rows() -> Iterator[dict[str, Any]]:
            try:
                with self.engine.connect() as conn:
                    if query:
                        statement = text(query)
                        params = location.options.get("params") or {}
                        result = conn.execution_options(stream_results=True).execute(statement, params)
                    else:
                        result = conn.execution_options(stream_results=True).execute(
                            select(self._reflect(path))
                        )
                    for row in result.mappings():
                        yield dict(row)
            except SQLAlchemyError as e:
                raise translate_error(e, path).with_context(connection_id=self.spec.id, location=path) from e

        return RowSequence(rows, description=f"{self.spec.id}:{query or path}")

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        path = location.path
        mode = self.write_mode(location)
        columns = list(columns) if columns is not None else None
        prepared = list(self.prepare_rows(rules, rows, context, columns))

        try:
            table = self._reflect(path)
            with self.engine.begin() as conn:
                if mode == WriteMode.REPLACE:
                    conn.execute(table.delete())
                # executemany needs one key set per batch
                for _, batch in groupby(prepared, key=lambda row: tuple(row)):
                    conn.execute(table.insert(), list(batch))
        except SQLAlchemyError as e:
            raise translate_error(e, path).with_context(connection_id=self.spec.id, location=path) from e

        logger.debug(
            "connector.database.written",
            connection_id=self.spec.id,
            table=path,
            rows=len(prepared),
            mode=mode.value,
        )
        return WriteResult(rows_written=len(prepared), location=path, mode=mode)

    def exists(self, location: Location) -> bool:
        schema, name = _split_table(location.path)
        try:
            return inspect(self.engine).has_table(name, schema=schema)
        except SQLAlchemyError as e:
            raise translate_error(e, location.path).with_context(connection_id=self.spec.id) from e

    def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None


__all__ = ["DatabaseConnector", "translate_error"]
