"""Local-filesystem connector.

Configuration::

    {id: landing, kind: local-filesystem, config: {root: /data/landing}}

Location paths are relative to ``root`` and may not escape it.  Writes go
to a temporary file in the target directory and are moved into place with
``os.replace``, so readers see either the old file or the new one.

Arrival tokens are ``<mtime_ns:020d>|<relative path>``: zero-padded so
lexicographic order is modification order, with the path breaking ties.
A file landing later with the same mtime as the watermark but a lower
path is still picked up; arrival detection keeps the tokens already
fired at that mtime.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from typing import Any

from mapflow.core.errors import (
    AuthorizationError,
    ConnectorUnavailableError,
    MapflowError,
    SourceNotFoundError,
)
from mapflow.core.logging import get_logger
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.rules.evaluator import MappedRow, WriteContext

from .base import Arrival, Capability, Connector, RowSequence, WriteMode, WriteResult
from .formats import decode, detect_format, encode

logger = get_logger(__name__)


def _translate(exc: OSError, path: Path) -> MapflowError:
    if isinstance(exc, FileNotFoundError):
        return SourceNotFoundError(f"No such file: {path}", cause=exc)
    if isinstance(exc, PermissionError):
        return AuthorizationError(f"Permission denied: {path}", cause=exc)
    return ConnectorUnavailableError(f"I/O error on {path}: {exc}", cause=exc)


class LocalFileConnector(Connector):
    kind = ConnectionKind.LOCAL_FILESYSTEM
    capabilities = frozenset(
        {Capability.READ, Capability.WRITE, Capability.LIST_NEW_ARRIVALS, Capability.EXISTS}
    )

    def __init__(self, spec: ConnectionSpec):
        super().__init__(spec)
        self.root = Path(spec.config.get("root", ".")).expanduser().resolve()

    def resolve_path(self, relative: str) -> Path:
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise AuthorizationError(f"Path escapes connection root: {relative}").with_context(
                connection_id=self.spec.id
            )
        return path

    def read(self, location: Location) -> RowSequence:
        path = self.resolve_path(location.path)
        fmt = detect_format(location)
        if not path.is_file():
            raise SourceNotFoundError(f"No such file: {location.path}").with_context(
                connection_id=self.spec.id, location=location.path
            )

        def rows() -> Iterator[dict[str, Any]]:
            try:
                data = path.read_bytes()
            except OSError as e:
                raise _translate(e, path) from e
            yield from decode(data, fmt, source=location.path)

        return RowSequence(rows, description=f"{self.spec.id}:{location.path}")

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        path = self.resolve_path(location.path)
        fmt = detect_format(location)
        mode = self.write_mode(location)
        columns = list(columns) if columns is not None else None
        prepared = list(self.prepare_rows(rules, rows, context, columns))

        existing: list[dict[str, Any]] = []
        if mode == WriteMode.APPEND and path.is_file():
            existing = list(decode(path.read_bytes(), fmt, source=location.path))
        payload, _ = encode(existing + prepared, fmt, columns)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(payload)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise _translate(e, path) from e

        logger.debug(
            "connector.local.written",
            connection_id=self.spec.id,
            path=location.path,
            rows=len(prepared),
            mode=mode.value,
        )
        return WriteResult(rows_written=len(prepared), location=location.path, mode=mode)

    def list_new_arrivals(self, location: Location, watermark: str | None) -> list[Arrival]:
        directory = self.resolve_path(location.path)
        pattern = location.options.get("pattern", "*")
        if not directory.is_dir():
            raise SourceNotFoundError(f"No such directory: {location.path}").with_context(
                connection_id=self.spec.id, location=location.path
            )
        arrivals = []
        try:
            for path in directory.glob(pattern):
                if not path.is_file() or path.name.startswith("."):
                    continue
                stat = path.stat()
                relative = path.relative_to(self.root).as_posix()
                arrivals.append(
                    Arrival(token=f"{stat.st_mtime_ns:020d}|{relative}", key=relative, size=stat.st_size)
                )
        except OSError as e:
            raise _translate(e, directory) from e
        return self.filter_new(arrivals, watermark)

    def exists(self, location: Location) -> bool:
        return self.resolve_path(location.path).exists()


__all__ = ["LocalFileConnector"]
