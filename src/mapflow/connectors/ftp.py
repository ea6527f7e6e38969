"""FTP connector.

Configuration::

    id: partner_drop
    kind: ftp
    config:
      host: ftp.partner.example
      port: 21
      user: mapflow
      password: ...
      tls: false
      timeout: 30
      root: /outbound          # optional remote base directory

A session is opened per operation and always closed.  Uploads go to a
``.<name>.part`` file that is renamed over the target, so a reader never
sees a half-written file.  Arrival tokens come from the ``MLSD`` ``modify``
fact (``YYYYMMDDHHMMSS``); servers without ``MLSD`` fall back to ``NLST``,
where the token is ``|<name>`` and ordering is by name alone.
"""

from __future__ import annotations

import fnmatch
import ftplib
import io
import posixpath
import socket
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from mapflow.core.errors import (
    AuthorizationError,
    ConnectorTimeoutError,
    ConnectorUnavailableError,
    MapflowError,
    SourceNotFoundError,
    TerminalError,
)
from mapflow.core.logging import get_logger
from mapflow.model.entities import ConnectionKind, ConnectionSpec, Location
from mapflow.rules.evaluator import MappedRow, WriteContext

from .base import Arrival, Capability, Connector, RowSequence, WriteMode, WriteResult
from .formats import decode, detect_format, encode

logger = get_logger(__name__)


def translate_error(exc: Exception, path: str = "") -> MapflowError:
    """Map an ftplib/socket exception onto the mapflow taxonomy."""
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ConnectorTimeoutError(f"FTP timed out on {path}", cause=exc)
    if isinstance(exc, ftplib.error_temp):
        return ConnectorUnavailableError(f"FTP temporary failure on {path}: {exc}", cause=exc)
    if isinstance(exc, ftplib.error_perm):
        reply = str(exc)
        if reply.startswith("530"):
            return AuthorizationError(f"FTP login rejected: {reply}", cause=exc)
        if reply.startswith("550"):
            return SourceNotFoundError(f"FTP path unavailable: {path}", cause=exc)
        return TerminalError(f"FTP permanent failure on {path}: {reply}", cause=exc)
    if isinstance(exc, (EOFError, OSError)):
        return ConnectorUnavailableError(f"FTP connection failed on {path}: {exc}", cause=exc)
    return TerminalError(f"FTP error on {path}: {exc}", cause=exc)


_FTP_ERRORS = (ftplib.Error, OSError, EOFError)


class FtpConnector(Connector):
    kind = ConnectionKind.FTP
    capabilities = frozenset(
        {Capability.READ, Capability.WRITE, Capability.LIST_NEW_ARRIVALS, Capability.EXISTS}
    )

    def __init__(self, spec: ConnectionSpec, ftp_factory: Callable[[], ftplib.FTP] | None = None):
        super().__init__(spec)
        self.root = spec.config.get("root", "")
        self._ftp_factory = ftp_factory or self._default_factory

    def _default_factory(self) -> ftplib.FTP:
        config = self.spec.config
        timeout = config.get("timeout", 30)
        ftp = ftplib.FTP_TLS(timeout=timeout) if config.get("tls") else ftplib.FTP(timeout=timeout)
        ftp.connect(config["host"], int(config.get("port", 21)))
        ftp.login(config.get("user", "anonymous"), config.get("password", ""))
        if isinstance(ftp, ftplib.FTP_TLS):
            ftp.prot_p()
        return ftp

    @contextmanager
    def session(self, path: str = "") -> Iterator[ftplib.FTP]:
        try:
            ftp = self._ftp_factory()
        except _FTP_ERRORS as e:
            raise translate_error(e, path).with_context(connection_id=self.spec.id) from e
        try:
            yield ftp
        except _FTP_ERRORS as e:
            raise translate_error(e, path).with_context(connection_id=self.spec.id, location=path) from e
        finally:
            try:
                ftp.quit()
            except _FTP_ERRORS:
                ftp.close()

    def _remote(self, path: str) -> str:
        return posixpath.join(self.root, path) if self.root else path

    def _retrieve(self, ftp: ftplib.FTP, remote: str) -> bytes:
        buffer = io.BytesIO()
        ftp.retrbinary(f"RETR {remote}", buffer.write)
        return buffer.getvalue()

    def read(self, location: Location) -> RowSequence:
        remote = self._remote(location.path)
        fmt = detect_format(location)

        def rows() -> Iterator[dict[str, Any]]:
            with self.session(remote) as ftp:
                data = self._retrieve(ftp, remote)
            yield from decode(data, fmt, source=remote)

        return RowSequence(rows, description=f"{self.spec.id}:{remote}")

    def write(
        self,
        location: Location,
        rules: Mapping[str, str],
        rows: Iterable[MappedRow | Mapping[str, Any]],
        context: WriteContext,
        columns: Iterable[str] | None = None,
    ) -> WriteResult:
        remote = self._remote(location.path)
        fmt = detect_format(location)
        mode = self.write_mode(location)
        columns = list(columns) if columns is not None else None
        prepared = list(self.prepare_rows(rules, rows, context, columns))

        directory, name = posixpath.split(remote)
        partial = posixpath.join(directory, f".{name}.part")
        with self.session(remote) as ftp:
            existing: list[dict[str, Any]] = []
            if mode == WriteMode.APPEND and self._exists(ftp, remote):
                existing = list(decode(self._retrieve(ftp, remote), fmt, source=remote))
            payload, _ = encode(existing + prepared, fmt, columns)
            ftp.storbinary(f"STOR {partial}", io.BytesIO(payload))
            ftp.rename(partial, remote)

        logger.debug(
            "connector.ftp.written",
            connection_id=self.spec.id,
            path=remote,
            rows=len(prepared),
            mode=mode.value,
        )
        return WriteResult(rows_written=len(prepared), location=remote, mode=mode)

    def list_new_arrivals(self, location: Location, watermark: str | None) -> list[Arrival]:
        directory = self._remote(location.path)
        pattern = location.options.get("pattern", "*")
        with self.session(directory) as ftp:
            try:
                arrivals = self._list_mlsd(ftp, directory)
            except ftplib.error_perm as e:
                if not str(e).startswith("500") and not str(e).startswith("502"):
                    raise
                logger.debug("connector.ftp.mlsd_unsupported", connection_id=self.spec.id)
                arrivals = self._list_nlst(ftp, directory)
        matching = [a for a in arrivals if fnmatch.fnmatch(posixpath.basename(a.key), pattern)]
        return self.filter_new(matching, watermark)

    def _list_mlsd(self, ftp: ftplib.FTP, directory: str) -> list[Arrival]:
        arrivals = []
        for name, facts in ftp.mlsd(directory, facts=["type", "modify", "size"]):
            if facts.get("type", "file") != "file" or name.startswith("."):
                continue
            key = posixpath.join(directory, name)
            size = facts.get("size")
            arrivals.append(
                Arrival(
                    token=f"{facts.get('modify', '')}|{key}",
                    key=key,
                    size=int(size) if size else None,
                )
            )
        return arrivals

    def _list_nlst(self, ftp: ftplib.FTP, directory: str) -> list[Arrival]:
        arrivals = []
        for entry in ftp.nlst(directory):
            name = posixpath.basename(entry)
            if not name or name.startswith("."):
                continue
            key = posixpath.join(directory, name)
            arrivals.append(Arrival(token=f"|{key}", key=key))
        return arrivals

    def _exists(self, ftp: ftplib.FTP, remote: str) -> bool:
        try:
            ftp.size(remote)
        except ftplib.error_perm as e:
            if str(e).startswith("550"):
                return False
            raise
        return True

    def exists(self, location: Location) -> bool:
        remote = self._remote(location.path)
        with self.session(remote) as ftp:
            return self._exists(ftp, remote)


__all__ = ["FtpConnector", "translate_error"]
