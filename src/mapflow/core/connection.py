"""Connection factory for the run ledger database.

``create_connection()`` is the single entry point for opening the
database that holds executions, step outcomes, trigger firings and
watermarks.

Supported URL forms
-------------------
==================  ==========================================
Form                Example
==================  ==========================================
in-memory           ``None``, ``"memory"`` or ``":memory:"``
sqlite URL          ``sqlite:///var/mapflow/ledger.db``
bare path           ``./data/ledger.db``
==================  ==========================================

Usage
-----
::

    conn, info = create_connection("sqlite:///ledger.db", init_schema=True)
    print(info)
    # ConnectionInfo(backend='sqlite', persistent=True, path='/abs/ledger.db')
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

from .logging import get_logger
from .schema import init_schema as _init_schema

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConnectionInfo:
    """Metadata about a ledger connection."""

    backend: str
    persistent: bool
    url: str
    resolved_path: str | None = None

    def __repr__(self) -> str:
        parts = [f"backend={self.backend!r}", f"persistent={self.persistent}"]
        if self.resolved_path:
            parts.append(f"path={self.resolved_path!r}")
        else:
            parts.append(f"url={self.url!r}")
        return f"ConnectionInfo({', '.join(parts)})"


def _parse_url(db: str | None) -> tuple[str, str]:
    """Parse a database URL into (scheme, target)."""
    if db is None or db in ("", "memory", ":memory:"):
        return "memory", ":memory:"
    for prefix in ("sqlite:///", "sqlite://"):
        if db.startswith(prefix):
            path = db[len(prefix):]
            if not path or path == ":memory:":
                return "memory", ":memory:"
            return "sqlite", path
    if "://" in db:
        raise ValueError(f"Unsupported ledger database URL: {db}")
    return "sqlite", db


def _open(path: str) -> sqlite3.Connection:
    # Shared across engine worker threads; the ledger serializes access.
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.execute("PRAGMA foreign_keys = ON")
    if path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def create_connection(
    db: str | None = None,
    *,
    init_schema: bool = False,
) -> tuple[sqlite3.Connection, ConnectionInfo]:
    """Open the ledger database.

    Args:
        db: URL, path or keyword (see module docstring).
        init_schema: Apply the ledger schema (idempotent).

    Returns:
        ``(conn, info)`` where *conn* satisfies the ``Connection`` protocol.
    """
    scheme, target = _parse_url(db)

    if scheme == "memory":
        conn = _open(":memory:")
        info = ConnectionInfo(backend="sqlite", persistent=False, url=":memory:")
    else:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        resolved = str(path.resolve())
        conn = _open(resolved)
        info = ConnectionInfo(backend="sqlite", persistent=True, url=db or target, resolved_path=resolved)

    if init_schema:
        _init_schema(conn)

    logger.debug("ledger.connection.opened", backend=info.backend, persistent=info.persistent)
    return conn, info


__all__ = ["ConnectionInfo", "create_connection"]
