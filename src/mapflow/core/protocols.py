"""
Protocol definitions shared across mapflow.

``Connection`` is the minimal synchronous DB-API shape the run ledger and
watermark store need.  ``sqlite3.Connection`` satisfies it natively; any
other driver can be adapted.

Guardrails:
    ❌ DON'T: Import backend-specific connection classes in domain code
    ✅ DO: Type against ``Connection`` and obtain one from ``create_connection``
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Connection(Protocol):
    """Minimal SYNCHRONOUS connection interface (DB-API 2.0 subset).

    ``execute`` returns a cursor exposing ``fetchone``/``fetchall`` and
    ``rowcount``.  Statements use ``?`` placeholders.
    """

    def execute(self, sql: str, params: Any = ()) -> Any:
        """Execute SQL statement with optional parameters."""
        ...

    def commit(self) -> None:
        """Commit the current transaction."""
        ...

    def rollback(self) -> None:
        """Roll back the current transaction."""
        ...


__all__ = ["Connection"]
