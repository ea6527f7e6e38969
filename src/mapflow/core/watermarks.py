"""Watermarks for file-arrival triggers.

A watermark is the last-seen arrival token for one (flow, watched
location) pair.  Tokens are opaque strings produced by the connector that
lists the location and are ordered lexicographically, so advancement is
forward-only: advancing to a token ≤ the current one is a no-op.

The store never decides *when* to advance.  The run ledger advances the
watermark inside the same transaction that records an execution's start
(``commit=False``), which is what makes an arrival fire exactly once even
when the process dies between detection and recording.

Examples:
    >>> store = WatermarkStore()
    >>> store.advance("ingest", "landing:/in", "0001|a.csv")
    >>> store.get("ingest", "landing:/in").high_water
    '0001|a.csv'
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .protocols import Connection


@dataclass(frozen=True, slots=True)
class Watermark:
    """Last-seen arrival marker for one (flow, location) pair."""

    flow_id: str
    location: str
    high_water: str
    metadata: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "flow_id": self.flow_id,
            "location": self.location,
            "high_water": self.high_water,
            "metadata": self.metadata,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True, slots=True)
class WatermarkAdvance:
    """A pending advance applied atomically with an execution's start record."""

    flow_id: str
    location: str
    high_water: str
    metadata: dict[str, Any] = field(default_factory=dict)


class WatermarkStore:
    """Persistence-agnostic watermark store.

    If *conn* is supplied, watermarks are persisted to ``mf_watermarks``.
    Otherwise an in-memory dict is used.
    """

    def __init__(self, conn: Connection | None = None) -> None:
        self._conn = conn
        self._mem: dict[tuple[str, str], Watermark] = {}

    def advance(
        self,
        flow_id: str,
        location: str,
        high_water: str,
        *,
        metadata: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> Watermark:
        """Move the watermark forward (forward-only).

        Re-advancing to the current high water only refreshes *metadata*.

        Args:
            flow_id: Flow that watches the location.
            location: Watched location key.
            high_water: New arrival token.
            metadata: Optional metadata (merged with existing).
            commit: Commit immediately.  The ledger passes ``False`` to keep
                the advance inside its own transaction.

        Returns:
            The resulting :class:`Watermark` (new or unchanged).
        """
        key = (flow_id, location)
        existing = self._get_from_store(key)
        if existing is not None and high_water < existing.high_water:
            return existing

        wm = Watermark(
            flow_id=flow_id,
            location=location,
            high_water=high_water,
            metadata={**(existing.metadata if existing else {}), **(metadata or {})},
            updated_at=datetime.now(UTC),
        )
        if self._conn is not None:
            self._upsert_db(wm, commit=commit)
        else:
            self._mem[key] = wm
        return wm

    def get(self, flow_id: str, location: str) -> Watermark | None:
        """Retrieve the current watermark, or ``None`` if not tracked."""
        return self._get_from_store((flow_id, location))

    def list_all(self, flow_id: str | None = None) -> list[Watermark]:
        """Return all tracked watermarks, optionally filtered by flow."""
        if self._conn is not None:
            return self._list_db(flow_id)
        marks = list(self._mem.values())
        if flow_id is not None:
            marks = [w for w in marks if w.flow_id == flow_id]
        return marks

    def delete(self, flow_id: str, location: str) -> bool:
        """Remove a watermark.  Returns True if it existed."""
        key = (flow_id, location)
        if self._conn is not None:
            cur = self._conn.execute(
                "DELETE FROM mf_watermarks WHERE flow_id = ? AND location = ?",
                key,
            )
            self._conn.commit()
            return cur.rowcount > 0
        return self._mem.pop(key, None) is not None

    # -- internal ------------------------------------------------------------

    def _get_from_store(self, key: tuple[str, str]) -> Watermark | None:
        if self._conn is None:
            return self._mem.get(key)
        row = self._conn.execute(
            "SELECT high_water, metadata_json, updated_at FROM mf_watermarks "
            "WHERE flow_id = ? AND location = ?",
            key,
        ).fetchone()
        if row is None:
            return None
        return Watermark(
            flow_id=key[0],
            location=key[1],
            high_water=row[0],
            metadata=json.loads(row[1]) if row[1] else {},
            updated_at=datetime.fromisoformat(row[2]) if row[2] else None,
        )

    def _upsert_db(self, wm: Watermark, *, commit: bool) -> None:
        assert self._conn is not None
        self._conn.execute(
            "INSERT INTO mf_watermarks (flow_id, location, high_water, metadata_json, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(flow_id, location) DO UPDATE SET "
            "  high_water = excluded.high_water, "
            "  metadata_json = excluded.metadata_json, "
            "  updated_at = excluded.updated_at",
            (
                wm.flow_id,
                wm.location,
                wm.high_water,
                json.dumps(wm.metadata) if wm.metadata else None,
                wm.updated_at.isoformat() if wm.updated_at else None,
            ),
        )
        if commit:
            self._conn.commit()

    def _list_db(self, flow_id: str | None) -> list[Watermark]:
        assert self._conn is not None
        sql = "SELECT flow_id, location, high_water, metadata_json, updated_at FROM mf_watermarks"
        params: tuple = ()
        if flow_id is not None:
            sql += " WHERE flow_id = ?"
            params = (flow_id,)
        rows = self._conn.execute(sql + " ORDER BY flow_id, location", params).fetchall()
        return [
            Watermark(
                flow_id=r[0],
                location=r[1],
                high_water=r[2],
                metadata=json.loads(r[3]) if r[3] else {},
                updated_at=datetime.fromisoformat(r[4]) if r[4] else None,
            )
            for r in rows
        ]


__all__ = ["Watermark", "WatermarkAdvance", "WatermarkStore"]
