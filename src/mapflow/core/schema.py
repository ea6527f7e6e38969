"""Run ledger schema.

Tables
------
``mf_executions``
    One row per run attempt.  A partial unique index guarantees that a flow
    with the default ``serialize`` policy has at most one ``pending`` or
    ``running`` execution; the database, not the engine's memory, is the
    arbiter, so the guarantee survives restarts.  ``owner`` names the
    process (``host:pid``) that started the run; orphan recovery only
    touches runs whose owner is gone.
``mf_step_outcomes``
    Per-step outcome rows, ordered by ``position`` (the plan order).
``mf_execution_events``
    Append-only event log.
``mf_trigger_firings``
    One row per (flow, fire key).  The primary key is what makes a
    scheduled instant or a file arrival fire at most once.
``mf_watermarks``
    Last-seen arrival token per (flow, watched location).

All statements are ``CREATE ... IF NOT EXISTS`` so :func:`init_schema` is
idempotent.
"""

from __future__ import annotations

from .protocols import Connection

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS mf_executions (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        exclusive INTEGER NOT NULL DEFAULT 1,
        trigger_source TEXT NOT NULL DEFAULT 'manual',
        fire_key TEXT,
        params TEXT DEFAULT '{}',
        created_at TEXT NOT NULL,
        started_at TEXT,
        ended_at TEXT,
        error_kind TEXT,
        error_detail TEXT,
        cancel_requested INTEGER NOT NULL DEFAULT 0,
        owner TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_mf_executions_active_flow
        ON mf_executions (flow_id)
        WHERE exclusive = 1 AND status IN ('pending', 'running')
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_mf_executions_flow_created
        ON mf_executions (flow_id, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS mf_step_outcomes (
        execution_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        started_at TEXT,
        ended_at TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        rows_read INTEGER NOT NULL DEFAULT 0,
        rows_written INTEGER NOT NULL DEFAULT 0,
        error_kind TEXT,
        error_detail TEXT,
        PRIMARY KEY (execution_id, step_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mf_execution_events (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        event_type TEXT NOT NULL,
        step_id TEXT,
        timestamp TEXT NOT NULL,
        data TEXT DEFAULT '{}'
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_mf_execution_events_execution
        ON mf_execution_events (execution_id, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS mf_trigger_firings (
        flow_id TEXT NOT NULL,
        fire_key TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        fired_at TEXT NOT NULL,
        PRIMARY KEY (flow_id, fire_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mf_watermarks (
        flow_id TEXT NOT NULL,
        location TEXT NOT NULL,
        high_water TEXT NOT NULL,
        metadata_json TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (flow_id, location)
    )
    """,
)


def init_schema(conn: Connection) -> None:
    """Create all ledger tables and indexes (idempotent)."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
    conn.commit()


__all__ = ["SCHEMA_STATEMENTS", "init_schema"]
