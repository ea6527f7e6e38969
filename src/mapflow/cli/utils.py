"""
CLI utility helpers - output formatting and context management.
"""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from mapflow.core.errors import MapflowError
from mapflow.ops.context import OperationContext, open_context
from mapflow.ops.result import OperationResult, PagedResult

console = Console()
err_console = Console(stderr=True)


# ── Context helper ───────────────────────────────────────────────────────


def make_context(
    definitions: str | None = None,
    database: str | None = None,
    *,
    dry_run: bool = False,
) -> OperationContext:
    """Create an ``OperationContext`` for CLI commands; exit 1 on bad definitions."""
    try:
        return open_context(definitions=definitions, database=database, caller="cli", dry_run=dry_run)
    except MapflowError as e:
        err_console.print(f"[bold red]Error[/bold red] (DEFINITIONS): {e}")
        raise typer.Exit(code=1) from e


# ── Output helpers ───────────────────────────────────────────────────────


def _to_dict(obj: Any) -> dict[str, Any]:
    """Convert dataclass / dict to plain dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    return {"value": str(obj)}


def _fail(result: OperationResult) -> None:
    err = result.error
    msg = err.message if err else "Unknown error"
    code = err.code if err else "ERROR"
    err_console.print(f"[bold red]Error[/bold red] ({code}): {msg}")
    if err is not None:
        for violation in err.details.get("violations", []):
            err_console.print(f"  [yellow]-[/yellow] {violation['entity_type']} {violation['entity_id']}: {violation['message']}")
    raise typer.Exit(code=1)


def output_result(
    result: OperationResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render an ``OperationResult`` to the terminal."""
    if not result.success:
        _fail(result)

    data = result.data

    if as_json:
        payload = _to_dict(data) if not isinstance(data, list | tuple) else [_to_dict(d) for d in data]
        console.print_json(json.dumps(payload, default=str))
        return

    for warning in result.warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {warning}")

    if isinstance(data, list):
        if not data:
            console.print("[dim]No items.[/dim]")
            return
        if isinstance(data[0], str):
            for item in data:
                console.print(item)
            return
        _print_table(data, title=title)
    else:
        _print_dict(_to_dict(data), title=title)


def output_paged(
    result: PagedResult,
    *,
    as_json: bool = False,
    title: str = "",
) -> None:
    """Render a ``PagedResult`` to the terminal with pagination info."""
    if not result.success:
        _fail(result)

    items = result.data or []

    if as_json:
        payload = {
            "items": [_to_dict(d) for d in items],
            "total": result.total,
            "limit": result.limit,
            "offset": result.offset,
            "has_more": result.has_more,
        }
        console.print_json(json.dumps(payload, default=str))
        return

    if not items:
        console.print("[dim]No items.[/dim]")
        return

    _print_table(items, title=title)
    console.print(f"\n[dim]Showing {len(items)} of {result.total} (offset {result.offset})[/dim]")


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list, *, title: str = "") -> None:
    """Render a list of dataclasses/dicts as a Rich table."""
    first = _to_dict(items[0])
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in first:
        table.add_column(col, overflow="fold")
    for item in items:
        d = _to_dict(item)
        table.add_row(*("" if v is None else str(v) for v in d.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs; nested lists become tables."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    nested: list[tuple[str, list]] = []
    for k, v in data.items():
        if isinstance(v, list) and v and isinstance(v[0], dict):
            nested.append((k, v))
            continue
        console.print(f"  [cyan]{k}[/cyan]: {v}")
    for k, rows in nested:
        _print_table(rows, title=k)
