"""
Root Typer application for the mapflow CLI.

Every command loads the definitions document and opens the run ledger;
``--definitions`` and ``--database`` override ``MAPFLOW_DEFINITIONS_PATH``
and ``MAPFLOW_DATABASE_URL``.
"""

from __future__ import annotations

import json
import time
from datetime import UTC, datetime

import typer
from rich.table import Table
from typer import Typer

from mapflow.cli.utils import console, err_console, make_context, output_paged, output_result
from mapflow.core.config import get_settings
from mapflow.core.logging import configure_logging, get_logger
from mapflow.ops import (
    CancelRunRequest,
    GetRunRequest,
    ListRunsRequest,
    PlanRequest,
    PreviewRulesRequest,
    SubmitRunRequest,
    ValidateRequest,
    cancel_run,
    get_execution_status,
    list_runs,
    plan_flow,
    preview_effective_rules,
    recover_orphans,
    request_run,
    validate_definitions,
)
from mapflow.scheduling import TriggerScheduler

logger = get_logger(__name__)

app = Typer(
    name="mapflow",
    help="mapflow: configuration-driven data mapping and flow orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

_DEFINITIONS = typer.Option(None, "--definitions", "-f", help="Definitions YAML document.")
_DATABASE = typer.Option(None, "--database", "-d", help="Run ledger database URL or path.")
_JSON = typer.Option(False, "--json", help="Print JSON instead of tables.")


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        from mapflow import __version__

        try:
            v = pkg_version("mapflow")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"mapflow {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """mapflow CLI: validate definitions, run flows, watch triggers."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.json_logs)


# ── Definitions ──────────────────────────────────────────────────────────


@app.command()
def validate(
    entity_id: str | None = typer.Argument(None, help="Entity to validate (default: all)."),
    entity_type: str | None = typer.Option(None, "--type", "-t", help="table, mapping, step, flow or connection."),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Check definitions and list every violation."""
    ctx = make_context(definitions, database)
    result = validate_definitions(ctx, ValidateRequest(entity_type=entity_type, entity_id=entity_id))
    if json_out or not result.success:
        output_result(result, as_json=json_out)
    else:
        report = result.data
        if report.valid:
            console.print(f"[green]✓[/green] {report.checked} definition(s) valid")
        else:
            table = Table(title="Violations", pad_edge=False)
            for col in ("entity_type", "entity_id", "code", "message"):
                table.add_column(col, overflow="fold")
            for v in report.violations:
                table.add_row(v["entity_type"], v["entity_id"], v["code"], v["message"])
            console.print(table)
    if result.success and not result.data.valid:
        raise typer.Exit(code=1)


@app.command()
def preview(
    mapping_id: str = typer.Argument(..., help="Mapping ID"),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Show a mapping's effective rules and where each came from."""
    ctx = make_context(definitions, database)
    result = preview_effective_rules(ctx, PreviewRulesRequest(mapping_id=mapping_id))
    if json_out or not result.success:
        output_result(result, as_json=json_out)
        return
    table = Table(title=f"{result.data.mapping_id} → {result.data.target}", pad_edge=False)
    table.add_column("column")
    table.add_column("rule", overflow="fold")
    table.add_column("origin")
    for column, entry in result.data.rules.items():
        table.add_row(column, entry["rule"], entry["origin"])
    console.print(table)


@app.command()
def plan(
    flow_id: str = typer.Argument(..., help="Flow ID"),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Show a flow's step order and parallel layers."""
    ctx = make_context(definitions, database)
    result = plan_flow(ctx, PlanRequest(flow_id=flow_id))
    if json_out or not result.success:
        output_result(result, as_json=json_out)
        return
    console.print(f"[bold]Plan: {flow_id}[/bold]")
    for index, layer in enumerate(result.data.layers):
        console.print(f"  [cyan]layer {index}[/cyan]: {', '.join(layer)}")


# ── Runs ─────────────────────────────────────────────────────────────────


@app.command()
def run(
    flow_id: str = typer.Argument(..., help="Flow ID"),
    params: str | None = typer.Option(None, "--params", "-p", help="JSON params string"),
    wait: bool = typer.Option(False, "--wait", "-w", help="Print the finished execution instead of the accepted one."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and plan without recording a run."),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Request a run of a flow."""
    parsed_params = {}
    if params:
        try:
            parsed_params = json.loads(params)
        except json.JSONDecodeError as e:
            err_console.print(f"[red]Error: Invalid JSON params: {e}[/red]")
            raise typer.Exit(1) from e

    ctx = make_context(definitions, database, dry_run=dry_run)
    result = request_run(
        ctx,
        SubmitRunRequest(flow_id=flow_id, params=parsed_params, wait=wait, trigger_source="cli"),
    )
    if wait and result.success and result.data.execution_id and not result.data.already_running:
        output_result(
            get_execution_status(ctx, GetRunRequest(execution_id=result.data.execution_id)),
            as_json=json_out,
            title=f"Execution: {result.data.execution_id}",
        )
        return
    output_result(result, as_json=json_out, title="Run")
    # The run thread dies with the process; stay until it is recorded terminal.
    ctx.engine.shutdown()


@app.command()
def cancel(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Cancel a pending or running execution."""
    ctx = make_context(definitions, database)
    result = cancel_run(ctx, CancelRunRequest(execution_id=execution_id))
    output_result(result, as_json=json_out, title="Cancel")


@app.command()
def status(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    events: bool = typer.Option(False, "--events", help="Include the event history."),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Show an execution and its step outcomes."""
    ctx = make_context(definitions, database)
    result = get_execution_status(ctx, GetRunRequest(execution_id=execution_id, include_events=events))
    output_result(result, as_json=json_out, title=f"Execution: {execution_id}")


@app.command("runs")
def runs_list(
    flow_id: str | None = typer.Option(None, "--flow", help="Only this flow's executions."),
    status_filter: str | None = typer.Option(None, "--status", "-s"),
    limit: int = typer.Option(50, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """List executions, newest first."""
    ctx = make_context(definitions, database)
    request = ListRunsRequest(flow_id=flow_id, status=status_filter, limit=limit, offset=offset)
    output_paged(list_runs(ctx, request), as_json=json_out, title="Runs")


@app.command()
def recover(
    include_live: bool = typer.Option(
        False, "--include-live", help="Also fail runs whose owner looks alive (e.g. on a lost host)."
    ),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Fail executions whose owning process is gone."""
    ctx = make_context(definitions, database)
    output_result(recover_orphans(ctx, include_live=include_live), as_json=json_out, title="Recovered")


# ── Scheduler ────────────────────────────────────────────────────────────


def _parse_since(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as e:
        err_console.print(f"[red]Error: --since must be an ISO timestamp: {e}[/red]")
        raise typer.Exit(1) from e
    return moment if moment.tzinfo else moment.replace(tzinfo=UTC)


@app.command()
def scheduler(
    once: bool = typer.Option(False, "--once", help="Evaluate triggers once, run what fired, then exit."),
    since: str | None = typer.Option(
        None, "--since", help="Fire scheduled instants from this time on (default: start-up)."
    ),
    interval: float | None = typer.Option(None, "--interval", help="Seconds between ticks."),
    definitions: str | None = _DEFINITIONS,
    database: str | None = _DATABASE,
    json_out: bool = _JSON,
) -> None:
    """Watch schedule and file-arrival triggers and request runs."""
    ctx = make_context(definitions, database)
    recovered = recover_orphans(ctx)
    if recovered.data:
        err_console.print(f"[yellow]Recovered {len(recovered.data)} orphaned execution(s)[/yellow]")

    service = TriggerScheduler(
        ctx.engine,
        interval_seconds=interval or get_settings().scheduler_interval_seconds,
        wait_for_runs=once,
        anchor=_parse_since(since),
    )

    if once:
        requested = service.tick()
        payload = {"requested": requested, **service.stats.to_dict()}
        if json_out:
            console.print_json(json.dumps(payload, default=str))
        else:
            console.print(f"Requested {len(requested)} run(s)")
            for execution_id in requested:
                console.print(f"  {execution_id}")
        return

    service.start()
    console.print(f"[green]Scheduler started[/green] (every {service.interval}s, Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("cli.scheduler_interrupted")
    finally:
        service.stop()
        ctx.engine.shutdown()
