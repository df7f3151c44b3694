from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from stagegate.config import get_settings
from stagegate.context import AppContext, build_context
from stagegate.errors import StageGateError
from stagegate.schemas import APPROVAL_STATUSES, STAGE_KEYS

app = typer.Typer(help="Stage-gate tracking for organizational initiatives")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=True)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    project_root: str | None = typer.Option(
        None,
        "--project-root",
        help="Root containing config/workstreams.yaml and data/.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if project_root:
        os.environ["STAGEGATE_HOME"] = str(Path(project_root).expanduser().resolve())
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _context(db_url: str | None) -> AppContext:
    settings = get_settings()
    if db_url:
        settings = settings.model_copy(update={"database_url_override": db_url})
    return build_context(settings)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:,.2f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in rows:
        table.add_row(field, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    _render_table(title, [
        (key, _format_scalar(value)) for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    ])


def _fail(exc: StageGateError, ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps({"error": exc.message, "error_code": exc.code}))
    else:
        console.print(f"[red]✗[/red] {exc.message} ({exc.code})")
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    context = _context(db_url)
    try:
        url = context.engine.url.render_as_string(hide_password=True)
    finally:
        context.close()
    _print("init-db", {"status": "ok", "database_url": url}, ctx)


@app.command("list")
def list_command(
    ctx: typer.Context,
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    context = _context(db_url)
    try:
        items = context.service.list_initiatives()
    finally:
        context.close()

    if _wants_json(ctx):
        typer.echo(json.dumps([i.model_dump(mode="json") for i in items], indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold yellow", box=ROUNDED)
    for column in ("ID", "Name", "Workstream", "Stage", "Version", "Recurring impact"):
        table.add_column(column)
    for item in items:
        table.add_row(
            item.id, item.name, item.workstream_id, item.active_stage, str(item.version),
            _format_scalar(item.totals.recurring_impact),
        )
    console.print(Panel(table, title=f"initiatives · {len(items)}", border_style="yellow"))


@app.command("show")
def show_command(
    ctx: typer.Context,
    initiative_id: str = typer.Argument(..., help="Initiative ID."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    context = _context(db_url)
    try:
        item = context.service.get_initiative(initiative_id)
    except StageGateError as exc:
        _fail(exc, ctx)
    finally:
        context.close()

    if _wants_json(ctx):
        typer.echo(json.dumps(item.model_dump(mode="json"), indent=2, ensure_ascii=False))
        return
    _print(item.name, {
        "id": item.id, "workstream_id": item.workstream_id, "owner": item.owner_name,
        "status": item.current_status, "active_stage": item.active_stage,
        "l4_date": item.l4_date, "version": item.version,
    }, ctx)
    _render_table("totals", [(k, _format_scalar(v)) for k, v in item.totals.model_dump().items()],
                  border_style="green")
    _render_table("gates", [
        (key, f"{state.status} · round {state.round_index}")
        for key, state in item.stage_state.items() if key != STAGE_KEYS[0]
    ], border_style="magenta")


@app.command("approvals")
def approvals_command(
    ctx: typer.Context,
    status: str | None = typer.Option(None, help="pending|approved|returned|rejected"),
    account_id: str | None = typer.Option(None, help="Only tasks whose role this account holds."),
    db_url: str | None = typer.Option(default=None, help="Optional SQLAlchemy DB URL"),
) -> None:
    if status is not None and status not in APPROVAL_STATUSES:
        raise typer.BadParameter(f"status must be one of: {', '.join(APPROVAL_STATUSES)}")
    context = _context(db_url)
    try:
        tasks = context.approvals.list_approval_tasks(status=status, account_id=account_id)
    finally:
        context.close()

    if _wants_json(ctx):
        typer.echo(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2, ensure_ascii=False))
        return
    table = Table(show_header=True, header_style="bold magenta", box=ROUNDED)
    for column in ("Approval", "Initiative", "Gate", "Round", "Role", "Status", "Approved"):
        table.add_column(column)
    for task in tasks:
        table.add_row(
            task.id, task.initiative_name, task.stage_key, str(task.round_index), task.role, task.status,
            f"{task.round_approved}/{task.round_total}",
        )
    console.print(Panel(table, title=f"approvals · {status or 'all'}", border_style="magenta"))


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8000, help="Port."),
    reload: bool = typer.Option(False, help="Reload on code changes."),
) -> None:
    from stagegate.app import main as serve

    serve(host=host, port=port, reload=reload)


@app.command("mcp")
def mcp_command() -> None:
    """Run the MCP server over stdio."""
    from stagegate.mcp_server import main as run_mcp

    run_mcp()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
