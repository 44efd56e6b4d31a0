from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy import select

from eventscout import services
from eventscout.config import get_settings
from eventscout.db import init_db, session_scope
from eventscout.jobs import InvalidScopeError, JobNotFoundError, JobSetupError, get_job
from eventscout.models import Job, JobKind, JobStatus
from eventscout.processor import run_tick
from eventscout.schemas import JobOut

app = typer.Typer(help="EventScout guest scoring and batch job runner")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(name)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db: str | None = typer.Option(None, "--db", help="SQLite path or SQLAlchemy URL (overrides EVENTSCOUT_DB_PATH)."),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if db:
        os.environ["EVENTSCOUT_DB_PATH"] = db
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose, "db": db}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _init(ctx: typer.Context) -> None:
    init_db(ctx.obj.get("db") if ctx.obj else None)


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False, default=str))
        return
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in payload.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value, ensure_ascii=False, default=str)
        table.add_row(key, _format_scalar(value))
    console.print(Panel(table, title=title, border_style="cyan"))


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("tick")
def tick_command(ctx: typer.Context) -> None:
    """Run one processor pass (what the cron endpoint does)."""
    _init(ctx)
    counts = asyncio.run(run_tick())
    _print("tick", counts, ctx)


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Port."),
    reload: bool = typer.Option(False, help="Auto-reload on code changes."),
) -> None:
    """Run the HTTP API."""
    import uvicorn
    uvicorn.run("eventscout.app:app", host=host, port=port, reload=reload)


@app.command("jobs")
def jobs_command(
    ctx: typer.Context,
    workspace: str | None = typer.Option(None, help="Only jobs of this workspace."),
    kind: JobKind | None = typer.Option(None, case_sensitive=False, help="ENRICHMENT or SCORING."),
    status: JobStatus | None = typer.Option(None, case_sensitive=False, help="Filter by status."),
    limit: int = typer.Option(20, min=1, max=500, help="Maximum rows."),
) -> None:
    """List recent jobs, newest first."""
    _init(ctx)
    with session_scope() as session:
        stmt = select(Job).order_by(Job.created_at.desc()).limit(limit)
        if workspace:
            stmt = stmt.where(Job.workspace_id == workspace)
        if kind:
            stmt = stmt.where(Job.kind == kind)
        if status:
            stmt = stmt.where(Job.status == status)
        rows = [JobOut.from_job(j) for j in session.execute(stmt).scalars().all()]

    if _wants_json(ctx):
        typer.echo(json.dumps([r.model_dump(mode="json") for r in rows], indent=2))
        return
    table = Table(show_header=True, header_style="bold green", box=ROUNDED)
    for col in ("id", "kind", "event", "status", "progress", "failed", "created"):
        table.add_column(col)
    for r in rows:
        table.add_row(
            r.id, r.kind, _format_scalar(r.event_id), r.status,
            f"{r.completed_count}/{r.total} ({r.progress}%)", str(r.failed_count),
            r.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("job")
def job_command(ctx: typer.Context, job_id: str = typer.Argument(..., help="Job id.")) -> None:
    """Show one job."""
    _init(ctx)
    with session_scope() as session:
        try:
            job = JobOut.from_job(get_job(session, job_id))
        except JobNotFoundError as exc:
            _fail(str(exc))
    _print(f"job {job_id}", job.model_dump(mode="json"), ctx)


@app.command("create-scoring-job")
def create_scoring_job_command(
    ctx: typer.Context,
    workspace: str = typer.Option(..., help="Workspace id."),
    event_id: int = typer.Option(..., help="Event to score against."),
    contact_id: list[str] | None = typer.Option(None, "--contact-id", help="Repeat to select contacts; omit for all."),
) -> None:
    """Snapshot the contact scope and queue a scoring job."""
    _init(ctx)
    with session_scope() as session:
        try:
            job = services.create_scoring_job(session, workspace, event_id, contact_id or None)
        except (JobSetupError, InvalidScopeError) as exc:
            _fail(str(exc))
        payload = {"job_id": job.id, "total_contacts": job.total, "status": job.status}
    _print("create-scoring-job", payload, ctx)


@app.command("create-enrichment-job")
def create_enrichment_job_command(
    ctx: typer.Context,
    workspace: str = typer.Option(..., help="Workspace id."),
    contact_id: list[str] = typer.Option(..., "--contact-id", help="Repeat for each contact (1-100)."),
) -> None:
    """Queue an enrichment job for the given contacts."""
    _init(ctx)
    with session_scope() as session:
        try:
            job = services.create_enrichment_job(session, workspace, contact_id)
        except InvalidScopeError as exc:
            _fail(str(exc))
        payload = {"job_id": job.id, "total_contacts": job.total, "status": job.status}
    _print("create-enrichment-job", payload, ctx)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
