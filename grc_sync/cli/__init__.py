"""
Command Line Interface for GRC Sync.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..context import request_context
from ..db.base import configure_engine, get_database_url, init_database
from ..db.services import StatementService
from ..enums import AuditEventType, AuditStatus, ConflictResolution
from ..errors import SyncError
from ..logging_config import configure_logging
from ..schemas.audit_v1 import AuditFilters
from ..sync import Resolution, SyncServices, build_services

app = typer.Typer(help="GRC Sync - synchronize compliance statements with the GRC system of record")
audit_app = typer.Typer(help="Query and export the audit log")
app.add_typer(audit_app, name="audit")
console = Console()

STATUS_STYLE = {
    "pending": "🟡 Pending",
    "running": "🟡 Running",
    "completed": "✅ Completed",
    "partial": "🟠 Partial",
    "failed": "❌ Failed",
    "cancelled": "⏹️ Cancelled",
}


@app.callback()
def main(
    database_url: Optional[str] = typer.Option(None, envvar="DATABASE_URL", help="Database URL"),
) -> None:
    """Configure logging and the database before any command runs."""
    configure_logging(get_settings())
    if database_url:
        configure_engine(database_url)


def _services() -> SyncServices:
    init_database()
    services = build_services()
    services.recover_interrupted_jobs()
    return services


def _wait_for(services: SyncServices, job_id: str, cancel) -> None:
    try:
        services.runner.wait(job_id)
    except KeyboardInterrupt:
        console.print("\n🛑 Cancelling job...")
        cancel(job_id)
        services.runner.wait(job_id)


def _fail(e: SyncError) -> None:
    console.print(f"❌ {e.message}")
    raise typer.Exit(code=1)


@app.command()
def serve(
    port: int = typer.Option(None, help="Port to run the API server on"),
    host: str = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Run in development mode (auto-reload)"),
):
    """Start the GRC Sync API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port
    rprint(Panel.fit("🔄 Starting GRC Sync", style="bold blue"))
    console.print(f"🚀 API on http://{host}:{port}")
    uvicorn.run("grc_sync.api:app", host=host, port=port, reload=dev)


@app.command("init-db")
def init_db(
    migrate: bool = typer.Option(False, help="Run Alembic migrations instead of create_all"),
):
    """Create the database schema."""
    if migrate:
        from alembic import command
        from alembic.config import Config

        config = Config()
        config.set_main_option("script_location", "grc_sync:db/migrations")
        config.set_main_option("sqlalchemy.url", get_database_url())
        command.upgrade(config, "head")
    else:
        init_database()
    console.print("✅ Database initialized")


@app.command()
def pull(
    system_ids: List[str] = typer.Argument(..., help="External ids of the systems to pull"),
    actor: str = typer.Option("cli", help="Actor recorded in the audit log"),
    wait: bool = typer.Option(True, help="Wait for the job and show its result"),
):
    """Pull systems, controls and statements from the remote source."""
    services = _services()
    with request_context(actor=actor):
        try:
            job = services.pull.start_pull(system_ids, actor=actor)
        except SyncError as e:
            _fail(e)
        console.print(f"🚀 Pull job {job.id} started for {len(system_ids)} system(s)")
        if not wait:
            return
        _wait_for(services, job.id, services.pull.cancel_job)

    job = services.pull.get_job(job.id)
    progress = job.progress or {}
    table = Table(title=f"Pull job {job.id}", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", STATUS_STYLE.get(job.status, job.status))
    for key in (
        "systems_processed",
        "controls_processed",
        "statements_created",
        "statements_updated",
        "conflicts_detected",
        "items_failed",
    ):
        table.add_row(key.replace("_", " ").capitalize(), str(progress.get(key, 0)))
    if job.error:
        table.add_row("Error", job.error)
    console.print(table)

    for error in (job.errors or [])[:20]:
        console.print(f"  ⚠️  {error['entity_type']} {error['external_id']}: {error['message']}")
    services.shutdown()


@app.command()
def conflicts(
    statement_ids: List[str] = typer.Argument(..., help="Statement ids to check"),
):
    """Check statements for remote changes newer than their baseline."""
    services = _services()
    try:
        results = services.push.check_conflicts(statement_ids)
    except SyncError as e:
        _fail(e)

    table = Table(title="Conflict check", show_header=True, header_style="bold cyan")
    table.add_column("Statement", style="yellow")
    table.add_column("Conflict")
    table.add_column("Baseline")
    table.add_column("Remote updated")
    table.add_column("Note")
    for result in results:
        table.add_row(
            result.statement_id,
            "⚠️ yes" if result.has_conflict else "✅ no",
            result.local_baseline.isoformat() if result.local_baseline else "-",
            result.remote_updated_at.isoformat() if result.remote_updated_at else "-",
            result.error or "",
        )
    console.print(table)
    services.shutdown()


@app.command()
def push(
    statement_ids: List[str] = typer.Argument(..., help="Statement ids to push"),
    keep_local: List[str] = typer.Option([], help="Resolve these conflicted statements with keep_local"),
    keep_remote: List[str] = typer.Option([], help="Resolve these conflicted statements with keep_remote"),
    actor: str = typer.Option("cli", help="Actor recorded in the audit log"),
    wait: bool = typer.Option(True, help="Wait for the job and show its result"),
):
    """Push locally modified statements to the remote source."""
    resolutions = [Resolution(sid, ConflictResolution.KEEP_LOCAL) for sid in keep_local]
    resolutions += [Resolution(sid, ConflictResolution.KEEP_REMOTE) for sid in keep_remote]

    services = _services()
    with request_context(actor=actor):
        try:
            job = services.push.start_push(statement_ids, resolutions, actor=actor)
        except SyncError as e:
            _fail(e)
        console.print(f"🚀 Push job {job.id} started for {job.total_count} statement(s)")
        if not wait:
            return
        _wait_for(services, job.id, services.push.cancel_job)

    job = services.push.get_job(job.id)
    console.print(
        f"{STATUS_STYLE.get(job.status, job.status)}  "
        f"succeeded={job.succeeded} failed={job.failed} skipped={job.skipped}"
    )
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Statement", style="yellow")
    table.add_column("Outcome", style="green")
    table.add_column("Category")
    table.add_column("Message")
    for item in job.results or []:
        table.add_row(item["statement_id"], item["outcome"], item.get("category") or "", item.get("message") or "")
    console.print(table)
    services.shutdown()


@app.command()
def statements(
    conflicts_only: bool = typer.Option(False, "--conflicts", help="List conflicted statements instead"),
):
    """List locally modified statements, or those in conflict."""
    services = _services()
    db = services.session_factory()
    try:
        store = StatementService(db)
        rows = store.list_conflicts() if conflicts_only else store.list_modified()
        title = "Conflicted statements" if conflicts_only else "Modified statements"
        table = Table(title=f"{title} ({len(rows)})", show_header=True, header_style="bold cyan")
        table.add_column("Statement", style="yellow")
        table.add_column("External id")
        table.add_column("Status", style="green")
        table.add_column("Modified by", style="magenta")
        table.add_column("Modified at", style="blue")
        for row in rows:
            table.add_row(
                row.id,
                row.external_id,
                row.sync_status,
                row.modified_by or "-",
                row.modified_at.strftime("%Y-%m-%d %H:%M:%S") if row.modified_at else "-",
            )
        console.print(table)
    finally:
        db.close()
    services.shutdown()


@app.command()
def show(statement_id: str = typer.Argument(..., help="Statement id")):
    """Show one statement's local and remote content."""
    services = _services()
    db = services.session_factory()
    try:
        try:
            statement = StatementService(db).require(statement_id)
        except SyncError as e:
            _fail(e)
        rprint(Panel(statement.remote_content or "", title=f"Remote ({statement.sync_status})"))
        if statement.is_modified:
            rprint(Panel(statement.local_content or "", title=f"Local (edited by {statement.modified_by or '-'})"))
    finally:
        db.close()
    services.shutdown()


@app.command()
def revert(
    statement_id: str = typer.Argument(..., help="Statement id"),
    actor: str = typer.Option("cli", help="Actor recorded in the audit log"),
):
    """Discard a statement's local edit."""
    services = _services()
    db = services.session_factory()
    try:
        try:
            statement = StatementService(db, services.audit).revert_to_remote(statement_id, actor)
        except SyncError as e:
            _fail(e)
        console.print(f"✅ Statement {statement.id} reverted to the remote content ({statement.sync_status})")
    finally:
        db.close()
    services.shutdown()


@app.command("test-connection")
def test_connection():
    """Check connectivity and credentials against the remote source."""
    services = _services()
    try:
        client = services.client_factory()
    except ValueError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(code=1)

    with client:
        result = client.test_connection()
    services.audit.record(
        AuditEventType.CONNECTION_TEST,
        "connection",
        result.instance_url,
        action="test_connection",
        status=AuditStatus.SUCCESS if result.success else AuditStatus.FAILURE,
        details={"response_time_ms": result.response_time_ms, "error_kind": result.error_kind},
        actor="cli",
    )
    if result.success:
        console.print(
            f"✅ Connected to {result.instance_url} "
            f"(version {result.version or 'unknown'}, {result.response_time_ms} ms)"
        )
    else:
        console.print(f"❌ {result.error_kind}: {result.error_message}")
        raise typer.Exit(code=1)


def _filters(
    event_type: List[str],
    status: Optional[str],
    actor: Optional[str],
    search: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
) -> AuditFilters:
    return AuditFilters(
        event_types=event_type,
        actor=actor,
        status=status,
        search=search,
        start_date=since,
        end_date=until,
    )


@audit_app.command("list")
def audit_list(
    event_type: List[str] = typer.Option([], help="Filter by event type (repeatable)"),
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    actor: Optional[str] = typer.Option(None, help="Filter by actor"),
    search: Optional[str] = typer.Option(None, help="Free-text search"),
    since: Optional[datetime] = typer.Option(None, help="Only events at or after this time"),
    until: Optional[datetime] = typer.Option(None, help="Only events at or before this time"),
    page: int = typer.Option(1, min=1),
    page_size: int = typer.Option(50, min=1),
):
    """List audit events, newest first."""
    init_database()
    services = build_services()
    result = services.audit.query(_filters(event_type, status, actor, search, since, until), page, page_size)

    table = Table(
        title=f"Audit events (page {result.page}/{max(result.total_pages, 1)}, {result.total_count} total)",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Time", style="blue")
    table.add_column("Type", style="yellow")
    table.add_column("Entity")
    table.add_column("Action")
    table.add_column("Actor", style="magenta")
    table.add_column("Status", style="green")
    for event in result.events:
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            f"{event.entity_type}:{event.entity_id[:12]}",
            event.action,
            event.actor,
            event.status,
        )
    console.print(table)


@audit_app.command("export")
def audit_export(
    output: Path = typer.Option(..., help="CSV file to write"),
    event_type: List[str] = typer.Option([], help="Filter by event type (repeatable)"),
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    actor: Optional[str] = typer.Option(None, help="Filter by actor"),
    search: Optional[str] = typer.Option(None, help="Free-text search"),
    since: Optional[datetime] = typer.Option(None, help="Only events at or after this time"),
    until: Optional[datetime] = typer.Option(None, help="Only events at or before this time"),
):
    """Export matching audit events to CSV."""
    init_database()
    services = build_services()
    content = services.audit.export_csv(_filters(event_type, status, actor, search, since, until))
    output.write_bytes(content)
    rows = max(content.count(b"\n") - 1, 0)
    console.print(f"✅ Wrote {rows} event(s) to {output}")


if __name__ == "__main__":
    app()
