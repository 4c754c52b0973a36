"""Command-line interface for notiontasks.

Built with Typer for commands and Rich for beautiful output.
"""

import json
from datetime import datetime
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .config import get_config
from .db import get_db
from .db.schemas import EntityType, QueueEntryStatus, SyncStatus, state_key
from .logging_config import configure_logging

# Create the main app
app = typer.Typer(
    name="notiontasks",
    help="Local-first tasks, projects and time logs, synced with Notion.",
    no_args_is_help=True,
)

# Rich console for pretty output
console = Console()


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


def format_ms(value: Optional[int]) -> str:
    """Format epoch milliseconds for display."""
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M:%S")


def parse_fields(pairs: list[str]) -> dict[str, Any]:
    """Parse ``name=value`` options; values are JSON if they parse as JSON."""
    fields: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise typer.BadParameter(f"Expected name=value, got {pair!r}")
        name, raw = pair.split("=", 1)
        try:
            fields[name.strip()] = json.loads(raw)
        except ValueError:
            fields[name.strip()] = raw
    return fields


def _get_orchestrator():
    from .sync import NotionGateway, SyncOrchestrator

    config = get_config()
    db = get_db()
    return SyncOrchestrator(db=db, gateway=NotionGateway(config), config=config)


def _print_job_event(status) -> None:
    detail = status.message or status.error or ""
    progress = f" {status.progress:.0f}%" if status.progress is not None else ""
    print_info(escape(f"[{status.job_type}] {status.status.value}{progress} {detail}".rstrip()))


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show log output"),
) -> None:
    """Local-first tasks, projects and time logs, synced with Notion."""
    level = "INFO" if verbose else get_config().log_level
    configure_logging(level, console=Console(stderr=True))


# ============================================================================
# Record Commands
# ============================================================================


@app.command()
def add(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    title: str = typer.Argument(..., help="Title of the new record"),
    field: list[str] = typer.Option([], "--field", "-f", help="Extra field as name=value"),
) -> None:
    """Create a record locally; it is pushed on the next sync."""
    payload = {"title": title, **parse_fields(field)}
    record = get_db().create_local(entity, payload)
    print_success(f"Added {entity.value} {record.client_id}")


@app.command()
def edit(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    client_id: str = typer.Argument(..., help="Record client ID"),
    field: list[str] = typer.Option([], "--field", "-f", help="Field to set as name=value"),
    unset: list[str] = typer.Option([], "--unset", help="Field to remove"),
) -> None:
    """Change fields of a record."""
    changes = parse_fields(field)
    if not changes and not unset:
        print_error("Nothing to change. Use --field name=value or --unset name.")
        raise typer.Exit(1)

    record = get_db().apply_local_mutation(
        entity, client_id, list(changes) + list(unset), changes
    )
    if not record:
        print_error(f"No {entity.value} with ID {client_id}")
        raise typer.Exit(1)
    print_success(f"Updated {', '.join(sorted(set(changes) | set(unset)))}")


@app.command()
def delete(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    client_id: str = typer.Argument(..., help="Record client ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a record (archives the Notion page on the next sync)."""
    db = get_db()
    record = db.get_by_id(entity, client_id)
    if not record:
        print_error(f"No {entity.value} with ID {client_id}")
        raise typer.Exit(1)

    title = record.get_payload().get("title") or client_id
    if not yes and not typer.confirm(f"Delete {title!r}?", default=False):
        console.print("[dim]Cancelled.[/dim]")
        raise typer.Exit(0)

    db.delete(entity, client_id)
    print_success(f"Deleted {title}")


@app.command("list")
def list_records(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    status: Optional[SyncStatus] = typer.Option(None, "--status", "-s", help="Filter by sync status"),
) -> None:
    """List local records."""
    db = get_db()
    records = db.list_by_sync_status(entity, status) if status else db.list_all(entity)

    if not records:
        console.print(f"[dim]No {entity.value} records.[/dim]")
        return

    table = Table(title=f"{entity.value} records", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Title", style="cyan", max_width=40)
    table.add_column("Sync", style="yellow")
    table.add_column("Notion ID", style="dim")
    table.add_column("Modified", justify="right")

    for record in records:
        table.add_row(
            record.client_id,
            str(record.get_payload().get("title") or ""),
            record.sync_status,
            record.notion_id or "-",
            format_ms(record.last_modified_local or record.last_modified_notion),
        )
    console.print(table)


@app.command()
def show(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    client_id: str = typer.Argument(..., help="Record client ID"),
) -> None:
    """Show a record with its sync metadata as JSON."""
    db = get_db()
    record = db.get_by_id(entity, client_id)
    if not record:
        print_error(f"No {entity.value} with ID {client_id}")
        raise typer.Exit(1)
    console.print_json(record.to_response().model_dump_json())

    entry = db.get_entry_for(entity, client_id)
    if entry:
        console.print(Panel(entry.to_response().model_dump_json(indent=2), title="Queued change"))


# ============================================================================
# Sync Commands
# ============================================================================


def _finish_job(status) -> None:
    from .sync import JobState

    if status.status == JobState.ERROR:
        print_error(status.error or "Sync failed")
        raise typer.Exit(1)
    if status.status == JobState.CANCELLED:
        print_warning(status.message or "Cancelled")
        raise typer.Exit(1)
    console.print(f"\n[green]✓[/green] {status.message or 'Done'}")
    if status.message and "errors" in status.message:
        raise typer.Exit(1)


@app.command()
def sync(
    entity: Optional[EntityType] = typer.Argument(None, help="Entity type (default: all configured)"),
    pull_only: bool = typer.Option(False, "--pull", help="Only pull from Notion"),
    push_only: bool = typer.Option(False, "--push", help="Only push local changes"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show progress"),
) -> None:
    """Sync local database with Notion (pull, then push)."""
    config = get_config()
    if not config.has_notion_config():
        print_error("Notion not configured. Set NOTION_API_KEY and NOTION_<ENTITY>_DATABASE_ID.")
        raise typer.Exit(1)
    if pull_only and push_only:
        print_error("--pull and --push are mutually exclusive")
        raise typer.Exit(1)

    orchestrator = _get_orchestrator()
    subscription = orchestrator.coordinator.subscribe(_print_job_event)
    try:
        if entity is None:
            status = orchestrator.request_sync_all(
                pull=not push_only, push=not pull_only, show_progress=progress
            )
        else:
            status = orchestrator.request_sync(
                entity, pull=not push_only, push=not pull_only, show_progress=progress
            )
    finally:
        subscription.unsubscribe()
    _finish_job(status)


@app.command("import")
def import_cmd(
    entity: EntityType = typer.Argument(..., help="Entity type"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show progress"),
) -> None:
    """Import every record of an entity type from Notion (resumable)."""
    orchestrator = _get_orchestrator()
    subscription = orchestrator.coordinator.subscribe(_print_job_event)
    try:
        status = orchestrator.request_import(entity, show_progress=progress)
    finally:
        subscription.unsubscribe()
    _finish_job(status)


@app.command("reset-import")
def reset_import(
    entity: EntityType = typer.Argument(..., help="Entity type"),
) -> None:
    """Forget pull progress so the next sync imports everything again."""
    _get_orchestrator().reset_import(entity)
    print_success(f"Import state reset for {entity.value}")


@app.command()
def status() -> None:
    """Show sync status for every entity type."""
    db = get_db()

    table = Table(title="Sync Status", show_header=True, header_style="bold magenta")
    table.add_column("Entity", style="cyan")
    table.add_column("Records", justify="right")
    table.add_column("Synced", justify="right", style="green")
    table.add_column("Pending", justify="right", style="yellow")
    table.add_column("Error", justify="right", style="red")
    table.add_column("Trashed", justify="right", style="dim")
    table.add_column("Queued", justify="right")
    table.add_column("Last sync")

    for entity in EntityType:
        pending = db.count_records(entity, SyncStatus.PENDING) + db.count_records(
            entity, SyncStatus.LOCAL
        )
        last_sync = db.get_sync_state(state_key(entity, "last_sync"))
        if db.get_sync_state(state_key(entity, "cursor")):
            last_sync = f"{last_sync or 'never'} (import in progress)"
        table.add_row(
            entity.value,
            str(db.count_records(entity)),
            str(db.count_records(entity, SyncStatus.SYNCED)),
            str(pending),
            str(db.count_records(entity, SyncStatus.ERROR)),
            str(db.count_records(entity, SyncStatus.TRASHED)),
            str(db.count_queue_entries(entity)),
            last_sync or "never",
        )

    console.print(table)
    failed = db.count_queue_entries(status=QueueEntryStatus.ERROR)
    if failed:
        print_warning(f"{failed} queued changes failed. Run 'notiontasks retry --all' to retry.")


@app.command()
def queue(
    entity: Optional[EntityType] = typer.Option(None, "--entity", "-e", help="Filter by entity type"),
    errors_only: bool = typer.Option(False, "--errors", help="Only failed entries"),
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """List queued local changes."""
    db = get_db()
    entries = db.list_queue_entries(
        entity, QueueEntryStatus.ERROR if errors_only else None
    )

    if as_json:
        console.print_json(json.dumps([e.to_response().model_dump(mode="json") for e in entries]))
        return

    if not entries:
        console.print("[green]✓[/green] No pending changes.")
        return

    table = Table(title="Sync Queue", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Entity", style="cyan")
    table.add_column("Op", style="yellow")
    table.add_column("Fields", max_width=30)
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Next attempt")
    table.add_column("Last error", style="red", max_width=40)

    for entry in entries:
        table.add_row(
            str(entry.id),
            f"{entry.entity_type}/{entry.client_id[:8]}",
            entry.operation,
            ", ".join(entry.get_changed_fields()) or "-",
            entry.status,
            str(entry.retry_count),
            format_ms(entry.next_attempt_at),
            entry.last_error or "",
        )
    console.print(table)


@app.command()
def retry(
    entry_id: Optional[int] = typer.Argument(None, help="Queue entry ID"),
    all_failed: bool = typer.Option(False, "--all", "-a", help="Retry every failed entry"),
    entity: Optional[EntityType] = typer.Option(None, "--entity", "-e", help="With --all, only this type"),
) -> None:
    """Put failed queue entries back into rotation."""
    db = get_db()
    if all_failed:
        count = db.retry_failed_entries(entity)
        print_success(f"{count} entries will be retried on the next sync")
        return

    if entry_id is None:
        print_error("Give an entry ID or --all")
        raise typer.Exit(1)

    if not db.retry_entry(entry_id):
        print_error(f"No queue entry {entry_id}")
        raise typer.Exit(1)
    print_success(f"Entry {entry_id} will be retried on the next sync")


@app.command()
def conflicts(
    entity: Optional[EntityType] = typer.Option(None, "--entity", "-e", help="Filter by entity type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Max rows"),
) -> None:
    """Show local edits that were overridden by newer Notion values."""
    rows = get_db().list_conflicts(entity)[:limit]
    if not rows:
        console.print("[dim]No conflicts recorded.[/dim]")
        return

    table = Table(title="Overridden local edits", show_header=True, header_style="bold magenta")
    table.add_column("When")
    table.add_column("Record", style="cyan")
    table.add_column("Field")
    table.add_column("Local value", style="yellow", max_width=30)
    table.add_column("Notion value", style="green", max_width=30)

    for row in rows:
        table.add_row(
            format_ms(row.resolved_at),
            f"{row.entity_type}/{row.client_id[:8]}",
            row.field,
            json.dumps(row.get_local_value()),
            json.dumps(row.get_remote_value()),
        )
    console.print(table)


@app.command()
def check() -> None:
    """Validate configuration and test each Notion connection."""
    config = get_config()
    problems = config.validate()
    for problem in problems:
        print_error(problem)

    configured = config.configured_entities()
    if not configured:
        print_warning("No Notion databases configured.")
        raise typer.Exit(1)

    from .sync import NotionGateway

    gateway = NotionGateway(config)
    failed = bool(problems)
    for settings in configured:
        ok, message, latency = gateway.test_connection(settings.entity_type)
        mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
        console.print(f"{mark} {settings.entity_type.value}: {message} ({latency} ms)")
        failed = failed or not ok

    if failed:
        raise typer.Exit(1)


# ============================================================================
# Version Command
# ============================================================================


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"notiontasks version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
