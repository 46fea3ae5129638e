"""CLI entry point for the bulk mutation pipeline.

Provides commands:
  - init-db: Create the SQLite database and schema
  - status: Queue counts per content type/action and jobs per status
  - submit: Build and submit batches for one content type and action
  - poll: Poll every batch job whose next check is due
  - jobs: List recent batch jobs
  - errors: List recent per-item error records
  - clear-errors: Make parked queue items eligible again
  - config: Manage Google Ads credentials in the system keyring
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import keyring
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from adbulk.config import CREDENTIAL_KEYS, SERVICE_NAME, load_bulk_config
from adbulk.database import Database
from adbulk.models import Action, BulkConfig, JobStatus, OperandType

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="adbulk - Sync queued ad content to Google Ads through batch jobs",
    rich_markup_mode="rich",
)
console = Console()

# Config command group
config_app = typer.Typer(help="Manage configuration (Google Ads credentials)")
app.add_typer(config_app, name="config")


@dataclass
class CliState:
    """Settings shared by every command, resolved in the app callback."""

    config: BulkConfig
    db_path: Path


def _configure_logging(level: str, log_file: Path | None) -> None:
    handlers: list[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(level=level.upper(), format="%(message)s", handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    db_path: Annotated[
        Path | None,
        typer.Option("--db", "-d", help="Path to SQLite database (overrides config)"),
    ] = None,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to bulk_config.json"),
    ] = None,
    log_level: Annotated[
        str,
        typer.Option("--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    ] = "INFO",
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write logs to this file"),
    ] = None,
) -> None:
    """Load configuration and set up logging."""
    if log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        console.print(f"[red]Unknown log level '{log_level}'.[/red]")
        raise typer.Exit(code=1)
    _configure_logging(log_level, log_file)

    try:
        config = load_bulk_config(config_path)
    except (OSError, ValueError, TypeError) as e:
        console.print(f"[red]Error:[/red] Failed to load config: {e}")
        raise typer.Exit(code=1)
    if db_path is not None:
        config.db_path = str(db_path)
    ctx.obj = CliState(config=config, db_path=Path(config.db_path))


def get_state(ctx: typer.Context) -> CliState:
    """Type-safe accessor for CliState from Typer context."""
    if ctx.obj is None:
        console.print("[red]Application state not initialized.[/red]")
        raise typer.Exit(code=1)
    return ctx.obj


def _require_db(db_path: Path) -> None:
    if not db_path.exists():
        console.print(
            f"[yellow]Database not found:[/yellow] {db_path}\n"
            "Run [bold]adbulk init-db[/bold] first."
        )
        raise typer.Exit(code=1)


def _make_client(config: BulkConfig):
    from adbulk.bulk.google_ads import GoogleAdsBulkClient

    try:
        return GoogleAdsBulkClient.from_config(config)
    except RuntimeError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create the database file and schema if they do not exist."""
    state = get_state(ctx)
    with Database(state.db_path):
        pass
    console.print(f"[green]✓[/green] Database ready at [bold]{state.db_path}[/bold]")


@app.command()
def status(ctx: typer.Context) -> None:
    """Display queue counts per content type and action, and jobs per status."""
    state = get_state(ctx)
    _require_db(state.db_path)

    with Database(state.db_path) as db:
        queue_rows = db.get_queue_counts()
        job_counts = db.get_job_counts()

    console.print(Panel(f"Database: [bold]{state.db_path}[/bold]", title="Bulk Sync Status"))

    queue_table = Table(title="Queue")
    queue_table.add_column("Content type", style="bold")
    queue_table.add_column("Action")
    queue_table.add_column("Pending", justify="right")
    queue_table.add_column("Errored", justify="right")
    for row in queue_rows:
        errored = row["errored"]
        queue_table.add_row(
            row["operand_type"],
            row["action"],
            str(row["pending"]),
            f"[red]{errored}[/red]" if errored else "0",
        )
    console.print(queue_table)

    job_table = Table(title="Batch Jobs by Status")
    job_table.add_column("Status", style="bold")
    job_table.add_column("Count", justify="right")
    for s, count in sorted(job_counts.items()):
        style = {
            "pending_result": "blue",
            "pending_cancellation": "yellow",
            "complete": "green",
            "error": "red",
        }.get(s, "")
        job_table.add_row(s, f"[{style}]{count}[/{style}]" if style else str(count))
    console.print(job_table)


@app.command()
def submit(
    ctx: typer.Context,
    operand_type: Annotated[OperandType, typer.Argument(help="Content type to submit")],
    action: Annotated[Action, typer.Argument(help="Action to submit")],
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Build batches and report, without remote calls"),
    ] = False,
) -> None:
    """Build and submit batch jobs for every account with pending items."""
    from adbulk.bulk.orchestrator import BulkOrchestrator
    from adbulk.bulk.state import AsyncBulkStateManager

    state = get_state(ctx)
    _require_db(state.db_path)
    client = None if dry_run else _make_client(state.config)

    async def _run() -> dict[str, int]:
        async with AsyncBulkStateManager(str(state.db_path)) as bulk_state:
            orchestrator = BulkOrchestrator(bulk_state, client, config=state.config)
            return await orchestrator.schedule(operand_type, action, dry_run=dry_run)

    summary = asyncio.run(_run())

    table = Table(title=f"Submit {operand_type.value} {action.value}" + (" (dry run)" if dry_run else ""))
    table.add_column("Metric", style="bold")
    table.add_column("Count", justify="right")
    for key, value in summary.items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def poll(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of due jobs to poll"),
    ] = 100,
) -> None:
    """Poll every batch job whose next check is due."""
    from adbulk.bulk.exceptions import UnexpectedJobStateError
    from adbulk.bulk.orchestrator import BulkOrchestrator
    from adbulk.bulk.state import AsyncBulkStateManager

    state = get_state(ctx)
    _require_db(state.db_path)
    client = _make_client(state.config)

    async def _run() -> dict[str, int]:
        async with AsyncBulkStateManager(str(state.db_path)) as bulk_state:
            orchestrator = BulkOrchestrator(bulk_state, client, config=state.config)
            return await orchestrator.process_due_jobs(limit=limit)

    try:
        counts = asyncio.run(_run())
    except UnexpectedJobStateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=2)

    if not counts:
        console.print("[dim]No batch jobs due.[/dim]")
        return
    for s, count in sorted(counts.items()):
        console.print(f"  {s}: {count}")


@app.command()
def jobs(
    ctx: typer.Context,
    job_status: Annotated[
        JobStatus | None,
        typer.Option("--status", help="Only jobs in this status"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 50,
) -> None:
    """List the most recent batch jobs."""
    state = get_state(ctx)
    _require_db(state.db_path)

    with Database(state.db_path) as db:
        rows = db.list_jobs(status=job_status, limit=limit)

    if not rows:
        console.print("[dim]No batch jobs found.[/dim]")
        return

    table = Table(title="Batch Jobs")
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Action")
    table.add_column("Account")
    table.add_column("Status", style="bold")
    table.add_column("Items", justify="right")
    table.add_column("Polls", justify="right")
    table.add_column("Next poll", style="dim")
    table.add_column("Error", style="red")
    for row in rows:
        table.add_row(
            str(row["id"]),
            row["operand_type"],
            row["action"],
            row["account_id"],
            row["status"],
            str(row["item_count"]),
            str(row["attempts"]),
            row["next_poll_at"],
            row["error"] or "",
        )
    console.print(table)


@app.command()
def errors(
    ctx: typer.Context,
    operand_type: Annotated[
        OperandType | None,
        typer.Option("--type", "-t", help="Only errors for this content type"),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum rows")] = 100,
) -> None:
    """List recent per-item error records with their category."""
    state = get_state(ctx)
    _require_db(state.db_path)

    with Database(state.db_path) as db:
        rows = db.list_errors(operand_type=operand_type, limit=limit)

    if not rows:
        console.print("[green]No error records.[/green]")
        return

    table = Table(title="Error Records")
    table.add_column("Item", justify="right")
    table.add_column("Type")
    table.add_column("Campaign")
    table.add_column("Text")
    table.add_column("Category", style="bold")
    table.add_column("Message", style="dim")
    for row in rows:
        table.add_row(
            str(row["item_id"]),
            row["operand_type"],
            row["campaign_name"] or str(row["campaign_id"]),
            row["natural_text"],
            row["category"],
            row["raw_message"],
        )
    console.print(table)


@app.command("clear-errors")
def clear_errors(
    ctx: typer.Context,
    operand_type: Annotated[OperandType, typer.Argument(help="Content type to release")],
    campaign_id: Annotated[
        int | None,
        typer.Option("--campaign", help="Only items of this local campaign id"),
    ] = None,
    action: Annotated[
        Action | None,
        typer.Option("--action", "-a", help="Only items with this action"),
    ] = None,
) -> None:
    """Clear the error on parked queue items so the next run resubmits them."""
    state = get_state(ctx)
    _require_db(state.db_path)

    with Database(state.db_path) as db:
        released = db.clear_errors(operand_type, campaign_id=campaign_id, action=action)

    console.print(f"[green]✓[/green] Released {released} {operand_type.value} queue items")


@config_app.command("set-credential")
def set_credential(
    key_name: Annotated[
        str,
        typer.Argument(help=f"One of: {', '.join(CREDENTIAL_KEYS)}"),
    ],
    value: Annotated[str, typer.Argument(help="Credential value")],
) -> None:
    """Store a Google Ads credential in the system keyring."""
    if key_name not in CREDENTIAL_KEYS:
        console.print(
            f"[red]Error:[/red] Unknown credential '{key_name}'. "
            f"Choose from: {', '.join(CREDENTIAL_KEYS)}"
        )
        raise typer.Exit(code=1)
    if not value or value.strip() == "":
        console.print("[red]Error:[/red] Credential cannot be empty")
        raise typer.Exit(code=1)

    try:
        keyring.set_password(SERVICE_NAME, key_name, value)
        console.print(
            f"[green]✓[/green] {key_name} stored in system keyring (service: {SERVICE_NAME})"
        )
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to store {key_name}: {e}")
        raise typer.Exit(code=1)


@config_app.command("get-credential")
def get_credential(
    key_name: Annotated[
        str,
        typer.Argument(help=f"One of: {', '.join(CREDENTIAL_KEYS)}"),
    ],
) -> None:
    """Display a stored Google Ads credential (masked)."""
    value = keyring.get_password(SERVICE_NAME, key_name)
    if not value:
        console.print(
            f"[yellow]No {key_name} found in keyring.[/yellow]\n"
            f"Set it with: [bold]adbulk config set-credential {key_name} VALUE[/bold]"
        )
        raise typer.Exit(code=1)

    # Mask all but first 4 characters
    if len(value) > 4:
        masked = value[:4] + "*" * (len(value) - 4)
    else:
        masked = "*" * len(value)

    console.print(f"[green]{key_name}:[/green] {masked}")
    console.print(f"[dim](stored in service: {SERVICE_NAME})[/dim]")


@config_app.command("remove-credential")
def remove_credential(
    key_name: Annotated[
        str,
        typer.Argument(help=f"One of: {', '.join(CREDENTIAL_KEYS)}"),
    ],
) -> None:
    """Delete a stored Google Ads credential from the system keyring."""
    try:
        existing = keyring.get_password(SERVICE_NAME, key_name)
        if not existing:
            console.print(
                f"[yellow]Warning:[/yellow] No {key_name} found in keyring.\n"
                "Nothing to remove."
            )
            return

        keyring.delete_password(SERVICE_NAME, key_name)
        console.print(
            f"[green]✓[/green] {key_name} removed from system keyring (service: {SERVICE_NAME})"
        )
    except Exception as e:
        console.print(f"[red]Error:[/red] Failed to remove {key_name}: {e}")
        raise typer.Exit(code=1)
