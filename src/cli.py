"""Command Line Interface for Family-Chart.

This module provides a CLI using Typer for database setup, reading a
record's change history from the terminal, and running the API server.

Security Impact:
    - The history command prints field names and before/after values; it is
      an operator tool and bypasses family access control
    - Credentials are never printed by the info command
"""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from src.adapters.storage import DuckDBAdapter, PostgreSQLAdapter
from src.api.logging_config import setup_logging
from src.domain.audit_models import to_jsonable
from src.domain.entities import ENTITY_DEFINITIONS
from src.domain.services.summary_renderer import resolve_summary
from src.infrastructure.audit.audit_store import AuditStore
from src.infrastructure.settings import settings

# Initialize Typer app and Rich console
app = typer.Typer(
    name="familychart",
    help="Family-Chart: audited family health records",
    add_completion=False
)
console = Console()


def create_storage_adapter_cli():
    """Create storage adapter based on configuration (CLI wrapper)."""
    db_config = settings.db_config
    try:
        if db_config.db_type == "duckdb":
            return DuckDBAdapter(db_config=db_config)
        if db_config.db_type == "postgresql":
            return PostgreSQLAdapter(db_config=db_config)
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)
    console.print(f"[red]✗[/red] Unsupported database type: {db_config.db_type}")
    raise typer.Exit(code=1)


def _format_change(change) -> str:
    if isinstance(change, dict) and ('before' in change or 'after' in change):
        return f"{to_jsonable(change.get('before'))} → {to_jsonable(change.get('after'))}"
    return str(to_jsonable(change))


@app.command("init-db")
def init_db() -> None:
    """Create the database schema (idempotent).

    Examples:
        familychart init-db
        FC_DB_TYPE=postgresql FC_DB_HOST=localhost FC_DB_NAME=familychart familychart init-db
    """
    storage = create_storage_adapter_cli()
    try:
        result = storage.initialize_schema()
        if not result.is_success():
            console.print(f"[red]✗[/red] Schema initialization failed: {result.error}")
            raise typer.Exit(code=1)
        console.print(f"[green]✓[/green] Schema initialized ({settings.db_config.db_type})")
    finally:
        storage.close()


@app.command()
def history(
    entity_type: str = typer.Argument(..., help="Entity type (visit or illness)"),
    entity_id: int = typer.Argument(..., help="Entity identifier"),
    page: int = typer.Option(1, "--page", "-p", min=1, help="Page number"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1, help="Events per page"),
    show_changes: bool = typer.Option(False, "--changes", help="Show before/after values"),
) -> None:
    """Show the change history of a visit or illness, newest first.

    Summaries are regenerated from the stored change sets.

    Examples:
        familychart history visit 42
        familychart history illness 7 --page 2 --limit 100 --changes
    """
    if entity_type not in ENTITY_DEFINITIONS:
        console.print(f"[red]✗[/red] Unknown entity type '{entity_type}' "
                      f"(expected one of: {', '.join(sorted(ENTITY_DEFINITIONS))})")
        raise typer.Exit(code=1)

    audit_config = settings.audit_config
    storage = create_storage_adapter_cli()
    try:
        store = AuditStore(storage, storage, max_page_size=audit_config.history_max_page_size)
        page_size = store.clamp_page_size(limit if limit is not None else audit_config.history_default_page_size)
        result = store.list(entity_type, entity_id, page=page, page_size=page_size)
        if not result.is_success():
            console.print(f"[red]✗[/red] Failed to read history: {result.error}")
            raise typer.Exit(code=1)

        events, total = result.value
        if not events:
            console.print(f"[yellow]⚠[/yellow] No history for {entity_type} {entity_id} (page {page})")
            return

        table = Table(show_header=True, header_style="bold",
                      title=f"{entity_type} {entity_id} (page {page}, {total} event(s))")
        table.add_column("ID", justify="right", style="dim")
        table.add_column("When (UTC)", style="cyan")
        table.add_column("User", justify="right")
        table.add_column("Action")
        table.add_column("Summary")
        if show_changes:
            table.add_column("Changes")

        for event in events:
            row = [
                str(event.id),
                event.changed_at.strftime("%Y-%m-%d %H:%M:%S"),
                str(event.user_id) if event.user_id is not None else "system",
                event.action.value,
                resolve_summary(event.changes, entity_type, event.action.value, event.summary),
            ]
            if show_changes:
                row.append("\n".join(
                    f"{field}: {_format_change(change)}" for field, change in event.changes.items()
                ))
            table.add_row(*row)

        console.print(table)
    finally:
        storage.close()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the API server with uvicorn."""
    import uvicorn

    console.print(f"[bold blue]{settings.app_name} API[/bold blue] on http://{host}:{port} (docs at /api/docs)")
    uvicorn.run("src.api.main:app", host=host, port=port, reload=reload, log_level=settings.log_level.lower())


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    audit_config = settings.audit_config
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Database:", f"{settings.db_config.db_type} ({settings.describe_database()})")
    info_table.add_row("Audit Failure Policy:", audit_config.failure_policy.value)
    info_table.add_row("Version Tolerance:", f"{audit_config.version_tolerance_ms} ms")
    info_table.add_row("History Page Size:", f"{audit_config.history_default_page_size} "
                                             f"(max {audit_config.history_max_page_size})")

    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Family-Chart: audited family health records."""
    if verbose:
        setup_logging(use_json=settings.json_logs, log_level="DEBUG")
    if version:
        console.print(f"{settings.app_name} v{settings.app_version}")
        raise typer.Exit()


if __name__ == "__main__":
    app()
