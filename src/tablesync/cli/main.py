import asyncio
import os
import signal
import time
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from tablesync.config import BatchConfig, DEFAULT_BATCH_SIZE
from tablesync.coordinator import SyncCoordinator
from tablesync.db.dialects import get_dialect
from tablesync.db.metadata import get_table_info, list_user_tables
from tablesync.engine import SyncEngine
from tablesync.errors import SyncError
from tablesync.mapping.parser import load_mapping_file
from tablesync.metrics import configure_logging
from tablesync.resolution import ResolutionStrategy, get_resolver
from tablesync.scheduler import SyncScheduler
from tablesync.transport.http_transport import HTTPTransport

app = typer.Typer(help="tablesync - trigger-based table replication")
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit structured JSON logs"),
):
    configure_logging(level=log_level, json_format=json_logs)


@app.command()
def init(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    enable_tables: Optional[list[str]] = typer.Option(None, "--table", "-t", help="Tables to enable sync for"),
    all_tables: bool = typer.Option(False, "--all", help="Enable sync for every application table"),
):
    """Initialize a database for synchronization."""
    with SyncEngine(db_path) as engine:
        origin = engine.initialize()
        console.print(f"[green]Initialized sync for {db_path}[/green]")
        console.print(f"Origin: {origin}")

        if all_tables:
            enable_tables = list_user_tables(engine.connection)
        if enable_tables:
            result = engine.enable_sync_for_tables(enable_tables)
            for table in result.installed:
                console.print(f"Enabled sync for table: {table}")
            for table, error in result.failed.items():
                console.print(f"[red]Could not enable {table}: {error}[/red]")
            if not result.ok:
                raise typer.Exit(code=1)


@app.command()
def disable(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table: str = typer.Argument(..., help="Table to stop capturing"),
):
    """Remove capture triggers from a table."""
    with SyncEngine(db_path) as engine:
        engine.disable_sync_for_table(table)
    console.print(f"Disabled sync for table: {table}")


@app.command()
def triggers(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    table: str = typer.Argument(..., help="Table to generate triggers for"),
    dialect: str = typer.Option("sqlite", help="Target dialect (sqlite, postgres)"),
):
    """Print the capture trigger DDL for a table."""
    with SyncEngine(db_path) as engine:
        try:
            info = get_table_info(engine.connection, table)
            target = get_dialect(dialect)
        except (SyncError, ValueError) as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)
        typer.echo(target.generate_trigger_sql(info))


@app.command()
def serve(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
):
    """Start the HTTP sync hub."""
    os.environ["TABLESYNC_DB_PATH"] = db_path
    console.print(f"[bold green]Starting sync server on http://{host}:{port}[/bold green]")
    uvicorn.run("tablesync.transport.server:app", host=host, port=port, reload=reload)


@app.command()
def sync(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    server_url: str = typer.Argument(..., help="URL of the sync hub"),
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Repeat every N seconds"),
    daemon: bool = typer.Option(False, "--daemon", "-d", help="Run in the background with graceful shutdown"),
    batch_size: int = typer.Option(DEFAULT_BATCH_SIZE, "--batch-size", help="Changes per batch"),
    strategy: ResolutionStrategy = typer.Option(
        ResolutionStrategy.LAST_WRITE_WINS, "--strategy", help="Conflict resolution strategy"
    ),
    mapping: Optional[str] = typer.Option(None, "--mapping", help="Mapping configuration JSON file"),
):
    """Run synchronization (one-off, interval, or daemon mode)."""
    if strategy in (ResolutionStrategy.CUSTOM, ResolutionStrategy.ORIGIN_PRIORITY):
        console.print(f"[red]Strategy {strategy.value} is only available from Python[/red]")
        raise typer.Exit(code=1)
    try:
        mapping_config = load_mapping_file(mapping) if mapping else None
    except SyncError as e:
        console.print(f"[red]Invalid mapping configuration: {e}[/red]")
        raise typer.Exit(code=1)

    engine = SyncEngine(
        db_path,
        conflict_resolver=get_resolver(strategy),
        mapping_config=mapping_config,
        batch_config=BatchConfig(batch_size=batch_size),
    )
    engine.initialize()
    transport = HTTPTransport(server_url, engine.origin_id)
    scheduler = SyncScheduler(SyncCoordinator(engine, transport), interval_seconds=interval or 60.0)

    if daemon or interval:
        console.print(
            f"[bold green]Syncing with {server_url} every {scheduler.interval}s[/bold green]"
        )
        if daemon:
            stop_requested = [False]

            def handle_signal(signum, frame):
                console.print("\n[yellow]Shutdown signal received. Stopping gracefully...[/yellow]")
                stop_requested[0] = True
                scheduler.stop()

            signal.signal(signal.SIGINT, handle_signal)
            signal.signal(signal.SIGTERM, handle_signal)
            scheduler.start(in_background=True)
            console.print("[green]Daemon started. Press Ctrl+C to stop.[/green]")
            try:
                while not stop_requested[0]:
                    time.sleep(1)
            finally:
                scheduler.stop()
                engine.close()
                console.print("[green]Daemon stopped.[/green]")
        else:
            scheduler.start(in_background=False)
        return

    console.print(f"Syncing with {server_url}...")

    async def run_once():
        try:
            return await scheduler.sync_now()
        finally:
            await transport.close()

    try:
        result = asyncio.run(run_once())
    except SyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        raise typer.Exit(code=1)
    finally:
        engine.close()
    console.print(
        f"[green]Sync completed[/green]: received {result.received_count}, "
        f"applied {result.applied_count}, sent {result.sent_count}, conflicts {result.conflict_count}"
        + (" (full resync)" if result.full_resync else "")
    )


@app.command()
def status(db_path: str = typer.Argument(..., help="Path to SQLite database")):
    """Show synchronization status."""
    with SyncEngine(db_path) as engine:
        try:
            state = engine.get_state()
        except SyncError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1)

        table = Table(title="Sync Status")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="magenta")
        table.add_row("Origin", state.origin_id)
        table.add_row("Tracked tables", ", ".join(state.tracked_tables) or "None")
        table.add_row("Log versions", f"{state.min_version} - {state.max_version} ({state.entry_count} entries)")
        table.add_row("Purged through", str(state.purged_through))
        table.add_row("Last pulled version", str(state.last_server_version))
        table.add_row("Last pushed version", str(state.last_push_version))
        console.print(table)

        clients = engine.tracker.get_all()
        if clients:
            client_table = Table(title="Replicas")
            client_table.add_column("Origin")
            client_table.add_column("Version")
            client_table.add_column("Last Sync")
            for c in clients:
                client_table.add_row(c.origin_id, str(c.last_sync_version), c.last_sync_timestamp)
            console.print(client_table)


@app.command()
def purge(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    version: Optional[int] = typer.Option(None, "--version", help="Purge through this version"),
):
    """Drop stale replicas and purge fully propagated change log entries."""
    with SyncEngine(db_path) as engine:
        if version is not None:
            removed = engine.tombstones.purge(version)
            console.print(f"Purged {removed} entries")
            return
        result = engine.tombstones.collect()
        for origin in result.removed_clients:
            console.print(f"[yellow]Removed stale replica {origin}[/yellow]")
        console.print(f"Purged {result.entries_removed} entries (through version {result.purged_through})")


@app.command("hash")
def database_hash(
    db_path: str = typer.Argument(..., help="Path to SQLite database"),
    tables: Optional[list[str]] = typer.Option(None, "--table", "-t", help="Tables to hash (default: tracked)"),
):
    """Print the content hash of the tracked tables."""
    with SyncEngine(db_path) as engine:
        typer.echo(engine.database_hash(tables or None))


if __name__ == "__main__":
    app()
