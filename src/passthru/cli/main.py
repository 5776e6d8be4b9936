"""
CLI for the passthrough proxy.

Commands:
    passthru serve - Run the proxy (and the metrics endpoint)
    passthru sweep - Run one eviction sweep against the storage directory
    passthru config - Show current configuration
    passthru version - Print version
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from passthru import __version__
from passthru.config import Settings
from passthru.exceptions import ConfigurationError

app = typer.Typer(
    name="passthru",
    help="passthru - caching passthrough proxy for resolver-backed downloads",
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)


def _load_settings(**overrides: Any) -> Settings:
    """Load settings, letting CLI options win over the environment.

    Exits with status 1 if the resulting configuration is invalid.
    """
    try:
        return Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        error_console.print("[red]Configuration is invalid or incomplete.[/red]")
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            error_console.print(f"  - {field}: {error['msg']}")
        error_console.print()
        error_console.print("Set environment variables or create a .env file.")
        raise typer.Exit(1)


@app.command()
def serve(
    endpoint: Annotated[
        Optional[str],
        typer.Option("--endpoint", "-e", help="Resolver service endpoint"),
    ] = None,
    host: Annotated[
        Optional[str], typer.Option("--host", help="Address to listen on")
    ] = None,
    port: Annotated[
        Optional[int], typer.Option("--port", "-p", help="Port to listen on")
    ] = None,
    metrics_port: Annotated[
        Optional[int],
        typer.Option("--metrics-port", help="Prometheus port (0 disables)"),
    ] = None,
    storage: Annotated[
        Optional[Path],
        typer.Option("--storage", "-s", help="Directory to store files"),
    ] = None,
) -> None:
    """Run the caching proxy."""
    import uvicorn

    from passthru.api.server import create_app
    from passthru.logging import setup_logging
    from passthru.metrics import start_metrics_server

    settings = _load_settings(
        RESOLVER_ENDPOINT=endpoint,
        HOST=host,
        PORT=port,
        METRICS_PORT=metrics_port,
        STORAGE_DIR=storage,
    )
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)

    try:
        settings.ensure_directories()
    except ConfigurationError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    start_metrics_server(settings.METRICS_PORT, host=settings.HOST)
    uvicorn.run(
        create_app(settings),
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def sweep(
    storage: Annotated[
        Optional[Path],
        typer.Option("--storage", "-s", help="Directory to sweep"),
    ] = None,
    retention_minutes: Annotated[
        Optional[float],
        typer.Option("--retention-minutes", "-r", help="Maximum artifact age"),
    ] = None,
) -> None:
    """Run one eviction sweep and print what it did."""
    from passthru.cache.store import ArtifactStore
    from passthru.cache.sweeper import EvictionSweeper

    settings = _load_settings(STORAGE_DIR=storage, RETENTION_MINUTES=retention_minutes)
    sweeper = EvictionSweeper(ArtifactStore(settings.STORAGE_DIR), settings.retention)
    report = asyncio.run(sweeper.sweep())

    table = Table(title="Sweep", show_header=True)
    table.add_column("Counter", style="cyan")
    table.add_column("Value", style="green")
    for key, value in report.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)

    if report.failed:
        raise typer.Exit(1)


@app.command()
def config() -> None:
    """Show current configuration."""
    console.print()
    console.print("[bold]passthru Configuration[/bold]")
    console.print()

    settings = _load_settings()

    table = Table(title="Settings", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in settings.redacted_display().items():
        display_value = str(value) if value is not None else "[dim]not set[/dim]"
        table.add_row(key, display_value)

    console.print(table)
    console.print()


@app.command()
def version() -> None:
    """Print the version number."""
    console.print(f"passthru version {__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
