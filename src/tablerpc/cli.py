"""
tablerpc command line.

Commands:
- create-migration: Diff the model files against the last migration and store the result
- migrate: Apply pending migrations
- migrations: Show stored migrations and whether they are applied
- generate: Write (and verify) a client stub module
- serve: Run the RPC server
- version: Show version information
"""

from __future__ import annotations

import importlib
import platform
import sys
from collections.abc import Iterable
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from tablerpc._version import get_version
from tablerpc.config import DEFAULT_RUN_MODE, ServerConfig, config_path, load_config
from tablerpc.errors import TableRpcError

app = typer.Typer(
    help="tablerpc - declare models once, get migrations, data access, RPC and client stubs",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool) -> None:
    if value:
        console.print(f"tablerpc [bold]{get_version()}[/bold]")
        console.print(f"Python {platform.python_version()} ({platform.python_implementation()})")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and environment information",
    ),
) -> None:
    """tablerpc CLI main callback for global options."""


# =============================================================================
# Helpers
# =============================================================================


def _load_config(config: Path | None, run_mode: str) -> ServerConfig:
    """Explicit --config, else config/<run_mode>.yaml if present, else defaults."""
    try:
        if config is not None:
            return load_config(config)
        default_path = config_path(run_mode)
        return load_config(default_path if default_path.exists() else None)
    except TableRpcError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1) from e


def _setup_logging(config: ServerConfig) -> None:
    from tablerpc.runtime.logging import setup_logging

    setup_logging(config.log_dir, config.log_level)


def _load_endpoints(target: str) -> list[Any]:
    """
    Import endpoints from ``module:attribute``.

    The attribute is an Endpoint subclass or a list of them.
    """
    from tablerpc.runtime.dispatcher import Endpoint

    module_name, sep, attribute = target.partition(":")
    if not sep or not module_name or not attribute:
        console.print(f"[red]--endpoints must look like module:attribute, got '{target}'[/red]")
        raise typer.Exit(1)

    if str(Path.cwd()) not in sys.path:
        sys.path.insert(0, str(Path.cwd()))
    try:
        value = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        console.print(f"[red]Cannot load endpoints from '{target}': {e}[/red]")
        raise typer.Exit(1) from e

    items: Iterable[Any] = value if isinstance(value, (list, tuple)) else [value]
    endpoints = list(items)
    for item in endpoints:
        is_class = isinstance(item, type) and issubclass(item, Endpoint)
        if not (is_class or isinstance(item, Endpoint)):
            console.print(f"[red]'{target}' contains {item!r}, which is not an Endpoint[/red]")
            raise typer.Exit(1)
    return endpoints


def _fail(message: str, error: Exception) -> NoReturn:
    console.print(f"[red]{message}: {error}[/red]")
    raise typer.Exit(1) from error


_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Config file (default: config/<mode>.yaml)"
)
_MODE_OPTION = typer.Option(
    DEFAULT_RUN_MODE, "--mode", "-m", help="Run mode selecting the config file"
)
_ENDPOINTS_OPTION = typer.Option(
    ..., "--endpoints", "-e", help="Endpoints to serve, as module:attribute"
)


# =============================================================================
# Migration Commands
# =============================================================================


@app.command(name="create-migration")
def create_migration_command(
    name: str = typer.Option("migration", "--name", "-n", help="Short label for the migration"),
    force: bool = typer.Option(False, "--force", help="Write a migration even with no changes"),
    config: Path | None = _CONFIG_OPTION,
    mode: str = _MODE_OPTION,
) -> None:
    """Diff model files against the last migration and store a new script."""
    from tablerpc.runtime.migration_store import MigrationStore, create_migration
    from tablerpc.specs.loader import load_registry

    settings = _load_config(config, mode)
    _setup_logging(settings)
    try:
        registry = load_registry(settings.models_dir)
        script = create_migration(registry, MigrationStore(settings.migrations_dir), name, force)
    except TableRpcError as e:
        _fail("Cannot create migration", e)

    if script is None:
        console.print("[yellow]No schema changes detected[/yellow]")
        return
    console.print(f"[green]Created migration {script.sequence:04d} ({script.name})[/green]")
    for step in script.steps:
        console.print(f"  • {step.describe()}")


@app.command(name="migrate")
def migrate_command(
    config: Path | None = _CONFIG_OPTION,
    mode: str = _MODE_OPTION,
) -> None:
    """Apply pending migrations to the configured database."""
    from tablerpc.runtime.migration_store import MigrationStore
    from tablerpc.runtime.migrations import MigrationRunner
    from tablerpc.runtime.session import Database

    settings = _load_config(config, mode)
    _setup_logging(settings)
    database = Database(settings.database.path, busy_timeout_ms=settings.database.busy_timeout_ms)
    try:
        applied = MigrationRunner(database, MigrationStore(settings.migrations_dir)).apply_pending()
    except TableRpcError as e:
        _fail("Migration failed", e)
    finally:
        database.close()

    if not applied:
        console.print("[green]Database is up to date[/green]")
        return
    for script in applied:
        console.print(f"[green]Applied {script.sequence:04d} ({script.name})[/green]")


@app.command(name="migrations")
def migrations_command(
    config: Path | None = _CONFIG_OPTION,
    mode: str = _MODE_OPTION,
) -> None:
    """List stored migrations and their status."""
    from tablerpc.runtime.migration_store import MigrationStore
    from tablerpc.runtime.migrations import MigrationRunner
    from tablerpc.runtime.session import Database

    settings = _load_config(config, mode)
    database = Database(settings.database.path, busy_timeout_ms=settings.database.busy_timeout_ms)
    try:
        runner = MigrationRunner(database, MigrationStore(settings.migrations_dir))
        scripts = runner.store.list()
        applied = {m.sequence: m for m in runner.history()}
    except TableRpcError as e:
        _fail("Cannot read migrations", e)
    finally:
        database.close()

    if not scripts:
        console.print("[yellow]No migrations[/yellow]")
        return

    table = Table(title="Migrations")
    table.add_column("Seq", style="dim")
    table.add_column("Name")
    table.add_column("Steps", justify="right")
    table.add_column("Status")
    for script in scripts:
        record = applied.get(script.sequence)
        status = (
            f"[green]applied {record.applied_at:%Y-%m-%d %H:%M}[/green]"
            if record
            else "[yellow]pending[/yellow]"
        )
        table.add_row(f"{script.sequence:04d}", script.name, str(len(script.steps)), status)
    console.print(table)


# =============================================================================
# Client and Server Commands
# =============================================================================


@app.command(name="generate")
def generate_command(
    endpoints: str = _ENDPOINTS_OPTION,
    output: Path = typer.Option(Path("client.py"), "--output", "-o", help="Where to write the stubs"),
    config: Path | None = _CONFIG_OPTION,
    mode: str = _MODE_OPTION,
) -> None:
    """Generate a client stub module and verify it against the endpoints."""
    from tablerpc.client.stub_generator import StubGenerator, load_generated_module, verify_stubs
    from tablerpc.runtime.dispatcher import EndpointDispatcher
    from tablerpc.runtime.repository import DataAccessLayer
    from tablerpc.runtime.session import Database, SessionFactory
    from tablerpc.specs.loader import load_registry

    settings = _load_config(config, mode)
    endpoint_sources = _load_endpoints(endpoints)
    database = Database(":memory:")
    try:
        registry = load_registry(settings.models_dir)
        db = DataAccessLayer(registry)
        dispatcher = EndpointDispatcher(SessionFactory(database))
        for source in endpoint_sources:
            dispatcher.register(source if not isinstance(source, type) else source(db))
        stub_source = StubGenerator(registry, dispatcher).render()
        verify_stubs(load_generated_module(stub_source, output.stem), dispatcher)
    except TableRpcError as e:
        _fail("Cannot generate client", e)
    finally:
        database.close()

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(stub_source, encoding="utf-8")
    console.print(
        f"[green]Wrote {output} ({len(dispatcher.endpoints())} endpoint(s), "
        f"{len(dispatcher.methods())} method(s))[/green]"
    )


@app.command(name="serve")
def serve_command(
    endpoints: str = _ENDPOINTS_OPTION,
    apply_migrations: bool = typer.Option(
        False, "--apply-migrations", help="Apply pending migrations before serving"
    ),
    host: str | None = typer.Option(None, "--host", help="Override the configured host"),
    port: int | None = typer.Option(None, "--port", "-p", help="Override the configured port"),
    config: Path | None = _CONFIG_OPTION,
    mode: str = _MODE_OPTION,
) -> None:
    """Run the RPC server."""
    from tablerpc.runtime.server import run_server
    from tablerpc.specs.loader import load_registry

    settings = _load_config(config, mode)
    if host is not None:
        settings.api_server.host = host
    if port is not None:
        settings.api_server.port = port
    _setup_logging(settings)
    endpoint_sources = _load_endpoints(endpoints)

    try:
        registry = load_registry(settings.models_dir)
    except TableRpcError as e:
        _fail("Cannot load models", e)

    console.print(
        f"[bold]tablerpc[/bold] serving on "
        f"http://{settings.api_server.host}:{settings.api_server.port}/rpc"
    )
    run_server(settings, registry, endpoint_sources, apply_migrations=apply_migrations)


@app.command(name="version")
def version_command() -> None:
    """Show version information."""
    version_callback(True)


def main() -> None:
    app(standalone_mode=True)


if __name__ == "__main__":
    main()
