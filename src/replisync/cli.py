"""Command-line interface for replisync."""

import importlib
import json
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from replisync.config import ReplicationConfig
from replisync.cycle import CycleResult, ReplicationCycle
from replisync.exceptions import ConfigurationError, CycleError
from replisync.logging_utils import configure_logging

app = typer.Typer(
    name="replisync",
    help="Replicate database rows from one source to many targets",
    add_completion=False,
)

console = Console()


def import_entity(path: str) -> type:
    """Import a mapped class given as ``package.module:ClassName``."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Entity path must look like 'module:Class', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import module {module_name}: {e}") from e
    obj = module
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as e:
            raise ConfigurationError(f"Module {module_name} has no attribute {attr}") from e
    if not isinstance(obj, type):
        raise ConfigurationError(f"{path} is not a class")
    return obj


def _load_config(config_file: Optional[Path]) -> ReplicationConfig:
    if config_file is None:
        return ReplicationConfig.from_env()
    return ReplicationConfig.from_file(config_file)


def print_summary(result: CycleResult, out: Console) -> None:
    """Print a cycle result as a table of per-target counters."""
    out.print()
    out.print("[bold]Replication Cycle[/bold]")
    out.print("━" * 52)

    if result.skipped:
        out.print("[yellow]Skipped: another cycle is in progress[/yellow]")
        out.print()
        return

    for entity, count in result.loaded.items():
        out.print(f"  {entity}: {count:,} row(s) loaded")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Target", style="cyan")
    table.add_column("Synced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Statements", justify="right")
    table.add_column("Row fallbacks", justify="right")

    for index, metrics in sorted(result.metrics.targets.items()):
        failed_style = "red" if metrics.rows_failed else "dim"
        table.add_row(
            str(index),
            f"{metrics.rows_synced:,}",
            f"[{failed_style}]{metrics.rows_failed:,}[/{failed_style}]",
            f"{metrics.rows_skipped:,}",
            f"{metrics.statements_executed:,}",
            f"{metrics.row_fallbacks:,}",
        )

    out.print(table)
    if result.succeeded:
        out.print("[green]✓ No errors[/green]")
    else:
        out.print(f"[red]✗ {result.error_count} error(s)[/red]")
        for entity, errors in result.errors.items():
            for error in errors:
                out.print(f"  [red]{entity}[/red]: {error}")
    out.print()


@app.command(name="run")
def run_cmd(
    config_file: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Configuration file (YAML, TOML or JSON). Defaults to REPLISYNC_* variables",
        ),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", "-l", help="Override the configured log level"),
    ] = None,
    format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format (console, json)"),
    ] = "console",
) -> None:
    """Run one replication cycle."""
    try:
        config = _load_config(config_file)
        configure_logging(log_level or config.log_level)
        if not config.entities:
            raise ConfigurationError("No entities configured")
        entity_types = [import_entity(path) for path in config.entities]
        cycle = ReplicationCycle.from_config(config)
        try:
            for entity_type in entity_types:
                cycle.register(entity_type)
        except ConfigurationError:
            cycle.close()
            raise
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    failed = False
    try:
        result = cycle.run_sync()
    except CycleError as e:
        result = e.result
        failed = True
    finally:
        cycle.close()

    if format == "json":
        typer.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        print_summary(result, console)

    if failed:
        raise typer.Exit(1)


@app.command(name="check-config")
def check_config_cmd(
    config_file: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Configuration file (YAML, TOML or JSON). Defaults to REPLISYNC_* variables",
        ),
    ] = None,
) -> None:
    """Validate configuration and print it with passwords masked."""
    try:
        config = _load_config(config_file)
        for path in config.entities:
            import_entity(path)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    data = config.to_dict()
    typer.echo(f"Source: {data['source']}")
    for index, url in enumerate(data["targets"]):
        typer.echo(f"Target {index}: {url}")
    typer.echo(f"Entities: {', '.join(data['entities']) or '(none)'}")
    typer.echo(f"Max parameters: {data['max_parameters']}")
    typer.echo(f"Error threshold: {data['error_threshold']}")
    typer.echo("Configuration OK")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
