"""
Encore CLI - Command line interface for managing recorded mocks.

Usage:
    encore list                    - List recorded mocks
    encore show <mock_id>          - Show a mock's request and response
    encore export <record_id>      - Export a recording to JSON
    encore import <file>           - Import a recording from JSON
    encore delete <record_id>      - Delete a recording
    encore describe <literal>      - Show the type descriptor of a value
    encore resolve <descriptor>    - Show the type a descriptor resolves to
"""

from __future__ import annotations

import ast
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from encore import __version__, typedesc
from encore.config import get_config
from encore.logs import configure_logging
from encore.storage import SqliteMockStore

console = Console()


def _storage() -> SqliteMockStore:
    config = get_config()
    config.ensure_storage_dir()
    return SqliteMockStore(config.get_db_path())


def _preview(text: str | None, limit: int = 60) -> str:
    if text is None:
        return "-"
    return text[:limit] + "..." if len(text) > limit else text


@click.group()
@click.version_option(version=__version__, prog_name="encore")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Encore - Record/Replay Test Doubles for Python Services"""
    config = get_config()
    debug = debug or config.enable_debug
    configure_logging(json_output=config.log_json, level="DEBUG" if debug else "WARNING")


@main.command(name="list")
@click.option("--limit", "-n", default=20, help="Number of mocks to show")
@click.option("--operation", "-o", type=str, help="Filter by operation (Type.method)")
@click.option("--record-id", "-r", type=str, help="Filter by recording")
def list_mockers(limit: int, operation: str | None, record_id: str | None) -> None:
    """List recorded mocks."""
    storage = _storage()
    mockers = storage.list_mockers(limit=limit, operation=operation, record_id=record_id)

    if not mockers:
        console.print("[dim]No mocks found.[/dim]")
        console.print(f"[dim]Storage location: {storage.db_path}[/dim]")
        return

    table = Table(
        title="Recorded Mocks",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold cyan",
    )

    table.add_column("Mock ID", style="green")
    table.add_column("Record ID", style="white")
    table.add_column("Operation", style="yellow")
    table.add_column("Request", style="dim")
    table.add_column("Response Type")
    table.add_column("Created", style="dim")

    for mocker in mockers:
        created = datetime.fromtimestamp(mocker.creation_time / 1000, tz=timezone.utc)
        table.add_row(
            mocker.id,
            mocker.record_id or "-",
            mocker.operation_name,
            escape(_preview(mocker.target_request.body, 40)),
            mocker.target_response.type or "-",
            created.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)
    console.print(f"\n[dim]Showing {len(mockers)} of {limit} max mocks[/dim]")


@main.command()
@click.argument("mock_id")
def show(mock_id: str) -> None:
    """Show a recorded mock."""
    mocker = _storage().get_mocker(mock_id)

    if mocker is None:
        console.print(f"[red]Mock not found: {mock_id}[/red]")
        sys.exit(1)

    header = f"""[bold cyan]Mock:[/bold cyan] {mocker.id}
[bold]Operation:[/bold] {mocker.operation_name}
[bold]Category:[/bold] {mocker.category.value}
[bold]Record ID:[/bold] {mocker.record_id or '-'}
[bold]Replay ID:[/bold] {mocker.replay_id or '-'}"""
    console.print(Panel(header, title="Mock Overview", border_style="cyan"))

    request = escape(mocker.target_request.body) if mocker.target_request.body else "[dim]no arguments[/dim]"
    console.print(Panel(request, title="Request", border_style="yellow"))

    response = mocker.target_response
    attributes = ", ".join(f"{k}={v}" for k, v in response.attributes.items()) or "none"
    console.print(
        Panel(
            f"[bold]Type:[/bold] {response.type or '-'}\n"
            f"[bold]Attributes:[/bold] {attributes}\n\n"
            f"{escape(response.body) if response.body else '[dim]null[/dim]'}",
            title="Response",
            border_style="green",
        )
    )


@main.command()
@click.argument("record_id")
@click.argument("output", type=click.Path(), required=False)
def export(record_id: str, output: str | None) -> None:
    """Export a recording's mocks to a JSON file."""
    output_path = Path(output) if output else Path(f"{record_id}.json")
    count = _storage().export_record(record_id, output_path)

    if count == 0:
        console.print(f"[red]Recording not found: {record_id}[/red]")
        sys.exit(1)

    console.print(f"[green]Exported {count} mocks to {output_path}[/green]")
    console.print(f"[dim]Size: {output_path.stat().st_size / 1024:.1f} KB[/dim]")


@main.command(name="import")
@click.argument("input_file", type=click.Path(exists=True))
def import_record(input_file: str) -> None:
    """Import mocks from a JSON file."""
    mockers = _storage().import_record(Path(input_file))

    if mockers is None:
        console.print(f"[red]Failed to import mocks from {input_file}[/red]")
        sys.exit(1)

    console.print(f"[green]Imported {len(mockers)} mocks[/green]")


@main.command()
@click.argument("record_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation")
def delete(record_id: str, force: bool) -> None:
    """Delete every mock of a recording."""
    storage = _storage()

    if not force:
        if not click.confirm(f"Delete recording {record_id}?"):
            return

    removed = storage.delete_record(record_id)
    if removed:
        console.print(f"[green]Deleted {removed} mocks of {record_id}[/green]")
    else:
        console.print(f"[red]Recording not found: {record_id}[/red]")
        sys.exit(1)


@main.command()
@click.argument("expression")
def describe(expression: str) -> None:
    """Show the type descriptor of a Python literal, e.g. "[[], ['a']]"."""
    try:
        value = ast.literal_eval(expression)
    except (ValueError, SyntaxError) as exc:
        console.print(f"[red]Not a Python literal: {exc}[/red]")
        sys.exit(1)

    console.print(typedesc.describe(value) or "None", markup=False)


@main.command()
@click.argument("descriptor")
def resolve(descriptor: str) -> None:
    """Show the type a descriptor resolves to."""
    handle = typedesc.resolve(descriptor)

    if handle is None:
        console.print(f"[red]Cannot resolve: {descriptor}[/red]")
        sys.exit(1)

    console.print(repr(handle), markup=False)


@main.command()
def info() -> None:
    """Show Encore configuration and status."""
    config = get_config()

    console.print(Panel("[bold]Encore Configuration[/bold]", border_style="cyan"))

    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Storage Directory", str(config.storage_dir))
    table.add_row("Database", str(config.get_db_path()))
    table.add_row("Recording Enabled", str(config.enabled))
    table.add_row("Debug", str(config.enable_debug))
    table.add_row("Result Size Limit", str(config.result_size_limit))
    table.add_row("Dynamic Classes", str(len(config.dynamic_classes)))
    table.add_row("Excluded Operations", ", ".join(sorted(config.exclude_operations)) or "none")

    console.print(table)

    db_path = config.get_db_path()
    if db_path.exists():
        mockers = SqliteMockStore(db_path).list_mockers(limit=-1)
        console.print(f"\n[dim]Total mocks stored: {len(mockers)}[/dim]")
    else:
        console.print("\n[dim]No mocks recorded yet.[/dim]")


if __name__ == "__main__":
    main()
