"""Command-line maintenance utilities for the identity vault store."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from .config import get_settings
from .connectivity import ManualConnectivity
from .dispatch import DispatchRegistry
from .errors import ImportFormatError
from .logging_setup import configure_logging
from .offline_queue import OfflineMutationQueue
from .persistence import PersistenceService
from .storage import StorageEngine

T = TypeVar("T")

console = Console()

app = typer.Typer(help="Maintenance utilities for the identity vault local store.", no_args_is_help=True)
queue_app = typer.Typer(help="Inspect and manage the offline mutation queue")
app.add_typer(queue_app, name="queue")


def _run_async(work: Callable[[StorageEngine], Awaitable[T]]) -> T:
    """Run ``work`` against a fresh engine and always release it afterwards.

    Disposing the engine terminates aiosqlite's background thread so the
    interpreter can exit promptly.
    """
    settings = get_settings()
    configure_logging(settings)

    async def _main() -> T:
        engine = StorageEngine(settings)
        try:
            return await work(engine)
        finally:
            await engine.close()

    return asyncio.run(_main())


def _format_ms(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def _offline_queue(engine: StorageEngine) -> OfflineMutationQueue:
    # The CLI never drains: stay offline and route nowhere.
    return OfflineMutationQueue(engine, ManualConnectivity(online=False), DispatchRegistry())


@app.command()
def migrate() -> None:
    """Open the store, creating its schema, and report the active backend."""

    async def _open(engine: StorageEngine) -> tuple[str, bool]:
        await engine.init()
        return engine.backend_name or "unknown", engine.is_fallback

    with console.status("Opening storage..."):
        backend, is_fallback = _run_async(_open)
    if is_fallback:
        console.print(f"[yellow]Primary store unavailable; using {backend} backend.[/]")
    else:
        console.print(f"[green]✓ Storage ready ({backend} backend).[/]")


@app.command()
def stats(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Show item counts and estimated size per partition."""

    async def _collect(engine: StorageEngine) -> dict[str, Any]:
        return await PersistenceService(engine).get_storage_stats()

    payload = _run_async(_collect)
    if json_output:
        json.dump(payload, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return

    table = Table(title=f"Storage ({payload['backend']})", show_lines=False)
    table.add_column("Partition")
    table.add_column("Items", justify="right")
    for partition, count in payload["per_partition"].items():
        table.add_row(partition, str(count))
    table.add_row("[bold]total[/]", f"[bold]{payload['total_items']}[/]")
    console.print(table)
    console.print(f"Estimated size: {payload['storage_size']} bytes")
    console.print(f"Last modified: {_format_ms(payload['last_modified'])}")


@app.command()
def cleanup() -> None:
    """Delete every expired item."""

    async def _purge(engine: StorageEngine) -> int:
        return await PersistenceService(engine).cleanup_expired_data()

    removed = _run_async(_purge)
    console.print(f"[green]Removed {removed} expired item(s).[/]")


@app.command("export")
def export_data(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the export to this file instead of stdout."),
) -> None:
    """Export credentials, handshake requests and profile data as JSON."""

    async def _export(engine: StorageEngine) -> str:
        return await PersistenceService(engine).export_data()

    document = _run_async(_export)
    if output is None:
        sys.stdout.write(document)
        sys.stdout.write("\n")
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(document, encoding="utf-8")
    console.print(f"[green]Exported to {output}[/]")


@app.command("import")
def import_data(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="Export document to load."),
) -> None:
    """Load a previously exported JSON document."""
    document = path.read_text(encoding="utf-8")

    async def _import(engine: StorageEngine) -> dict[str, int]:
        return await PersistenceService(engine).import_data(document)

    try:
        counts = _run_async(_import)
    except ImportFormatError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print(
        f"[green]Imported {counts['credentials']} credential(s), "
        f"{counts['handshake_requests']} handshake request(s), "
        f"{counts['profile_data']} profile entr(ies).[/]"
    )


@queue_app.command("list")
def queue_list() -> None:
    """List pending and failed queue items."""

    async def _collect(engine: StorageEngine) -> tuple[list[Any], int]:
        queue = _offline_queue(engine)
        await queue.start()
        try:
            return list(queue.items), queue.max_retries
        finally:
            await queue.stop()

    items, max_retries = _run_async(_collect)
    if not items:
        console.print("[dim]Queue is empty.[/]")
        return
    table = Table(title="Offline queue")
    table.add_column("ID")
    table.add_column("Type")
    table.add_column("Resource")
    table.add_column("Queued")
    table.add_column("Retries", justify="right")
    table.add_column("Last error")
    for item in items:
        retries = f"{item.retry_count}/{max_retries}"
        if item.is_failed(max_retries):
            retries = f"[red]{retries}[/]"
        table.add_row(
            item.id,
            item.type.value,
            item.resource.value,
            _format_ms(item.timestamp),
            retries,
            item.last_error or "",
        )
    console.print(table)


@queue_app.command("status")
def queue_status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON for machine parsing."),
) -> None:
    """Summarize queue health."""

    async def _collect(engine: StorageEngine) -> dict[str, Any]:
        queue = _offline_queue(engine)
        await queue.start()
        try:
            return queue.get_queue_stats()
        finally:
            await queue.stop()

    summary = _run_async(_collect)
    if json_output:
        json.dump(summary, sys.stdout, indent=2)
        sys.stdout.write("\n")
        return
    console.print(f"Pending: {summary['total']}  Failed: {summary['failed']}")
    console.print(f"Last sync: {_format_ms(summary['last_sync'])}")
    for resource, count in sorted(summary["by_resource"].items()):
        console.print(f"  {resource}: {count}")


@queue_app.command("clear")
def queue_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Drop every queued mutation."""
    if not yes and not typer.confirm("Discard all queued mutations?"):
        raise typer.Exit(code=1)

    async def _clear(engine: StorageEngine) -> None:
        queue = _offline_queue(engine)
        await queue.start()
        try:
            await queue.clear_queue()
        finally:
            await queue.stop()

    _run_async(_clear)
    console.print("[green]Queue cleared.[/]")
