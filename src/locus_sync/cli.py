"""Locus sync CLI - inspect and drive the offline sync queue."""

import asyncio
import json
from pathlib import Path

import typer

from locus_sync import __version__
from locus_sync.config import Settings, get_settings
from locus_sync.engine import SyncManager
from locus_sync.logging import setup_logging
from locus_sync.sync import UploadQueue

app = typer.Typer(
    name="locus-sync",
    help="Locus sync engine - inspect and flush the offline upload queue.",
    no_args_is_help=True,
)

_config_path: Path | None = None


def _settings() -> Settings:
    if _config_path is not None:
        return Settings.from_yaml(_config_path)
    return get_settings()


def _open_queue(settings: Settings) -> UploadQueue:
    return UploadQueue(
        settings.queue_db_path,
        dead_letter_capacity=settings.dead_letter_capacity,
        max_days=settings.queue_max_days,
        max_records=settings.queue_max_records,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"locus-sync {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML settings file (defaults to LOCUS_* environment variables).",
    ),
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Locus sync engine - offline-first upload queue."""
    global _config_path
    _config_path = config


@app.command()
def status(
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """Show queue and dead-letter statistics."""
    settings = _settings()
    queue = _open_queue(settings)
    stats = queue.get_stats()
    queue.close()

    status_data = {
        "url": settings.url,
        "batch_sync": settings.batch_sync,
        "max_retry": settings.max_retry,
        **stats,
    }

    if output_json:
        typer.echo(json.dumps(status_data))
        return

    typer.echo("")
    typer.echo("Locus Sync Status")
    typer.echo("-----------------")
    typer.echo(f"Endpoint: {settings.url or 'not configured'}")
    typer.echo(f"Mode: {'batch' if settings.batch_sync else 'single'}")
    typer.echo(f"Queue: {stats['pending']} pending, {stats['waiting']} waiting to retry")
    if stats["dead_letter"] > 0:
        typer.echo(f"Dead letter: {stats['dead_letter']} entries")
    typer.echo("")


@app.command(name="queue")
def list_queue(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum items to show"),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List queued items in delivery order."""
    queue = _open_queue(_settings())
    items = queue.get_queue(limit)
    queue.close()

    if output_json:
        typer.echo(json.dumps([item.to_dict() for item in items], indent=2))
        return

    if not items:
        typer.echo("Queue is empty")
        return

    for item in items:
        retry = f" retry={item.retry_count}" if item.retry_count else ""
        typer.echo(f"{item.created_at.isoformat()}  {item.id}  {item.type or '-'}{retry}")


@app.command(name="dead-letter")
def list_dead_letter(
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries to show"),
    purge: bool = typer.Option(False, "--purge", help="Delete all entries after listing"),
    output_json: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output in JSON format",
    ),
) -> None:
    """List payloads that exhausted their retry budget."""
    queue = _open_queue(_settings())
    entries = queue.read_dead_letter(limit)
    if purge:
        queue.clear_dead_letter()
    queue.close()

    if output_json:
        typer.echo(
            json.dumps([{"id": e.id, "type": e.type, **e.to_event_data()} for e in entries], indent=2)
        )
        return

    if not entries:
        typer.echo("Dead-letter log is empty")
        return

    for entry in entries:
        typer.echo(f"{entry.timestamp.isoformat()}  {entry.id}  {entry.reason} attempts={entry.attempts}")


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Drop every queued item. The dead-letter log is kept."""
    if not yes:
        typer.confirm("Delete all queued items?", abort=True)

    queue = _open_queue(_settings())
    removed = queue.clear()
    queue.close()
    typer.echo(f"Removed {removed} items")


async def _run_sync(settings: Settings, limit: int | None, timeout: float) -> tuple[int, int]:
    manager = SyncManager(settings)
    try:
        dispatched = await manager.sync_queue(limit)
        await manager.wait_idle(timeout)
        remaining = manager.queue.count()
    finally:
        await manager.destroy()
    return dispatched, remaining


@app.command()
def sync(
    limit: int | None = typer.Option(None, "--limit", "-n", help="Maximum items to send"),
    timeout: float = typer.Option(120.0, "--timeout", help="Seconds to wait for retries to settle"),
) -> None:
    """Flush eligible items to the configured endpoint."""
    settings = _settings()
    setup_logging(level=settings.log_level)

    if not settings.url:
        typer.echo("No endpoint configured (set LOCUS_URL or url in the config file)")
        raise typer.Exit(1)

    try:
        dispatched, remaining = asyncio.run(_run_sync(settings, limit, timeout))
    except asyncio.TimeoutError:
        typer.echo(f"Sync did not settle within {timeout}s")
        raise typer.Exit(1)

    typer.echo(f"Dispatched {dispatched} items, {remaining} remain queued")


if __name__ == "__main__":
    app()
