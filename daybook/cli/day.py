#!/usr/bin/env python3
"""
Command-line client for daybook.

Usage:
    day add "text"              - Add a note
    day search "query"          - Search notes
    day show [YYYY-MM-DD]       - Show the notes of a day
    day status                  - Check daemon status
    day retry ATTACHMENT_ID     - Retry a failed capture
    day serve                   - Run the daemon in the foreground
    day export DAY DEST         - Export a day as markdown (offline)
"""

import asyncio
import os
import sys
from datetime import date
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.table import Table

console = Console()

DAEMON_URL = os.environ.get("DAYBOOK_URL", "http://127.0.0.1:3000")

STATUS_STYLES = {
    "pending": "yellow",
    "done": "green",
    "failed": "red",
}


def request(method: str, path: str, **kwargs) -> Optional[dict]:
    """Send a request to the daemon; prints the error and returns None on failure."""
    try:
        response = httpx.request(method, f"{DAEMON_URL}{path}", timeout=10.0, **kwargs)
    except httpx.ConnectError:
        console.print("[red]Cannot connect to daemon. Is it running?[/red]")
        console.print("Start with: [cyan]day serve[/cyan]")
        return None

    data = response.json() if response.headers.get("content-type", "").startswith("application/json") else {}
    if response.is_error:
        message = data.get("error", {}).get("message") if isinstance(data, dict) else None
        console.print(f"[red]Error {response.status_code}:[/red] {message or response.text}")
        return None
    return data


def format_attachments(note: dict) -> str:
    parts = []
    for a in note.get("attachments", []):
        style = STATUS_STYLES.get(a["status"], "white")
        detail = a.get("path") or a.get("error") or ""
        parts.append(f"[{style}]{a['status']}[/{style}] {a['url']} {detail}".rstrip())
    return "\n".join(parts)


def display_notes(notes: list, title: str) -> None:
    """Display notes in a table."""
    if not notes:
        console.print("[yellow]No notes found[/yellow]")
        return

    table = Table(title=title)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Time", style="magenta", no_wrap=True)
    table.add_column("Note", no_wrap=False)
    table.add_column("Attachments", no_wrap=False)

    for note in notes:
        table.add_row(
            note["id"],
            note["created_at"][11:19],
            note["body"],
            format_attachments(note)
        )

    console.print(table)


@click.group()
def cli():
    """Daybook - capture notes and keep offline copies of what they link to."""


@cli.command()
@click.argument("text", nargs=-1, required=True)
def add(text):
    """Add a note."""
    data = request("POST", "/notes", json={"text": " ".join(text)})
    if data is None:
        sys.exit(1)

    console.print(f"[green]✓[/green] Saved {data['id']}")
    for a in data.get("attachments", []):
        console.print(f"  capturing {a['kind']}: {a['url']} [dim]({a['id']})[/dim]")


@cli.command()
@click.argument("query", nargs=-1, required=True)
@click.option("--limit", "-l", default=20, help="Max results")
def search(query, limit: int):
    """Search notes (all terms must match)."""
    data = request("GET", "/search", params={"q": " ".join(query), "limit": limit})
    if data is None:
        sys.exit(1)
    display_notes(data["results"], f"Search: {data['query']}")


@cli.command()
@click.argument("day", required=False)
def show(day: Optional[str]):
    """Show the notes of a day (today by default)."""
    params = {"day": day} if day else {}
    data = request("GET", "/notes", params=params)
    if data is None:
        sys.exit(1)
    display_notes(data["notes"], data["day"])


@cli.command()
def status():
    """Show daemon status."""
    data = request("GET", "/status")
    if data is None:
        sys.exit(1)

    stats = data["stats"]
    table = Table(title=f"daybook {data['version']} ({data['status']}, up {data['uptime']})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")

    table.add_row("Notes", str(stats["notes"]))
    table.add_row("Days", str(stats["days"]))
    table.add_row("Indexed", str(stats["indexed"]))
    for name, count in stats["attachments"].items():
        table.add_row(f"Attachments {name}", str(count))
    table.add_row("Capture queue", str(stats["capture"]["queued"]))
    table.add_row("Memory (MB)", str(stats["memory_mb"]))

    console.print(table)


@cli.command()
@click.argument("attachment_id")
def retry(attachment_id: str):
    """Retry a failed capture."""
    data = request("POST", f"/attachments/{attachment_id}/retry")
    if data is None:
        sys.exit(1)
    console.print(f"[green]✓[/green] Requeued {data['url']}")


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(path_type=Path), help="Config file")
@click.option("--root", "-C", "notes_root", type=click.Path(path_type=Path), help="Notes root directory")
@click.option("--host", "-l", help="Listen address")
@click.option("--port", "-p", type=int, help="Listen port")
def serve(config_path: Optional[Path], notes_root: Optional[Path], host: Optional[str], port: Optional[int]):
    """Run the daemon in the foreground."""
    from daybook.daemon.main import run

    sys.exit(run(config_path, notes_root=notes_root, host=host, port=port))


@cli.command()
@click.argument("day")
@click.argument("dest", type=click.Path(path_type=Path))
@click.option("--root", "-C", "notes_root", type=click.Path(path_type=Path), required=True,
              help="Notes root directory")
def export(day: str, dest: Path, notes_root: Path):
    """Export a day's notes as markdown files (works without the daemon)."""
    from daybook.daemon.config import Config
    from daybook.daemon.export import export_day
    from daybook.daemon.store import NoteStore

    try:
        target_day = date.fromisoformat(day)
    except ValueError:
        raise click.BadParameter(f"not a date: {day}", param_hint="DAY")

    async def _export():
        config = Config(notes_root=notes_root)
        store = NoteStore(config.journal_dir, read_only=True)
        await store.open()
        try:
            return await export_day(store, target_day, dest)
        finally:
            await store.close()

    written = asyncio.run(_export())
    console.print(f"[green]✓[/green] Exported {len(written)} notes to {dest}")


if __name__ == "__main__":
    cli()
