"""
Output helpers for the command line front end.
"""

import json
from typing import Any, Iterable, Optional

from rich.console import Console
from rich.table import Table

from vision_grabber.app.core.History.history_manager import HistoryItem

# Global console instance
console = Console()


def print_error(message: str):
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str):
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_info(message: str):
    console.print(f"[bold blue]Info:[/bold blue] {message}")


def print_json(data: Any, title: Optional[str] = None):
    if title:
        console.print(f"\n[bold]{title}[/bold]")
    console.print_json(json.dumps(data, default=str))


def print_history(items: Iterable[HistoryItem], limit: int = 20):
    """Render history entries as a table, newest first."""
    table = Table(title="History", show_lines=False)
    table.add_column("When", style="cyan", no_wrap=True)
    table.add_column("Backend", style="magenta")
    table.add_column("Prompt", overflow="ellipsis", max_width=30)
    table.add_column("Result", overflow="fold")
    table.add_column("ID", style="dim", no_wrap=True)
    for item in list(items)[:limit]:
        table.add_row(
            item.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            item.model_name,
            item.prompt,
            item.content,
            item.id[:8],
        )
    console.print(table)
