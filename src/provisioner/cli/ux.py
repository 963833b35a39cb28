"""
Console output helpers for the provisioner CLI.

Respects NO_COLOR / FORCE_COLOR and degrades to plain text when stdout is not
a terminal (CI, pipes).
"""

from __future__ import annotations

import os
import sys
from typing import Any, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

PROVISIONER_THEME = Theme(
    {
        "info": "#88C0D0",
        "success": "#A3BE8C",
        "warning": "#EBCB8B",
        "error": "#BF616A bold",
        "muted": "#D8DEE9",
    }
)

# resource status -> theme style
STATUS_STYLES = {
    "active": "success",
    "deprovisioned": "muted",
    "failed": "error",
    "suspended": "warning",
    "closed": "success",
    "half_open": "warning",
    "open": "error",
}


def _should_use_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return sys.stdout.isatty()


console = Console(
    theme=PROVISIONER_THEME,
    force_terminal=os.environ.get("FORCE_COLOR") is not None,
    no_color=not _should_use_color(),
)


def success(message: str) -> None:
    console.print(f"[success]✓ {message}[/success]")


def info(message: str) -> None:
    console.print(f"[info]ℹ {message}[/info]")


def header(title: str) -> None:
    console.print()
    console.print(Panel(f"[bold]{title}[/bold]", border_style="cyan"))


def styled(value: Any) -> str:
    text = str(value)
    style = STATUS_STYLES.get(text)
    return f"[{style}]{text}[/{style}]" if style else text


def print_table(title: str, columns: list[str], rows: Iterable[list[Any]]) -> None:
    """Print a formatted table; status-like cells are colored."""
    table = Table(title=title)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*(styled(cell) for cell in row))
    console.print(table)
