"""Rich console shared by the CLI commands, plus one-line status printers."""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from kbforge.core.exceptions import KBForgeError

_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def success(message: str) -> None:
    get_console().print(f"[green]✓[/green] {message}")


def warning(message: str) -> None:
    get_console().print(f"[yellow]![/yellow] {message}")


def tip(message: str) -> None:
    get_console().print(f"  [dim]Next: {message}[/dim]")


def render_error(error: Exception, operation: Optional[str] = None) -> None:
    """
    Print an error panel.

    KBForgeError subclasses show their code, cause and fix suggestions;
    other exceptions show the type name only.
    """
    body = Text()
    if isinstance(error, KBForgeError):
        body.append(f"{error.user_message}\n\n", style="bold")
        body.append("Why: ", style="dim")
        body.append(f"{error.why_it_happened}\n")
        for suggestion in error.how_to_fix:
            body.append(f"  • {suggestion}\n")
        title = f"Error {error.error_code}"
    else:
        body.append(f"{type(error).__name__}: {error}")
        title = "Error"

    if operation:
        title = f"{title} during {operation}"
    get_console().print(Panel(body, title=title, border_style="red", expand=False))
