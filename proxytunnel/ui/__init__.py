"""
proxytunnel Terminal UI
=======================
Rich terminal output for the diagnostic CLI.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from proxytunnel import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

PROXYTUNNEL_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "dim": "dim white",
})

console = Console(theme=PROXYTUNNEL_THEME)

BANNER_SMALL = f"[title]proxytunnel[/] [dim]v{__version__}[/]"


def show_banner() -> None:
    console.print(BANNER_SMALL)


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through rich; DEBUG when verbose."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose, rich_tracebacks=True)],
        force=True,
    )


# ── Status & Info ────────────────────────────────────────────────────────────

def show_config_status(config: Dict[str, Any]) -> None:
    """Display configuration status."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Proxy", config.get("proxy") or "N/A")
    table.add_row("Username", config.get("username") or "❌ Not set")
    table.add_row("Password", "✅ Set" if config.get("password") else "❌ Not set")
    table.add_row("Domain", config.get("domain") or "—")
    table.add_row("Schemes", ", ".join(config.get("schemes", [])))
    table.add_row("Connect timeout", f"{config.get('connect_timeout')}s")
    table.add_row("Request timeout", f"{config.get('request_timeout')}s")
    table.add_row("Platform", config.get("platform", ""))

    console.print(Panel(table, title="[title]Configuration[/]", border_style="green"))


def show_schemes(schemes: Iterable[str], enabled: Iterable[str]) -> None:
    """Display supported authentication schemes in preference order."""
    enabled_set = {s.lower() for s in enabled}
    table = Table(title="Proxy Authentication Schemes")
    table.add_column("#", style="dim")
    table.add_column("Scheme", style="bold")
    table.add_column("Status")

    for i, name in enumerate(schemes, 1):
        status = "[success]✅ Enabled[/]" if name.lower() in enabled_set else "[dim]❌ Disabled[/]"
        table.add_row(str(i), name, status)

    console.print(table)


def show_tunnel_result(
    proxy: str,
    target: str,
    status_line: str,
    scheme: Optional[str],
    round_trips: int,
) -> None:
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Proxy", proxy)
    table.add_row("Target", target)
    table.add_row("Response", status_line)
    table.add_row("Auth scheme", scheme or "none")
    table.add_row("Round trips", str(round_trips))
    console.print(Panel(table, title="[title]Tunnel established[/]", border_style="green"))


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")
