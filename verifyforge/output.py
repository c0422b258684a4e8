"""
Rich Output Utilities
=====================

Terminal output for Verify Forge using the Rich library: a themed console,
status messages, tier/loop status lines and logging integration.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.status import Status
from rich.table import Table
from rich.theme import Theme


# =============================================================================
# Color Scheme & Theme
# =============================================================================

@dataclass(frozen=True)
class ForgeColors:
    """Verify Forge palette using hex for truecolor terminal support."""
    ink: str = "#E6E6E6"       # primary text
    dim: str = "#9AA4B2"       # muted text
    forge: str = "#F59E0B"     # warm accent
    arc: str = "#22D3EE"       # cool accent
    steel: str = "#94A3B8"     # secondary accent
    ok: str = "#22C55E"
    warn: str = "#FBBF24"
    err: str = "#EF4444"


def forge_theme(colors: ForgeColors = ForgeColors()) -> Theme:
    """
    Rich Theme for the Verify Forge CLI.

    Style names are semantic so they can be used everywhere:
      console.print("...", style="vf.ok")
    """
    return Theme(
        {
            "vf.accent": f"bold {colors.forge}",
            "vf.muted": f"{colors.dim}",
            "vf.text": f"{colors.ink}",
            "vf.border": f"{colors.arc}",

            # Status
            "vf.ok": f"bold {colors.ok}",
            "vf.warn": f"bold {colors.warn}",
            "vf.err": f"bold {colors.err}",
            "vf.info": f"{colors.arc}",

            # Data display
            "vf.key": f"{colors.steel}",
            "vf.value": f"{colors.ink}",
            "vf.number": f"bold {colors.forge}",
            "vf.table.header": f"bold {colors.arc}",

            # Verification tiers
            "vf.tier.light": f"{colors.ok}",
            "vf.tier.standard": f"bold {colors.warn}",
            "vf.tier.thorough": f"bold {colors.err}",
        }
    )


# =============================================================================
# Unicode / ASCII Fallbacks
# =============================================================================

def _can_use_unicode() -> bool:
    """Check if stdout can encode the status glyphs."""
    if os.environ.get("VERIFYFORGE_ASCII"):
        return False
    encoding = getattr(sys.stdout, "encoding", None) or ""
    return encoding.lower().replace("-", "") in ("utf8", "utf16", "utf32")


_UNICODE_ICONS = {
    "check": "✓",
    "cross": "✗",
    "warning": "⚠",
    "info": "ℹ",
    "bar_filled": "█",
    "bar_empty": "░",
    "bullet": "•",
    "arrow_up": "↑",
    "halt": "⛔",
}

_ASCII_ICONS = {
    "check": "[OK]",
    "cross": "[X]",
    "warning": "[!]",
    "info": "[i]",
    "bar_filled": "#",
    "bar_empty": "-",
    "bullet": "-",
    "arrow_up": "^",
    "halt": "[HALT]",
}

_ICONS = _UNICODE_ICONS if _can_use_unicode() else _ASCII_ICONS


def icon(name: str) -> str:
    """Get an icon by name, using ASCII fallback if needed."""
    return _ICONS.get(name, "")


# Single source of truth for output
console = Console(theme=forge_theme())

_VERBOSE = False


def set_verbose(verbose: bool) -> None:
    """Set global verbosity level."""
    global _VERBOSE
    _VERBOSE = verbose


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _VERBOSE


# =============================================================================
# Basic Message Functions
# =============================================================================

def print_success(message: str) -> None:
    """Print a success message with checkmark."""
    console.print(f"[vf.ok]{icon('check')} {message}[/]")


def print_error(message: str) -> None:
    """Print an error message with X."""
    console.print(f"[vf.err]{icon('cross')} {message}[/]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[vf.warn]{icon('warning')} {message}[/]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[vf.info]{icon('info')} {message}[/]")


def print_muted(message: str) -> None:
    """Print muted/secondary text."""
    console.print(f"[vf.muted]{message}[/]")


def print_header(title: str, style: str = "vf.accent") -> None:
    """Print a prominent section header with rule lines."""
    console.print()
    console.print(Rule(f"[{style}]{title}[/]", style=style))
    console.print()


# =============================================================================
# Data Display
# =============================================================================

def print_key_value_table(
    data: Dict[str, Any],
    *,
    title: Optional[str] = None,
    border_style: str = "vf.border",
) -> None:
    """Print multiple key-value pairs in a clean table format."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="vf.key")
    table.add_column("Value", style="vf.value")

    for key, value in data.items():
        table.add_row(key, str(value))

    if title:
        console.print(Panel(table, title=f"[bold]{title}[/]", border_style=border_style))
    else:
        console.print(table)


def create_table(
    *,
    title: Optional[str] = None,
    columns: Optional[List[str]] = None,
    show_header: bool = True,
) -> Table:
    """Create a styled Rich Table."""
    table = Table(
        title=title,
        show_header=show_header,
        header_style="vf.table.header",
        border_style="vf.border",
        title_style="vf.accent",
    )

    if columns:
        for col in columns:
            table.add_column(col)

    return table


def print_table(table: Table) -> None:
    """Print a Rich Table to the console."""
    console.print(table)


def tier_style(tier_name: str) -> str:
    """Theme style for a tier name (LIGHT/STANDARD/THOROUGH)."""
    return f"vf.tier.{tier_name.lower()}"


def format_load_bar(load_percent: int, width: int = 20) -> str:
    """Render a 0-100 load indicator as a markup bar."""
    load_percent = max(0, min(100, load_percent))
    filled = int(width * load_percent / 100)
    color = "vf.ok" if load_percent < 50 else "vf.warn" if load_percent < 85 else "vf.err"
    return (
        f"[{color}]{icon('bar_filled') * filled}[/]"
        f"[vf.muted]{icon('bar_empty') * (width - filled)}[/] {load_percent:3d}%"
    )


def print_status_line(phase: str, tier_name: str, loop_index: int, max_loops: int, load_percent: int) -> None:
    """Print one phase-transition status line."""
    console.print(
        f"[vf.key]{phase:<14}[/] "
        f"[{tier_style(tier_name)}]{tier_name:<9}[/] "
        f"[vf.muted]loop[/] [vf.number]{loop_index}[/][vf.muted]/{max_loops}[/]  "
        f"{format_load_bar(load_percent)}"
    )


# =============================================================================
# Spinners
# =============================================================================

@contextmanager
def spinner(message: str, *, style: str = "vf.accent") -> Iterator[Status]:
    """
    Context manager for showing a spinner during long operations.

    Usage:
        with spinner("Fingerprinting project..."):
            compute()
    """
    with console.status(f"[{style}]{message}[/]", spinner="dots") as status:
        yield status


# =============================================================================
# Logging Integration
# =============================================================================

def setup_rich_logging(level: int = logging.INFO) -> None:
    """
    Configure Python logging to use Rich for log output.

    Usage:
        setup_rich_logging()
        logging.info("This will be pretty!")
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console,
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )],
    )
