"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, the runtime runner
and the small formatting helpers every command group uses.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler

from .. import SAVEKEEP_HOME
from ..models import ms_to_datetime
from ..runtime import SaveKeepRuntime
from ..session import SessionManager, SessionState
from ..sync import NOT_RUN

console = Console()
logger = logging.getLogger("savekeep.cli")

T = TypeVar("T")


def home_option(func: Callable) -> Callable:
    """Attach the shared ``--home`` option to a command."""
    return click.option(
        "--home", default=SAVEKEEP_HOME, type=click.Path(),
        help="SaveKeep home directory.",
    )(func)


def setup_logging(level: str) -> None:
    """Route savekeep logging through a Rich handler."""
    root = logging.getLogger("savekeep")
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, show_path=False))
    root.setLevel(level.upper())


def run_with_runtime(
    home: str, action: Callable[[SaveKeepRuntime], Awaitable[T]]
) -> T:
    """Build a runtime for *home*, run *action* on it, then close it."""
    runtime = SaveKeepRuntime(Path(home).expanduser())
    setup_logging(runtime.config.log_level)

    async def _main() -> T:
        async with runtime:
            return await action(runtime)

    return asyncio.run(_main())


def count_label(count: int) -> str:
    """Render a sync count; -1 means the half did not run."""
    if count == NOT_RUN:
        return "[yellow]did not run[/]"
    return f"[green]{count}[/]"


def online_label(state: SessionState) -> str:
    if SessionManager.is_online(state):
        return "[bold green]ONLINE[/]"
    if not state.online_mode:
        return "[dim]OFFLINE (by choice)[/]"
    reason = f" [dim]{state.offline_reason}[/]" if state.offline_reason else ""
    return f"[bold yellow]OFFLINE[/]{reason}"


def format_ms(ms: int) -> str:
    if not ms:
        return "never"
    return ms_to_datetime(ms).strftime("%Y-%m-%d %H:%M:%S UTC")
