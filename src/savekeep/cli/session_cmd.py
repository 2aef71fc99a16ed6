"""Session commands: login, register, logout, whoami, status."""

from __future__ import annotations

import sys

import click
from rich.panel import Panel
from rich.table import Table

from ..models import RecordKind
from ..runtime import SaveKeepRuntime
from ._common import console, count_label, format_ms, home_option, online_label, run_with_runtime


def _print_failure(message: str) -> None:
    console.print(f"  [bold red]Failed:[/] {message}\n")
    sys.exit(1)


def register_session_commands(main: click.Group) -> None:
    """Register session commands."""

    @main.command()
    @home_option
    @click.option("--username", prompt=True, help="Username or email.")
    @click.password_option(confirmation_prompt=False)
    def login(home, username, password):
        """Sign in and sync everything changed since the last commit."""

        async def _login(rt: SaveKeepRuntime):
            return await rt.login(username, password)

        result, report = run_with_runtime(home, _login)
        if not result.success:
            _print_failure(result.message)
        console.print(f"\n  [green]Signed in as[/] [cyan]{result.state.username}[/]")
        if report is not None:
            console.print(
                f"  Uploaded {count_label(report.uploaded)}, "
                f"downloaded {count_label(report.downloaded)}\n"
            )

    @main.command()
    @home_option
    @click.option("--username", prompt=True)
    @click.option("--email", prompt=True)
    @click.password_option()
    def register(home, username, email, password):
        """Create an account and sign in to it."""

        async def _register(rt: SaveKeepRuntime):
            return await rt.register(username, email, password)

        result, report = run_with_runtime(home, _register)
        if not result.success:
            _print_failure(result.message)
        console.print(f"\n  [green]Registered[/] [cyan]{result.state.username}[/]")
        if report is not None:
            console.print(f"  Uploaded {count_label(report.uploaded)}\n")

    @main.command()
    @home_option
    def logout(home):
        """Sign out and forget the session on this device."""

        async def _logout(rt: SaveKeepRuntime):
            return await rt.sessions.logout(rt.sessions.load_persisted())

        run_with_runtime(home, _logout)
        console.print("\n  [green]Logged out.[/]\n")

    @main.command()
    @home_option
    def whoami(home):
        """Show who this device is signed in as."""

        async def _whoami(rt: SaveKeepRuntime):
            return await rt.connect()

        state = run_with_runtime(home, _whoami)
        if state.user_id is None:
            console.print("\n  [yellow]Not signed in.[/]\n")
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Field", style="bold")
        table.add_column("Value")
        table.add_row("Username", state.username)
        table.add_row("Display name", state.displayname or "[dim]-[/]")
        table.add_row("Email", state.email or "[dim]-[/]")
        table.add_row("Role", state.role.value)
        table.add_row("Connection", online_label(state))
        console.print()
        console.print(Panel(table, title="SaveKeep Account", border_style="cyan"))
        console.print()

    @main.command()
    @home_option
    def status(home):
        """Show session, sync and store status."""

        async def _status(rt: SaveKeepRuntime):
            state = await rt.connect()
            counts = {kind: await rt.store.count(kind) for kind in RecordKind}
            quota = await rt.sessions.request_quota(state)
            return state, counts, quota.data, rt.sync.status()

        state, counts, quota, sync_status = run_with_runtime(home, _status)

        console.print()
        console.print(Panel(
            f"Account: [cyan]{state.username or 'anonymous'}[/]\n"
            f"Connection: {online_label(state)}",
            title="SaveKeep", border_style="bright_blue",
        ))

        table = Table(title="Local store", show_lines=False)
        table.add_column("Collection", style="bold")
        table.add_column("Rows", justify="right")
        for kind, count in counts.items():
            table.add_row(kind.value, str(count))
        console.print(table)

        console.print(f"  Last commit: {format_ms(sync_status['last_commit'])}")
        console.print(f"  Last up:     {sync_status['last_up'] or 'never'}")
        console.print(f"  Last down:   {sync_status['last_down'] or 'never'}")
        if sync_status["last_error"]:
            console.print(f"  [yellow]Last error: {sync_status['last_error']}[/]")
        if quota.get("quota"):
            console.print(f"  Storage: {quota['usage']} / {quota['quota']} bytes")
        console.print()
