"""Account commands: account update, account sessions, account drop."""

from __future__ import annotations

import sys

import click
from pydantic import ValidationError
from rich.table import Table

from ..runtime import SaveKeepRuntime
from ..session import AccountPatch
from ._common import console, home_option, run_with_runtime


def _print_failure(message: str) -> None:
    console.print(f"\n  [bold red]Failed:[/] {message}\n")
    sys.exit(1)


def register_account_commands(main: click.Group) -> None:
    """Register the account command group."""

    @main.group()
    def account():
        """Change your account and manage its sessions."""

    @account.command("update")
    @home_option
    @click.option("--displayname", default=None)
    @click.option("--username", default=None)
    @click.option("--email", default=None)
    @click.option("--password", default=None, help="New password.")
    def account_update(home, displayname, username, email, password):
        """Change profile fields or the password."""
        try:
            patch = AccountPatch(
                displayname=displayname, username=username,
                email=email, password=password,
            )
        except ValidationError as exc:
            fields = ", ".join(str(e["loc"][0]) for e in exc.errors())
            _print_failure(f"invalid {fields}")
        if not patch.model_dump(exclude_none=True):
            _print_failure("nothing to change")

        async def _update(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            return await rt.sessions.update_account(state, patch)

        result = run_with_runtime(home, _update)
        if not result.success:
            _print_failure(result.message)
        console.print(f"\n  [green]{result.message}[/] [cyan]{result.state.username}[/]\n")

    @account.command("sessions")
    @home_option
    def account_sessions(home):
        """List the active sessions of this account."""

        async def _sessions(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            return await rt.sessions.fetch_sessions(state)

        result = run_with_runtime(home, _sessions)
        if not result.success:
            _print_failure(result.message or "could not list sessions")

        table = Table(title="Active sessions")
        table.add_column("ID", justify="right", style="cyan")
        table.add_column("Created")
        table.add_column("Tokens", justify="right")
        for session in result.data:
            table.add_row(
                str(session.get("id")),
                str(session.get("createdAt", "-")),
                str(len(session.get("tokens", []))),
            )
        console.print()
        console.print(table)
        console.print()

    @account.command("drop")
    @home_option
    @click.argument("session_id", type=int)
    def account_drop(home, session_id):
        """Invalidate one session, signing that device out."""

        async def _drop(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            return await rt.sessions.drop_session(state, session_id)

        result = run_with_runtime(home, _drop)
        if not result.success:
            _print_failure(result.message or "session not dropped")
        console.print(f"\n  [green]Dropped session[/] {session_id}\n")
