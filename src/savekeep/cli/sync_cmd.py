"""Sync commands: sync, sync up/down, check, cleanup, invalidate-remote-ids."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ..consistency import global_check, repair
from ..models import now_ms
from ..runtime import SaveKeepRuntime
from ..session import SessionManager
from ._common import console, count_label, home_option, run_with_runtime

DAY_MS = 24 * 60 * 60 * 1000


def _require_online(state) -> None:
    if not SessionManager.is_online(state, require_full_access=True):
        reason = state.offline_reason or "not signed in"
        console.print(f"\n  [yellow]Offline:[/] {reason}\n")
        sys.exit(1)


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group and store maintenance commands."""

    @main.group(invoke_without_command=True)
    @home_option
    @click.option("--full", is_flag=True, help="Resync everything from the epoch.")
    @click.pass_context
    def sync(ctx, home, full):
        """Synchronize games, characters and saves with the server.

        Without a subcommand, uploads and then downloads everything
        changed since the last commit (or everything, with --full).
        """
        if ctx.invoked_subcommand is not None:
            return

        async def _sync(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            if full:
                return state, await rt.sync.sync(state, 0)
            return state, await rt.sync.sync_since_last_commit(state)

        state, report = run_with_runtime(home, _sync)
        _require_online(state)
        console.print(
            f"\n  Uploaded {count_label(report.uploaded)}, "
            f"downloaded {count_label(report.downloaded)}"
        )
        for message in report.up.invalid + report.down.invalid:
            console.print(f"  [dim]skipped {message}[/]")
        for error in report.up.errors:
            console.print(f"  [red]server rejected[/] {error}")
        console.print()

    @sync.command("up")
    @home_option
    @click.option("--full", is_flag=True, help="Upload everything, not just recent changes.")
    def sync_up(home, full):
        """Upload local changes only."""

        async def _up(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            cutoff = 0 if full else rt.sessions.last_commit_time()
            return state, await rt.sync.sync_up(state, cutoff)

        state, report = run_with_runtime(home, _up)
        _require_online(state)
        console.print(f"\n  Uploaded {count_label(report.accepted)} of {report.sent}\n")

    @sync.command("down")
    @home_option
    @click.option("--full", is_flag=True, help="Download everything from the epoch.")
    @click.option("--include-archived", is_flag=True, help="Include archived records on a full download.")
    def sync_down(home, full, include_archived):
        """Download remote changes only."""

        async def _down(rt: SaveKeepRuntime):
            state = await rt.connect(catch_up=False)
            cutoff = 0 if full else rt.sessions.last_commit_time()
            return state, await rt.sync.sync_down(
                state, cutoff, include_archived=include_archived or None,
            )

        state, report = run_with_runtime(home, _down)
        _require_online(state)
        console.print(
            f"\n  Downloaded {count_label(report.downloaded)} of {report.received}"
            f" ({report.stale} older than local)\n"
        )

    @main.command()
    @home_option
    @click.option("--repair", "do_repair", is_flag=True, help="Fix or delete inconsistent records.")
    def check(home, do_repair):
        """Check references between games, characters and saves."""

        async def _check(rt: SaveKeepRuntime):
            found = await global_check(rt.store)
            fixed = await repair(rt.store, rt.home) if do_repair else None
            return found, fixed

        found, fixed = run_with_runtime(home, _check)
        total = sum(len(items) for items in found.values())
        if not total:
            console.print("\n  [green]All records consistent.[/]\n")
            return

        table = Table(title=f"{total} inconsistent record(s)")
        table.add_column("Collection", style="bold")
        table.add_column("UUID", style="cyan")
        table.add_column("Issues")
        for collection, items in found.items():
            for row, issues in items:
                table.add_row(
                    collection, str(row.get("uuid", "?")),
                    "\n".join(str(i) for i in issues),
                )
        console.print()
        console.print(table)
        if fixed is not None:
            console.print(
                f"  [green]Repaired {fixed.fixed}[/], [red]deleted {fixed.deleted}[/]\n"
            )
        else:
            console.print("  Run with [bold]--repair[/] to fix them.\n")

    @main.command()
    @home_option
    @click.option("--older-than", "days", type=click.IntRange(min=0), required=True,
                  help="Delete records archived at least this many days ago.")
    def cleanup(home, days):
        """Permanently delete old archived records, then resync."""

        async def _cleanup(rt: SaveKeepRuntime):
            counts = await rt.sync.cleanup(now_ms() - days * DAY_MS)
            state = await rt.connect(catch_up=False)
            report = None
            if SessionManager.is_online(state, require_full_access=True):
                report = await rt.sync.sync(state, 0)
            return counts, report

        counts, report = run_with_runtime(home, _cleanup)
        console.print(
            f"\n  Deleted {counts['games']} games, {counts['chars']} characters, "
            f"{counts['saves']} saves"
        )
        if report is not None:
            console.print(f"  Resynced: downloaded {count_label(report.downloaded)}")
        console.print()

    @main.command("invalidate-remote-ids")
    @home_option
    def invalidate_remote_ids(home):
        """Forget server ids on every local record."""

        async def _invalidate(rt: SaveKeepRuntime):
            return await rt.sync.invalidate_remote_ids()

        cleared = run_with_runtime(home, _invalidate)
        console.print(f"\n  Cleared {cleared} remote id(s).\n")
