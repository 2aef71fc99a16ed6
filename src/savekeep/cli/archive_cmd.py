"""Archive commands: archive game|char|save UUID [--undo]."""

from __future__ import annotations

import sys

import click
from rich.table import Table

from ..models import RecordKind
from ..runtime import SaveKeepRuntime
from ._common import console, count_label, home_option, run_with_runtime


def _archive_command(group: click.Group, name: str, kind: RecordKind) -> None:
    @group.command(name, help=f"Archive a {kind.label} and everything that depends on it.")
    @home_option
    @click.argument("uuid")
    @click.option("--undo", is_flag=True, help="Unarchive this record only.")
    def _command(home, uuid, undo):
        async def _run(rt: SaveKeepRuntime):
            record = await rt.store.get_by_uuid(kind, uuid)
            if record is None:
                return None, None
            state = await rt.connect()
            if undo:
                return record, await rt.archive.restore(record, state)
            pending = await rt.archive.begin(record, state)
            await pending.wait()
            return record, pending

        record, outcome = run_with_runtime(home, _run)
        if record is None:
            console.print(f"\n  [bold red]No {kind.label} with uuid[/] {uuid}\n")
            sys.exit(1)

        if undo:
            console.print(f"\n  [green]Restored[/] {kind.label} [cyan]{uuid}[/]\n")
            return

        result = outcome.result
        table = Table(title=f"Archived {kind.label} {uuid}")
        table.add_column("Kind", style="bold")
        table.add_column("UUID", style="cyan")
        table.add_column("Name")
        for affected in result.affected:
            table.add_row(affected.kind.label, affected.uuid, getattr(affected, "name", ""))
        console.print()
        console.print(table)
        console.print(
            f"  {len(result.characters)} character(s), {len(result.saves)} save(s) "
            "archived with it"
        )
        report = outcome.task.result()
        if report is not None:
            console.print(f"  Uploaded {count_label(report.accepted)}")
        console.print()


def register_archive_commands(main: click.Group) -> None:
    """Register the archive command group."""

    @main.group()
    def archive():
        """Archive (soft delete) games, characters and saves."""

    _archive_command(archive, "game", RecordKind.GAMES)
    _archive_command(archive, "char", RecordKind.CHARS)
    _archive_command(archive, "save", RecordKind.SAVES)
