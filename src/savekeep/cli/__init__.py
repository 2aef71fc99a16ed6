"""
SaveKeep CLI -- offline-first save-game sync from the command line.

Each command group lives in its own module and is registered on the
main Click group through a register function.

Entry point: savekeep.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="savekeep")
def main():
    """SaveKeep -- keep your game saves in sync across devices."""


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .session_cmd import register_session_commands
from .sync_cmd import register_sync_commands
from .archive_cmd import register_archive_commands
from .account_cmd import register_account_commands

register_session_commands(main)
register_sync_commands(main)
register_archive_commands(main)
register_account_commands(main)
