"""
Tests for the savekeep command line.

Every invocation builds its own runtime on the same home, wired to the
fake server, with a JSON store so records survive between commands.
"""

from __future__ import annotations

import asyncio
import functools
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import FakeServer
from savekeep import __version__
from savekeep.cli import main
from savekeep.config import SaveKeepConfig
from savekeep.models import Character, Game, RecordKind, Save, new_uuid
from savekeep.runtime import SaveKeepRuntime
from savekeep.store import JsonStore

ALICE = 1


@pytest.fixture
def cli(savekeep_home: Path, fake_server: FakeServer, monkeypatch):
    """Invoke the CLI against the fake server and the test home."""
    config = SaveKeepConfig(store_backend="json", archive_grace_seconds=0.01)
    monkeypatch.setattr(
        "savekeep.cli._common.SaveKeepRuntime",
        functools.partial(SaveKeepRuntime, config=config, transport=fake_server.transport),
    )
    runner = CliRunner()

    def _invoke(*args: str):
        return runner.invoke(main, [*args, "--home", str(savekeep_home)])

    return _invoke


def _seed(home: Path, *records) -> None:
    store = JsonStore(home / "store")
    asyncio.run(store.bulk_put(records))


def _stored(home: Path, kind: RecordKind, uuid: str):
    return asyncio.run(JsonStore(home / "store").get_by_uuid(kind, uuid))


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestSessionCommands:
    """Tests for login, logout, whoami and status."""

    def test_login_and_whoami(self, cli):
        result = cli("login", "--username", "alice", "--password", "secret")
        assert result.exit_code == 0, result.output
        assert "Signed in as" in result.output

        result = cli("whoami")
        assert result.exit_code == 0
        assert "alice" in result.output
        assert "ONLINE" in result.output

    def test_login_failure(self, cli):
        result = cli("login", "--username", "alice", "--password", "wrong")
        assert result.exit_code == 1
        assert "Failed" in result.output

    def test_register(self, cli, fake_server: FakeServer):
        result = cli(
            "register", "--username", "bob", "--email", "bob@example.com",
            "--password", "hunter2",
        )
        assert result.exit_code == 0, result.output
        assert "bob" in fake_server.users

    def test_logout(self, cli):
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("logout")
        assert result.exit_code == 0
        assert "Logged out" in result.output
        assert "Not signed in" in cli("whoami").output

    def test_status(self, cli):
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("status")
        assert result.exit_code == 0, result.output
        assert "Local store" in result.output
        assert "Storage:" in result.output


class TestSyncCommands:
    """Tests for sync and the store maintenance commands."""

    def test_sync_requires_login(self, cli):
        result = cli("sync")
        assert result.exit_code == 1
        assert "Offline" in result.output

    def test_full_sync_round_trip(self, cli, fake_server: FakeServer, savekeep_home):
        remote = Game(name="Remote")
        fake_server.put_record(ALICE, remote)
        local = Game(name="Local")
        _seed(savekeep_home, local)

        cli("login", "--username", "alice", "--password", "secret")
        result = cli("sync", "--full")
        assert result.exit_code == 0, result.output
        assert "Uploaded" in result.output

        assert _stored(savekeep_home, RecordKind.GAMES, remote.uuid).name == "Remote"
        names = {r["name"] for r in fake_server.stored(ALICE, RecordKind.GAMES)}
        assert names == {"Remote", "Local"}

    def test_sync_down_subcommand(self, cli, fake_server: FakeServer, savekeep_home):
        game = Game(name="Remote")
        fake_server.put_record(ALICE, game)
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("sync", "down", "--full")
        assert result.exit_code == 0, result.output
        assert "Downloaded" in result.output
        assert _stored(savekeep_home, RecordKind.GAMES, game.uuid) is not None

    def test_check_and_repair(self, cli, savekeep_home):
        _seed(savekeep_home, Character(name="orphan", game_id=new_uuid()))

        result = cli("check")
        assert result.exit_code == 0
        assert "inconsistent record" in result.output
        assert "--repair" in result.output

        result = cli("check", "--repair")
        assert "deleted 1" in result.output
        assert "All records consistent" in cli("check").output

    def test_cleanup(self, cli, savekeep_home):
        game = Game(name="Old")
        game.archive(1)
        _seed(savekeep_home, game, Game(name="Kept"))
        result = cli("cleanup", "--older-than", "1")
        assert result.exit_code == 0, result.output
        assert "Deleted 1 games" in result.output
        assert _stored(savekeep_home, RecordKind.GAMES, game.uuid) is None

    def test_invalidate_remote_ids(self, cli, savekeep_home):
        _seed(savekeep_home, Game(name="g", remote_id=7), Game(name="h"))
        result = cli("invalidate-remote-ids")
        assert result.exit_code == 0
        assert "Cleared 1 remote id(s)" in result.output


class TestArchiveCommands:
    """Tests for archive and --undo."""

    def test_archive_game_cascades(self, cli, savekeep_home):
        game = Game(name="Hollow")
        char = Character(name="Knight", game_id=game.uuid)
        save = Save.from_payload("k1", game.uuid, char.uuid)
        _seed(savekeep_home, game, char, save)

        result = cli("archive", "game", game.uuid)
        assert result.exit_code == 0, result.output
        assert "1 character(s), 1 save(s)" in result.output
        for kind, uuid in ((RecordKind.GAMES, game.uuid), (RecordKind.CHARS, char.uuid),
                           (RecordKind.SAVES, save.uuid)):
            assert _stored(savekeep_home, kind, uuid).is_archived

    def test_undo_restores_only_the_record(self, cli, savekeep_home):
        game = Game(name="Hollow")
        char = Character(name="Knight", game_id=game.uuid)
        _seed(savekeep_home, game, char)
        cli("archive", "game", game.uuid)

        result = cli("archive", "game", game.uuid, "--undo")
        assert result.exit_code == 0
        assert "Restored" in result.output
        assert not _stored(savekeep_home, RecordKind.GAMES, game.uuid).is_archived
        assert _stored(savekeep_home, RecordKind.CHARS, char.uuid).is_archived

    def test_unknown_uuid(self, cli):
        result = cli("archive", "save", new_uuid())
        assert result.exit_code == 1
        assert "No save with uuid" in result.output


class TestAccountCommands:
    """Tests for account update, sessions and drop."""

    def test_update_displayname(self, cli, fake_server: FakeServer):
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("account", "update", "--displayname", "Alice Cooper")
        assert result.exit_code == 0, result.output
        assert "Account updated" in result.output
        assert fake_server.users["alice"]["displayname"] == "Alice Cooper"

    def test_update_rejects_invalid_fields(self, cli, fake_server: FakeServer):
        cli("login", "--username", "alice", "--password", "secret")
        calls = len(fake_server.calls)
        result = cli("account", "update", "--username", "ab")
        assert result.exit_code == 1
        assert "invalid username" in result.output
        assert len(fake_server.calls) == calls

    def test_update_needs_a_change(self, cli):
        result = cli("account", "update")
        assert result.exit_code == 1
        assert "nothing to change" in result.output

    def test_update_refused_by_server(self, cli, fake_server: FakeServer):
        fake_server.add_user("bob", "hunter2")
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("account", "update", "--username", "bob")
        assert result.exit_code == 1
        assert "Username is already taken" in result.output
        assert "alice" in cli("whoami").output

    def test_update_offline(self, cli):
        result = cli("account", "update", "--displayname", "Nobody")
        assert result.exit_code == 1
        assert "Offline" in result.output

    def test_sessions_and_drop(self, cli, fake_server: FakeServer):
        cli("login", "--username", "alice", "--password", "secret")
        cli("login", "--username", "alice", "--password", "secret")
        result = cli("account", "sessions")
        assert result.exit_code == 0, result.output
        assert "Active sessions" in result.output

        first = min(fake_server.sessions)
        result = cli("account", "drop", str(first))
        assert result.exit_code == 0, result.output
        assert "Dropped session" in result.output
        assert not fake_server.sessions[first]["active"]
        assert "ONLINE" in cli("whoami").output
