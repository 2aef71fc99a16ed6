"""
Tests for the runtime's startup and sign-in paths.
"""

from __future__ import annotations

import pytest

from conftest import FakeServer, sign_in
from savekeep.models import Game, RecordKind

ALICE = 1


def _server_names(fake_server: FakeServer) -> set[str]:
    return {r["name"] for r in fake_server.stored(ALICE, RecordKind.GAMES)}


class TestCatchUp:
    """Offline edits reach the server once the device is back online."""

    @pytest.mark.asyncio
    async def test_login_uploads_offline_edits(self, runtime, fake_server: FakeServer):
        state = await sign_in(runtime)
        await runtime.sync.sync(state, 0)
        await runtime.sessions.logout(state)
        assert runtime.sessions.last_commit_time() > 0

        await runtime.committer.add_new(Game(name="made offline"))
        result, report = await runtime.login("alice", "secret")
        assert result.success
        assert report is not None and report.uploaded == 1

        await runtime.committer.add_new(Game(name="made online"), result.state)
        await runtime.sync.sync_since_last_commit(result.state)
        assert _server_names(fake_server) == {"made offline", "made online"}

    @pytest.mark.asyncio
    async def test_connect_uploads_offline_edits(self, runtime, fake_server: FakeServer):
        state = await sign_in(runtime)
        await runtime.sync.sync(state, 0)

        fake_server.offline = True
        result = await runtime.committer.commit(Game(name="made offline"), state)
        assert not result.uploaded
        fake_server.offline = False

        state = await runtime.connect()
        assert state.online
        assert _server_names(fake_server) == {"made offline"}

        await runtime.committer.add_new(Game(name="made online"), state)
        await runtime.sync.sync_since_last_commit(state)
        assert _server_names(fake_server) == {"made offline", "made online"}

    @pytest.mark.asyncio
    async def test_connect_without_catch_up(self, runtime, fake_server: FakeServer):
        await sign_in(runtime)
        await runtime.committer.add_new(Game(name="local"))
        state = await runtime.connect(catch_up=False)
        assert state.online
        assert fake_server.count("api/sync/up") == 0

    @pytest.mark.asyncio
    async def test_failed_login_skips_sync(self, runtime, fake_server: FakeServer):
        result, report = await runtime.login("alice", "wrong")
        assert not result.success
        assert report is None
        assert fake_server.count("api/sync/up") == 0

    @pytest.mark.asyncio
    async def test_connect_stays_offline(self, runtime, fake_server: FakeServer):
        await sign_in(runtime)
        fake_server.offline = True
        state = await runtime.connect()
        assert not state.online
        assert state.authenticated
