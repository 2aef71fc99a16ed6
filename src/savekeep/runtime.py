"""
SaveKeep runtime -- one object wiring a home directory together.

Loads the config from the SaveKeep home and builds the store, channel,
session manager, sync engine, commit paths and archive cascade on top
of it, so the CLI and any other front end share one construction path.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from . import SAVEKEEP_HOME
from .archive import ArchiveCascade
from .channel import Channel
from .commits import Committer
from .config import SaveKeepConfig, load_config
from .session import ActionResult, SessionManager, SessionState
from .store import LocalStore, open_store
from .sync import SyncEngine, SyncReport

logger = logging.getLogger("savekeep.runtime")


class SaveKeepRuntime:
    """Everything one device needs, built from one home directory.

    Args:
        home: Override the SaveKeep home. Defaults to ``SAVEKEEP_HOME``.
        config: Use this config instead of loading ``config/config.yaml``.
        transport: httpx transport for the channel (tests use a mock).
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[SaveKeepConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.home = Path(home or SAVEKEEP_HOME).expanduser()
        self.home.mkdir(parents=True, exist_ok=True)
        self.config = config or load_config(self.home)

        self.channel = Channel(
            self.config.base_url,
            timeout=self.config.request_timeout,
            transport=transport,
        )
        self.store: LocalStore = open_store(
            self.config.store_backend, self.home / "store"
        )
        self.sessions = SessionManager(self.channel, self.home)
        self.sync = SyncEngine(self.store, self.sessions, self.home)
        self.committer = Committer(self.store, self.sessions, self.sync)
        self.archive = ArchiveCascade(
            self.store, self.committer, self.config.archive_grace_seconds
        )

    async def connect(self, catch_up: bool = True) -> SessionState:
        """Restore the persisted session and revalidate it if possible.

        Once online, everything changed since the last commit is synced
        before anything else runs, so edits made while offline are not
        left behind by a later commit moving the cutoff forward.

        Args:
            catch_up: Skip the catch-up sync when the caller is about
                to sync anyway.
        """
        state = self.sessions.load_persisted()
        if not (state.tokens.refresh_token and state.online_mode):
            return state
        result = await self.sessions.init(state)
        if not result.success:
            logger.info("Starting offline: %s", result.message)
            return result.state
        if catch_up:
            state, _ = await self.catch_up(result.state)
            return state
        return result.state

    async def catch_up(
        self, state: SessionState
    ) -> tuple[SessionState, Optional[SyncReport]]:
        """Sync since the last commit if the session allows it."""
        if not self.sessions.is_online(state, require_full_access=True):
            return state, None
        report = await self.sync.sync_since_last_commit(state)
        return report.state or state, report

    async def login(
        self, username: str, password: str
    ) -> tuple[ActionResult, Optional[SyncReport]]:
        """Sign in, then catch up on everything changed while signed out."""
        result = await self.sessions.login(
            self.sessions.load_persisted(), username, password
        )
        return await self._after_sign_in(result)

    async def register(
        self, username: str, email: str, password: str
    ) -> tuple[ActionResult, Optional[SyncReport]]:
        """Create an account, sign in to it, and upload local records."""
        result = await self.sessions.register(
            self.sessions.load_persisted(), username, email, password
        )
        return await self._after_sign_in(result)

    async def _after_sign_in(
        self, result: ActionResult
    ) -> tuple[ActionResult, Optional[SyncReport]]:
        if not result.success:
            return result, None
        result.state, report = await self.catch_up(result.state)
        return result, report

    async def close(self) -> None:
        await self.channel.close()

    async def __aenter__(self) -> SaveKeepRuntime:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
