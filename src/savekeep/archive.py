"""
Archive cascade -- soft delete with an undo window.

Archiving a game archives its active characters, and archiving a
character archives its active saves. The affected set is computed once,
when the archive starts. The root is committed right away; the children
follow after a short grace period during which the whole operation can
be undone. Unarchiving never cascades.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .audit import audit_event
from .commits import CommitResult, Committer
from .models import Character, Game, Record, RecordKind, Save, now_ms
from .session import SessionState
from .store import LocalStore
from .sync.models import UploadReport

logger = logging.getLogger("savekeep.archive")

DEFAULT_GRACE_SECONDS = 2.75


@dataclass
class CascadeResult:
    """The archived root and every dependent it took with it."""

    root: Record
    characters: list[Character] = field(default_factory=list)
    saves: list[Save] = field(default_factory=list)

    @property
    def children(self) -> list[Record]:
        return [*self.characters, *self.saves]

    @property
    def affected(self) -> list[Record]:
        return [self.root, *self.children]


async def archive_save(save: Save, at: Optional[int] = None) -> CascadeResult:
    """Archive a save. Saves have no dependents."""
    save.archive(at or now_ms())
    return CascadeResult(root=save)


async def archive_character(
    store: LocalStore, char: Character, at: Optional[int] = None
) -> CascadeResult:
    """Archive a character and its active saves."""
    at = at or now_ms()
    char.archive(at)
    saves = await store.query(RecordKind.SAVES, archived=False, char_id=char.uuid)
    for save in saves:
        save.archive(at)
    return CascadeResult(root=char, saves=saves)


async def archive_game(
    store: LocalStore, game: Game, at: Optional[int] = None
) -> CascadeResult:
    """Archive a game, its active characters, and their active saves."""
    at = at or now_ms()
    game.archive(at)
    result = CascadeResult(root=game)
    chars = await store.query(RecordKind.CHARS, archived=False, game_id=game.uuid)
    for char in chars:
        sub = await archive_character(store, char, at)
        result.characters.append(char)
        result.saves.extend(sub.saves)
    return result


async def cascade(
    store: LocalStore, record: Record, at: Optional[int] = None
) -> CascadeResult:
    """Archive *record* and whatever depends on it."""
    if isinstance(record, Game):
        return await archive_game(store, record, at)
    if isinstance(record, Character):
        return await archive_character(store, record, at)
    if isinstance(record, Save):
        return await archive_save(record, at)
    raise TypeError(f"Cannot archive {type(record).__name__}")


def unarchive(record: Record) -> Record:
    """Pointwise inverse of archiving. Dependents stay archived."""
    record.unarchive()
    return record


class PendingCascade:
    """An archive whose dependents have not been committed yet.

    The deferred commit runs as an asyncio task; ``undo`` cancels it
    as long as it is still waiting out the grace period.
    """

    def __init__(
        self,
        committer: Committer,
        result: CascadeResult,
        state: Optional[SessionState],
        grace_seconds: float,
    ) -> None:
        self.committer = committer
        self.result = result
        self.state = state
        self.grace_seconds = grace_seconds
        self.undone = False
        self._committing = False
        self.task: asyncio.Task = asyncio.ensure_future(self._commit_later())
        self.task.add_done_callback(self._log_failure)

    @property
    def open(self) -> bool:
        """Whether the undo window is still open."""
        return not self._committing and not self.undone

    def _log_failure(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        root = self.result.root
        logger.error(
            "Deferred commit of %s %s failed: %s",
            root.kind.label, root.uuid, task.exception(),
        )

    async def _commit_later(self) -> Optional[UploadReport]:
        await asyncio.sleep(self.grace_seconds)
        self._committing = True
        if not self.result.children:
            return None
        report = await self.committer.bulk_commit(self.result.children, self.state)
        self.state = report.state or self.state
        logger.info(
            "Committed archive cascade of %s %s (%d dependents)",
            self.result.root.kind.label, self.result.root.uuid,
            len(self.result.children),
        )
        return report

    async def undo(self) -> bool:
        """Reverse the whole archive: root and every dependent.

        Returns:
            False if the grace period is over and nothing was undone.
        """
        if not self.open:
            return False
        self.task.cancel()
        self.undone = True
        for record in self.result.affected:
            unarchive(record)
        commit = await self.committer.commit(self.result.root, self.state)
        self.state = commit.state or self.state
        root = self.result.root
        audit_event(
            self.committer.sessions.home, "ARCHIVE",
            f"Undid archive of {root.kind.label} {root.uuid}",
            user=self.state.username if self.state else None,
        )
        return True

    async def wait(self) -> Optional[UploadReport]:
        """Wait for the deferred commit. None if undone or nothing to commit."""
        if self.undone:
            return None
        return await self.task


class ArchiveCascade:
    """Starts archive cascades with a configurable grace period.

    Args:
        store: Local record store.
        committer: Commit paths for the root and the cascade batch.
        grace_seconds: Undo window before dependents are committed.
    """

    def __init__(
        self,
        store: LocalStore,
        committer: Committer,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.committer = committer
        self.grace_seconds = grace_seconds

    async def begin(
        self, root: Record, state: Optional[SessionState] = None
    ) -> PendingCascade:
        """Archive *root*, commit it, and schedule its dependents."""
        result = await cascade(self.store, root)
        commit = await self.committer.commit(root, state)
        state = commit.state or state
        logger.info(
            "Archived %s %s: %d characters, %d saves pending",
            root.kind.label, root.uuid, len(result.characters), len(result.saves),
        )
        audit_event(
            self.committer.sessions.home, "ARCHIVE",
            f"Archived {root.kind.label} {root.uuid}",
            user=state.username if state else None,
            metadata={"characters": len(result.characters), "saves": len(result.saves)},
        )
        return PendingCascade(self.committer, result, state, self.grace_seconds)

    async def restore(
        self, record: Record, state: Optional[SessionState] = None
    ) -> CommitResult:
        """Unarchive a single record and commit it."""
        unarchive(record)
        return await self.committer.commit(record, state)
