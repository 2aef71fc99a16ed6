"""
Commit paths -- how a local edit reaches the store and the server.

    commit       ->  stamp, put, PATCH api/<kind>/uuid/<uuid> if online
    add_new      ->  stamp, insert, POST api/<kind>/new if online
    bulk_commit  ->  stamp, bulk put, POST api/sync/up if online

Every path writes locally first. The server call is best effort: if it
does not happen, the record still carries an ``updated_at`` past the
last commit and goes up with the next sync.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .consistency import Issue, Snapshot, check_record
from .errors import ErrorKind, RecordValidationError
from .models import Record, RecordKind
from .session import SessionManager, SessionState
from .store import LocalStore
from .sync.engine import SyncEngine
from .sync.models import UploadReport
from .sync.wire import decode_download, encode_upload

logger = logging.getLogger("savekeep.commits")


@dataclass
class CommitResult:
    """A committed record, the session to carry on with, and what the
    advisory check found."""

    record: Record
    state: Optional[SessionState] = None
    uploaded: bool = False
    issues: list[Issue] = field(default_factory=list)


class Committer:
    """Commit paths for single records and batches.

    Args:
        store: Local record store.
        sessions: Session manager gating and authenticating uploads.
        sync: Sync engine, used for batch uploads.
    """

    def __init__(
        self, store: LocalStore, sessions: SessionManager, sync: SyncEngine
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.sync = sync

    async def _advise(self, record: Record) -> list[Issue]:
        issues = check_record(record, await Snapshot.build(self.store))
        if issues:
            logger.warning(
                "Committing inconsistent %s %s: %s",
                record.kind.label, record.uuid, "; ".join(map(str, issues)),
            )
        return issues

    async def commit(
        self,
        record: Record,
        state: Optional[SessionState] = None,
        local_only: bool = False,
    ) -> CommitResult:
        """Stamp and store an edited record, then upload it if online."""
        record.touch(self.sessions.clock())
        issues = await self._advise(record)
        await self.store.put(record)
        result = CommitResult(record=record, state=state, issues=issues)
        if state is None or local_only:
            return result
        path = f"api/{record.kind.value}/uuid/{record.uuid}"
        return await self._push(result, "PATCH", path)

    async def add_new(
        self,
        record: Record,
        state: Optional[SessionState] = None,
        local_only: bool = False,
    ) -> CommitResult:
        """Insert a record created on this device, then upload it if online.

        Raises:
            ValueError: If the record has already been inserted.
        """
        if not record.is_new:
            raise ValueError(f"{record.kind.label} {record.uuid} already has id {record.id}")
        now = self.sessions.clock()
        record.touch(now)
        record.created_at = now
        issues = await self._advise(record)
        await self.store.put(record)
        result = CommitResult(record=record, state=state, issues=issues)
        if state is None or local_only:
            return result
        return await self._push(result, "POST", f"api/{record.kind.value}/new")

    async def _push(self, result: CommitResult, method: str, path: str) -> CommitResult:
        if not self.sessions.is_online(result.state, require_full_access=True):
            return result
        record = result.record
        try:
            payload = encode_upload(record)
        except RecordValidationError as exc:
            logger.warning("Not uploading %s", exc.message)
            return result

        session, response = await self.sessions.authorized_request(
            result.state, method, path, json=payload, rejection=ErrorKind.OWNERSHIP,
        )
        result.state = session.state
        if response is None:
            return result

        reply = response.reply() if response.ok else None
        if reply is None or not reply.ok:
            logger.warning(
                "Upload of %s %s refused: %s",
                record.kind.label, record.uuid, response.message("malformed reply"),
            )
            return result
        try:
            remote = decode_download(record.kind, reply.data)
        except RecordValidationError as exc:
            logger.warning("Server sent incorrect %s", exc.message)
            return result

        result.uploaded = True
        self.sessions.mark_committed(result.state)
        if remote.remote_id is not None and remote.remote_id != record.remote_id:
            record.remote_id = remote.remote_id
            await self.store.put(record)
        return result

    async def bulk_commit(
        self,
        records: Iterable[Record],
        state: Optional[SessionState] = None,
    ) -> UploadReport:
        """Stamp and store a batch, then upload it in one request.

        Returns:
            UploadReport; ``accepted`` is -1 if nothing was sent.
        """
        records = list(records)
        now = self.sessions.clock()
        for record in records:
            record.touch(now)
        await self.store.bulk_put(records)

        if not self.sessions.is_online(state, require_full_access=True):
            return UploadReport(state=state)

        batch: dict[str, list] = {kind.value: [] for kind in RecordKind}
        invalid = []
        for record in records:
            try:
                batch[record.kind.value].append(encode_upload(record))
            except RecordValidationError as exc:
                logger.warning("Not uploading %s", exc.message)
                invalid.append(exc.message)
        if not any(batch.values()):
            return UploadReport(accepted=0, invalid=invalid, state=state)

        report = await self.sync.upload(state, batch)
        report.invalid = invalid
        if report.ran and report.state is not None:
            self.sessions.mark_committed(report.state)
        return report
