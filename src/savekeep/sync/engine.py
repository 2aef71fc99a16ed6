"""
Sync Engine -- reconciles the local store with the server.

Change selection is ``updated_at >= cutoff``; the merge key is the
record uuid. Both halves are gated on ``SessionManager.is_online`` and
report ``NOT_RUN`` (-1) instead of raising when they could not run.

    sync up    ->  gather changed records -> validate -> POST api/sync/up
    sync down  ->  GET api/sync/down -> validate -> write as already synced
    sync       ->  up, then down with the same cutoff, then mark committed
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..audit import audit_event
from ..errors import RecordValidationError
from ..models import Record, RecordKind, ms_to_datetime
from ..session import SessionManager, SessionState
from ..store import LocalStore
from .models import DownloadReport, SyncReport, SyncState, UploadReport
from .wire import decode_download, encode_upload

logger = logging.getLogger("savekeep.sync.engine")


class SyncEngine:
    """Orchestrates record synchronization for one device.

    Args:
        store: Local record store.
        sessions: Session manager; the only thing allowed to change
            authentication state when the server rejects a request.
        home: SaveKeep home. Defaults to the session manager's.
    """

    def __init__(
        self,
        store: LocalStore,
        sessions: SessionManager,
        home: Optional[Path] = None,
    ):
        self.store = store
        self.sessions = sessions
        self.home = Path(home or sessions.home).expanduser()
        self.sync_dir = self.home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.state = self._load_state()

    def _load_state(self) -> SyncState:
        """Load sync state from disk."""
        state_file = self.sync_dir / "state.json"
        if state_file.exists():
            try:
                data = json.loads(state_file.read_text(encoding="utf-8"))
                return SyncState(**data)
            except (json.JSONDecodeError, ValueError, TypeError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _save_state(self) -> None:
        """Persist sync state to disk."""
        state_file = self.sync_dir / "state.json"
        state_file.write_text(self.state.model_dump_json(indent=2), encoding="utf-8")

    # --- upload ---

    async def collect_upload(
        self, cutoff: int
    ) -> tuple[dict[str, list[dict[str, Any]]], list[str]]:
        """Gather and encode every record changed since *cutoff*.

        Records that do not fit their upload shape are left out of the
        batch and listed by description instead.

        Returns:
            The ``{games, chars, saves}`` batch and the invalid list.
        """
        batch: dict[str, list[dict[str, Any]]] = {k.value: [] for k in RecordKind}
        invalid: list[str] = []
        for kind in RecordKind:
            for record in await self.store.query(kind, updated_since=cutoff):
                try:
                    batch[kind.value].append(encode_upload(record))
                except RecordValidationError as exc:
                    logger.warning("Not uploading %s", exc.message)
                    invalid.append(exc.message)
        return batch, invalid

    async def upload(
        self, state: SessionState, batch: dict[str, list[dict[str, Any]]]
    ) -> UploadReport:
        """POST an encoded batch to ``api/sync/up``.

        Accepted count is batch size minus the server's error list.
        """
        sent = sum(len(items) for items in batch.values())
        result, response = await self.sessions.authorized_request(
            state, "POST", "api/sync/up", json=batch,
        )
        state = result.state
        if response is None:
            return UploadReport(sent=sent, state=state)

        reply = response.reply() if response.ok else None
        if reply is None or not reply.ok:
            logger.warning(
                "Sync up refused (%s): %s",
                response.status_code,
                response.message("malformed reply"),
            )
            return UploadReport(sent=sent, state=state)

        errors = reply.data.get("errors", []) if isinstance(reply.data, dict) else []
        if not isinstance(errors, list):
            errors = [errors]
        for error in errors:
            logger.info("Server rejected a record: %s", error)
        return UploadReport(
            accepted=sent - len(errors), sent=sent, errors=errors, state=state,
        )

    async def sync_up(self, state: SessionState, cutoff: int) -> UploadReport:
        """Upload every record changed since *cutoff*.

        Returns:
            UploadReport whose ``accepted`` is -1 when the upload did
            not run, 0 when there was nothing valid to send.
        """
        if not self.sessions.is_online(state, require_full_access=True):
            logger.debug("Sync up skipped: offline")
            return UploadReport(state=state)

        batch, invalid = await self.collect_upload(cutoff)
        if not any(batch.values()):
            return UploadReport(accepted=0, invalid=invalid, state=state)

        report = await self.upload(state, batch)
        report.invalid = invalid
        self._record_up(report)
        return report

    def _record_up(self, report: UploadReport) -> None:
        if report.ran:
            self.state.last_up = datetime.now(timezone.utc)
            self.state.up_count += 1
            self.state.records_uploaded += report.accepted
            self.state.last_error = None
            audit_event(
                self.home, "SYNC_UP",
                f"Uploaded {report.accepted}/{report.sent} records",
                user=report.state.username if report.state else None,
                metadata={"errors": len(report.errors), "invalid": len(report.invalid)},
            )
        else:
            self.state.last_error = "Upload did not run"
        self._save_state()

    # --- download ---

    async def sync_down(
        self,
        state: SessionState,
        cutoff: int,
        *,
        games: bool = True,
        chars: bool = True,
        saves: bool = True,
        include_archived: Optional[bool] = None,
    ) -> DownloadReport:
        """Download records changed since *cutoff* and store them.

        Downloaded records keep the server's ``updated_at``, so writing
        them never marks them for upload. A record is skipped when the
        local copy is strictly newer.

        Args:
            state: Current session.
            cutoff: Millisecond cutoff point.
            games: Download games.
            chars: Download characters.
            saves: Download saves.
            include_archived: Ask the server to include archived records
                even on a full (epoch) download.
        """
        if not self.sessions.is_online(state, require_full_access=True):
            logger.debug("Sync down skipped: offline")
            return DownloadReport(state=state)

        wanted = {RecordKind.GAMES: games, RecordKind.CHARS: chars, RecordKind.SAVES: saves}
        params = {"cutoffPoint": ms_to_datetime(cutoff).isoformat()}
        params.update({k.value: str(v).lower() for k, v in wanted.items()})
        if include_archived is not None:
            params["includeArchived"] = str(include_archived).lower()

        result, response = await self.sessions.authorized_request(
            state, "GET", "api/sync/down", params=params,
        )
        state = result.state
        if response is None:
            return self._record_down(DownloadReport(state=state))

        reply = response.reply() if response.ok else None
        if reply is None or not reply.ok or not isinstance(reply.data, dict):
            logger.warning(
                "Sync down refused (%s): %s",
                response.status_code,
                response.message("malformed reply"),
            )
            return self._record_down(DownloadReport(state=state))

        report = DownloadReport(downloaded=0, state=state)
        for kind, enabled in wanted.items():
            if not enabled:
                continue
            items = reply.data.get(kind.value) or []
            if not isinstance(items, list):
                logger.warning("Server sent %s as %s", kind.value, type(items).__name__)
                continue
            report.received += len(items)
            for raw in items:
                try:
                    record = decode_download(kind, raw)
                except RecordValidationError as exc:
                    logger.warning("Skipping downloaded %s", exc.message)
                    report.invalid.append(exc.message)
                    continue
                if await self._apply(record):
                    report.downloaded += 1
                else:
                    report.stale += 1
        return self._record_down(report)

    async def _apply(self, incoming: Record) -> bool:
        """Write a downloaded record under its local id, last write wins."""
        local_id = await self.store.find_id(incoming.kind, incoming.uuid)
        if local_id is not None:
            local = await self.store.get(incoming.kind, local_id)
            if local is not None and local.updated_at > incoming.updated_at:
                logger.debug(
                    "Keeping newer local %s %s", incoming.kind.label, incoming.uuid
                )
                return False
            incoming.id = local_id
        await self.store.put(incoming)
        return True

    def _record_down(self, report: DownloadReport) -> DownloadReport:
        if report.ran:
            self.state.last_down = datetime.now(timezone.utc)
            self.state.down_count += 1
            self.state.records_downloaded += report.downloaded
            self.state.last_error = None
            audit_event(
                self.home, "SYNC_DOWN",
                f"Downloaded {report.downloaded}/{report.received} records",
                user=report.state.username if report.state else None,
                metadata={"stale": report.stale, "invalid": len(report.invalid)},
            )
        else:
            self.state.last_error = "Download did not run"
        self._save_state()
        return report

    # --- combined ---

    async def sync(self, state: SessionState, cutoff: int) -> SyncReport:
        """Upload then download with the same cutoff.

        The last-commit time only advances when both halves ran, and
        it advances to when this sync started so edits made while it
        was in flight are picked up next time.
        """
        started = self.sessions.clock()
        if self.sessions.is_online(state, require_full_access=True):
            state = (await self.sessions.ensure_fresh_access_token(state)).state

        up = await self.sync_up(state, cutoff)
        state = up.state or state
        down = await self.sync_down(state, cutoff)
        state = down.state or state

        if up.ran and down.ran:
            self.sessions.mark_committed(state, at=started)

        report = SyncReport(cutoff=cutoff, up=up, down=down, state=state)
        logger.info(
            "Sync from %s: uploaded %s, downloaded %s",
            cutoff, report.uploaded, report.downloaded,
        )
        return report

    async def sync_since_last_commit(self, state: SessionState) -> SyncReport:
        """Sync using the persisted last-commit time as cutoff."""
        return await self.sync(state, self.sessions.last_commit_time())

    # --- maintenance ---

    async def invalidate_remote_ids(self) -> int:
        """Forget every server id. Returns how many records had one."""
        cleared = 0
        for kind in RecordKind:
            records = [r for r in await self.store.records(kind) if r.remote_id is not None]
            for record in records:
                record.remote_id = None
            if records:
                await self.store.bulk_put(records)
            cleared += len(records)
        logger.info("Cleared %d remote ids", cleared)
        return cleared

    async def cleanup(self, older_than: int) -> dict[str, int]:
        """Physically delete records archived at or before *older_than*.

        Active records (``archived_at == 0``) are never touched.

        Returns:
            Deleted count per collection.
        """
        counts: dict[str, int] = {}
        for kind in RecordKind:
            doomed = await self.store.archived_between(kind, 1, older_than)
            counts[kind.value] = await self.store.delete_rows(
                kind, [r.id for r in doomed]
            )
        audit_event(
            self.home, "CLEANUP",
            f"Deleted {sum(counts.values())} archived records",
            metadata={"older_than": older_than, **counts},
        )
        return counts

    def status(self) -> dict[str, Any]:
        """Summary of sync state for display."""
        return {
            "last_up": self.state.last_up.isoformat() if self.state.last_up else None,
            "last_down": self.state.last_down.isoformat() if self.state.last_down else None,
            "up_count": self.state.up_count,
            "down_count": self.state.down_count,
            "last_commit": self.sessions.last_commit_time(),
            "last_error": self.state.last_error,
        }
