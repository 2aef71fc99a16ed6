"""
Local store -- where records live while the device is offline.

The store is a keyed table per record kind. Rows are plain dicts so
that a corrupted or half-migrated row can still be read back and fed
to the consistency pass; the typed helpers on ``LocalStore`` decode
rows into models and quietly skip the ones that no longer validate.

    MemoryStore  ->  tables in a dict, gone when the process exits
    JsonStore    ->  same tables, flushed to one JSON file per kind
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .errors import ConsistencyError
from .models import NEW_RECORD_ID, Record, RecordKind

logger = logging.getLogger("savekeep.store")


class LocalStore(ABC):
    """Async keyed storage for games, characters and saves.

    Subclasses provide the raw row primitives. Everything typed is
    built on top of them here.
    """

    @abstractmethod
    async def rows(self, kind: RecordKind) -> list[dict[str, Any]]:
        """Return every raw row of a collection, valid or not."""

    @abstractmethod
    async def get_row(
        self, kind: RecordKind, record_id: int
    ) -> Optional[dict[str, Any]]:
        """Return one raw row by local id."""

    @abstractmethod
    async def find_id(self, kind: RecordKind, uuid: str) -> Optional[int]:
        """Return the local id holding *uuid*, if any."""

    @abstractmethod
    async def write_rows(
        self, kind: RecordKind, rows: list[dict[str, Any]]
    ) -> list[int]:
        """Insert or replace rows, assigning ids to new ones.

        A row with ``id == -1`` whose uuid already exists replaces the
        existing row instead of creating a duplicate.

        Raises:
            ConsistencyError: If a row would give a uuid a second id.
        """

    @abstractmethod
    async def delete_rows(self, kind: RecordKind, ids: Iterable[int]) -> int:
        """Physically delete rows. Returns how many existed."""

    @abstractmethod
    async def clear(self, kind: Optional[RecordKind] = None) -> None:
        """Drop every row of one collection, or of all of them."""

    # --- typed helpers ---

    @staticmethod
    def decode(kind: RecordKind, row: dict[str, Any]) -> Optional[Record]:
        try:
            return kind.model.model_validate(row)
        except ValidationError as exc:
            logger.debug(
                "Skipping invalid %s row %s: %s",
                kind.label, row.get("id"), exc.error_count(),
            )
            return None

    async def records(self, kind: RecordKind) -> list[Record]:
        """Every valid record of a collection, in id order."""
        decoded = (self.decode(kind, row) for row in await self.rows(kind))
        return [r for r in decoded if r is not None]

    async def get(self, kind: RecordKind, record_id: int) -> Optional[Record]:
        row = await self.get_row(kind, record_id)
        return self.decode(kind, row) if row is not None else None

    async def get_by_uuid(self, kind: RecordKind, uuid: str) -> Optional[Record]:
        record_id = await self.find_id(kind, uuid)
        if record_id is None:
            return None
        return await self.get(kind, record_id)

    async def query(
        self,
        kind: RecordKind,
        *,
        updated_since: Optional[int] = None,
        archived: Optional[bool] = None,
        **equals: Any,
    ) -> list[Record]:
        """Range query by update time and archive flag.

        Args:
            kind: Collection to read.
            updated_since: Keep records with ``updated_at >= updated_since``.
            archived: Keep only archived (True) or active (False) records.
            **equals: Extra field equality filters, e.g. ``game_id=...``.
        """
        result = []
        for record in await self.records(kind):
            if updated_since is not None and record.updated_at < updated_since:
                continue
            if archived is not None and record.is_archived != archived:
                continue
            if any(getattr(record, k) != v for k, v in equals.items()):
                continue
            result.append(record)
        return result

    async def archived_between(
        self, kind: RecordKind, low: int, high: int
    ) -> list[Record]:
        """Records whose ``archived_at`` lies in ``[low, high]``."""
        return [
            r for r in await self.records(kind)
            if low <= r.archived_at <= high
        ]

    async def put(self, record: Record) -> int:
        """Insert or replace *record* as-is. Sets ``record.id``."""
        (record_id,) = await self.write_rows(record.kind, [record.model_dump()])
        record.id = record_id
        return record_id

    async def bulk_put(self, records: Iterable[Record]) -> list[int]:
        grouped: dict[RecordKind, list[Record]] = defaultdict(list)
        for record in records:
            grouped[record.kind].append(record)

        ids = []
        for kind, group in grouped.items():
            written = await self.write_rows(kind, [r.model_dump() for r in group])
            for record, record_id in zip(group, written):
                record.id = record_id
            ids.extend(written)
        return ids

    async def put_raw(self, kind: RecordKind, row: dict[str, Any]) -> int:
        """Write an unvalidated row. Used by imports and repairs."""
        (record_id,) = await self.write_rows(kind, [dict(row)])
        return record_id

    async def delete(self, kind: RecordKind, record_id: int) -> bool:
        return await self.delete_rows(kind, [record_id]) == 1

    async def count(self, kind: Optional[RecordKind] = None) -> int:
        kinds = [kind] if kind else list(RecordKind)
        total = 0
        for k in kinds:
            total += len(await self.rows(k))
        return total


class MemoryStore(LocalStore):
    """In-process store. Also the base of the JSON-backed store."""

    def __init__(self) -> None:
        self._tables: dict[RecordKind, dict[int, dict[str, Any]]] = {
            kind: {} for kind in RecordKind
        }
        self._next_ids: dict[RecordKind, int] = {kind: 1 for kind in RecordKind}

    def _persist(self, kind: RecordKind) -> None:
        """Hook called after every mutation of a collection."""

    def _uuid_owner(self, kind: RecordKind, uuid: Any) -> Optional[int]:
        if not uuid:
            return None
        for record_id, row in self._tables[kind].items():
            if row.get("uuid") == uuid:
                return record_id
        return None

    async def rows(self, kind: RecordKind) -> list[dict[str, Any]]:
        table = self._tables[kind]
        return [dict(table[i]) for i in sorted(table)]

    async def get_row(
        self, kind: RecordKind, record_id: int
    ) -> Optional[dict[str, Any]]:
        row = self._tables[kind].get(record_id)
        return dict(row) if row is not None else None

    async def find_id(self, kind: RecordKind, uuid: str) -> Optional[int]:
        return self._uuid_owner(kind, uuid)

    async def write_rows(
        self, kind: RecordKind, rows: list[dict[str, Any]]
    ) -> list[int]:
        table = self._tables[kind]
        ids = []
        for row in rows:
            row = dict(row)
            owner = self._uuid_owner(kind, row.get("uuid"))
            record_id = row.get("id", NEW_RECORD_ID)
            if not isinstance(record_id, int) or record_id == NEW_RECORD_ID:
                if owner is not None:
                    record_id = owner
                else:
                    record_id = self._next_ids[kind]
                    self._next_ids[kind] += 1
            elif owner is not None and owner != record_id:
                raise ConsistencyError(
                    f"{kind.label} uuid {row.get('uuid')} already stored "
                    f"under id {owner}"
                )
            else:
                self._next_ids[kind] = max(self._next_ids[kind], record_id + 1)
            row["id"] = record_id
            table[record_id] = row
            ids.append(record_id)
        self._persist(kind)
        return ids

    async def delete_rows(self, kind: RecordKind, ids: Iterable[int]) -> int:
        table = self._tables[kind]
        removed = 0
        for record_id in ids:
            if table.pop(record_id, None) is not None:
                removed += 1
        if removed:
            self._persist(kind)
        return removed

    async def clear(self, kind: Optional[RecordKind] = None) -> None:
        for k in [kind] if kind else list(RecordKind):
            self._tables[k].clear()
            self._persist(k)


class JsonStore(MemoryStore):
    """Memory store flushed to ``<root>/<kind>.json`` after each write."""

    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        for kind in RecordKind:
            self._load(kind)

    def _path(self, kind: RecordKind) -> Path:
        return self.root / f"{kind.value}.json"

    def _load(self, kind: RecordKind) -> None:
        path = self._path(kind)
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to load %s: %s", path.name, exc)
            return

        table = self._tables[kind]
        for row in data.get("rows", []):
            if isinstance(row, dict) and isinstance(row.get("id"), int):
                table[row["id"]] = row
        highest = max(table, default=0)
        self._next_ids[kind] = max(int(data.get("next_id", 1)), highest + 1)

    def _persist(self, kind: RecordKind) -> None:
        table = self._tables[kind]
        data = {
            "next_id": self._next_ids[kind],
            "rows": [table[i] for i in sorted(table)],
        }
        self._path(kind).write_text(json.dumps(data, indent=2), encoding="utf-8")


def open_store(backend: str, root: Optional[Path] = None) -> LocalStore:
    """Factory for the configured store backend.

    Raises:
        ValueError: If the backend name is unknown or needs a root.
    """
    if backend == "memory":
        return MemoryStore()
    if backend == "json":
        if root is None:
            raise ValueError("json store needs a root directory")
        return JsonStore(root)
    raise ValueError(f"Unsupported store backend: {backend}")
