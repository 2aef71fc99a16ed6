"""
Consistency -- referential checks over the local store.

References between records are advisory: a character should point at
an active game, a save at an active game and character, and a filled
slot at an active save. Commits only warn about broken references; the
batch pass below reports them and, when asked, repairs or deletes the
offending rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .audit import audit_event
from .models import Character, Record, RecordKind, Save, is_uuid
from .store import LocalStore

logger = logging.getLogger("savekeep.consistency")


@dataclass(frozen=True)
class Issue:
    """One problem with one record. ``path`` names the field."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class Snapshot:
    """Uuids of every valid, non-archived record, per collection."""

    games: set[str] = field(default_factory=set)
    chars: set[str] = field(default_factory=set)
    saves: set[str] = field(default_factory=set)

    @classmethod
    async def build(cls, store: LocalStore) -> Snapshot:
        snapshot = cls()
        for kind in RecordKind:
            uuids = {r.uuid for r in await store.query(kind, archived=False)}
            setattr(snapshot, kind.value, uuids)
        return snapshot


@dataclass
class RepairReport:
    fixed: int = 0
    deleted: int = 0
    per_kind: dict[str, dict[str, int]] = field(default_factory=dict)


def _schema_issues(exc: ValidationError) -> list[Issue]:
    return [
        Issue(".".join(map(str, e["loc"])) or "record", e["msg"])
        for e in exc.errors()
    ]


def _reference_issues(record: Record, snapshot: Snapshot) -> list[Issue]:
    if record.is_archived:
        return []
    issues = []
    if isinstance(record, Character):
        if record.game_id not in snapshot.games:
            issues.append(Issue("game_id", "does not reference an active game"))
        for index, slot in enumerate(record.slots):
            if slot and slot not in snapshot.saves:
                issues.append(Issue(f"slots.{index}", "does not reference an active save"))
    elif isinstance(record, Save):
        if record.game_id not in snapshot.games:
            issues.append(Issue("game_id", "does not reference an active game"))
        if record.char_id not in snapshot.chars:
            issues.append(Issue("char_id", "does not reference an active character"))
    return issues


def check_row(kind: RecordKind, row: dict[str, Any], snapshot: Snapshot) -> list[Issue]:
    """Check a raw stored row: schema first, then references."""
    try:
        record = kind.model.model_validate(row)
    except ValidationError as exc:
        return _schema_issues(exc)
    return _reference_issues(record, snapshot)


def check_record(record: Record, snapshot: Snapshot) -> list[Issue]:
    """Check a record against its schema and the snapshot.

    Models do not validate on assignment, so the record is revalidated
    here. Archived records skip the reference checks.

    Returns:
        Every issue found; empty means consistent.
    """
    return check_row(record.kind, record.model_dump(), snapshot)


async def global_check(
    store: LocalStore,
) -> dict[str, list[tuple[dict[str, Any], list[Issue]]]]:
    """Check every stored row of every collection.

    Returns:
        ``{games, chars, saves}`` mapped to ``(row, issues)`` pairs for
        the rows that have issues.
    """
    snapshot = await Snapshot.build(store)
    report: dict[str, list[tuple[dict[str, Any], list[Issue]]]] = {}
    for kind in RecordKind:
        found = []
        for row in await store.rows(kind):
            issues = check_row(kind, row, snapshot)
            if issues:
                found.append((row, issues))
        report[kind.value] = found
    return report


def autofix(kind: RecordKind, row: dict[str, Any], snapshot: Snapshot) -> Optional[Record]:
    """Salvage what can be salvaged from a broken row.

    Starts from an empty record and copies over every field of *row*
    that is valid on its own. Slots that are not uuids, or point at
    missing saves, are emptied.

    Returns:
        The salvaged record, or None if even that does not validate.
    """
    model = kind.model
    fields = model().model_dump()
    row = dict(row)
    if kind is RecordKind.CHARS and isinstance(row.get("slots"), list):
        row["slots"] = [s if is_uuid(s) else "" for s in row["slots"]]
    for name, value in row.items():
        if name not in model.model_fields:
            continue
        try:
            model.model_validate({**fields, name: value})
        except ValidationError as exc:
            if any(e["loc"] and e["loc"][0] == name for e in exc.errors()):
                continue
        fields[name] = value

    try:
        record = model.model_validate(fields)
    except ValidationError:
        return None
    if isinstance(record, Character):
        record.slots = [s if s in snapshot.saves else "" for s in record.slots]
    return record


async def repair(store: LocalStore, home: Optional[Path] = None) -> RepairReport:
    """Fix or delete every row with issues.

    Collections are repaired parents first, and the snapshot is rebuilt
    before each one, so characters of a deleted game are themselves
    removed in the same pass.

    Args:
        store: Store to repair.
        home: SaveKeep home, for the audit log.
    """
    report = RepairReport()
    for kind in RecordKind:
        snapshot = await Snapshot.build(store)
        counts = {"fixed": 0, "deleted": 0}
        for row in await store.rows(kind):
            if not check_row(kind, row, snapshot):
                continue
            fixed = autofix(kind, row, snapshot)
            if fixed is not None and not check_record(fixed, snapshot):
                fixed.touch()
                await store.put(fixed)
                counts["fixed"] += 1
                logger.info("Repaired %s %s", kind.label, fixed.uuid)
            else:
                await store.delete(kind, row["id"])
                counts["deleted"] += 1
                logger.info("Deleted unrepairable %s %s", kind.label, row.get("uuid"))
        report.fixed += counts["fixed"]
        report.deleted += counts["deleted"]
        report.per_kind[kind.value] = counts

    if home is not None:
        audit_event(
            home, "REPAIR",
            f"Fixed {report.fixed}, deleted {report.deleted} records",
            metadata=report.per_kind,
        )
    return report
