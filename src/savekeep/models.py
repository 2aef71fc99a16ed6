"""
Pydantic models for the records SaveKeep keeps in sync.

Three kinds of record share one envelope: a local numeric ``id`` that
means nothing off-device, a client-generated ``uuid`` that is the only
identity surviving a full resync, an optional server ``remote_id``,
an archive tombstone, and millisecond ``created_at``/``updated_at``
stamps. ``updated_at`` drives both cutoff selection and last-write-wins.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid as uuid_lib
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import ClassVar, Literal, Optional

from pydantic import BaseModel, Field, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NEW_RECORD_ID = -1
"""Local id of a record that has never been inserted."""


def ms_to_datetime(ms: int) -> datetime:
    """Convert wall-clock milliseconds to an aware UTC datetime."""
    return EPOCH + timedelta(milliseconds=ms)


def datetime_to_ms(value: datetime) -> int:
    """Convert a datetime to wall-clock milliseconds (naive means UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return datetime_to_ms(datetime.now(timezone.utc))


def new_uuid() -> str:
    """A time-ordered (version 6) uuid with a random node.

    The timestamp is stored most significant bits first, so uuids made
    later on one device sort after earlier ones.
    """
    v1 = uuid_lib.uuid1(node=secrets.randbits(48) | 0x010000000000)
    value = (
        ((v1.time >> 12) << 80)
        | (0x6 << 76)
        | ((v1.time & 0x0FFF) << 64)
        | (v1.int & 0xFFFF_FFFF_FFFF_FFFF)
    )
    return str(uuid_lib.UUID(int=value))


def is_uuid(value: object) -> bool:
    """Check whether *value* is a string holding a valid uuid."""
    if not isinstance(value, str):
        return False
    try:
        uuid_lib.UUID(value)
    except ValueError:
        return False
    return True


def content_hash(data: str) -> str:
    """Hash a save payload. Two saves with the same payload hash alike."""
    return hashlib.md5(data.encode("utf-8")).hexdigest()


class RecordKind(str, Enum):
    """The three synchronized collections, named as on the wire."""

    GAMES = "games"
    CHARS = "chars"
    SAVES = "saves"

    @property
    def model(self) -> type[Record]:
        return MODELS[self]

    @property
    def label(self) -> str:
        """Singular human label (game, char, save)."""
        return self.value[:-1]


class Record(BaseModel):
    """Envelope shared by games, characters and saves."""

    kind: ClassVar[RecordKind]

    id: int = NEW_RECORD_ID
    uuid: str = Field(default_factory=new_uuid)
    remote_id: Optional[int] = None
    archived: Literal[0, 1] = 0
    archived_at: int = Field(default=0, ge=0)
    updated_at: int = Field(default_factory=now_ms, ge=1)
    created_at: int = Field(default_factory=now_ms, ge=1)

    @field_validator("uuid")
    @classmethod
    def _check_uuid(cls, value: str) -> str:
        if not is_uuid(value):
            raise ValueError("must be a valid uuid")
        return value

    @property
    def is_new(self) -> bool:
        return self.id == NEW_RECORD_ID

    @property
    def is_archived(self) -> bool:
        return bool(self.archived)

    def archive(self, at: Optional[int] = None) -> None:
        """Set the tombstone. Does not touch dependents."""
        self.archived = 1
        self.archived_at = at or now_ms()

    def unarchive(self) -> None:
        self.archived = 0
        self.archived_at = 0

    def touch(self, at: Optional[int] = None) -> None:
        self.updated_at = at or now_ms()


class GamePath(BaseModel):
    """One launch location of a game."""

    url: str = Field(min_length=1)
    name: Optional[str] = None


class Game(Record):
    """A game the user keeps saves for."""

    kind: ClassVar[RecordKind] = RecordKind.GAMES

    name: str = ""
    shortname: str = ""
    paths: list[GamePath] = Field(default_factory=list)


class Character(Record):
    """A playthrough of a game, holding ordered save slots.

    A slot is either a save uuid or ``""`` for an empty slot.
    """

    kind: ClassVar[RecordKind] = RecordKind.CHARS

    name: str = ""
    game_id: str = ""
    slots: list[str] = Field(default_factory=list)

    @field_validator("slots")
    @classmethod
    def _check_slots(cls, slots: list[str]) -> list[str]:
        for index, slot in enumerate(slots):
            if slot and not is_uuid(slot):
                raise ValueError(f"slot {index} must be a save uuid or empty")
        return slots


class Save(Record):
    """A single save: an opaque payload plus what it belongs to."""

    kind: ClassVar[RecordKind] = RecordKind.SAVES

    name: str = ""
    description: str = ""
    game_version: str = ""
    game_id: str = ""
    char_id: str = ""
    data: str = Field(default="", min_length=1)
    size: int = 0
    hash: str = Field(default="", min_length=1)

    @classmethod
    def from_payload(
        cls,
        data: str,
        game_id: str,
        char_id: str,
        name: str = "",
        description: str = "No description",
        game_version: str = "vUNK",
    ) -> Save:
        """Build a new save from a raw payload, computing size and hash."""
        return cls(
            name=name,
            description=description,
            game_version=game_version,
            game_id=game_id,
            char_id=char_id,
            data=data,
            size=len(data.encode("utf-8")),
            hash=content_hash(data),
        )


MODELS: dict[RecordKind, type[Record]] = {
    RecordKind.GAMES: Game,
    RecordKind.CHARS: Character,
    RecordKind.SAVES: Save,
}
