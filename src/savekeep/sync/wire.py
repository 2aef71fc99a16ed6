"""
Wire shapes -- how records look on their way to and from the server.

Local records keep millisecond stamps, a 0/1 archive flag and
structured ``paths``/``slots``. On the wire the keys are camelCase,
stamps are ISO-8601, ``archived`` is a boolean and the structured
fields travel as JSON text. The server's own ``id`` lands in the local
``remote_id`` slot on the way back; the local ``id`` is never sent.

    encode_upload(record)       ->  dict ready for ``api/sync/up``
    decode_download(kind, raw)  ->  Record with ``id == -1``

Both raise ``RecordValidationError`` for a record that does not fit
its shape so the caller can drop it and carry on with the batch.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from ..errors import RecordValidationError
from ..models import (
    EPOCH,
    GamePath,
    Record,
    RecordKind,
    datetime_to_ms,
    is_uuid,
    ms_to_datetime,
)


def _require_uuid(value: str) -> str:
    if not is_uuid(value):
        raise ValueError("must be a valid uuid")
    return value


class _WireRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uuid: str
    archived: bool
    archived_at: datetime = EPOCH
    updated_at: datetime
    created_at: datetime

    @field_validator("uuid")
    @classmethod
    def _check_uuid(cls, value: str) -> str:
        return _require_uuid(value)

    @field_validator("archived_at", "updated_at", "created_at", mode="before")
    @classmethod
    def _from_ms(cls, value: Any) -> Any:
        # Plain ints are local millisecond stamps, never epoch seconds.
        if isinstance(value, int) and not isinstance(value, bool):
            return ms_to_datetime(value)
        return value


# --- upload ---


class GameUpload(_WireRecord):
    name: str
    shortname: str = ""
    paths: list[GamePath] = Field(default_factory=list)

    @field_serializer("paths")
    def _paths_as_text(self, paths: list[GamePath]) -> str:
        return json.dumps([p.model_dump(exclude_none=True) for p in paths])


class CharUpload(_WireRecord):
    name: str
    game_id: str
    slots: list[str] = Field(default_factory=list)

    @field_validator("game_id")
    @classmethod
    def _check_game(cls, value: str) -> str:
        return _require_uuid(value)

    @field_serializer("slots")
    def _slots_as_text(self, slots: list[str]) -> str:
        return json.dumps(slots)


class SaveUpload(_WireRecord):
    name: str
    description: str = ""
    game_version: str = ""
    game_id: str
    char_id: str
    data: str = Field(min_length=1)
    size: int = Field(ge=0)
    hash: str = Field(min_length=1)

    @field_validator("game_id", "char_id")
    @classmethod
    def _check_refs(cls, value: str) -> str:
        return _require_uuid(value)


UPLOAD_SHAPES: dict[RecordKind, type[_WireRecord]] = {
    RecordKind.GAMES: GameUpload,
    RecordKind.CHARS: CharUpload,
    RecordKind.SAVES: SaveUpload,
}


# --- download ---


class _Download(_WireRecord):
    remote_id: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("id", "remoteId", "remote_id"),
    )


def _json_text(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class GameDownload(_Download):
    name: str
    shortname: str = ""
    paths: list[GamePath] = Field(default_factory=list)

    @field_validator("paths", mode="before")
    @classmethod
    def _parse_paths(cls, value: Any) -> Any:
        return _json_text(value)


class CharDownload(_Download):
    name: str
    game_id: str
    slots: list[str] = Field(default_factory=list)

    @field_validator("slots", mode="before")
    @classmethod
    def _parse_slots(cls, value: Any) -> Any:
        return _json_text(value)


class SaveDownload(_Download):
    name: str
    description: str = ""
    game_version: str = ""
    game_id: str
    char_id: str
    data: str
    size: int = 0
    hash: str


DOWNLOAD_SHAPES: dict[RecordKind, type[_Download]] = {
    RecordKind.GAMES: GameDownload,
    RecordKind.CHARS: CharDownload,
    RecordKind.SAVES: SaveDownload,
}


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(map(str, e['loc'])) or 'record'}: {e['msg']}"
        for e in exc.errors()
    )


def encode_upload(record: Record) -> dict[str, Any]:
    """Render a local record in its upload shape.

    Raises:
        RecordValidationError: If the record does not fit the shape.
    """
    shape = UPLOAD_SHAPES[record.kind]
    try:
        wire = shape.model_validate(record.model_dump())
    except ValidationError as exc:
        raise RecordValidationError(
            f"{record.kind.label} {record.uuid}: {_describe(exc)}"
        ) from exc
    return wire.model_dump(mode="json", by_alias=True)


def decode_download(kind: RecordKind, raw: Any) -> Record:
    """Turn one downloaded server record into a local record.

    The returned record has ``id == -1``; the caller re-derives the
    local id by uuid.

    Raises:
        RecordValidationError: If *raw* does not fit the shape.
    """
    label = raw.get("uuid", "?") if isinstance(raw, dict) else "?"
    try:
        wire = DOWNLOAD_SHAPES[kind].model_validate(raw)
        fields = wire.model_dump(exclude={"remote_id"})
        fields.update(
            archived=int(wire.archived),
            archived_at=datetime_to_ms(wire.archived_at),
            updated_at=datetime_to_ms(wire.updated_at),
            created_at=datetime_to_ms(wire.created_at),
            remote_id=wire.remote_id,
        )
        return kind.model.model_validate(fields)
    except ValidationError as exc:
        raise RecordValidationError(
            f"{kind.label} {label}: {_describe(exc)}"
        ) from exc
