"""
Audit log -- append-only JSONL record of auth, sync and archive events.

One JSON object per line: timestamp, event type, detail, the host
that wrote it and, when known, the user. Logging tells you what the
process did; the audit log tells you what happened to your data.
"""

from __future__ import annotations

import json
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    user: Optional[str] = None
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    user: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: SaveKeep home directory.
        event_type: Event category (LOGIN, LOGOUT, REFRESH, FORCED_LOGOUT,
            SYNC_UP, SYNC_DOWN, ARCHIVE, CLEANUP, REPAIR, ...).
        detail: Human-readable event description.
        user: Username the event concerns, if any.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    home.mkdir(parents=True, exist_ok=True)
    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        user=user,
        metadata=metadata,
    )
    with (home / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
        f.write(entry.model_dump_json() + "\n")
    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read and parse the audit log.

    Lines that do not parse are kept as ``UNPARSED`` entries rather
    than dropped.

    Args:
        home: SaveKeep home directory.
        limit: Maximum entries to return (0 = all, most recent last).
    """
    audit_log = home / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except (json.JSONDecodeError, ValidationError):
            entries.append(AuditEntry(event_type="UNPARSED", detail=line))

    if limit > 0:
        entries = entries[-limit:]
    return entries
