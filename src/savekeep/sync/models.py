"""
Sync data models -- reports and persisted state for the sync system.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..session import SessionState

NOT_RUN = -1
"""Count reported by a half that did not run. Means retry later, not zero."""


class UploadReport(BaseModel):
    """Outcome of one upload half."""

    accepted: int = NOT_RUN
    sent: int = 0
    invalid: list[str] = Field(default_factory=list)
    errors: list[Any] = Field(default_factory=list)
    state: Optional[SessionState] = None

    @property
    def ran(self) -> bool:
        return self.accepted != NOT_RUN


class DownloadReport(BaseModel):
    """Outcome of one download half.

    ``downloaded`` counts records written locally; ``stale`` counts
    records skipped because the local copy was newer.
    """

    downloaded: int = NOT_RUN
    received: int = 0
    stale: int = 0
    invalid: list[str] = Field(default_factory=list)
    state: Optional[SessionState] = None

    @property
    def ran(self) -> bool:
        return self.downloaded != NOT_RUN


class SyncReport(BaseModel):
    """Outcome of a combined sync."""

    cutoff: int
    up: UploadReport
    down: DownloadReport
    state: Optional[SessionState] = None

    @property
    def uploaded(self) -> int:
        return self.up.accepted

    @property
    def downloaded(self) -> int:
        """Downloaded count as reported to the user.

        For a non-zero cutoff the server echoes back what was just
        uploaded, so those are subtracted. A full resync reports the
        raw total.
        """
        down = self.down.downloaded
        if down == NOT_RUN or self.cutoff == 0 or self.up.accepted == NOT_RUN:
            return down
        return down - self.up.accepted


class SyncState(BaseModel):
    """Current sync state persisted to disk."""

    last_up: Optional[datetime] = None
    last_down: Optional[datetime] = None
    up_count: int = 0
    down_count: int = 0
    records_uploaded: int = 0
    records_downloaded: int = 0
    last_error: Optional[str] = None
