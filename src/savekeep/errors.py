"""
Error taxonomy shared by the store, the channel, the session manager
and the sync engine.

Exceptions are raised close to the wire (channel) or the disk (store).
The session manager and the sync engine catch them at their boundary
and turn them into typed results, so nothing here ever reaches a
top-level crash during a sync.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of a failure, carried on every typed result."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    CONNECTIVITY = "connectivity"
    OWNERSHIP = "ownership"
    CONSISTENCY = "consistency"


class SaveKeepError(Exception):
    """Base class for all SaveKeep errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str = "", *, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status


class RecordValidationError(SaveKeepError):
    """A record does not match the shape it is being read or written as."""

    kind = ErrorKind.VALIDATION


class ConnectivityError(SaveKeepError):
    """Server unreachable or answering 5xx. Retryable, never clears tokens."""

    kind = ErrorKind.CONNECTIVITY


class ConsistencyError(SaveKeepError):
    """Dangling reference or duplicate identity in the local store."""

    kind = ErrorKind.CONSISTENCY
