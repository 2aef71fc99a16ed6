"""
Record synchronization between the local store and the SaveKeep server.
"""

from .engine import SyncEngine
from .models import NOT_RUN, DownloadReport, SyncReport, SyncState, UploadReport
from .wire import decode_download, encode_upload

__all__ = [
    "NOT_RUN",
    "DownloadReport",
    "SyncEngine",
    "SyncReport",
    "SyncState",
    "UploadReport",
    "decode_download",
    "encode_upload",
]
