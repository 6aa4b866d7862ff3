"""
Download module for nautune.

    - manager: Download queue with bounded concurrency
    - cleanup: Explicit storage cleanup policies
"""

from nautune.download.cleanup import (
    CleanupResult,
    clear_all,
    cleanup_older_than,
    enforce_storage_limit,
    free_bytes,
    remove_by_album,
    remove_by_artist,
)
from nautune.download.manager import DownloadItem, DownloadManager, DownloadStatus

__all__ = [
    "DownloadManager",
    "DownloadItem",
    "DownloadStatus",
    "CleanupResult",
    "cleanup_older_than",
    "free_bytes",
    "remove_by_album",
    "remove_by_artist",
    "enforce_storage_limit",
    "clear_all",
]
