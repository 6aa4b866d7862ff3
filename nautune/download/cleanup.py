"""
Storage cleanup policies for downloaded tracks.

Cleanup is always explicit: nothing here runs in the background. Each
policy picks completed downloads and deletes them through the manager
(record and file), ignoring owners.

Policies:
    - cleanup_older_than: completed more than N days ago
    - free_bytes: the fewest items that free at least N bytes
    - remove_by_album / remove_by_artist: explicit selection
    - enforce_storage_limit: oldest first until under the ceiling
    - clear_all: every completed download

Usage:
    result = await free_bytes(manager, 500 * 1024 * 1024)
    print(f"Removed {len(result.removed)} tracks, freed {result.freed_bytes} bytes")
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from nautune.core.exceptions import PreconditionError
from nautune.core.logger import get_logger
from nautune.download.manager import DownloadItem, DownloadManager


logger = get_logger(__name__)


@dataclass
class CleanupResult:
    """Track ids removed and the bytes they occupied."""
    removed: list[str] = field(default_factory=list)
    freed_bytes: int = 0

    @property
    def count(self) -> int:
        return len(self.removed)


def _item_size(item: DownloadItem) -> int:
    return item.total_bytes or 0


def _completed_time(item: DownloadItem) -> datetime:
    stamp = item.completed_at or item.queued_at
    if not stamp:
        return datetime.min.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(stamp)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def _remove(manager: DownloadManager, items: list[DownloadItem], reason: str) -> CleanupResult:
    result = CleanupResult()
    for item in items:
        size = _item_size(item)
        freed_on_disk = await manager.delete(item.track_id)
        result.removed.append(item.track_id)
        result.freed_bytes += freed_on_disk or size

    if result.removed:
        logger.info(f"Cleanup ({reason}): removed {result.count} tracks, freed {result.freed_bytes} bytes")
    else:
        logger.debug(f"Cleanup ({reason}): nothing to remove")
    return result


async def cleanup_older_than(
    manager: DownloadManager, days: int, now: datetime | None = None
) -> CleanupResult:
    """
    Remove downloads completed more than `days` days ago.

    Raises:
        PreconditionError: If days is negative.
    """
    if days < 0:
        raise PreconditionError("days must be non-negative", details={"days": days})

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)

    stale = [item for item in manager.completed_items() if _completed_time(item) < cutoff]
    return await _remove(manager, stale, f"older than {days} days")


async def free_bytes(manager: DownloadManager, target_bytes: int) -> CleanupResult:
    """
    Free at least target_bytes with as few deletions as possible.

    Largest files go first: the k largest items are the k items with the
    biggest total, so stopping as soon as the target is reached removes
    the minimum count. When everything together is smaller than the
    target, everything is removed.
    """
    if target_bytes <= 0:
        return CleanupResult()

    candidates = sorted(
        manager.completed_items(),
        key=lambda item: (-_item_size(item), item.track_id)
    )

    selected = []
    total = 0
    for item in candidates:
        if total >= target_bytes:
            break
        selected.append(item)
        total += _item_size(item)

    return await _remove(manager, selected, f"free {target_bytes} bytes")


async def remove_by_album(manager: DownloadManager, album_id: str) -> CleanupResult:
    """Remove every downloaded track of an album (matched by album id, then album name)."""
    selected = [
        item for item in manager.completed_items()
        if (item.track.album_id or item.track.album) == album_id
    ]
    return await _remove(manager, selected, f"album {album_id}")


async def remove_by_artist(manager: DownloadManager, artist: str) -> CleanupResult:
    """Remove every downloaded track credited to an artist, case-insensitive."""
    needle = artist.lower()
    selected = [
        item for item in manager.completed_items()
        if needle in (a.lower() for a in item.track.artists)
        or item.track.display_artist.lower() == needle
    ]
    return await _remove(manager, selected, f"artist {artist}")


async def clear_all(manager: DownloadManager) -> CleanupResult:
    """Remove every completed download, whatever its owners or age."""
    return await _remove(manager, manager.completed_items(), "clear all")


async def enforce_storage_limit(manager: DownloadManager, limit_bytes: int) -> CleanupResult:
    """
    Remove the oldest downloads until the total is within limit_bytes.

    A limit of 0 (or less) means unlimited.
    """
    if limit_bytes <= 0:
        return CleanupResult()

    total = manager.total_bytes()
    if total <= limit_bytes:
        return CleanupResult()

    selected = []
    for item in sorted(manager.completed_items(), key=_completed_time):
        if total <= limit_bytes:
            break
        selected.append(item)
        total -= _item_size(item)

    return await _remove(manager, selected, f"storage limit {limit_bytes} bytes")
