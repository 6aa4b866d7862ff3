"""
Download manager for nautune.

This module keeps the download index and the audio files on disk in
step. Downloads move through:

    queued -> downloading -> completed | failed

Scheduling:
    - Items start in FIFO order.
    - At most max_concurrent items are in the downloading state at any
      instant (1..10, default 3).
    - cancel() releases the slot immediately: the record disappears and
      the next queued item is marked downloading before cancel() returns.

Ownership:
    Every download remembers who asked for it (an album id, a playlist id,
    "user"). remove_reference() drops one owner and deletes the track when
    no owner is left. delete() ignores owners.

Files:
    tracks/{track_id}{ext}, written through a .part file that is renamed
    on success. The real duration is read back with mutagen and replaces
    the server value. When an artwork fetcher is given, the album (or
    track) image is cached as tracks/artwork/{track_id}.jpg so offline
    browsing never needs the server. A missing image never fails a track.

Blocking work:
    Chunk writes, mutagen parsing and the index updates of a transfer run
    in worker threads. The bookkeeping that decides which item holds a
    slot (enqueue, cancel, _pump) stays on the event loop so that it is
    atomic with the scheduling decision; each of those is a single-row
    SQLite statement.

Usage:
    manager = DownloadManager(
        index,
        lambda track: client.stream_download(track.id),
        downloads_dir,
        artwork_fetcher=client.fetch_image,
    )
    await manager.download_album(client, album_id)
    await manager.wait_idle()
"""

import asyncio
import mimetypes
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncContextManager, Awaitable, Callable

import mutagen
from mutagen import MutagenError

from nautune.core.config import MAX_CONCURRENT_DOWNLOADS, MIN_CONCURRENT_DOWNLOADS
from nautune.core.database import DownloadIndex
from nautune.core.exceptions import DownloadError, JellyfinError, NautuneError
from nautune.core.logger import get_logger, log_download_failure
from nautune.jellyfin.client import DownloadStream, JellyfinClient
from nautune.jellyfin.models import TICKS_PER_SECOND, Track


logger = get_logger(__name__)

DEFAULT_EXTENSION = ".audio"
PARTIAL_SUFFIX = ".part"
ARTWORK_DIRNAME = "artwork"

# Progress is written to the index at most once per this many bytes
PROGRESS_STEP_BYTES = 512 * 1024

Fetcher = Callable[[Track], AsyncContextManager[DownloadStream]]
ArtworkFetcher = Callable[[str], Awaitable[bytes]]


class DownloadStatus(Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadItem:
    """
    Snapshot of one download record.

    Attributes:
        track: Track metadata captured at enqueue time.
        status: Current status.
        file_path: Audio file, set once completed.
        artwork_path: Cached artwork, set once completed when the server has one.
        total_bytes: Expected (or final) size, if known.
        downloaded_bytes: Bytes received so far.
        error_message: Last failure reason.
        queued_at: ISO timestamp of the last enqueue.
        completed_at: ISO timestamp of completion.
    """
    track: Track
    status: DownloadStatus
    file_path: Path | None = None
    artwork_path: Path | None = None
    total_bytes: int | None = None
    downloaded_bytes: int = 0
    error_message: str | None = None
    queued_at: str | None = None
    completed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "DownloadItem":
        return cls(
            track=Track.from_database_dict(row),
            status=DownloadStatus(row["status"]),
            file_path=Path(row["file_path"]) if row.get("file_path") else None,
            artwork_path=Path(row["artwork_path"]) if row.get("artwork_path") else None,
            total_bytes=row.get("total_bytes"),
            downloaded_bytes=row.get("downloaded_bytes") or 0,
            error_message=row.get("error_message"),
            queued_at=row.get("queued_at"),
            completed_at=row.get("completed_at"),
        )

    @property
    def track_id(self) -> str:
        return self.track.id

    @property
    def progress(self) -> float:
        """Fraction in 0..1; 1.0 once completed, 0.0 when the size is unknown."""
        if self.status is DownloadStatus.COMPLETED:
            return 1.0
        if not self.total_bytes:
            return 0.0
        return min(self.downloaded_bytes / self.total_bytes, 1.0)


def clamp_concurrency(value: int) -> int:
    return max(MIN_CONCURRENT_DOWNLOADS, min(MAX_CONCURRENT_DOWNLOADS, value))


def read_duration_ticks(path: Path) -> int | None:
    """Duration of an audio file in 100 ns ticks, or None if mutagen cannot tell."""
    try:
        audio = mutagen.File(path)
    except (MutagenError, OSError) as e:
        logger.debug(f"Could not read duration of {path.name}: {e}")
        return None
    if audio is None or audio.info is None or not getattr(audio.info, "length", None):
        return None
    return int(audio.info.length * TICKS_PER_SECOND)


class DownloadManager:
    """
    Queue and bounded-concurrency scheduler for track downloads.

    All public coroutines must be awaited from one event loop. Scheduling
    decisions are made synchronously, between awaits, so the active set
    and the index never disagree.
    """

    def __init__(
        self,
        index: DownloadIndex,
        fetcher: Fetcher,
        download_dir: Path,
        max_concurrent: int = 3,
        artwork_fetcher: ArtworkFetcher | None = None,
    ) -> None:
        """
        Args:
            index: Download index holding the records.
            fetcher: Returns an async context manager yielding a
                     DownloadStream for a track.
            download_dir: Directory for audio files, created if missing.
            max_concurrent: Simultaneous transfers, clamped to 1..10.
            artwork_fetcher: Returns the image bytes of an item id; no
                             artwork is cached without it.
        """
        self._index = index
        self._fetcher = fetcher
        self._artwork_fetcher = artwork_fetcher
        self.download_dir = download_dir
        self.artwork_dir = download_dir / ARTWORK_DIRNAME
        self._max_concurrent = clamp_concurrency(max_concurrent)

        self._queue: deque[Track] = deque()
        self._active: dict[str, asyncio.Task] = {}
        self._idle = asyncio.Event()
        self._idle.set()

        self.download_dir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # State
    # =========================================================================

    @property
    def index(self) -> DownloadIndex:
        return self._index

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def get(self, track_id: str) -> DownloadItem | None:
        row = self._index.get_download(track_id)
        return DownloadItem.from_row(row) if row else None

    def items(self, status: DownloadStatus | None = None) -> list[DownloadItem]:
        rows = self._index.list_downloads(status.value if status else None)
        return [DownloadItem.from_row(row) for row in rows]

    def completed_items(self) -> list[DownloadItem]:
        return self.items(DownloadStatus.COMPLETED)

    def owners(self, track_id: str) -> set[str]:
        return self._index.get_owners(track_id)

    def total_bytes(self) -> int:
        return self._index.total_bytes()

    def artwork_file(self, track_id: str) -> Path | None:
        """Cached artwork of a completed download, if it is on disk."""
        item = self.get(track_id)
        if item is None or item.artwork_path is None or not item.artwork_path.exists():
            return None
        return item.artwork_path

    def set_max_concurrent(self, value: int) -> None:
        """Change the concurrency window; waiting items start right away if it grew."""
        self._max_concurrent = clamp_concurrency(value)
        logger.debug(f"Max concurrent downloads: {self._max_concurrent}")
        self._pump()

    # =========================================================================
    # Queue operations
    # =========================================================================

    async def enqueue(self, track: Track, owner_id: str | None = None) -> DownloadItem:
        """
        Request a track download.

        A new track is queued. A failed one is queued again. A track that
        is already queued, downloading or completed only gains the owner.
        """
        row = self._index.get_download(track.id)

        if row is None:
            self._index.upsert_download(track.to_database_dict())
            self._queue.append(track)
            logger.debug(f"Queued: {track.display_artist} - {track.name}")
        elif row["status"] == DownloadStatus.FAILED.value:
            self._index.upsert_download(track.to_database_dict())
            self._index.mark_queued(track.id)
            self._queue.append(track)
            logger.debug(f"Requeued failed download: {track.display_artist} - {track.name}")

        if owner_id:
            self._index.add_owner(track.id, owner_id)

        self._pump()
        return self.get(track.id)

    async def download_album(self, client: JellyfinClient, album_id: str) -> list[DownloadItem]:
        """Queue every track of an album, owned by the album."""
        tracks = await client.fetch_album_tracks(album_id)
        logger.info(f"Queueing {len(tracks)} tracks of album {album_id}")
        return [await self.enqueue(track, owner_id=album_id) for track in tracks]

    async def download_playlist(
        self, client: JellyfinClient, playlist_id: str, name: str
    ) -> list[DownloadItem]:
        """
        Queue every track of a playlist and save a snapshot of its order,
        so the playlist can be browsed offline.
        """
        tracks = await client.fetch_playlist_tracks(playlist_id)
        self._index.save_playlist_snapshot(playlist_id, name, [t.id for t in tracks])
        logger.info(f"Queueing {len(tracks)} tracks of playlist '{name}'")
        return [await self.enqueue(track, owner_id=playlist_id) for track in tracks]

    async def cancel(self, track_id: str) -> bool:
        """
        Cancel a queued or in-flight download and forget it.

        Returns:
            True if something was cancelled.
        """
        for track in self._queue:
            if track.id == track_id:
                self._queue.remove(track)
                self._index.delete_download(track_id)
                logger.info(f"Cancelled queued download: {track.name}")
                self._pump()
                return True

        task = self._active.pop(track_id, None)
        if task is None:
            return False

        task.cancel()
        self._index.delete_download(track_id)
        logger.info(f"Cancelled download: {track_id}")
        self._pump()
        return True

    async def retry(self, track_id: str) -> bool:
        """Queue a failed download again. Returns False for any other status."""
        row = self._index.get_download(track_id)
        if row is None or row["status"] != DownloadStatus.FAILED.value:
            return False

        self._index.mark_queued(track_id)
        self._queue.append(Track.from_database_dict(row))
        self._pump()
        return True

    async def delete(self, track_id: str) -> int:
        """
        Remove a download record, its audio file and its artwork, whatever
        its owners.

        Returns:
            Bytes freed on disk.
        """
        row = self._index.get_download(track_id)
        if row is None:
            return 0

        if row["status"] in (DownloadStatus.QUEUED.value, DownloadStatus.DOWNLOADING.value):
            await self.cancel(track_id)

        paths = [Path(row[column]) for column in ("file_path", "artwork_path") if row.get(column)]
        freed = await asyncio.to_thread(_unlink_all, paths)
        self._index.delete_download(track_id)
        logger.debug(f"Deleted download: {row.get('name')} ({freed} bytes)")
        return freed

    async def remove_reference(self, track_id: str, owner_id: str) -> bool:
        """
        Drop one owner of a download.

        Returns:
            True if that was the last owner and the download was deleted.
        """
        self._index.remove_owner(track_id, owner_id)
        if self._index.get_owners(track_id):
            return False
        if self._index.get_download(track_id) is None:
            return False
        await self.delete(track_id)
        return True

    async def resume_pending(self) -> int:
        """
        Queue records left queued or downloading by a previous run.

        Returns:
            Number of downloads queued.
        """
        queued_ids = {t.id for t in self._queue} | set(self._active)
        resumed = 0
        for row in self._index.list_downloads():
            if row["status"] not in (DownloadStatus.QUEUED.value, DownloadStatus.DOWNLOADING.value):
                continue
            if row["track_id"] in queued_ids:
                continue
            self._index.mark_queued(row["track_id"])
            self._queue.append(Track.from_database_dict(row))
            resumed += 1
        if resumed:
            logger.info(f"Resuming {resumed} pending downloads")
        self._pump()
        return resumed

    def verify_downloads(self) -> list[str]:
        """
        Drop completed records whose file is gone.

        Returns:
            Track ids removed from the index.
        """
        removed = []
        for row in self._index.completed_downloads():
            file_path = row.get("file_path")
            if file_path and Path(file_path).exists():
                continue
            self._index.delete_download(row["track_id"])
            removed.append(row["track_id"])
        if removed:
            logger.warning(f"Removed {len(removed)} downloads whose files are missing")
        return removed

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or downloading."""
        await self._idle.wait()

    async def close(self) -> None:
        """
        Stop all transfers.

        In-flight downloads go back to queued so resume_pending() picks
        them up next time; partial files are removed.
        """
        tasks = list(self._active.items())
        self._active.clear()
        self._queue.clear()
        for track_id, task in tasks:
            task.cancel()
            self._index.mark_queued(track_id)
        if tasks:
            await asyncio.gather(*(task for _, task in tasks), return_exceptions=True)
        self._idle.set()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _pump(self) -> None:
        while self._queue and len(self._active) < self._max_concurrent:
            track = self._queue.popleft()
            self._index.mark_downloading(track.id)
            self._active[track.id] = asyncio.create_task(
                self._transfer(track), name=f"download-{track.id}"
            )

        if self._active or self._queue:
            self._idle.clear()
        else:
            self._idle.set()

    def _target_path(self, track: Track, content_type: str | None) -> Path:
        extension = None
        if content_type:
            extension = mimetypes.guess_extension(content_type.split(";")[0].strip())
        return self.download_dir / f"{track.id}{extension or DEFAULT_EXTENSION}"

    async def _transfer(self, track: Track) -> None:
        written: list[Path] = []
        try:
            async with self._fetcher(track) as stream:
                target = self._target_path(track, stream.content_type)
                partial = target.with_name(target.name + PARTIAL_SUFFIX)
                written.append(partial)
                received = await self._write_stream(track, stream, partial)

            if received == 0:
                raise DownloadError("Server sent an empty file", details={"track_id": track.id})
            if stream.total_bytes is not None and received != stream.total_bytes:
                raise DownloadError(
                    f"Transfer ended after {received} of {stream.total_bytes} bytes",
                    details={"track_id": track.id, "received": received, "expected": stream.total_bytes}
                )

            await asyncio.to_thread(partial.replace, target)
            written = [target]

            ticks = await asyncio.to_thread(read_duration_ticks, target)
            if ticks:
                track = track.with_run_time_ticks(ticks)

            artwork = await self._save_artwork(track)
            if artwork is not None:
                written.append(artwork)

            # No await between here and the end: a cancel either lands
            # before this point or finds the record already completed.
            self._index.mark_completed(
                track.id,
                str(target),
                received,
                run_time_ticks=track.run_time_ticks,
                artwork_path=str(artwork) if artwork else None,
            )
            logger.info(f"Downloaded: {track.display_artist} - {track.name}")

        except asyncio.CancelledError:
            _unlink_all(written)
            raise
        except (NautuneError, OSError) as e:
            _unlink_all(written)
            self._fail(track, str(e))
        except Exception as e:
            _unlink_all(written)
            logger.error(f"Unexpected error downloading {track.name}: {e}", exc_info=True)
            self._fail(track, f"Unexpected error: {e}")
        finally:
            if self._active.get(track.id) is asyncio.current_task():
                del self._active[track.id]
                self._pump()

    async def _write_stream(self, track: Track, stream: DownloadStream, partial: Path) -> int:
        received = 0
        reported = 0
        with open(partial, "wb") as f:
            async for chunk in stream.chunks:
                await asyncio.to_thread(f.write, chunk)
                received += len(chunk)
                if received - reported >= PROGRESS_STEP_BYTES:
                    await asyncio.to_thread(
                        self._index.update_progress, track.id, received, stream.total_bytes
                    )
                    reported = received
        return received

    async def _save_artwork(self, track: Track) -> Path | None:
        """Cache the track's artwork; failures are logged and ignored."""
        item_id = artwork_item_id(track)
        if self._artwork_fetcher is None or item_id is None:
            return None

        target = self.artwork_dir / f"{track.id}.jpg"
        try:
            data = await self._artwork_fetcher(item_id)
            if not data:
                return None
            await asyncio.to_thread(self.artwork_dir.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except (JellyfinError, OSError) as e:
            logger.warning(f"No artwork cached for {track.name}: {e}")
            target.unlink(missing_ok=True)
            return None
        return target

    def _fail(self, track: Track, message: str) -> None:
        if self._index.get_download(track.id) is None:
            return
        self._index.mark_failed(track.id, message)
        log_download_failure(logger, track.id, track.name, track.display_artist, message)


def artwork_item_id(track: Track) -> str | None:
    """Item whose primary image represents the track: its album, else itself."""
    if track.album_id and track.album_primary_image_tag:
        return track.album_id
    if track.primary_image_tag:
        return track.id
    return None


def _unlink_all(paths: list[Path]) -> int:
    """Delete files that exist and return the bytes they occupied."""
    freed = 0
    for path in paths:
        if path.exists():
            freed += path.stat().st_size
            path.unlink(missing_ok=True)
    return freed
