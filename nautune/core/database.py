"""
Thread-safe SQLite download index for nautune.

The index is the only persistent state of the offline side: one row per
downloaded (or queued) track, the owners that asked for it, and snapshots
of playlists taken while online so they can be browsed offline.

Schema:
    downloads:                 One row per track id (metadata, transfer state, artwork file)
    download_owners:           Who requested a track (album id, playlist id, "user")
    playlist_snapshots:        Playlist metadata captured while online
    playlist_snapshot_tracks:  Ordered track ids of each snapshot

Statuses:
    queued -> downloading -> completed | failed

Usage:
    index = DownloadIndex(output_dir / "downloads.db")

    index.upsert_download(track.to_database_dict())
    index.mark_downloading(track.id)
    index.mark_completed(track.id, file_path, total_bytes)

    for row in index.completed_downloads():
        print(row["name"], row["file_path"])
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from nautune.core.exceptions import DatabaseError


DATABASE_VERSION = 2

STATUS_QUEUED = "queued"
STATUS_DOWNLOADING = "downloading"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

VALID_STATUSES = frozenset({STATUS_QUEUED, STATUS_DOWNLOADING, STATUS_COMPLETED, STATUS_FAILED})


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS downloads (
    track_id TEXT PRIMARY KEY,

    -- Jellyfin metadata captured at enqueue time
    name TEXT,
    artist TEXT,
    artists TEXT,  -- JSON array
    album TEXT,
    album_id TEXT,
    genres TEXT,  -- JSON array
    run_time_ticks INTEGER,
    index_number INTEGER,
    parent_index_number INTEGER,
    primary_image_tag TEXT,
    album_primary_image_tag TEXT,
    is_favorite INTEGER DEFAULT 0,
    play_count INTEGER DEFAULT 0,

    -- Transfer state
    status TEXT NOT NULL DEFAULT 'queued',
    file_path TEXT,
    artwork_path TEXT,
    total_bytes INTEGER,
    downloaded_bytes INTEGER DEFAULT 0,
    error_message TEXT,
    queued_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS download_owners (
    track_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    FOREIGN KEY (track_id) REFERENCES downloads(track_id) ON DELETE CASCADE,
    UNIQUE(track_id, owner_id)
);

CREATE TABLE IF NOT EXISTS playlist_snapshots (
    playlist_id TEXT PRIMARY KEY,
    name TEXT,
    snapshot_at TEXT
);

CREATE TABLE IF NOT EXISTS playlist_snapshot_tracks (
    playlist_id TEXT NOT NULL,
    track_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    FOREIGN KEY (playlist_id) REFERENCES playlist_snapshots(playlist_id) ON DELETE CASCADE,
    UNIQUE(playlist_id, position)
);

CREATE INDEX IF NOT EXISTS idx_downloads_status ON downloads(status);
CREATE INDEX IF NOT EXISTS idx_downloads_album ON downloads(album_id);
CREATE INDEX IF NOT EXISTS idx_owners_track ON download_owners(track_id);
CREATE INDEX IF NOT EXISTS idx_snapshot_tracks ON playlist_snapshot_tracks(playlist_id);
"""

_METADATA_COLUMNS = (
    "name", "artist", "artists", "album", "album_id", "genres",
    "run_time_ticks", "index_number", "parent_index_number",
    "primary_image_tag", "album_primary_image_tag", "is_favorite", "play_count",
)


class DownloadIndex:
    """
    Thread-safe SQLite download index.

    Uses a single persistent connection with thread locking for safety.
    All public methods acquire self._lock before executing. The offline
    repository calls into the index from worker threads (asyncio.to_thread),
    the download manager from the event loop thread.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._closed = False

        if not db_path.parent.exists():
            raise DatabaseError(
                f"Parent directory does not exist: {db_path.parent}",
                details={"path": str(db_path.parent)}
            )

        try:
            self._init_database()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to initialize download index: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get the persistent database connection as a context manager.

        The connection is created once and reused for all operations.

        Raises:
            DatabaseError: If the index has been closed.
        """
        if self._closed:
            raise DatabaseError(
                "Download index is closed",
                details={"path": str(self.db_path)}
            )
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Download index operation failed: {e}",
                details={"path": str(self.db_path), "original_error": str(e)}
            ) from e

    @property
    def is_open(self) -> bool:
        return not self._closed

    def close(self) -> None:
        """Close the database connection. Later calls raise DatabaseError."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
            self._closed = True

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (DATABASE_VERSION,))
            elif row[0] == 1:
                # Version 2 added cached artwork
                conn.execute("ALTER TABLE downloads ADD COLUMN artwork_path TEXT")
                conn.execute("UPDATE schema_version SET version = ?", (DATABASE_VERSION,))
            elif row[0] != DATABASE_VERSION:
                raise DatabaseError(
                    f"Download index version mismatch: expected {DATABASE_VERSION}, got {row[0]}",
                    details={"expected": DATABASE_VERSION, "actual": row[0]}
                )
            conn.commit()

    def _now_iso(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _serialize_row(self, data: dict[str, Any]) -> dict[str, Any]:
        """Convert Python types to SQLite-compatible values."""
        row = dict(data)

        for field in ["artists", "genres"]:
            if field in row and isinstance(row[field], (list, tuple)):
                row[field] = json.dumps(list(row[field]))

        if "is_favorite" in row and row["is_favorite"] is not None:
            row["is_favorite"] = 1 if row["is_favorite"] else 0

        return row

    def _deserialize_row(self, row: sqlite3.Row) -> dict[str, Any]:
        """Convert SQLite row to Python dict with proper types."""
        data = dict(row)

        for field in ["artists", "genres"]:
            if data.get(field) is not None:
                try:
                    data[field] = json.loads(data[field])
                except (json.JSONDecodeError, TypeError):
                    data[field] = []
            else:
                data[field] = []

        data["is_favorite"] = bool(data.get("is_favorite"))
        return data

    # =========================================================================
    # Download Records
    # =========================================================================

    def upsert_download(self, track_data: dict[str, Any], status: str = STATUS_QUEUED) -> None:
        """
        Create a download record or refresh its metadata.

        Existing rows keep their transfer state (status, file, sizes); only
        the Jellyfin metadata is updated.

        Args:
            track_data: Output of Track.to_database_dict().
            status: Status for a newly created row.
        """
        if status not in VALID_STATUSES:
            raise DatabaseError(f"Invalid download status: {status}", details={"status": status})

        row = self._serialize_row(track_data)
        values = [row.get(column) for column in _METADATA_COLUMNS]
        values[_METADATA_COLUMNS.index("play_count")] = row.get("play_count") or 0
        values[_METADATA_COLUMNS.index("is_favorite")] = row.get("is_favorite") or 0

        columns = ", ".join(_METADATA_COLUMNS)
        placeholders = ", ".join("?" for _ in _METADATA_COLUMNS)
        updates = ", ".join(f"{c} = excluded.{c}" for c in _METADATA_COLUMNS)

        with self._lock:
            with self._get_connection() as conn:
                conn.execute(f"""
                    INSERT INTO downloads (track_id, {columns}, status, queued_at)
                    VALUES (?, {placeholders}, ?, ?)
                    ON CONFLICT(track_id) DO UPDATE SET {updates}
                """, (row["track_id"], *values, status, self._now_iso()))
                conn.commit()

    def get_download(self, track_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("SELECT * FROM downloads WHERE track_id = ?", (track_id,))
                row = cursor.fetchone()
                return self._deserialize_row(row) if row else None

    def list_downloads(self, status: str | None = None) -> list[dict[str, Any]]:
        """
        List download records in queue order (oldest queued first).

        Args:
            status: Only rows with this status, or all rows when None.
        """
        with self._lock:
            with self._get_connection() as conn:
                if status is None:
                    cursor = conn.execute(
                        "SELECT * FROM downloads ORDER BY queued_at, rowid"
                    )
                else:
                    cursor = conn.execute(
                        "SELECT * FROM downloads WHERE status = ? ORDER BY queued_at, rowid",
                        (status,)
                    )
                return [self._deserialize_row(row) for row in cursor.fetchall()]

    def completed_downloads(self) -> list[dict[str, Any]]:
        return self.list_downloads(STATUS_COMPLETED)

    def update_progress(self, track_id: str, downloaded_bytes: int, total_bytes: int | None) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    UPDATE downloads SET downloaded_bytes = ?, total_bytes = COALESCE(?, total_bytes)
                    WHERE track_id = ?
                """, (downloaded_bytes, total_bytes, track_id))
                conn.commit()

    def mark_queued(self, track_id: str) -> None:
        """Reset a record to queued (retry of a failed download)."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    UPDATE downloads SET
                        status = ?, error_message = NULL, downloaded_bytes = 0,
                        completed_at = NULL, queued_at = ?
                    WHERE track_id = ?
                """, (STATUS_QUEUED, self._now_iso(), track_id))
                conn.commit()

    def mark_downloading(self, track_id: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE downloads SET status = ?, error_message = NULL WHERE track_id = ?",
                    (STATUS_DOWNLOADING, track_id)
                )
                conn.commit()

    def mark_completed(
        self,
        track_id: str,
        file_path: str,
        total_bytes: int,
        run_time_ticks: int | None = None,
        completed_at: str | None = None,
        artwork_path: str | None = None
    ) -> None:
        """
        Mark a download as completed.

        Args:
            track_id: Track id.
            file_path: Absolute path of the audio file.
            total_bytes: Final file size.
            run_time_ticks: Duration read from the file, replaces the
                            server value when given.
            completed_at: ISO timestamp, defaults to now.
            artwork_path: Cached artwork file, if any.
        """
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    UPDATE downloads SET
                        status = ?, file_path = ?, artwork_path = ?, total_bytes = ?, downloaded_bytes = ?,
                        run_time_ticks = COALESCE(?, run_time_ticks),
                        completed_at = ?, error_message = NULL
                    WHERE track_id = ?
                """, (
                    STATUS_COMPLETED, file_path, artwork_path, total_bytes, total_bytes,
                    run_time_ticks, completed_at or self._now_iso(), track_id
                ))
                conn.commit()

    def mark_failed(self, track_id: str, error_message: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE downloads SET status = ?, error_message = ? WHERE track_id = ?",
                    (STATUS_FAILED, error_message, track_id)
                )
                conn.commit()

    def delete_download(self, track_id: str) -> bool:
        """Delete a record and its owners. Returns True if a row was removed."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("DELETE FROM downloads WHERE track_id = ?", (track_id,))
                conn.commit()
                return cursor.rowcount > 0

    def total_bytes(self) -> int:
        """Sum of file sizes of completed downloads."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT COALESCE(SUM(total_bytes), 0) FROM downloads WHERE status = ?",
                    (STATUS_COMPLETED,)
                )
                return cursor.fetchone()[0]

    # =========================================================================
    # Owners
    # =========================================================================

    def add_owner(self, track_id: str, owner_id: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT OR IGNORE INTO download_owners (track_id, owner_id) VALUES (?, ?)
                """, (track_id, owner_id))
                conn.commit()

    def remove_owner(self, track_id: str, owner_id: str) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(
                    "DELETE FROM download_owners WHERE track_id = ? AND owner_id = ?",
                    (track_id, owner_id)
                )
                conn.commit()

    def get_owners(self, track_id: str) -> set[str]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT owner_id FROM download_owners WHERE track_id = ?", (track_id,)
                )
                return {row[0] for row in cursor.fetchall()}

    # =========================================================================
    # Playlist Snapshots
    # =========================================================================

    def save_playlist_snapshot(self, playlist_id: str, name: str, track_ids: list[str]) -> None:
        """Replace the stored snapshot of a playlist with the given ordered track ids."""
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO playlist_snapshots (playlist_id, name, snapshot_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(playlist_id) DO UPDATE SET
                        name = excluded.name,
                        snapshot_at = excluded.snapshot_at
                """, (playlist_id, name, self._now_iso()))
                conn.execute(
                    "DELETE FROM playlist_snapshot_tracks WHERE playlist_id = ?", (playlist_id,)
                )
                conn.executemany("""
                    INSERT INTO playlist_snapshot_tracks (playlist_id, track_id, position)
                    VALUES (?, ?, ?)
                """, [(playlist_id, track_id, i) for i, track_id in enumerate(track_ids)])
                conn.commit()

    def list_playlist_snapshots(self) -> list[dict[str, Any]]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT playlist_id, name, snapshot_at FROM playlist_snapshots ORDER BY name"
                )
                return [dict(row) for row in cursor.fetchall()]

    def get_playlist_snapshot_track_ids(self, playlist_id: str) -> list[str]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT track_id FROM playlist_snapshot_tracks
                    WHERE playlist_id = ? ORDER BY position
                """, (playlist_id,))
                return [row[0] for row in cursor.fetchall()]
