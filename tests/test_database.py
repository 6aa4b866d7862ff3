"""Test the SQLite download index"""

import sqlite3

import pytest

from nautune.core import database as database_module
from nautune.core.database import (
    DATABASE_VERSION,
    STATUS_COMPLETED,
    STATUS_DOWNLOADING,
    STATUS_FAILED,
    STATUS_QUEUED,
    DownloadIndex,
)
from nautune.core.exceptions import DatabaseError
from nautune.jellyfin.models import Track

from tests.conftest import make_track


class TestDownloadRecords:
    """Test download rows and their transfer state"""

    def test_upsert_creates_queued_row(self, index):
        track = make_track("t1", genres=("Jazz",), is_favorite=True, play_count=3)
        index.upsert_download(track.to_database_dict())

        row = index.get_download("t1")
        assert row["status"] == STATUS_QUEUED
        assert row["artists"] == ["Test Artist"]
        assert row["genres"] == ["Jazz"]
        assert row["is_favorite"] is True
        assert row["play_count"] == 3
        assert row["queued_at"] is not None
        assert Track.from_database_dict(row) == track

    def test_upsert_keeps_transfer_state(self, index):
        """Test that refreshing metadata does not reset a completed row"""
        index.upsert_download(make_track("t1").to_database_dict())
        index.mark_completed("t1", "/music/t1.flac", 500)

        index.upsert_download(make_track("t1", name="Renamed").to_database_dict())

        row = index.get_download("t1")
        assert row["name"] == "Renamed"
        assert row["status"] == STATUS_COMPLETED
        assert row["file_path"] == "/music/t1.flac"
        assert row["total_bytes"] == 500

    def test_invalid_status_rejected(self, index):
        with pytest.raises(DatabaseError):
            index.upsert_download(make_track("t1").to_database_dict(), status="paused")

    def test_status_transitions(self, index):
        index.upsert_download(make_track("t1").to_database_dict())

        index.mark_downloading("t1")
        index.update_progress("t1", 100, 400)
        row = index.get_download("t1")
        assert row["status"] == STATUS_DOWNLOADING
        assert row["downloaded_bytes"] == 100
        assert row["total_bytes"] == 400

        index.mark_failed("t1", "HTTP 500")
        row = index.get_download("t1")
        assert row["status"] == STATUS_FAILED
        assert row["error_message"] == "HTTP 500"

        index.mark_queued("t1")
        row = index.get_download("t1")
        assert row["status"] == STATUS_QUEUED
        assert row["error_message"] is None
        assert row["downloaded_bytes"] == 0

    def test_mark_completed_overrides_duration(self, index):
        index.upsert_download(make_track("t1", seconds=100).to_database_dict())
        index.mark_completed("t1", "/music/t1.flac", 500, run_time_ticks=42, completed_at="2026-01-01T00:00:00+00:00")

        row = index.get_download("t1")
        assert row["run_time_ticks"] == 42
        assert row["completed_at"] == "2026-01-01T00:00:00+00:00"
        assert row["downloaded_bytes"] == 500

    def test_list_by_status_and_total_bytes(self, index):
        for track_id in ("a", "b", "c"):
            index.upsert_download(make_track(track_id).to_database_dict())
        index.mark_completed("a", "/a", 100)
        index.mark_completed("c", "/c", 250)

        assert [r["track_id"] for r in index.list_downloads()] == ["a", "b", "c"]
        assert [r["track_id"] for r in index.completed_downloads()] == ["a", "c"]
        assert [r["track_id"] for r in index.list_downloads(STATUS_QUEUED)] == ["b"]
        assert index.total_bytes() == 350

    def test_delete_download(self, index):
        index.upsert_download(make_track("t1").to_database_dict())
        index.add_owner("t1", "album-1")

        assert index.delete_download("t1") is True
        assert index.get_download("t1") is None
        assert index.get_owners("t1") == set()
        assert index.delete_download("t1") is False


class TestOwners:
    """Test download ownership"""

    def test_add_and_remove(self, index):
        index.upsert_download(make_track("t1").to_database_dict())
        index.add_owner("t1", "album-1")
        index.add_owner("t1", "playlist-1")
        index.add_owner("t1", "album-1")

        assert index.get_owners("t1") == {"album-1", "playlist-1"}

        index.remove_owner("t1", "album-1")
        assert index.get_owners("t1") == {"playlist-1"}


class TestPlaylistSnapshots:
    """Test playlist snapshots"""

    def test_snapshot_keeps_order(self, index):
        index.save_playlist_snapshot("p1", "Mix", ["t3", "t1", "t2"])

        assert index.get_playlist_snapshot_track_ids("p1") == ["t3", "t1", "t2"]
        snapshots = index.list_playlist_snapshots()
        assert [(s["playlist_id"], s["name"]) for s in snapshots] == [("p1", "Mix")]

    def test_snapshot_is_replaced(self, index):
        index.save_playlist_snapshot("p1", "Mix", ["t1", "t2"])
        index.save_playlist_snapshot("p1", "Mix v2", ["t2"])

        assert index.get_playlist_snapshot_track_ids("p1") == ["t2"]
        assert index.list_playlist_snapshots()[0]["name"] == "Mix v2"


class TestLifecycle:
    """Test opening and closing the index"""

    def test_missing_parent_directory(self, temp_dir):
        with pytest.raises(DatabaseError, match="Parent directory"):
            DownloadIndex(temp_dir / "missing" / "downloads.db")

    def test_closed_index_raises(self, index):
        index.close()

        assert not index.is_open
        with pytest.raises(DatabaseError, match="closed"):
            index.list_downloads()

    def test_reopen_keeps_rows(self, temp_dir):
        first = DownloadIndex(temp_dir / "downloads.db")
        first.upsert_download(make_track("t1").to_database_dict())
        first.close()

        second = DownloadIndex(temp_dir / "downloads.db")
        try:
            assert second.get_download("t1") is not None
        finally:
            second.close()

    def test_upgrade_from_version_1(self, temp_dir):
        path = temp_dir / "downloads.db"
        conn = sqlite3.connect(path)
        conn.executescript(database_module._SCHEMA_SQL.replace("    artwork_path TEXT,\n", ""))
        conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        conn.execute("INSERT INTO downloads (track_id, name, status) VALUES ('old', 'Old Song', 'completed')")
        conn.commit()
        conn.close()

        index = DownloadIndex(path)
        try:
            assert index.get_download("old")["artwork_path"] is None
            index.mark_completed("old", "/music/old.flac", 10, artwork_path="/music/artwork/old.jpg")
            assert index.get_download("old")["artwork_path"] == "/music/artwork/old.jpg"
        finally:
            index.close()

        conn = sqlite3.connect(path)
        try:
            assert conn.execute("SELECT version FROM schema_version").fetchone()[0] == DATABASE_VERSION
        finally:
            conn.close()

    def test_unknown_version_rejected(self, temp_dir):
        path = temp_dir / "downloads.db"
        DownloadIndex(path).close()
        conn = sqlite3.connect(path)
        conn.execute("UPDATE schema_version SET version = 99")
        conn.commit()
        conn.close()

        with pytest.raises(DatabaseError, match="version mismatch"):
            DownloadIndex(path)
