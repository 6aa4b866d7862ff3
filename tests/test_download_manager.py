"""Test the download queue and scheduler"""

import asyncio

import pytest

from nautune.core.exceptions import JellyfinRequestError
from nautune.download import manager as manager_module
from nautune.download.manager import (
    DownloadManager,
    DownloadStatus,
    artwork_item_id,
    read_duration_ticks,
)
from nautune.repository.offline import OFFLINE_LIBRARY, OfflineRepository

from tests.conftest import DEFAULT_PAYLOAD, make_track, seed_completed


async def settle(manager: DownloadManager) -> None:
    await asyncio.wait_for(manager.wait_idle(), timeout=2)


def part_files(manager: DownloadManager) -> list:
    return list(manager.download_dir.glob("*.part"))


class TestConcurrency:
    """Test the bound on simultaneous transfers"""

    async def test_never_more_than_max_concurrent(self, manager, fetcher):
        track_ids = [f"t{i}" for i in range(5)]
        fetcher.gate(*track_ids)

        for track_id in track_ids:
            await manager.enqueue(make_track(track_id))

        assert manager.active_count == 2
        assert manager.queued_count == 3
        assert len(manager.items(DownloadStatus.DOWNLOADING)) == 2

        fetcher.release()
        await settle(manager)

        assert fetcher.max_in_flight == 2
        assert fetcher.started == track_ids
        assert len(manager.completed_items()) == 5

    async def test_fifo_order(self, manager, fetcher):
        fetcher.gate("a", "b")
        for track_id in ("a", "b", "c", "d"):
            await manager.enqueue(make_track(track_id))

        downloading = [i.track_id for i in manager.items(DownloadStatus.DOWNLOADING)]
        queued = [i.track_id for i in manager.items(DownloadStatus.QUEUED)]
        assert downloading == ["a", "b"]
        assert queued == ["c", "d"]

        fetcher.release()
        await settle(manager)

    async def test_raising_max_concurrent_starts_waiting_items(self, manager, fetcher):
        fetcher.gate("a", "b", "c", "d")
        for track_id in ("a", "b", "c", "d"):
            await manager.enqueue(make_track(track_id))

        manager.set_max_concurrent(3)

        assert manager.active_count == 3
        fetcher.release()
        await settle(manager)

    def test_max_concurrent_is_clamped(self, index, fetcher, temp_dir):
        assert DownloadManager(index, fetcher.open, temp_dir, max_concurrent=50).max_concurrent == 10
        assert DownloadManager(index, fetcher.open, temp_dir, max_concurrent=0).max_concurrent == 1


class TestTransfer:
    """Test a single download from request to file"""

    async def test_completed_download(self, manager, fetcher):
        track = make_track("t1", seconds=200)
        await manager.enqueue(track)
        await settle(manager)

        item = manager.get("t1")
        assert item.status is DownloadStatus.COMPLETED
        assert item.progress == 1.0
        assert item.total_bytes == len(DEFAULT_PAYLOAD)
        assert item.completed_at is not None
        assert item.file_path.read_bytes() == DEFAULT_PAYLOAD
        assert item.file_path.parent == manager.download_dir
        assert item.track.run_time_ticks == track.run_time_ticks
        assert part_files(manager) == []

    async def test_file_duration_replaces_server_value(self, manager, fetcher, monkeypatch):
        monkeypatch.setattr(manager_module, "read_duration_ticks", lambda path: 1_234_000_000)

        await manager.enqueue(make_track("t1", seconds=200))
        await settle(manager)

        assert manager.get("t1").track.run_time_ticks == 1_234_000_000

    def test_read_duration_of_non_audio(self, temp_dir):
        path = temp_dir / "noise.bin"
        path.write_bytes(b"not audio at all")
        assert read_duration_ticks(path) is None

    async def test_failure_is_recorded_and_others_continue(self, manager, fetcher):
        fetcher.fail_ids.add("bad")

        await manager.enqueue(make_track("bad"))
        await manager.enqueue(make_track("good"))
        await settle(manager)

        bad = manager.get("bad")
        assert bad.status is DownloadStatus.FAILED
        assert "500" in bad.error_message
        assert manager.get("good").status is DownloadStatus.COMPLETED

    async def test_retry_failed(self, manager, fetcher):
        fetcher.fail_ids.add("bad")
        await manager.enqueue(make_track("bad"))
        await settle(manager)

        fetcher.fail_ids.clear()
        assert await manager.retry("bad") is True
        await settle(manager)

        item = manager.get("bad")
        assert item.status is DownloadStatus.COMPLETED
        assert item.error_message is None
        assert await manager.retry("bad") is False
        assert await manager.retry("unknown") is False

    async def test_enqueue_requeues_failed(self, manager, fetcher):
        fetcher.fail_ids.add("bad")
        await manager.enqueue(make_track("bad"))
        await settle(manager)

        fetcher.fail_ids.clear()
        await manager.enqueue(make_track("bad"))
        await settle(manager)

        assert manager.get("bad").status is DownloadStatus.COMPLETED
        assert fetcher.started == ["bad", "bad"]


class TestIntegrity:
    """Test transfers that end badly"""

    async def test_truncated_transfer_fails(self, manager, fetcher):
        fetcher.declared_sizes["t1"] = len(DEFAULT_PAYLOAD) + 100

        await manager.enqueue(make_track("t1"))
        await settle(manager)

        item = manager.get("t1")
        assert item.status is DownloadStatus.FAILED
        assert f"{len(DEFAULT_PAYLOAD)} of {len(DEFAULT_PAYLOAD) + 100} bytes" in item.error_message
        assert list(manager.download_dir.glob("t1*")) == []

    async def test_empty_body_fails(self, manager, fetcher):
        fetcher.payloads["t1"] = b""

        await manager.enqueue(make_track("t1"))
        await settle(manager)

        item = manager.get("t1")
        assert item.status is DownloadStatus.FAILED
        assert "empty file" in item.error_message


class TestCancel:
    """Test cancelling queued and in-flight downloads"""

    async def test_cancel_in_flight_frees_slot(self, manager, fetcher):
        fetcher.gate("a", "b", "c")
        for track_id in ("a", "b", "c"):
            await manager.enqueue(make_track(track_id))
        await asyncio.sleep(0.01)

        assert await manager.cancel("a") is True

        # The waiting item takes the slot before cancel() returns
        assert manager.get("a") is None
        assert manager.get("c").status is DownloadStatus.DOWNLOADING
        assert manager.active_count == 2

        await asyncio.sleep(0.01)
        assert list(manager.download_dir.glob("a.*")) == []

        fetcher.release("b", "c")
        await settle(manager)

        assert manager.get("b").status is DownloadStatus.COMPLETED
        assert manager.get("c").status is DownloadStatus.COMPLETED
        assert manager.get("a") is None
        assert part_files(manager) == []

    async def test_cancel_queued(self, manager, fetcher):
        fetcher.gate("a", "b", "c")
        for track_id in ("a", "b", "c"):
            await manager.enqueue(make_track(track_id))

        assert await manager.cancel("c") is True
        assert manager.queued_count == 0
        assert manager.get("c") is None

        fetcher.release()
        await settle(manager)
        assert "c" not in fetcher.started

    async def test_cancel_unknown(self, manager):
        assert await manager.cancel("missing") is False

    async def test_close_requeues_in_flight(self, index, fetcher, temp_dir):
        manager = DownloadManager(index, fetcher.open, temp_dir / "tracks", max_concurrent=1)
        fetcher.gate("a")
        await manager.enqueue(make_track("a"))
        await manager.enqueue(make_track("b"))
        await asyncio.sleep(0.01)

        await manager.close()

        assert manager.get("a").status is DownloadStatus.QUEUED
        assert manager.get("b").status is DownloadStatus.QUEUED
        assert part_files(manager) == []


class TestOwnership:
    """Test owners and reference removal"""

    async def test_shared_track_downloads_once(self, manager, fetcher):
        track = make_track("t1")
        await manager.enqueue(track, owner_id="album-1")
        await manager.enqueue(track, owner_id="playlist-1")
        await settle(manager)

        assert manager.owners("t1") == {"album-1", "playlist-1"}
        assert fetcher.started == ["t1"]

    async def test_enqueue_completed_only_adds_owner(self, manager, fetcher):
        track = make_track("t1")
        await manager.enqueue(track, owner_id="album-1")
        await settle(manager)

        item = await manager.enqueue(track, owner_id="user")
        await settle(manager)

        assert item.status is DownloadStatus.COMPLETED
        assert fetcher.started == ["t1"]
        assert manager.owners("t1") == {"album-1", "user"}

    async def test_remove_reference_deletes_after_last_owner(self, manager, fetcher):
        track = make_track("t1")
        await manager.enqueue(track, owner_id="album-1")
        await manager.enqueue(track, owner_id="playlist-1")
        await settle(manager)
        path = manager.get("t1").file_path

        assert await manager.remove_reference("t1", "album-1") is False
        assert path.exists()

        assert await manager.remove_reference("t1", "playlist-1") is True
        assert manager.get("t1") is None
        assert not path.exists()

    async def test_delete_ignores_owners(self, manager, fetcher):
        await manager.enqueue(make_track("t1"), owner_id="album-1")
        await settle(manager)

        freed = await manager.delete("t1")

        assert freed == len(DEFAULT_PAYLOAD)
        assert manager.get("t1") is None
        assert manager.total_bytes() == 0
        assert await manager.delete("t1") == 0


class TestRecovery:
    """Test state left over from an earlier run"""

    async def test_resume_pending(self, manager, index, fetcher):
        index.upsert_download(make_track("queued").to_database_dict())
        index.upsert_download(make_track("interrupted").to_database_dict())
        index.mark_downloading("interrupted")

        assert await manager.resume_pending() == 2
        await settle(manager)

        assert sorted(fetcher.started) == ["interrupted", "queued"]
        assert len(manager.completed_items()) == 2

    async def test_verify_downloads(self, manager, index, temp_dir):
        kept = seed_completed(index, manager.download_dir, make_track("kept"))
        lost = seed_completed(index, manager.download_dir, make_track("lost"))
        lost.unlink()

        assert manager.verify_downloads() == ["lost"]
        assert kept.exists()
        assert [i.track_id for i in manager.completed_items()] == ["kept"]


class TestOfflineRoundTrip:
    """Test that finished downloads show up in the offline repository"""

    async def test_album_download_is_browsable_offline(self, manager, index, mock_client):
        tracks = [
            make_track("t2", "Second", index_number=2),
            make_track("t1", "First", index_number=1),
            make_track("t3", "Third", index_number=3),
        ]
        mock_client.fetch_album_tracks.return_value = tracks

        items = await manager.download_album(mock_client, "album-1")
        await settle(manager)

        repository = OfflineRepository(index)
        albums = await repository.get_albums(OFFLINE_LIBRARY.id)
        album_tracks = await repository.get_album_tracks("album-1")

        assert len(items) == 3
        assert [a.id for a in albums] == ["album-1"]
        assert [t.id for t in album_tracks] == ["t1", "t2", "t3"]
        assert all(manager.owners(t.id) == {"album-1"} for t in tracks)

        for track in tracks:
            await manager.delete(track.id)
        assert await repository.get_albums(OFFLINE_LIBRARY.id) == []

    async def test_playlist_download_saves_snapshot(self, manager, index, mock_client):
        tracks = [make_track("t9", album_id="x"), make_track("t4", album_id="y")]
        mock_client.fetch_playlist_tracks.return_value = tracks

        await manager.download_playlist(mock_client, "p1", "Road Trip")
        await settle(manager)

        playlists = await OfflineRepository(index).get_playlists()
        assert [(p.id, p.name, p.track_ids) for p in playlists] == [("p1", "Road Trip", ("t9", "t4"))]

    @pytest.mark.parametrize("status", [DownloadStatus.QUEUED, DownloadStatus.FAILED])
    async def test_unfinished_downloads_stay_hidden(self, manager, index, fetcher, status):
        if status is DownloadStatus.FAILED:
            fetcher.fail_ids.add("t1")
        else:
            fetcher.gate("t1", "t2", "t3")
            await manager.enqueue(make_track("t2", album_id="other"))
            await manager.enqueue(make_track("t3", album_id="other"))
        await manager.enqueue(make_track("t1"))
        if status is DownloadStatus.FAILED:
            await settle(manager)

        assert manager.get("t1").status is status
        assert await OfflineRepository(index).get_albums(OFFLINE_LIBRARY.id) == []


class FakeArtwork:
    """Stand-in for JellyfinClient.fetch_image"""

    def __init__(self) -> None:
        self.requested: list[str] = []
        self.missing: set[str] = set()

    async def fetch(self, item_id: str) -> bytes:
        self.requested.append(item_id)
        if item_id in self.missing:
            raise JellyfinRequestError("HTTP 404 from server", status_code=404)
        return f"jpeg:{item_id}".encode()


@pytest.fixture
def artwork():
    return FakeArtwork()


@pytest.fixture
async def art_manager(index, fetcher, artwork, temp_dir):
    """Download manager that caches artwork"""
    download_manager = DownloadManager(
        index, fetcher.open, temp_dir / "tracks", artwork_fetcher=artwork.fetch
    )
    yield download_manager
    await download_manager.close()


class TestArtwork:
    """Test artwork cached next to downloads"""

    def test_artwork_item_prefers_album(self):
        assert artwork_item_id(make_track("t1", album_image_tag="tag")) == "album-1"
        assert artwork_item_id(make_track("t1")) is None

    async def test_album_artwork_is_cached(self, art_manager, artwork):
        await art_manager.enqueue(make_track("t1", album_image_tag="tag"))
        await settle(art_manager)

        item = art_manager.get("t1")
        assert item.status is DownloadStatus.COMPLETED
        assert artwork.requested == ["album-1"]
        assert item.artwork_path == art_manager.artwork_dir / "t1.jpg"
        assert item.artwork_path.read_bytes() == b"jpeg:album-1"
        assert art_manager.artwork_file("t1") == item.artwork_path

    async def test_track_without_image_skips_fetch(self, art_manager, artwork):
        await art_manager.enqueue(make_track("t1"))
        await settle(art_manager)

        assert artwork.requested == []
        assert art_manager.get("t1").artwork_path is None
        assert art_manager.artwork_file("t1") is None

    async def test_missing_artwork_does_not_fail_download(self, art_manager, artwork):
        artwork.missing.add("album-1")

        await art_manager.enqueue(make_track("t1", album_image_tag="tag"))
        await settle(art_manager)

        item = art_manager.get("t1")
        assert item.status is DownloadStatus.COMPLETED
        assert item.artwork_path is None

    async def test_delete_removes_artwork(self, art_manager):
        await art_manager.enqueue(make_track("t1", album_image_tag="tag"))
        await settle(art_manager)
        artwork_path = art_manager.get("t1").artwork_path

        freed = await art_manager.delete("t1")

        assert not artwork_path.exists()
        assert freed == len(DEFAULT_PAYLOAD) + len(b"jpeg:album-1")

    async def test_offline_album_uses_cached_artwork(self, art_manager, index):
        await art_manager.enqueue(make_track("t1", album_image_tag="tag"))
        await settle(art_manager)

        albums = await OfflineRepository(index).get_albums(OFFLINE_LIBRARY.id)

        assert albums[0].artwork_path == str(art_manager.artwork_dir / "t1.jpg")
