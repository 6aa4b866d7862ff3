"""Test configuration and fixtures"""

import asyncio
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from nautune.core.database import DownloadIndex
from nautune.core.exceptions import JellyfinRequestError
from nautune.download.manager import DownloadManager
from nautune.jellyfin.client import DownloadStream, JellyfinClient
from nautune.jellyfin.models import TICKS_PER_SECOND, Track


DEFAULT_PAYLOAD = b"\x00" * 2048


def make_track(
    track_id: str,
    name: str | None = None,
    album: str | None = "Test Album",
    album_id: str | None = "album-1",
    artists: tuple[str, ...] = ("Test Artist",),
    seconds: int = 180,
    index_number: int | None = 1,
    disc: int | None = 1,
    genres: tuple[str, ...] = (),
    is_favorite: bool = False,
    play_count: int = 0,
    album_image_tag: str | None = None,
) -> Track:
    """Build a Track with sensible defaults"""
    return Track(
        id=track_id,
        name=name or f"Song {track_id}",
        album=album,
        artists=artists,
        album_id=album_id,
        run_time_ticks=seconds * TICKS_PER_SECOND,
        index_number=index_number,
        parent_index_number=disc,
        genres=genres,
        is_favorite=is_favorite,
        play_count=play_count,
        album_primary_image_tag=album_image_tag,
    )


def seed_completed(
    index: DownloadIndex,
    directory: Path,
    track: Track,
    size: int = 1000,
    completed_at: str | None = None,
) -> Path:
    """Store a track as a completed download with a file of `size` bytes"""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{track.id}.flac"
    path.write_bytes(b"\x00" * size)
    index.upsert_download(track.to_database_dict())
    index.mark_completed(track.id, str(path), size, completed_at=completed_at)
    return path


class FakeFetcher:
    """
    Stand-in for JellyfinClient.stream_download.

    Transfers of tracks with a gate block until the gate is opened;
    tracks in `fail_ids` fail with an HTTP 500; `declared_sizes` overrides
    the announced length of a body.
    """

    def __init__(self) -> None:
        self.gates: dict[str, asyncio.Event] = {}
        self.payloads: dict[str, bytes] = {}
        self.fail_ids: set[str] = set()
        self.declared_sizes: dict[str, int] = {}
        self.started: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def gate(self, *track_ids: str) -> None:
        for track_id in track_ids:
            self.gates[track_id] = asyncio.Event()

    def release(self, *track_ids: str) -> None:
        for track_id in track_ids or list(self.gates):
            self.gates[track_id].set()

    @asynccontextmanager
    async def open(self, track: Track):
        self.started.append(track.id)
        if track.id in self.fail_ids:
            raise JellyfinRequestError("HTTP 500 from server", status_code=500)

        data = self.payloads.get(track.id, DEFAULT_PAYLOAD)
        gate = self.gates.get(track.id)

        async def chunks():
            if gate is not None:
                await gate.wait()
            yield data[: len(data) // 2]
            yield data[len(data) // 2:]

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            yield DownloadStream(
                total_bytes=self.declared_sizes.get(track.id, len(data)),
                content_type="application/octet-stream",
                chunks=chunks(),
            )
        finally:
            self.in_flight -= 1


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def index(temp_dir):
    """Open download index in a temporary directory"""
    download_index = DownloadIndex(temp_dir / "downloads.db")
    yield download_index
    if download_index.is_open:
        download_index.close()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
async def manager(index, fetcher, temp_dir):
    """Download manager with a fake fetcher, closed after the test"""
    download_manager = DownloadManager(index, fetcher.open, temp_dir / "tracks", max_concurrent=2)
    yield download_manager
    await download_manager.close()


@pytest.fixture
def mock_client():
    """Authenticated JellyfinClient mock; async methods are AsyncMocks"""
    client = Mock(spec=JellyfinClient)
    client.is_authenticated = True
    for name in (
        "fetch_libraries", "fetch_albums", "fetch_artists", "fetch_genres",
        "fetch_playlists", "fetch_album_tracks", "fetch_artist_albums",
        "fetch_genre_albums", "fetch_playlist_tracks", "fetch_favorite_tracks",
        "fetch_recently_played_tracks", "fetch_recently_added_albums",
        "fetch_most_played_tracks", "fetch_most_played_albums", "fetch_longest_tracks",
        "search_albums", "search_artists", "search_tracks",
        "add_to_playlist", "remove_from_playlist", "move_playlist_item",
    ):
        setattr(client, name, AsyncMock(return_value=[]))
    client.create_playlist = AsyncMock()
    return client


@pytest.fixture
def sample_item_data():
    """Jellyfin Audio item as returned by /Users/{id}/Items"""
    return {
        "Id": "track-1",
        "Name": "Test Song",
        "Album": "Test Album",
        "AlbumId": "album-1",
        "Artists": ["Test Artist", "Guest"],
        "RunTimeTicks": 2_100_000_000,  # 3:30
        "IndexNumber": 3,
        "ParentIndexNumber": 1,
        "ImageTags": {"Primary": "tag-1"},
        "AlbumPrimaryImageTag": "album-tag",
        "Genres": ["Jazz"],
        "UserData": {"IsFavorite": True, "PlayCount": 7},
    }
