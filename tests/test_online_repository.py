"""Test the Jellyfin-backed repository"""

import pytest

from nautune.core.exceptions import (
    JellyfinRequestError,
    PreconditionError,
    RepositoryUnavailableError,
)
from nautune.jellyfin.models import Album, Playlist
from nautune.repository.online import OnlineRepository

from tests.conftest import make_track


@pytest.fixture
def repository(mock_client):
    return OnlineRepository(mock_client)


class TestOnlineForwarding:
    """Test that calls reach exactly one client method"""

    async def test_get_albums_forwards_paging(self, repository, mock_client):
        albums = [Album(id=f"a{i}", name=f"Album {i}") for i in range(3)]
        mock_client.fetch_albums.return_value = albums

        result = await repository.get_albums("lib-1", start_index=10, limit=3)

        assert result == albums
        mock_client.fetch_albums.assert_awaited_once_with("lib-1", start_index=10, limit=3)

    async def test_results_trimmed_to_limit(self, repository, mock_client):
        mock_client.fetch_albums.return_value = [Album(id=f"a{i}", name="x") for i in range(5)]

        result = await repository.get_albums("lib-1", limit=2)

        assert len(result) == 2

    async def test_limit_zero_skips_server(self, repository, mock_client):
        assert await repository.get_albums("lib-1", limit=0) == []
        assert await repository.get_longest_tracks("lib-1", limit=0) == []
        mock_client.fetch_albums.assert_not_awaited()
        mock_client.fetch_longest_tracks.assert_not_awaited()

    async def test_smart_view_forwards_limit(self, repository, mock_client):
        tracks = [make_track("t1", play_count=4)]
        mock_client.fetch_most_played_tracks.return_value = tracks

        assert await repository.get_most_played_tracks("lib-1", limit=5) == tracks
        mock_client.fetch_most_played_tracks.assert_awaited_once_with("lib-1", limit=5)

    async def test_album_tracks_and_search(self, repository, mock_client):
        await repository.get_album_tracks("album-1")
        await repository.search_tracks("blue", "lib-1")

        mock_client.fetch_album_tracks.assert_awaited_once_with("album-1")
        mock_client.search_tracks.assert_awaited_once_with("blue", "lib-1")

    async def test_playlist_writes(self, repository, mock_client):
        mock_client.create_playlist.return_value = Playlist(id="p1", name="Mix", track_count=1)

        playlist = await repository.create_playlist("Mix", ["t1"])
        await repository.add_to_playlist("p1", ["t2"])
        await repository.remove_from_playlist("p1", ["entry-1"])
        await repository.move_playlist_item("p1", "entry-2", 0)

        assert playlist.id == "p1"
        mock_client.add_to_playlist.assert_awaited_once_with("p1", ["t2"])
        mock_client.remove_from_playlist.assert_awaited_once_with("p1", ["entry-1"])
        mock_client.move_playlist_item.assert_awaited_once_with("p1", "entry-2", 0)

    async def test_empty_result_is_success(self, repository, mock_client):
        assert await repository.get_playlists() == []


class TestOnlinePreconditions:
    """Test checks made before reaching the server"""

    async def test_unauthenticated_client(self, repository, mock_client):
        mock_client.is_authenticated = False

        assert not repository.is_available
        with pytest.raises(RepositoryUnavailableError):
            await repository.get_libraries()
        mock_client.fetch_libraries.assert_not_awaited()

    @pytest.mark.parametrize("library_id", ["", None])
    async def test_library_required(self, repository, mock_client, library_id):
        with pytest.raises(PreconditionError, match="No library selected"):
            await repository.get_albums(library_id)
        mock_client.fetch_albums.assert_not_awaited()

    async def test_negative_paging(self, repository, mock_client):
        with pytest.raises(PreconditionError):
            await repository.get_artists("lib-1", start_index=-1)
        with pytest.raises(PreconditionError):
            await repository.get_recently_added_albums("lib-1", limit=-1)
        mock_client.fetch_artists.assert_not_awaited()

    async def test_errors_propagate_unchanged(self, repository, mock_client):
        error = JellyfinRequestError("HTTP 503 from server", status_code=503)
        mock_client.fetch_genres.side_effect = error

        with pytest.raises(JellyfinRequestError) as exc_info:
            await repository.get_genres("lib-1")

        assert exc_info.value is error
