"""
Jellyfin-backed music repository.

Every call is forwarded to exactly one JellyfinClient call. The repository
holds no cache and never retries: transport and HTTP failures surface as
JellyfinError subclasses, unchanged.
"""

from nautune.jellyfin.client import JellyfinClient
from nautune.jellyfin.models import Album, Artist, Genre, Library, Playlist, Track
from nautune.repository.base import DEFAULT_PAGE_SIZE, DEFAULT_VIEW_LIMIT, MusicRepository


class OnlineRepository(MusicRepository):
    """
    MusicRepository served by a Jellyfin server.

    Available while the client holds an authenticated session.
    """

    def __init__(self, client: JellyfinClient) -> None:
        self._client = client

    @property
    def client(self) -> JellyfinClient:
        return self._client

    @property
    def is_available(self) -> bool:
        return self._client.is_authenticated

    @property
    def type_name(self) -> str:
        return "OnlineRepository"

    # =========================================================================
    # Browse
    # =========================================================================

    async def get_libraries(self) -> list[Library]:
        self._require_available()
        return await self._client.fetch_libraries()

    async def get_albums(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(start_index, limit)
        if limit == 0:
            return []
        albums = await self._client.fetch_albums(library_id, start_index=start_index, limit=limit)
        return albums[:limit]

    async def get_artists(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Artist]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(start_index, limit)
        if limit == 0:
            return []
        artists = await self._client.fetch_artists(library_id, start_index=start_index, limit=limit)
        return artists[:limit]

    async def get_genres(self, library_id: str) -> list[Genre]:
        self._require_available()
        self._require_library(library_id)
        return await self._client.fetch_genres(library_id)

    async def get_playlists(self) -> list[Playlist]:
        self._require_available()
        return await self._client.fetch_playlists()

    async def get_album_tracks(self, album_id: str) -> list[Track]:
        self._require_available()
        return await self._client.fetch_album_tracks(album_id)

    async def get_artist_albums(self, artist_id: str) -> list[Album]:
        self._require_available()
        return await self._client.fetch_artist_albums(artist_id)

    async def get_genre_albums(self, genre_id: str) -> list[Album]:
        self._require_available()
        return await self._client.fetch_genre_albums(genre_id)

    async def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        self._require_available()
        return await self._client.fetch_playlist_tracks(playlist_id)

    # =========================================================================
    # Smart views
    # =========================================================================

    async def get_favorite_tracks(self) -> list[Track]:
        self._require_available()
        return await self._client.fetch_favorite_tracks()

    async def get_recently_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        self._require_view(library_id, limit)
        if limit == 0:
            return []
        return (await self._client.fetch_recently_played_tracks(library_id, limit=limit))[:limit]

    async def get_recently_added_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        self._require_view(library_id, limit)
        if limit == 0:
            return []
        return (await self._client.fetch_recently_added_albums(library_id, limit=limit))[:limit]

    async def get_most_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        self._require_view(library_id, limit)
        if limit == 0:
            return []
        return (await self._client.fetch_most_played_tracks(library_id, limit=limit))[:limit]

    async def get_most_played_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        self._require_view(library_id, limit)
        if limit == 0:
            return []
        return (await self._client.fetch_most_played_albums(library_id, limit=limit))[:limit]

    async def get_longest_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        self._require_view(library_id, limit)
        if limit == 0:
            return []
        return (await self._client.fetch_longest_tracks(library_id, limit=limit))[:limit]

    def _require_view(self, library_id: str, limit: int) -> None:
        self._require_available()
        self._require_library(library_id)
        self._check_page(0, limit)

    # =========================================================================
    # Search
    # =========================================================================

    async def search_albums(self, query: str, library_id: str) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        return await self._client.search_albums(query, library_id)

    async def search_artists(self, query: str, library_id: str) -> list[Artist]:
        self._require_available()
        self._require_library(library_id)
        return await self._client.search_artists(query, library_id)

    async def search_tracks(self, query: str, library_id: str) -> list[Track]:
        self._require_available()
        self._require_library(library_id)
        return await self._client.search_tracks(query, library_id)

    # =========================================================================
    # Playlist edits
    # =========================================================================

    async def create_playlist(self, name: str, track_ids: list[str]) -> Playlist:
        self._require_available()
        return await self._client.create_playlist(name, track_ids)

    async def add_to_playlist(self, playlist_id: str, track_ids: list[str]) -> None:
        self._require_available()
        await self._client.add_to_playlist(playlist_id, track_ids)

    async def remove_from_playlist(self, playlist_id: str, entry_ids: list[str]) -> None:
        self._require_available()
        await self._client.remove_from_playlist(playlist_id, entry_ids)

    async def move_playlist_item(self, playlist_id: str, entry_id: str, new_index: int) -> None:
        self._require_available()
        await self._client.move_playlist_item(playlist_id, entry_id, new_index)
