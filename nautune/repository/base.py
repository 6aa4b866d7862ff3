"""
Abstract music repository for nautune.

MusicRepository is the complete read (and, for the remote case, write)
surface the rest of the application uses to reach the catalog. Callers
never know whether results come from the Jellyfin server or from the
local download index.

Contract shared by every implementation:
    - Every read returns a list. An empty list means "nothing there",
      never "something went wrong".
    - Library-scoped calls without a library id raise
      PreconditionError("No library selected").
    - Negative start_index or limit raises PreconditionError, limit 0
      returns [], and no result is ever longer than limit.
    - When is_available is False every call raises
      RepositoryUnavailableError before doing any work.
    - Errors propagate unchanged. No implementation falls back to another.
"""

from abc import ABC, abstractmethod
from typing import Sequence, TypeVar

from nautune.core.exceptions import PreconditionError, RepositoryUnavailableError
from nautune.jellyfin.models import Album, Artist, Genre, Library, Playlist, Track


T = TypeVar("T")

DEFAULT_PAGE_SIZE = 50
DEFAULT_VIEW_LIMIT = 20


class MusicRepository(ABC):
    """
    Abstract base class for catalog sources.

    Implementations: OnlineRepository (Jellyfin server) and
    OfflineRepository (download index). RepositoryFactory picks one.
    """

    # =========================================================================
    # State
    # =========================================================================

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether calls can currently succeed."""

    @property
    @abstractmethod
    def type_name(self) -> str:
        """Implementation name for logs and diagnostics."""

    # =========================================================================
    # Browse
    # =========================================================================

    @abstractmethod
    async def get_libraries(self) -> list[Library]:
        pass

    @abstractmethod
    async def get_albums(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Album]:
        """
        Get one page of albums in a library.

        Args:
            library_id: Library to browse.
            start_index: Offset of the first album, >= 0.
            limit: Maximum number of albums, >= 0.
        """

    @abstractmethod
    async def get_artists(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Artist]:
        pass

    @abstractmethod
    async def get_genres(self, library_id: str) -> list[Genre]:
        pass

    @abstractmethod
    async def get_playlists(self) -> list[Playlist]:
        pass

    @abstractmethod
    async def get_album_tracks(self, album_id: str) -> list[Track]:
        """Tracks of an album, in disc then track number order."""

    @abstractmethod
    async def get_artist_albums(self, artist_id: str) -> list[Album]:
        pass

    @abstractmethod
    async def get_genre_albums(self, genre_id: str) -> list[Album]:
        pass

    @abstractmethod
    async def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        pass

    # =========================================================================
    # Smart views
    # =========================================================================

    @abstractmethod
    async def get_favorite_tracks(self) -> list[Track]:
        pass

    @abstractmethod
    async def get_recently_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        pass

    @abstractmethod
    async def get_recently_added_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        pass

    @abstractmethod
    async def get_most_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        pass

    @abstractmethod
    async def get_most_played_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        pass

    @abstractmethod
    async def get_longest_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        pass

    # =========================================================================
    # Search
    # =========================================================================

    @abstractmethod
    async def search_albums(self, query: str, library_id: str) -> list[Album]:
        """Albums whose name contains query, case-insensitive."""

    @abstractmethod
    async def search_artists(self, query: str, library_id: str) -> list[Artist]:
        pass

    @abstractmethod
    async def search_tracks(self, query: str, library_id: str) -> list[Track]:
        """Tracks whose name, artist or album contains query, case-insensitive."""

    # =========================================================================
    # Playlist edits
    # =========================================================================

    @abstractmethod
    async def create_playlist(self, name: str, track_ids: list[str]) -> Playlist:
        pass

    @abstractmethod
    async def add_to_playlist(self, playlist_id: str, track_ids: list[str]) -> None:
        pass

    @abstractmethod
    async def remove_from_playlist(self, playlist_id: str, entry_ids: list[str]) -> None:
        pass

    @abstractmethod
    async def move_playlist_item(self, playlist_id: str, entry_id: str, new_index: int) -> None:
        pass

    # =========================================================================
    # Shared checks
    # =========================================================================

    def _require_available(self) -> None:
        if not self.is_available:
            raise RepositoryUnavailableError(
                f"{self.type_name} is not available",
                details={"repository": self.type_name}
            )

    def _require_library(self, library_id: str | None) -> str:
        if not library_id:
            raise PreconditionError("No library selected")
        return library_id

    def _check_page(self, start_index: int, limit: int) -> None:
        if start_index < 0 or limit < 0:
            raise PreconditionError(
                "start_index and limit must be non-negative",
                details={"start_index": start_index, "limit": limit}
            )

    def _paginate(self, items: Sequence[T], start_index: int, limit: int) -> list[T]:
        self._check_page(start_index, limit)
        return list(items[start_index:start_index + limit])

    @staticmethod
    def _matches(query: str, *fields: str | None) -> bool:
        needle = query.lower()
        return any(needle in value.lower() for value in fields if value)

    def __repr__(self) -> str:
        return f"<{self.type_name} available={self.is_available}>"
