"""
Jellyfin REST client for nautune.

This module wraps the subset of the Jellyfin HTTP API the application
needs: authentication, catalog browsing, search, smart views, playlist
edits and raw audio downloads. It is built on aiohttp and is the only
place that knows about URLs, query parameters and headers.

Authentication:
    authenticate() posts username/password to /Users/AuthenticateByName
    and keeps the returned Session. restore_session() reuses a token saved
    earlier (NAUTUNE_ACCESS_TOKEN / NAUTUNE_USER_ID).

Errors:
    - No session: PreconditionError("No active session")
    - HTTP 401/403: JellyfinAuthError
    - Other non-2xx status: JellyfinRequestError with status_code
    - aiohttp.ClientError / timeouts: JellyfinRequestError without status
    - Undecodable JSON or a missing item list: JellyfinRequestError
    The client never retries; callers decide.

Usage:
    async with JellyfinClient("https://jellyfin.example.com") as client:
        await client.authenticate("alice", password)
        for library in await client.fetch_libraries():
            print(library.name)
"""

import asyncio
import platform
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import aiohttp

from nautune import __version__
from nautune.core.exceptions import (
    JellyfinAuthError,
    JellyfinRequestError,
    PreconditionError,
)
from nautune.core.logger import get_logger
from nautune.jellyfin.models import (
    Album,
    Artist,
    Genre,
    Library,
    Playlist,
    Session,
    Track,
)


logger = get_logger(__name__)

CLIENT_NAME = "Nautune"
DEFAULT_TIMEOUT_SECONDS = 30
DOWNLOAD_CHUNK_SIZE = 64 * 1024
ARTWORK_MAX_WIDTH = 600

# Fields requested on every item query so that models are fully populated
ITEM_FIELDS = "Genres,DateCreated,ChildCount,ParentId,PrimaryImageAspectRatio"


@dataclass(frozen=True)
class DownloadStream:
    """
    An open audio download.

    Attributes:
        total_bytes: Content-Length, or None when the server does not send it.
        content_type: Response MIME type, e.g. "audio/flac".
        chunks: Async iterator over the body.
    """
    total_bytes: int | None
    content_type: str | None
    chunks: AsyncIterator[bytes]


class JellyfinClient:
    """
    Async Jellyfin API client.

    The aiohttp ClientSession is created on first use and closed by
    close() (or by leaving the `async with` block). A session supplied
    by the caller is never closed by the client.
    """

    def __init__(
        self,
        server_url: str,
        session: Session | None = None,
        http_session: aiohttp.ClientSession | None = None,
        device_id: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.server_url = server_url.strip().rstrip("/")
        self._session = session
        self._http = http_session
        self._owns_http = http_session is None
        self.device_id = device_id or f"nautune-{uuid.uuid4().hex[:12]}"
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def __aenter__(self) -> "JellyfinClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._http is not None and self._owns_http and not self._http.closed:
            await self._http.close()
        if self._owns_http:
            self._http = None

    # =========================================================================
    # Session
    # =========================================================================

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and bool(self._session.access_token)

    def restore_session(self, session: Session) -> None:
        self._session = session

    def clear_session(self) -> None:
        self._session = None

    def select_library(self, library: Library) -> Session:
        """Bind the current session to a library and return the new session."""
        session = self._require_session()
        self._session = session.with_library(library)
        return self._session

    def _require_session(self) -> Session:
        if self._session is None or not self._session.access_token:
            raise PreconditionError("No active session")
        return self._session

    async def authenticate(self, username: str, password: str) -> Session:
        """
        Authenticate with username and password.

        Returns:
            The new Session, also stored on the client.

        Raises:
            JellyfinAuthError: If the server rejects the credentials or
                               answers with a malformed body.
        """
        data = await self._request(
            "POST",
            "/Users/AuthenticateByName",
            json_body={"Username": username, "Pw": password},
            authenticated=False,
        )

        access_token = data.get("AccessToken") if isinstance(data, dict) else None
        user = data.get("User") if isinstance(data, dict) else None
        if not isinstance(access_token, str) or not isinstance(user, dict):
            raise JellyfinAuthError(
                "Malformed authentication response",
                details={"url": self.server_url}
            )

        self._session = Session(
            server_url=self.server_url,
            username=username,
            user_id=user.get("Id") or "",
            access_token=access_token,
        )
        logger.info(f"Authenticated as {username} on {self.server_url}")
        return self._session

    # =========================================================================
    # HTTP
    # =========================================================================

    def _headers(self, authenticated: bool = True) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Emby-Authorization": (
                f'MediaBrowser Client="{CLIENT_NAME}", Device="{platform.system() or "Python"}", '
                f'DeviceId="{self.device_id}", Version="{__version__}"'
            ),
        }
        if authenticated:
            headers["X-MediaBrowser-Token"] = self._require_session().access_token
        return headers

    def _http_session(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_http = True
        return self._http

    def _raise_for_status(self, status: int, method: str, path: str) -> None:
        if 200 <= status < 300:
            return
        details = {"url": f"{self.server_url}{path}", "method": method, "status_code": status}
        if status in (401, 403):
            raise JellyfinAuthError(f"Jellyfin rejected the request: HTTP {status}", details=details)
        raise JellyfinRequestError(
            f"Jellyfin request failed: HTTP {status}", details=details, status_code=status
        )

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        authenticated: bool = True,
    ) -> Any:
        """
        Send one request and decode the JSON body (None for empty bodies).

        Parameters with a None value are dropped; booleans become "true"/"false".
        """
        headers = self._headers(authenticated)
        query = _clean_params(params)
        url = f"{self.server_url}{path}"
        logger.debug(f"{method} {path} {query}")

        try:
            async with self._http_session().request(
                method, url, params=query, json=json_body, headers=headers
            ) as response:
                self._raise_for_status(response.status, method, path)
                if response.status == 204 or response.content_length == 0:
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise JellyfinRequestError(
                        "Malformed response body",
                        details={
                            "url": url,
                            "method": method,
                            "content_type": response.content_type,
                            "original_error": str(e),
                        }
                    ) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise JellyfinRequestError(
                f"Jellyfin request failed: {e}",
                details={"url": url, "method": method, "original_error": str(e)}
            ) from e

    async def _get_items(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        session = self._require_session()
        data = await self._request(
            "GET",
            f"/Users/{session.user_id}/Items",
            params={"Fields": ITEM_FIELDS, **params},
        )
        return _items(data)

    # =========================================================================
    # Catalog
    # =========================================================================

    async def fetch_libraries(self) -> list[Library]:
        session = self._require_session()
        data = await self._request("GET", f"/Users/{session.user_id}/Views")
        return [Library.from_jellyfin_api(item) for item in _items(data)]

    async def fetch_albums(self, library_id: str, start_index: int = 0, limit: int = 50) -> list[Album]:
        items = await self._get_items({
            "ParentId": library_id,
            "IncludeItemTypes": "MusicAlbum",
            "Recursive": True,
            "SortBy": "SortName",
            "SortOrder": "Ascending",
            "StartIndex": start_index,
            "Limit": limit,
        })
        return [Album.from_jellyfin_api(item) for item in items]

    async def fetch_artists(self, library_id: str, start_index: int = 0, limit: int = 50) -> list[Artist]:
        session = self._require_session()
        data = await self._request("GET", "/Artists/AlbumArtists", params={
            "UserId": session.user_id,
            "ParentId": library_id,
            "Fields": ITEM_FIELDS,
            "SortBy": "SortName",
            "SortOrder": "Ascending",
            "StartIndex": start_index,
            "Limit": limit,
        })
        return [Artist.from_jellyfin_api(item) for item in _items(data)]

    async def fetch_genres(self, library_id: str) -> list[Genre]:
        session = self._require_session()
        data = await self._request("GET", "/Genres", params={
            "UserId": session.user_id,
            "ParentId": library_id,
            "IncludeItemTypes": "MusicAlbum",
            "SortBy": "SortName",
        })
        return [Genre.from_jellyfin_api(item) for item in _items(data)]

    async def fetch_playlists(self) -> list[Playlist]:
        items = await self._get_items({
            "IncludeItemTypes": "Playlist",
            "Recursive": True,
            "SortBy": "SortName",
        })
        return [Playlist.from_jellyfin_api(item) for item in items]

    async def fetch_album_tracks(self, album_id: str) -> list[Track]:
        items = await self._get_items({
            "ParentId": album_id,
            "IncludeItemTypes": "Audio",
            "Recursive": True,
            "SortBy": "ParentIndexNumber,IndexNumber,SortName",
        })
        return [Track.from_jellyfin_api(item) for item in items]

    async def fetch_artist_albums(self, artist_id: str) -> list[Album]:
        items = await self._get_items({
            "AlbumArtistIds": artist_id,
            "IncludeItemTypes": "MusicAlbum",
            "Recursive": True,
            "SortBy": "ProductionYear,SortName",
        })
        return [Album.from_jellyfin_api(item) for item in items]

    async def fetch_genre_albums(self, genre_id: str) -> list[Album]:
        items = await self._get_items({
            "GenreIds": genre_id,
            "IncludeItemTypes": "MusicAlbum",
            "Recursive": True,
            "SortBy": "SortName",
        })
        return [Album.from_jellyfin_api(item) for item in items]

    async def fetch_playlist_tracks(self, playlist_id: str) -> list[Track]:
        session = self._require_session()
        data = await self._request("GET", f"/Playlists/{playlist_id}/Items", params={
            "UserId": session.user_id,
            "Fields": ITEM_FIELDS,
        })
        return [Track.from_jellyfin_api(item) for item in _items(data)]

    # =========================================================================
    # Smart views
    # =========================================================================

    async def fetch_favorite_tracks(self) -> list[Track]:
        items = await self._get_items({
            "IncludeItemTypes": "Audio",
            "Recursive": True,
            "Filters": "IsFavorite",
            "SortBy": "SortName",
        })
        return [Track.from_jellyfin_api(item) for item in items]

    async def fetch_recently_played_tracks(self, library_id: str, limit: int = 20) -> list[Track]:
        return await self._fetch_sorted_tracks(library_id, "DatePlayed", limit, played_only=True)

    async def fetch_most_played_tracks(self, library_id: str, limit: int = 20) -> list[Track]:
        return await self._fetch_sorted_tracks(library_id, "PlayCount", limit, played_only=True)

    async def fetch_longest_tracks(self, library_id: str, limit: int = 20) -> list[Track]:
        return await self._fetch_sorted_tracks(library_id, "Runtime", limit)

    async def _fetch_sorted_tracks(
        self, library_id: str, sort_by: str, limit: int, played_only: bool = False
    ) -> list[Track]:
        items = await self._get_items({
            "ParentId": library_id,
            "IncludeItemTypes": "Audio",
            "Recursive": True,
            "SortBy": sort_by,
            "SortOrder": "Descending",
            "Filters": "IsPlayed" if played_only else None,
            "Limit": limit,
        })
        return [Track.from_jellyfin_api(item) for item in items]

    async def fetch_recently_added_albums(self, library_id: str, limit: int = 20) -> list[Album]:
        return await self._fetch_sorted_albums(library_id, "DateCreated", limit)

    async def fetch_most_played_albums(self, library_id: str, limit: int = 20) -> list[Album]:
        return await self._fetch_sorted_albums(library_id, "PlayCount", limit)

    async def _fetch_sorted_albums(self, library_id: str, sort_by: str, limit: int) -> list[Album]:
        items = await self._get_items({
            "ParentId": library_id,
            "IncludeItemTypes": "MusicAlbum",
            "Recursive": True,
            "SortBy": sort_by,
            "SortOrder": "Descending",
            "Limit": limit,
        })
        return [Album.from_jellyfin_api(item) for item in items]

    # =========================================================================
    # Search
    # =========================================================================

    async def search_albums(self, query: str, library_id: str) -> list[Album]:
        items = await self._search(query, library_id, "MusicAlbum")
        return [Album.from_jellyfin_api(item) for item in items]

    async def search_artists(self, query: str, library_id: str) -> list[Artist]:
        session = self._require_session()
        data = await self._request("GET", "/Artists", params={
            "UserId": session.user_id,
            "ParentId": library_id,
            "SearchTerm": query,
            "Fields": ITEM_FIELDS,
        })
        return [Artist.from_jellyfin_api(item) for item in _items(data)]

    async def search_tracks(self, query: str, library_id: str) -> list[Track]:
        items = await self._search(query, library_id, "Audio")
        return [Track.from_jellyfin_api(item) for item in items]

    async def _search(self, query: str, library_id: str, item_type: str) -> list[dict[str, Any]]:
        return await self._get_items({
            "ParentId": library_id,
            "IncludeItemTypes": item_type,
            "Recursive": True,
            "SearchTerm": query,
            "SortBy": "SortName",
        })

    # =========================================================================
    # Playlist edits
    # =========================================================================

    async def create_playlist(self, name: str, track_ids: list[str]) -> Playlist:
        session = self._require_session()
        data = await self._request("POST", "/Playlists", json_body={
            "Name": name,
            "Ids": list(track_ids),
            "UserId": session.user_id,
            "MediaType": "Audio",
        })
        playlist_id = data.get("Id") if isinstance(data, dict) else None
        if not isinstance(playlist_id, str):
            raise JellyfinRequestError(
                "Malformed create playlist response",
                details={"name": name}
            )
        logger.info(f"Created playlist '{name}' with {len(track_ids)} tracks")
        return Playlist(id=playlist_id, name=name, track_count=len(track_ids), track_ids=tuple(track_ids))

    async def add_to_playlist(self, playlist_id: str, track_ids: list[str]) -> None:
        session = self._require_session()
        await self._request("POST", f"/Playlists/{playlist_id}/Items", params={
            "Ids": ",".join(track_ids),
            "UserId": session.user_id,
        })

    async def remove_from_playlist(self, playlist_id: str, entry_ids: list[str]) -> None:
        await self._request("DELETE", f"/Playlists/{playlist_id}/Items", params={
            "EntryIds": ",".join(entry_ids),
        })

    async def move_playlist_item(self, playlist_id: str, entry_id: str, new_index: int) -> None:
        await self._request("POST", f"/Playlists/{playlist_id}/Items/{entry_id}/Move/{new_index}")

    # =========================================================================
    # Downloads
    # =========================================================================

    @asynccontextmanager
    async def stream_download(self, track_id: str) -> AsyncIterator[DownloadStream]:
        """
        Open the original audio file of a track.

        Example:
            async with client.stream_download(track.id) as stream:
                async for chunk in stream.chunks:
                    f.write(chunk)
        """
        path = f"/Items/{track_id}/Download"
        url = f"{self.server_url}{path}"
        headers = self._headers()
        headers["Accept"] = "*/*"

        try:
            async with self._http_session().get(
                url, headers=headers, timeout=aiohttp.ClientTimeout(total=None, sock_read=60)
            ) as response:
                self._raise_for_status(response.status, "GET", path)
                yield DownloadStream(
                    total_bytes=response.content_length,
                    content_type=response.content_type,
                    chunks=response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise JellyfinRequestError(
                f"Download failed: {e}",
                details={"url": url, "track_id": track_id, "original_error": str(e)}
            ) from e

    async def fetch_image(self, item_id: str, max_width: int = ARTWORK_MAX_WIDTH) -> bytes:
        """
        Download the primary image of an item (album or track) as JPEG.

        Raises:
            JellyfinRequestError: HTTP 404 when the item has no image.
        """
        path = f"/Items/{item_id}/Images/Primary"
        url = f"{self.server_url}{path}"
        headers = self._headers()
        headers["Accept"] = "image/*"
        query = _clean_params({"maxWidth": max_width, "format": "Jpg", "quality": 90})

        try:
            async with self._http_session().get(url, params=query, headers=headers) as response:
                self._raise_for_status(response.status, "GET", path)
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise JellyfinRequestError(
                f"Image download failed: {e}",
                details={"url": url, "item_id": item_id, "original_error": str(e)}
            ) from e


def _clean_params(params: dict[str, Any] | None) -> dict[str, str]:
    if not params:
        return {}
    cleaned = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            cleaned[key] = "true" if value else "false"
        else:
            cleaned[key] = str(value)
    return cleaned


def _items(data: Any) -> list[dict[str, Any]]:
    """
    Extract the item list from either {"Items": [...]} or a bare list.

    Anything else is a malformed answer, not an empty result.
    """
    items = data.get("Items") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise JellyfinRequestError(
            "Malformed response body: expected an item list",
            details={"body_type": type(data).__name__}
        )
    return [item for item in items if isinstance(item, dict)]
