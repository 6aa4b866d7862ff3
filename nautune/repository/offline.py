"""
Download-index-backed music repository.

The download index only holds tracks the user explicitly downloaded, so
every browse call here is a filter or group-by over that flat set:

    - Albums: tracks grouped by stored album id (album name when the id
      is missing), ordered by name. An album shows the cached artwork
      of its first track that has one.
    - Artists: tracks grouped by primary artist, ordered by name.
    - Genres: best effort, from the genres captured at download time.
    - Playlists: snapshots saved while online, restricted to tracks that
      are actually on disk. Playlist edits are not supported.

Nothing is cached between calls. Each call reads the completed records
(in a worker thread, the index is synchronous) and regroups them, which
is linear in the number of downloaded tracks.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Iterable

from nautune.core.database import DownloadIndex
from nautune.core.exceptions import UnsupportedOperationError
from nautune.jellyfin.models import Album, Artist, Genre, Library, Playlist, Track
from nautune.repository.base import DEFAULT_PAGE_SIZE, DEFAULT_VIEW_LIMIT, MusicRepository


OFFLINE_LIBRARY = Library(id="offline_downloads", name="Downloads", collection_type="music")

UNKNOWN_ALBUM = "Unknown Album"
UNKNOWN_ARTIST = "Unknown Artist"


@dataclass(frozen=True)
class DownloadedTrack:
    """A completed download record as seen by the offline repository."""
    track: Track
    completed_at: str
    total_bytes: int
    artwork_path: str | None = None


@dataclass(frozen=True)
class AlbumGroup:
    """Tracks sharing one album key, already in disc/track order."""
    album: Album
    tracks: tuple[Track, ...]
    latest_completed_at: str
    play_count: int


def track_order_key(track: Track) -> tuple:
    return (track.parent_index_number or 0, track.index_number or 0, track.name.lower(), track.id)


def album_key(track: Track) -> str:
    return track.album_id or track.album or UNKNOWN_ALBUM


def primary_artist(track: Track) -> str:
    return track.artists[0] if track.artists else UNKNOWN_ARTIST


def group_albums(downloads: Iterable[DownloadedTrack]) -> list[AlbumGroup]:
    """
    Group downloaded tracks into albums.

    Group membership and album fields depend only on the set of tracks,
    never on input order: tracks are sorted inside each group and the
    album takes its name and artists from the first one.
    """
    buckets: dict[str, list[DownloadedTrack]] = {}
    for download in downloads:
        buckets.setdefault(album_key(download.track), []).append(download)

    groups = []
    for key, members in buckets.items():
        members.sort(key=lambda d: track_order_key(d.track))
        first = members[0].track
        genres: list[str] = []
        for member in members:
            for genre in member.track.genres:
                if genre not in genres:
                    genres.append(genre)
        album = Album(
            id=key,
            name=first.album or UNKNOWN_ALBUM,
            artists=first.artists,
            primary_image_tag=first.album_primary_image_tag,
            genres=tuple(genres),
            artwork_path=next((m.artwork_path for m in members if m.artwork_path), None),
        )
        groups.append(AlbumGroup(
            album=album,
            tracks=tuple(m.track for m in members),
            latest_completed_at=max(m.completed_at for m in members),
            play_count=sum(m.track.play_count for m in members),
        ))

    groups.sort(key=lambda g: (g.album.name.lower(), g.album.id))
    return groups


class OfflineRepository(MusicRepository):
    """
    MusicRepository served by the local download index.

    Available while the index is open.
    """

    def __init__(self, index: DownloadIndex) -> None:
        self._index = index

    @property
    def is_available(self) -> bool:
        return self._index.is_open

    @property
    def type_name(self) -> str:
        return "OfflineRepository"

    async def _load(self) -> list[DownloadedTrack]:
        rows = await asyncio.to_thread(self._index.completed_downloads)
        return [
            DownloadedTrack(
                track=Track.from_database_dict(row),
                completed_at=row.get("completed_at") or row.get("queued_at") or "",
                total_bytes=row.get("total_bytes") or 0,
                artwork_path=row.get("artwork_path"),
            )
            for row in rows
        ]

    async def _tracks(self) -> list[Track]:
        return [d.track for d in await self._load()]

    async def _albums_where(self, predicate: Callable[[Track], bool]) -> list[Album]:
        downloads = [d for d in await self._load() if predicate(d.track)]
        return [group.album for group in group_albums(downloads)]

    # =========================================================================
    # Browse
    # =========================================================================

    async def get_libraries(self) -> list[Library]:
        self._require_available()
        return [OFFLINE_LIBRARY]

    async def get_albums(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(start_index, limit)
        groups = group_albums(await self._load())
        return self._paginate([g.album for g in groups], start_index, limit)

    async def get_artists(
        self, library_id: str, start_index: int = 0, limit: int = DEFAULT_PAGE_SIZE
    ) -> list[Artist]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(start_index, limit)
        return self._paginate(self._group_artists(await self._tracks()), start_index, limit)

    def _group_artists(self, tracks: list[Track]) -> list[Artist]:
        songs: dict[str, int] = {}
        albums: dict[str, set[str]] = {}
        for track in tracks:
            name = primary_artist(track)
            songs[name] = songs.get(name, 0) + 1
            albums.setdefault(name, set()).add(album_key(track))

        artists = [
            Artist(id=name, name=name, album_count=len(albums[name]), song_count=count)
            for name, count in songs.items()
        ]
        artists.sort(key=lambda a: a.name.lower())
        return artists

    async def get_genres(self, library_id: str) -> list[Genre]:
        self._require_available()
        self._require_library(library_id)

        track_counts: dict[str, int] = {}
        album_keys: dict[str, set[str]] = {}
        for track in await self._tracks():
            for genre in track.genres:
                track_counts[genre] = track_counts.get(genre, 0) + 1
                album_keys.setdefault(genre, set()).add(album_key(track))

        genres = [
            Genre(id=name, name=name, album_count=len(album_keys[name]), track_count=count)
            for name, count in track_counts.items()
        ]
        genres.sort(key=lambda g: g.name.lower())
        return genres

    async def get_playlists(self) -> list[Playlist]:
        self._require_available()
        downloaded = {t.id for t in await self._tracks()}
        snapshots = await asyncio.to_thread(self._index.list_playlist_snapshots)

        playlists = []
        for snapshot in snapshots:
            track_ids = await asyncio.to_thread(
                self._index.get_playlist_snapshot_track_ids, snapshot["playlist_id"]
            )
            available = tuple(t for t in track_ids if t in downloaded)
            playlists.append(Playlist(
                id=snapshot["playlist_id"],
                name=snapshot["name"] or "",
                track_count=len(available),
                track_ids=available,
            ))
        return playlists

    async def get_album_tracks(self, album_id: str) -> list[Track]:
        self._require_available()
        tracks = [t for t in await self._tracks() if album_key(t) == album_id]
        return sorted(tracks, key=track_order_key)

    async def get_artist_albums(self, artist_id: str) -> list[Album]:
        self._require_available()
        return await self._albums_where(
            lambda t: artist_id in t.artists or t.display_artist == artist_id
            or primary_artist(t) == artist_id
        )

    async def get_genre_albums(self, genre_id: str) -> list[Album]:
        self._require_available()
        return await self._albums_where(lambda t: genre_id in t.genres)

    async def get_playlist_tracks(self, playlist_id: str) -> list[Track]:
        self._require_available()
        by_id = {t.id: t for t in await self._tracks()}
        track_ids = await asyncio.to_thread(
            self._index.get_playlist_snapshot_track_ids, playlist_id
        )
        return [by_id[t] for t in track_ids if t in by_id]

    # =========================================================================
    # Smart views
    # =========================================================================

    async def get_favorite_tracks(self) -> list[Track]:
        self._require_available()
        return [t for t in await self._tracks() if t.is_favorite]

    async def get_recently_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        # No local play history; the captured play count is the closest signal
        return await self._most_played(library_id, limit)

    async def get_most_played_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        return await self._most_played(library_id, limit)

    async def _most_played(self, library_id: str, limit: int) -> list[Track]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(0, limit)
        played = [t for t in await self._tracks() if t.play_count > 0]
        played.sort(key=lambda t: (-t.play_count, t.name.lower(), t.id))
        return played[:limit]

    async def get_recently_added_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(0, limit)
        groups = group_albums(await self._load())
        groups.sort(key=lambda g: g.latest_completed_at, reverse=True)
        return [g.album for g in groups[:limit]]

    async def get_most_played_albums(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(0, limit)
        groups = [g for g in group_albums(await self._load()) if g.play_count > 0]
        groups.sort(key=lambda g: g.play_count, reverse=True)
        return [g.album for g in groups[:limit]]

    async def get_longest_tracks(
        self, library_id: str, limit: int = DEFAULT_VIEW_LIMIT
    ) -> list[Track]:
        self._require_available()
        self._require_library(library_id)
        self._check_page(0, limit)
        tracks = sorted(
            await self._tracks(),
            key=lambda t: (-(t.run_time_ticks or 0), t.name.lower(), t.id)
        )
        return tracks[:limit]

    # =========================================================================
    # Search
    # =========================================================================

    async def search_albums(self, query: str, library_id: str) -> list[Album]:
        self._require_available()
        self._require_library(library_id)
        groups = group_albums(await self._load())
        return [g.album for g in groups if self._matches(query, g.album.name)]

    async def search_artists(self, query: str, library_id: str) -> list[Artist]:
        self._require_available()
        self._require_library(library_id)
        artists = self._group_artists(await self._tracks())
        return [a for a in artists if self._matches(query, a.name)]

    async def search_tracks(self, query: str, library_id: str) -> list[Track]:
        self._require_available()
        self._require_library(library_id)
        return [
            t for t in await self._tracks()
            if self._matches(query, t.name, t.display_artist, t.album)
        ]

    # =========================================================================
    # Playlist edits
    # =========================================================================

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            "Playlists cannot be modified while offline",
            details={"operation": operation, "repository": self.type_name}
        )

    async def create_playlist(self, name: str, track_ids: list[str]) -> Playlist:
        self._require_available()
        raise self._unsupported("create_playlist")

    async def add_to_playlist(self, playlist_id: str, track_ids: list[str]) -> None:
        self._require_available()
        raise self._unsupported("add_to_playlist")

    async def remove_from_playlist(self, playlist_id: str, entry_ids: list[str]) -> None:
        self._require_available()
        raise self._unsupported("remove_from_playlist")

    async def move_playlist_item(self, playlist_id: str, entry_id: str, new_index: int) -> None:
        self._require_available()
        raise self._unsupported("move_playlist_item")
