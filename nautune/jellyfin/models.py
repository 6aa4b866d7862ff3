"""
Data models for Jellyfin entities.

This module defines immutable dataclasses representing the catalog objects
served by a Jellyfin server: libraries, albums, artists, genres, tracks and
playlists, plus the authenticated session.

Design Decisions:
    - All dataclasses are frozen (immutable); updated copies are made with
      dataclasses.replace()
    - from_jellyfin_api() tolerates missing and wrongly-typed fields, since
      servers and plugins disagree on which fields they send
    - List-like fields are tuples for immutability
    - Track carries everything the offline repository needs to rebuild
      albums, artists and smart views from downloaded tracks alone

Usage:
    from nautune.jellyfin.models import Track

    track = Track.from_jellyfin_api(item_json)
    print(f"{track.display_artist} - {track.name} ({track.duration_seconds}s)")
"""

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any


# Jellyfin durations are expressed in ticks of 100 nanoseconds
TICKS_PER_SECOND = 10_000_000

AUDIO_COLLECTION_TYPES = frozenset({"music", "audiobooks", "musicvideos", "playlists"})


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(v for v in value if isinstance(v, str) and v)
    return ()


def _primary_image_tag(data: dict[str, Any]) -> str | None:
    image_tags = data.get("ImageTags")
    if isinstance(image_tags, dict):
        return _str_or_none(image_tags.get("Primary"))
    return None


def _user_data(data: dict[str, Any]) -> dict[str, Any]:
    user_data = data.get("UserData")
    return user_data if isinstance(user_data, dict) else {}


def _is_favorite(data: dict[str, Any]) -> bool:
    favorite = _user_data(data).get("IsFavorite")
    if isinstance(favorite, bool):
        return favorite
    if isinstance(favorite, (int, float)):
        return favorite != 0
    return False


def format_artists(artists: tuple[str, ...]) -> str:
    """
    Join artist names for display.

    Example:
        format_artists(())                      # "Unknown Artist"
        format_artists(("A", "B"))              # "A & B"
        format_artists(("A", "B", "C"))         # "A, B & C"
    """
    if not artists:
        return "Unknown Artist"
    if len(artists) == 1:
        return artists[0]
    return f"{', '.join(artists[:-1])} & {artists[-1]}"


@dataclass(frozen=True)
class Library:
    """
    A top-level media library (Jellyfin "view").

    Attributes:
        id: Library item id.
        name: Display name, e.g. "Music".
        collection_type: Jellyfin collection type ("music", "movies", ...).
        image_tag: Primary image tag, if any.
    """
    id: str
    name: str
    collection_type: str | None = None
    image_tag: str | None = None

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Library":
        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            collection_type=_str_or_none(data.get("CollectionType")),
            image_tag=_primary_image_tag(data),
        )

    @property
    def is_audio_library(self) -> bool:
        return (self.collection_type or "").lower() in AUDIO_COLLECTION_TYPES


@dataclass(frozen=True)
class Album:
    """
    A music album.

    Attributes:
        id: Album item id.
        name: Album title.
        artists: Album artist names, in server order.
        artist_ids: Album artist item ids.
        production_year: Release year, if known.
        primary_image_tag: Artwork tag, if any.
        is_favorite: Whether the user marked the album as favorite.
        genres: Genre names.
        artwork_path: Local artwork file; only set on albums rebuilt from
                      downloads.
    """
    id: str
    name: str
    artists: tuple[str, ...] = ()
    artist_ids: tuple[str, ...] = ()
    production_year: int | None = None
    primary_image_tag: str | None = None
    is_favorite: bool = False
    genres: tuple[str, ...] = ()
    artwork_path: str | None = None

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Album":
        """
        Create an Album from a Jellyfin item.

        AlbumArtists (list of {Id, Name}) is preferred; the flat Artists
        list of names is the fallback.
        """
        album_artists = [
            a for a in data.get("AlbumArtists") or [] if isinstance(a, dict)
        ]
        artist_items = [
            a for a in data.get("ArtistItems") or [] if isinstance(a, dict)
        ]

        artist_ids: list[str] = []
        for artist in album_artists + artist_items:
            artist_id = _str_or_none(artist.get("Id"))
            if artist_id and artist_id not in artist_ids:
                artist_ids.append(artist_id)

        names = tuple(
            name for name in (_str_or_none(a.get("Name")) for a in album_artists) if name
        )
        if not names:
            names = _str_tuple(data.get("Artists"))

        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            artists=names,
            artist_ids=tuple(artist_ids),
            production_year=_int_or_none(data.get("ProductionYear")),
            primary_image_tag=_primary_image_tag(data),
            is_favorite=_is_favorite(data),
            genres=_str_tuple(data.get("Genres")),
        )

    @property
    def display_artist(self) -> str:
        return format_artists(self.artists)


@dataclass(frozen=True)
class Artist:
    """A music artist. album_count maps Jellyfin's ChildCount."""
    id: str
    name: str
    primary_image_tag: str | None = None
    genres: tuple[str, ...] = ()
    album_count: int | None = None
    song_count: int | None = None

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Artist":
        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            primary_image_tag=_primary_image_tag(data),
            genres=_str_tuple(data.get("Genres")),
            album_count=_int_or_none(data.get("ChildCount")),
            song_count=_int_or_none(data.get("SongCount")),
        )


@dataclass(frozen=True)
class Genre:
    """A music genre."""
    id: str
    name: str
    album_count: int | None = None
    track_count: int | None = None

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Genre":
        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            album_count=_int_or_none(data.get("AlbumCount")),
            track_count=_int_or_none(data.get("SongCount")),
        )


@dataclass(frozen=True)
class Track:
    """
    Immutable representation of a Jellyfin audio item.

    Tracks are the unit of playback and of download. Everything stored
    here is also persisted in the download index so that the offline
    repository can rebuild browse views without the server.

    Attributes:
        id: Track item id.
        name: Track title.
        album: Album title, if the track belongs to one.
        artists: Artist names, in server order.
        album_id: Album item id.
        run_time_ticks: Duration in 100 ns ticks.
        index_number: Track number within the disc.
        parent_index_number: Disc number.
        primary_image_tag: Track artwork tag.
        album_primary_image_tag: Album artwork tag.
        is_favorite: User favorite flag.
        play_count: Number of plays recorded by the server.
        genres: Genre names.
        playlist_item_id: Entry id when the track was read from a playlist.
                          Needed for playlist removals and moves.
    """
    id: str
    name: str
    album: str | None = None
    artists: tuple[str, ...] = ()
    album_id: str | None = None
    run_time_ticks: int | None = None
    index_number: int | None = None
    parent_index_number: int | None = None
    primary_image_tag: str | None = None
    album_primary_image_tag: str | None = None
    is_favorite: bool = False
    play_count: int = 0
    genres: tuple[str, ...] = field(default_factory=tuple)
    playlist_item_id: str | None = None

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Track":
        """
        Create a Track from a Jellyfin item.

        Example:
            track = Track.from_jellyfin_api({
                "Id": "t1", "Name": "Song", "Album": "Record",
                "Artists": ["Band"], "RunTimeTicks": 1_800_000_000,
                "UserData": {"IsFavorite": True, "PlayCount": 4},
            })
            track.duration_seconds  # 180
        """
        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            album=_str_or_none(data.get("Album")),
            artists=_str_tuple(data.get("Artists")),
            album_id=_str_or_none(data.get("AlbumId")),
            run_time_ticks=_int_or_none(data.get("RunTimeTicks")),
            index_number=_int_or_none(data.get("IndexNumber")),
            parent_index_number=_int_or_none(data.get("ParentIndexNumber")),
            primary_image_tag=_primary_image_tag(data),
            album_primary_image_tag=_str_or_none(data.get("AlbumPrimaryImageTag")),
            is_favorite=_is_favorite(data),
            play_count=_int_or_none(_user_data(data).get("PlayCount")) or 0,
            genres=_str_tuple(data.get("Genres")),
            playlist_item_id=_str_or_none(data.get("PlaylistItemId")),
        )

    @property
    def display_artist(self) -> str:
        return format_artists(self.artists)

    @property
    def duration(self) -> timedelta | None:
        if self.run_time_ticks is None:
            return None
        return timedelta(microseconds=self.run_time_ticks / 10)

    @property
    def duration_seconds(self) -> int:
        """Duration in whole seconds, 0 when unknown."""
        if self.run_time_ticks is None:
            return 0
        return self.run_time_ticks // TICKS_PER_SECOND

    def with_run_time_ticks(self, ticks: int) -> "Track":
        return replace(self, run_time_ticks=ticks)

    def to_database_dict(self) -> dict[str, Any]:
        """
        Convert Track to a dictionary for the download index.

        Tuple fields are converted to lists; the index serializes them to JSON.
        """
        return {
            "track_id": self.id,
            "name": self.name,
            "artist": self.display_artist,
            "artists": list(self.artists),
            "album": self.album,
            "album_id": self.album_id,
            "genres": list(self.genres),
            "run_time_ticks": self.run_time_ticks,
            "index_number": self.index_number,
            "parent_index_number": self.parent_index_number,
            "primary_image_tag": self.primary_image_tag,
            "album_primary_image_tag": self.album_primary_image_tag,
            "is_favorite": self.is_favorite,
            "play_count": self.play_count,
        }

    @classmethod
    def from_database_dict(cls, data: dict[str, Any]) -> "Track":
        """Inverse of to_database_dict()."""
        return cls(
            id=data["track_id"],
            name=data.get("name") or "",
            album=data.get("album"),
            artists=tuple(data.get("artists") or ()),
            album_id=data.get("album_id"),
            run_time_ticks=data.get("run_time_ticks"),
            index_number=data.get("index_number"),
            parent_index_number=data.get("parent_index_number"),
            primary_image_tag=data.get("primary_image_tag"),
            album_primary_image_tag=data.get("album_primary_image_tag"),
            is_favorite=bool(data.get("is_favorite")),
            play_count=data.get("play_count") or 0,
            genres=tuple(data.get("genres") or ()),
        )


@dataclass(frozen=True)
class Playlist:
    """
    A user playlist.

    Attributes:
        id: Playlist item id.
        name: Playlist name.
        track_count: Number of entries reported by the server.
        track_ids: Ordered track ids, when known (offline snapshots).
    """
    id: str
    name: str
    track_count: int = 0
    track_ids: tuple[str, ...] = ()

    @classmethod
    def from_jellyfin_api(cls, data: dict[str, Any]) -> "Playlist":
        return cls(
            id=_str_or_none(data.get("Id")) or "",
            name=_str_or_none(data.get("Name")) or "",
            track_count=_int_or_none(data.get("ChildCount")) or 0,
        )


@dataclass(frozen=True)
class Session:
    """
    An authenticated Jellyfin session.

    Attributes:
        server_url: Normalized server URL (no trailing slash).
        username: Account name.
        user_id: Jellyfin user id.
        access_token: Token sent with every request.
        selected_library_id: Library chosen for this session, if any.
        selected_library_name: Its display name.
    """
    server_url: str
    username: str
    user_id: str
    access_token: str
    selected_library_id: str | None = None
    selected_library_name: str | None = None

    def with_library(self, library: Library) -> "Session":
        return replace(
            self,
            selected_library_id=library.id,
            selected_library_name=library.name,
        )
