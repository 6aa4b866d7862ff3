"""
Jellyfin module for nautune.

    - models: Immutable catalog records parsed from Jellyfin JSON
    - client: aiohttp client for the Jellyfin REST API
"""

from nautune.jellyfin.client import DownloadStream, JellyfinClient
from nautune.jellyfin.models import (
    Album,
    Artist,
    Genre,
    Library,
    Playlist,
    Session,
    Track,
)

__all__ = [
    "JellyfinClient",
    "DownloadStream",
    "Library",
    "Album",
    "Artist",
    "Genre",
    "Track",
    "Playlist",
    "Session",
]
