"""
nautune: online/offline music library access for Jellyfin.

This package gives the rest of an application one catalog interface,
MusicRepository, backed either by a Jellyfin server or by the local index
of downloaded tracks, and switches between the two as connectivity and
the user's offline preference change.

Architecture:
    core/        - Configuration, download index, logging, exceptions
    jellyfin/    - Data models and the aiohttp Jellyfin client
    repository/  - MusicRepository, its online/offline implementations,
                   the factory and the mode controller
    download/    - Download queue with bounded concurrency, cleanup policies
    cli.py       - Command-line interface

Usage:
    Command Line:
        nautune login
        nautune albums --limit 20
        nautune download album <album-id>
        nautune --offline search "blue"
        nautune cleanup --free-mb 500

    Python API:
        from nautune import DownloadIndex, JellyfinClient, ModeController

        index = DownloadIndex(config.output.database_path)
        client = JellyfinClient(config.server.url)
        await client.authenticate(username, password)

        controller = ModeController(client, index)
        albums = await controller.run(lambda repo: repo.get_albums(library_id))

Dependencies:
    - aiohttp: Jellyfin HTTP client
    - mutagen: Duration of downloaded audio files
    - rich-click: CLI colors
    - rich: Progress bars and tables
    - tqdm: Log output that does not break progress bars
    - pyyaml: Configuration file parsing
    - python-dotenv: Secrets from .env
"""

__version__ = "0.1.0"
__author__ = "nautune"
__license__ = "MIT"

# Convenience imports for common usage
from nautune.core import (
    Config,
    ConfigError,
    DatabaseError,
    DownloadError,
    DownloadIndex,
    JellyfinError,
    NautuneError,
    PreconditionError,
    RepositoryUnavailableError,
    StaleResultError,
    UnsupportedOperationError,
    get_logger,
    load_config,
    setup_logging,
)
from nautune.jellyfin import Album, Artist, Genre, JellyfinClient, Library, Playlist, Session, Track
from nautune.repository import (
    Mode,
    ModeChange,
    ModeController,
    MusicRepository,
    OfflineRepository,
    OnlineRepository,
    RepositoryFactory,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "Config",
    "load_config",
    "DownloadIndex",
    "setup_logging",
    "get_logger",
    # Exceptions
    "NautuneError",
    "ConfigError",
    "DatabaseError",
    "PreconditionError",
    "RepositoryUnavailableError",
    "UnsupportedOperationError",
    "StaleResultError",
    "JellyfinError",
    "DownloadError",
    # Jellyfin
    "JellyfinClient",
    "Library",
    "Album",
    "Artist",
    "Genre",
    "Track",
    "Playlist",
    "Session",
    # Repository
    "MusicRepository",
    "OnlineRepository",
    "OfflineRepository",
    "RepositoryFactory",
    "ModeController",
    "ModeChange",
    "Mode",
]
