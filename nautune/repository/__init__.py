"""
Repository module for nautune.

    - base: MusicRepository, the catalog interface
    - online: Jellyfin-backed implementation
    - offline: Download-index-backed implementation
    - factory: Picks the implementation for a mode
    - mode: ModeController, mode switching and stale-result discard
"""

from nautune.repository.base import MusicRepository
from nautune.repository.factory import RepositoryFactory
from nautune.repository.mode import Mode, ModeChange, ModeController
from nautune.repository.offline import OFFLINE_LIBRARY, OfflineRepository
from nautune.repository.online import OnlineRepository

__all__ = [
    "MusicRepository",
    "OnlineRepository",
    "OfflineRepository",
    "OFFLINE_LIBRARY",
    "RepositoryFactory",
    "ModeController",
    "ModeChange",
    "Mode",
]
