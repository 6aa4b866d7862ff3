"""
Repository selection by mode.

RepositoryFactory.create() is a pure function of its arguments: it keeps
no state and never reuses an earlier repository, so a caller can never be
handed an adapter bound to a cleared session or a closed index.
"""

from nautune.core.database import DownloadIndex
from nautune.core.exceptions import PreconditionError
from nautune.jellyfin.client import JellyfinClient
from nautune.repository.base import MusicRepository
from nautune.repository.offline import OfflineRepository
from nautune.repository.online import OnlineRepository


class RepositoryFactory:
    """Creates the MusicRepository matching the current mode."""

    @staticmethod
    def create(
        is_offline_mode: bool,
        client: JellyfinClient | None,
        index: DownloadIndex | None,
    ) -> MusicRepository:
        """
        Create a repository for the given mode.

        Args:
            is_offline_mode: True for the download index, False for the server.
            client: Jellyfin client, required online.
            index: Download index, required offline.

        Raises:
            PreconditionError: If the collaborator needed by the mode is missing.
        """
        if is_offline_mode:
            if index is None:
                raise PreconditionError("No download index available")
            return OfflineRepository(index)

        if client is None:
            raise PreconditionError("No client available")
        return OnlineRepository(client)
