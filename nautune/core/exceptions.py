"""
Exception classes for nautune.

This module defines all custom exceptions used throughout the application.
Each exception carries a human-readable message and an optional details
dictionary, and the hierarchy separates caller bugs (preconditions) from
availability and transport failures.

Exception Hierarchy:
    NautuneError (base)
        ConfigError - Configuration file issues
        DatabaseError - Download index issues
        PreconditionError - No library selected, no session, no client
        RepositoryUnavailableError - Adapter cannot serve calls right now
        UnsupportedOperationError - Operation not offered by this adapter
        StaleResultError - Result belongs to a superseded mode epoch
        JellyfinError - Jellyfin server issues
            JellyfinAuthError - Authentication rejected
            JellyfinRequestError - Non-success response or transport failure
        DownloadError - Audio download issues

Propagation:
    Nothing in the repository layer catches these. An empty list returned
    by a repository is always a success; a failure is always one of these.
"""


class NautuneError(Exception):
    """
    Base exception for all nautune errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch all nautune errors with a single
    except clause if desired.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (e.g., track id, URL).

    Example:
        try:
            albums = await repository.get_albums(library_id)
        except NautuneError as e:
            logger.error(f"Operation failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'track_id': Jellyfin item id involved in the error
                     - 'url': URL that caused the error
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(NautuneError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - config.yaml not found
        - config.yaml has invalid YAML syntax
        - Required fields missing (server.url, output.directory)
        - Invalid field values (e.g., max_concurrent outside 1..10)
    """
    pass


class DatabaseError(NautuneError):
    """
    Raised when there's an issue with the SQLite download index.

    Common causes:
        - Parent directory of the index file does not exist
        - Schema version mismatch
        - Index used after close()
    """
    pass


class PreconditionError(NautuneError):
    """
    Raised when a caller invokes an operation without its prerequisites.

    This is a caller bug, never retried: "No library selected",
    "No active session", "No client available".
    """
    pass


class RepositoryUnavailableError(NautuneError):
    """
    Raised when a repository is asked to serve calls while unavailable.

    Online: no authenticated session. Offline: download index closed.
    Repositories fail fast with this error instead of returning an empty
    list, so an empty result always means "nothing there".
    """
    pass


class UnsupportedOperationError(NautuneError):
    """
    Raised when an adapter does not offer an operation.

    The offline repository raises this for every playlist write: playlists
    are owned by the server and local changes would never reach it.
    """
    pass


class StaleResultError(NautuneError):
    """
    Raised when a call completes after the repository mode changed.

    Attributes:
        issued_epoch: Epoch the call was issued under.
        current_epoch: Epoch active when the result arrived.
    """

    def __init__(self, message: str, issued_epoch: int, current_epoch: int) -> None:
        super().__init__(
            message,
            details={"issued_epoch": issued_epoch, "current_epoch": current_epoch}
        )
        self.issued_epoch = issued_epoch
        self.current_epoch = current_epoch


class JellyfinError(NautuneError):
    """
    Raised when there's an issue with the Jellyfin server.

    Can be CRITICAL (auth failure) or NON-CRITICAL (single request failure).

    Attributes:
        is_auth_error: True if this is an authentication error (CRITICAL).
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        is_auth_error: bool = False
    ) -> None:
        super().__init__(message, details)
        self.is_auth_error = is_auth_error


class JellyfinAuthError(JellyfinError):
    """Raised when the server rejects credentials or the access token."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message, details, is_auth_error=True)


class JellyfinRequestError(JellyfinError):
    """
    Raised when a request fails with a non-success status or a transport error.

    Attributes:
        status_code: HTTP status code, or None for transport failures.
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        status_code: int | None = None
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class DownloadError(NautuneError):
    """
    Raised when there's an issue downloading a track.

    This is a NON-CRITICAL error: the download manager records the
    failure on the item and continues with the rest of the queue.

    Common causes:
        - Server returned an error for the download URL
        - Download interrupted (network issue)
        - Disk full or permission denied
    """
    pass
