"""
Core module for nautune.

This module provides the foundational components used throughout the application:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - database: Thread-safe SQLite download index
    - logger: Logging system with multiple outputs

Usage:
    from nautune.core import (
        Config, load_config,
        DownloadIndex,
        setup_logging, get_logger,
        NautuneError, ConfigError, DatabaseError
    )
"""

from nautune.core.config import (
    Config,
    DownloadConfig,
    ModeConfig,
    OutputConfig,
    ServerConfig,
    load_config,
)
from nautune.core.database import DownloadIndex
from nautune.core.exceptions import (
    ConfigError,
    DatabaseError,
    DownloadError,
    JellyfinAuthError,
    JellyfinError,
    JellyfinRequestError,
    NautuneError,
    PreconditionError,
    RepositoryUnavailableError,
    StaleResultError,
    UnsupportedOperationError,
)
from nautune.core.logger import (
    get_logger,
    log_download_failure,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    # Config
    "Config",
    "ServerConfig",
    "OutputConfig",
    "DownloadConfig",
    "ModeConfig",
    "load_config",
    # Database
    "DownloadIndex",
    # Exceptions
    "NautuneError",
    "ConfigError",
    "DatabaseError",
    "PreconditionError",
    "RepositoryUnavailableError",
    "UnsupportedOperationError",
    "StaleResultError",
    "JellyfinError",
    "JellyfinAuthError",
    "JellyfinRequestError",
    "DownloadError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_download_failure",
    "shutdown_logging",
]
