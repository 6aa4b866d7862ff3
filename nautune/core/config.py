"""
Configuration management for nautune.

This module handles loading, validating, and providing access to the
application configuration stored in config.yaml.

The configuration file contains:
    - Jellyfin server URL and username
    - Output directory for the download index, audio files and logs
    - Download settings (concurrency, storage limit, auto cleanup)
    - Mode settings (pinned offline mode, online debounce)

Secrets never live in config.yaml. They are read from the environment,
and a .env file in the working directory is loaded first if present:
    NAUTUNE_PASSWORD      Password used by `nautune login`
    NAUTUNE_ACCESS_TOKEN  Access token of an existing session
    NAUTUNE_USER_ID       User id matching the access token

Example config.yaml:
    server:
      url: "https://jellyfin.example.com"
      username: "alice"
      library_id: null

    output:
      directory: "~/Music/Nautune"

    download:
      max_concurrent: 3
      storage_limit_mb: 0       # 0 = unlimited
      auto_cleanup_days: 0      # 0 = disabled

    mode:
      offline: false
      online_debounce: 2.0
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import find_dotenv, load_dotenv

from nautune.core.exceptions import ConfigError


# Default configuration file name (always in current working directory)
CONFIG_FILENAME = "config.yaml"

MIN_CONCURRENT_DOWNLOADS = 1
MAX_CONCURRENT_DOWNLOADS = 10


@dataclass(frozen=True)
class ServerConfig:
    """
    Jellyfin server configuration.

    Attributes:
        url: Server base URL without trailing slash.
        username: Account used by `nautune login`.
        library_id: Optional library selected by default for browse commands.
        password: From NAUTUNE_PASSWORD, or None.
        access_token: From NAUTUNE_ACCESS_TOKEN, or None.
        user_id: From NAUTUNE_USER_ID, or None.
    """
    url: str
    username: str
    library_id: str | None = None
    password: str | None = None
    access_token: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class OutputConfig:
    """
    Output directory configuration.

    Attributes:
        directory: Absolute path holding the index, downloads and logs.
                   Path expansion is performed (~ is expanded to home directory).
    """
    directory: Path

    @property
    def database_path(self) -> Path:
        return self.directory / "downloads.db"

    @property
    def downloads_directory(self) -> Path:
        return self.directory / "tracks"


@dataclass(frozen=True)
class DownloadConfig:
    """
    Download behavior configuration.

    Attributes:
        max_concurrent: Simultaneous transfers, 1..10. Default: 3.
        storage_limit_mb: Storage ceiling in MB, 0 for unlimited.
        auto_cleanup_days: Age after which `nautune cleanup` removes
                           downloads by default, 0 to disable.
    """
    max_concurrent: int = 3
    storage_limit_mb: int = 0
    auto_cleanup_days: int = 0

    @property
    def storage_limit_bytes(self) -> int:
        return self.storage_limit_mb * 1024 * 1024


@dataclass(frozen=True)
class ModeConfig:
    """
    Online/offline mode configuration.

    Attributes:
        offline: Pin offline mode regardless of connectivity.
        online_debounce: Seconds to wait before switching back online.
    """
    offline: bool = False
    online_debounce: float = 2.0


@dataclass(frozen=True)
class Config:
    """
    Complete application configuration.

    Created by load_config() and treated as immutable (frozen dataclass).

    Example:
        config = load_config()
        print(f"Index at: {config.output.database_path}")
        print(f"Using {config.download.max_concurrent} parallel downloads")
    """
    server: ServerConfig
    output: OutputConfig
    download: DownloadConfig
    mode: ModeConfig


def load_config(config_path: Path | None = None) -> Config:
    """
    Load and validate configuration from config.yaml.

    Args:
        config_path: Optional explicit path to config file.
                     If None, looks for config.yaml in current working directory.

    Returns:
        Config: A frozen dataclass containing all configuration values.

    Raises:
        ConfigError: If the config file is not found, has invalid YAML syntax,
                     is missing required fields, or contains invalid values.

    Behavior:
        1. Load .env into the process environment (existing variables win)
        2. Locate config file (explicit path or CWD/config.yaml)
        3. Read and parse YAML content
        4. Validate structure (required sections exist)
        5. Parse each section, applying defaults
        6. Create and return frozen Config object
    """
    load_dotenv(find_dotenv(usecwd=True))

    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME

    if not config_path.exists():
        raise ConfigError(
            f"Configuration file not found: {config_path}",
            details={"file_path": str(config_path)}
        )

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            content = f.read()
    except IOError as e:
        raise ConfigError(
            f"Failed to read configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    try:
        raw_config = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Invalid YAML syntax in configuration file: {e}",
            details={"file_path": str(config_path), "original_error": str(e)}
        ) from e

    if not isinstance(raw_config, dict):
        raise ConfigError(
            "Configuration file must contain a YAML dictionary",
            details={"file_path": str(config_path)}
        )

    _validate_config(raw_config)

    return Config(
        server=_parse_server_config(raw_config["server"]),
        output=_parse_output_config(raw_config["output"]),
        download=_parse_download_config(raw_config.get("download")),
        mode=_parse_mode_config(raw_config.get("mode")),
    )


def _validate_config(raw_config: dict[str, Any]) -> None:
    required_sections = ["server", "output"]

    for section in required_sections:
        if section not in raw_config:
            raise ConfigError(
                f"Missing required section: '{section}'",
                details={"missing_section": section}
            )

        if not isinstance(raw_config[section], dict):
            raise ConfigError(
                f"Section '{section}' must be a dictionary",
                details={"section": section}
            )

    for section in ("download", "mode"):
        value = raw_config.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigError(
                f"Section '{section}' must be a dictionary",
                details={"section": section}
            )


def _parse_server_config(server_section: dict[str, Any]) -> ServerConfig:
    """
    Parse and validate the server configuration section.

    Raises:
        ConfigError: If url or username is missing or empty, or the URL
                     does not use http(s).
    """
    url = server_section.get("url", "")
    username = server_section.get("username", "")

    if not isinstance(url, str) or not url.strip():
        raise ConfigError(
            "'server.url' must be a non-empty string",
            details={"field": "server.url"}
        )

    url = url.strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise ConfigError(
            "'server.url' must start with http:// or https://",
            details={"field": "server.url", "value": url}
        )

    if not isinstance(username, str) or not username.strip():
        raise ConfigError(
            "'server.username' must be a non-empty string",
            details={"field": "server.username"}
        )

    library_id = server_section.get("library_id")
    if library_id is not None and (not isinstance(library_id, str) or not library_id.strip()):
        raise ConfigError(
            "'server.library_id' must be a non-empty string or null",
            details={"field": "server.library_id"}
        )

    return ServerConfig(
        url=url,
        username=username.strip(),
        library_id=library_id.strip() if library_id else None,
        password=os.environ.get("NAUTUNE_PASSWORD") or None,
        access_token=os.environ.get("NAUTUNE_ACCESS_TOKEN") or None,
        user_id=os.environ.get("NAUTUNE_USER_ID") or None,
    )


def _parse_output_config(output_section: dict[str, Any]) -> OutputConfig:
    """
    Parse and validate the output configuration section.

    Expands ~ to home directory and converts to absolute Path.
    Does NOT create the directory (that happens at startup).
    """
    directory = output_section.get("directory", "")

    if not isinstance(directory, str) or not directory.strip():
        raise ConfigError(
            "'output.directory' must be a non-empty string",
            details={"field": "output.directory"}
        )

    return OutputConfig(directory=Path(directory.strip()).expanduser().resolve())


def _parse_download_config(download_section: dict[str, Any] | None) -> DownloadConfig:
    """
    Parse and validate the download configuration section.

    Applies defaults if section is missing or fields are not specified.

    Raises:
        ConfigError: If max_concurrent is outside 1..10, or a limit is negative.
    """
    defaults = DownloadConfig()
    if download_section is None:
        return defaults

    max_concurrent = download_section.get("max_concurrent", defaults.max_concurrent)
    if (
        isinstance(max_concurrent, bool)
        or not isinstance(max_concurrent, int)
        or not MIN_CONCURRENT_DOWNLOADS <= max_concurrent <= MAX_CONCURRENT_DOWNLOADS
    ):
        raise ConfigError(
            f"'download.max_concurrent' must be an integer between "
            f"{MIN_CONCURRENT_DOWNLOADS} and {MAX_CONCURRENT_DOWNLOADS}",
            details={"field": "download.max_concurrent", "value": max_concurrent}
        )

    storage_limit_mb = _parse_non_negative_int(
        download_section, "storage_limit_mb", defaults.storage_limit_mb
    )
    auto_cleanup_days = _parse_non_negative_int(
        download_section, "auto_cleanup_days", defaults.auto_cleanup_days
    )

    return DownloadConfig(
        max_concurrent=max_concurrent,
        storage_limit_mb=storage_limit_mb,
        auto_cleanup_days=auto_cleanup_days,
    )


def _parse_non_negative_int(section: dict[str, Any], key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(
            f"'download.{key}' must be a non-negative integer",
            details={"field": f"download.{key}", "value": value}
        )
    return value


def _parse_mode_config(mode_section: dict[str, Any] | None) -> ModeConfig:
    defaults = ModeConfig()
    if mode_section is None:
        return defaults

    offline = mode_section.get("offline", defaults.offline)
    if not isinstance(offline, bool):
        raise ConfigError(
            "'mode.offline' must be true or false",
            details={"field": "mode.offline", "value": offline}
        )

    debounce = mode_section.get("online_debounce", defaults.online_debounce)
    if isinstance(debounce, bool) or not isinstance(debounce, (int, float)) or debounce < 0:
        raise ConfigError(
            "'mode.online_debounce' must be a non-negative number",
            details={"field": "mode.online_debounce", "value": debounce}
        )

    return ModeConfig(offline=offline, online_debounce=float(debounce))
