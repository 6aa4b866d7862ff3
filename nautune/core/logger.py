"""
Logging configuration for nautune.

Every run writes into <output directory>/logs/:
    - log_full_{timestamp}.log: every record, DEBUG and above
    - log_errors_{timestamp}.log: ERROR and CRITICAL only
    - download_failures_{timestamp}.log: one entry per failed track

The console shows colored records at INFO (or DEBUG with --verbose),
printed through tqdm so they never tear a progress bar.

Usage:
    from nautune.core.logger import setup_logging, get_logger

    setup_logging(output_dir)
    logger = get_logger(__name__)
    logger.info("Switched to offline mode")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


LOG_FULL_FILENAME = "log_full"
LOG_ERRORS_FILENAME = "log_errors"
DOWNLOAD_FAILURES_FILENAME = "download_failures"

FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Attribute set on records emitted by log_download_failure()
FAILURE_MARKER = "nautune_download_failure"


class Colors:
    """ANSI escape sequences."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """Prefix each message with its level name, colored by severity."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        return f"{color}{record.levelname}{Colors.RESET}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """Console handler that prints above active progress bars."""

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            tqdm.write(self.format(record), file=self.stream)
        except Exception:
            self.handleError(record)


class FailureReportFormatter(logging.Formatter):
    """
    Two-line report entry:

        Miles Davis - So What [a1b2c3]
            HTTP 404 from server
    """

    def format(self, record: logging.LogRecord) -> str:
        failure = getattr(record, FAILURE_MARKER)
        return (
            f"{failure['artist']} - {failure['track_name']} [{failure['track_id']}]\n"
            f"    {failure['reason']}\n"
        )


class DownloadFailureReport(logging.FileHandler):
    """File handler that keeps only records from log_download_failure()."""

    def __init__(self, report_path: Path) -> None:
        super().__init__(report_path, mode="w", encoding="utf-8")
        self.addFilter(lambda record: hasattr(record, FAILURE_MARKER))
        self.setFormatter(FailureReportFormatter())


def _file_handler(path: Path, level: int) -> logging.FileHandler:
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    return handler


def setup_logging(output_dir: Path, console_level: int = logging.INFO) -> Path:
    """
    Install the console handler and this run's log files on the root logger.

    Any handlers already on the root logger are replaced, so calling it
    twice does not duplicate output.

    Args:
        output_dir: Output directory from config.yaml; logs go to its
                    'logs' subdirectory, created if missing.
        console_level: Lowest level printed to the console.

    Returns:
        The logs directory.
    """
    logs_dir = output_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColoredConsoleFormatter())

    root_logger.addHandler(console_handler)
    root_logger.addHandler(_file_handler(logs_dir / f"{LOG_FULL_FILENAME}_{timestamp}.log", logging.DEBUG))
    root_logger.addHandler(_file_handler(logs_dir / f"{LOG_ERRORS_FILENAME}_{timestamp}.log", logging.ERROR))
    root_logger.addHandler(DownloadFailureReport(logs_dir / f"{DOWNLOAD_FAILURES_FILENAME}_{timestamp}.log"))

    # aiohttp's access/client loggers are chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return logs_dir


def get_logger(name: str) -> logging.Logger:
    """Module logger; silent until setup_logging() has run."""
    return logging.getLogger(name)


def format_mode_message(mode: str, epoch: int, repository_name: str) -> str:
    """Format a colored 'mode changed' message."""
    color = Colors.GREEN if mode == "online" else Colors.YELLOW
    return (
        f"Mode: {color}{mode}{Colors.RESET} "
        f"(epoch {epoch}, {Colors.CYAN}{repository_name}{Colors.RESET})"
    )


def log_download_failure(
    logger: logging.Logger,
    track_id: str,
    track_name: str,
    artist: str,
    error_message: str
) -> None:
    """
    Log a failed download at ERROR level and add it to the failure report.

    Example:
        log_download_failure(logger, "a1b2c3", "So What", "Miles Davis", "HTTP 404 from server")
    """
    logger.error(
        f"Download failed: {artist} - {track_name} - {error_message}",
        extra={FAILURE_MARKER: {
            "track_id": track_id,
            "track_name": track_name,
            "artist": artist,
            "reason": error_message,
        }}
    )


def shutdown_logging() -> None:
    """Flush, close and detach every root handler."""
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except OSError:
            pass
        root_logger.removeHandler(handler)
