"""
Logging configuration module for cherishly_sync.

Provides centralized logging configuration with support for:
- Console and daily file logging
- Log levels driven by environment variables
- Verbose mode for the CLI
- A dedicated matching log that records every people-suggestion decision
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Root logger name for the package hierarchy
LOGGER_NAME = "cherishly_sync"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"

VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Environment variable names
ENV_LOG_LEVEL = "CHERISHLY_SYNC_LOG_LEVEL"
ENV_DEBUG = "CHERISHLY_SYNC_DEBUG"
ENV_LOG_FILE = "CHERISHLY_SYNC_LOG_FILE"

# Default log directory lives beside the config directory
DEFAULT_LOG_DIR = Path.home() / ".cherishly-sync" / "logs"

MATCHING_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
MATCHING_LOGGER_NAME = f"{LOGGER_NAME}.matching"

# Set by setup_logging() so the matching logger lands in the same place
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when stdout is a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CHERISHLY_SYNC_DEBUG wins over CHERISHLY_SYNC_LOG_LEVEL. Unknown level
    names fall back to INFO.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _daily_log_name() -> str:
    return f"cherishly_sync_{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from the environment or the default location.

    Args:
        log_dir: Directory to use when no explicit file is configured

    Returns:
        Path to the log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return (log_dir or DEFAULT_LOG_DIR) / _daily_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the cherishly_sync package.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, force DEBUG and use the verbose console format.
        log_dir: Directory for the daily log file.
        log_file: Explicit log file path; wins over log_dir.
        enable_file_logging: If False, only log to the console.
        use_colors: If True, use colored console output when supported.

    Returns:
        The package root logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("/var/log/cherishly"), enable_file_logging=True)
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file if log_file else get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                # File always captures debug output
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_dir:
        _configured_log_dir = log_dir
    elif log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = None

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete old log files, keeping only the most recent ones of each kind.

    Args:
        log_dir: Directory containing log files. Defaults to the configured
                 directory, then DEFAULT_LOG_DIR.
        keep_count: Files to keep per kind. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or DEFAULT_LOG_DIR
    if not logs_dir.exists():
        return 0

    deleted = 0
    for pattern in ("cherishly_sync_*.log", "matching_*.log"):
        files = sorted(
            logs_dir.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True
        )
        for old_log in files[keep_count:]:
            try:
                old_log.unlink()
                deleted += 1
            except OSError:
                logger = logging.getLogger(LOGGER_NAME)
                logger.debug(f"Could not delete old log {old_log}")

    return deleted


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the cherishly_sync hierarchy.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance for the module
    """
    if not name.startswith(LOGGER_NAME):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """
    Change the logging level at runtime.

    File handlers stay at DEBUG so the log file remains complete.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def setup_matching_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up the dedicated logger for people-matching decisions.

    Every suggestion the mapping builder makes (or declines to make) is
    written here with its confidence and reason, one file per session.

    Args:
        log_file: Optional explicit path. Defaults to a timestamped
                  matching_*.log in the configured log directory.
        level: Logging level (default DEBUG)

    Returns:
        The matching logger
    """
    logger = logging.getLogger(MATCHING_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    if log_file is None:
        logs_dir = _configured_log_dir or DEFAULT_LOG_DIR
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = logs_dir / f"matching_{timestamp}.log"

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        handler = logging.StreamHandler(sys.stderr)
        logger.addHandler(handler)
        logger.warning(f"Could not create matching log file {log_file}: {e}")
        return logger

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT))
    logger.addHandler(handler)
    logger.info(f"Matching session started at {datetime.now().isoformat()}")
    return logger


def get_matching_logger() -> logging.Logger:
    """Return the matching logger (it only has handlers once set up)."""
    return logging.getLogger(MATCHING_LOGGER_NAME)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_matching_logger",
    "get_matching_logger",
    "DEFAULT_LOG_DIR",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
