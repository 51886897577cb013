"""
Logging setup for groupware_sync.

The ``groupware_sync`` logger gets a console handler on stderr and, when a
log directory or file is configured, a dated file that always records debug
output. Sessions additionally write one entry per synchronized item to the
sync log side channel (``SyncLog``).

Environment:
    GROUPWARE_SYNC_LOG_LEVEL: Console level name (default INFO)
    GROUPWARE_SYNC_DEBUG: Any of 1/true/yes forces DEBUG
    GROUPWARE_SYNC_LOG_FILE: Log file path, or "none" to disable the file
"""

import logging
import os
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

PACKAGE_LOGGER = "groupware_sync"
SYNC_LOG_NAME = f"{PACKAGE_LOGGER}.synclog"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "GROUPWARE_SYNC_LOG_LEVEL"
ENV_DEBUG = "GROUPWARE_SYNC_DEBUG"
ENV_LOG_FILE = "GROUPWARE_SYNC_LOG_FILE"

LOG_FILE_PREFIX = "groupware_sync_"

# <project root>/logs, next to pyproject.toml
PROJECT_LOG_DIR = Path(__file__).resolve().parents[2] / "logs"

_LEVEL_NAMES = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# set by setup_logging, used by cleanup_old_logs
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """Console formatter coloring level and message on capable terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and _terminal_has_colors()

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)
        # colorize a copy; other handlers share the record
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(record)


def _terminal_has_colors() -> bool:
    if not getattr(sys.stdout, "isatty", None) or not sys.stdout.isatty():
        return False
    # https://no-color.org/
    if os.environ.get("NO_COLOR"):
        return False
    return os.environ.get("TERM", "") != "dumb"


def get_log_level_from_env() -> int:
    """Console level from GROUPWARE_SYNC_DEBUG or GROUPWARE_SYNC_LOG_LEVEL."""
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return _LEVEL_NAMES.get(os.environ.get(ENV_LOG_LEVEL, "INFO").upper(), logging.INFO)


def _dated_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path() -> Optional[Path]:
    """
    Log file named by GROUPWARE_SYNC_LOG_FILE, else today's file in logs/.

    Returns:
        The path, or None when the variable disables file logging
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if not log_file:
        return PROJECT_LOG_DIR / _dated_log_name()
    if log_file.lower() in ("none", "disabled"):
        return None
    return Path(log_file)


def _add_file_handler(logger: logging.Logger, file_path: Path) -> None:
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(file_path, encoding="utf-8")
    except OSError as e:
        logger.warning(f"Could not create log file {file_path}: {e}")
        return
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
    logger.addHandler(handler)
    logger.debug(f"Log file: {file_path}")


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    quiet: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the ``groupware_sync`` logger.

    Args:
        level: Console level; None reads the environment
        verbose: DEBUG level with file and line in console messages
        quiet: Only warnings and errors on the console (verbose wins)
        log_dir: Directory receiving a dated log file
        log_file: Explicit log file, takes precedence over log_dir
        enable_file_logging: False keeps all output on the console
        use_colors: Color console output when the terminal supports it

    Returns:
        The package logger
    """
    global _configured_log_dir

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    elif level is None:
        level = get_log_level_from_env()

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    if use_colors:
        console.setFormatter(ColoredFormatter(console_format, DATE_FORMAT))
    else:
        console.setFormatter(logging.Formatter(console_format, DATE_FORMAT))
    logger.addHandler(console)

    if enable_file_logging:
        if log_file:
            file_path: Optional[Path] = log_file
        elif log_dir:
            file_path = log_dir / _dated_log_name()
        else:
            file_path = get_log_file_path()
        if file_path:
            _add_file_handler(logger, file_path)

    _configured_log_dir = log_dir or (log_file.parent if log_file else None)
    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the ``keep_count`` newest dated log files.

    ``log_dir`` defaults to the directory configured by setup_logging, then
    to the project logs directory. A keep_count of 0 disables cleanup.

    Returns:
        Number of deleted files
    """
    if keep_count <= 0:
        return 0
    logs_dir = log_dir or _configured_log_dir or PROJECT_LOG_DIR
    if not logs_dir.exists():
        return 0

    newest_first = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    deleted = 0
    for old_log in newest_first[keep_count:]:
        try:
            old_log.unlink()
        except OSError:
            logging.getLogger(__name__).debug(f"Could not delete old log {old_log}")
            continue
        deleted += 1
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` below the package logger."""
    if not name.startswith(PACKAGE_LOGGER):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)


# =============================================================================
# Sync log side channel
# =============================================================================


def _name(value: Any) -> str:
    return str(getattr(value, "value", value))


class SyncLog(ABC):
    """
    Side channel receiving one entry per synchronization operation.

    Entries carry the sync action and direction, a %-style format string
    and its arguments. Implementations must never raise into the engine.
    """

    @abstractmethod
    def info(self, action: Any, direction: Any, fmt: str, *args: Any) -> None:
        """Record a successful operation."""

    @abstractmethod
    def error(
        self,
        action: Any,
        direction: Any,
        fmt: str,
        exception: Optional[BaseException],
        *args: Any,
    ) -> None:
        """Record a failed operation."""


class NullSyncLog(SyncLog):
    """Sync log that drops every entry."""

    def info(self, action: Any, direction: Any, fmt: str, *args: Any) -> None:
        pass

    def error(
        self,
        action: Any,
        direction: Any,
        fmt: str,
        exception: Optional[BaseException],
        *args: Any,
    ) -> None:
        pass


class LoggingSyncLog(SyncLog):
    """
    Sync log writing through the ``groupware_sync.synclog`` logger.

    Every message is prefixed with the session info string returned by
    ``session_info`` so entries of concurrent sessions can be told apart.

    Usage:
        sync_log = LoggingSyncLog(session.info)
        sync_log.info(SyncAction.CREATE, SyncDirection.UPLOAD, "Created %s", title)
    """

    def __init__(
        self,
        session_info: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.session_info = session_info
        self.logger = logger or logging.getLogger(SYNC_LOG_NAME)

    def _message(self, action: Any, direction: Any, fmt: str, args: tuple) -> str:
        try:
            text = fmt % args if args else fmt
        except (TypeError, ValueError):
            text = f"{fmt} {args!r}"
        prefix = self.session_info() if self.session_info else ""
        return f"{prefix} [{_name(action)}/{_name(direction)}] {text}".strip()

    def info(self, action: Any, direction: Any, fmt: str, *args: Any) -> None:
        self.logger.info(self._message(action, direction, fmt, args))

    def error(
        self,
        action: Any,
        direction: Any,
        fmt: str,
        exception: Optional[BaseException],
        *args: Any,
    ) -> None:
        message = self._message(action, direction, fmt, args)
        if exception is not None:
            message = f"{message}: {exception}"
        self.logger.error(message)


# Module-level exports
__all__ = [
    "setup_logging",
    "get_logger",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "SyncLog",
    "NullSyncLog",
    "LoggingSyncLog",
    "SYNC_LOG_NAME",
    "PROJECT_LOG_DIR",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
