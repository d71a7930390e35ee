"""Logging configuration for the Copilot engine.

Uses Python's standard logging module with support for:
- File logging via argument or COPILOT_ENGINE_LOG environment variable
- The CLI log levels: none, error, warning, info, debug, all
- Verbosity levels for the command line: error(0) .. trace(4)
- Stderr output only when attached to a real console
"""

from __future__ import annotations

import logging
import os
import sys

# Custom log levels
TRACE = 5
VERBOSE = 15

logging.addLevelName(TRACE, "TRACE")
logging.addLevelName(VERBOSE, "VERBOSE")

# Package logger; modules use child loggers
logger = logging.getLogger("copilot_engine")

_initialized = False

# Map the server's --log-level names to logging constants
_LEVEL_MAP = {
    "none": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "verbose": VERBOSE,
    "debug": logging.DEBUG,
    "trace": TRACE,
    "all": TRACE,
}

# Map -v count to log levels (0=errors only, 4=everything)
_VERBOSITY_MAP = {
    0: logging.ERROR,
    1: logging.WARNING,
    2: logging.INFO,
    3: logging.DEBUG,
    4: TRACE,
}


class _LowercaseLevelFormatter(logging.Formatter):
    """Formatter that emits lowercase level names."""

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = record.levelname.lower()
        return super().format(record)


def level_from_name(name: str | None) -> int:
    """Translate a log level name ("info", "all", ...) to a logging level."""
    if not name:
        return logging.INFO
    return _LEVEL_MAP.get(name.lower(), logging.INFO)


def setup_logging(
    level: str | None = None,
    *,
    verbose: int | None = None,
    file: str | None = None,
) -> None:
    """Initialize logging handlers.

    Call this once at startup. Subsequent calls are no-ops. Library users
    who configure logging themselves never need to call it.

    Args:
        level: Log level name (none, error, warning, info, debug, all).
        verbose: Verbosity count, takes precedence over level.
        file: Log file path; falls back to COPILOT_ENGINE_LOG.
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    if verbose is not None:
        log_level = _VERBOSITY_MAP.get(verbose, TRACE)
    else:
        log_level = level_from_name(level)

    logger.setLevel(log_level)

    # Format: HH:MM:SS level: message
    formatter = _LowercaseLevelFormatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
    )

    log_path = file or os.environ.get("COPILOT_ENGINE_LOG")

    if log_path:
        log_path = os.path.expanduser(log_path)
        try:
            file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            if sys.stderr.isatty():
                print(f"[copilot-engine] Failed to open log file: {e}", file=sys.stderr)
                _add_stderr_handler(formatter, log_level)
    elif sys.stderr.isatty():
        # Only log to stderr if it's a real console
        _add_stderr_handler(formatter, log_level)


def _add_stderr_handler(formatter: logging.Formatter, level: int = logging.DEBUG) -> None:
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(formatter)
    logger.addHandler(stderr_handler)


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Optional name for a child logger (e.g., "jsonrpc", "session").
              If None, returns the package logger.

    Returns:
        A configured logger instance.
    """
    if name:
        return logger.getChild(name)
    return logger
