"""
Logging setup for the ``aicoder_env`` logger hierarchy.

Console output goes to stderr so command output on stdout (``status --json``,
``config``) stays machine-readable. A log file, when requested, always
receives DEBUG records. Records can also be bridged onto the UI event stream.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from .events import EventBus, EventLogHandler


LOGGER_NAME = "aicoder_env"

CONSOLE_FORMAT = "%(levelname_colored)s %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"

_logger: Optional[logging.Logger] = None


def _effective_level(level: str, verbose: bool, quiet: bool) -> int:
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.getLevelName(level.upper())


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    verbose: bool = False,
    quiet: bool = False,
    propagate: bool = False,
) -> logging.Logger:
    """
    Configure the ``aicoder_env`` logger.

    Calling it again replaces the console and file handlers; handlers added
    by ``attach_event_bus`` are kept.

    Args:
        level: Log level name used when neither verbose nor quiet is set
        log_file: Optional file receiving DEBUG output
        verbose: DEBUG on the console
        quiet: No console handler, WARNING and above only
        propagate: Let records reach the root logger (pytest caplog)

    Returns:
        Configured logger instance
    """
    global _logger

    effective = _effective_level(level, verbose, quiet)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(effective)

    for handler in [h for h in logger.handlers if not isinstance(h, EventLogHandler)]:
        logger.removeHandler(handler)
        handler.close()

    if not quiet:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(effective)
        console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, use_colors=sys.stderr.isatty()))
        logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)
        # The file wants everything even when the console is quieter
        logger.setLevel(logging.DEBUG)

    logger.propagate = propagate
    _logger = logger
    return logger


def get_logger() -> logging.Logger:
    """Return the package logger, configuring defaults on first use."""
    global _logger
    if _logger is None:
        _logger = setup_logging()
    return _logger


def attach_event_bus(bus: EventBus, level: int = logging.INFO) -> EventLogHandler:
    """
    Republish ``aicoder_env`` log records on ``bus`` as ``LogLine`` events.

    Returns:
        The installed handler, for ``detach_event_bus``
    """
    handler = EventLogHandler(bus)
    handler.setLevel(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > level:
        logger.setLevel(level)
    return handler


def detach_event_bus(handler: EventLogHandler) -> None:
    """Remove a handler installed by ``attach_event_bus``."""
    logging.getLogger(LOGGER_NAME).removeHandler(handler)


class ColoredFormatter(logging.Formatter):
    """
    Console formatter that prefixes the level with a color and a symbol.

    Exposes ``%(levelname_colored)s`` to the format string.
    """

    STYLES = {
        logging.DEBUG: ("\033[36m", "·"),
        logging.INFO: ("\033[32m", "✓"),
        logging.WARNING: ("\033[33m", "⚠️"),
        logging.ERROR: ("\033[31m", "✗"),
        logging.CRITICAL: ("\033[1;31m", "🚨"),
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, use_colors: bool = True):
        super().__init__(fmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        if self.use_colors and record.levelno in self.STYLES:
            color, symbol = self.STYLES[record.levelno]
            record.levelname_colored = f"{color}{symbol} {record.levelname}{self.RESET}"
        else:
            record.levelname_colored = record.levelname
        return super().format(record)
