"""
Logging configuration.

Structured logging for tier loads, refreshes and degraded persistence.
Level and optional log file come from Settings (CORTEX_LOG_LEVEL,
CORTEX_LOG_FILE); log records go to stderr so CLI output stays parseable.
"""

import logging
import sys
from pathlib import Path

from cortex.core.config import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: int | str = logging.INFO,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure the package logger with console and optional file output.

    Calling it again replaces the handlers installed by the previous call.
    """
    logger = logging.getLogger("cortex")
    logger.setLevel(level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # aiosqlite traces every statement at DEBUG
    sql_level = logging.DEBUG if logger.level <= logging.DEBUG else logging.WARNING
    logging.getLogger("aiosqlite").setLevel(sql_level)

    return logger


def setup_from_settings(settings: Settings, debug: bool = False) -> logging.Logger:
    """Configure logging from settings; ``debug`` forces DEBUG level."""
    level = logging.DEBUG if debug else settings.log_level
    return setup_logging(level=level, log_file=settings.log_file)


def get_logger(name: str) -> logging.Logger:
    """Get a child logger."""
    return logging.getLogger(f"cortex.{name}")
