"""
Logging setup for command-line use.

Library modules only call `logging.getLogger(__name__)`; handlers are attached
to the package root logger here, once, by the application entry point.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

ROOT_LOGGER_NAME = "stereomeasure"

LOG_FORMAT = "%(levelname)s | %(asctime)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LOG_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3


def setup_logger(level: int | str = logging.WARNING, log_file: str | Path | None = None) -> logging.Logger:
    """
    Configure the package root logger. Calling it again only updates the level.

    Console output goes to stderr so that command output on stdout stays parseable.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    if getattr(logger, "_stereomeasure_configured", False):
        for handler in logger.handlers:
            if not isinstance(handler, logging.FileHandler):
                handler.setLevel(level)
        logger.setLevel(min(logger.level, level))
        return logger

    # The file handler records everything; the console handler filters.
    logger.setLevel(logging.DEBUG if log_file is not None else level)
    logger.propagate = False
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger._stereomeasure_configured = True  # type: ignore[attr-defined]
    return logger
