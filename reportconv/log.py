"""Logging configuration for the report converter."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

from .errors import ServerStartupError


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

LOG_DIR_MODE = 0o750  # rwxr-x---
LOG_FILE_MODE = 0o660  # rw-rw----


def open_log_file(log_file: Path) -> logging.FileHandler:
    """Create the log directory if needed and open *log_file* for appending.

    Raises:
        ServerStartupError: the directory or the file cannot be created.
    """
    try:
        log_file.parent.mkdir(mode=LOG_DIR_MODE, parents=True, exist_ok=True)
    except OSError as exc:
        raise ServerStartupError(f"failed to create log directory: {exc}") from exc

    try:
        fd = os.open(log_file, os.O_RDWR | os.O_CREAT | os.O_APPEND, LOG_FILE_MODE)
        os.close(fd)
        return logging.FileHandler(log_file, mode="a", encoding="utf-8")
    except OSError as exc:
        raise ServerStartupError(f"failed to create log file: {exc}") from exc


def setup_logging(log_file: Path, level: str = "INFO") -> None:
    """Send log records to stderr and to the application log file.

    Args:
        log_file: File that receives a copy of every record.
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    if not isinstance(logging.getLevelName(level.upper()), int):
        raise ServerStartupError(f"unknown log level: {level}")
    file_handler = open_log_file(log_file)
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr), file_handler],
        force=True,
    )
