"""Append-only log sink shared by the daemon and the ``monitor`` command."""

from __future__ import annotations

import logging
import sys
import time
from collections import deque
from pathlib import Path
from typing import Iterator, List, Optional, TextIO

LOGGER_NAME = "mac_throttle"
LOG_FORMAT = "%(asctime)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    log_file: Optional[str],
    *,
    echo: bool = True,
    stream: Optional[TextIO] = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach the file (and optional echo) handlers to the package logger.

    Calling this again replaces the handlers installed by a previous call, so
    the CLI and tests can reconfigure freely.
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    if echo:
        console_handler = logging.StreamHandler(stream or sys.stderr)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.setLevel(level)
    logger.propagate = False
    return logger


def flush_logging() -> None:
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()


def tail_lines(path: str, count: int = 20) -> List[str]:
    """Return the last ``count`` lines of ``path``; empty if the file is missing."""
    try:
        with open(path, encoding="utf-8", errors="replace") as fh:
            return [line.rstrip("\n") for line in deque(fh, maxlen=count)]
    except FileNotFoundError:
        return []


def follow(path: str, poll_interval: float = 1.0) -> Iterator[str]:
    """Yield lines appended to ``path`` until the caller stops iterating."""
    with open(path, encoding="utf-8", errors="replace") as fh:
        fh.seek(0, 2)
        while True:
            line = fh.readline()
            if line:
                yield line.rstrip("\n")
            else:
                time.sleep(poll_interval)
