"""Logging utilities and the bounded activity log."""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from typing import Deque, List

from .models import LogEntry

_LOGGER_NAME = "evolver"

ACTIVITY_LOG_SIZE = 50

CATEGORY_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "question": logging.INFO,
    "reflection": logging.INFO,
    "evolution": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the evolver hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *, verbose: bool = False, log_file: Path | None = None
) -> logging.Logger:
    """Configure the evolver logger with console output and optional file sink."""
    level = logging.DEBUG if verbose else logging.INFO
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Reset handlers to avoid duplicate output when CLI is invoked multiple times.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("[evolver] %(levelname)s %(message)s"))
    logger.addHandler(stream_handler)

    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logger.addHandler(file_handler)

    return logger


class ActivityLog:
    """Append-only ring of the most recent user-visible log lines."""

    def __init__(self, size: int = ACTIVITY_LOG_SIZE) -> None:
        self._entries: Deque[LogEntry] = deque(maxlen=size)
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, message: str, category: str = "info") -> LogEntry:
        with self._lock:
            entry = LogEntry(
                sequence=next(self._sequence),
                timestamp=datetime.now(UTC),
                message=message,
                category=category,
            )
            self._entries.append(entry)
        return entry

    def entries(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["ACTIVITY_LOG_SIZE", "ActivityLog", "configure_logging", "get_logger"]
