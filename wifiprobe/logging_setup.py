"""Centralized logging configuration."""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

from .config import AppConfig


class RingBufferHandler(logging.Handler):
    """Keeps the most recent log records in memory for the debug endpoint.

    Callers attach structured fields with ``extra={"data": {...}}``; they are
    stored next to the rendered message.
    """

    def __init__(self, capacity: int = 200, level: int = logging.NOTSET):
        super().__init__(level)
        self.capacity = capacity
        self._records: deque = deque(maxlen=capacity)
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "data": getattr(record, "data", None),
            }
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)
            return
        with self._buffer_lock:
            self._records.append(entry)

    def snapshot(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._buffer_lock:
            entries = [dict(entry) for entry in self._records]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    def clear(self) -> None:
        with self._buffer_lock:
            self._records.clear()


def configure_logging(config: AppConfig) -> RingBufferHandler:
    log_dir = config.paths.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "app.log"

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.logging.level.upper(), logging.INFO))

    file_handler = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=5)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    ring_handler = RingBufferHandler(capacity=config.logging.buffer_size)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(ring_handler)
    return ring_handler
