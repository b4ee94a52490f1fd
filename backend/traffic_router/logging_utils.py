from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "traffic_router"
LOG_FILE_NAME = "router.log.jsonl"


class RouterJsonFormatter(jsonlogger.JsonFormatter):
    """One JSON object per line with a UTC timestamp, level and thread name."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", datetime.fromtimestamp(record.created, UTC).isoformat())
        log_record.setdefault("level", record.levelname.lower())
        # Worker threads are named after their partition.
        log_record.setdefault("thread", record.threadName)


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def _resolve_log_dir(configured_out_dir: str) -> Path | None:
    """First writable of out_dir/logs, ./out/logs and a temp dir."""
    for log_dir in (
        Path(configured_out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "traffic-router" / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


_configure_lock = threading.Lock()


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    with _configure_lock:
        # Reloaders and partition workers may race to configure the logger.
        if getattr(logger, "_configured", False):
            return logger
        logger.setLevel(_parse_level(settings.log_level))
        logger.propagate = False
        formatter = RouterJsonFormatter()

        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        logger.addHandler(stream)

        log_dir = _resolve_log_dir(settings.out_dir)
        if log_dir is not None:
            try:
                file_handler = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
            except OSError:
                file_handler = None
            if file_handler is not None:
                file_handler.setFormatter(formatter)
                logger.addHandler(file_handler)

        logger._configured = True  # type: ignore[attr-defined]
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit `event` as the message and as a top-level `event` key, with `fields` alongside."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    if not LOGGER.isEnabledFor(level):
        return
    LOGGER.log(level, event, extra={"event": event, **fields})
