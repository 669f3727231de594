from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "nl_traffic"
LOG_FILE_NAME = "events.log.jsonl"


class EventFormatter(jsonlogger.JsonFormatter):
    """JSON lines with a UTC timestamp and the level name next to the event fields."""

    def add_fields(self, log_record: dict[str, Any], record: logging.LogRecord, message_dict: dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("ts", datetime.fromtimestamp(record.created, UTC).isoformat())
        log_record["level"] = record.levelname.lower()


def _parse_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _writable_log_dir(out_dir: str) -> Path | None:
    for log_dir in (
        Path(out_dir) / "logs",
        Path.cwd() / "out" / "logs",
        Path(gettempdir()) / "nl-traffic" / "logs",
    ):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
            return log_dir
        except OSError:
            continue
    return None


def configure_logger(*, level: str, out_dir: str, name: str = LOGGER_NAME) -> logging.Logger:
    logger = logging.getLogger(name)
    # Reloaders import the app twice; attach handlers only once.
    if getattr(logger, "_configured", False):
        return logger

    logger.setLevel(_parse_level(level))
    logger.propagate = False
    formatter = EventFormatter()

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    log_dir = _writable_log_dir(out_dir)
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


_logger: logging.Logger | None = None


def get_logger() -> logging.Logger:
    global _logger
    if _logger is None:
        _logger = configure_logger(level=settings.log_level, out_dir=settings.out_dir)
    return _logger


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit ``event`` as the message and as a top-level ``event`` key."""
    get_logger().log(level, event, extra={"event": event, **fields})
