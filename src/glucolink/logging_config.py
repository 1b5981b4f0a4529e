"""Configuración de logging (texto o JSON) y logger con campos extra."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "glucolink"


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, extras."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "message": record.getMessage(),
            "logger": record.name,
        }
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_data.update(extra_fields)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter: timestamp - level - logger - message key=value."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        timestamp = created.strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} - {record.levelname} - {record.name} - {record.getMessage()}"
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            msg += " " + " ".join(f"{k}={v}" for k, v in extra_fields.items())
        if record.exc_info:
            msg += f"\n{self.formatException(record.exc_info)}"
        return msg


def setup_logging(log_format: str = "text", log_level: str = "INFO") -> None:
    """Configure the root logger.

    Args:
        log_format: 'json' for structured output, anything else for text.
        log_level: Level name (DEBUG, INFO, ...).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    if log_format.lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(TextFormatter())
    root_logger.addHandler(handler)


class StructuredLogger:
    """Logger wrapper that takes extra fields as keyword arguments."""

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    def _log(self, level: int, msg: str, extra_fields: dict[str, Any]) -> None:
        extra = {"extra_fields": extra_fields} if extra_fields else {}
        self._logger.log(level, msg, extra=extra)

    def debug(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.DEBUG, msg, extra_fields)

    def info(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.INFO, msg, extra_fields)

    def warning(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.WARNING, msg, extra_fields)

    def error(self, msg: str, **extra_fields: Any) -> None:
        self._log(logging.ERROR, msg, extra_fields)

    def exception(self, msg: str, **extra_fields: Any) -> None:
        """Log at error level with the current exception's traceback."""
        extra = {"extra_fields": extra_fields} if extra_fields else {}
        self._logger.exception(msg, extra=extra)


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger (name is typically ``__name__``)."""
    return StructuredLogger(name)
