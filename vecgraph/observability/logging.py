"""
Structured Logging: JSON or key=value Output with Index Context

Provides:
- JsonFormatter: one JSON object per line (@timestamp, level, message, logger, fields)
- KeyValueFormatter: human-readable line with trailing key=value fields
- StructuredLogger: keyword arguments become record fields
- log_context(): fields attached to every record emitted inside the block

Library modules log through the standard logging hierarchy under
"vecgraph.*"; only applications (the CLI) call setup_logging().
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO


class LogLevel(IntEnum):
    """Log level enumeration."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: str) -> "LogLevel":
        """Case-insensitive name lookup. Raises KeyError for unknown names."""
        return cls[value.upper()]


_context_fields: ContextVar[Optional[dict[str, Any]]] = ContextVar("vecgraph_log_fields", default=None)

# Attributes every logging.LogRecord carries; anything else came from `extra`
_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime", "taskName"}


def current_context() -> dict[str, Any]:
    return dict(_context_fields.get() or {})


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Attach fields to every record logged in this block (and nested calls).

    Usage:
        with log_context(index="products", op="compact"):
            ...
    """
    merged = {**current_context(), **fields}
    token = _context_fields.set(merged)
    try:
        yield merged
    finally:
        _context_fields.reset(token)


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Context fields overlaid with the record's own extras."""
    fields = current_context()
    for key, value in record.__dict__.items():
        if key not in _RECORD_ATTRS:
            fields[key] = value
    return fields


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        payload.update(record_fields(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class KeyValueFormatter(logging.Formatter):
    """`time | LEVEL | logger | message key=value ...` for terminals."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} {rendered}{sep}{tail}"


class StructuredLogger:
    """
    Logger whose keyword arguments become record fields.

    Usage:
        log = StructuredLogger("vecgraph.engine").with_extra(index="products")
        log.info("Codebook swapped", generation=3)
    """

    __slots__ = ("_logger", "_fields")

    def __init__(self, name: str, level: Optional[LogLevel] = None) -> None:
        self._logger = logging.getLogger(name)
        if level is not None:
            self._logger.setLevel(level.value)
        self._fields: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._logger.name

    def is_enabled_for(self, level: LogLevel) -> bool:
        return self._logger.isEnabledFor(level.value)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(LogLevel.DEBUG, message, fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(LogLevel.INFO, message, fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(LogLevel.WARNING, message, fields)

    def error(self, message: str, **fields: Any) -> None:
        self._log(LogLevel.ERROR, message, fields)

    def critical(self, message: str, **fields: Any) -> None:
        self._log(LogLevel.CRITICAL, message, fields)

    def _log(self, level: LogLevel, message: str, fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level.value):
            return
        clashes = _RECORD_ATTRS.intersection(fields)
        if clashes:
            # LogRecord refuses to overwrite its own attributes
            fields = {(f"field_{k}" if k in clashes else k): v for k, v in fields.items()}
        self._logger.log(level.value, message, extra={**self._fields, **fields}, stacklevel=3)

    def with_extra(self, **fields: Any) -> "StructuredLogger":
        """Child logger carrying additional default fields."""
        child = StructuredLogger(self._logger.name)
        child._fields = {**self._fields, **fields}
        return child

    @staticmethod
    def context(**fields: Any):
        """Alias of log_context()."""
        return log_context(**fields)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Minimum log level
        json_output: JSON lines instead of key=value text
        stream: Output stream (default: stderr)
    """
    root = logging.getLogger()
    root.setLevel(level.value)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level.value)
    handler.setFormatter(JsonFormatter() if json_output else KeyValueFormatter())
    root.addHandler(handler)
