"""
Logging Setup: Context Fields for Sessions and Transaction Attempts

Runtime modules log through logging.getLogger(__name__). The transaction
runner wraps every attempt in log_context(transaction=..., attempt=...),
and ContextFieldFilter copies those fields onto each record emitted
inside the block, so both output formats carry them.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Optional, TextIO


class LogLevel(IntEnum):
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL

    @classmethod
    def from_name(cls, name: str) -> LogLevel:
        return cls[name.upper()]


_fields: ContextVar[dict[str, Any]] = ContextVar("sessionmesh_log_fields", default={})

# Attributes every LogRecord carries; anything else came from extra= or context.
_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "context_fields"}

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s%(context_fields)s"


class log_context:
    """
    Add fields to every record logged inside the block.

    Nested blocks merge over the enclosing fields; leaving a block
    restores the previous set. Fields follow the asyncio task, so
    concurrent transactions do not see each other's labels.

    Example:
        with log_context(transaction="transfer", attempt=2):
            logger.info("Committing")
    """

    __slots__ = ("_added", "_token")

    def __init__(self, **fields: Any) -> None:
        self._added = fields
        self._token: Optional[Token[dict[str, Any]]] = None

    def __enter__(self) -> log_context:
        self._token = _fields.set({**_fields.get(), **self._added})
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._token is not None:
            _fields.reset(self._token)
            self._token = None


def current_log_context() -> dict[str, Any]:
    return dict(_fields.get())


class ContextFieldFilter(logging.Filter):
    """Copy the active log_context fields onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        active = _fields.get()
        for key, value in active.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.context_fields = (
            " [" + " ".join(f"{k}={v}" for k, v in active.items()) + "]" if active else ""
        )
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message and any extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Records that bypassed the handler filter still pick up context fields.
        for key, value in _fields.get().items():
            data.setdefault(key, value)
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS:
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging(
    level: LogLevel = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Replace the root handlers with a single stream handler.

    Args:
        level: Minimum level for the root logger and the handler
        json_output: JSON lines if True, pipe-separated text otherwise
        stream: Output stream (default: stderr)

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level.value)
    handler.addFilter(ContextFieldFilter())
    handler.setFormatter(JsonFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level.value)
    root.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return handler
