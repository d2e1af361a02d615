"""
Observability module: logging setup with per-attempt context fields.
"""

from sessionmesh.observability.logging import (
    LogLevel,
    ContextFieldFilter,
    JsonFormatter,
    log_context,
    current_log_context,
    setup_logging,
)

__all__ = [
    "LogLevel",
    "ContextFieldFilter",
    "JsonFormatter",
    "log_context",
    "current_log_context",
    "setup_logging",
]
