"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the runtime:
- Result/Either monads for non-exception control flow
- Closed status-code enumeration for transport errors
- Typed error hierarchy
- Configuration management with validation
"""

from sessionmesh.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    StatusCode,
)
from sessionmesh.core.errors import (
    ErrorCode,
    SessionMeshError,
    TransportError,
    PoolExhaustedError,
    PoolClosedError,
    SessionLeakError,
    StreamStalledError,
    StreamProtocolError,
    DeadlineExceededError,
    TransactionStateError,
    ContractViolationError,
)
from sessionmesh.core.config import (
    PoolConfig,
    StreamConfig,
    TransactionConfig,
    ObservabilityConfig,
    SessionMeshConfig,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "StatusCode",
    "ErrorCode",
    "SessionMeshError",
    "TransportError",
    "PoolExhaustedError",
    "PoolClosedError",
    "SessionLeakError",
    "StreamStalledError",
    "StreamProtocolError",
    "DeadlineExceededError",
    "TransactionStateError",
    "ContractViolationError",
    "PoolConfig",
    "StreamConfig",
    "TransactionConfig",
    "ObservabilityConfig",
    "SessionMeshConfig",
]
