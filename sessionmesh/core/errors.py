"""
Error Hierarchy for the Session Runtime

Design Principles:
- Typed errors across every component boundary, never generic ones
- Transport errors carry their StatusCode verbatim so callers can branch on it
- Carry full error context for debugging (error id, timestamp, cause, context)

Taxonomy:
    capacity        PoolExhaustedError (not retried)
    transient       TransportError UNAVAILABLE / retryable INTERNAL (retried locally)
    session-missing TransportError NOT_FOUND on a session (evict + recreate)
    permanent       TransportError with any other status (propagated)
    contract        ContractViolationError (fatal, never retried)

Usage:
    try:
        rows = await database.run("SELECT 1")
    except TransportError as e:
        if e.status is StatusCode.PERMISSION_DENIED:
            ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sessionmesh.core import constants as C
from sessionmesh.core.types import StatusCode, Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Session pool errors
    - 2xxx: Result stream errors
    - 3xxx: Transaction errors
    - 4xxx: Transport errors
    - 9xxx: Internal/contract errors
    """

    # Session pool errors (1xxx)
    POOL_EXHAUSTED = 1001
    POOL_ACQUIRE_TIMEOUT = 1002
    POOL_CLOSED = 1003
    SESSION_LEAK = 1004

    # Stream errors (2xxx)
    STREAM_STALLED = 2001
    STREAM_PROTOCOL = 2002

    # Transaction errors (3xxx)
    TRANSACTION_DEADLINE_EXCEEDED = 3001
    TRANSACTION_STATE = 3002

    # Transport errors (4xxx)
    TRANSPORT_ERROR = 4001

    # Internal errors (9xxx)
    CONTRACT_VIOLATION = 9001
    CONFIGURATION_ERROR = 9002


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass(eq=False)
class SessionMeshError(Exception):
    """
    Base class for all runtime errors.

    Provides common infrastructure for error handling:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Timestamp of creation
    - Cause chain for root cause analysis
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logging."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# TRANSPORT ERRORS
# =============================================================================
@dataclass(eq=False)
class TransportError(SessionMeshError):
    """
    Error reported by the database transport.

    The status code is preserved verbatim. retry_delay_s carries the
    server-suggested backoff from error metadata, when present.
    """

    status: StatusCode = StatusCode.UNKNOWN
    retry_delay_s: Optional[float] = None
    resource_type: Optional[str] = None
    resource_name: Optional[str] = None

    @classmethod
    def from_status(
        cls,
        status: StatusCode,
        message: str,
        retry_delay_s: Optional[float] = None,
        resource_type: Optional[str] = None,
        resource_name: Optional[str] = None,
    ) -> TransportError:
        return cls(
            code=ErrorCode.TRANSPORT_ERROR,
            message=message,
            status=status,
            retry_delay_s=retry_delay_s,
            resource_type=resource_type,
            resource_name=resource_name,
            context={"status": status.name},
        )

    @classmethod
    def session_not_found(cls, session_name: str) -> TransportError:
        """The server no longer knows the session."""
        return cls.from_status(
            StatusCode.NOT_FOUND,
            f"Session not found: {session_name}",
            resource_type=C.SESSION_RESOURCE_TYPE,
            resource_name=session_name,
        )

    @classmethod
    def database_not_found(cls, database_name: str) -> TransportError:
        return cls.from_status(
            StatusCode.NOT_FOUND,
            f"Database not found: {database_name}",
            resource_type=C.DATABASE_RESOURCE_TYPE,
            resource_name=database_name,
        )

    @classmethod
    def aborted(
        cls,
        message: str = "Transaction aborted",
        retry_delay_s: Optional[float] = None,
    ) -> TransportError:
        return cls.from_status(StatusCode.ABORTED, message, retry_delay_s=retry_delay_s)

    @classmethod
    def unavailable(cls, message: str = "Service unavailable") -> TransportError:
        return cls.from_status(StatusCode.UNAVAILABLE, message)

    @classmethod
    def internal(cls, message: str) -> TransportError:
        return cls.from_status(StatusCode.INTERNAL, message)

    @property
    def is_session_not_found(self) -> bool:
        return (
            self.status is StatusCode.NOT_FOUND
            and (
                self.resource_type == C.SESSION_RESOURCE_TYPE
                or self.message.startswith("Session not found")
            )
        )

    @property
    def is_aborted(self) -> bool:
        return self.status is StatusCode.ABORTED


# =============================================================================
# SESSION POOL ERRORS
# =============================================================================
@dataclass(eq=False)
class PoolExhaustedError(SessionMeshError):
    """
    The pool cannot hand out a session.

    messages lists the labels of every checkout outstanding at the time
    of failure, to help find the callers holding the capacity.
    """

    messages: list[str] = field(default_factory=list)

    @classmethod
    def exhausted(cls, max_sessions: int, messages: list[str]) -> PoolExhaustedError:
        return cls(
            code=ErrorCode.POOL_EXHAUSTED,
            message="No resources available.",
            messages=messages,
            context={"max": max_sessions, "borrowed": len(messages)},
        )

    @classmethod
    def acquire_timeout(cls, timeout_s: float, messages: list[str]) -> PoolExhaustedError:
        return cls(
            code=ErrorCode.POOL_ACQUIRE_TIMEOUT,
            message=f"Timeout occurred while acquiring session after {timeout_s}s.",
            messages=messages,
            context={"timeout_s": timeout_s},
        )


@dataclass(eq=False)
class PoolClosedError(SessionMeshError):
    """Operation attempted on a pool that is closing or closed."""

    @classmethod
    def closed(cls, operation: str) -> PoolClosedError:
        return cls(
            code=ErrorCode.POOL_CLOSED,
            message=f"Cannot {operation}: session pool is closed",
            context={"operation": operation},
        )


@dataclass(eq=False)
class SessionLeakError(SessionMeshError):
    """Sessions were still checked out when the pool closed."""

    messages: list[str] = field(default_factory=list)

    @classmethod
    def leaked(cls, messages: list[str]) -> SessionLeakError:
        return cls(
            code=ErrorCode.SESSION_LEAK,
            message=f"{len(messages)} session leak(s) detected.",
            messages=messages,
        )


# =============================================================================
# STREAM ERRORS
# =============================================================================
@dataclass(eq=False)
class StreamStalledError(SessionMeshError):
    """The consumer did not drain a paused stream within the allowed attempts."""

    attempts: int = 0

    @classmethod
    def stalled(cls, attempts: int) -> StreamStalledError:
        return cls(
            code=ErrorCode.STREAM_STALLED,
            message=(
                "Stream is still not ready to receive data after "
                f"{attempts} attempts to resume."
            ),
            attempts=attempts,
        )


@dataclass(eq=False)
class StreamProtocolError(SessionMeshError):
    """The transport produced a chunk sequence that cannot be reassembled."""

    @classmethod
    def violation(cls, detail: str) -> StreamProtocolError:
        return cls(
            code=ErrorCode.STREAM_PROTOCOL,
            message=f"Malformed partial result stream: {detail}",
        )


# =============================================================================
# TRANSACTION ERRORS
# =============================================================================
@dataclass(eq=False)
class DeadlineExceededError(SessionMeshError):
    """The transaction deadline elapsed before an attempt could commit."""

    attempts: int = 0

    @classmethod
    def exceeded(
        cls,
        timeout_s: float,
        attempts: int,
        cause: Optional[BaseException] = None,
    ) -> DeadlineExceededError:
        return cls(
            code=ErrorCode.TRANSACTION_DEADLINE_EXCEEDED,
            message=f"Transaction outcome unknown. Deadline of {timeout_s}s exceeded.",
            cause=cause,
            attempts=attempts,
            context={"timeout_s": timeout_s, "attempts": attempts},
        )

    @property
    def status(self) -> StatusCode:
        return StatusCode.DEADLINE_EXCEEDED


@dataclass(eq=False)
class TransactionStateError(SessionMeshError):
    """A transaction operation was issued in the wrong state."""

    @classmethod
    def already_ended(cls, transaction_id: Optional[str]) -> TransactionStateError:
        return cls(
            code=ErrorCode.TRANSACTION_STATE,
            message=f"Transaction {transaction_id} has already ended",
            context={"transaction_id": transaction_id},
        )

    @classmethod
    def invalid_transition(cls, from_state: str, to_state: str) -> TransactionStateError:
        return cls(
            code=ErrorCode.TRANSACTION_STATE,
            message=f"Invalid transaction state transition: {from_state} -> {to_state}",
            context={"from_state": from_state, "to_state": to_state},
        )


# =============================================================================
# CONTRACT VIOLATIONS
# =============================================================================
@dataclass(eq=False)
class ContractViolationError(SessionMeshError):
    """Programming error by the caller: double release, foreign handle, etc."""

    @classmethod
    def double_release(cls, session_id: str) -> ContractViolationError:
        return cls(
            code=ErrorCode.CONTRACT_VIOLATION,
            message=f"Session {session_id} released twice",
            context={"session_id": session_id},
        )

    @classmethod
    def foreign_session(cls, session_id: str) -> ContractViolationError:
        return cls(
            code=ErrorCode.CONTRACT_VIOLATION,
            message=f"Session {session_id} does not belong to this pool",
            context={"session_id": session_id},
        )

    @classmethod
    def double_checkout(cls, session_id: str) -> ContractViolationError:
        return cls(
            code=ErrorCode.CONTRACT_VIOLATION,
            message=f"Session {session_id} is already checked out",
            context={"session_id": session_id},
        )
