"""
Shared value types: Result, Timestamp and StatusCode.

Config loading and the backoff helper report failures as Result values
instead of raising; everything on the request path raises SessionMeshError.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Generic, Literal, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


# =============================================================================
# RESULT
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """Failed outcome carrying the error, usually a SessionMeshError."""

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Raises:
            RuntimeError: always; check is_err() first
        """
        raise RuntimeError(f"unwrap() on Err: {self.error}")


Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Wall-clock instant in nanoseconds since the Unix epoch.

    Stamps session creation and last use, checkout time, read and commit
    timestamps, and errors. Deadlines use time.monotonic() instead.
    """

    nanos: int

    NANOS_PER_SECOND: ClassVar[int] = 1_000_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    def elapsed_seconds(self) -> float:
        return (time.time_ns() - self.nanos) / self.NANOS_PER_SECOND

    def __sub__(self, other: Timestamp) -> int:
        """Difference in nanoseconds."""
        return self.nanos - other.nanos

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"


# =============================================================================
# STATUS CODES
# =============================================================================
class StatusCode(Enum):
    """
    RPC status codes a transport may report.

    The set is closed: from_value() maps any number outside it to UNKNOWN
    so that error classification never sees an unrecognized code.
    """
    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @classmethod
    def from_value(cls, value: int) -> StatusCode:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_transient(self) -> bool:
        """Safe to retry on any call, including writes."""
        return self == StatusCode.UNAVAILABLE
