"""
Session Handle: One Server-Side Session and its Current Role

A handle is READ_ONLY until a read-write transaction has been begun on
it, at which point it stores the outstanding transaction id and becomes
READ_WRITE. Ending the transaction resets it to READ_ONLY.

The owning pool is held by weak reference (lookup only); the pool
outlives every handle it hands out.
"""

from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

from sessionmesh.core.types import Timestamp

if TYPE_CHECKING:
    from sessionmesh.session.pool import SessionPool


class SessionRole(Enum):
    """Role a session is requested for."""
    READ_ONLY = auto()
    READ_WRITE = auto()

    @property
    def other(self) -> SessionRole:
        return SessionRole.READ_WRITE if self is SessionRole.READ_ONLY else SessionRole.READ_ONLY


@dataclass(frozen=True, slots=True)
class LeakContext:
    """Diagnostic tag captured when a session is checked out."""
    label: str
    acquired_at: Timestamp = field(default_factory=Timestamp.now)

    def describe(self, session_id: str) -> str:
        held_for = Timestamp.now() - self.acquired_at
        return (
            f"Session {session_id} acquired by '{self.label}' "
            f"{held_for / Timestamp.NANOS_PER_SECOND:.3f}s ago"
        )


class SessionHandle:
    """
    Handle to one pooled session.

    Only the pool mutates role and transaction state; callers treat a
    checked-out handle as an exclusive token for issuing requests.
    """

    __slots__ = (
        "_id",
        "_pool_ref",
        "_transaction_id",
        "_created_at",
        "_last_used_at",
        "__weakref__",
    )

    def __init__(self, session_id: str, pool: Optional[SessionPool] = None) -> None:
        self._id = session_id
        self._pool_ref = weakref.ref(pool) if pool is not None else None
        self._transaction_id: Optional[str] = None
        self._created_at = Timestamp.now()
        self._last_used_at = self._created_at

    @property
    def id(self) -> str:
        return self._id

    @property
    def pool(self) -> Optional[SessionPool]:
        return self._pool_ref() if self._pool_ref is not None else None

    @property
    def role(self) -> SessionRole:
        return SessionRole.READ_WRITE if self._transaction_id is not None else SessionRole.READ_ONLY

    @property
    def transaction_id(self) -> Optional[str]:
        return self._transaction_id

    @property
    def created_at(self) -> Timestamp:
        return self._created_at

    @property
    def last_used_at(self) -> Timestamp:
        return self._last_used_at

    @property
    def idle_seconds(self) -> float:
        return self._last_used_at.elapsed_seconds()

    def promote(self, transaction_id: str) -> None:
        """Store a begun read-write transaction on this session."""
        self._transaction_id = transaction_id
        self.touch()

    def reset(self) -> None:
        """Forget the outstanding transaction (it was committed or rolled back)."""
        self._transaction_id = None

    def take_transaction(self) -> Optional[str]:
        """Return the prepared transaction id and clear it from the handle."""
        transaction_id, self._transaction_id = self._transaction_id, None
        return transaction_id

    def touch(self) -> None:
        self._last_used_at = Timestamp.now()

    def __repr__(self) -> str:
        return f"SessionHandle(id={self._id!r}, role={self.role.name})"
