"""
Session module: pooled server-side sessions.

Provides:
- SessionHandle: one session and its current role
- SessionPool: bounded, FIFO-fair inventory with leak detection
"""

from sessionmesh.session.handle import (
    SessionRole,
    LeakContext,
    SessionHandle,
)
from sessionmesh.session.pool import SessionPool

__all__ = [
    "SessionRole",
    "LeakContext",
    "SessionHandle",
    "SessionPool",
]
