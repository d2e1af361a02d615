"""
Session Runtime for a Remote Transactional Database

Client-side runtime that makes server-held sessions and transactions
appear as simple, reliable primitives:
- Session Pool: bounded, FIFO-fair inventory of server sessions with
  background growth, role preparation and leak detection
- Partial Result Streams: reassembly of chunked, resumable query results
  with watermark backpressure
- Transaction Runner: transparent retry of aborted read-write
  transactions within a deadline

The network transport is pluggable (see transport.protocols.Transport);
an in-process server (transport.memory.InMemoryTransport) backs the tests
and the demo.
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from sessionmesh.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
    StatusCode,
)
from sessionmesh.core.errors import (
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
    SessionMeshConfig,
)

# Client exports (imported before the runner, which builds on them)
from sessionmesh.client import (
    Database,
    ResultStream,
    Snapshot,
    Transaction,
)
from sessionmesh.reliability.runner import (
    RunState,
    TransactionAttempt,
    TransactionRun,
    TransactionRunner,
)

# Core component exports
from sessionmesh.session import SessionHandle, SessionPool, SessionRole
from sessionmesh.pipeline import PartialResultStream, Row
from sessionmesh.transport import InMemoryTransport, Transport

__all__ = [
    "__version__",
    # Types
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "StatusCode",
    # Errors
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
    # Config
    "PoolConfig",
    "StreamConfig",
    "TransactionConfig",
    "SessionMeshConfig",
    # Client
    "Database",
    "ResultStream",
    "Snapshot",
    "Transaction",
    # Runner
    "RunState",
    "TransactionAttempt",
    "TransactionRun",
    "TransactionRunner",
    # Components
    "SessionHandle",
    "SessionPool",
    "SessionRole",
    "PartialResultStream",
    "Row",
    "InMemoryTransport",
    "Transport",
]
