"""
Transport module: the streaming RPC boundary and an in-memory server.
"""

from sessionmesh.transport.protocols import (
    TypeCode,
    FieldType,
    Field,
    TransactionInfo,
    ResultSetMetadata,
    ResultSetStats,
    PartialResultSet,
    Priority,
    RequestOptions,
    TransactionMode,
    TransactionOptions,
    Statement,
    ExecuteSqlRequest,
    KeySet,
    ReadRequest,
    MutationOp,
    Mutation,
    SessionInfo,
    CommitResponse,
    Transport,
)
from sessionmesh.transport.memory import (
    InMemoryTransport,
    MockError,
    StatementResult,
    StatementResultKind,
    create_simple_result_set,
    create_large_result_set,
)

__all__ = [
    "TypeCode",
    "FieldType",
    "Field",
    "TransactionInfo",
    "ResultSetMetadata",
    "ResultSetStats",
    "PartialResultSet",
    "Priority",
    "RequestOptions",
    "TransactionMode",
    "TransactionOptions",
    "Statement",
    "ExecuteSqlRequest",
    "KeySet",
    "ReadRequest",
    "MutationOp",
    "Mutation",
    "SessionInfo",
    "CommitResponse",
    "Transport",
    "InMemoryTransport",
    "MockError",
    "StatementResult",
    "StatementResultKind",
    "create_simple_result_set",
    "create_large_result_set",
]
