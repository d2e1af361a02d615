"""
Transport Protocol Definitions: Streaming RPC Boundary

Provides the structural protocol (PEP 544) the runtime expects from a
database transport, plus the wire-level value types exchanged across it:
- Sessions, transactions, commits
- Streaming SQL and streaming reads yielding PartialResultSet chunks
- Row metadata with the type tree used for chunk merging

Every transport failure is raised as TransportError carrying a closed
StatusCode; raw transport exceptions never cross this boundary.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import (
    Any,
    AsyncIterator,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from sessionmesh.core.types import Timestamp


# =============================================================================
# VALUE TYPES
# =============================================================================
class TypeCode(Enum):
    """Column type codes carried in result set metadata."""
    BOOL = auto()
    INT64 = auto()
    FLOAT64 = auto()
    NUMERIC = auto()
    STRING = auto()
    BYTES = auto()
    JSON = auto()
    DATE = auto()
    TIMESTAMP = auto()
    ARRAY = auto()
    STRUCT = auto()


@dataclass(frozen=True, slots=True)
class FieldType:
    """
    Type tree of a column.

    ARRAY carries array_element_type; STRUCT carries struct_fields,
    one Field per struct member in declaration order.
    """
    code: TypeCode
    array_element_type: Optional[FieldType] = None
    struct_fields: tuple[Field, ...] = ()

    @classmethod
    def of(cls, code: TypeCode) -> FieldType:
        return cls(code=code)

    @classmethod
    def array(cls, element: FieldType) -> FieldType:
        return cls(code=TypeCode.ARRAY, array_element_type=element)

    @classmethod
    def struct(cls, *fields: Field) -> FieldType:
        return cls(code=TypeCode.STRUCT, struct_fields=tuple(fields))


@dataclass(frozen=True, slots=True)
class Field:
    """Named, typed column (or struct member)."""
    name: str
    type: FieldType


@dataclass(frozen=True, slots=True)
class TransactionInfo:
    """Server-side transaction identity."""
    id: str
    read_timestamp: Optional[Timestamp] = None


@dataclass(frozen=True, slots=True)
class ResultSetMetadata:
    """Row shape of a result stream."""
    fields: tuple[Field, ...]
    transaction: Optional[TransactionInfo] = None

    @property
    def column_count(self) -> int:
        return len(self.fields)

    @property
    def names(self) -> list[str]:
        return [f.name for f in self.fields]


@dataclass(frozen=True, slots=True)
class ResultSetStats:
    """Execution statistics sent with the final chunk."""
    row_count_exact: Optional[int] = None
    row_count_lower_bound: Optional[int] = None
    query_stats: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PartialResultSet:
    """
    One chunk of a streaming result.

    values is a flat list of wire values; rows span chunk boundaries.
    chunked_value marks the last value as incomplete: it must be merged
    with the first value of the next chunk. A non-empty resume_token is
    a checkpoint from which the request can be safely re-issued.
    """
    values: tuple[Any, ...] = ()
    metadata: Optional[ResultSetMetadata] = None
    chunked_value: bool = False
    resume_token: bytes = b""
    stats: Optional[ResultSetStats] = None


# =============================================================================
# REQUEST TYPES
# =============================================================================
class Priority(Enum):
    """Request priority passed through to the server."""
    PRIORITY_UNSPECIFIED = 0
    PRIORITY_LOW = 1
    PRIORITY_MEDIUM = 2
    PRIORITY_HIGH = 3


@dataclass(frozen=True, slots=True)
class RequestOptions:
    """Per-call options forwarded opaquely to the transport."""
    priority: Priority = Priority.PRIORITY_UNSPECIFIED
    request_tag: Optional[str] = None
    transaction_tag: Optional[str] = None


class TransactionMode(Enum):
    READ_ONLY = auto()
    READ_WRITE = auto()
    PARTITIONED_DML = auto()


@dataclass(frozen=True, slots=True)
class TransactionOptions:
    """Options for beginning a transaction."""
    mode: TransactionMode = TransactionMode.READ_WRITE
    strong: bool = True
    exact_staleness_s: Optional[float] = None

    @classmethod
    def read_only(cls, exact_staleness_s: Optional[float] = None) -> TransactionOptions:
        return cls(
            mode=TransactionMode.READ_ONLY,
            strong=exact_staleness_s is None,
            exact_staleness_s=exact_staleness_s,
        )

    @classmethod
    def read_write(cls) -> TransactionOptions:
        return cls(mode=TransactionMode.READ_WRITE)

    @classmethod
    def partitioned_dml(cls) -> TransactionOptions:
        return cls(mode=TransactionMode.PARTITIONED_DML)


@dataclass(frozen=True, slots=True)
class Statement:
    """A SQL statement with bound parameters."""
    sql: str
    params: Mapping[str, Any] = field(default_factory=dict)
    param_types: Mapping[str, FieldType] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExecuteSqlRequest:
    """
    Streaming SQL request.

    transaction_id None means a single-use strong read-only transaction.
    seqno orders DML statements within a read-write transaction.
    """
    session: str
    sql: str
    params: Mapping[str, Any] = field(default_factory=dict)
    param_types: Mapping[str, FieldType] = field(default_factory=dict)
    transaction_id: Optional[str] = None
    resume_token: bytes = b""
    seqno: Optional[int] = None
    request_options: Optional[RequestOptions] = None


@dataclass(frozen=True, slots=True)
class KeySet:
    """Keys to read: explicit primary keys or the whole table."""
    keys: tuple[tuple[Any, ...], ...] = ()
    all: bool = False

    @classmethod
    def all_keys(cls) -> KeySet:
        return cls(all=True)

    @classmethod
    def of(cls, *keys: Sequence[Any]) -> KeySet:
        return cls(keys=tuple(tuple(k) for k in keys))


@dataclass(frozen=True, slots=True)
class ReadRequest:
    """Streaming read of rows by key."""
    session: str
    table: str
    columns: tuple[str, ...]
    key_set: KeySet
    index: Optional[str] = None
    limit: Optional[int] = None
    transaction_id: Optional[str] = None
    resume_token: bytes = b""
    request_options: Optional[RequestOptions] = None


class MutationOp(Enum):
    INSERT = auto()
    UPDATE = auto()
    INSERT_OR_UPDATE = auto()
    REPLACE = auto()
    DELETE = auto()


@dataclass(frozen=True, slots=True)
class Mutation:
    """Buffered write applied atomically at commit."""
    op: MutationOp
    table: str
    columns: tuple[str, ...] = ()
    values: tuple[tuple[Any, ...], ...] = ()
    key_set: Optional[KeySet] = None


# =============================================================================
# RESPONSE TYPES
# =============================================================================
@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Server-side session description."""
    name: str
    create_time: Timestamp
    labels: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommitResponse:
    commit_timestamp: Timestamp


# =============================================================================
# TRANSPORT PROTOCOL
# =============================================================================
@runtime_checkable
class Transport(Protocol):
    """
    Streaming RPC transport to the database.

    Implementations raise TransportError for every failure. Streaming
    calls return async iterators; an error may surface before the first
    chunk or at any point mid-stream.
    """

    @abstractmethod
    async def batch_create_sessions(
        self,
        database: str,
        session_count: int,
        labels: Optional[Mapping[str, str]] = None,
    ) -> list[SessionInfo]:
        """Create up to session_count sessions. May return fewer."""
        ...

    @abstractmethod
    async def delete_session(self, name: str) -> None:
        ...

    @abstractmethod
    async def list_sessions(self, database: str) -> list[SessionInfo]:
        ...

    @abstractmethod
    async def begin_transaction(
        self,
        session: str,
        options: TransactionOptions,
        request_options: Optional[RequestOptions] = None,
    ) -> TransactionInfo:
        ...

    @abstractmethod
    async def commit(
        self,
        session: str,
        transaction_id: str,
        mutations: Sequence[Mutation] = (),
        request_options: Optional[RequestOptions] = None,
    ) -> CommitResponse:
        ...

    @abstractmethod
    async def rollback(self, session: str, transaction_id: str) -> None:
        ...

    @abstractmethod
    def execute_streaming_sql(
        self,
        request: ExecuteSqlRequest,
    ) -> AsyncIterator[PartialResultSet]:
        ...

    @abstractmethod
    def streaming_read(
        self,
        request: ReadRequest,
    ) -> AsyncIterator[PartialResultSet]:
        ...

    @abstractmethod
    async def execute_batch_dml(
        self,
        session: str,
        transaction_id: str,
        statements: Sequence[Statement],
        seqno: int,
        request_options: Optional[RequestOptions] = None,
    ) -> list[int]:
        """Execute DML statements in order, returning one row count per statement."""
        ...
