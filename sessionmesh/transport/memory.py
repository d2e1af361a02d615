"""
In-Memory Transport: Process-Local Database Server

Implements the Transport protocol against in-process state so the
session pool, result reassembly and transaction runner can be exercised
without a network:
- Session bookkeeping ({database}/sessions/{n})
- Per-session transaction counters and abort injection
- Registered statement results, streamed one PartialResultSet per row
- Error injection per method, optionally at a given stream index
- freeze()/unfreeze() to hold every call until released

Example:
    transport = InMemoryTransport()
    transport.put_statement_result("SELECT 1", StatementResult.update_count(1))
    transport.inject_errors(
        "execute_streaming_sql",
        MockError(StatusCode.UNAVAILABLE, "Temporary unavailable", stream_index=1),
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Mapping, Optional, Sequence

from sessionmesh.core import constants as C
from sessionmesh.core.errors import TransportError
from sessionmesh.core.types import StatusCode, Timestamp
from sessionmesh.transport.protocols import (
    CommitResponse,
    ExecuteSqlRequest,
    Field,
    FieldType,
    Mutation,
    PartialResultSet,
    ReadRequest,
    RequestOptions,
    ResultSetMetadata,
    ResultSetStats,
    SessionInfo,
    Statement,
    TransactionInfo,
    TransactionMode,
    TransactionOptions,
    TypeCode,
)

logger = logging.getLogger(__name__)


# =============================================================================
# REGISTERED RESULTS
# =============================================================================
class StatementResultKind(Enum):
    RESULT_SET = auto()
    UPDATE_COUNT = auto()
    ERROR = auto()


@dataclass(frozen=True)
class StatementResult:
    """Result the server returns for a registered statement or table."""

    kind: StatementResultKind
    chunks: tuple[PartialResultSet, ...] = ()
    row_count: Optional[int] = None
    failure: Optional[TransportError] = None

    @classmethod
    def result_set(
        cls,
        fields: Sequence[Field],
        rows: Sequence[Sequence[Any]],
    ) -> StatementResult:
        """
        One PartialResultSet per row, each carrying a zero-padded
        resume token; metadata rides on the first chunk.
        """
        metadata = ResultSetMetadata(fields=tuple(fields))
        chunks: list[PartialResultSet] = []
        for i, row in enumerate(rows):
            chunks.append(PartialResultSet(
                values=tuple(row),
                metadata=metadata if i == 0 else None,
                resume_token=str(i).zfill(8).encode(),
            ))
        if not chunks:
            chunks.append(PartialResultSet(metadata=metadata))
        return cls(kind=StatementResultKind.RESULT_SET, chunks=tuple(chunks))

    @classmethod
    def partial_result_sets(cls, *chunks: PartialResultSet) -> StatementResult:
        """Stream exactly the given chunks."""
        return cls(kind=StatementResultKind.RESULT_SET, chunks=tuple(chunks))

    @classmethod
    def update_count(cls, row_count: int) -> StatementResult:
        return cls(kind=StatementResultKind.UPDATE_COUNT, row_count=row_count)

    @classmethod
    def error(cls, failure: TransportError) -> StatementResult:
        return cls(kind=StatementResultKind.ERROR, failure=failure)


@dataclass(frozen=True)
class MockError:
    """
    Error to raise from the next call of a method.

    stream_index applies to streaming calls: the error is raised right
    before the chunk at that index would be sent.
    """

    status: StatusCode
    message: str
    stream_index: Optional[int] = None
    retry_delay_s: Optional[float] = None

    def to_transport_error(self) -> TransportError:
        return TransportError.from_status(
            self.status,
            self.message,
            retry_delay_s=self.retry_delay_s,
        )

    @classmethod
    def session_not_found(cls, stream_index: Optional[int] = None) -> MockError:
        return cls(StatusCode.NOT_FOUND, "Session not found", stream_index=stream_index)


@dataclass
class _TransactionState:
    session: str
    id: str
    options: TransactionOptions
    aborted: bool = False
    ended: bool = False
    request_options: Optional[RequestOptions] = None
    mutations: list[Mutation] = field(default_factory=list)


# =============================================================================
# IN-MEMORY TRANSPORT
# =============================================================================
class InMemoryTransport:
    """
    In-process database server implementing Transport.

    Every call is recorded in `requests` as (method, request) pairs.
    Injected errors are consumed one per call, in injection order.
    """

    __slots__ = (
        "_sessions",
        "_session_counter",
        "_transaction_counters",
        "_transactions",
        "_statement_results",
        "_read_results",
        "_errors",
        "_frozen",
        "_unfrozen",
        "_latency_s",
        "_batch_limit",
        "requests",
        "committed",
    )

    def __init__(
        self,
        latency_s: float = 0.0,
        batch_limit: Optional[int] = None,
    ) -> None:
        """
        Args:
            latency_s: Simulated execution time of every call
            batch_limit: Max sessions returned per batch-create call
        """
        self._sessions: dict[str, SessionInfo] = {}
        self._session_counter = 0
        self._transaction_counters: dict[str, int] = defaultdict(int)
        self._transactions: dict[tuple[str, str], _TransactionState] = {}
        self._statement_results: dict[str, StatementResult] = {}
        self._read_results: dict[str, StatementResult] = {}
        self._errors: dict[str, deque[MockError]] = defaultdict(deque)
        self._frozen = 0
        self._unfrozen = asyncio.Event()
        self._unfrozen.set()
        self._latency_s = latency_s
        self._batch_limit = batch_limit
        self.requests: list[tuple[str, Any]] = []
        self.committed: list[tuple[str, tuple[Mutation, ...]]] = []

        self.put_statement_result(C.KEEP_ALIVE_SQL, create_select1_result())

    # -------------------------------------------------------------------------
    # Test Controls
    # -------------------------------------------------------------------------

    def put_statement_result(self, sql: str, result: StatementResult) -> None:
        """Register the result returned for a SQL string."""
        self._statement_results[sql] = result

    def put_read_result(self, table: str, result: StatementResult) -> None:
        """Register the result returned for a streaming read of a table."""
        self._read_results[table] = result

    def inject_errors(self, method: str, *errors: MockError) -> None:
        """Queue errors for the next calls of `method`, one per call."""
        self._errors[method].extend(errors)

    def freeze(self) -> None:
        """Hold every call until unfreeze() is called."""
        self._frozen += 1
        self._unfrozen.clear()

    def unfreeze(self) -> None:
        if self._frozen == 0:
            raise RuntimeError("This in-memory transport is already unfrozen")
        self._frozen -= 1
        if self._frozen == 0:
            self._unfrozen.set()

    def abort_transaction(self, transaction_id: str, session: Optional[str] = None) -> None:
        """Mark matching transactions aborted; their next use raises ABORTED."""
        for (name, txn_id), state in self._transactions.items():
            if txn_id == transaction_id and (session is None or session == name):
                state.aborted = True

    def drop_session(self, name: str) -> None:
        """Forget a session server-side, as if it had been garbage collected."""
        self._sessions.pop(name, None)

    def requests_of(self, method: str) -> list[Any]:
        return [request for m, request in self.requests if m == method]

    @property
    def session_names(self) -> list[str]:
        return list(self._sessions)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _simulate_execution_time(self) -> None:
        await self._unfrozen.wait()
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)

    def _pop_error(self, method: str) -> Optional[MockError]:
        queue = self._errors.get(method)
        if queue:
            return queue.popleft()
        return None

    def _raise_injected(self, method: str) -> None:
        error = self._pop_error(method)
        if error is not None:
            raise error.to_transport_error()

    def _check_session(self, name: str) -> None:
        if name not in self._sessions:
            raise TransportError.session_not_found(name)

    def _check_transaction(self, session: str, transaction_id: Optional[str]) -> Optional[_TransactionState]:
        if transaction_id is None:
            return None
        state = self._transactions.get((session, transaction_id))
        if state is None:
            raise TransportError.from_status(
                StatusCode.FAILED_PRECONDITION,
                f"Transaction not found: {session}/transactions/{transaction_id}",
            )
        if state.aborted:
            raise TransportError.aborted(f"Transaction aborted: {transaction_id}")
        if state.ended:
            raise TransportError.from_status(
                StatusCode.FAILED_PRECONDITION,
                f"Transaction has already ended: {transaction_id}",
            )
        return state

    def _new_session(self, database: str, labels: Mapping[str, str]) -> SessionInfo:
        name = f"{database}/sessions/{self._session_counter}"
        self._session_counter += 1
        session = SessionInfo(name=name, create_time=Timestamp.now(), labels=dict(labels))
        self._sessions[name] = session
        return session

    async def _stream(
        self,
        method: str,
        result: StatementResult,
        resume_token: bytes,
        transaction: Optional[_TransactionState],
        error: Optional[MockError],
    ) -> AsyncIterator[PartialResultSet]:
        if result.kind is StatementResultKind.ERROR:
            assert result.failure is not None
            raise result.failure

        if result.kind is StatementResultKind.UPDATE_COUNT:
            if transaction is not None and transaction.options.mode is TransactionMode.PARTITIONED_DML:
                stats = ResultSetStats(row_count_lower_bound=result.row_count)
            else:
                stats = ResultSetStats(row_count_exact=result.row_count)
            chunks: tuple[PartialResultSet, ...] = (PartialResultSet(
                metadata=ResultSetMetadata(fields=()),
                stats=stats,
            ),)
        else:
            chunks = result.chunks

        start = 0
        if resume_token:
            for i, chunk in enumerate(chunks):
                if chunk.resume_token == resume_token:
                    start = i + 1
                    break
            else:
                raise TransportError.from_status(
                    StatusCode.INVALID_ARGUMENT,
                    f"Unknown resume token: {resume_token!r}",
                )

        for index in range(start, len(chunks)):
            if error is not None and error.stream_index is not None and index >= error.stream_index:
                logger.debug(f"Injecting {error.status.name} into {method} at chunk {index}")
                raise error.to_transport_error()
            yield chunks[index]
            await asyncio.sleep(0)

        if error is not None and error.stream_index is not None:
            raise error.to_transport_error()

    # -------------------------------------------------------------------------
    # Transport Implementation
    # -------------------------------------------------------------------------

    async def batch_create_sessions(
        self,
        database: str,
        session_count: int,
        labels: Optional[Mapping[str, str]] = None,
    ) -> list[SessionInfo]:
        self.requests.append(("batch_create_sessions", (database, session_count)))
        await self._simulate_execution_time()
        self._raise_injected("batch_create_sessions")
        count = session_count
        if self._batch_limit is not None:
            count = min(count, self._batch_limit)
        return [self._new_session(database, labels or {}) for _ in range(count)]

    async def delete_session(self, name: str) -> None:
        self.requests.append(("delete_session", name))
        self._raise_injected("delete_session")
        if self._sessions.pop(name, None) is None:
            raise TransportError.session_not_found(name)

    async def list_sessions(self, database: str) -> list[SessionInfo]:
        self.requests.append(("list_sessions", database))
        await self._simulate_execution_time()
        prefix = f"{database}/sessions/"
        return [s for name, s in self._sessions.items() if name.startswith(prefix)]

    async def begin_transaction(
        self,
        session: str,
        options: TransactionOptions,
        request_options: Optional[RequestOptions] = None,
    ) -> TransactionInfo:
        self.requests.append(("begin_transaction", (session, options)))
        await self._simulate_execution_time()
        self._check_session(session)
        self._raise_injected("begin_transaction")

        counter = self._transaction_counters[session]
        self._transaction_counters[session] = counter + 1
        transaction_id = str(counter).zfill(12)
        self._transactions[(session, transaction_id)] = _TransactionState(
            session=session,
            id=transaction_id,
            options=options,
            request_options=request_options,
        )
        read_timestamp = Timestamp.now() if options.mode is TransactionMode.READ_ONLY else None
        return TransactionInfo(id=transaction_id, read_timestamp=read_timestamp)

    async def commit(
        self,
        session: str,
        transaction_id: str,
        mutations: Sequence[Mutation] = (),
        request_options: Optional[RequestOptions] = None,
    ) -> CommitResponse:
        self.requests.append(("commit", (session, transaction_id, tuple(mutations))))
        await self._simulate_execution_time()
        self._check_session(session)
        self._raise_injected("commit")
        state = self._check_transaction(session, transaction_id)
        assert state is not None
        state.ended = True
        state.mutations.extend(mutations)
        self.committed.append((transaction_id, tuple(mutations)))
        return CommitResponse(commit_timestamp=Timestamp.now())

    async def rollback(self, session: str, transaction_id: str) -> None:
        self.requests.append(("rollback", (session, transaction_id)))
        await self._simulate_execution_time()
        self._check_session(session)
        self._raise_injected("rollback")
        state = self._transactions.get((session, transaction_id))
        if state is None:
            raise TransportError.from_status(
                StatusCode.FAILED_PRECONDITION,
                f"Transaction not found: {session}/transactions/{transaction_id}",
            )
        state.ended = True

    async def execute_streaming_sql(
        self,
        request: ExecuteSqlRequest,
    ) -> AsyncIterator[PartialResultSet]:
        self.requests.append(("execute_streaming_sql", request))
        await self._simulate_execution_time()
        self._check_session(request.session)
        transaction = self._check_transaction(request.session, request.transaction_id)

        error = self._pop_error("execute_streaming_sql")
        if error is not None and error.stream_index is None:
            raise error.to_transport_error()

        result = self._statement_results.get(request.sql)
        if result is None:
            raise TransportError.from_status(
                StatusCode.INVALID_ARGUMENT,
                f"There is no result registered for {request.sql}",
            )

        async for chunk in self._stream(
            "execute_streaming_sql", result, request.resume_token, transaction, error
        ):
            yield chunk

    async def streaming_read(
        self,
        request: ReadRequest,
    ) -> AsyncIterator[PartialResultSet]:
        self.requests.append(("streaming_read", request))
        await self._simulate_execution_time()
        self._check_session(request.session)
        transaction = self._check_transaction(request.session, request.transaction_id)

        error = self._pop_error("streaming_read")
        if error is not None and error.stream_index is None:
            raise error.to_transport_error()

        result = self._read_results.get(request.table)
        if result is None:
            raise TransportError.from_status(
                StatusCode.NOT_FOUND,
                f"Table not found: {request.table}",
            )

        async for chunk in self._stream(
            "streaming_read", result, request.resume_token, transaction, error
        ):
            yield chunk

    async def execute_batch_dml(
        self,
        session: str,
        transaction_id: str,
        statements: Sequence[Statement],
        seqno: int,
        request_options: Optional[RequestOptions] = None,
    ) -> list[int]:
        self.requests.append(("execute_batch_dml", (session, transaction_id, tuple(statements))))
        await self._simulate_execution_time()
        self._check_session(session)
        self._check_transaction(session, transaction_id)
        self._raise_injected("execute_batch_dml")

        counts: list[int] = []
        for statement in statements:
            result = self._statement_results.get(statement.sql)
            if result is None:
                raise TransportError.from_status(
                    StatusCode.INVALID_ARGUMENT,
                    f"There is no result registered for {statement.sql}",
                )
            if result.kind is StatementResultKind.ERROR:
                assert result.failure is not None
                raise result.failure
            if result.kind is not StatementResultKind.UPDATE_COUNT:
                raise TransportError.from_status(
                    StatusCode.INVALID_ARGUMENT,
                    f"Statement is not DML: {statement.sql}",
                )
            counts.append(result.row_count or 0)
        return counts


# =============================================================================
# CANNED RESULTS
# =============================================================================
def create_select1_result() -> StatementResult:
    return StatementResult.result_set(
        fields=[Field("", FieldType.of(TypeCode.INT64))],
        rows=[["1"]],
    )


def create_simple_result_set() -> StatementResult:
    """Three rows of (NUM INT64, NAME STRING)."""
    return StatementResult.result_set(
        fields=[
            Field("NUM", FieldType.of(TypeCode.INT64)),
            Field("NAME", FieldType.of(TypeCode.STRING)),
        ],
        rows=[["1", "One"], ["2", "Two"], ["3", "Three"]],
    )


def create_large_result_set(row_count: int) -> StatementResult:
    """row_count rows of (ID INT64, VALUE STRING)."""
    return StatementResult.result_set(
        fields=[
            Field("ID", FieldType.of(TypeCode.INT64)),
            Field("VALUE", FieldType.of(TypeCode.STRING)),
        ],
        rows=[[str(i), f"value-{i}"] for i in range(row_count)],
    )
