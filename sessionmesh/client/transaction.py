"""
Snapshot and Transaction: Operations Bound to One Session

Snapshot:
    Multi-use read-only transaction at a single read timestamp. Begin is
    retried on a fresh session when the server reports the session
    missing; later reads are pinned to the snapshot's session.

Transaction:
    Read-write transaction handed to a TransactionRunner body. Queries
    and DML run through the session's outstanding transaction; mutations
    are buffered and applied atomically by commit(). Every DML statement
    carries a strictly increasing sequence number.

    When the server reports the session missing before any statement has
    run in the transaction, the failed operation is retried on a fresh
    transaction on a new session (buffered mutations are kept). After a
    statement has run the error propagates and the runner restarts the
    whole attempt.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from sessionmesh.core import constants as C
from sessionmesh.core.config import StreamConfig
from sessionmesh.core.errors import TransactionStateError, TransportError
from sessionmesh.core.types import Timestamp
from sessionmesh.pipeline.codec import Row
from sessionmesh.pipeline.partial_result import PartialResultStream
from sessionmesh.session.handle import SessionHandle, SessionRole
from sessionmesh.transport.protocols import (
    CommitResponse,
    ExecuteSqlRequest,
    FieldType,
    KeySet,
    Mutation,
    MutationOp,
    ReadRequest,
    RequestOptions,
    Statement,
    TransactionOptions,
    Transport,
)

if TYPE_CHECKING:
    from sessionmesh.session.pool import SessionPool

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[], Awaitable[SessionHandle]]


# =============================================================================
# SHARED REQUEST BUILDING
# =============================================================================
def build_sql_request(
    session: str,
    sql: str,
    params: Optional[Mapping[str, Any]],
    param_types: Optional[Mapping[str, FieldType]],
    transaction_id: Optional[str],
    seqno: Optional[int] = None,
    request_options: Optional[RequestOptions] = None,
) -> ExecuteSqlRequest:
    return ExecuteSqlRequest(
        session=session,
        sql=sql,
        params=dict(params or {}),
        param_types=dict(param_types or {}),
        transaction_id=transaction_id,
        seqno=seqno,
        request_options=request_options,
    )


def build_read_request(
    session: str,
    table: str,
    columns: Sequence[str],
    key_set: KeySet,
    index: Optional[str],
    limit: Optional[int],
    transaction_id: Optional[str],
    request_options: Optional[RequestOptions] = None,
) -> ReadRequest:
    return ReadRequest(
        session=session,
        table=table,
        columns=tuple(columns),
        key_set=key_set,
        index=index,
        limit=limit,
        transaction_id=transaction_id,
        request_options=request_options,
    )


def open_sql_stream(
    transport: Transport,
    request: ExecuteSqlRequest,
    config: Optional[StreamConfig],
    retry_aborted: bool,
    on_done: Optional[Callable[[Optional[BaseException]], Awaitable[None]]] = None,
) -> PartialResultStream:
    """Resumable stream over execute_streaming_sql."""
    return PartialResultStream(
        lambda token: transport.execute_streaming_sql(
            dataclasses.replace(request, resume_token=token)
        ),
        config,
        retry_aborted=retry_aborted,
        on_done=on_done,
        label=f"query {request.sql[:40]!r}",
    )


def open_read_stream(
    transport: Transport,
    request: ReadRequest,
    config: Optional[StreamConfig],
    retry_aborted: bool,
    on_done: Optional[Callable[[Optional[BaseException]], Awaitable[None]]] = None,
) -> PartialResultStream:
    """Resumable stream over streaming_read."""
    return PartialResultStream(
        lambda token: transport.streaming_read(
            dataclasses.replace(request, resume_token=token)
        ),
        config,
        retry_aborted=retry_aborted,
        on_done=on_done,
        label=f"read {request.table!r}",
    )


def track_stream(streams: list[PartialResultStream], stream: PartialResultStream) -> PartialResultStream:
    """Remember a stream handed to the caller, forgetting finished ones."""
    streams[:] = [s for s in streams if not s.is_finished]
    streams.append(stream)
    return stream


async def close_unfinished(streams: list[PartialResultStream]) -> None:
    """Close the unfinished streams so their producers stop pulling chunks."""
    unfinished = [s for s in streams if not s.is_finished]
    streams.clear()
    for stream in unfinished:
        await stream.close()


# =============================================================================
# SNAPSHOT
# =============================================================================
class Snapshot:
    """
    Read-only transaction usable for several reads.

    Obtain via Database.get_snapshot(); call end() to release its
    session.
    """

    def __init__(
        self,
        pool: SessionPool,
        transport: Transport,
        stream_config: Optional[StreamConfig] = None,
        options: Optional[TransactionOptions] = None,
        label: Optional[str] = None,
    ) -> None:
        self._pool = pool
        self._transport = transport
        self._stream_config = stream_config
        self._options = options or TransactionOptions.read_only()
        self._label = label
        self._handle: Optional[SessionHandle] = None
        self._transaction_id: Optional[str] = None
        self._read_timestamp: Optional[Timestamp] = None
        self._ended = False
        self._streams: list[PartialResultStream] = []

    async def begin(self) -> None:
        """
        Begin the read-only transaction.

        Session-not-found is retried on a new session up to
        SESSION_NOT_FOUND_RETRIES times.
        """
        if self._ended:
            raise TransactionStateError.already_ended(self._transaction_id)
        if self._transaction_id is not None:
            return

        for attempt in range(C.SESSION_NOT_FOUND_RETRIES + 1):
            handle = await self._pool.acquire(SessionRole.READ_ONLY, self._label)
            try:
                info = await self._transport.begin_transaction(handle.id, self._options)
            except TransportError as e:
                if not e.is_session_not_found:
                    await self._pool.release(handle)
                    raise
                await self._pool.evict(handle)
                if attempt == C.SESSION_NOT_FOUND_RETRIES:
                    raise
                logger.info(f"Session {handle.id} not found on snapshot begin; retrying")
                continue
            except BaseException:
                await self._pool.release(handle)
                raise
            self._handle = handle
            self._transaction_id = info.id
            self._read_timestamp = info.read_timestamp
            return

    async def run(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> list[Row]:
        return await self.run_stream(sql, params, param_types, request_options).to_list()

    def run_stream(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> PartialResultStream:
        """Stream a query at the snapshot timestamp. Streams left open are closed by end()."""
        handle = self._active_handle()
        request = build_sql_request(
            handle.id, sql, params, param_types, self._transaction_id,
            request_options=request_options,
        )
        stream = open_sql_stream(self._transport, request, self._stream_config, retry_aborted=True)
        return track_stream(self._streams, stream)

    async def read(
        self,
        table: str,
        columns: Sequence[str],
        key_set: Optional[KeySet] = None,
        index: Optional[str] = None,
        limit: Optional[int] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> list[Row]:
        handle = self._active_handle()
        request = build_read_request(
            handle.id, table, columns, key_set or KeySet.all_keys(), index, limit,
            self._transaction_id, request_options,
        )
        stream = open_read_stream(self._transport, request, self._stream_config, retry_aborted=True)
        return await stream.to_list()

    async def end(self) -> None:
        """Close unfinished streams and release the snapshot's session. Idempotent."""
        if self._ended:
            return
        self._ended = True
        await close_unfinished(self._streams)
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await self._pool.release(handle)

    async def __aenter__(self) -> Snapshot:
        await self.begin()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.end()

    def _active_handle(self) -> SessionHandle:
        if self._ended or self._handle is None:
            raise TransactionStateError.already_ended(self._transaction_id)
        self._handle.touch()
        return self._handle

    @property
    def transaction_id(self) -> Optional[str]:
        return self._transaction_id

    @property
    def read_timestamp(self) -> Optional[Timestamp]:
        return self._read_timestamp

    @property
    def ended(self) -> bool:
        return self._ended


# =============================================================================
# TRANSACTION
# =============================================================================
class Transaction:
    """
    Read-write transaction on a prepared session.

    Created by TransactionRunner for each attempt; the body receives it
    and must not keep it beyond the attempt.
    """

    def __init__(
        self,
        handle: SessionHandle,
        transport: Transport,
        stream_config: Optional[StreamConfig] = None,
        request_options: Optional[RequestOptions] = None,
        replace_session: Optional[SessionFactory] = None,
    ) -> None:
        if handle.transaction_id is None:
            raise TransactionStateError.invalid_transition("NOT_STARTED", "RUNNING")
        self._handle = handle
        self._transport = transport
        self._stream_config = stream_config
        self._request_options = request_options
        self._replace_session = replace_session
        self._mutations: list[Mutation] = []
        self._seqno = 0
        self._statement_count = 0
        self._ended = False
        self._committed = False
        self._commit_response: Optional[CommitResponse] = None
        self._streams: list[PartialResultStream] = []

    # -------------------------------------------------------------------------
    # Reads and Queries
    # -------------------------------------------------------------------------

    async def run(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
    ) -> list[Row]:
        """Run a query inside the transaction and return all rows."""
        async def op() -> list[Row]:
            stream = open_sql_stream(
                self._transport,
                self._request(sql, params, param_types),
                self._stream_config,
                retry_aborted=False,
            )
            return await stream.to_list()

        rows = await self._retry_session_not_found(op)
        self._statement_count += 1
        return rows

    def run_stream(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
    ) -> PartialResultStream:
        """Stream a query inside the transaction. Streams left open are closed when the transaction ends."""
        request = self._request(sql, params, param_types)
        self._statement_count += 1
        stream = open_sql_stream(self._transport, request, self._stream_config, retry_aborted=False)
        return track_stream(self._streams, stream)

    async def read(
        self,
        table: str,
        columns: Sequence[str],
        key_set: Optional[KeySet] = None,
        index: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Row]:
        async def op() -> list[Row]:
            request = build_read_request(
                self._handle.id, table, columns, key_set or KeySet.all_keys(), index, limit,
                self._active_transaction_id(), self._request_options,
            )
            return await open_read_stream(
                self._transport, request, self._stream_config, retry_aborted=False,
            ).to_list()

        rows = await self._retry_session_not_found(op)
        self._statement_count += 1
        return rows

    # -------------------------------------------------------------------------
    # DML
    # -------------------------------------------------------------------------

    async def run_update(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
    ) -> int:
        """Execute a DML statement and return the exact affected row count."""
        async def op() -> int:
            self._seqno += 1
            stream = open_sql_stream(
                self._transport,
                self._request(sql, params, param_types, seqno=self._seqno),
                self._stream_config,
                retry_aborted=False,
            )
            await stream.to_list()
            stats = stream.stats
            if stats is None or stats.row_count_exact is None:
                return 0
            return stats.row_count_exact

        count = await self._retry_session_not_found(op)
        self._statement_count += 1
        return count

    async def batch_update(self, statements: Sequence[Statement]) -> list[int]:
        """Execute DML statements in one round trip; returns per-statement row counts."""
        async def op() -> list[int]:
            self._seqno += 1
            return await self._transport.execute_batch_dml(
                self._handle.id,
                self._active_transaction_id(),
                list(statements),
                self._seqno,
                self._request_options,
            )

        counts = await self._retry_session_not_found(op)
        self._statement_count += 1
        return counts

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def insert(self, table: str, columns: Sequence[str], values: Sequence[Sequence[Any]]) -> None:
        self._buffer(MutationOp.INSERT, table, columns, values)

    def update(self, table: str, columns: Sequence[str], values: Sequence[Sequence[Any]]) -> None:
        self._buffer(MutationOp.UPDATE, table, columns, values)

    def upsert(self, table: str, columns: Sequence[str], values: Sequence[Sequence[Any]]) -> None:
        self._buffer(MutationOp.INSERT_OR_UPDATE, table, columns, values)

    def replace(self, table: str, columns: Sequence[str], values: Sequence[Sequence[Any]]) -> None:
        self._buffer(MutationOp.REPLACE, table, columns, values)

    def delete(self, table: str, key_set: KeySet) -> None:
        self._check_active()
        self._mutations.append(Mutation(op=MutationOp.DELETE, table=table, key_set=key_set))

    def _buffer(
        self,
        op: MutationOp,
        table: str,
        columns: Sequence[str],
        values: Sequence[Sequence[Any]],
    ) -> None:
        self._check_active()
        self._mutations.append(Mutation(
            op=op,
            table=table,
            columns=tuple(columns),
            values=tuple(tuple(v) for v in values),
        ))

    # -------------------------------------------------------------------------
    # Boundary
    # -------------------------------------------------------------------------

    async def commit(self) -> CommitResponse:
        """Apply buffered mutations and end the transaction."""
        async def op() -> CommitResponse:
            return await self._transport.commit(
                self._handle.id,
                self._active_transaction_id(),
                list(self._mutations),
                self._request_options,
            )

        response = await self._retry_session_not_found(op)
        self._ended = True
        self._committed = True
        await close_unfinished(self._streams)
        self._commit_response = response
        self._handle.reset()
        logger.debug(
            f"Committed transaction on {self._handle.id} "
            f"({len(self._mutations)} mutation(s), {self._statement_count} statement(s))"
        )
        return response

    async def rollback(self) -> None:
        """Discard the transaction. Idempotent."""
        if self._ended:
            return
        transaction_id = self._active_transaction_id()
        self._ended = True
        self._handle.reset()
        await close_unfinished(self._streams)
        await self._transport.rollback(self._handle.id, transaction_id)

    async def close_streams(self) -> None:
        """Close every stream from run_stream() that is still reading."""
        await close_unfinished(self._streams)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _request(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]],
        param_types: Optional[Mapping[str, FieldType]],
        seqno: Optional[int] = None,
    ) -> ExecuteSqlRequest:
        return build_sql_request(
            self._handle.id, sql, params, param_types,
            self._active_transaction_id(), seqno, self._request_options,
        )

    def _check_active(self) -> None:
        if self._ended:
            raise TransactionStateError.already_ended(self._handle.transaction_id)

    def _active_transaction_id(self) -> str:
        self._check_active()
        transaction_id = self._handle.transaction_id
        if transaction_id is None:
            raise TransactionStateError.already_ended(None)
        self._handle.touch()
        return transaction_id

    async def _retry_session_not_found(self, op: Callable[[], Awaitable[T]]) -> T:
        while True:
            try:
                return await op()
            except TransportError as e:
                if (
                    not e.is_session_not_found
                    or self._statement_count > 0
                    or self._replace_session is None
                ):
                    raise
                logger.info(
                    f"Session {self._handle.id} not found before the first statement; "
                    "retrying on a new session"
                )
                self._handle = await self._replace_session()

    @property
    def handle(self) -> SessionHandle:
        return self._handle

    @property
    def id(self) -> Optional[str]:
        return self._handle.transaction_id

    @property
    def mutations(self) -> list[Mutation]:
        return list(self._mutations)

    @property
    def statement_count(self) -> int:
        return self._statement_count

    @property
    def seqno(self) -> int:
        return self._seqno

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def commit_response(self) -> Optional[CommitResponse]:
        return self._commit_response
