"""
Database: Client Facade over Pool, Streams and Runner

One Database owns one SessionPool and one TransactionRunner for a single
database name on a transport.

Single-use reads (run, run_stream, read) borrow a read-only session for
the duration of the result stream. When the server reports the session
missing before the first row was delivered, the session is evicted and
the read is re-issued on a new one; once rows were delivered the error
propagates.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional, Sequence, TypeVar

from sessionmesh.client.transaction import (
    Snapshot,
    build_read_request,
    build_sql_request,
    open_read_stream,
    open_sql_stream,
)
from sessionmesh.core import constants as C
from sessionmesh.core.config import SessionMeshConfig
from sessionmesh.core.errors import TransportError
from sessionmesh.pipeline.codec import Row
from sessionmesh.pipeline.partial_result import PartialResultStream
from sessionmesh.reliability.retry import RetryPolicy, is_transient_error, retry_with_backoff
from sessionmesh.reliability.runner import TransactionBody, TransactionRunner
from sessionmesh.session.handle import SessionHandle, SessionRole
from sessionmesh.session.pool import SessionPool
from sessionmesh.transport.protocols import (
    FieldType,
    KeySet,
    RequestOptions,
    ResultSetMetadata,
    ResultSetStats,
    SessionInfo,
    TransactionOptions,
    Transport,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# SINGLE-USE RESULTS
# =============================================================================
class ResultStream:
    """
    Rows of a single-use read, bound to a borrowed read-only session.

    The session is acquired on first iteration and released when the
    rows are exhausted, an error surfaces or close() is called.
    """

    def __init__(
        self,
        pool: SessionPool,
        open_stream: Callable[[SessionHandle], PartialResultStream],
        label: Optional[str] = None,
    ) -> None:
        self._pool = pool
        self._open_stream = open_stream
        self._label = label
        self._handle: Optional[SessionHandle] = None
        self._stream: Optional[PartialResultStream] = None
        self._rows_delivered = 0
        self._session_retries = 0
        self._finished = False

    def __aiter__(self) -> ResultStream:
        return self

    async def __anext__(self) -> Row:
        if self._finished:
            raise StopAsyncIteration

        while True:
            if self._stream is None:
                try:
                    self._handle = await self._pool.acquire(SessionRole.READ_ONLY, self._label)
                except Exception:
                    self._finished = True
                    raise
                self._stream = self._open_stream(self._handle)

            try:
                row = await self._stream.__anext__()
            except StopAsyncIteration:
                await self._release()
                raise
            except TransportError as e:
                if not e.is_session_not_found:
                    await self._release()
                    raise
                if self._rows_delivered == 0 and self._session_retries < C.SESSION_NOT_FOUND_RETRIES:
                    self._session_retries += 1
                    logger.info(f"{e.message}; retrying read on a new session")
                    await self._replace_session()
                    continue
                await self._release(evict=True)
                raise
            except Exception:
                await self._release()
                raise

            self._rows_delivered += 1
            return row

    async def to_list(self) -> list[Row]:
        try:
            return [row async for row in self]
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop reading and release the session. Idempotent."""
        if self._stream is not None:
            await self._stream.close()
        await self._release()

    async def _release(self, evict: bool = False) -> None:
        """Give the session back; evict=True when the server reported it missing."""
        self._finished = True
        if self._handle is not None:
            handle, self._handle = self._handle, None
            if evict:
                await self._pool.evict(handle)
            else:
                await self._pool.release(handle)

    async def _replace_session(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await self._pool.evict(handle)

    @property
    def metadata(self) -> Optional[ResultSetMetadata]:
        return self._stream.metadata if self._stream is not None else None

    @property
    def stats(self) -> Optional[ResultSetStats]:
        return self._stream.stats if self._stream is not None else None

    @property
    def rows_delivered(self) -> int:
        return self._rows_delivered


# =============================================================================
# DATABASE
# =============================================================================
class Database:
    """
    Client for one database.

    Example:
        async with Database(transport, "projects/p/instances/i/databases/d") as db:
            rows = await db.run("SELECT 1")
            await db.run_transaction(body)
    """

    def __init__(
        self,
        transport: Transport,
        name: str,
        config: Optional[SessionMeshConfig] = None,
    ) -> None:
        self._transport = transport
        self._name = name
        self._config = config or SessionMeshConfig()
        self._pool = SessionPool(transport, name, self._config.pool)
        self._runner = TransactionRunner(
            self._pool,
            transport,
            self._config.transaction,
            self._config.stream,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def pool(self) -> SessionPool:
        return self._pool

    @property
    def runner(self) -> TransactionRunner:
        return self._runner

    async def open(self) -> None:
        await self._pool.open()

    async def close(self) -> None:
        """
        Close the session pool.

        Raises:
            SessionLeakError: if sessions are still checked out
        """
        await self._pool.close()

    async def __aenter__(self) -> Database:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Single-Use Reads
    # -------------------------------------------------------------------------

    async def run(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> list[Row]:
        """Run a query in a single-use read-only transaction."""
        return await self.run_stream(sql, params, param_types, request_options).to_list()

    def run_stream(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
        request_options: Optional[RequestOptions] = None,
        label: Optional[str] = None,
    ) -> ResultStream:
        def open_stream(handle: SessionHandle) -> PartialResultStream:
            request = build_sql_request(
                handle.id, sql, params, param_types, None,
                request_options=request_options,
            )
            return open_sql_stream(self._transport, request, self._config.stream, retry_aborted=True)

        return ResultStream(self._pool, open_stream, label)

    async def read(
        self,
        table: str,
        columns: Sequence[str],
        key_set: Optional[KeySet] = None,
        index: Optional[str] = None,
        limit: Optional[int] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> list[Row]:
        """Read rows by key in a single-use read-only transaction."""
        def open_stream(handle: SessionHandle) -> PartialResultStream:
            request = build_read_request(
                handle.id, table, columns, key_set or KeySet.all_keys(), index, limit,
                None, request_options,
            )
            return open_read_stream(self._transport, request, self._config.stream, retry_aborted=True)

        return await ResultStream(self._pool, open_stream).to_list()

    async def get_snapshot(
        self,
        label: Optional[str] = None,
        exact_staleness_s: Optional[float] = None,
    ) -> Snapshot:
        """Begin a multi-use read-only transaction. Call end() when done."""
        snapshot = Snapshot(
            self._pool,
            self._transport,
            self._config.stream,
            TransactionOptions.read_only(exact_staleness_s),
            label,
        )
        await snapshot.begin()
        return snapshot

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def run_transaction(
        self,
        body: TransactionBody[T],
        timeout_s: Optional[float] = None,
        request_options: Optional[RequestOptions] = None,
        label: Optional[str] = None,
    ) -> T:
        """Run body in a read-write transaction, retrying aborts."""
        return await self._runner.run(body, timeout_s, request_options, label)

    async def run_partitioned_update(
        self,
        sql: str,
        params: Optional[Mapping[str, Any]] = None,
        param_types: Optional[Mapping[str, FieldType]] = None,
        request_options: Optional[RequestOptions] = None,
    ) -> int:
        """
        Execute a partitioned DML statement.

        The statement is re-run from the start on ABORTED and transient
        errors. Returns the lower bound of affected rows.
        """
        policy = RetryPolicy(max_retries=C.PDML_MAX_RETRIES)

        def is_retryable(error: BaseException) -> bool:
            return is_transient_error(error) or (
                isinstance(error, TransportError)
                and (error.is_aborted or error.is_session_not_found)
            )

        async def attempt() -> int:
            handle = await self._pool.acquire(SessionRole.READ_ONLY, "partitioned update")
            try:
                info = await self._transport.begin_transaction(
                    handle.id, TransactionOptions.partitioned_dml(), request_options,
                )
                request = build_sql_request(
                    handle.id, sql, params, param_types, info.id,
                    seqno=1, request_options=request_options,
                )
                stream = open_sql_stream(
                    self._transport, request, self._config.stream, retry_aborted=False,
                )
                await stream.to_list()
            except TransportError as e:
                if e.is_session_not_found:
                    await self._pool.evict(handle)
                else:
                    await self._pool.release(handle)
                raise
            except BaseException:
                await self._pool.release(handle)
                raise
            await self._pool.release(handle)
            stats = stream.stats
            if stats is None:
                return 0
            if stats.row_count_lower_bound is not None:
                return stats.row_count_lower_bound
            return stats.row_count_exact or 0

        result = await retry_with_backoff(attempt, policy, is_retryable)
        if result.is_err():
            raise result.error
        return result.unwrap()

    # -------------------------------------------------------------------------
    # Admin Pass-Through
    # -------------------------------------------------------------------------

    async def list_sessions(self) -> list[SessionInfo]:
        return await self._transport.list_sessions(self._name)

    def __repr__(self) -> str:
        return f"Database(name={self._name!r}, pool_size={self._pool.size})"
