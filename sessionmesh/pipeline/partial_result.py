"""
Partial Result Stream: Reassembly of Chunked Streaming Results

Turns a resumable sequence of PartialResultSet chunks into a lazy,
finite async iterator of complete rows.

Reassembly:
- The first chunk carrying metadata fixes the row shape
- Values accumulate into a row buffer; a full buffer becomes a Row
- A chunked last value is held back and merged with the next chunk's
  first value (type-directed, see codec.merge_values)

Resumption:
- Each chunk with a resume token is a checkpoint: rows produced up to it
  are released to the consumer, and the merge state (partial row and
  pending value) is snapshotted
- On a retryable error the request is re-issued from the last token,
  rows produced since the checkpoint are discarded (never delivered) and
  the merge state is restored
- At most max_queued chunks are held without a token; past that, rows
  are released and the stream is not resumable until the next token

Backpressure:
- The producer task pauses at the high-water mark of buffered rows and
  resumes at the low-water mark (see backpressure.FlowController)

Usage:
    stream = PartialResultStream(lambda token: transport.execute_streaming_sql(
        dataclasses.replace(request, resume_token=token)))
    async for row in stream:
        ...
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Union

from sessionmesh.core.config import StreamConfig
from sessionmesh.core.errors import StreamProtocolError
from sessionmesh.pipeline.backpressure import FlowController, FlowMetrics
from sessionmesh.pipeline.codec import Row, is_mergeable, merge_values
from sessionmesh.reliability.retry import (
    RetryPolicy,
    is_retryable_stream_error,
    retry_delay_for,
)
from sessionmesh.transport.protocols import (
    PartialResultSet,
    ResultSetMetadata,
    ResultSetStats,
)

logger = logging.getLogger(__name__)

RequestFn = Callable[[bytes], AsyncIterator[PartialResultSet]]
DoneCallback = Callable[[Optional[BaseException]], Awaitable[None]]

_NO_VALUE: Any = object()
_END: Any = object()


@dataclass(frozen=True, slots=True)
class _Failure:
    error: BaseException


@dataclass(frozen=True, slots=True)
class _Checkpoint:
    """Merge state as of the last resume token."""
    resume_token: bytes = b""
    row_buffer: tuple[Any, ...] = ()
    pending_value: Any = _NO_VALUE


class PartialResultStream:
    """
    Async iterator of rows reassembled from a resumable chunk stream.

    Not restartable: once exhausted, failed or closed it yields nothing
    more. `on_done` is awaited exactly once with the terminal error (or
    None) so the owner can release the session behind the stream.
    """

    def __init__(
        self,
        request_fn: RequestFn,
        config: Optional[StreamConfig] = None,
        *,
        retry_aborted: bool = True,
        on_done: Optional[DoneCallback] = None,
        label: Optional[str] = None,
    ) -> None:
        self._request_fn = request_fn
        self._config = config or StreamConfig()
        self._retry_aborted = retry_aborted
        self._on_done = on_done
        self._label = label or "stream"
        self._policy = RetryPolicy.for_stream(self._config)
        self._flow = FlowController(self._config)
        self._queue: asyncio.Queue[Union[Row, _Failure, Any]] = asyncio.Queue()
        self._producer: Optional[asyncio.Task[None]] = None
        self._finished = False

        # Reassembly state
        self._metadata: Optional[ResultSetMetadata] = None
        self._stats: Optional[ResultSetStats] = None
        self._row_buffer: list[Any] = []
        self._pending_value: Any = _NO_VALUE
        self._pending_rows: list[Row] = []
        self._checkpoint = _Checkpoint()
        self._chunks_since_checkpoint = 0
        self._replay_safe = True
        self._rows_delivered = 0
        self._retries = 0

    # =========================================================================
    # CONSUMER
    # =========================================================================
    def __aiter__(self) -> PartialResultStream:
        return self

    async def __anext__(self) -> Row:
        if self._finished:
            raise StopAsyncIteration
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce(), name=f"{self._label}-producer")

        item = await self._queue.get()
        if isinstance(item, Row):
            self._flow.on_consumed()
            self._rows_delivered += 1
            return item

        if isinstance(item, _Failure):
            await self._finish(item.error)
            raise item.error

        await self._finish(None)
        raise StopAsyncIteration

    async def to_list(self) -> list[Row]:
        """Drain the stream."""
        return [row async for row in self]

    async def close(self) -> None:
        """Stop pulling chunks and release the stream's resources."""
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            await asyncio.gather(self._producer, return_exceptions=True)
        await self._finish(None)

    async def _finish(self, error: Optional[BaseException]) -> None:
        if self._finished:
            return
        self._finished = True
        if self._on_done is not None:
            await self._on_done(error)

    # =========================================================================
    # PRODUCER
    # =========================================================================
    async def _produce(self) -> None:
        try:
            while True:
                try:
                    await self._pull(self._checkpoint.resume_token)
                    break
                except Exception as e:
                    if not self._should_retry(e):
                        raise
                    delay = retry_delay_for(e, self._retries, self._policy)
                    self._retries += 1
                    logger.debug(
                        f"{self._label}: resuming after {e} "
                        f"(retry {self._retries}, token={self._checkpoint.resume_token!r}, "
                        f"delay {delay:.3f}s)"
                    )
                    self._restore()
                    await asyncio.sleep(delay)

            if self._row_buffer or self._pending_value is not _NO_VALUE:
                raise StreamProtocolError.violation(
                    f"stream ended inside a row ({len(self._row_buffer)} value(s) buffered)"
                )
            self._flush()
            self._queue.put_nowait(_END)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._pending_rows = []
            self._queue.put_nowait(_Failure(e))

    async def _pull(self, resume_token: bytes) -> None:
        chunks = self._request_fn(resume_token)
        try:
            while True:
                await self._flow.wait_until_flowing()
                try:
                    chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    return
                self._process(chunk)
        finally:
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                await aclose()

    def _should_retry(self, error: Exception) -> bool:
        if not self._replay_safe:
            return False
        if not is_retryable_stream_error(error, self._retry_aborted):
            return False
        return self._retries < self._policy.max_retries

    # =========================================================================
    # REASSEMBLY
    # =========================================================================
    def _process(self, chunk: PartialResultSet) -> None:
        if chunk.metadata is not None and self._metadata is None:
            self._metadata = chunk.metadata
        if chunk.stats is not None:
            self._stats = chunk.stats

        values = list(chunk.values)
        if values:
            if self._metadata is None:
                raise StreamProtocolError.violation("values received before metadata")
            if self._metadata.column_count == 0:
                raise StreamProtocolError.violation("values received for a result without columns")

            if self._pending_value is not _NO_VALUE:
                field = self._metadata.fields[len(self._row_buffer)]
                values[0] = merge_values(field.type, self._pending_value, values[0])
                self._pending_value = _NO_VALUE

            if chunk.chunked_value:
                last = values.pop()
                if not is_mergeable(last):
                    raise StreamProtocolError.violation(f"chunked value {last!r} cannot be merged")
                self._pending_value = last

            for value in values:
                self._row_buffer.append(value)
                if len(self._row_buffer) == self._metadata.column_count:
                    self._pending_rows.append(Row.decode(self._metadata.fields, self._row_buffer))
                    self._row_buffer = []
        elif chunk.chunked_value:
            raise StreamProtocolError.violation("empty chunk marked as chunked")

        if chunk.resume_token:
            self._flush()
            self._checkpoint = _Checkpoint(
                resume_token=chunk.resume_token,
                row_buffer=tuple(self._row_buffer),
                pending_value=self._pending_value,
            )
            self._chunks_since_checkpoint = 0
            self._replay_safe = True
            self._retries = 0
            return

        self._chunks_since_checkpoint += 1
        if self._chunks_since_checkpoint > self._config.max_queued:
            if self._replay_safe:
                logger.debug(
                    f"{self._label}: {self._chunks_since_checkpoint} chunks without a resume token; "
                    "stream is no longer resumable"
                )
            self._flush()
            self._replay_safe = False

    def _flush(self) -> None:
        """Release rows produced since the last checkpoint to the consumer."""
        for row in self._pending_rows:
            self._queue.put_nowait(row)
        self._flow.on_buffered(len(self._pending_rows))
        self._pending_rows = []

    def _restore(self) -> None:
        self._row_buffer = list(self._checkpoint.row_buffer)
        self._pending_value = self._checkpoint.pending_value
        self._pending_rows = []
        self._chunks_since_checkpoint = 0

    # =========================================================================
    # INTROSPECTION
    # =========================================================================
    @property
    def metadata(self) -> Optional[ResultSetMetadata]:
        return self._metadata

    @property
    def stats(self) -> Optional[ResultSetStats]:
        return self._stats

    @property
    def rows_delivered(self) -> int:
        """Rows handed to the consumer so far."""
        return self._rows_delivered

    @property
    def flow_metrics(self) -> FlowMetrics:
        return self._flow.metrics

    @property
    def is_finished(self) -> bool:
        return self._finished
