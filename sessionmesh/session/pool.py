"""
Session Pool: Bounded, Fair Inventory of Server-Side Sessions

Owns every session created for one database and hands them out to
callers one at a time.

Capacity:
    size = borrowed + available + preparing + pending creation
    size <= max at every observation point

Acquisition (acquire):
    1. An available handle of the requested role, else one of the other
       role (read-write handles are reset for readers, read-only handles
       are promoted for writers by beginning a transaction).
    2. Otherwise grow by a batch when the waiters (including this one)
       outnumber the sessions already pending creation. Batches are the
       needed count rounded up to inc_step, capped at max - size.
    3. Otherwise, when fail is set and the pool is full, raise
       PoolExhaustedError listing every outstanding checkout.
    4. Otherwise queue as a FIFO waiter until a handle is released or
       created.

Release hands the handle to the longest-waiting waiter of the same
role, else the longest-waiting waiter of any role, else returns it to
the available queue of its role.

Background work (creation, preparation, housekeeping) runs as tasks
owned by the pool and is cancelled by close().
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import AsyncIterator, Coroutine, Any, Optional

from sessionmesh.core import constants as C
from sessionmesh.core.config import PoolConfig
from sessionmesh.core.errors import (
    ContractViolationError,
    PoolClosedError,
    PoolExhaustedError,
    SessionLeakError,
    TransportError,
)
from sessionmesh.reliability.retry import RetryPolicy, retry_with_backoff
from sessionmesh.session.handle import LeakContext, SessionHandle, SessionRole
from sessionmesh.transport.protocols import (
    ExecuteSqlRequest,
    Transport,
    TransactionOptions,
)

logger = logging.getLogger(__name__)


class _Origin(Enum):
    """Why a batch of sessions is being created."""
    PREFILL = auto()
    ACQUIRE = auto()
    REPLENISH = auto()


@dataclass(eq=False)
class _Waiter:
    role: SessionRole
    label: str
    future: asyncio.Future[SessionHandle]


class SessionPool:
    """
    Pool of sessions for a single database.

    Example:
        pool = SessionPool(transport, "projects/p/instances/i/databases/d")
        await pool.open()

        async with pool.session(SessionRole.READ_ONLY, label="report") as handle:
            ...

        await pool.close()
    """

    __slots__ = (
        "_transport",
        "_database",
        "_config",
        "_available",
        "_borrowed",
        "_preparing",
        "_pending_create",
        "_waiters",
        "_lock",
        "_tasks",
        "_housekeeper",
        "_opened",
        "_closed",
        "_checkout_seq",
        "_create_policy",
        "__weakref__",
    )

    def __init__(
        self,
        transport: Transport,
        database: str,
        config: Optional[PoolConfig] = None,
    ) -> None:
        self._transport = transport
        self._database = database
        self._config = config or PoolConfig()
        self._available: dict[SessionRole, deque[SessionHandle]] = {
            SessionRole.READ_ONLY: deque(),
            SessionRole.READ_WRITE: deque(),
        }
        self._borrowed: dict[str, tuple[SessionHandle, LeakContext]] = {}
        self._preparing: dict[str, SessionHandle] = {}
        self._pending_create = 0
        self._waiters: deque[_Waiter] = deque()
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self._housekeeper: Optional[asyncio.Task[None]] = None
        self._opened = False
        self._closed = False
        self._checkout_seq = 0
        self._create_policy = RetryPolicy(max_retries=self._config.create_retries)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def database(self) -> str:
        return self._database

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def size(self) -> int:
        """Borrowed, available, preparing and pending-creation sessions."""
        return self.borrowed + self.available + len(self._preparing) + self._pending_create

    @property
    def available(self) -> int:
        return self.reads + self.writes

    @property
    def borrowed(self) -> int:
        return len(self._borrowed)

    @property
    def reads(self) -> int:
        return len(self._available[SessionRole.READ_ONLY])

    @property
    def writes(self) -> int:
        return len(self._available[SessionRole.READ_WRITE])

    @property
    def pending(self) -> int:
        return self._pending_create

    @property
    def pending_prepare(self) -> int:
        return len(self._preparing)

    @property
    def num_waiters(self) -> int:
        return sum(1 for w in self._waiters if not w.future.done())

    @property
    def is_full(self) -> bool:
        return self.size >= self._config.max

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def inventory(self, role: SessionRole) -> list[SessionHandle]:
        """Snapshot of the available handles of a role, oldest first."""
        return list(self._available[role])

    def leaks(self) -> list[str]:
        """Descriptions of every outstanding checkout."""
        return [ctx.describe(session_id) for session_id, (_, ctx) in self._borrowed.items()]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self) -> None:
        """Start background fill to min and periodic housekeeping."""
        async with self._lock:
            if self._closed:
                raise PoolClosedError.closed("open")
            if self._opened:
                return
            self._opened = True
            if self._config.min > 0:
                self._grow_locked(
                    self._config.min,
                    origin=_Origin.PREFILL,
                    write_count=self._config.write_target,
                )
        if self._config.housekeeping_interval_s > 0:
            self._housekeeper = asyncio.get_running_loop().create_task(self._housekeeping_loop())
        logger.info(
            f"Session pool opened for {self._database} "
            f"(min={self._config.min}, max={self._config.max}, inc_step={self._config.inc_step})"
        )

    async def close(self) -> None:
        """
        Cancel background work, fail waiters and delete idle sessions.

        Raises:
            SessionLeakError: if any session is still checked out
        """
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            for waiter in self._waiters:
                if not waiter.future.done():
                    waiter.future.set_exception(PoolClosedError.closed("acquire"))
            self._waiters.clear()
            idle = [h for queue in self._available.values() for h in queue]
            idle.extend(self._preparing.values())
            for queue in self._available.values():
                queue.clear()
            self._preparing.clear()
            tasks = list(self._tasks)
            if self._housekeeper is not None:
                tasks.append(self._housekeeper)

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending_create = 0
        # Cancelled background passes have handed their sessions back by now.
        leaks = self.leaks()

        for handle in idle:
            await self._delete_session(handle)

        logger.info(f"Session pool closed for {self._database} ({len(idle)} sessions deleted)")

        if leaks:
            logger.error(f"Session pool closed with {len(leaks)} leaked session(s)")
            raise SessionLeakError.leaked(leaks)

    async def wait_for_background(self) -> None:
        """Wait until every pending creation and preparation has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Acquire / Release
    # -------------------------------------------------------------------------

    async def acquire(
        self,
        role: SessionRole = SessionRole.READ_ONLY,
        label: Optional[str] = None,
    ) -> SessionHandle:
        """
        Check out a session for the given role.

        A READ_WRITE handle is returned with a begun transaction.

        Raises:
            PoolExhaustedError: pool is full and fail is set, or the
                acquire timeout elapsed
            PoolClosedError: pool is closed
            TransportError: session creation failed for this caller
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.acquire_timeout_s
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            handle = await self._checkout(role, label, deadline)
            if role is not SessionRole.READ_WRITE or handle.transaction_id is not None:
                return handle
            try:
                await self.prepare(handle)
            except TransportError as e:
                if e.is_session_not_found:
                    logger.info(f"Session {handle.id} not found while preparing; replacing it")
                    await self.evict(handle)
                    continue
                await self.release(handle)
                raise
            except BaseException:
                # The caller never sees the handle, cancelled or not.
                await self.release(handle)
                raise
            return handle

    async def release(self, handle: SessionHandle) -> None:
        """
        Return a checked-out handle.

        Raises:
            ContractViolationError: handle is not checked out from this pool
        """
        async with self._lock:
            self._unborrow_locked(handle)
            if self._closed:
                logger.debug(f"Session {handle.id} released after pool close")
            else:
                self._dispatch_locked(handle)
                return
        await self._delete_session(handle)

    async def evict(self, handle: SessionHandle, delete: bool = False) -> None:
        """
        Remove a checked-out handle without making it available again.

        Used when the server reports the session missing; delete=True
        also removes it server-side. A replacement is created in the
        background while the pool is below min or callers are waiting.
        """
        async with self._lock:
            self._unborrow_locked(handle)
            logger.debug(f"Evicted session {handle.id}")
            if not self._closed:
                self._replenish_locked()
        if delete:
            await self._delete_session(handle)

    async def prepare(self, handle: SessionHandle) -> None:
        """Begin a read-write transaction on the handle."""
        info = await self._transport.begin_transaction(
            handle.id,
            TransactionOptions.read_write(),
        )
        handle.promote(info.id)

    @asynccontextmanager
    async def session(
        self,
        role: SessionRole = SessionRole.READ_ONLY,
        label: Optional[str] = None,
    ) -> AsyncIterator[SessionHandle]:
        """Acquire a handle for the duration of the block."""
        handle = await self.acquire(role, label)
        try:
            yield handle
        finally:
            await self.release(handle)

    # -------------------------------------------------------------------------
    # Checkout Internals
    # -------------------------------------------------------------------------

    async def _checkout(
        self,
        role: SessionRole,
        label: Optional[str],
        deadline: Optional[float],
    ) -> SessionHandle:
        async with self._lock:
            if self._closed:
                raise PoolClosedError.closed("acquire")
            self._checkout_seq += 1
            label = label or f"checkout #{self._checkout_seq}"

            handle = self._take_available_locked(role)
            if handle is not None:
                self._borrow_locked(handle, label)
                return handle

            waiting = self.num_waiters + 1
            total = self.size
            if waiting > self._pending_create:
                if total < self._config.max:
                    self._grow_locked(waiting - self._pending_create, origin=_Origin.ACQUIRE)
                elif self._config.fail:
                    raise PoolExhaustedError.exhausted(self._config.max, self.leaks())

            waiter = _Waiter(
                role=role,
                label=label,
                future=asyncio.get_running_loop().create_future(),
            )
            self._waiters.append(waiter)

        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(waiter.future, timeout)
        except asyncio.TimeoutError:
            handed = self._abandon_waiter(waiter)
            if handed is not None:
                return handed
            raise PoolExhaustedError.acquire_timeout(
                self._config.acquire_timeout_s or 0.0,
                self.leaks(),
            ) from None
        except asyncio.CancelledError:
            handed = self._abandon_waiter(waiter)
            if handed is not None:
                # Synchronous hand-back: runs atomically on the event loop.
                self._unborrow_locked(handed)
                self._dispatch_locked(handed)
            raise

    def _abandon_waiter(self, waiter: _Waiter) -> Optional[SessionHandle]:
        """
        Drop a waiter that stopped waiting. Returns the handle it was
        given if a release raced with the timeout or cancellation.
        """
        if waiter in self._waiters:
            self._waiters.remove(waiter)
        future = waiter.future
        if future.done() and not future.cancelled() and future.exception() is None:
            return future.result()
        return None

    def _take_available_locked(self, role: SessionRole) -> Optional[SessionHandle]:
        queue = self._available[role]
        if queue:
            return queue.popleft()
        other = self._available[role.other]
        if other:
            handle = other.popleft()
            if role is SessionRole.READ_ONLY:
                handle.reset()
            return handle
        return None

    def _borrow_locked(self, handle: SessionHandle, label: str) -> None:
        if handle.id in self._borrowed:
            raise ContractViolationError.double_checkout(handle.id)
        handle.touch()
        self._borrowed[handle.id] = (handle, LeakContext(label=label))

    def _unborrow_locked(self, handle: SessionHandle) -> None:
        if handle.pool is not self:
            raise ContractViolationError.foreign_session(handle.id)
        entry = self._borrowed.pop(handle.id, None)
        if entry is None or entry[0] is not handle:
            if entry is not None:
                self._borrowed[handle.id] = entry
            raise ContractViolationError.double_release(handle.id)

    def _next_waiter_locked(self, role: SessionRole) -> Optional[_Waiter]:
        """Oldest live waiter of `role`, else oldest live waiter of any role."""
        while self._waiters and self._waiters[0].future.done():
            self._waiters.popleft()
        for waiter in self._waiters:
            if waiter.role is role and not waiter.future.done():
                self._waiters.remove(waiter)
                return waiter
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.future.done():
                return waiter
        return None

    def _dispatch_locked(self, handle: SessionHandle) -> None:
        """Hand a free handle to the next waiter, or make it available."""
        waiter = self._next_waiter_locked(handle.role)
        if waiter is not None:
            if waiter.role is SessionRole.READ_ONLY:
                handle.reset()
            self._borrow_locked(handle, waiter.label)
            waiter.future.set_result(handle)
            return
        handle.touch()
        self._available[handle.role].append(handle)

    # -------------------------------------------------------------------------
    # Growth
    # -------------------------------------------------------------------------

    def _grow_locked(
        self,
        needed: int,
        origin: _Origin,
        write_count: int = 0,
    ) -> None:
        room = self._config.max - self.size
        if origin is _Origin.ACQUIRE:
            step = self._config.inc_step
            needed = math.ceil(needed / step) * step
        count = min(room, needed)
        if count <= 0:
            return
        self._pending_create += count
        logger.debug(f"Creating {count} session(s) for {self._database} ({origin.name.lower()})")
        self._spawn(self._create_batch(count, origin, min(write_count, count)))

    def _replenish_locked(self) -> None:
        """Create sessions for the min deficit or for uncovered waiters."""
        below_min = self._config.min - self.size
        uncovered = self.num_waiters - self._pending_create
        needed = max(below_min, uncovered)
        if needed > 0:
            self._grow_locked(needed, origin=_Origin.REPLENISH)

    async def _create_batch(self, count: int, origin: _Origin, write_count: int) -> None:
        handles: list[SessionHandle] = []
        error: Optional[Exception] = None
        remaining = count
        while remaining > 0:
            result = await retry_with_backoff(
                lambda: self._transport.batch_create_sessions(
                    self._database, remaining, self._config.labels
                ),
                self._create_policy,
            )
            if result.is_err():
                error = result.error
                break
            infos = result.unwrap()
            if not infos:
                break
            handles.extend(SessionHandle(info.name, self) for info in infos)
            remaining -= len(infos)

        to_prepare: list[SessionHandle] = []
        async with self._lock:
            self._pending_create -= count
            if self._closed:
                to_delete = handles
            else:
                to_delete = []
                for i, handle in enumerate(handles):
                    if i < write_count:
                        self._preparing[handle.id] = handle
                        to_prepare.append(handle)
                    else:
                        self._dispatch_locked(handle)
                if error is not None:
                    self._on_create_failure_locked(error, origin)
                elif handles:
                    self._replenish_locked()

        for handle in to_delete:
            await self._delete_session(handle)
        for handle in to_prepare:
            self._spawn(self._prepare_in_background(handle))

        if handles:
            logger.debug(f"Created {len(handles)} session(s) for {self._database}")

    def _on_create_failure_locked(self, error: Exception, origin: _Origin) -> None:
        uncovered = self.num_waiters - self._pending_create
        if origin is not _Origin.ACQUIRE:
            logger.warning(f"Background session creation failed ({origin.name.lower()}): {error}")
            if uncovered > 0:
                self._grow_locked(uncovered, origin=_Origin.ACQUIRE)
            return

        logger.warning(f"Session creation failed for {uncovered} waiter(s): {error}")
        failed = 0
        for waiter in reversed(self._waiters):
            if failed >= uncovered:
                break
            if not waiter.future.done():
                waiter.future.set_exception(error)
                failed += 1

    async def _prepare_in_background(self, handle: SessionHandle) -> None:
        try:
            await self.prepare(handle)
        except TransportError as e:
            async with self._lock:
                if self._preparing.pop(handle.id, None) is None:
                    return
                if e.is_session_not_found:
                    logger.warning(f"Session {handle.id} vanished while being prepared")
                    self._replenish_locked()
                    return
                logger.warning(f"Failed to prepare session {handle.id}: {e}")
                handle.reset()
                self._dispatch_locked(handle)
            return

        async with self._lock:
            if self._preparing.pop(handle.id, None) is not None:
                self._dispatch_locked(handle)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session pool background task failed: {task.exception()!r}")

    async def _delete_session(self, handle: SessionHandle) -> None:
        try:
            await self._transport.delete_session(handle.id)
        except TransportError as e:
            logger.warning(f"Failed to delete session {handle.id}: {e}")

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def _housekeeping_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.housekeeping_interval_s)
            await self.run_maintenance()

    async def run_maintenance(self) -> None:
        """
        One housekeeping pass: delete sessions idle longer than
        idle_timeout_s while above min, then ping sessions idle longer
        than keep_alive_s so the server does not garbage collect them.
        """
        async with self._lock:
            if self._closed:
                return
            expired: list[SessionHandle] = []
            for queue in self._available.values():
                for handle in list(queue):
                    if self.size <= self._config.min:
                        break
                    if handle.idle_seconds >= self._config.idle_timeout_s:
                        queue.remove(handle)
                        expired.append(handle)

            stale: list[SessionHandle] = []
            for queue in self._available.values():
                for handle in list(queue):
                    if handle.idle_seconds >= self._config.keep_alive_s:
                        queue.remove(handle)
                        self._borrow_locked(handle, "keep-alive")
                        stale.append(handle)

        unpinged = deque(stale)
        try:
            for handle in expired:
                logger.debug(f"Deleting idle session {handle.id}")
                await self._delete_session(handle)

            while unpinged:
                await self._ping(unpinged[0])
                unpinged.popleft()
        finally:
            # Interrupted pass (close() cancels the housekeeper): hand back what is still held.
            for handle in unpinged:
                if handle.id in self._borrowed:
                    await self.release(handle)

    async def _ping(self, handle: SessionHandle) -> None:
        request = ExecuteSqlRequest(session=handle.id, sql=C.KEEP_ALIVE_SQL)
        try:
            async for _ in self._transport.execute_streaming_sql(request):
                pass
        except TransportError as e:
            if e.is_session_not_found:
                logger.info(f"Keep-alive found session {handle.id} missing; replacing it")
                await self.evict(handle)
                return
            logger.warning(f"Keep-alive for session {handle.id} failed: {e}")
        await self.release(handle)
