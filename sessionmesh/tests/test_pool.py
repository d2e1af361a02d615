"""
Tests for the session pool: growth, fairness, roles, failures and
housekeeping.
"""

import asyncio

import pytest
import pytest_asyncio

from sessionmesh.core.errors import (
    ContractViolationError,
    ErrorCode,
    PoolClosedError,
    PoolExhaustedError,
    SessionLeakError,
    TransportError,
)
from sessionmesh.core.types import StatusCode
from sessionmesh.session.handle import SessionHandle, SessionRole
from sessionmesh.session.pool import SessionPool
from sessionmesh.transport.memory import MockError
from sessionmesh.tests.support import DATABASE, SELECT_SQL, UPDATE_SQL, pool_config


@pytest_asyncio.fixture
async def make_pool(transport):
    """Factory for opened pools; pools still open at teardown are closed."""
    pools: list[SessionPool] = []

    async def factory(**overrides) -> SessionPool:
        pool = SessionPool(transport, DATABASE, pool_config(**overrides))
        await pool.open()
        pools.append(pool)
        return pool

    yield factory

    for pool in pools:
        await pool.close()


# =============================================================================
# SESSION HANDLE
# =============================================================================
class TestSessionHandle:
    """Role bookkeeping on a single handle."""

    def test_role_follows_transaction(self):
        handle = SessionHandle("projects/p/instances/i/databases/d/sessions/0")
        assert handle.role is SessionRole.READ_ONLY

        handle.promote("000000000001")
        assert handle.role is SessionRole.READ_WRITE
        assert handle.transaction_id == "000000000001"

        handle.reset()
        assert handle.role is SessionRole.READ_ONLY
        assert handle.transaction_id is None

    def test_take_transaction_clears_it(self):
        handle = SessionHandle("s")
        handle.promote("t")
        assert handle.take_transaction() == "t"
        assert handle.take_transaction() is None

    def test_other_role(self):
        assert SessionRole.READ_ONLY.other is SessionRole.READ_WRITE
        assert SessionRole.READ_WRITE.other is SessionRole.READ_ONLY


# =============================================================================
# GROWTH
# =============================================================================
class TestPoolGrowth:
    """Sessions are created on demand, in inc_step batches, up to max."""

    async def test_sequential_queries_reuse_one_session(self, transport, make_database):
        database = await make_database()
        for _ in range(10):
            rows = await database.run(SELECT_SQL)
            assert len(rows) == 3
        assert database.pool.size == 1
        assert len(transport.session_names) == 1

    async def test_prefill_with_write_fraction(self, make_pool):
        pool = await make_pool(min=100, write_fraction=0.2)
        assert pool.size == 100

        await pool.wait_for_background()
        assert pool.size == 100
        assert pool.reads == 80
        assert pool.writes == 20
        for handle in pool.inventory(SessionRole.READ_WRITE):
            assert handle.transaction_id is not None

    async def test_grows_for_each_uncovered_waiter(self, make_database):
        database = await make_database(pool=pool_config(min=1, max=10))
        await asyncio.gather(database.run(SELECT_SQL), database.run(SELECT_SQL))
        assert database.pool.size == 2

    async def test_growth_rounds_up_to_inc_step(self, make_pool):
        pool = await make_pool(min=100, max=200, inc_step=25)
        handles = await asyncio.gather(*(pool.acquire() for _ in range(101)))
        await pool.wait_for_background()
        assert pool.size == 125
        assert pool.borrowed == 101
        for handle in handles:
            await pool.release(handle)

    async def test_growth_capped_at_max(self, make_pool):
        pool = await make_pool(max=3, inc_step=2)

        first = await pool.acquire()
        await pool.wait_for_background()
        assert pool.size == 2

        second = await pool.acquire()
        assert pool.size == 2

        third = await pool.acquire()
        await pool.wait_for_background()
        assert pool.size == 3
        assert pool.is_full

        for handle in (first, second, third):
            await pool.release(handle)

    async def test_size_never_exceeds_max(self, make_pool):
        pool = await make_pool(max=5, inc_step=3)
        sizes: list[int] = []

        async def borrow() -> None:
            handle = await pool.acquire()
            sizes.append(pool.size)
            await asyncio.sleep(0)
            await pool.release(handle)

        await asyncio.gather(*(borrow() for _ in range(20)))
        assert max(sizes) <= 5
        assert pool.size <= 5

    async def test_size_counts_pending_creation(self, transport, make_pool):
        pool = await make_pool(max=4, inc_step=2)
        transport.freeze()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert pool.pending == 2
        assert pool.size == 2
        assert pool.num_waiters == 1

        transport.unfreeze()
        handle = await waiter
        await pool.wait_for_background()
        assert pool.pending == 0
        assert pool.size == 2
        assert pool.available == 1
        await pool.release(handle)


# =============================================================================
# FAIRNESS AND ROLES
# =============================================================================
class TestPoolFairness:
    """Waiters are served in arrival order, same role first."""

    async def test_waiters_served_fifo(self, make_pool):
        pool = await make_pool(max=1)
        held = await pool.acquire(label="holder")
        order: list[str] = []

        async def borrower(name: str) -> None:
            handle = await pool.acquire(label=name)
            order.append(name)
            await pool.release(handle)

        tasks = [asyncio.create_task(borrower(name)) for name in ("a", "b", "c")]
        await asyncio.sleep(0)
        assert pool.num_waiters == 3

        await pool.release(held)
        await asyncio.gather(*tasks)
        assert order == ["a", "b", "c"]

    async def test_same_role_waiter_preferred(self, make_pool):
        pool = await make_pool(max=1)
        held = await pool.acquire(SessionRole.READ_ONLY, label="holder")
        order: list[str] = []
        roles: dict[str, SessionRole] = {}

        async def borrower(name: str, role: SessionRole) -> None:
            handle = await pool.acquire(role, label=name)
            order.append(name)
            roles[name] = handle.role
            await pool.release(handle)

        writer = asyncio.create_task(borrower("writer", SessionRole.READ_WRITE))
        await asyncio.sleep(0)
        reader = asyncio.create_task(borrower("reader", SessionRole.READ_ONLY))
        await asyncio.sleep(0)

        await pool.release(held)
        await asyncio.gather(writer, reader)
        assert order == ["reader", "writer"]
        assert roles["writer"] is SessionRole.READ_WRITE

    async def test_write_session_reused_for_read(self, transport, make_database):
        database = await make_database(pool=pool_config(max=1))

        async def body(txn):
            return await txn.run_update(UPDATE_SQL)

        await asyncio.gather(
            database.run_transaction(body),
            database.run(SELECT_SQL),
        )
        assert database.pool.size == 1
        assert database.pool.writes == 0
        assert database.pool.reads == 1

    async def test_read_write_acquire_prepares_transaction(self, transport, make_pool):
        pool = await make_pool()
        handle = await pool.acquire(SessionRole.READ_WRITE)
        assert handle.transaction_id is not None
        assert len(transport.requests_of("begin_transaction")) == 1
        await pool.release(handle)
        assert pool.writes == 1

    async def test_read_only_caller_gets_reset_write_session(self, make_pool):
        pool = await make_pool()
        handle = await pool.acquire(SessionRole.READ_WRITE)
        await pool.release(handle)

        again = await pool.acquire(SessionRole.READ_ONLY)
        assert again is handle
        assert again.transaction_id is None
        await pool.release(again)


# =============================================================================
# FAILURES
# =============================================================================
class TestPoolFailures:
    """Exhaustion, timeouts, creation errors and contract violations."""

    async def test_fail_when_exhausted_lists_checkouts(self, make_database):
        database = await make_database(pool=pool_config(max=1, fail=True))
        snapshot = await database.get_snapshot(label="first")
        try:
            with pytest.raises(PoolExhaustedError) as exc_info:
                await database.get_snapshot()
            assert exc_info.value.code is ErrorCode.POOL_EXHAUSTED
            assert exc_info.value.message == "No resources available."
            assert len(exc_info.value.messages) == 1
            assert "first" in exc_info.value.messages[0]
        finally:
            await snapshot.end()

    async def test_acquire_timeout(self, make_pool):
        pool = await make_pool(max=1, acquire_timeout_s=0.05)
        held = await pool.acquire(label="holder")
        with pytest.raises(PoolExhaustedError) as exc_info:
            await pool.acquire()
        assert exc_info.value.code is ErrorCode.POOL_ACQUIRE_TIMEOUT
        assert pool.num_waiters == 0
        await pool.release(held)

    async def test_cancelled_read_write_acquire_returns_session(self, transport, make_pool):
        pool = await make_pool()
        await pool.release(await pool.acquire())
        transport.freeze()
        writer = asyncio.create_task(pool.acquire(SessionRole.READ_WRITE, "cancelled-writer"))
        await asyncio.sleep(0.01)
        assert pool.borrowed == 1

        writer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await writer
        transport.unfreeze()
        assert pool.borrowed == 0
        assert pool.available == 1
        assert pool.leaks() == []

    async def test_create_failure_fails_waiting_caller(self, transport, make_database):
        database = await make_database()
        transport.inject_errors(
            "batch_create_sessions",
            MockError(StatusCode.NOT_FOUND, "Database not found"),
            MockError(StatusCode.NOT_FOUND, "Database not found"),
        )
        for _ in range(2):
            with pytest.raises(TransportError) as exc_info:
                await database.run(SELECT_SQL)
            assert exc_info.value.status is StatusCode.NOT_FOUND

        rows = await database.run(SELECT_SQL)
        assert len(rows) == 3
        assert database.pool.borrowed == 0

    async def test_prefill_failure_recovers_for_waiters(self, transport, make_database):
        transport.inject_errors(
            "batch_create_sessions",
            MockError(StatusCode.NOT_FOUND, "Database not found"),
        )
        database = await make_database(pool=pool_config(min=25))
        rows = await database.run(SELECT_SQL)
        assert len(rows) == 3

        await database.pool.wait_for_background()
        assert database.pool.size == 25

    async def test_transient_create_errors_are_retried(self, transport, make_pool):
        transport.inject_errors(
            "batch_create_sessions",
            MockError(StatusCode.UNAVAILABLE, "Temporary unavailable"),
        )
        pool = await make_pool()
        handle = await pool.acquire()
        assert len(transport.requests_of("batch_create_sessions")) == 2
        await pool.release(handle)

    async def test_double_release(self, make_pool):
        pool = await make_pool()
        handle = await pool.acquire()
        await pool.release(handle)
        with pytest.raises(ContractViolationError):
            await pool.release(handle)

    async def test_foreign_handle(self, make_pool):
        pool = await make_pool()
        with pytest.raises(ContractViolationError):
            await pool.release(SessionHandle(f"{DATABASE}/sessions/99"))


# =============================================================================
# EVICTION AND HOUSEKEEPING
# =============================================================================
class TestPoolMaintenance:
    """Eviction, idle deletion and keep-alive."""

    async def test_evict_replenishes_to_min(self, transport, make_pool):
        pool = await make_pool(min=2)
        await pool.wait_for_background()
        assert pool.size == 2

        handle = await pool.acquire()
        await pool.evict(handle)
        assert pool.borrowed == 0

        await pool.wait_for_background()
        assert pool.size == 2
        # The evicted session is not deleted server-side
        assert len(transport.session_names) == 3

    async def test_evict_with_delete(self, transport, make_pool):
        pool = await make_pool()
        handle = await pool.acquire()
        await pool.evict(handle, delete=True)
        assert transport.session_names == []
        assert pool.size == 0

    async def test_idle_sessions_deleted_above_min(self, transport, make_pool):
        pool = await make_pool(idle_timeout_s=0)
        first = await pool.acquire()
        second = await pool.acquire()
        await pool.release(first)
        await pool.release(second)
        assert pool.available == 2

        await pool.run_maintenance()
        assert pool.size == 0
        assert transport.session_names == []

    async def test_keep_alive_pings_idle_sessions(self, transport, make_pool):
        pool = await make_pool(keep_alive_s=0, idle_timeout_s=3600)
        handle = await pool.acquire()
        await pool.release(handle)

        await pool.run_maintenance()
        pings = [r for r in transport.requests_of("execute_streaming_sql") if r.sql == "SELECT 1"]
        assert len(pings) == 1
        assert pool.available == 1

    async def test_keep_alive_evicts_missing_session(self, transport, make_pool):
        pool = await make_pool(keep_alive_s=0, idle_timeout_s=3600)
        handle = await pool.acquire()
        await pool.release(handle)
        transport.drop_session(handle.id)

        await pool.run_maintenance()
        assert pool.size == 0
        assert pool.borrowed == 0

    async def test_cancelled_keep_alive_returns_session(self, transport, make_pool):
        pool = await make_pool(keep_alive_s=0, idle_timeout_s=3600)
        await pool.release(await pool.acquire())
        transport.freeze()
        maintenance = asyncio.create_task(pool.run_maintenance())
        await asyncio.sleep(0.01)
        assert pool.borrowed == 1

        maintenance.cancel()
        with pytest.raises(asyncio.CancelledError):
            await maintenance
        transport.unfreeze()
        assert pool.borrowed == 0
        assert pool.available == 1


# =============================================================================
# CLOSE
# =============================================================================
class TestPoolClose:
    """Close deletes idle sessions, fails waiters and reports leaks."""

    async def test_close_deletes_idle_sessions(self, transport, make_pool):
        pool = await make_pool(min=3)
        await pool.wait_for_background()
        await pool.close()
        assert transport.session_names == []
        assert not pool.is_open

    async def test_close_reports_leaks(self, transport, make_pool):
        pool = await make_pool()
        handle = await pool.acquire(label="forgotten")
        with pytest.raises(SessionLeakError) as exc_info:
            await pool.close()
        assert len(exc_info.value.messages) == 1
        assert "forgotten" in exc_info.value.messages[0]

        # Late release deletes the session
        await pool.release(handle)
        assert transport.session_names == []

    async def test_close_during_keep_alive_ping(self, transport, make_pool):
        pool = await make_pool(keep_alive_s=0, idle_timeout_s=3600, housekeeping_interval_s=0.01)
        await pool.release(await pool.acquire())
        transport.freeze()
        await asyncio.sleep(0.05)
        assert "keep-alive" in pool.leaks()[0]

        closing = asyncio.create_task(pool.close())
        await asyncio.sleep(0.01)
        transport.unfreeze()
        await closing
        assert pool.borrowed == 0
        assert transport.session_names == []

    async def test_close_fails_waiters(self, make_pool):
        pool = await make_pool(max=1)
        held = await pool.acquire(label="holder")
        waiter = asyncio.create_task(pool.acquire(label="waiter"))
        await asyncio.sleep(0)

        with pytest.raises(SessionLeakError):
            await pool.close()
        with pytest.raises(PoolClosedError):
            await waiter
        await pool.release(held)

    async def test_acquire_after_close(self, make_pool):
        pool = await make_pool()
        await pool.close()
        with pytest.raises(PoolClosedError):
            await pool.acquire()
