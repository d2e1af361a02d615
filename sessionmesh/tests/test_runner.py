"""
Tests for the transaction retry runner and read-write transactions.
"""

import time

import pytest

from sessionmesh.client.transaction import Transaction
from sessionmesh.core.errors import (
    DeadlineExceededError,
    TransactionStateError,
    TransportError,
)
from sessionmesh.core.types import StatusCode
from sessionmesh.observability.logging import current_log_context
from sessionmesh.reliability.runner import (
    AttemptOutcome,
    RunState,
    TransactionRun,
)
from sessionmesh.session.handle import SessionHandle
from sessionmesh.transport.memory import MockError, create_simple_result_set
from sessionmesh.transport.protocols import KeySet, MutationOp, Statement
from sessionmesh.tests.support import SELECT_SQL, UPDATE_ROW_COUNT, UPDATE_SQL


# =============================================================================
# RUN STATE
# =============================================================================
class TestTransactionRun:
    """Run lifecycle bookkeeping."""

    def test_terminal_states(self):
        assert not RunState.NOT_STARTED.is_terminal
        assert not RunState.RUNNING.is_terminal
        assert RunState.COMMITTED.is_terminal
        assert RunState.DEADLINE_EXCEEDED.is_terminal

    def test_invalid_transition(self):
        run = TransactionRun(label="t", timeout_s=1)
        run.transition(RunState.RUNNING)
        run.transition(RunState.COMMITTED)
        with pytest.raises(TransactionStateError):
            run.transition(RunState.RUNNING)

    def test_transaction_needs_begun_session(self, transport):
        with pytest.raises(TransactionStateError):
            Transaction(SessionHandle("s"), transport)


# =============================================================================
# COMMIT PATH
# =============================================================================
class TestRunnerCommit:
    """Bodies that complete are committed once."""

    async def test_commit_with_mutations(self, transport, database):
        async def body(txn: Transaction) -> int:
            count = await txn.run_update(UPDATE_SQL)
            txn.insert("NUMBERS", ["NUM", "NAME"], [[4, "Four"]])
            txn.delete("NUMBERS", KeySet.of([1]))
            return count

        assert await database.run_transaction(body) == UPDATE_ROW_COUNT

        assert len(transport.committed) == 1
        _, mutations = transport.committed[0]
        assert [m.op for m in mutations] == [MutationOp.INSERT, MutationOp.DELETE]

        run = database.runner.last_run
        assert run is not None
        assert run.state is RunState.COMMITTED
        assert run.attempt_count == 1
        assert run.attempts[0].outcome is AttemptOutcome.COMMITTED
        assert run.attempts[0].mutation_count == 2
        assert database.pool.borrowed == 0

    async def test_query_inside_transaction(self, transport, database):
        async def body(txn: Transaction) -> list:
            return await txn.run(SELECT_SQL)

        rows = await database.run_transaction(body)
        assert [row["NUM"] for row in rows] == [1, 2, 3]
        request = transport.requests_of("execute_streaming_sql")[0]
        assert request.transaction_id is not None

    async def test_read_inside_transaction(self, transport, database):
        transport.put_read_result("NUMBERS", create_simple_result_set())

        async def body(txn: Transaction) -> list:
            return await txn.read("NUMBERS", ["NUM", "NAME"], KeySet.of([1], [2]))

        rows = await database.run_transaction(body)
        assert len(rows) == 3
        request = transport.requests_of("streaming_read")[0]
        assert request.key_set.keys == ((1,), (2,))

    async def test_dml_sequence_numbers_increase(self, transport, database):
        async def body(txn: Transaction) -> None:
            await txn.run_update(UPDATE_SQL)
            await txn.run_update(UPDATE_SQL)

        await database.run_transaction(body)
        seqnos = [r.seqno for r in transport.requests_of("execute_streaming_sql")]
        assert seqnos == [1, 2]

    async def test_batch_update(self, transport, database):
        async def body(txn: Transaction) -> list[int]:
            return await txn.batch_update([Statement(UPDATE_SQL), Statement(UPDATE_SQL)])

        assert await database.run_transaction(body) == [UPDATE_ROW_COUNT, UPDATE_ROW_COUNT]
        assert len(transport.requests_of("execute_batch_dml")) == 1

    async def test_body_rollback(self, transport, database):
        async def body(txn: Transaction) -> str:
            await txn.rollback()
            return "done"

        assert await database.run_transaction(body) == "done"
        assert database.runner.last_run.state is RunState.ROLLED_BACK
        assert transport.committed == []
        assert len(transport.requests_of("rollback")) == 1

    async def test_body_commit(self, transport, database):
        async def body(txn: Transaction) -> None:
            txn.upsert("NUMBERS", ["NUM", "NAME"], [[1, "Uno"]])
            await txn.commit()
            with pytest.raises(TransactionStateError):
                txn.insert("NUMBERS", ["NUM"], [[9]])

        await database.run_transaction(body)
        assert len(transport.committed) == 1
        assert database.runner.last_run.state is RunState.COMMITTED

    async def test_unfinished_stream_closed_with_transaction(self, database):
        streams = []

        async def body(txn: Transaction) -> int:
            stream = txn.run_stream(SELECT_SQL)
            streams.append(stream)
            row = await stream.__anext__()
            return row["NUM"]

        assert await database.run_transaction(body) == 1
        assert streams[0].is_finished
        assert streams[0].rows_delivered == 1

    async def test_log_context_per_attempt(self, database):
        seen: list[dict] = []

        async def body(txn: Transaction) -> None:
            seen.append(current_log_context())

        await database.run_transaction(body, label="audit")
        assert seen == [{"transaction": "audit", "attempt": 1}]


# =============================================================================
# RETRIES
# =============================================================================
class TestRunnerRetry:
    """ABORTED and session-not-found restart the body."""

    async def test_aborted_once_is_retried(self, transport, database):
        aborted = False

        async def body(txn: Transaction) -> int:
            nonlocal aborted
            if not aborted:
                aborted = True
                transport.abort_transaction(txn.id, txn.handle.id)
            return await txn.run_update(UPDATE_SQL)

        assert await database.run_transaction(body) == UPDATE_ROW_COUNT

        run = database.runner.last_run
        assert run.attempt_count == 2
        assert run.state is RunState.COMMITTED
        assert run.attempts[0].outcome is AttemptOutcome.ABORTED
        assert run.attempts[1].outcome is AttemptOutcome.COMMITTED
        # Both attempts ran on the same session with fresh transactions
        assert run.attempts[0].session_id == run.attempts[1].session_id
        assert len(transport.requests_of("begin_transaction")) == 2

    async def test_aborted_commit_honours_retry_delay(self, transport, database):
        transport.inject_errors(
            "commit",
            MockError(StatusCode.ABORTED, "Transaction aborted", retry_delay_s=0.01),
        )

        async def body(txn: Transaction) -> None:
            txn.insert("NUMBERS", ["NUM", "NAME"], [[4, "Four"]])

        await database.run_transaction(body)
        assert database.runner.last_run.attempt_count == 2
        assert len(transport.committed) == 1

    async def test_deadline_exceeded(self, transport, database):
        async def body(txn: Transaction) -> int:
            transport.abort_transaction(txn.id, txn.handle.id)
            return await txn.run_update(UPDATE_SQL)

        with pytest.raises(DeadlineExceededError) as exc_info:
            await database.run_transaction(body, timeout_s=0.001)

        assert exc_info.value.status is StatusCode.DEADLINE_EXCEEDED
        assert exc_info.value.attempts >= 1
        assert isinstance(exc_info.value.cause, TransportError)
        assert database.runner.last_run.state is RunState.DEADLINE_EXCEEDED
        assert database.pool.borrowed == 0

    async def test_server_retry_delay_capped_by_deadline(self, transport, database):
        transport.inject_errors(
            "commit",
            MockError(StatusCode.ABORTED, "Transaction aborted", retry_delay_s=30),
            MockError(StatusCode.ABORTED, "Transaction aborted", retry_delay_s=30),
        )

        async def body(txn: Transaction) -> None:
            txn.insert("NUMBERS", ["NUM", "NAME"], [[4, "Four"]])

        started = time.monotonic()
        with pytest.raises(DeadlineExceededError):
            await database.run_transaction(body, timeout_s=0.05)
        assert time.monotonic() - started < 5
        assert database.runner.last_run.attempt_count == 2
        assert database.pool.borrowed == 0

    async def test_zero_timeout_makes_one_attempt(self, transport, database):
        async def body(txn: Transaction) -> int:
            return await txn.run_update(UPDATE_SQL)

        assert await database.run_transaction(body, timeout_s=0) == UPDATE_ROW_COUNT
        assert database.runner.last_run.attempt_count == 1

    async def test_session_not_found_before_first_statement(self, transport, database):
        transport.inject_errors("execute_streaming_sql", MockError.session_not_found())

        async def body(txn: Transaction) -> int:
            return await txn.run_update(UPDATE_SQL)

        assert await database.run_transaction(body) == UPDATE_ROW_COUNT
        assert len(transport.session_names) == 2
        assert database.runner.last_run.attempt_count == 1
        assert database.pool.size == 1

    async def test_session_not_found_after_statement_restarts(self, transport, database):
        attempts = 0

        async def body(txn: Transaction) -> int:
            nonlocal attempts
            attempts += 1
            count = await txn.run_update(UPDATE_SQL)
            if attempts == 1:
                transport.drop_session(txn.handle.id)
            return count + await txn.run_update(UPDATE_SQL)

        assert await database.run_transaction(body) == 2 * UPDATE_ROW_COUNT

        run = database.runner.last_run
        assert run.attempt_count == 2
        assert run.attempts[0].outcome is AttemptOutcome.SESSION_NOT_FOUND
        assert run.attempts[0].session_id != run.attempts[1].session_id
        assert database.pool.borrowed == 0


# =============================================================================
# FAILURES
# =============================================================================
class TestRunnerFailure:
    """Everything else rolls back and propagates verbatim."""

    async def test_body_error_rolls_back(self, transport, database):
        async def body(txn: Transaction) -> None:
            await txn.run_update(UPDATE_SQL)
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await database.run_transaction(body)

        assert len(transport.requests_of("rollback")) == 1
        assert transport.committed == []
        assert database.runner.last_run.state is RunState.PERMANENTLY_FAILED
        assert database.runner.last_run.attempts[0].outcome is AttemptOutcome.FAILED
        assert database.pool.borrowed == 0

    async def test_transport_error_propagates(self, transport, database, caplog):
        transport.inject_errors(
            "execute_streaming_sql",
            MockError(StatusCode.PERMISSION_DENIED, "Permission denied"),
        )

        async def body(txn: Transaction) -> int:
            return await txn.run_update(UPDATE_SQL)

        with pytest.raises(TransportError) as exc_info:
            await database.run_transaction(body)
        assert exc_info.value.status is StatusCode.PERMISSION_DENIED
        assert database.runner.last_run.attempt_count == 1
        assert len(transport.requests_of("rollback")) == 1

        [record] = [r for r in caplog.records if hasattr(r, "error")]
        assert record.levelname == "WARNING"
        assert record.error["code"] == "TRANSPORT_ERROR"
        assert record.error["context"] == {"status": "PERMISSION_DENIED"}

    async def test_failed_rollback_keeps_original_error(self, transport, database):
        transport.inject_errors("rollback", MockError(StatusCode.UNAVAILABLE, "Temporary unavailable"))

        async def body(txn: Transaction) -> None:
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await database.run_transaction(body)
        assert database.pool.borrowed == 0
