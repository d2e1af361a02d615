"""
Transaction Runner: Retry Loop for Read-Write Transactions

Runs a caller-supplied body inside a read-write transaction and retries
it until it commits, fails permanently or its deadline elapses.

States:
    NOT_STARTED        → Before the session is acquired
    RUNNING            → Attempts in progress
    COMMITTED          → Body finished and the commit succeeded
    ROLLED_BACK        → Body rolled the transaction back itself
    PERMANENTLY_FAILED → Non-retryable error, rethrown verbatim
    DEADLINE_EXCEEDED  → An ABORTED attempt found the deadline elapsed

Retry rules:
    ABORTED            → whole attempt restarts on the same session with a
                         fresh transaction, after the server-suggested
                         delay or exponential backoff with jitter
    session not found  → the session is evicted and the attempt restarts
                         on a new one
    anything else      → best-effort rollback, then propagate

At least one attempt is always made, even with a zero timeout. The
session is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Awaitable, Callable, Optional, TypeVar

from sessionmesh.client.transaction import Transaction
from sessionmesh.core.config import StreamConfig, TransactionConfig
from sessionmesh.core.errors import (
    DeadlineExceededError,
    TransactionStateError,
    TransportError,
)
from sessionmesh.core.types import Timestamp
from sessionmesh.observability.logging import log_context
from sessionmesh.reliability.retry import RetryPolicy, retry_delay_for
from sessionmesh.session.handle import SessionHandle, SessionRole
from sessionmesh.session.pool import SessionPool
from sessionmesh.transport.protocols import RequestOptions, Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionBody = Callable[[Transaction], Awaitable[T]]


# =============================================================================
# RUN STATE
# =============================================================================
class RunState(Enum):
    """Transaction run lifecycle states."""
    NOT_STARTED = auto()
    RUNNING = auto()
    COMMITTED = auto()
    ROLLED_BACK = auto()
    PERMANENTLY_FAILED = auto()
    DEADLINE_EXCEEDED = auto()

    @property
    def is_terminal(self) -> bool:
        return self not in (RunState.NOT_STARTED, RunState.RUNNING)


VALID_TRANSITIONS: frozenset[tuple[RunState, RunState]] = frozenset({
    (RunState.NOT_STARTED, RunState.RUNNING),
    (RunState.NOT_STARTED, RunState.PERMANENTLY_FAILED),
    (RunState.RUNNING, RunState.COMMITTED),
    (RunState.RUNNING, RunState.ROLLED_BACK),
    (RunState.RUNNING, RunState.PERMANENTLY_FAILED),
    (RunState.RUNNING, RunState.DEADLINE_EXCEEDED),
})


class AttemptOutcome(Enum):
    COMMITTED = auto()
    ROLLED_BACK = auto()
    ABORTED = auto()
    SESSION_NOT_FOUND = auto()
    FAILED = auto()


@dataclass(slots=True)
class TransactionAttempt:
    """One execution of the body."""
    number: int
    session_id: str
    started_at: Timestamp = field(default_factory=Timestamp.now)
    mutation_count: int = 0
    outcome: Optional[AttemptOutcome] = None
    error: Optional[str] = None


@dataclass
class TransactionRun:
    """Record of one TransactionRunner.run call."""
    label: str
    timeout_s: float
    state: RunState = RunState.NOT_STARTED
    attempts: list[TransactionAttempt] = field(default_factory=list)

    def transition(self, to_state: RunState) -> None:
        if (self.state, to_state) not in VALID_TRANSITIONS:
            raise TransactionStateError.invalid_transition(self.state.name, to_state.name)
        logger.debug(f"Transaction {self.label}: {self.state.name} → {to_state.name}")
        self.state = to_state

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


class _Lease:
    """The session a run currently holds. Replaced when the server loses it."""

    __slots__ = ("_pool", "_label", "handle")

    def __init__(self, pool: SessionPool, label: str) -> None:
        self._pool = pool
        self._label = label
        self.handle: Optional[SessionHandle] = None

    async def renew(self) -> SessionHandle:
        """Evict the held session (if any) and acquire a prepared one."""
        if self.handle is not None:
            stale, self.handle = self.handle, None
            await self._pool.evict(stale)
        self.handle = await self._pool.acquire(SessionRole.READ_WRITE, self._label)
        return self.handle

    async def release(self) -> None:
        if self.handle is not None:
            handle, self.handle = self.handle, None
            handle.reset()
            await self._pool.release(handle)


# =============================================================================
# RUNNER
# =============================================================================
class TransactionRunner:
    """
    Retries read-write transaction bodies against a session pool.

    Example:
        async def transfer(txn: Transaction) -> int:
            rows = await txn.run("SELECT balance FROM accounts WHERE id = 1")
            txn.update("accounts", ["id", "balance"], [[1, rows[0][0] - 10]])
            return rows[0][0]

        balance = await runner.run(transfer, timeout_s=60)
    """

    def __init__(
        self,
        pool: SessionPool,
        transport: Transport,
        config: Optional[TransactionConfig] = None,
        stream_config: Optional[StreamConfig] = None,
    ) -> None:
        self._pool = pool
        self._transport = transport
        self._config = config or TransactionConfig()
        self._stream_config = stream_config
        self._policy = RetryPolicy.for_transaction(self._config)
        self._run_seq = 0
        self._last_run: Optional[TransactionRun] = None

    @property
    def last_run(self) -> Optional[TransactionRun]:
        return self._last_run

    async def run(
        self,
        body: TransactionBody[T],
        timeout_s: Optional[float] = None,
        request_options: Optional[RequestOptions] = None,
        label: Optional[str] = None,
    ) -> T:
        """
        Run body until it commits.

        Raises:
            DeadlineExceededError: ABORTED after the deadline elapsed
            TransportError: non-retryable transport error, verbatim
            Exception: whatever the body raised, verbatim
        """
        self._run_seq += 1
        timeout = self._config.timeout_s if timeout_s is None else timeout_s
        run = TransactionRun(label=label or f"transaction #{self._run_seq}", timeout_s=timeout)
        self._last_run = run

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        lease = _Lease(self._pool, run.label)

        try:
            await lease.renew()
            run.transition(RunState.RUNNING)

            while True:
                handle = lease.handle
                assert handle is not None
                if handle.transaction_id is None:
                    try:
                        await self._pool.prepare(handle)
                    except TransportError as e:
                        if not e.is_session_not_found:
                            raise
                        logger.info(f"Session {handle.id} not found on begin; replacing it")
                        await lease.renew()
                        continue

                attempt = TransactionAttempt(number=run.attempt_count + 1, session_id=handle.id)
                run.attempts.append(attempt)
                txn = Transaction(
                    handle,
                    self._transport,
                    stream_config=self._stream_config,
                    request_options=request_options,
                    replace_session=lease.renew,
                )

                with log_context(transaction=run.label, attempt=attempt.number):
                    try:
                        result = await body(txn)
                        if not txn.ended:
                            await txn.commit()
                    except TransportError as e:
                        attempt.mutation_count = len(txn.mutations)
                        attempt.error = str(e)

                        if e.is_aborted:
                            attempt.outcome = AttemptOutcome.ABORTED
                            txn.handle.reset()
                            if loop.time() >= deadline:
                                run.transition(RunState.DEADLINE_EXCEEDED)
                                logger.warning(
                                    f"Transaction {run.label} exceeded its {timeout}s deadline "
                                    f"after {run.attempt_count} attempt(s)"
                                )
                                raise DeadlineExceededError.exceeded(
                                    timeout, run.attempt_count, cause=e,
                                ) from e
                            delay = retry_delay_for(e, run.attempt_count - 1, self._policy)
                            delay = min(delay, max(0.0, deadline - loop.time()))
                            logger.info(f"Transaction {run.label} aborted; retrying in {delay:.3f}s")
                            await asyncio.sleep(delay)
                            continue

                        if e.is_session_not_found:
                            attempt.outcome = AttemptOutcome.SESSION_NOT_FOUND
                            logger.info(
                                f"Session {txn.handle.id} not found during {run.label}; "
                                "restarting on a new session"
                            )
                            await lease.renew()
                            continue

                        attempt.outcome = AttemptOutcome.FAILED
                        logger.warning(
                            f"Transaction {run.label} failed: {e.message}",
                            extra={"error": e.to_dict()},
                        )
                        await self._rollback_quietly(txn)
                        raise
                    except Exception as e:
                        attempt.mutation_count = len(txn.mutations)
                        attempt.outcome = AttemptOutcome.FAILED
                        attempt.error = str(e)
                        await self._rollback_quietly(txn)
                        raise
                    finally:
                        await txn.close_streams()

                attempt.mutation_count = len(txn.mutations)
                if txn.committed:
                    attempt.outcome = AttemptOutcome.COMMITTED
                    run.transition(RunState.COMMITTED)
                else:
                    attempt.outcome = AttemptOutcome.ROLLED_BACK
                    run.transition(RunState.ROLLED_BACK)
                logger.debug(
                    f"Transaction {run.label} finished as {run.state.name} "
                    f"after {run.attempt_count} attempt(s)"
                )
                return result
        except BaseException:
            if not run.state.is_terminal:
                run.transition(RunState.PERMANENTLY_FAILED)
            raise
        finally:
            await lease.release()

    async def _rollback_quietly(self, txn: Transaction) -> None:
        if txn.ended:
            return
        try:
            await txn.rollback()
        except TransportError as e:
            logger.warning(f"Rollback after failed transaction body failed: {e}")
