"""
Tests for backoff computation, error classification and retry_with_backoff.
"""

import pytest

from sessionmesh.core.config import TransactionConfig
from sessionmesh.core.errors import TransportError
from sessionmesh.core.types import StatusCode
from sessionmesh.reliability.retry import (
    RetryPolicy,
    calculate_backoff,
    is_retryable_stream_error,
    is_transient_error,
    retry_delay_for,
    retry_with_backoff,
)
from sessionmesh.tests.support import assert_err, assert_ok

FAST = RetryPolicy(max_retries=3, base_delay_ms=1, max_delay_ms=2)


class TestBackoff:
    """Exponential backoff with full jitter."""

    def test_exponential_without_jitter(self):
        delays = [calculate_backoff(n, 100, 10_000, 2.0, jitter=False) for n in range(4)]
        assert delays == [100, 200, 400, 800]

    def test_capped(self):
        assert calculate_backoff(20, 100, 1_000, 2.0, jitter=False) == 1_000

    def test_jitter_within_bounds(self):
        for attempt in range(10):
            assert 0 <= calculate_backoff(attempt, 100, 1_000, 2.0, jitter=True) <= 1_000

    def test_server_delay_wins(self):
        error = TransportError.aborted(retry_delay_s=1.5)
        assert retry_delay_for(error, 0, RetryPolicy()) == 1.5

    def test_computed_delay_in_seconds(self):
        policy = RetryPolicy(base_delay_ms=100, jitter=False)
        assert retry_delay_for(TransportError.unavailable(), 1, policy) == pytest.approx(0.2)

    def test_transaction_policy(self):
        policy = RetryPolicy.for_transaction(TransactionConfig(base_delay_ms=5, max_delay_ms=50))
        assert policy.max_retries == 0
        assert policy.base_delay_ms == 5
        assert policy.max_delay_ms == 50


class TestClassification:
    """Which errors are retried where."""

    def test_transient(self):
        assert is_transient_error(TransportError.unavailable())
        assert is_transient_error(TransportError.internal("Received RST_STREAM with code 2"))
        assert not is_transient_error(TransportError.internal("Something broke"))
        assert not is_transient_error(TransportError.aborted())
        assert not is_transient_error(ValueError("nope"))

    def test_aborted_only_outside_read_write(self):
        assert is_retryable_stream_error(TransportError.aborted(), retry_aborted=True)
        assert not is_retryable_stream_error(TransportError.aborted(), retry_aborted=False)

    def test_session_not_found(self):
        error = TransportError.session_not_found("projects/p/instances/i/databases/d/sessions/1")
        assert error.is_session_not_found
        assert error.status is StatusCode.NOT_FOUND
        assert not TransportError.database_not_found("projects/p/instances/i/databases/d").is_session_not_found

    def test_unknown_status_values(self):
        assert StatusCode.from_value(10) is StatusCode.ABORTED
        assert StatusCode.from_value(99) is StatusCode.UNKNOWN


class TestRetryWithBackoff:
    """Generic async retry returning a Result."""

    async def test_success_after_transient_failures(self):
        calls = 0

        async def flaky() -> str:
            nonlocal calls
            calls += 1
            if calls < 3:
                raise TransportError.unavailable()
            return "ok"

        assert assert_ok(await retry_with_backoff(flaky, FAST)) == "ok"
        assert calls == 3

    async def test_non_retryable_fails_fast(self):
        calls = 0

        async def denied() -> None:
            nonlocal calls
            calls += 1
            raise TransportError.from_status(StatusCode.PERMISSION_DENIED, "denied")

        error = assert_err(await retry_with_backoff(denied, FAST))
        assert error.status is StatusCode.PERMISSION_DENIED
        assert calls == 1

    async def test_gives_up_after_max_retries(self):
        calls = 0

        async def down() -> None:
            nonlocal calls
            calls += 1
            raise TransportError.unavailable()

        assert_err(await retry_with_backoff(down, FAST))
        assert calls == FAST.max_retries + 1

    async def test_custom_classifier(self):
        calls = 0

        async def aborted() -> int:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise TransportError.aborted()
            return 7

        result = await retry_with_backoff(aborted, FAST, lambda e: isinstance(e, TransportError) and e.is_aborted)
        assert assert_ok(result) == 7
