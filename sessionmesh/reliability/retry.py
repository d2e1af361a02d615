"""
Retry Policy: Exponential Backoff with Jitter

Implements the retry strategy shared by session creation, result
streams and the transaction runner:
- Exponential backoff: base × 2^n, capped
- Full jitter: random(0, backoff) to prevent thundering herd
- Server-suggested retry delays take precedence over computed backoff

Error classification:
- UNAVAILABLE is always transient
- INTERNAL is transient only for a known set of transport-level messages
- ABORTED is transient for streams outside a read-write transaction;
  inside one it belongs to the transaction runner
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from sessionmesh.core import constants as C
from sessionmesh.core.config import StreamConfig, TransactionConfig
from sessionmesh.core.errors import TransportError
from sessionmesh.core.types import Err, Ok, Result, StatusCode

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry configuration."""

    max_retries: int = C.POOL_CREATE_RETRIES
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    exponential_base: float = C.RETRY_EXPONENTIAL_BASE
    jitter: bool = True  # Full jitter

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        """No retries (for non-idempotent operations)."""
        return cls(max_retries=0)

    @classmethod
    def for_stream(cls, config: StreamConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
        )

    @classmethod
    def for_transaction(cls, config: TransactionConfig) -> RetryPolicy:
        """Transaction retries are bounded by the deadline, not a count."""
        return cls(
            max_retries=0,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
            exponential_base=config.exponential_base,
            jitter=config.jitter,
        )


@dataclass
class RetryStats:
    """Retry attempt statistics."""
    total_attempts: int = 0
    failed_attempts: int = 0
    total_delay_ms: float = 0.0
    last_error: Optional[str] = None


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================
def is_retryable_internal(error: BaseException) -> bool:
    """INTERNAL errors caused by a broken stream rather than the server."""
    return (
        isinstance(error, TransportError)
        and error.status is StatusCode.INTERNAL
        and any(msg in error.message for msg in C.RETRYABLE_INTERNAL_MESSAGES)
    )


def is_transient_error(error: BaseException) -> bool:
    """Errors that are safe to retry for any idempotent call."""
    if not isinstance(error, TransportError):
        return False
    return error.status.is_transient or is_retryable_internal(error)


def is_retryable_stream_error(error: BaseException, retry_aborted: bool) -> bool:
    """Whether a result stream may be resumed after `error`."""
    if is_transient_error(error):
        return True
    return retry_aborted and isinstance(error, TransportError) and error.is_aborted


# =============================================================================
# BACKOFF
# =============================================================================
def calculate_backoff(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    exponential_base: float,
    jitter: bool,
) -> float:
    """
    Calculate backoff delay in milliseconds with optional jitter.

    Full jitter: random(0, min(cap, base * 2^attempt))
    """
    delay = min(max_delay_ms, base_delay_ms * (exponential_base ** attempt))

    if jitter:
        delay = random.uniform(0, delay)

    return delay


def retry_delay_for(error: BaseException, attempt: int, policy: RetryPolicy) -> float:
    """
    Seconds to wait before the next attempt.

    A retry delay sent by the server in error metadata wins over the
    computed backoff.
    """
    if isinstance(error, TransportError) and error.retry_delay_s is not None:
        return error.retry_delay_s
    return calculate_backoff(
        attempt=attempt,
        base_delay_ms=policy.base_delay_ms,
        max_delay_ms=policy.max_delay_ms,
        exponential_base=policy.exponential_base,
        jitter=policy.jitter,
    ) / 1000


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    is_retryable: Callable[[BaseException], bool] = is_transient_error,
) -> Result[T, Exception]:
    """
    Execute async function with retry and exponential backoff.

    Args:
        func: Async function to execute
        policy: Retry configuration (default if None)
        is_retryable: Classifier deciding whether a failure is retried

    Returns:
        Ok with result, or Err with the last error once retries are
        exhausted or a non-retryable error occurs
    """
    if policy is None:
        policy = RetryPolicy.default()

    stats = RetryStats()

    for attempt in range(policy.max_retries + 1):
        stats.total_attempts += 1
        try:
            return Ok(await func())
        except Exception as e:
            stats.failed_attempts += 1
            stats.last_error = str(e)
            if not is_retryable(e) or attempt >= policy.max_retries:
                logger.debug(f"Giving up after {stats.total_attempts} attempt(s): {e}")
                return Err(e)

            delay = retry_delay_for(e, attempt, policy)
            stats.total_delay_ms += delay * 1000
            logger.debug(f"Attempt {attempt + 1} failed: {e}; retrying in {delay:.3f}s")
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
