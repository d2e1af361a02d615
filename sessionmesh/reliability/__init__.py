"""
Reliability module: retry policy, backoff and error classification.

The transaction runner lives in sessionmesh.reliability.runner; it builds
on the client transaction types and is exported from the top-level
package.
"""

from sessionmesh.reliability.retry import (
    RetryPolicy,
    RetryStats,
    calculate_backoff,
    is_retryable_internal,
    is_retryable_stream_error,
    is_transient_error,
    retry_delay_for,
    retry_with_backoff,
)

__all__ = [
    "RetryPolicy",
    "RetryStats",
    "calculate_backoff",
    "is_retryable_internal",
    "is_retryable_stream_error",
    "is_transient_error",
    "retry_delay_for",
    "retry_with_backoff",
]
