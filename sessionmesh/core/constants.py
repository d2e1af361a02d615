"""
System-Wide Constants for the Session Runtime

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
MS: Final[int] = 1
SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS
HOUR_MS: Final[int] = 60 * MINUTE_MS

# =============================================================================
# SESSION POOL
# =============================================================================
POOL_MIN: Final[int] = 25
POOL_MAX: Final[int] = 100
POOL_INC_STEP: Final[int] = 25
POOL_WRITE_FRACTION: Final[float] = 0.0
POOL_IDLE_TIMEOUT_S: Final[float] = 10 * 60
POOL_KEEP_ALIVE_S: Final[float] = 30 * 60
POOL_HOUSEKEEPING_INTERVAL_S: Final[float] = 60
POOL_CREATE_RETRIES: Final[int] = 3
KEEP_ALIVE_SQL: Final[str] = "SELECT 1"
SESSION_NOT_FOUND_RETRIES: Final[int] = 3

# Resource type names attached to NOT_FOUND errors
SESSION_RESOURCE_TYPE: Final[str] = "type.googleapis.com/google.spanner.v1.Session"
DATABASE_RESOURCE_TYPE: Final[str] = "type.googleapis.com/google.spanner.admin.database.v1.Database"

# =============================================================================
# PARTIAL RESULT STREAMS
# =============================================================================
STREAM_MAX_QUEUED: Final[int] = 10
STREAM_HIGH_WATER_MARK: Final[int] = 100
STREAM_LOW_WATER_MARK: Final[int] = 50
STREAM_STALL_TIMEOUT_S: Final[float] = 0.5
STREAM_MAX_RESUME_RETRIES: Final[int] = 20
STREAM_MAX_RETRIES: Final[int] = 10
STREAM_RETRY_BASE_MS: Final[int] = 10
STREAM_RETRY_MAX_MS: Final[int] = 32 * SECOND_MS

# Messages of INTERNAL errors that are known to be transient
RETRYABLE_INTERNAL_MESSAGES: Final[tuple[str, ...]] = (
    "Received unexpected EOS on DATA frame from server",
    "RST_STREAM",
    "Received RST_STREAM",
    "Authentication backend internal server error. Please retry.",
)

# =============================================================================
# TRANSACTIONS
# =============================================================================
TRANSACTION_TIMEOUT_S: Final[float] = 3600
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_MS: Final[int] = 32 * SECOND_MS
RETRY_EXPONENTIAL_BASE: Final[float] = 2.0
PDML_MAX_RETRIES: Final[int] = 10

# =============================================================================
# ENVIRONMENT
# =============================================================================
ENV_PREFIX: Final[str] = "SESSIONMESH_"
