"""
Configuration Management for the Session Runtime

Provides validated configuration with sensible defaults.
Supports environment variable overrides (SESSIONMESH_*).

Design:
- Immutable after construction
- Fail-fast on invalid values (ValueError in __post_init__)
- Loading and cross-field validation return Result
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from sessionmesh.core import constants as C
from sessionmesh.core.types import Err, Ok, Result


@dataclass(frozen=True)
class PoolConfig:
    """Session pool capacity and housekeeping configuration."""

    min: int = C.POOL_MIN
    max: int = C.POOL_MAX
    inc_step: int = C.POOL_INC_STEP
    write_fraction: float = C.POOL_WRITE_FRACTION
    fail: bool = False
    acquire_timeout_s: Optional[float] = None
    idle_timeout_s: float = C.POOL_IDLE_TIMEOUT_S
    keep_alive_s: float = C.POOL_KEEP_ALIVE_S
    housekeeping_interval_s: float = C.POOL_HOUSEKEEPING_INTERVAL_S
    create_retries: int = C.POOL_CREATE_RETRIES
    labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.min < 0:
            raise ValueError("Pool min must be >= 0")
        if self.max < 1:
            raise ValueError("Pool max must be >= 1")
        if self.min > self.max:
            raise ValueError("Pool min cannot exceed max")
        if self.inc_step < 1:
            raise ValueError("Pool inc_step must be >= 1")
        if not 0.0 <= self.write_fraction <= 1.0:
            raise ValueError("Pool write_fraction must be within [0, 1]")
        if self.acquire_timeout_s is not None and self.acquire_timeout_s <= 0:
            raise ValueError("Pool acquire_timeout_s must be > 0")

    @property
    def write_target(self) -> int:
        """Number of prefilled sessions to prepare as read-write."""
        return round(self.min * self.write_fraction)


@dataclass(frozen=True)
class StreamConfig:
    """Partial result reassembly configuration."""

    max_queued: int = C.STREAM_MAX_QUEUED
    high_water_mark: int = C.STREAM_HIGH_WATER_MARK
    low_water_mark: int = C.STREAM_LOW_WATER_MARK
    stall_timeout_s: float = C.STREAM_STALL_TIMEOUT_S
    max_resume_retries: int = C.STREAM_MAX_RESUME_RETRIES
    max_retries: int = C.STREAM_MAX_RETRIES
    retry_base_delay_ms: int = C.STREAM_RETRY_BASE_MS
    retry_max_delay_ms: int = C.STREAM_RETRY_MAX_MS

    def __post_init__(self) -> None:
        if self.max_queued < 1:
            raise ValueError("Stream max_queued must be >= 1")
        if self.low_water_mark < 0 or self.low_water_mark >= self.high_water_mark:
            raise ValueError("Stream low_water_mark must be within [0, high_water_mark)")
        if self.max_resume_retries < 0:
            raise ValueError("Stream max_resume_retries must be >= 0")


@dataclass(frozen=True)
class TransactionConfig:
    """Transaction retry runner configuration."""

    timeout_s: float = C.TRANSACTION_TIMEOUT_S
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    exponential_base: float = C.RETRY_EXPONENTIAL_BASE
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.timeout_s < 0:
            raise ValueError("Transaction timeout_s must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError("Transaction backoff must satisfy 0 <= base <= max")


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class SessionMeshConfig:
    """Root configuration for a database client."""

    pool: PoolConfig = field(default_factory=PoolConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    transaction: TransactionConfig = field(default_factory=TransactionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> Result[SessionMeshConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with SESSIONMESH_.
        Example: SESSIONMESH_POOL_MAX, SESSIONMESH_STREAM_MAX_QUEUED
        """
        env = _EnvReader(C.ENV_PREFIX)
        try:
            pool = PoolConfig(
                min=env.get_int("POOL_MIN", C.POOL_MIN),
                max=env.get_int("POOL_MAX", C.POOL_MAX),
                inc_step=env.get_int("POOL_INC_STEP", C.POOL_INC_STEP),
                write_fraction=env.get_float("POOL_WRITE_FRACTION", C.POOL_WRITE_FRACTION),
                fail=env.get_bool("POOL_FAIL", False),
                acquire_timeout_s=env.get_optional_float("POOL_ACQUIRE_TIMEOUT_S"),
                idle_timeout_s=env.get_float("POOL_IDLE_TIMEOUT_S", C.POOL_IDLE_TIMEOUT_S),
                keep_alive_s=env.get_float("POOL_KEEP_ALIVE_S", C.POOL_KEEP_ALIVE_S),
            )

            stream = StreamConfig(
                max_queued=env.get_int("STREAM_MAX_QUEUED", C.STREAM_MAX_QUEUED),
                high_water_mark=env.get_int("STREAM_HIGH_WATER_MARK", C.STREAM_HIGH_WATER_MARK),
                low_water_mark=env.get_int("STREAM_LOW_WATER_MARK", C.STREAM_LOW_WATER_MARK),
                max_resume_retries=env.get_int(
                    "STREAM_MAX_RESUME_RETRIES", C.STREAM_MAX_RESUME_RETRIES
                ),
            )

            transaction = TransactionConfig(
                timeout_s=env.get_float("TRANSACTION_TIMEOUT_S", C.TRANSACTION_TIMEOUT_S),
            )

            observability = ObservabilityConfig(
                log_level=os.getenv(f"{C.ENV_PREFIX}LOG_LEVEL", "INFO").upper(),
                log_json=env.get_bool("LOG_JSON", True),
            )

            return Ok(cls(
                pool=pool,
                stream=stream,
                transaction=transaction,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate cross-section invariants."""
        if self.pool.housekeeping_interval_s > min(self.pool.idle_timeout_s, self.pool.keep_alive_s):
            return Err("Pool housekeeping interval cannot exceed idle timeout or keep-alive")
        if self.observability.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return Err(f"Unknown log level: {self.observability.log_level}")
        return Ok(None)


class _EnvReader:
    """Typed accessors over prefixed environment variables."""

    __slots__ = ("_prefix",)

    def __init__(self, prefix: str) -> None:
        self._prefix = prefix

    def _raw(self, name: str) -> Optional[str]:
        return os.getenv(f"{self._prefix}{name}")

    def get_int(self, name: str, default: int) -> int:
        raw = self._raw(name)
        return default if raw is None else int(raw)

    def get_float(self, name: str, default: float) -> float:
        raw = self._raw(name)
        return default if raw is None else float(raw)

    def get_optional_float(self, name: str) -> Optional[float]:
        raw = self._raw(name)
        return None if raw is None or raw == "" else float(raw)

    def get_bool(self, name: str, default: bool) -> bool:
        raw = self._raw(name)
        if raw is None:
            return default
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{self._prefix}{name} must be a boolean, got {raw!r}")
