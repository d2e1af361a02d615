"""
Flow Controller: Backpressure for Result Streams

Implements watermark flow control between a stream's producer (pulling
chunks from the transport) and its consumer (iterating rows):
- PAUSED once buffered rows reach the high-water mark
- FLOWING again once the consumer drains to the low-water mark
- Stall detection: each stall timeout spent paused counts as one resume
  attempt; exceeding the configured maximum is fatal
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

from sessionmesh.core.config import StreamConfig
from sessionmesh.core.errors import StreamStalledError

logger = logging.getLogger(__name__)


class FlowState(Enum):
    """Flow control state."""
    FLOWING = auto()     # Producer may pull chunks
    PAUSED = auto()      # Waiting for the consumer to drain


@dataclass
class FlowMetrics:
    """Real-time flow control metrics."""
    state: FlowState = FlowState.FLOWING
    buffered_rows: int = 0
    peak_buffered_rows: int = 0
    rows_buffered_total: int = 0
    rows_consumed_total: int = 0
    pauses: int = 0
    stall_attempts: int = 0


class FlowController:
    """
    Coordinates backpressure for one result stream.

    The producer reports each buffered row via `on_buffered` and awaits
    `wait_until_flowing` before pulling the next chunk. The consumer
    reports each row it takes via `on_consumed`.
    """

    __slots__ = ("_config", "_metrics", "_flowing", "_state_callbacks")

    def __init__(self, config: Optional[StreamConfig] = None) -> None:
        self._config = config or StreamConfig()
        self._metrics = FlowMetrics()
        self._flowing = asyncio.Event()
        self._flowing.set()
        self._state_callbacks: list[Callable[[FlowState], None]] = []

    def on_buffered(self, rows: int = 1) -> None:
        """Rows were handed to the consumer queue."""
        m = self._metrics
        m.buffered_rows += rows
        m.rows_buffered_total += rows
        m.peak_buffered_rows = max(m.peak_buffered_rows, m.buffered_rows)
        if m.state is FlowState.FLOWING and m.buffered_rows >= self._config.high_water_mark:
            m.pauses += 1
            self._flowing.clear()
            self._set_state(FlowState.PAUSED)

    def on_consumed(self, rows: int = 1) -> None:
        """The consumer took rows from the queue."""
        m = self._metrics
        m.buffered_rows = max(0, m.buffered_rows - rows)
        m.rows_consumed_total += rows
        if m.state is FlowState.PAUSED and m.buffered_rows <= self._config.low_water_mark:
            m.stall_attempts = 0
            self._flowing.set()
            self._set_state(FlowState.FLOWING)

    async def wait_until_flowing(self) -> None:
        """
        Suspend the producer while paused.

        Raises:
            StreamStalledError: the consumer did not drain within
                max_resume_retries stall timeouts
        """
        while not self._flowing.is_set():
            try:
                await asyncio.wait_for(self._flowing.wait(), timeout=self._config.stall_timeout_s)
            except asyncio.TimeoutError:
                self._metrics.stall_attempts += 1
                attempts = self._metrics.stall_attempts
                logger.debug(f"Stream paused with {self._metrics.buffered_rows} buffered rows (attempt {attempts})")
                if attempts > self._config.max_resume_retries:
                    raise StreamStalledError.stalled(attempts)

    def _set_state(self, state: FlowState) -> None:
        old_state = self._metrics.state
        self._metrics.state = state
        logger.debug(f"Flow state changed: {old_state.name} → {state.name}")
        for callback in self._state_callbacks:
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    def on_state_change(self, callback: Callable[[FlowState], None]) -> None:
        """Register callback for state changes."""
        self._state_callbacks.append(callback)

    @property
    def metrics(self) -> FlowMetrics:
        return self._metrics

    @property
    def is_paused(self) -> bool:
        return self._metrics.state is FlowState.PAUSED
