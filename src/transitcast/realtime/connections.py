"""
Connection tracker.

Single source of truth for whether a client can take immediate delivery.
Each client's ``ConnectionState`` is an immutable value swapped under the
tracker lock; readers get the value itself, so no caller can observe a
half-applied update.
"""

import threading
from datetime import timedelta
from typing import Dict, List, Optional

import structlog

from ..data.models import ConnectionState
from .clock import Clock, SystemClock
from .metrics import MetricsRecorder


logger = structlog.get_logger(__name__)


class ConnectionTracker:
    """Tracks connectivity, counters and latency per client."""

    def __init__(
        self,
        recorder: Optional[MetricsRecorder] = None,
        clock: Optional[Clock] = None,
        latency_smoothing: float = 0.2,
    ):
        if not 0.0 < latency_smoothing <= 1.0:
            raise ValueError("latency_smoothing must be in (0, 1]")

        self.recorder = recorder or MetricsRecorder()
        self._clock = clock or SystemClock()
        self.latency_smoothing = latency_smoothing
        self._lock = threading.RLock()
        self._states: Dict[str, ConnectionState] = {}

    def on_connect(self, client_id: str) -> ConnectionState:
        now = self._clock.now()
        with self._lock:
            previous = self._states.get(client_id) or ConnectionState(client_id=client_id)
            state = previous.model_copy(
                update={"is_connected": True, "connected_at": now, "disconnected_at": None}
            )
            self._states[client_id] = state
            count = self._count()

        logger.info("Client connected", client_id=client_id, connected_clients=count)
        self.recorder.connection_count(count)
        return state

    def on_disconnect(self, client_id: str) -> Optional[ConnectionState]:
        """Mark ``client_id`` disconnected; unknown clients are ignored."""
        now = self._clock.now()
        with self._lock:
            previous = self._states.get(client_id)
            if previous is None:
                return None
            state = previous.model_copy(update={"is_connected": False, "disconnected_at": now})
            self._states[client_id] = state
            count = self._count()

        logger.info("Client disconnected", client_id=client_id, connected_clients=count)
        self.recorder.connection_count(count)
        return state

    def record_sent(self, client_id: str) -> Optional[ConnectionState]:
        with self._lock:
            previous = self._states.get(client_id)
            if previous is None:
                return None
            state = previous.model_copy(update={"messages_sent": previous.messages_sent + 1})
            self._states[client_id] = state
            return state

    def record_received(self, client_id: str, latency_ms: float) -> Optional[ConnectionState]:
        """
        Count a message acknowledged by ``client_id`` and fold its latency
        into the exponential moving average. The first sample seeds the average.
        """
        latency_ms = max(0.0, latency_ms)
        with self._lock:
            previous = self._states.get(client_id)
            if previous is None:
                return None

            if previous.messages_received == 0:
                average = latency_ms
            else:
                alpha = self.latency_smoothing
                average = alpha * latency_ms + (1 - alpha) * previous.average_latency_ms

            state = previous.model_copy(
                update={
                    "messages_received": previous.messages_received + 1,
                    "average_latency_ms": average,
                }
            )
            self._states[client_id] = state
            return state

    def is_connected(self, client_id: str) -> bool:
        with self._lock:
            state = self._states.get(client_id)
            return state is not None and state.is_connected

    def snapshot(self, client_id: str) -> Optional[ConnectionState]:
        with self._lock:
            return self._states.get(client_id)

    def connection_duration(self, client_id: str) -> Optional[timedelta]:
        state = self.snapshot(client_id)
        if state is None:
            return None
        return state.connection_duration(self._clock.now())

    def connected_clients(self) -> List[str]:
        with self._lock:
            return sorted(cid for cid, state in self._states.items() if state.is_connected)

    def _count(self) -> int:
        return sum(1 for state in self._states.values() if state.is_connected)

    def connection_count(self) -> int:
        with self._lock:
            return self._count()

    def forget(self, client_id: str) -> None:
        with self._lock:
            self._states.pop(client_id, None)
