"""
Delivery queue for clients that cannot take immediate delivery.

Entries are kept per client under one lock. Every state change replaces a
``QueuedEnvelope`` value rather than mutating it, and claiming an entry
(``drain_for`` or the ready list of ``tick``) removes it in the same
critical section that reads it, so an entry is claimed at most once.

The only permanent-loss paths are retry exhaustion, eviction on overflow
and rejection of a full queue. Each of them emits a drop-rate metric,
a WARNING log event and the optional ``on_drop`` callback.
"""

import itertools
import random
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from ..data.models import QueuedEnvelope, QueuePriority
from ..exceptions import QueueFullError
from .clock import Clock, SystemClock
from .connections import ConnectionTracker
from .metrics import MetricsRecorder


logger = structlog.get_logger(__name__)

EVICTION_BATCH = 10

DropCallback = Callable[[QueuedEnvelope, str], None]


class DropReason:
    RETRY_EXHAUSTED = "retry_exhausted"
    EVICTED = "evicted"
    QUEUE_FULL = "queue_full"


@dataclass
class TickOutcome:
    """What one retry tick did."""
    ready: List[QueuedEnvelope] = field(default_factory=list)
    retried: List[QueuedEnvelope] = field(default_factory=list)
    dropped: List[QueuedEnvelope] = field(default_factory=list)


class DeliveryQueue:
    """Pending envelopes with priority ordering, backoff retry and a retry ceiling."""

    def __init__(
        self,
        tracker: ConnectionTracker,
        recorder: Optional[MetricsRecorder] = None,
        max_retries: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 300.0,
        jitter: float = 0.0,
        max_queue_size: int = 100,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
        on_drop: Optional[DropCallback] = None,
    ):
        self.tracker = tracker
        self.recorder = recorder or tracker.recorder
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.max_queue_size = max_queue_size
        self.on_drop = on_drop
        self._clock = clock or SystemClock()
        self._rng = rng or random.Random()

        self._lock = threading.RLock()
        self._entries: Dict[str, List[QueuedEnvelope]] = {}
        self._sequence = itertools.count()
        self._counters = Counter()

    # ------------------------------------------------------------------
    # Backoff

    def backoff(self, retry_count: int) -> float:
        """Delay in seconds before the next attempt: base * 2**n, capped, +/- jitter."""
        delay = min(self.backoff_cap, self.backoff_base * (2 ** retry_count))
        if self.jitter:
            delay *= 1.0 + self._rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def next_retry_time(self, retry_count: int, now: Optional[datetime] = None) -> datetime:
        return (now or self._clock.now()) + timedelta(seconds=self.backoff(retry_count))

    # ------------------------------------------------------------------
    # Enqueue

    def enqueue(
        self,
        client_id: str,
        envelope,
        priority: QueuePriority = QueuePriority.NORMAL,
        target_topic: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ) -> QueuedEnvelope:
        """
        Queue ``envelope`` for ``client_id``.

        An envelope already queued for the same client is replaced. When the
        client's queue is full, the oldest low-priority entries are evicted
        first.

        Raises:
            QueueFullError: If the queue is still full after eviction
        """
        entry = QueuedEnvelope(
            envelope=envelope,
            client_id=client_id,
            target_topic=target_topic,
            queued_at=self._clock.now(),
            next_retry_at=next_retry_at,
            priority=priority,
            sequence=next(self._sequence),
        )
        self._insert(entry)
        self._bump("queued")

        logger.debug(
            "Envelope queued",
            client_id=client_id,
            envelope_id=entry.envelope_id,
            priority=priority.value,
            topic=target_topic,
        )
        return entry

    def requeue_failed(
        self, entry: QueuedEnvelope, now: Optional[datetime] = None
    ) -> Optional[QueuedEnvelope]:
        """
        Put back a claimed entry whose delivery failed, as a retry copy.

        An entry already at the retry ceiling is dropped instead and None
        is returned.
        """
        if entry.retry_count >= self.max_retries:
            self._signal_drop(entry, DropReason.RETRY_EXHAUSTED)
            return None

        now = now or self._clock.now()
        retry = entry.with_retry(self.next_retry_time(entry.retry_count, now))
        self._insert(retry)
        self._bump("retried")

        logger.debug(
            "Delivery failed, retry scheduled",
            client_id=entry.client_id,
            envelope_id=entry.envelope_id,
            retry_count=retry.retry_count,
            next_retry_at=retry.next_retry_at.isoformat(),
        )
        return retry

    def restore(self, entries: Iterable[QueuedEnvelope]) -> int:
        """
        Put claimed entries back unchanged after their delivery was interrupted.

        Retry counters and retry times are kept as they were. Returns the
        number of entries restored; an entry rejected by a full queue has
        already been signalled as dropped.
        """
        restored = 0
        for entry in entries:
            try:
                self._insert(entry)
            except QueueFullError:
                continue
            restored += 1

        if restored:
            logger.info("Claimed envelopes restored", count=restored)
        return restored

    def _insert(self, entry: QueuedEnvelope) -> None:
        evicted: List[QueuedEnvelope] = []
        rejected = False

        with self._lock:
            pending = self._entries.setdefault(entry.client_id, [])
            pending[:] = [e for e in pending if e.envelope_id != entry.envelope_id]

            if len(pending) >= self.max_queue_size:
                low = sorted(
                    (e for e in pending if e.priority == QueuePriority.LOW),
                    key=lambda e: (e.queued_at, e.sequence),
                )
                evicted = low[:EVICTION_BATCH]
                evicted_ids = {id(e) for e in evicted}
                pending[:] = [e for e in pending if id(e) not in evicted_ids]

            if len(pending) >= self.max_queue_size:
                rejected = True
            else:
                pending.append(entry)
            size = self._size()

        for victim in evicted:
            self._signal_drop(victim, DropReason.EVICTED)

        if rejected:
            self._signal_drop(entry, DropReason.QUEUE_FULL)
            raise QueueFullError(
                f"delivery queue for {entry.client_id} is full ({self.max_queue_size} entries)"
            )

        self.recorder.queue_size(size)

    # ------------------------------------------------------------------
    # Claiming

    def drain_for(self, client_id: str) -> List[QueuedEnvelope]:
        """
        Remove and return every entry for ``client_id``.

        Ordered high, normal, low priority and FIFO by enqueue time within
        a tier. The pop is atomic with respect to ``tick``.
        """
        with self._lock:
            pending = self._entries.pop(client_id, [])
            size = self._size()

        if pending:
            logger.info("Queue drained", client_id=client_id, count=len(pending))
            self.recorder.queue_size(size)
        return sorted(pending, key=QueuedEnvelope.sort_key)

    def tick(self, now: Optional[datetime] = None) -> TickOutcome:
        """
        Process every entry whose retry time has come.

        - retry ceiling reached: dropped with a drop signal
        - client connected: claimed and returned as ready for delivery
        - client still disconnected: replaced by a retry copy
        """
        now = now or self._clock.now()
        outcome = TickOutcome()

        with self._lock:
            for client_id in list(self._entries):
                pending = self._entries[client_id]
                connected = self.tracker.is_connected(client_id)
                kept: List[QueuedEnvelope] = []

                for entry in pending:
                    if not entry.is_due(now):
                        kept.append(entry)
                    elif entry.retry_count >= self.max_retries:
                        outcome.dropped.append(entry)
                    elif connected:
                        outcome.ready.append(entry)
                    else:
                        retry = entry.with_retry(self.next_retry_time(entry.retry_count, now))
                        outcome.retried.append(retry)
                        kept.append(retry)

                if kept:
                    self._entries[client_id] = kept
                else:
                    del self._entries[client_id]

            size = self._size()

        self._bump("retried", len(outcome.retried))
        for entry in outcome.dropped:
            self._signal_drop(entry, DropReason.RETRY_EXHAUSTED)

        if outcome.ready or outcome.retried or outcome.dropped:
            logger.debug(
                "Retry tick",
                ready=len(outcome.ready),
                retried=len(outcome.retried),
                dropped=len(outcome.dropped),
                pending=size,
            )
            self.recorder.queue_size(size)

        outcome.ready.sort(key=QueuedEnvelope.sort_key)
        return outcome

    def record_delivered(self, count: int = 1) -> None:
        self._bump("delivered", count)

    # ------------------------------------------------------------------
    # Drop signalling

    def _signal_drop(self, entry: QueuedEnvelope, reason: str) -> None:
        self._bump("dropped")
        self.recorder.drop(
            f"delivery:{entry.client_id}",
            reason=reason,
            envelope_id=entry.envelope_id,
            retry_count=entry.retry_count,
        )
        logger.warning(
            "Envelope dropped",
            client_id=entry.client_id,
            envelope_id=entry.envelope_id,
            reason=reason,
            retry_count=entry.retry_count,
            priority=entry.priority.value,
        )
        if self.on_drop is not None:
            try:
                self.on_drop(entry, reason)
            except Exception as e:
                logger.error("Drop callback failed", envelope_id=entry.envelope_id, error=str(e))

    # ------------------------------------------------------------------
    # Introspection

    def _bump(self, name: str, count: int = 1) -> None:
        with self._lock:
            self._counters[name] += count

    def _size(self) -> int:
        return sum(len(pending) for pending in self._entries.values())

    def size(self, client_id: Optional[str] = None) -> int:
        with self._lock:
            if client_id is not None:
                return len(self._entries.get(client_id, ()))
            return self._size()

    def pending_for(self, client_id: str) -> List[QueuedEnvelope]:
        """Entries queued for ``client_id`` in drain order, without claiming them."""
        with self._lock:
            pending = list(self._entries.get(client_id, ()))
        return sorted(pending, key=QueuedEnvelope.sort_key)

    def clients(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._clock.now()
        with self._lock:
            entries: List[QueuedEnvelope] = [e for pending in self._entries.values() for e in pending]
            counters: Tuple[int, ...] = tuple(
                self._counters[name] for name in ("queued", "delivered", "retried", "dropped")
            )

        by_priority = {priority.value: 0 for priority in QueuePriority}
        for entry in entries:
            by_priority[entry.priority.value] += 1

        oldest = max((entry.age(now) for entry in entries), default=None)
        queued, delivered, retried, dropped = counters

        return {
            "size": len(entries),
            "clients": len({entry.client_id for entry in entries}),
            "by_priority": by_priority,
            "total_queued": queued,
            "total_delivered": delivered,
            "total_retried": retried,
            "total_dropped": dropped,
            "oldest_age_seconds": oldest.total_seconds() if oldest is not None else None,
        }
