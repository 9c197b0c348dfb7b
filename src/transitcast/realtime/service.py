"""
Composition root for the broadcast pipeline.

``build_service`` wires fresh registry, tracker, queue and coordinator
instances from settings. Nothing here is a module-level singleton; the
API and CLI each build their own service.
"""

import random
from dataclasses import dataclass
from typing import Optional

import structlog

from ..config import BaseConfig, StoreBackend, get_settings
from ..data.store import DurableStore, InMemoryStore, RedisStore
from .clock import Clock, SystemClock
from .connections import ConnectionTracker
from .coordinator import BroadcastCoordinator
from .delivery import DeliveryQueue, DropCallback
from .metrics import CompositeMetricsSink, InMemoryMetricsSink, MetricsRecorder, MetricsSink, PrometheusMetricsSink
from .scheduler import PeriodicTask
from .synthesizer import PerturbationBounds, StateSynthesizer
from .topics import TopicRegistry
from .transport import InMemoryTransport, Transport


logger = structlog.get_logger(__name__)


@dataclass
class BroadcastService:
    """A wired pipeline plus its two periodic schedules."""

    settings: BaseConfig
    registry: TopicRegistry
    tracker: ConnectionTracker
    queue: DeliveryQueue
    coordinator: BroadcastCoordinator
    synthesizer: StateSynthesizer
    retry_task: PeriodicTask
    recorder: MetricsRecorder
    memory_metrics: InMemoryMetricsSink
    prometheus: Optional[PrometheusMetricsSink] = None

    async def start(self, simulate: bool = False) -> None:
        """Load the network, start the retry loop and optionally the synthesizer."""
        await self.coordinator.load_from_store()
        self.retry_task.start()
        if simulate:
            self.synthesizer.start()

        logger.info(
            "Broadcast service started",
            simulate=simulate,
            routes=len(self.coordinator.routes()),
            vehicles=len(self.coordinator.vehicles()),
        )

    async def stop(self) -> None:
        """Cancel both schedules. Queued envelopes stay in memory."""
        await self.synthesizer.stop()
        await self.retry_task.stop()

        store = self.coordinator.store
        if isinstance(store, RedisStore):
            await store.close()

        logger.info("Broadcast service stopped", pending=self.queue.size())


def _build_store(settings: BaseConfig) -> DurableStore:
    if settings.store_backend == StoreBackend.REDIS:
        return RedisStore.from_settings(settings)
    return InMemoryStore.with_demo_data()


def build_service(
    settings: Optional[BaseConfig] = None,
    transport: Optional[Transport] = None,
    store: Optional[DurableStore] = None,
    metrics_sink: Optional[MetricsSink] = None,
    clock: Optional[Clock] = None,
    rng: Optional[random.Random] = None,
    on_drop: Optional[DropCallback] = None,
) -> BroadcastService:
    """Wire a complete broadcast pipeline from settings."""
    settings = settings or get_settings()
    clock = clock or SystemClock()
    rng = rng or random.Random()

    memory_metrics = InMemoryMetricsSink()
    prometheus = None
    if metrics_sink is None:
        prometheus = PrometheusMetricsSink()
        metrics_sink = CompositeMetricsSink([memory_metrics, prometheus])
    else:
        metrics_sink = CompositeMetricsSink([memory_metrics, metrics_sink])

    recorder = MetricsRecorder(metrics_sink, clock=clock)
    registry = TopicRegistry(clock=clock)
    tracker = ConnectionTracker(
        recorder=recorder,
        clock=clock,
        latency_smoothing=settings.latency_smoothing,
    )
    queue = DeliveryQueue(
        tracker,
        recorder=recorder,
        max_retries=settings.max_retries,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
        jitter=settings.backoff_jitter,
        max_queue_size=settings.max_queue_size,
        clock=clock,
        rng=rng,
        on_drop=on_drop,
    )
    coordinator = BroadcastCoordinator(
        registry,
        tracker,
        queue,
        transport or InMemoryTransport(),
        store or _build_store(settings),
        recorder=recorder,
        settings=settings,
        clock=clock,
    )
    synthesizer = StateSynthesizer(
        coordinator,
        interval=settings.synthesizer_interval_seconds,
        bounds=PerturbationBounds.from_settings(settings),
        rng=rng,
        clock=clock,
    )
    retry_task = PeriodicTask("delivery-retry", settings.retry_tick_interval_seconds, coordinator.run_retry_cycle)

    return BroadcastService(
        settings=settings,
        registry=registry,
        tracker=tracker,
        queue=queue,
        coordinator=coordinator,
        synthesizer=synthesizer,
        retry_task=retry_task,
        recorder=recorder,
        memory_metrics=memory_metrics,
        prometheus=prometheus,
    )
