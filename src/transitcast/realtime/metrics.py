"""
Performance metric sinks.

The broker emits ``PerfMetric`` observations to a sink; business logic
never reads them back. Sinks provided here:
- InMemoryMetricsSink: bounded history per (kind, operation) with
  percentile statistics, used by tests and the stats endpoints
- PrometheusMetricsSink: exports the stream through prometheus_client
- CompositeMetricsSink: fans one observation out to several sinks

``MetricsRecorder`` is what the pipeline actually holds. Recording is
fire-and-forget: a failing sink is logged and never propagates.
"""

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from ..data.models import MetricKind, PerfMetric
from .clock import Clock, SystemClock


logger = structlog.get_logger(__name__)

MAX_METRICS_PER_KEY = 1000


class MetricsSink(Protocol):
    def record(self, metric: PerfMetric) -> None:
        ...


def _percentile(ordered: List[float], fraction: float) -> float:
    index = min(len(ordered) - 1, int(len(ordered) * fraction))
    return ordered[index]


class InMemoryMetricsSink:
    """Keeps the most recent observations per (kind, operation)."""

    def __init__(self, max_per_key: int = MAX_METRICS_PER_KEY):
        self.max_per_key = max_per_key
        self._lock = threading.Lock()
        self._history: Dict[Tuple[MetricKind, str], Deque[PerfMetric]] = defaultdict(
            lambda: deque(maxlen=self.max_per_key)
        )

    def record(self, metric: PerfMetric) -> None:
        with self._lock:
            self._history[(metric.kind, metric.operation)].append(metric)

    def metrics(
        self,
        kind: Optional[MetricKind] = None,
        operation: Optional[str] = None,
    ) -> List[PerfMetric]:
        """Recorded observations, optionally filtered, oldest first."""
        with self._lock:
            selected = [
                metric
                for (metric_kind, metric_op), history in self._history.items()
                if (kind is None or metric_kind == kind)
                and (operation is None or metric_op == operation)
                for metric in history
            ]
        return sorted(selected, key=lambda metric: metric.timestamp)

    def drop_count(self, operation: Optional[str] = None) -> int:
        return len(self.metrics(MetricKind.DROP_RATE, operation))

    def calculate_stats(self, kind: MetricKind, operation: str) -> Dict[str, float]:
        """count/avg/min/max/p50/p95/p99 for one (kind, operation) series."""
        values = sorted(metric.value for metric in self.metrics(kind, operation))
        if not values:
            return {}

        return {
            "count": len(values),
            "avg": sum(values) / len(values),
            "min": values[0],
            "max": values[-1],
            "p50": _percentile(values, 0.50),
            "p95": _percentile(values, 0.95),
            "p99": _percentile(values, 0.99),
        }

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            keys = list(self._history)
        return {
            f"{kind.value}:{operation}": self.calculate_stats(kind, operation)
            for kind, operation in keys
        }

    def clear(self) -> None:
        with self._lock:
            self._history.clear()


class PrometheusMetricsSink:
    """Exports the metric stream as Prometheus collectors."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "transitcast"):
        self.registry = registry or CollectorRegistry()

        self.latency = Histogram(
            "latency_seconds",
            "Operation latency",
            ["operation"],
            namespace=namespace,
            registry=self.registry,
        )
        self.throughput = Counter(
            "messages",
            "Messages handled per operation",
            ["operation"],
            namespace=namespace,
            registry=self.registry,
        )
        self.queue_size = Gauge(
            "queue_size",
            "Pending envelopes in the delivery queue",
            namespace=namespace,
            registry=self.registry,
        )
        self.drops = Counter(
            "dropped_envelopes",
            "Envelopes permanently dropped",
            ["reason"],
            namespace=namespace,
            registry=self.registry,
        )
        self.connections = Gauge(
            "connected_clients",
            "Clients currently connected",
            namespace=namespace,
            registry=self.registry,
        )

    def record(self, metric: PerfMetric) -> None:
        if metric.kind == MetricKind.LATENCY:
            self.latency.labels(operation=metric.operation).observe(metric.value / 1000.0)
        elif metric.kind == MetricKind.THROUGHPUT:
            self.throughput.labels(operation=metric.operation).inc(metric.value)
        elif metric.kind == MetricKind.QUEUE_SIZE:
            self.queue_size.set(metric.value)
        elif metric.kind == MetricKind.DROP_RATE:
            # client ids are unbounded, label by reason only
            self.drops.labels(reason=str(metric.tags.get("reason", "unknown"))).inc(metric.value)
        elif metric.kind == MetricKind.CONNECTION_COUNT:
            self.connections.set(metric.value)


class CompositeMetricsSink:
    """Forwards each observation to every child sink."""

    def __init__(self, sinks: Iterable[MetricsSink]):
        self.sinks = list(sinks)

    def record(self, metric: PerfMetric) -> None:
        for sink in self.sinks:
            sink.record(metric)


class MetricsRecorder:
    """Builds PerfMetric observations and hands them to a sink without ever raising."""

    def __init__(self, sink: Optional[MetricsSink] = None, clock: Optional[Clock] = None):
        self.sink = sink or InMemoryMetricsSink()
        self._clock = clock or SystemClock()

    def record(
        self,
        kind: MetricKind,
        operation: str,
        value: float,
        unit: str = "ms",
        **tags: Any,
    ) -> None:
        try:
            metric = PerfMetric(
                kind=kind,
                operation=operation,
                value=value,
                unit=unit,
                timestamp=self._clock.now(),
                tags=tags,
            )
            self.sink.record(metric)
        except Exception as e:
            logger.warning("Metric not recorded", kind=kind.value, operation=operation, error=str(e))

    def latency(self, operation: str, millis: float, **tags: Any) -> None:
        self.record(MetricKind.LATENCY, operation, millis, "ms", **tags)

    def throughput(self, operation: str, count: float, **tags: Any) -> None:
        self.record(MetricKind.THROUGHPUT, operation, count, "messages", **tags)

    def queue_size(self, size: int, **tags: Any) -> None:
        self.record(MetricKind.QUEUE_SIZE, "delivery_queue", size, "envelopes", **tags)

    def drop(self, operation: str, **tags: Any) -> None:
        self.record(MetricKind.DROP_RATE, operation, 1, "envelopes", **tags)

    def connection_count(self, count: int, **tags: Any) -> None:
        self.record(MetricKind.CONNECTION_COUNT, "connections", count, "clients", **tags)

    @contextmanager
    def measure(self, operation: str, **tags: Any) -> Iterator[None]:
        """Record the wall time of the enclosed block as a latency metric."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.latency(operation, (time.perf_counter() - started) * 1000.0, **tags)
