import pytest

from transitcast.data.models import MetricKind, PerfMetric
from transitcast.realtime.clock import ManualClock
from transitcast.realtime.metrics import (
    CompositeMetricsSink,
    InMemoryMetricsSink,
    MetricsRecorder,
    PrometheusMetricsSink,
)


class BrokenSink:
    def record(self, metric):
        raise RuntimeError("sink is down")


def test_percentile_stats():
    sink = InMemoryMetricsSink()
    recorder = MetricsRecorder(sink, clock=ManualClock())
    for value in range(1, 101):
        recorder.latency("publish", float(value))

    stats = sink.calculate_stats(MetricKind.LATENCY, "publish")
    assert stats["count"] == 100
    assert stats["avg"] == pytest.approx(50.5)
    assert stats["min"] == 1.0
    assert stats["max"] == 100.0
    assert stats["p50"] == 51.0
    assert stats["p95"] == 96.0
    assert stats["p99"] == 100.0


def test_stats_for_unknown_series_are_empty():
    assert InMemoryMetricsSink().calculate_stats(MetricKind.LATENCY, "nothing") == {}


def test_history_is_bounded():
    sink = InMemoryMetricsSink(max_per_key=10)
    recorder = MetricsRecorder(sink)
    for value in range(25):
        recorder.throughput("publish", value)

    values = [m.value for m in sink.metrics(MetricKind.THROUGHPUT, "publish")]
    assert values == list(range(15, 25))


def test_summary_and_drop_count():
    sink = InMemoryMetricsSink()
    recorder = MetricsRecorder(sink)
    recorder.latency("publish", 4.0)
    recorder.drop("delivery:c1", reason="evicted")
    recorder.drop("delivery:c2", reason="evicted")

    assert sink.drop_count() == 2
    assert sink.drop_count("delivery:c1") == 1
    assert set(sink.summary()) == {"latency:publish", "drop-rate:delivery:c1", "drop-rate:delivery:c2"}

    sink.clear()
    assert sink.metrics() == []


def test_recorder_never_raises():
    recorder = MetricsRecorder(BrokenSink())
    recorder.latency("publish", 1.0)
    recorder.drop("delivery:c1")
    with recorder.measure("block"):
        pass


def test_measure_records_latency():
    sink = InMemoryMetricsSink()
    recorder = MetricsRecorder(sink)
    with recorder.measure("work", route_id="R1"):
        sum(range(1000))

    [metric] = sink.metrics(MetricKind.LATENCY, "work")
    assert metric.value >= 0
    assert metric.tags == {"route_id": "R1"}


def test_composite_fans_out():
    first, second = InMemoryMetricsSink(), InMemoryMetricsSink()
    MetricsRecorder(CompositeMetricsSink([first, second])).queue_size(7)

    assert first.metrics(MetricKind.QUEUE_SIZE)[0].value == 7
    assert second.metrics(MetricKind.QUEUE_SIZE)[0].value == 7


def test_prometheus_sink():
    sink = PrometheusMetricsSink()
    recorder = MetricsRecorder(sink)

    recorder.latency("publish", 250.0)
    recorder.throughput("publish", 3)
    recorder.throughput("publish", 2)
    recorder.queue_size(4)
    recorder.drop("delivery:c1", reason="retry_exhausted")
    recorder.connection_count(2)

    registry = sink.registry
    assert registry.get_sample_value(
        "transitcast_latency_seconds_sum", {"operation": "publish"}
    ) == pytest.approx(0.25)
    assert registry.get_sample_value("transitcast_messages_total", {"operation": "publish"}) == 5
    assert registry.get_sample_value("transitcast_queue_size") == 4
    assert registry.get_sample_value(
        "transitcast_dropped_envelopes_total", {"reason": "retry_exhausted"}
    ) == 1
    assert registry.get_sample_value("transitcast_connected_clients") == 2


def test_perf_metric_str():
    metric = PerfMetric(kind=MetricKind.LATENCY, operation="publish", value=1.5)
    assert str(metric) == "publish: 1.50ms"
