from datetime import timedelta

import pytest

from transitcast.data.models import MetricKind
from transitcast.realtime.clock import ManualClock
from transitcast.realtime.connections import ConnectionTracker
from transitcast.realtime.metrics import InMemoryMetricsSink, MetricsRecorder


@pytest.fixture
def tracker_parts():
    clock = ManualClock()
    sink = InMemoryMetricsSink()
    tracker = ConnectionTracker(MetricsRecorder(sink, clock=clock), clock=clock, latency_smoothing=0.5)
    return tracker, clock, sink


def test_unknown_client_is_not_connected(tracker_parts):
    tracker, _, _ = tracker_parts
    assert tracker.is_connected("ghost") is False
    assert tracker.snapshot("ghost") is None
    assert tracker.record_sent("ghost") is None
    assert tracker.on_disconnect("ghost") is None


def test_connect_disconnect_cycle(tracker_parts):
    tracker, clock, _ = tracker_parts
    tracker.on_connect("c1")
    assert tracker.is_connected("c1")

    clock.advance(30)
    assert tracker.connection_duration("c1") == timedelta(seconds=30)

    tracker.on_disconnect("c1")
    clock.advance(100)
    state = tracker.snapshot("c1")
    assert state.is_connected is False
    assert tracker.connection_duration("c1") == timedelta(seconds=30)


def test_duration_absent_without_connect(tracker_parts):
    tracker, _, _ = tracker_parts
    assert tracker.connection_duration("never") is None


def test_counters_and_latency_average(tracker_parts):
    tracker, _, _ = tracker_parts
    tracker.on_connect("c1")

    tracker.record_sent("c1")
    tracker.record_sent("c1")
    tracker.record_received("c1", 100.0)
    state = tracker.record_received("c1", 50.0)

    assert state.messages_sent == 2
    assert state.messages_received == 2
    # first sample seeds, second is 0.5 * 50 + 0.5 * 100
    assert state.average_latency_ms == pytest.approx(75.0)


def test_snapshots_are_immutable_values(tracker_parts):
    tracker, _, _ = tracker_parts
    before = tracker.on_connect("c1")
    tracker.record_sent("c1")

    assert before.messages_sent == 0
    assert tracker.snapshot("c1").messages_sent == 1


def test_reconnect_keeps_counters(tracker_parts):
    tracker, _, _ = tracker_parts
    tracker.on_connect("c1")
    tracker.record_sent("c1")
    tracker.on_disconnect("c1")
    state = tracker.on_connect("c1")

    assert state.is_connected
    assert state.messages_sent == 1
    assert state.disconnected_at is None


def test_connection_count_metric(tracker_parts):
    tracker, _, sink = tracker_parts
    tracker.on_connect("c1")
    tracker.on_connect("c2")
    tracker.on_disconnect("c1")

    assert tracker.connected_clients() == ["c2"]
    assert tracker.connection_count() == 1
    values = [m.value for m in sink.metrics(MetricKind.CONNECTION_COUNT)]
    assert values == [1, 2, 1]


def test_smoothing_must_be_in_range():
    with pytest.raises(ValueError):
        ConnectionTracker(latency_smoothing=0.0)
