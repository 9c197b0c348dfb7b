from datetime import timedelta

import pytest
from pydantic import TypeAdapter, ValidationError

from transitcast.data.models import (
    ClientReport,
    Coordinate,
    Envelope,
    Position,
    QueuedEnvelope,
    QueuePriority,
    ReportKind,
    RouteStop,
    RouteTopology,
    UpdateMetadata,
    VehicleState,
)

from conftest import make_route


def _stop(seq, terminal=False, stop_id=None):
    return RouteStop(
        stop_id=stop_id or f"s{seq}",
        name=f"Stop {seq}",
        position=Coordinate(latitude=1.0 + seq, longitude=1.0),
        sequence=seq,
        is_terminal=terminal,
    )


@pytest.mark.parametrize("latitude, longitude", [(91.0, 0.0), (-91.0, 0.0), (0.0, 181.0), (0.0, -180.5)])
def test_position_bounds(latitude, longitude):
    with pytest.raises(ValidationError):
        Position(latitude=latitude, longitude=longitude)


def test_topology_sorts_stops():
    route = RouteTopology(route_id="R", stops=[_stop(2, True), _stop(1, True)])
    assert [s.sequence for s in route.stops] == [1, 2]
    assert route.topic_name == "route_R"
    assert route.stop_at(2).stop_id == "s2"
    assert route.stop_at(3) is None
    assert route.stop("s1").sequence == 1


@pytest.mark.parametrize("stops", [
    [],
    [_stop(1, True)],
    [_stop(1, True), _stop(3, True)],
    [_stop(1, False), _stop(2, True)],
    [_stop(1, True, "x"), _stop(2, True, "x")],
])
def test_invalid_topologies(stops):
    with pytest.raises(ValidationError):
        RouteTopology(route_id="R", stops=stops)


def test_occupancy_cannot_exceed_capacity():
    with pytest.raises(ValidationError):
        VehicleState(vehicle_id="v", occupancy=60, capacity=50)


def test_urgent_metadata():
    assert UpdateMetadata(emergency=True).is_urgent
    assert UpdateMetadata(alert="breakdown").is_urgent
    assert not UpdateMetadata(source="driver").is_urgent


def test_subscription_reports_need_a_route():
    with pytest.raises(ValidationError):
        ClientReport(reporter_id="c", report_kind=ReportKind.UNSUBSCRIBE)


def test_envelope_union_is_discriminated_by_kind():
    report = ClientReport(reporter_id="c", report_kind=ReportKind.BOARDING, route_id="R")
    parsed = TypeAdapter(Envelope).validate_python(report.to_dict())
    assert isinstance(parsed, ClientReport)
    assert parsed.message_id == report.message_id


def test_queued_envelope_retry_copy():
    report = ClientReport(reporter_id="c", report_kind=ReportKind.FEEDBACK)
    entry = QueuedEnvelope(envelope=report, client_id="c1", priority=QueuePriority.LOW)
    later = entry.queued_at + timedelta(seconds=5)

    retry = entry.with_retry(later)

    assert (entry.retry_count, retry.retry_count) == (0, 1)
    assert retry.envelope_id == entry.envelope_id == report.message_id
    assert not retry.is_due(entry.queued_at)
    assert retry.is_due(later)
    assert retry.age(later) == timedelta(seconds=5)


def test_message_ids_are_unique():
    ids = {ClientReport(reporter_id="c", report_kind=ReportKind.FEEDBACK).message_id for _ in range(500)}
    assert len(ids) == 500


def test_route_round_trips_through_json():
    route = make_route("J", 3)
    assert RouteTopology.from_json(route.to_json()) == route


def test_feedback_route_id_is_reserved():
    with pytest.raises(ValidationError):
        RouteTopology(route_id="feedback", stops=[_stop(1, True), _stop(2, True)])
    assert RouteTopology(route_id="feedback_2", stops=[_stop(1, True), _stop(2, True)]).topic_name == "route_feedback_2"
