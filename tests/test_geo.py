import math
from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import assume, given, strategies as st

from transitcast.data.models import (
    Coordinate,
    CrowdLevel,
    Position,
    RouteStop,
    VehicleState,
    VehicleStatus,
)
from transitcast.exceptions import InvalidInputError
from transitcast.realtime import geo

from conftest import KM_LAT, at_stop, make_route


coordinates = st.builds(
    Coordinate,
    latitude=st.floats(min_value=-90, max_value=90, allow_nan=False),
    longitude=st.floats(min_value=-180, max_value=180, allow_nan=False),
)


@given(coordinates, coordinates)
def test_distance_is_symmetric(a, b):
    assert math.isclose(
        geo.haversine_distance(a, b), geo.haversine_distance(b, a), rel_tol=1e-9, abs_tol=1e-6
    )


@given(coordinates)
def test_distance_to_self_is_zero(a):
    assert geo.haversine_distance(a, a) == 0


@given(coordinates, coordinates)
def test_bearing_is_normalized(a, b):
    assume(a != b)
    bearing = geo.initial_bearing(a, b)
    assert 0 <= bearing < 360


@given(st.integers(min_value=2, max_value=12))
def test_progress_is_monotonic_along_the_route(stop_count):
    route = make_route("P", stop_count)
    progress = [geo.route_progress(at_stop(stop), route.stops) for stop in route.stops]

    assert progress == sorted(progress)
    assert progress[0] == 0.0
    assert progress[-1] == 1.0


def test_one_kilometre_of_latitude():
    a = Coordinate(latitude=28.6, longitude=77.2)
    b = Coordinate(latitude=28.6 + KM_LAT, longitude=77.2)
    assert geo.haversine_distance(a, b) == pytest.approx(1000.0, abs=0.5)


def test_cardinal_bearings():
    origin = Coordinate(latitude=0, longitude=0)
    assert geo.initial_bearing(origin, Coordinate(latitude=1, longitude=0)) == pytest.approx(0.0)
    assert geo.initial_bearing(origin, Coordinate(latitude=0, longitude=1)) == pytest.approx(90.0)
    assert geo.initial_bearing(origin, Coordinate(latitude=-1, longitude=0)) == pytest.approx(180.0)
    assert geo.initial_bearing(origin, Coordinate(latitude=0, longitude=-1)) == pytest.approx(270.0)


def test_nearest_stop_ties_resolve_to_lowest_sequence():
    spot = Coordinate(latitude=10.0, longitude=10.0)
    stops = [
        RouteStop(stop_id="b", name="B", position=spot, sequence=2),
        RouteStop(stop_id="a", name="A", position=spot, sequence=1),
    ]
    assert geo.nearest_stop(spot, stops).stop_id == "a"


def test_nearest_stop_rejects_empty_list():
    with pytest.raises(InvalidInputError):
        geo.nearest_stop(Coordinate(latitude=0, longitude=0), [])


def test_single_stop_progress_is_zero():
    stop = RouteStop(stop_id="only", name="Only", position=Coordinate(latitude=1, longitude=1), sequence=1)
    assert geo.route_progress(Coordinate(latitude=5, longitude=5), [stop]) == 0.0


def test_eta_to_next_stop_at_default_speed(two_stop_route):
    first, second = two_stop_route.stops
    eta = geo.estimate_eta(at_stop(first, speed=0), second, two_stop_route.stops, speed_kmh=0)

    # 1 km at 25 km/h, no intervening stops
    assert eta.total_seconds() == pytest.approx(144.0, abs=0.5)
    assert geo.route_progress(at_stop(first), two_stop_route.stops) == 0.0


def test_eta_adds_dwell_per_intervening_stop(five_stop_route):
    stops = five_stop_route.stops
    eta = geo.estimate_eta(at_stop(stops[0]), stops[3], stops, speed_kmh=30.0)

    # 3 km at 30 km/h plus two intervening stops at 2 minutes each
    assert eta.total_seconds() == pytest.approx(360.0 + 240.0, abs=1.0)


def test_eta_for_passed_stop_is_never_negative(five_stop_route):
    stops = five_stop_route.stops
    eta = geo.estimate_eta(at_stop(stops[2]), stops[1], stops)
    assert eta == timedelta(0)


def test_eta_scales_with_traffic(two_stop_route):
    first, second = two_stop_route.stops
    free = geo.estimate_eta(at_stop(first), second, two_stop_route.stops, traffic=1.0)
    rush = geo.estimate_eta(at_stop(first), second, two_stop_route.stops, traffic=0.5)
    assert rush.total_seconds() == pytest.approx(2 * free.total_seconds())


def test_eta_rejects_out_of_range_traffic(two_stop_route):
    first, second = two_stop_route.stops
    with pytest.raises(InvalidInputError):
        geo.estimate_eta(at_stop(first), second, two_stop_route.stops, traffic=0.0)


def test_stop_etas_are_absolute(five_stop_route):
    now = datetime(2026, 1, 5, 2, 0, tzinfo=timezone.utc)
    etas = geo.stop_etas(at_stop(five_stop_route.stops[0]), five_stop_route.stops, now)

    assert [eta.stop.sequence for eta in etas] == [1, 2, 3, 4, 5]
    assert etas[0].eta == timedelta(0)
    for eta in etas:
        assert eta.estimated_arrival == now + eta.eta
    assert [eta.eta for eta in etas] == sorted(eta.eta for eta in etas)


@pytest.mark.parametrize("moment, expected", [
    (datetime(2026, 1, 5, 2, 0), 1.0),     # Monday night
    (datetime(2026, 1, 5, 8, 30), 0.5),    # Monday morning rush
    (datetime(2026, 1, 5, 12, 0), 0.7),    # Monday midday
    (datetime(2026, 1, 5, 18, 0), 0.5),    # Monday evening rush
    (datetime(2026, 1, 5, 21, 0), 1.0),
    (datetime(2026, 1, 10, 12, 0), 0.8),   # Saturday daytime
    (datetime(2026, 1, 11, 23, 0), 1.0),   # Sunday late
])
def test_traffic_factor_bands(moment, expected):
    assert geo.traffic_factor(moment) == expected


def test_traffic_bands_are_configurable():
    bands = geo.TrafficBands(rush=0.4, midday=0.9, weekend=0.6)
    assert geo.traffic_factor(datetime(2026, 1, 5, 8, 0), bands) == 0.4
    assert geo.traffic_factor(datetime(2026, 1, 10, 12, 0), bands) == 0.6


@pytest.mark.parametrize("heading, expected", [
    (0.0, True),
    (30.0, True),
    (350.0, True),
    (90.0, False),
    (180.0, False),
    (None, True),
])
def test_on_expected_path(five_stop_route, heading, expected):
    position = at_stop(five_stop_route.stops[1])
    assert geo.is_on_expected_path(position, heading, five_stop_route.path) is expected


def test_on_expected_path_at_last_point(five_stop_route):
    position = at_stop(five_stop_route.stops[-1])
    assert geo.is_on_expected_path(position, 180.0, five_stop_route.path) is True


def test_nearest_path_point(five_stop_route):
    position = Position(latitude=five_stop_route.stops[3].latitude + 0.0001, longitude=77.2)
    assert geo.nearest_path_point(position, five_stop_route.path) == 3
    assert geo.nearest_path_point(position, []) is None


@pytest.mark.parametrize("occupancy, level", [
    (0, CrowdLevel.LOW),
    (15, CrowdLevel.LOW),
    (16, CrowdLevel.MEDIUM),
    (30, CrowdLevel.MEDIUM),
    (31, CrowdLevel.HIGH),
])
def test_crowd_level_thresholds(occupancy, level):
    assert geo.crowd_level(occupancy) == level


def _vehicle(vehicle_id, status, speed, occupancy):
    return VehicleState(
        vehicle_id=vehicle_id,
        route_id="R",
        position=Position(latitude=1, longitude=1, speed=speed),
        status=status,
        occupancy=occupancy,
    )


def test_route_metrics():
    metrics = geo.route_metrics([
        _vehicle("a", VehicleStatus.ACTIVE, 20.0, 30),
        _vehicle("b", VehicleStatus.ACTIVE, 30.0, 40),
        _vehicle("c", VehicleStatus.ACTIVE, 0.0, 20),
        _vehicle("d", VehicleStatus.INACTIVE, 50.0, 5),
    ])

    assert metrics.average_speed == pytest.approx(25.0)
    assert metrics.total_occupancy == 95
    assert metrics.active_vehicles == 3
    # mean occupancy of active vehicles is 30
    assert metrics.crowd_level == CrowdLevel.MEDIUM


def test_route_metrics_without_vehicles():
    metrics = geo.route_metrics([])
    assert metrics.average_speed == 0.0
    assert metrics.total_occupancy == 0
    assert metrics.crowd_level == CrowdLevel.LOW
