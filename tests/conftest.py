import random

import pytest

from transitcast.config import settings as config_module
from transitcast.data.models import Coordinate, Position, RouteStop, RouteTopology
from transitcast.data.store import InMemoryStore
from transitcast.realtime.clock import ManualClock
from transitcast.realtime.metrics import InMemoryMetricsSink
from transitcast.realtime.service import build_service
from transitcast.realtime.transport import InMemoryTransport

# One kilometre of latitude on a 6,371 km sphere
KM_LAT = 0.0089932


def make_route(route_id, stop_count, start_lat=28.6, lon=77.2, spacing=KM_LAT):
    stops = [
        RouteStop(
            stop_id=f"{route_id}_s{seq}",
            name=f"Stop {seq}",
            position=Coordinate(latitude=start_lat + (seq - 1) * spacing, longitude=lon),
            sequence=seq,
            is_terminal=seq in (1, stop_count),
        )
        for seq in range(1, stop_count + 1)
    ]
    return RouteTopology(
        route_id=route_id,
        name=f"Route {route_id}",
        stops=stops,
        path=[stop.position for stop in stops],
    )


def at_stop(stop, speed=None, heading=None):
    return Position(latitude=stop.latitude, longitude=stop.longitude, speed=speed, heading=heading)


@pytest.fixture
def settings():
    return config_module.TestingConfig()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def two_stop_route():
    return make_route("R1", 2)


@pytest.fixture
def five_stop_route():
    return make_route("R5", 5)


@pytest.fixture
def other_route():
    return make_route("R2", 3, start_lat=28.7, lon=77.3)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def sink():
    return InMemoryMetricsSink()


@pytest.fixture
def store(two_stop_route, five_stop_route, other_route):
    return InMemoryStore(routes=[two_stop_route, five_stop_route, other_route])


@pytest.fixture
def service(settings, transport, store, sink, clock):
    service = build_service(
        settings,
        transport=transport,
        store=store,
        metrics_sink=sink,
        clock=clock,
        rng=random.Random(7),
    )
    for route in store.routes.values():
        service.coordinator.register_route(route)
    return service


@pytest.fixture
def coordinator(service):
    return service.coordinator
