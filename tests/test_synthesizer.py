import asyncio
import random

import pytest

from transitcast.data.models import Position, VehicleState, VehicleStatus
from transitcast.realtime.coordinator import PublishStatus
from transitcast.realtime.scheduler import PeriodicTask
from transitcast.realtime.synthesizer import PerturbationBounds, StateSynthesizer

from conftest import at_stop


def _state(occupancy=20, heading=90.0):
    return VehicleState(
        vehicle_id="bus",
        route_id="R1",
        position=Position(latitude=28.6, longitude=77.2, speed=25.0, heading=heading),
        status=VehicleStatus.ACTIVE,
        occupancy=occupancy,
    )


@pytest.mark.parametrize("seed", range(20))
def test_perturbation_stays_within_bounds(coordinator, seed):
    synthesizer = StateSynthesizer(coordinator, bounds=PerturbationBounds(), rng=random.Random(seed))
    state = _state()

    position, occupancy = synthesizer.perturb(state)

    assert abs(position.latitude - 28.6) <= 0.0005
    assert abs(position.longitude - 77.2) <= 0.0005
    assert 20.0 <= position.speed <= 35.0
    delta = (position.heading - 90.0 + 180.0) % 360.0 - 180.0
    assert abs(delta) <= 5.0
    assert 18 <= occupancy <= 22


def test_occupancy_is_clamped(coordinator):
    synthesizer = StateSynthesizer(coordinator, rng=random.Random(1))
    for _ in range(50):
        _, occupancy = synthesizer.perturb(_state(occupancy=0))
        assert occupancy >= 0


def test_heading_wraps_around_north(coordinator):
    synthesizer = StateSynthesizer(coordinator, rng=random.Random(5))
    for _ in range(50):
        position, _ = synthesizer.perturb(_state(heading=359.0))
        assert 0.0 <= position.heading < 360.0


def test_perturb_leaves_state_untouched(coordinator):
    synthesizer = StateSynthesizer(coordinator, rng=random.Random(2))
    state = _state()
    synthesizer.perturb(state)
    assert state.position.latitude == 28.6
    assert state.occupancy == 20


def test_step_publishes_through_coordinator(service, transport, two_stop_route, five_stop_route):
    coordinator = service.coordinator
    coordinator.start_session("a", "R1", position=at_stop(two_stop_route.stops[0], speed=25, heading=0))
    coordinator.start_session("b", "R5", position=at_stop(five_stop_route.stops[2], speed=25, heading=0))
    coordinator.start_session("idle", "R5")
    coordinator.start_session("off", "R1", position=at_stop(two_stop_route.stops[1]))
    coordinator.end_session("off")

    asyncio.run(coordinator.submit_report({"reporter_id": "c1", "report_kind": "subscribe", "route_id": "R1"}))
    asyncio.run(coordinator.connect_client("c1"))

    results = asyncio.run(service.synthesizer.step())

    assert [r.vehicle_id for r in results] == ["a", "b"]
    assert all(r.status == PublishStatus.PUBLISHED for r in results)
    assert all(r.envelope.metadata.source == "synthesizer" for r in results)
    assert [e.vehicle_id for e in transport.received("c1")] == ["a"]
    assert coordinator.vehicle("off").position.latitude == two_stop_route.stops[1].latitude


def test_synthesizer_runs_on_schedule(service, two_stop_route):
    coordinator = service.coordinator
    coordinator.start_session("a", "R1", position=at_stop(two_stop_route.stops[0], speed=25, heading=0))

    async def run():
        service.synthesizer.start()
        assert service.synthesizer.running
        await asyncio.sleep(0.2)
        await service.synthesizer.stop()
        return service.synthesizer.running

    assert asyncio.run(run()) is False
    assert coordinator.stats()["published"] >= 1


def test_periodic_task_survives_failures():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = PeriodicTask("flaky", 0.01, flaky)

    async def run():
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

    asyncio.run(run())

    assert task.failures == 1
    assert task.runs >= 2
    assert task.running is False


def test_periodic_task_rejects_bad_interval():
    with pytest.raises(ValueError):
        PeriodicTask("bad", 0, lambda: None)
