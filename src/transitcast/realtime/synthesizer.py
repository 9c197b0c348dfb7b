"""
Periodic state synthesizer for simulation mode.

Every tick each Active vehicle gets a small random walk applied to its
position, speed, heading and occupancy, and the result goes through
``BroadcastCoordinator.submit_update`` exactly like a real driver fix.
"""

import random
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from ..data.models import Position, VehicleState
from .clock import Clock, SystemClock
from .coordinator import BroadcastCoordinator, BroadcastResult
from .scheduler import PeriodicTask


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PerturbationBounds:
    """Full widths of the random deltas applied per tick."""
    position_degrees: float = 0.001
    speed_min_kmh: float = 20.0
    speed_max_kmh: float = 35.0
    heading_degrees: float = 10.0
    occupancy: int = 2

    @classmethod
    def from_settings(cls, settings) -> "PerturbationBounds":
        return cls(
            position_degrees=settings.synth_position_jitter_degrees,
            speed_min_kmh=settings.synth_speed_min_kmh,
            speed_max_kmh=settings.synth_speed_max_kmh,
            heading_degrees=settings.synth_heading_jitter_degrees,
            occupancy=settings.synth_occupancy_jitter,
        )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class StateSynthesizer:
    """Drives the coordinator with synthetic updates in the absence of drivers."""

    def __init__(
        self,
        coordinator: BroadcastCoordinator,
        interval: float = 3.0,
        bounds: PerturbationBounds = PerturbationBounds(),
        rng: Optional[random.Random] = None,
        clock: Optional[Clock] = None,
    ):
        self.coordinator = coordinator
        self.bounds = bounds
        self.rng = rng or random.Random()
        self.clock = clock or coordinator.clock or SystemClock()
        self.task = PeriodicTask("state-synthesizer", interval, self.step)

    def perturb(self, state: VehicleState) -> Tuple[Position, int]:
        """Next synthetic fix and occupancy for ``state``; the state itself is untouched."""
        rng, bounds = self.rng, self.bounds
        current = state.position

        latitude = _clamp(current.latitude + (rng.random() - 0.5) * bounds.position_degrees, -90.0, 90.0)
        longitude = _clamp(current.longitude + (rng.random() - 0.5) * bounds.position_degrees, -180.0, 180.0)
        speed = rng.uniform(bounds.speed_min_kmh, bounds.speed_max_kmh)
        heading = ((current.heading or 0.0) + (rng.random() - 0.5) * bounds.heading_degrees) % 360.0

        occupancy = state.occupancy + rng.randint(-bounds.occupancy, bounds.occupancy)
        occupancy = int(_clamp(occupancy, 0, state.capacity))

        position = Position(
            latitude=latitude,
            longitude=longitude,
            speed=speed,
            heading=heading if heading < 360.0 else 0.0,
            timestamp=self.clock.now(),
        )
        return position, occupancy

    async def step(self) -> List[BroadcastResult]:
        """One synthesizer tick over every Active vehicle with a known position."""
        results = []
        for state in self.coordinator.active_vehicles():
            if state.position is None:
                continue

            position, occupancy = self.perturb(state)
            result = await self.coordinator.submit_update(
                state.vehicle_id,
                position,
                occupancy=occupancy,
                metadata={"source": "synthesizer"},
                originator_id=state.driver_id,
            )
            results.append(result)

        logger.debug("Synthesizer tick", vehicles=len(results))
        return results

    def start(self) -> None:
        self.task.start()

    async def stop(self) -> None:
        await self.task.stop()

    @property
    def running(self) -> bool:
        return self.task.running
