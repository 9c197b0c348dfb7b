"""
Geospatial derivation for vehicle updates.

Pure functions that turn raw positions and route topology into the
enrichments attached to every broadcast:
- great-circle distance and initial bearing
- nearest stop and route progress
- per-stop arrival estimates with a time-of-day traffic factor
- aggregate route metrics and crowd classification

Nothing in this module holds state. The only time-dependent input,
the traffic factor, takes the moment to evaluate as an argument.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

from ..data.models import (
    Coordinate,
    CrowdLevel,
    RouteStop,
    VehicleState,
    VehicleStatus,
)
from ..exceptions import InvalidInputError


EARTH_RADIUS_M = 6_371_000.0
ON_PATH_TOLERANCE_DEGREES = 45.0


@dataclass(frozen=True)
class CrowdThresholds:
    """Occupancy upper bounds for the low and medium crowd levels."""
    low_max: int = 15
    medium_max: int = 30


@dataclass(frozen=True)
class TrafficBands:
    """Speed multipliers for the modeled congestion periods."""
    rush: float = 0.5
    midday: float = 0.7
    weekend: float = 0.8
    free_flow: float = 1.0


@dataclass(frozen=True)
class StopEta:
    """Arrival estimate for one stop."""
    stop: RouteStop
    eta: timedelta
    estimated_arrival: datetime

    @property
    def minutes(self) -> float:
        return self.eta.total_seconds() / 60.0


@dataclass(frozen=True)
class RouteMetrics:
    """Aggregate figures for the vehicles serving a route."""
    average_speed: float
    total_occupancy: int
    crowd_level: CrowdLevel
    active_vehicles: int


def haversine_distance(a, b) -> float:
    """
    Great-circle distance in meters between two points.

    Accepts anything exposing ``latitude`` and ``longitude`` in degrees.
    Uses a spherical Earth of radius 6,371 km.
    """
    lat1 = math.radians(a.latitude)
    lat2 = math.radians(b.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(b.longitude - a.longitude)

    h = (math.sin(dlat / 2) ** 2 +
         math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2)
    # rounding can push h just outside [0, 1] near antipodes
    h = min(1.0, max(0.0, h))

    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def initial_bearing(a, b) -> float:
    """Initial bearing from ``a`` to ``b`` in degrees, normalized to [0, 360)."""
    phi1 = math.radians(a.latitude)
    phi2 = math.radians(b.latitude)
    delta_lon = math.radians(b.longitude - a.longitude)

    y = math.sin(delta_lon) * math.cos(phi2)
    x = (math.cos(phi1) * math.sin(phi2) -
         math.sin(phi1) * math.cos(phi2) * math.cos(delta_lon))

    bearing = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    return 0.0 if bearing >= 360.0 else bearing


def _ordered(stops: Sequence[RouteStop]) -> List[RouteStop]:
    return sorted(stops, key=lambda stop: stop.sequence)


def nearest_stop(position, stops: Sequence[RouteStop]) -> RouteStop:
    """
    Stop closest to ``position``.

    Ties resolve to the stop with the lowest sequence number.

    Raises:
        InvalidInputError: If ``stops`` is empty
    """
    if not stops:
        raise InvalidInputError("cannot find the nearest stop of an empty stop list")

    return min(_ordered(stops), key=lambda stop: haversine_distance(position, stop))


def route_progress(position, stops: Sequence[RouteStop]) -> float:
    """
    Fraction of the route completed, in [0.0, 1.0].

    Progress is ``(nearest.sequence - 1) / (stop_count - 1)``; a
    single-stop route always reports 0.0.
    """
    if len(stops) <= 1:
        return 0.0

    nearest = nearest_stop(position, stops)
    progress = (nearest.sequence - 1) / (len(stops) - 1)
    return max(0.0, min(1.0, progress))


def traffic_factor(moment: datetime, bands: TrafficBands = TrafficBands()) -> float:
    """
    Speed multiplier in (0, 1] for the given local time.

    Weekends are moderate from 10:00 to 22:59. Weekdays are heavy from
    07:00 to 10:59 and 17:00 to 20:59 and moderate from 11:00 to 16:59.
    Everything else is free flow.
    """
    hour = moment.hour

    if moment.weekday() >= 5:
        return bands.weekend if 10 <= hour <= 22 else bands.free_flow

    if 7 <= hour <= 10 or 17 <= hour <= 20:
        return bands.rush
    if 11 <= hour <= 16:
        return bands.midday
    return bands.free_flow


def estimate_eta(
    position,
    target: RouteStop,
    stops: Sequence[RouteStop],
    speed_kmh: Optional[float] = None,
    default_speed_kmh: float = 25.0,
    traffic: float = 1.0,
    dwell_minutes_per_stop: float = 2.0,
) -> timedelta:
    """
    Estimate the time for a vehicle at ``position`` to reach ``target``.

    Remaining distance is the leg from the vehicle to its nearest stop plus
    the straight stop-to-stop legs from there to the target. It is driven
    at the reported speed (or ``default_speed_kmh`` when the vehicle reports
    none) scaled by ``traffic``. Each stop strictly between the nearest stop
    and the target adds the dwell allowance. A target the vehicle has
    already passed has no remaining distance and no dwell, so the estimate
    never goes negative.
    """
    if not stops:
        raise InvalidInputError("cannot estimate arrival on an empty stop list")
    if not 0.0 < traffic <= 1.0:
        raise InvalidInputError(f"traffic factor must be in (0, 1], got {traffic}")

    ordered = _ordered(stops)
    nearest = nearest_stop(position, ordered)

    remaining_m = 0.0
    intervening = 0

    if nearest.sequence <= target.sequence:
        remaining_m += haversine_distance(position, nearest)

        by_sequence = {stop.sequence: stop for stop in ordered}
        for seq in range(nearest.sequence, target.sequence):
            current, following = by_sequence.get(seq), by_sequence.get(seq + 1)
            if current is not None and following is not None:
                remaining_m += haversine_distance(current, following)

        intervening = max(0, target.sequence - nearest.sequence - 1)

    base_speed = speed_kmh if speed_kmh is not None and speed_kmh > 0 else default_speed_kmh
    effective_speed = base_speed * traffic

    travel_hours = (remaining_m / 1000.0) / effective_speed
    return timedelta(hours=travel_hours, minutes=intervening * dwell_minutes_per_stop)


def stop_etas(
    position,
    stops: Sequence[RouteStop],
    now: datetime,
    speed_kmh: Optional[float] = None,
    default_speed_kmh: float = 25.0,
    traffic: float = 1.0,
    dwell_minutes_per_stop: float = 2.0,
) -> List[StopEta]:
    """Arrival estimates for every stop of a route, in sequence order."""
    etas = []
    for stop in _ordered(stops):
        eta = estimate_eta(
            position,
            stop,
            stops,
            speed_kmh=speed_kmh,
            default_speed_kmh=default_speed_kmh,
            traffic=traffic,
            dwell_minutes_per_stop=dwell_minutes_per_stop,
        )
        etas.append(StopEta(stop=stop, eta=eta, estimated_arrival=now + eta))
    return etas


def nearest_path_point(position, path: Sequence[Coordinate]) -> Optional[int]:
    """Index of the path point closest to ``position``, or None for an empty path."""
    if not path:
        return None

    return min(range(len(path)), key=lambda i: haversine_distance(position, path[i]))


def is_on_expected_path(
    position,
    heading: Optional[float],
    path: Sequence[Coordinate],
    tolerance_degrees: float = ON_PATH_TOLERANCE_DEGREES,
) -> bool:
    """
    Whether a vehicle heads the way the path runs at its nearest point.

    Paths with fewer than two points, vehicles at the last path point and
    vehicles without a heading are considered on path.
    """
    if len(path) < 2 or heading is None:
        return True

    index = nearest_path_point(position, path)
    if index is None or index >= len(path) - 1:
        return True

    expected = initial_bearing(path[index], path[index + 1])
    difference = abs(expected - heading) % 360.0
    return difference <= tolerance_degrees or difference >= 360.0 - tolerance_degrees


def crowd_level(occupancy: float, thresholds: CrowdThresholds = CrowdThresholds()) -> CrowdLevel:
    """Classify an occupancy figure as low, medium or high."""
    if occupancy <= thresholds.low_max:
        return CrowdLevel.LOW
    if occupancy <= thresholds.medium_max:
        return CrowdLevel.MEDIUM
    return CrowdLevel.HIGH


def route_metrics(
    vehicles: Iterable[VehicleState],
    thresholds: CrowdThresholds = CrowdThresholds(),
) -> RouteMetrics:
    """
    Aggregate metrics for the vehicles on one route.

    Average speed covers active vehicles reporting a positive speed (0.0
    if none do). Total occupancy counts every vehicle. The crowd level is
    derived from the mean occupancy per active vehicle.
    """
    vehicles = list(vehicles)
    active = [v for v in vehicles if v.status == VehicleStatus.ACTIVE]

    speeds = [v.speed for v in active if v.speed is not None and v.speed > 0]
    average_speed = sum(speeds) / len(speeds) if speeds else 0.0

    total_occupancy = sum(v.occupancy for v in vehicles)
    mean_occupancy = sum(v.occupancy for v in active) / len(active) if active else 0.0

    return RouteMetrics(
        average_speed=average_speed,
        total_occupancy=total_occupancy,
        crowd_level=crowd_level(mean_occupancy, thresholds),
        active_vehicles=len(active),
    )
