"""
Durable store boundary.

The broker reads routes and vehicles at startup and writes positions and
client reports as they arrive. Two implementations:
- InMemoryStore: process-local, seeded with the demo network
- RedisStore: redis.asyncio hashes and a report list under a key prefix

Backend failures surface as ``StoreUnavailableError``; retrying is the
caller's policy.
"""

from typing import Dict, List, Optional, Protocol

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from ..exceptions import StoreUnavailableError
from .models import (
    ClientReport,
    Coordinate,
    Position,
    RouteStop,
    RouteTopology,
    VehicleState,
    VehicleStatus,
    utcnow,
)


logger = structlog.get_logger(__name__)


class DurableStore(Protocol):
    async def load_routes(self) -> List[RouteTopology]:
        ...

    async def load_vehicles(self) -> List[VehicleState]:
        ...

    async def persist_vehicle_position(
        self,
        vehicle_id: str,
        position: Position,
        route_id: Optional[str] = None,
        status: Optional[VehicleStatus] = None,
    ) -> None:
        ...

    async def append_report(self, report: ClientReport) -> None:
        ...


# ==================== DEMO NETWORK ====================

def _route(route_id: str, name: str, stops) -> RouteTopology:
    last = len(stops)
    route_stops = [
        RouteStop(
            stop_id=stop_id,
            name=stop_name,
            position=Coordinate(latitude=lat, longitude=lon),
            sequence=seq,
            is_terminal=seq in (1, last),
        )
        for seq, (stop_id, stop_name, lat, lon) in enumerate(stops, start=1)
    ]
    return RouteTopology(
        route_id=route_id,
        name=name,
        stops=route_stops,
        path=[stop.position for stop in route_stops],
    )


def demo_routes() -> List[RouteTopology]:
    """The two-route demo network used in simulation mode."""
    return [
        _route("route_1", "Connaught Place - Pragati Maidan", [
            ("stop_1", "Connaught Place", 28.6139, 77.2090),
            ("stop_2", "India Gate", 28.6129, 77.2295),
            ("stop_3", "Rajpath", 28.6144, 77.2190),
            ("stop_4", "Pragati Maidan", 28.6280, 77.2185),
        ]),
        _route("route_2", "Red Fort - Delhi Gate", [
            ("stop_5", "Red Fort", 28.6562, 77.2410),
            ("stop_6", "Chandni Chowk", 28.6506, 77.2344),
            ("stop_7", "Jama Masjid", 28.6392, 77.2400),
            ("stop_8", "Delhi Gate", 28.6262, 77.2428),
        ]),
    ]


def demo_vehicles(status: VehicleStatus = VehicleStatus.ACTIVE) -> List[VehicleState]:
    """Three demo buses, two on route_1 and one on route_2."""
    seed = [
        ("bus_1", "route_1", "driver_1", 28.6139, 77.2090, 25.5, 45.0, 25),
        ("bus_2", "route_2", "driver_2", 28.6562, 77.2410, 30.0, 180.0, 35),
        ("bus_3", "route_1", "driver_3", 28.6280, 77.2185, 22.0, 270.0, 15),
    ]
    now = utcnow()
    return [
        VehicleState(
            vehicle_id=vehicle_id,
            route_id=route_id,
            driver_id=driver_id,
            position=Position(latitude=lat, longitude=lon, speed=speed, heading=heading, timestamp=now),
            status=status,
            occupancy=occupancy,
            last_updated=now,
        )
        for vehicle_id, route_id, driver_id, lat, lon, speed, heading, occupancy in seed
    ]


# ==================== IN-MEMORY ====================

class InMemoryStore:
    """
    Process-local store.

    Setting ``available`` to False makes every call raise
    ``StoreUnavailableError``, simulating a backend outage.
    """

    def __init__(
        self,
        routes: Optional[List[RouteTopology]] = None,
        vehicles: Optional[List[VehicleState]] = None,
    ):
        self.routes: Dict[str, RouteTopology] = {r.route_id: r for r in routes or []}
        self.vehicles: Dict[str, VehicleState] = {v.vehicle_id: v for v in vehicles or []}
        self.reports: List[ClientReport] = []
        self.available = True
        self.calls = 0

    @classmethod
    def with_demo_data(cls) -> "InMemoryStore":
        return cls(routes=demo_routes(), vehicles=demo_vehicles())

    def _check(self) -> None:
        self.calls += 1
        if not self.available:
            raise StoreUnavailableError("in-memory store is marked unavailable")

    async def load_routes(self) -> List[RouteTopology]:
        self._check()
        return list(self.routes.values())

    async def load_vehicles(self) -> List[VehicleState]:
        self._check()
        return list(self.vehicles.values())

    async def persist_vehicle_position(
        self,
        vehicle_id: str,
        position: Position,
        route_id: Optional[str] = None,
        status: Optional[VehicleStatus] = None,
    ) -> None:
        self._check()
        self.vehicles[vehicle_id] = _merge_position(
            self.vehicles.get(vehicle_id), vehicle_id, position, route_id, status
        )

    async def append_report(self, report: ClientReport) -> None:
        self._check()
        self.reports.append(report)


def _merge_position(
    existing: Optional[VehicleState],
    vehicle_id: str,
    position: Position,
    route_id: Optional[str],
    status: Optional[VehicleStatus],
) -> VehicleState:
    if existing is None:
        return VehicleState(
            vehicle_id=vehicle_id,
            route_id=route_id,
            position=position,
            status=status or VehicleStatus.INACTIVE,
            last_updated=position.timestamp,
        )

    update = {"position": position, "last_updated": position.timestamp}
    if route_id is not None:
        update["route_id"] = route_id
    if status is not None:
        update["status"] = status
    return existing.model_copy(update=update)


# ==================== REDIS ====================

class RedisStore:
    """
    Redis-backed store.

    Layout under ``prefix``:
        {prefix}:routes    hash  route_id -> RouteTopology JSON
        {prefix}:vehicles  hash  vehicle_id -> VehicleState JSON
        {prefix}:reports   list  ClientReport JSON, append order
    """

    def __init__(self, client=None, url: Optional[str] = None, prefix: str = "transitcast"):
        if client is None:
            if not url:
                raise ValueError("RedisStore needs a client or a url")
            client = redis.Redis.from_url(url, decode_responses=True)

        self.client = client
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        return cls(url=settings.redis_url, prefix=settings.redis_key_prefix)

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            raise StoreUnavailableError(f"redis ping failed: {e}") from e

    async def close(self) -> None:
        await self.client.aclose()

    async def seed(self, routes: List[RouteTopology], vehicles: List[VehicleState]) -> None:
        """Write routes and vehicles, replacing existing entries with the same ids."""
        try:
            if routes:
                await self.client.hset(
                    self._key("routes"),
                    mapping={route.route_id: route.to_json() for route in routes},
                )
            if vehicles:
                await self.client.hset(
                    self._key("vehicles"),
                    mapping={vehicle.vehicle_id: vehicle.to_json() for vehicle in vehicles},
                )
        except RedisError as e:
            raise StoreUnavailableError(f"redis seed failed: {e}") from e

        logger.info("Redis store seeded", routes=len(routes), vehicles=len(vehicles))

    async def load_routes(self) -> List[RouteTopology]:
        try:
            raw = await self.client.hgetall(self._key("routes"))
        except RedisError as e:
            raise StoreUnavailableError(f"redis load_routes failed: {e}") from e
        return [RouteTopology.from_json(value) for value in raw.values()]

    async def load_vehicles(self) -> List[VehicleState]:
        try:
            raw = await self.client.hgetall(self._key("vehicles"))
        except RedisError as e:
            raise StoreUnavailableError(f"redis load_vehicles failed: {e}") from e
        return [VehicleState.from_json(value) for value in raw.values()]

    async def persist_vehicle_position(
        self,
        vehicle_id: str,
        position: Position,
        route_id: Optional[str] = None,
        status: Optional[VehicleStatus] = None,
    ) -> None:
        key = self._key("vehicles")
        try:
            raw = await self.client.hget(key, vehicle_id)
            existing = VehicleState.from_json(raw) if raw else None
            merged = _merge_position(existing, vehicle_id, position, route_id, status)
            await self.client.hset(key, vehicle_id, merged.to_json())
        except RedisError as e:
            raise StoreUnavailableError(f"redis persist_vehicle_position failed: {e}") from e

    async def append_report(self, report: ClientReport) -> None:
        try:
            await self.client.rpush(self._key("reports"), report.to_json())
        except RedisError as e:
            raise StoreUnavailableError(f"redis append_report failed: {e}") from e

    async def reports(self, limit: int = 100) -> List[ClientReport]:
        try:
            raw = await self.client.lrange(self._key("reports"), -limit, -1)
        except RedisError as e:
            raise StoreUnavailableError(f"redis reports failed: {e}") from e
        return [ClientReport.from_json(value) for value in raw]
