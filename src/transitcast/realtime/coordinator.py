"""
Broadcast coordinator.

Accepts driver updates and client reports, enriches updates through the
geospatial functions, resolves subscribers and routes one envelope per
subscriber either to immediate delivery or to the delivery queue.

Vehicle lifecycle:

    Unregistered --start_session--> Active
    Active --end_session--> Inactive --start_session--> Active
    Active|Inactive --set_maintenance(True)--> Maintenance
    Maintenance --set_maintenance(False)--> Active

Only Active vehicles broadcast. Updates for any other vehicle come back
as a REJECTED result and nothing is published.
"""

import asyncio
import threading
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import structlog
from pydantic import Field, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import BaseConfig, get_settings
from ..data.models import (
    BaseDataModel,
    ClientReport,
    Position,
    QoS,
    QueuedEnvelope,
    QueuePriority,
    ReportKind,
    RouteTopology,
    UpdateMetadata,
    VehicleState,
    VehicleStatus,
    VehicleUpdate,
)
from ..data.store import DurableStore
from ..exceptions import InvalidInputError, QueueFullError, StateConflictError, StoreUnavailableError
from . import geo
from .clock import Clock, SystemClock
from .connections import ConnectionTracker
from .delivery import DeliveryQueue
from .metrics import MetricsRecorder
from .topics import FEEDBACK_TOPIC, TopicRegistry, topic_name_for
from .transport import DeliveryAttempt, Transport, deliver_with_timeout


logger = structlog.get_logger(__name__)

REPORT_PRIORITY = {
    ReportKind.FEEDBACK: QueuePriority.LOW,
    ReportKind.BOARDING: QueuePriority.LOW,
    ReportKind.ALIGHTING: QueuePriority.LOW,
    ReportKind.CROWDING_REPORT: QueuePriority.NORMAL,
    ReportKind.DELAY_REPORT: QueuePriority.NORMAL,
}


class PublishStatus(str, Enum):
    PUBLISHED = "published"
    REJECTED = "rejected"


class BroadcastResult(BaseDataModel):
    """Outcome of one vehicle update."""

    status: PublishStatus
    vehicle_id: str
    envelope: Optional[VehicleUpdate] = None
    delivered: List[str] = Field(default_factory=list)
    queued: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)
    persisted: bool = False
    reason: Optional[str] = None
    store_error: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == PublishStatus.PUBLISHED


class ReportResult(BaseDataModel):
    """Outcome of one client report."""

    report: ClientReport
    subscription_changed: Optional[bool] = None
    stored: bool = False
    store_error: Optional[str] = None
    delivered: List[str] = Field(default_factory=list)
    queued: List[str] = Field(default_factory=list)
    dropped: List[str] = Field(default_factory=list)


@dataclass
class FanOut:
    delivered: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


@dataclass
class RetryCycleResult:
    delivered: int = 0
    requeued: int = 0
    retried: int = 0
    dropped: int = 0


class BroadcastCoordinator:
    """Owns vehicle state and drives the publish pipeline."""

    def __init__(
        self,
        registry: TopicRegistry,
        tracker: ConnectionTracker,
        queue: DeliveryQueue,
        transport: Transport,
        store: DurableStore,
        recorder: Optional[MetricsRecorder] = None,
        settings: Optional[BaseConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.registry = registry
        self.tracker = tracker
        self.queue = queue
        self.transport = transport
        self.store = store
        self.recorder = recorder or tracker.recorder
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

        self.crowd_thresholds = geo.CrowdThresholds(
            low_max=self.settings.crowd_low_max,
            medium_max=self.settings.crowd_medium_max,
        )
        self.traffic_bands = geo.TrafficBands(
            rush=self.settings.traffic_rush_factor,
            midday=self.settings.traffic_midday_factor,
            weekend=self.settings.traffic_weekend_factor,
        )

        self._lock = threading.RLock()
        self._routes: Dict[str, RouteTopology] = {}
        self._vehicles: Dict[str, VehicleState] = {}
        self._counters = Counter()

    # ==================== ROUTES AND VEHICLES ====================

    async def load_from_store(self) -> None:
        """Load routes and vehicles from the durable store."""
        routes = await self._store_call("load_routes")
        for route in routes:
            self.register_route(route)

        vehicles = await self._store_call("load_vehicles")
        with self._lock:
            for vehicle in vehicles:
                self._vehicles[vehicle.vehicle_id] = vehicle

        logger.info("Loaded network from store", routes=len(routes), vehicles=len(vehicles))

    def register_route(self, route: RouteTopology) -> None:
        with self._lock:
            self._routes[route.route_id] = route
        self.registry.ensure_topic(route.route_id)

    def route(self, route_id: str) -> Optional[RouteTopology]:
        with self._lock:
            return self._routes.get(route_id)

    def routes(self) -> List[RouteTopology]:
        with self._lock:
            return list(self._routes.values())

    def vehicle(self, vehicle_id: str) -> Optional[VehicleState]:
        with self._lock:
            return self._vehicles.get(vehicle_id)

    def vehicles(self, route_id: Optional[str] = None) -> List[VehicleState]:
        with self._lock:
            vehicles = list(self._vehicles.values())
        if route_id is not None:
            vehicles = [v for v in vehicles if v.route_id == route_id]
        return sorted(vehicles, key=lambda v: v.vehicle_id)

    def active_vehicles(self) -> List[VehicleState]:
        return [v for v in self.vehicles() if v.status == VehicleStatus.ACTIVE]

    # ==================== LIFECYCLE ====================

    def start_session(
        self,
        vehicle_id: str,
        route_id: str,
        driver_id: Optional[str] = None,
        position: Optional[Position] = None,
        occupancy: int = 0,
        capacity: Optional[int] = None,
    ) -> VehicleState:
        """
        Register ``vehicle_id`` on ``route_id`` and mark it Active.

        Raises:
            InvalidInputError: Unknown route or invalid vehicle data
            StateConflictError: Vehicle is already Active or in Maintenance
        """
        if self.route(route_id) is None:
            raise InvalidInputError(f"unknown route {route_id!r}")

        with self._lock:
            current = self._vehicles.get(vehicle_id)
            if current is not None and current.status != VehicleStatus.INACTIVE:
                raise StateConflictError(
                    f"vehicle {vehicle_id!r} is {current.status.value}, cannot start a session"
                )

            try:
                state = VehicleState(
                    vehicle_id=vehicle_id,
                    route_id=route_id,
                    driver_id=driver_id,
                    position=position if position is not None else (current.position if current else None),
                    status=VehicleStatus.ACTIVE,
                    occupancy=occupancy,
                    capacity=capacity or (current.capacity if current else self.settings.vehicle_capacity),
                    last_updated=self.clock.now(),
                )
            except ValidationError as e:
                raise InvalidInputError(str(e)) from e

            self._vehicles[vehicle_id] = state

        logger.info("Session started", vehicle_id=vehicle_id, route_id=route_id, driver_id=driver_id)
        return state

    def end_session(self, vehicle_id: str) -> VehicleState:
        """Move an Active vehicle to Inactive."""
        with self._lock:
            current = self._require_vehicle(vehicle_id)
            if current.status != VehicleStatus.ACTIVE:
                raise StateConflictError(
                    f"vehicle {vehicle_id!r} is {current.status.value}, no session to end"
                )
            state = self._set_status(current, VehicleStatus.INACTIVE)

        logger.info("Session ended", vehicle_id=vehicle_id)
        return state

    def set_maintenance(self, vehicle_id: str, enabled: bool) -> VehicleState:
        """
        Toggle the maintenance flag.

        Enabling is allowed from Active or Inactive; clearing it is the only
        way out of Maintenance and returns the vehicle to Active.
        """
        with self._lock:
            current = self._require_vehicle(vehicle_id)

            if enabled:
                if current.status == VehicleStatus.MAINTENANCE:
                    return current
                state = self._set_status(current, VehicleStatus.MAINTENANCE)
            else:
                if current.status != VehicleStatus.MAINTENANCE:
                    raise StateConflictError(f"vehicle {vehicle_id!r} is not in maintenance")
                state = self._set_status(current, VehicleStatus.ACTIVE)

        logger.info("Maintenance toggled", vehicle_id=vehicle_id, enabled=enabled, status=state.status.value)
        return state

    def _require_vehicle(self, vehicle_id: str) -> VehicleState:
        current = self._vehicles.get(vehicle_id)
        if current is None:
            raise StateConflictError(f"vehicle {vehicle_id!r} is not registered")
        return current

    def _set_status(self, current: VehicleState, status: VehicleStatus) -> VehicleState:
        state = current.model_copy(update={"status": status, "last_updated": self.clock.now()})
        self._vehicles[current.vehicle_id] = state
        return state

    # ==================== VEHICLE UPDATES ====================

    async def submit_update(
        self,
        vehicle_id: str,
        position: Union[Position, Dict[str, Any]],
        occupancy: Optional[int] = None,
        metadata: Union[UpdateMetadata, Dict[str, Any], None] = None,
        originator_id: Optional[str] = None,
    ) -> BroadcastResult:
        """
        Merge a raw fix into the vehicle's state and broadcast it.

        Raises:
            InvalidInputError: Malformed position, metadata or occupancy
        """
        started = time.perf_counter()
        position = _validated(Position, position)
        metadata = _validated(UpdateMetadata, metadata or {})
        now = self.clock.now()

        with self._lock:
            state = self._vehicles.get(vehicle_id)
            rejection = self._rejection_reason(vehicle_id, state)
            if rejection is not None:
                logger.info("Update rejected", vehicle_id=vehicle_id, reason=rejection)
                self._counters["rejected"] += 1
                return BroadcastResult(status=PublishStatus.REJECTED, vehicle_id=vehicle_id, reason=rejection)

            if occupancy is None:
                occupancy = state.occupancy
            if not 0 <= occupancy <= state.capacity:
                raise InvalidInputError(
                    f"occupancy {occupancy} outside 0..{state.capacity} for vehicle {vehicle_id!r}"
                )

            route = self._routes[state.route_id]
            previous = state.position
            bearing = None
            if previous is not None and geo.haversine_distance(previous, position) > 0:
                bearing = geo.initial_bearing(previous, position)

            heading = position.heading
            if heading is None:
                heading = bearing if bearing is not None else (previous.heading if previous else None)
            position = position.model_copy(update={"heading": heading})

            state = state.model_copy(
                update={"position": position, "occupancy": occupancy, "last_updated": now}
            )
            self._vehicles[vehicle_id] = state

        envelope = self._enrich(state, route, bearing, metadata, originator_id, now)
        priority = QueuePriority.HIGH if metadata.is_urgent else QueuePriority.NORMAL

        subscribers = self.registry.subscribers_of(route.route_id)
        fan_out = await self._fan_out(envelope, subscribers, priority, route.topic_name)

        self._counters["published"] += 1
        self.recorder.latency("publish", (time.perf_counter() - started) * 1000.0, route_id=route.route_id)
        self.recorder.throughput("publish", len(subscribers), route_id=route.route_id)

        persisted, store_error = True, None
        try:
            await self._store_call(
                "persist_vehicle_position", vehicle_id, position, route.route_id, state.status
            )
        except StoreUnavailableError as e:
            persisted, store_error = False, str(e)
            logger.error("Position not persisted", vehicle_id=vehicle_id, error=store_error)

        logger.debug(
            "Update published",
            vehicle_id=vehicle_id,
            envelope_id=envelope.message_id,
            delivered=len(fan_out.delivered),
            queued=len(fan_out.queued),
            priority=priority.value,
        )

        return BroadcastResult(
            status=PublishStatus.PUBLISHED,
            vehicle_id=vehicle_id,
            envelope=envelope,
            delivered=fan_out.delivered,
            queued=fan_out.queued,
            dropped=fan_out.dropped,
            persisted=persisted,
            store_error=store_error,
        )

    def _rejection_reason(self, vehicle_id: str, state: Optional[VehicleState]) -> Optional[str]:
        if state is None:
            return f"vehicle {vehicle_id!r} is not registered"
        if state.status != VehicleStatus.ACTIVE:
            return f"vehicle {vehicle_id!r} is {state.status.value}"
        if state.route_id is None or state.route_id not in self._routes:
            return f"vehicle {vehicle_id!r} has no known route"
        return None

    def _traffic_now(self, now: datetime) -> float:
        local = now + timedelta(hours=self.settings.traffic_utc_offset_hours)
        return geo.traffic_factor(local, self.traffic_bands)

    def _enrich(
        self,
        state: VehicleState,
        route: RouteTopology,
        bearing: Optional[float],
        metadata: UpdateMetadata,
        originator_id: Optional[str],
        now: datetime,
    ) -> VehicleUpdate:
        position = state.position
        nearest = geo.nearest_stop(position, route.stops)
        next_stop = route.stop_at(nearest.sequence + 1)

        eta_seconds = None
        if next_stop is not None:
            eta = geo.estimate_eta(
                position,
                next_stop,
                route.stops,
                speed_kmh=position.speed,
                default_speed_kmh=self.settings.default_speed_kmh,
                traffic=self._traffic_now(now),
                dwell_minutes_per_stop=self.settings.dwell_minutes_per_stop,
            )
            eta_seconds = eta.total_seconds()

        return VehicleUpdate(
            vehicle_id=state.vehicle_id,
            route_id=route.route_id,
            originator_id=originator_id or state.driver_id or state.vehicle_id,
            position=position,
            speed=position.speed,
            heading=position.heading,
            bearing=bearing,
            occupancy=state.occupancy,
            crowd_level=geo.crowd_level(state.occupancy, self.crowd_thresholds),
            progress=geo.route_progress(position, route.stops),
            nearest_stop_id=nearest.stop_id,
            next_stop_id=next_stop.stop_id if next_stop else None,
            next_stop_eta_seconds=eta_seconds,
            on_expected_path=geo.is_on_expected_path(position, position.heading, route.path),
            timestamp=now,
            metadata=metadata,
        )

    # ==================== CLIENT REPORTS ====================

    async def submit_report(self, report: Union[ClientReport, Dict[str, Any]]) -> ReportResult:
        """
        Process a client report.

        Subscribe and unsubscribe reports change topic membership and are
        not broadcast. Every other kind goes to the durable store and then
        to the feedback topic when that is enabled.
        """
        report = _validated(ClientReport, report)

        if report.report_kind == ReportKind.SUBSCRIBE:
            changed = self.registry.subscribe(report.route_id, report.reporter_id)
            return ReportResult(report=report, subscription_changed=changed)

        if report.report_kind == ReportKind.UNSUBSCRIBE:
            changed = self.registry.unsubscribe(report.route_id, report.reporter_id)
            return ReportResult(report=report, subscription_changed=changed)

        result = ReportResult(report=report)
        try:
            await self._store_call("append_report", report)
            result.stored = True
        except StoreUnavailableError as e:
            result.store_error = str(e)
            logger.error("Report not stored", message_id=report.message_id, error=str(e))

        if self.settings.feedback_topic_enabled:
            subscribers = self.registry.subscribers_of(FEEDBACK_TOPIC)
            fan_out = await self._fan_out(
                report,
                subscribers,
                REPORT_PRIORITY[report.report_kind],
                topic_name_for(FEEDBACK_TOPIC),
            )
            result.delivered = fan_out.delivered
            result.queued = fan_out.queued
            result.dropped = fan_out.dropped

        self._counters["reports"] += 1
        self.recorder.throughput("report", 1, kind=report.report_kind.value)
        return result

    # ==================== DELIVERY ====================

    async def _attempt(self, client_id: str, envelope) -> DeliveryAttempt:
        attempt = await deliver_with_timeout(
            self.transport, client_id, envelope, self.settings.delivery_timeout_seconds
        )
        if attempt.ok:
            self.tracker.record_sent(client_id)
            self.tracker.record_received(client_id, attempt.latency_ms)
            self.recorder.latency("deliver", attempt.latency_ms)
        return attempt

    def _enqueue(self, fan_out: FanOut, client_id: str, envelope, priority, topic, next_retry_at=None) -> None:
        try:
            self.queue.enqueue(
                client_id, envelope, priority=priority, target_topic=topic, next_retry_at=next_retry_at
            )
            fan_out.queued.append(client_id)
        except QueueFullError:
            fan_out.dropped.append(client_id)

    async def _fan_out(
        self,
        envelope,
        subscribers: Iterable[str],
        priority: QueuePriority,
        topic: str,
    ) -> FanOut:
        """Deliver to connected subscribers, queue for the rest and for failures."""
        fan_out = FanOut()
        subscribers = sorted(subscribers)
        connected = [c for c in subscribers if self.tracker.is_connected(c)]
        offline = [c for c in subscribers if c not in connected]

        next_retry_at = self.queue.next_retry_time(0, self.clock.now())
        attempts: Dict[str, DeliveryAttempt] = {}

        async def attempt_one(client_id: str) -> None:
            attempts[client_id] = await self._attempt(client_id, envelope)

        try:
            await asyncio.gather(*(attempt_one(c) for c in connected))
        except asyncio.CancelledError:
            # Every subscriber without a confirmed delivery keeps the envelope.
            for client_id in subscribers:
                attempt = attempts.get(client_id)
                if attempt is None or not attempt.ok:
                    self._enqueue(fan_out, client_id, envelope, priority, topic, next_retry_at)
            logger.warning(
                "Fan-out cancelled, undelivered envelopes queued",
                envelope_id=envelope.message_id,
                queued=len(fan_out.queued),
                dropped=len(fan_out.dropped),
            )
            raise

        for client_id in connected:
            if attempts[client_id].ok:
                fan_out.delivered.append(client_id)
            else:
                self._enqueue(fan_out, client_id, envelope, priority, topic, next_retry_at)

        for client_id in offline:
            self._enqueue(fan_out, client_id, envelope, priority, topic, next_retry_at)

        return fan_out

    async def _deliver_queued(
        self,
        entries: List[QueuedEnvelope],
        now: datetime,
        settled: Optional[Set[Tuple[str, str]]] = None,
    ) -> RetryCycleResult:
        """
        Deliver claimed entries in order; failures go back as retry copies.

        Each handled entry is added to ``settled`` by (client, envelope id).
        When cancelled, the entries not yet settled are restored to the
        queue unchanged before the cancellation propagates.
        """
        result = RetryCycleResult()
        settled = set() if settled is None else settled
        try:
            for entry in entries:
                attempt = await self._attempt(entry.client_id, entry.envelope)
                settled.add(_entry_key(entry))
                if attempt.ok:
                    self.queue.record_delivered()
                    result.delivered += 1
                    continue

                try:
                    retry = self.queue.requeue_failed(entry, now)
                except QueueFullError:
                    retry = None
                if retry is None:
                    result.dropped += 1
                else:
                    result.requeued += 1
        except asyncio.CancelledError:
            self._restore_unsettled(entries, settled)
            raise
        return result

    def _restore_unsettled(self, entries: Iterable[QueuedEnvelope], settled: Set[Tuple[str, str]]) -> None:
        pending = [entry for entry in entries if _entry_key(entry) not in settled]
        settled.update(_entry_key(entry) for entry in pending)
        if pending:
            self.queue.restore(pending)

    async def connect_client(self, client_id: str) -> RetryCycleResult:
        """Mark ``client_id`` connected and flush its queue in drain order."""
        self.tracker.on_connect(client_id)
        entries = self.queue.drain_for(client_id)
        result = await self._deliver_queued(entries, self.clock.now())

        if entries:
            logger.info(
                "Queued envelopes flushed",
                client_id=client_id,
                delivered=result.delivered,
                requeued=result.requeued,
            )
        return result

    def disconnect_client(self, client_id: str, forget: bool = False) -> None:
        """Mark ``client_id`` disconnected; ``forget`` also drops its subscriptions."""
        self.tracker.on_disconnect(client_id)
        if forget:
            self.registry.unsubscribe_all(client_id)

    async def run_retry_cycle(self, now: Optional[datetime] = None) -> RetryCycleResult:
        """One delivery-queue tick followed by delivery of the claimed entries."""
        now = now or self.clock.now()
        outcome = self.queue.tick(now)

        by_client: Dict[str, List[QueuedEnvelope]] = defaultdict(list)
        for entry in outcome.ready:
            by_client[entry.client_id].append(entry)

        settled: Set[Tuple[str, str]] = set()
        try:
            partials = await asyncio.gather(
                *(self._deliver_queued(entries, now, settled) for entries in by_client.values())
            )
        except asyncio.CancelledError:
            # Deliveries cancelled before they started never saw their entries.
            self._restore_unsettled(outcome.ready, settled)
            raise

        result = RetryCycleResult(retried=len(outcome.retried), dropped=len(outcome.dropped))
        for partial in partials:
            result.delivered += partial.delivered
            result.requeued += partial.requeued
            result.dropped += partial.dropped
        return result

    # ==================== DERIVED VIEWS ====================

    def route_metrics(self, route_id: str) -> geo.RouteMetrics:
        if self.route(route_id) is None:
            raise InvalidInputError(f"unknown route {route_id!r}")
        return geo.route_metrics(self.vehicles(route_id), self.crowd_thresholds)

    def stop_etas(self, vehicle_id: str) -> List[geo.StopEta]:
        state = self.vehicle(vehicle_id)
        if state is None or state.position is None:
            raise InvalidInputError(f"vehicle {vehicle_id!r} has no known position")

        route = self.route(state.route_id) if state.route_id else None
        if route is None:
            raise InvalidInputError(f"vehicle {vehicle_id!r} has no known route")

        now = self.clock.now()
        return geo.stop_etas(
            state.position,
            route.stops,
            now,
            speed_kmh=state.speed,
            default_speed_kmh=self.settings.default_speed_kmh,
            traffic=self._traffic_now(now),
            dwell_minutes_per_stop=self.settings.dwell_minutes_per_stop,
        )

    def stats(self) -> Dict[str, Any]:
        vehicles = self.vehicles()
        by_status = {status.value: 0 for status in VehicleStatus}
        for vehicle in vehicles:
            by_status[vehicle.status.value] += 1

        with self._lock:
            counters = dict(self._counters)

        return {
            "qos": QoS.AT_LEAST_ONCE.value,
            "routes": len(self.routes()),
            "vehicles": by_status,
            "published": counters.get("published", 0),
            "rejected": counters.get("rejected", 0),
            "reports": counters.get("reports", 0),
            "connected_clients": self.tracker.connection_count(),
            "topics": self.registry.stats(),
            "queue": self.queue.stats(),
        }

    # ==================== STORE ====================

    async def _store_call(self, operation: str, *args):
        """Call the durable store, retrying ``StoreUnavailableError`` per settings."""
        call = getattr(self.store, operation)
        result = None

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.store_retry_attempts),
            wait=wait_exponential(multiplier=self.settings.store_retry_wait_seconds, max=10),
            retry=retry_if_exception_type(StoreUnavailableError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "Retrying store call",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                result = await call(*args)

        return result


def _validated(model, value):
    """Coerce ``value`` into ``model``; validation failures become InvalidInputError."""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        raise InvalidInputError(str(e)) from e


def _entry_key(entry: QueuedEnvelope) -> Tuple[str, str]:
    return entry.client_id, entry.envelope_id
