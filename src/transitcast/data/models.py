"""
Data models for the transitcast broker.

This module provides Pydantic models for all data structures that flow
through the broadcast pipeline:
- Geographic models (coordinates, timestamped positions)
- Route topology (ordered stops and path polyline)
- Vehicle state owned by the coordinator
- Envelopes (vehicle updates and client reports)
- Delivery queue entries and connection state
- Performance metrics

Positions, queue entries and connection states are immutable values:
they are replaced wholesale, never patched in place.
"""

import itertools
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Optional, Dict, List, Any, Union, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


# Topic carrying rider feedback; no route may claim this id.
FEEDBACK_TOPIC = "feedback"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


_id_counter = itertools.count()


def generate_message_id(prefix: str = "msg") -> str:
    """
    Generate a process-unique message identifier.

    The id combines the monotonic clock in nanoseconds with a process-wide
    counter, so two ids generated in the same clock tick still differ.
    """
    return f"{prefix}_{time.monotonic_ns()}_{next(_id_counter)}"


class BaseDataModel(BaseModel):
    """Base model with common functionality for all data models."""

    model_config = ConfigDict(
        validate_assignment=True,
        populate_by_name=True,
    )

    def to_json(self, **kwargs) -> str:
        """Export model to JSON string."""
        return self.model_dump_json(by_alias=True, exclude_none=True, **kwargs)

    def to_dict(self, **kwargs) -> Dict[str, Any]:
        """Export model to a JSON-compatible dictionary."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, **kwargs)

    @classmethod
    def from_json(cls, json_str: str):
        """Create model instance from JSON string."""
        return cls.model_validate_json(json_str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create model instance from dictionary."""
        return cls.model_validate(data)


# ==================== GEOGRAPHIC DATA MODELS ====================

class Coordinate(BaseDataModel):
    """Geographic coordinate in decimal degrees."""

    model_config = ConfigDict(frozen=True)

    latitude: float = Field(
        ...,
        ge=-90.0,
        le=90.0,
        allow_inf_nan=False,
        description="Latitude in decimal degrees (-90 to 90)"
    )
    longitude: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        allow_inf_nan=False,
        description="Longitude in decimal degrees (-180 to 180)"
    )


class Position(Coordinate):
    """A timestamped vehicle fix with optional motion data."""

    speed: Optional[float] = Field(
        None,
        ge=0.0,
        allow_inf_nan=False,
        description="Speed in km/h"
    )
    heading: Optional[float] = Field(
        None,
        ge=0.0,
        lt=360.0,
        allow_inf_nan=False,
        description="Heading in degrees [0, 360)"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="Time of the fix"
    )

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)


# ==================== ROUTE TOPOLOGY ====================

class RouteStop(BaseDataModel):
    """A stop on a route."""

    model_config = ConfigDict(frozen=True)

    stop_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    position: Coordinate
    sequence: int = Field(..., ge=1, description="1-based order along the route")
    is_terminal: bool = False

    @property
    def latitude(self) -> float:
        return self.position.latitude

    @property
    def longitude(self) -> float:
        return self.position.longitude


class RouteTopology(BaseDataModel):
    """Ordered stops plus the path polyline of a route."""

    model_config = ConfigDict(frozen=True)

    route_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(default="", max_length=255)
    stops: List[RouteStop] = Field(..., description="Stops ordered by sequence")
    path: List[Coordinate] = Field(
        default_factory=list,
        description="Polyline denser than the stop list"
    )

    @field_validator("route_id")
    @classmethod
    def reject_reserved_id(cls, v: str) -> str:
        if v == FEEDBACK_TOPIC:
            raise ValueError(f"route id '{FEEDBACK_TOPIC}' is reserved for the feedback topic")
        return v

    @field_validator("stops")
    @classmethod
    def sort_stops(cls, v: List[RouteStop]) -> List[RouteStop]:
        return sorted(v, key=lambda stop: stop.sequence)

    @model_validator(mode="after")
    def validate_stop_sequence(self):
        """Require contiguous sequencing from 1 and terminal end stops."""
        if len(self.stops) < 2:
            raise ValueError("a route needs at least 2 stops")

        sequences = [stop.sequence for stop in self.stops]
        if sequences != list(range(1, len(self.stops) + 1)):
            raise ValueError(f"stop sequence must be contiguous from 1, got {sequences}")

        if not (self.stops[0].is_terminal and self.stops[-1].is_terminal):
            raise ValueError("first and last stops must be terminal")

        stop_ids = [stop.stop_id for stop in self.stops]
        if len(set(stop_ids)) != len(stop_ids):
            raise ValueError("stop ids must be unique within a route")

        return self

    @property
    def topic_name(self) -> str:
        return f"route_{self.route_id}"

    def stop(self, stop_id: str) -> Optional[RouteStop]:
        for stop in self.stops:
            if stop.stop_id == stop_id:
                return stop
        return None

    def stop_at(self, sequence: int) -> Optional[RouteStop]:
        if 1 <= sequence <= len(self.stops):
            return self.stops[sequence - 1]
        return None


# ==================== VEHICLE STATE ====================

class VehicleStatus(str, Enum):
    """Operational status of a vehicle."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


class CrowdLevel(str, Enum):
    """Discretized occupancy classification."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VehicleState(BaseDataModel):
    """Current state of one vehicle, owned by the coordinator."""

    model_config = ConfigDict(frozen=True)

    vehicle_id: str = Field(..., min_length=1, max_length=255)
    route_id: Optional[str] = None
    driver_id: Optional[str] = None
    position: Optional[Position] = None
    status: VehicleStatus = VehicleStatus.INACTIVE
    occupancy: int = Field(default=0, ge=0)
    capacity: int = Field(default=50, ge=1)
    last_updated: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_occupancy(self):
        if self.occupancy > self.capacity:
            raise ValueError(
                f"occupancy {self.occupancy} exceeds capacity {self.capacity}"
            )
        return self

    @property
    def speed(self) -> Optional[float]:
        return self.position.speed if self.position else None


# ==================== ENVELOPES ====================

class UpdateMetadata(BaseDataModel):
    """
    Metadata attached to a vehicle update.

    Recognized keys are declared as fields; unknown keys are kept as
    extras so newer producers can pass them through untouched.
    """

    model_config = ConfigDict(extra="allow")

    emergency: bool = False
    alert: Optional[str] = None
    source: Optional[str] = None
    driver_note: Optional[str] = None

    @property
    def is_urgent(self) -> bool:
        return self.emergency or bool(self.alert)


class ReportKind(str, Enum):
    """Kinds of client report."""
    BOARDING = "boarding"
    ALIGHTING = "alighting"
    CROWDING_REPORT = "crowding-report"
    DELAY_REPORT = "delay-report"
    FEEDBACK = "feedback"
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class ReportPayload(BaseDataModel):
    """
    Payload of a client report.

    rating/comment apply to feedback, crowd_level to crowding reports,
    delay_minutes to delay reports and stop_id to boarding/alighting.
    """

    model_config = ConfigDict(extra="allow")

    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)
    crowd_level: Optional[CrowdLevel] = None
    delay_minutes: Optional[float] = Field(None, ge=0.0)
    stop_id: Optional[str] = None


class VehicleUpdate(BaseDataModel):
    """An enriched vehicle position broadcast to route subscribers."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["vehicle_update"] = "vehicle_update"
    message_id: str = Field(default_factory=lambda: generate_message_id("drv"))
    vehicle_id: str
    route_id: str
    originator_id: str
    position: Position
    speed: Optional[float] = None
    heading: Optional[float] = None
    bearing: Optional[float] = Field(None, description="Bearing of travel since the previous fix")
    occupancy: int = Field(..., ge=0)
    crowd_level: CrowdLevel
    progress: float = Field(..., ge=0.0, le=1.0)
    nearest_stop_id: str
    next_stop_id: Optional[str] = None
    next_stop_eta_seconds: Optional[float] = Field(None, ge=0.0)
    on_expected_path: bool = True
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: UpdateMetadata = Field(default_factory=UpdateMetadata)


class ClientReport(BaseDataModel):
    """A report sent by a passenger client."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["client_report"] = "client_report"
    message_id: str = Field(default_factory=lambda: generate_message_id("psg"))
    reporter_id: str = Field(..., min_length=1)
    vehicle_id: Optional[str] = None
    route_id: Optional[str] = None
    report_kind: ReportKind
    payload: ReportPayload = Field(default_factory=ReportPayload)
    timestamp: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_route_for_subscription(self):
        if self.report_kind in (ReportKind.SUBSCRIBE, ReportKind.UNSUBSCRIBE) and not self.route_id:
            raise ValueError(f"{self.report_kind.value} reports require a route_id")
        return self


Envelope = Annotated[Union[VehicleUpdate, ClientReport], Field(discriminator="kind")]


# ==================== DELIVERY ====================

class QueuePriority(str, Enum):
    """Delivery priority tiers, drained high first."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    QueuePriority.HIGH: 0,
    QueuePriority.NORMAL: 1,
    QueuePriority.LOW: 2,
}


class QoS(str, Enum):
    """Delivery guarantee classes. The broker implements AT_LEAST_ONCE."""
    AT_MOST_ONCE = "at_most_once"
    AT_LEAST_ONCE = "at_least_once"
    EXACTLY_ONCE = "exactly_once"


class QueuedEnvelope(BaseDataModel):
    """An envelope pending delivery to one client."""

    model_config = ConfigDict(frozen=True)

    envelope: Envelope
    client_id: str
    target_topic: Optional[str] = None
    queued_at: datetime = Field(default_factory=utcnow)
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: Optional[datetime] = None
    priority: QueuePriority = QueuePriority.NORMAL
    sequence: int = Field(default=0, ge=0, description="Enqueue order, breaks queued_at ties")

    @property
    def envelope_id(self) -> str:
        return self.envelope.message_id

    def with_retry(self, next_retry_at: datetime) -> "QueuedEnvelope":
        """Copy with the retry counter advanced; the original is untouched."""
        return self.model_copy(
            update={"retry_count": self.retry_count + 1, "next_retry_at": next_retry_at}
        )

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at is None or self.next_retry_at <= now

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or utcnow()) - self.queued_at

    def sort_key(self):
        return (self.priority.rank, self.queued_at, self.sequence)


class ConnectionState(BaseDataModel):
    """Connectivity and counters for one client."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    is_connected: bool = False
    connected_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    messages_received: int = Field(default=0, ge=0)
    messages_sent: int = Field(default=0, ge=0)
    average_latency_ms: float = Field(default=0.0, ge=0.0)

    def connection_duration(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        """Duration of the current or last connection; None if never connected."""
        if self.connected_at is None:
            return None
        if self.is_connected:
            return (now or utcnow()) - self.connected_at
        end = self.disconnected_at or now or utcnow()
        return end - self.connected_at


# ==================== PERFORMANCE METRICS ====================

class MetricKind(str, Enum):
    """Kinds of performance metric."""
    LATENCY = "latency"
    THROUGHPUT = "throughput"
    QUEUE_SIZE = "queue-size"
    DROP_RATE = "drop-rate"
    CONNECTION_COUNT = "connection-count"


class PerfMetric(BaseDataModel):
    """A single observation on the metrics stream."""

    model_config = ConfigDict(frozen=True)

    metric_id: str = Field(default_factory=lambda: generate_message_id("perf"))
    kind: MetricKind
    operation: str
    value: float
    unit: str = "ms"
    timestamp: datetime = Field(default_factory=utcnow)
    tags: Dict[str, Any] = Field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.operation}: {self.value:.2f}{self.unit}"


