"""
Transitcast Data Module

Pydantic models for everything that flows through the broker and the
durable store boundary the broker reads from and writes to.

Usage:
    from transitcast.data import InMemoryStore, Position

    store = InMemoryStore.with_demo_data()
    routes = await store.load_routes()

    fix = Position(latitude=28.6139, longitude=77.2090, speed=25.0)
"""

from .models import (
    # Base classes
    BaseDataModel,
    utcnow,
    generate_message_id,

    # Geographic models
    Coordinate,
    Position,

    # Route topology
    RouteStop,
    RouteTopology,

    # Vehicles
    VehicleStatus,
    CrowdLevel,
    VehicleState,

    # Envelopes
    UpdateMetadata,
    ReportKind,
    ReportPayload,
    VehicleUpdate,
    ClientReport,
    Envelope,

    # Delivery
    QueuePriority,
    QoS,
    QueuedEnvelope,
    ConnectionState,

    # Metrics
    MetricKind,
    PerfMetric,
)

from .store import (
    DurableStore,
    InMemoryStore,
    RedisStore,
    demo_routes,
    demo_vehicles,
)

__all__ = [
    "BaseDataModel",
    "utcnow",
    "generate_message_id",
    "Coordinate",
    "Position",
    "RouteStop",
    "RouteTopology",
    "VehicleStatus",
    "CrowdLevel",
    "VehicleState",
    "UpdateMetadata",
    "ReportKind",
    "ReportPayload",
    "VehicleUpdate",
    "ClientReport",
    "Envelope",
    "QueuePriority",
    "QoS",
    "QueuedEnvelope",
    "ConnectionState",
    "MetricKind",
    "PerfMetric",
    "DurableStore",
    "InMemoryStore",
    "RedisStore",
    "demo_routes",
    "demo_vehicles",
]
