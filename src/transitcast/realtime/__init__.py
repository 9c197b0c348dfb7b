"""
Realtime broadcast pipeline.

Usage:
    from transitcast.realtime import build_service

    service = build_service()
    await service.start(simulate=True)
    await service.coordinator.submit_report(
        {"reporter_id": "c1", "report_kind": "subscribe", "route_id": "route_1"}
    )
"""

from .clock import Clock, ManualClock, SystemClock
from .connections import ConnectionTracker
from .coordinator import BroadcastCoordinator, BroadcastResult, PublishStatus, ReportResult
from .delivery import DeliveryQueue, DropReason, TickOutcome
from .metrics import (
    CompositeMetricsSink,
    InMemoryMetricsSink,
    MetricsRecorder,
    PrometheusMetricsSink,
)
from .service import BroadcastService, build_service
from .synthesizer import PerturbationBounds, StateSynthesizer
from .topics import FEEDBACK_TOPIC, Topic, TopicRegistry
from .transport import DeliveryOutcome, InMemoryTransport, deliver_with_timeout

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "ConnectionTracker",
    "BroadcastCoordinator",
    "BroadcastResult",
    "PublishStatus",
    "ReportResult",
    "DeliveryQueue",
    "DropReason",
    "TickOutcome",
    "CompositeMetricsSink",
    "InMemoryMetricsSink",
    "MetricsRecorder",
    "PrometheusMetricsSink",
    "BroadcastService",
    "build_service",
    "PerturbationBounds",
    "StateSynthesizer",
    "FEEDBACK_TOPIC",
    "Topic",
    "TopicRegistry",
    "DeliveryOutcome",
    "InMemoryTransport",
    "deliver_with_timeout",
]
