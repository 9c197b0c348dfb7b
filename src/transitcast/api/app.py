"""
FastAPI application for the transitcast broker.

REST endpoints expose the coordinator's operations and derived views; a
WebSocket endpoint turns each connected socket into a delivery target.

Features:
- Vehicle session lifecycle and position updates
- Client reports, including subscribe/unsubscribe
- Route metrics and per-stop arrival estimates
- Topic, queue and broker statistics
- Health and Prometheus metrics endpoints
- WebSocket transport with queued delivery on reconnect
"""

import json
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from ..config import BaseConfig, get_settings
from ..data.models import (
    ClientReport,
    Position,
    ReportKind,
    UpdateMetadata,
    utcnow,
)
from ..exceptions import InvalidInputError, StateConflictError, StoreUnavailableError
from ..realtime.coordinator import PublishStatus
from ..realtime.service import BroadcastService, build_service


logger = structlog.get_logger(__name__)


# ==================== REQUEST MODELS ====================

class SessionStart(BaseModel):
    route_id: str = Field(..., min_length=1)
    driver_id: Optional[str] = None
    position: Optional[Position] = None
    occupancy: int = Field(default=0, ge=0)
    capacity: Optional[int] = Field(default=None, ge=1)


class MaintenanceToggle(BaseModel):
    enabled: bool


class PositionUpdate(BaseModel):
    position: Position
    occupancy: Optional[int] = Field(default=None, ge=0)
    metadata: Optional[UpdateMetadata] = None
    originator_id: Optional[str] = None


# ==================== WEBSOCKET TRANSPORT ====================

class WebSocketTransport:
    """Delivers envelopes to connected WebSocket clients."""

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}

    def register(self, client_id: str, websocket: WebSocket) -> None:
        self.active_connections[client_id] = websocket
        logger.info("WebSocket registered", client_id=client_id)

    def unregister(self, client_id: str) -> None:
        if self.active_connections.pop(client_id, None) is not None:
            logger.info("WebSocket unregistered", client_id=client_id)

    async def send(self, client_id: str, envelope) -> bool:
        websocket = self.active_connections.get(client_id)
        if websocket is None:
            return False

        await websocket.send_text(json.dumps({"type": envelope.kind, "data": envelope.to_dict()}))
        return True

    async def send_control(self, client_id: str, message: Dict[str, Any]) -> None:
        websocket = self.active_connections.get(client_id)
        if websocket is not None:
            message.setdefault("timestamp", utcnow().isoformat())
            await websocket.send_text(json.dumps(message))


# ==================== APPLICATION ====================

def create_app(
    service: Optional[BroadcastService] = None,
    settings: Optional[BaseConfig] = None,
    simulate: bool = False,
) -> FastAPI:
    """Build the API around a broadcast service (a fresh one unless given)."""
    settings = settings or (service.settings if service else get_settings())
    if service is None:
        service = build_service(settings, transport=WebSocketTransport())

    coordinator = service.coordinator

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting transitcast API server", environment=settings.environment.value)
        await service.start(simulate=simulate)

        yield

        logger.info("Shutting down transitcast API server")
        await service.stop()

    app = FastAPI(
        title="transitcast API",
        description="Real-time vehicle state broadcast broker",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests and record their latency."""
        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000.0

        service.recorder.latency("http", duration_ms, path=request.url.path)
        logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 3),
        )
        return response

    # Health check endpoints
    @app.get("/health", tags=["Health"])
    async def health_check():
        health = settings.health_check()
        health["timestamp"] = utcnow().isoformat()
        health["services"] = {
            "retry_loop": "running" if service.retry_task.running else "stopped",
            "synthesizer": "running" if service.synthesizer.running else "stopped",
            "connected_clients": service.tracker.connection_count(),
            "pending_envelopes": service.queue.size(),
        }
        return health

    @app.get("/metrics", tags=["Health"])
    async def metrics():
        """Prometheus metrics endpoint."""
        if service.prometheus is None:
            return Response(content=b"", media_type=CONTENT_TYPE_LATEST)
        return Response(content=generate_latest(service.prometheus.registry), media_type=CONTENT_TYPE_LATEST)

    # Routes
    @app.get("/api/v1/routes", tags=["Routes"])
    async def get_routes() -> List[Dict[str, Any]]:
        return [route.to_dict() for route in coordinator.routes()]

    @app.get("/api/v1/routes/{route_id}", tags=["Routes"])
    async def get_route(route_id: str):
        route = coordinator.route(route_id)
        if route is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Route {route_id} not found")
        return route.to_dict()

    @app.get("/api/v1/routes/{route_id}/metrics", tags=["Routes"])
    async def get_route_metrics(route_id: str):
        metrics = coordinator.route_metrics(route_id)
        return {
            "route_id": route_id,
            "average_speed": metrics.average_speed,
            "total_occupancy": metrics.total_occupancy,
            "crowd_level": metrics.crowd_level.value,
            "active_vehicles": metrics.active_vehicles,
        }

    # Vehicles
    @app.get("/api/v1/vehicles", tags=["Vehicles"])
    async def get_vehicles(route_id: Optional[str] = None):
        return [vehicle.to_dict() for vehicle in coordinator.vehicles(route_id)]

    @app.get("/api/v1/vehicles/{vehicle_id}", tags=["Vehicles"])
    async def get_vehicle(vehicle_id: str):
        vehicle = coordinator.vehicle(vehicle_id)
        if vehicle is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Vehicle {vehicle_id} not found")
        return vehicle.to_dict()

    @app.get("/api/v1/vehicles/{vehicle_id}/etas", tags=["Vehicles"])
    async def get_vehicle_etas(vehicle_id: str):
        return [
            {
                "stop_id": eta.stop.stop_id,
                "name": eta.stop.name,
                "sequence": eta.stop.sequence,
                "eta_seconds": eta.eta.total_seconds(),
                "estimated_arrival": eta.estimated_arrival.isoformat(),
            }
            for eta in coordinator.stop_etas(vehicle_id)
        ]

    @app.post("/api/v1/vehicles/{vehicle_id}/session", tags=["Vehicles"], status_code=status.HTTP_201_CREATED)
    async def start_session(vehicle_id: str, body: SessionStart):
        state = coordinator.start_session(
            vehicle_id,
            body.route_id,
            driver_id=body.driver_id,
            position=body.position,
            occupancy=body.occupancy,
            capacity=body.capacity,
        )
        return state.to_dict()

    @app.delete("/api/v1/vehicles/{vehicle_id}/session", tags=["Vehicles"])
    async def end_session(vehicle_id: str):
        return coordinator.end_session(vehicle_id).to_dict()

    @app.put("/api/v1/vehicles/{vehicle_id}/maintenance", tags=["Vehicles"])
    async def set_maintenance(vehicle_id: str, body: MaintenanceToggle):
        return coordinator.set_maintenance(vehicle_id, body.enabled).to_dict()

    @app.post("/api/v1/vehicles/{vehicle_id}/position", tags=["Real-time"])
    async def submit_position(vehicle_id: str, body: PositionUpdate):
        result = await coordinator.submit_update(
            vehicle_id,
            body.position,
            occupancy=body.occupancy,
            metadata=body.metadata,
            originator_id=body.originator_id,
        )
        status_code = (
            status.HTTP_409_CONFLICT
            if result.status == PublishStatus.REJECTED
            else status.HTTP_202_ACCEPTED
        )
        return JSONResponse(status_code=status_code, content=result.to_dict())

    # Reports
    @app.post("/api/v1/reports", tags=["Real-time"], status_code=status.HTTP_202_ACCEPTED)
    async def submit_report(report: ClientReport):
        result = await coordinator.submit_report(report)
        return result.to_dict()

    # Statistics
    @app.get("/api/v1/topics", tags=["Statistics"])
    async def get_topics():
        return service.registry.stats()

    @app.get("/api/v1/queue", tags=["Statistics"])
    async def get_queue_stats():
        return service.queue.stats()

    @app.get("/api/v1/stats", tags=["Statistics"])
    async def get_stats():
        stats = coordinator.stats()
        stats["metrics"] = service.memory_metrics.summary()
        return stats

    # WebSocket
    @app.websocket("/api/v1/ws/{client_id}")
    async def websocket_endpoint(websocket: WebSocket, client_id: str):
        """WebSocket endpoint for real-time updates."""
        transport = coordinator.transport
        await websocket.accept()

        if not isinstance(transport, WebSocketTransport):
            await websocket.close(code=1011)
            return

        transport.register(client_id, websocket)
        try:
            await transport.send_control(client_id, {"type": "connection", "client_id": client_id})
            await coordinator.connect_client(client_id)

            while True:
                data = await websocket.receive_text()
                await _handle_client_message(client_id, data)

        except WebSocketDisconnect:
            logger.info("WebSocket client disconnected", client_id=client_id)
        finally:
            transport.unregister(client_id)
            coordinator.disconnect_client(client_id)

    async def _handle_client_message(client_id: str, data: str) -> None:
        transport = coordinator.transport
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            await transport.send_control(client_id, {"type": "error", "message": "Invalid JSON format"})
            return

        if not isinstance(message, dict):
            await transport.send_control(client_id, {"type": "error", "message": "Message must be a JSON object"})
            return

        message_type = message.pop("type", None)
        if message_type == "ping":
            await transport.send_control(client_id, {"type": "pong"})
            return

        if message_type in ("subscribe", "unsubscribe"):
            message = {
                "report_kind": message_type,
                "route_id": message.get("route_id"),
            }
        elif message_type != "report":
            await transport.send_control(
                client_id, {"type": "error", "message": f"Unknown message type {message_type!r}"}
            )
            return

        message["reporter_id"] = client_id
        try:
            result = await coordinator.submit_report(message)
        except InvalidInputError as e:
            await transport.send_control(client_id, {"type": "error", "message": str(e)})
            return

        kind = result.report.report_kind
        if kind in (ReportKind.SUBSCRIBE, ReportKind.UNSUBSCRIBE):
            await transport.send_control(client_id, {
                "type": "subscription",
                "route_id": result.report.route_id,
                "status": f"{kind.value}d" if result.subscription_changed else "unchanged",
            })
        else:
            await transport.send_control(client_id, {
                "type": "report_ack",
                "message_id": result.report.message_id,
                "stored": result.stored,
            })

    # Custom exception handlers
    @app.exception_handler(InvalidInputError)
    async def invalid_input_handler(request: Request, exc: InvalidInputError):
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid input", exc)

    @app.exception_handler(StateConflictError)
    async def state_conflict_handler(request: Request, exc: StateConflictError):
        return _error_response(status.HTTP_409_CONFLICT, "State conflict", exc)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Store unavailable", exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "status_code": exc.status_code,
                "timestamp": utcnow().isoformat(),
            },
        )

    return app


def _error_response(status_code: int, detail: str, exc: Exception) -> JSONResponse:
    logger.info("Request failed", status=status_code, error=str(exc))
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "message": str(exc),
            "status_code": status_code,
            "timestamp": utcnow().isoformat(),
        },
    )
