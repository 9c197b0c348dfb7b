"""HTTP and WebSocket surface of the transitcast broker."""

from .app import WebSocketTransport, create_app

__all__ = ["WebSocketTransport", "create_app"]
