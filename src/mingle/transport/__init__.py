"""Transport layer for relay client connections.

Provides abstraction over the client channel so session bookkeeping and
routing stay independent of the socket library.
"""

from src.mingle.transport.base import Transport, TransportSession
from src.mingle.transport.websocket_transport import (
    WebSocketSession,
    WebSocketTransport,
)

__all__ = [
    "Transport",
    "TransportSession",
    "WebSocketSession",
    "WebSocketTransport",
]
