"""WebSocket transport.

Each client holds one WebSocket to the relay. Every frame in either
direction is a JSON object sent as a text frame. A frame that is not gets
an ``error`` reply and is skipped; the client is never disconnected for it.
"""

import asyncio
import json
import logging
import ssl
from collections.abc import AsyncIterator, Callable
from typing import Any

import websockets
from websockets.asyncio.server import Server, ServerConnection
from websockets.protocol import State

from src.mingle.protocol import ErrorMessage, ServerMessage
from src.mingle.transport.base import Transport, TransportSession, new_session_id

logger = logging.getLogger(__name__)

# RFC 6455 registry: "Try Again Later"
CLOSE_TRY_AGAIN_LATER = 1013


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    """Decode one client frame into a JSON object.

    Raises:
        ValueError: With a reason fit to send back to the client
    """
    if not isinstance(raw, str):
        raise ValueError("Binary frames are not supported")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError("Message must be a JSON object")
    return data


class WebSocketSession(TransportSession):
    """A client's WebSocket as seen by the relay.

    The websockets handler coroutine owns the socket and parks on
    :meth:`wait_released` while the relay's session task uses it.
    """

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        self._ws = websocket
        self._id = session_id
        self._open = True
        self._released = asyncio.Event()

    @property
    def session_id(self) -> str:
        return self._id

    @property
    def remote_address(self) -> Any:
        return self._ws.remote_address

    @property
    def is_connected(self) -> bool:
        return self._open and self._ws.state is State.OPEN

    async def send_message(self, message: ServerMessage) -> None:
        if not self.is_connected:
            raise ConnectionError(f"Session {self._id} is not open")

        try:
            await self._ws.send(message.to_json())
        except websockets.exceptions.ConnectionClosed as e:
            self._open = False
            raise ConnectionError(f"Session {self._id} dropped: {e}") from e

    async def receive_messages(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for raw in self._ws:
                try:
                    data = decode_frame(raw)
                except ValueError as e:
                    logger.warning(
                        "Rejected client frame",
                        extra={"session_id": self._id, "error": str(e)},
                    )
                    await self._reject(str(e))
                    continue
                yield data

        except websockets.exceptions.ConnectionClosed as e:
            logger.debug(
                "Client socket closed",
                extra={"session_id": self._id, "code": e.rcvd.code if e.rcvd else None},
            )
        finally:
            self._open = False

    async def _reject(self, reason: str) -> None:
        try:
            await self.send_message(ErrorMessage(message=reason))
        except ConnectionError:
            # The receive loop notices the closed socket next.
            pass

    async def close(self) -> None:
        self._open = False
        if self._ws.state in (State.CLOSING, State.CLOSED):
            return

        try:
            await self._ws.close()
        except Exception as e:
            logger.warning(
                "Error closing client socket",
                extra={"session_id": self._id, "error": str(e)},
            )

    def release(self) -> None:
        self._released.set()

    async def wait_released(self) -> None:
        await self._released.wait()


class WebSocketTransport(Transport):
    """websockets server feeding accepted sessions to the relay.

    Args:
        host: Bind address
        port: Bind port; 0 lets the OS pick one (see :attr:`port`)
        max_connections: Clients beyond this are closed with 1013
        max_message_bytes: Frames larger than this close the connection
        session_id_factory: Names each accepted session
        ssl_context: Serve wss:// with this context instead of ws://
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 3000,
        max_connections: int = 100,
        max_message_bytes: int = 64 * 1024,
        session_id_factory: Callable[[], str] = new_session_id,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.host = host
        self._requested_port = port
        self.max_connections = max_connections
        self.max_message_bytes = max_message_bytes
        self._new_id = session_id_factory
        self.ssl_context = ssl_context

        self._server: Server | None = None
        self._accepted: asyncio.Queue[WebSocketSession] = asyncio.Queue()
        self._live: dict[str, WebSocketSession] = {}

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        """Bound port once started, the requested one before."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._requested_port

    @property
    def active_sessions(self) -> int:
        return len(self._live)

    async def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("WebSocket transport is already running")

        try:
            self._server = await websockets.serve(
                self._admit,
                self.host,
                self._requested_port,
                max_size=self.max_message_bytes,
                ssl=self.ssl_context,
            )
        except OSError as e:
            logger.error(
                "Cannot bind relay socket",
                extra={"host": self.host, "port": self._requested_port, "error": str(e)},
            )
            raise

        logger.info(
            "Relay listening",
            extra={
                "host": self.host,
                "port": self.port,
                "max_connections": self.max_connections,
                "tls": self.ssl_context is not None,
            },
        )

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return

        logger.info("Relay socket closing", extra={"sessions": len(self._live)})
        for session in list(self._live.values()):
            await session.close()
            session.release()

        server.close()
        await server.wait_closed()

    async def accept_session(self) -> TransportSession:
        if self._server is None:
            raise RuntimeError("WebSocket transport is not running")
        return await self._accepted.get()

    async def _admit(self, websocket: ServerConnection) -> None:
        if len(self._live) >= self.max_connections:
            logger.warning(
                "Relay full, turning client away",
                extra={"remote": websocket.remote_address, "limit": self.max_connections},
            )
            await websocket.close(CLOSE_TRY_AGAIN_LATER, "relay full")
            return

        session = WebSocketSession(websocket, self._new_id())
        self._live[session.session_id] = session
        logger.debug(
            "Client socket accepted",
            extra={"session_id": session.session_id, "remote": websocket.remote_address},
        )

        try:
            await self._accepted.put(session)
            # Returning would close the socket under the relay's session task.
            await session.wait_released()
        finally:
            del self._live[session.session_id]
