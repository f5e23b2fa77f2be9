"""Client side of the relay connection.

Drives one participant: announces its transform at a fixed rate, keeps the
remote avatar table current, and feeds signalling frames to the peer mesh
negotiator. Reconnection after a lost relay is left to the caller.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import websockets
from pydantic import ValidationError

from src.mingle.client.avatars import RemoteAvatarTable
from src.mingle.client.media import LocalMedia
from src.mingle.client.negotiator import PeerMeshNegotiator
from src.mingle.config import ClientConfig
from src.mingle.protocol import (
    ClientCountMessage,
    DisconnectClientMessage,
    ErrorMessage,
    IceCandidateEvent,
    PositionBroadcast,
    PositionUpdate,
    RtcAnswerEvent,
    RtcOfferEvent,
    SessionStartMessage,
    SignalRequest,
    Vec3,
    parse_server_message,
)

logger = logging.getLogger(__name__)

TransformSource = Callable[[], PositionUpdate]


def stationary_transform() -> PositionUpdate:
    return PositionUpdate(position=Vec3(), rotation=Vec3())


class RelayClient:
    """One participant's connection to the relay.

    Args:
        config: Client configuration
        transform_source: Returns the current local transform on every tick
        media: Shared local media; None means receive-only
        peer_connection_factory: Passed through to the negotiator
        on_remote_track: Called as ``on_remote_track(remote_id, track)``
        on_remote_closed: Called with the remote id when its media link closes

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: ClientConfig,
        transform_source: TransformSource | None = None,
        media: LocalMedia | None = None,
        peer_connection_factory: Callable[[], Any] | None = None,
        on_remote_track: Callable[[str, Any], None] | None = None,
        on_remote_closed: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config
        self.transform_source = transform_source or stationary_transform
        self.media = media
        self._pc_factory = peer_connection_factory
        self.on_remote_track = on_remote_track
        self.on_remote_closed = on_remote_closed

        self.session_id: str | None = None
        self.client_count = 0
        self.self_echoes = 0
        self.avatars = RemoteAvatarTable()
        self.negotiator: PeerMeshNegotiator | None = None

        self._websocket: Any = None
        self._sender: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    async def run(self) -> str:
        """Connect to the relay and participate until the connection ends.

        Returns:
            Why the session ended

        Raises:
            OSError: If the relay cannot be reached
        """
        async with websockets.connect(self.config.relay_url) as websocket:
            logger.info("Connected to relay", extra={"url": self.config.relay_url})
            return await self.serve_connection(websocket)

    async def serve_connection(self, websocket: Any) -> str:
        """Run the receive loop over an open relay connection."""
        self._websocket = websocket
        reason = "relay closed the connection"

        try:
            async for raw_message in websocket:
                data = self._decode(raw_message)
                if data is not None:
                    await self.handle_message(data)

        except websockets.exceptions.ConnectionClosed as e:
            reason = f"relay connection lost: {e}"
        finally:
            self._websocket = None
            await self._stop_sender()
            await self._teardown()

        logger.info("Relay session ended", extra={"session_id": self.session_id, "reason": reason})
        return reason

    async def send(self, message: PositionUpdate | SignalRequest) -> None:
        """Send one frame to the relay.

        Raises:
            ConnectionError: If there is no open relay connection
        """
        if self._websocket is None:
            raise ConnectionError("Not connected to relay")

        try:
            await self._websocket.send(message.to_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Relay connection closed: {e}") from e

    def _decode(self, raw_message: Any) -> dict[str, Any] | None:
        if not isinstance(raw_message, str):
            logger.warning("Ignoring non-text frame from relay")
            return None
        try:
            data = json.loads(raw_message)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring invalid JSON from relay", extra={"error": str(e)})
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring non-object frame from relay")
            return None
        return data

    async def handle_message(self, data: dict[str, Any]) -> None:
        """Apply one decoded relay frame."""
        try:
            message = parse_server_message(data)
        except ValidationError as e:
            logger.warning(
                "Ignoring unrecognised relay frame",
                extra={"type": data.get("type"), "error": str(e)},
            )
            return

        if isinstance(message, SessionStartMessage):
            self._on_session_start(message.session_id)
            return

        negotiator = self.negotiator
        if negotiator is None:
            logger.warning("Frame before session start dropped", extra={"type": message.type})
            return

        if isinstance(message, PositionBroadcast):
            self._on_position(negotiator, message)

        elif isinstance(message, DisconnectClientMessage):
            await negotiator.handle_departure(message.id)
            self.avatars.remove(message.id)

        elif isinstance(message, ClientCountMessage):
            self.client_count = message.count
            logger.info("Participants online", extra={"count": message.count})

        elif isinstance(message, RtcOfferEvent):
            negotiator.handle_offer(message.sender, message.offer)

        elif isinstance(message, RtcAnswerEvent):
            negotiator.handle_answer(message.sender, message.answer)

        elif isinstance(message, IceCandidateEvent):
            negotiator.handle_ice_candidate(message.sender, message.candidate)

        elif isinstance(message, ErrorMessage):
            logger.warning(
                "Relay reported an error",
                extra={"code": message.code, "error_message": message.message},
            )

    def _on_session_start(self, session_id: str) -> None:
        if self.session_id is not None:
            logger.warning(
                "Duplicate session start ignored",
                extra={"session_id": self.session_id, "offered": session_id},
            )
            return

        self.session_id = session_id
        self.negotiator = PeerMeshNegotiator(
            local_id=session_id,
            send_signal=self.send,
            media=self.media,
            ice_servers=self.config.ice_servers,
            negotiation_timeout_s=self.config.negotiation_timeout_s,
            retry_cooldown_s=self.config.retry_cooldown_s,
            peer_connection_factory=self._pc_factory,
            on_track=self._on_track,
            on_link_closed=self._on_link_closed,
        )

        if self.media is not None:
            self.media.start()
        self._sender = asyncio.create_task(self._send_transforms(), name="transform-sender")
        logger.info("Session started", extra={"session_id": session_id})

    def _on_position(self, negotiator: PeerMeshNegotiator, message: PositionBroadcast) -> None:
        # The relay echoes our own updates back to us.
        if message.id == self.session_id:
            self.self_echoes += 1
            return

        self.avatars.upsert(message)
        negotiator.discover(message.id)

    def _on_track(self, remote_id: str, track: Any) -> None:
        self.avatars.attach_track(remote_id, track)
        if self.on_remote_track is not None:
            self.on_remote_track(remote_id, track)

    def _on_link_closed(self, remote_id: str) -> None:
        # The avatar itself goes only on departure; a replaced link keeps it.
        self.avatars.detach_tracks(remote_id)
        if self.on_remote_closed is not None:
            self.on_remote_closed(remote_id)

    async def _send_transforms(self) -> None:
        interval = self.config.transform_interval_s
        try:
            while True:
                await self.send(self.transform_source())
                await asyncio.sleep(interval)
        except ConnectionError as e:
            logger.info("Transform sender stopped", extra={"error": str(e)})

    async def _stop_sender(self) -> None:
        if self._sender is None:
            return
        self._sender.cancel()
        try:
            await self._sender
        except asyncio.CancelledError:
            pass
        self._sender = None

    async def _teardown(self) -> None:
        if self.negotiator is not None:
            await self.negotiator.close_all()
        self.avatars.clear()
        self.client_count = 0

    async def close(self) -> None:
        """Release local media once the client is done for good."""
        if self.media is not None:
            await self.media.stop()
