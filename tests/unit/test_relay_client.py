"""Unit tests for the client side of the relay connection."""

import asyncio
import json
from typing import Any

import pytest
import websockets

from src.mingle.client.negotiator import LinkState
from src.mingle.client.relay_client import RelayClient, stationary_transform
from src.mingle.config import ClientConfig
from src.mingle.protocol import (
    ClientCountMessage,
    DisconnectClientMessage,
    ErrorMessage,
    IceCandidateEvent,
    IceCandidatePayload,
    PositionBroadcast,
    PositionUpdate,
    RtcOfferEvent,
    SessionDescription,
    SessionStartMessage,
    Vec3,
)
from tests.helpers.fake_peer import FakePeerConnection, FakeTrack, candidate_payload
from tests.helpers.mock_session import wait_for


class FakeWebSocket:
    """Client connection double: feed relay frames in, read client frames out."""

    def __init__(self) -> None:
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[dict[str, Any]] = []

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def feed(self, message: Any) -> None:
        self._incoming.put_nowait(message.to_json() if hasattr(message, "to_json") else message)

    def close_normally(self) -> None:
        self._incoming.put_nowait(None)

    def drop(self) -> None:
        self._incoming.put_nowait(websockets.exceptions.ConnectionClosedError(None, None))

    def sent_of(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == message_type]


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(transform_interval_s=0.01, negotiation_timeout_s=5.0)


@pytest.fixture
async def connected(config: ClientConfig) -> Any:
    """A client that has received its session id ("bob")."""
    client = RelayClient(config, peer_connection_factory=FakePeerConnection)
    websocket = FakeWebSocket()
    task = asyncio.create_task(client.serve_connection(websocket))
    websocket.feed(SessionStartMessage(session_id="bob"))
    await wait_for(lambda: client.session_id == "bob")
    yield client, websocket
    websocket.close_normally()
    await asyncio.wait_for(task, timeout=2.0)


class TestSessionStart:
    """Identity assignment and the transform sender."""

    async def test_session_start_creates_negotiator(self, connected: Any) -> None:
        client, _ = connected
        assert client.negotiator is not None
        assert client.negotiator.local_id == "bob"
        assert client.connected

    async def test_transforms_sent_periodically(self, connected: Any) -> None:
        _, websocket = connected
        await wait_for(lambda: len(websocket.sent_of("position")) >= 3)

        frame = websocket.sent_of("position")[0]
        assert frame == {
            "type": "position",
            "position": {"x": 0.0, "y": 0.0, "z": 0.0},
            "rotation": {"x": 0.0, "y": 0.0, "z": 0.0},
        }

    async def test_frames_before_session_start_dropped(self, config: ClientConfig) -> None:
        client = RelayClient(config, peer_connection_factory=FakePeerConnection)

        await client.handle_message({"type": "position", "id": "alice"})

        assert len(client.avatars) == 0
        assert client.negotiator is None

    async def test_duplicate_session_start_ignored(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message({"type": "session_start", "session_id": "other"})
        assert client.session_id == "bob"


class TestPositions:
    """Self-filter and discovery from transforms."""

    async def test_own_echo_ignored(self, connected: Any) -> None:
        """Replaying our own broadcast any number of times has no effect."""
        client, _ = connected
        echo = PositionBroadcast(id="bob", position=Vec3(x=1)).model_dump(by_alias=True)

        for _ in range(5):
            await client.handle_message(echo)

        assert len(client.avatars) == 0
        assert client.negotiator.links == {}
        assert client.self_echoes == 5

    async def test_remote_position_creates_avatar_and_link(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message(
            PositionBroadcast(id="alice", position=Vec3(x=1, y=0, z=0)).model_dump()
        )

        avatar = client.avatars.get("alice")
        assert avatar is not None
        assert avatar.position == Vec3(x=1, y=0, z=0)
        link = client.negotiator.link("alice")
        assert link is not None
        assert link.initiator is False

    async def test_lower_id_peer_gets_offer(self, connected: Any) -> None:
        client, websocket = connected
        await client.handle_message(PositionBroadcast(id="carol").model_dump())

        await wait_for(lambda: websocket.sent_of("rtc_offer"))
        [offer] = websocket.sent_of("rtc_offer")
        assert offer["to"] == "carol"
        assert offer["offer"]["type"] == "offer"


class TestPresence:
    """Count and departure frames."""

    async def test_client_count(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message(ClientCountMessage(count=3).model_dump())
        assert client.client_count == 3

    async def test_departure_removes_link_and_avatar(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message(PositionBroadcast(id="alice").model_dump())
        link = client.negotiator.link("alice")

        await client.handle_message(DisconnectClientMessage(id="alice").model_dump())

        assert link.state is LinkState.CLOSED
        assert client.negotiator.link("alice") is None
        assert "alice" not in client.avatars


class TestSignalling:
    """Relay signalling frames reach the negotiator."""

    async def test_offer_answered_through_relay(self, connected: Any) -> None:
        client, websocket = connected
        offer = RtcOfferEvent(sender="alice", offer=SessionDescription(type="offer", sdp="v=0"))

        await client.handle_message(json.loads(offer.to_json()))
        await wait_for(lambda: websocket.sent_of("rtc_answer"))

        [answer] = websocket.sent_of("rtc_answer")
        assert answer["to"] == "alice"
        assert answer["answer"]["sdp"] == "v=0 fake-answer"

    async def test_early_candidate_buffered(self, connected: Any) -> None:
        client, _ = connected
        event = IceCandidateEvent(
            sender="alice", candidate=IceCandidatePayload.model_validate(candidate_payload())
        )

        await client.handle_message(json.loads(event.to_json()))
        await client.negotiator.wait_idle("alice")

        link = client.negotiator.link("alice")
        assert link is not None
        assert len(link.pending_candidates) == 1

    async def test_error_frame_logged(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message(ErrorMessage(message="nope", code="UNKNOWN_TYPE").model_dump())
        assert len(client.avatars) == 0

    async def test_unrecognised_frame_ignored(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message({"type": "teleport", "id": "alice"})
        assert len(client.avatars) == 0


class TestRemoteMedia:
    """Remote tracks land on the matching avatar."""

    async def test_track_attached_to_avatar(self, config: ClientConfig) -> None:
        seen: list[tuple[str, Any]] = []
        client = RelayClient(
            config,
            peer_connection_factory=FakePeerConnection,
            on_remote_track=lambda remote_id, track: seen.append((remote_id, track)),
        )
        await client.handle_message({"type": "session_start", "session_id": "bob"})
        await client.handle_message(PositionBroadcast(id="alice").model_dump())
        link = client.negotiator.link("alice")
        track = FakeTrack("video")

        await link.pc.emit("track", track)

        assert client.avatars.get("alice").tracks == [track]
        assert seen == [("alice", track)]
        await client._stop_sender()
        await client.negotiator.close_all()

    async def test_closed_link_keeps_avatar(self, connected: Any) -> None:
        client, _ = connected
        await client.handle_message(PositionBroadcast(id="alice").model_dump())
        link = client.negotiator.link("alice")
        await link.pc.emit("track", FakeTrack("audio"))

        link.pc.connectionState = "failed"
        await link.pc.emit("connectionstatechange")

        avatar = client.avatars.get("alice")
        assert avatar is not None
        assert avatar.tracks == []

    async def test_closed_link_reported(self, config: ClientConfig) -> None:
        closed: list[str] = []
        client = RelayClient(
            config,
            peer_connection_factory=FakePeerConnection,
            on_remote_closed=closed.append,
        )
        await client.handle_message({"type": "session_start", "session_id": "bob"})
        await client.handle_message(PositionBroadcast(id="alice").model_dump())
        await client.handle_message(PositionBroadcast(id="carol").model_dump())
        link = client.negotiator.link("alice")

        link.pc.connectionState = "failed"
        await link.pc.emit("connectionstatechange")

        assert closed == ["alice"]
        await client._stop_sender()
        await client.negotiator.close_all()


class TestConnectionLoss:
    """Everything peer-related is dropped when the relay goes away."""

    async def test_normal_close_tears_down(self, config: ClientConfig) -> None:
        client = RelayClient(config, peer_connection_factory=FakePeerConnection)
        websocket = FakeWebSocket()
        task = asyncio.create_task(client.serve_connection(websocket))
        websocket.feed(SessionStartMessage(session_id="bob"))
        websocket.feed(PositionBroadcast(id="alice"))
        websocket.feed(PositionBroadcast(id="carol"))
        await wait_for(lambda: len(client.negotiator.links) == 2 if client.negotiator else False)

        websocket.close_normally()
        reason = await asyncio.wait_for(task, timeout=2.0)

        assert reason == "relay closed the connection"
        assert client.negotiator.links == {}
        assert len(client.avatars) == 0
        assert not client.connected
        assert all(pc.closed for pc in FakePeerConnection.instances)

    async def test_dropped_connection(self, config: ClientConfig) -> None:
        client = RelayClient(config, peer_connection_factory=FakePeerConnection)
        websocket = FakeWebSocket()
        task = asyncio.create_task(client.serve_connection(websocket))
        websocket.feed(SessionStartMessage(session_id="bob"))
        websocket.drop()

        reason = await asyncio.wait_for(task, timeout=2.0)

        assert reason.startswith("relay connection lost")

    async def test_invalid_frames_skipped(self, config: ClientConfig) -> None:
        client = RelayClient(config, peer_connection_factory=FakePeerConnection)
        websocket = FakeWebSocket()
        task = asyncio.create_task(client.serve_connection(websocket))
        websocket.feed(b"\x00binary")
        websocket.feed("not json")
        websocket.feed("[1, 2]")
        websocket.feed(SessionStartMessage(session_id="bob"))
        await wait_for(lambda: client.session_id == "bob")

        websocket.close_normally()
        await asyncio.wait_for(task, timeout=2.0)

    async def test_send_without_connection(self, config: ClientConfig) -> None:
        client = RelayClient(config)
        with pytest.raises(ConnectionError):
            await client.send(PositionUpdate())


def test_stationary_transform() -> None:
    update = stationary_transform()
    assert update.position == Vec3()
    assert update.rotation == Vec3()
