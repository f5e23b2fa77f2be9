"""End-to-end tests against a running relay.

Raw websockets clients check the wire contract; two RelayClient instances
with fake peer connections check that the mesh handshake completes through
the relay.
"""

import asyncio
import json

import pytest

from src.mingle.client.negotiator import LinkState
from src.mingle.client.relay_client import RelayClient
from src.mingle.config import ClientConfig
from src.mingle.protocol import PositionUpdate, Vec3
from tests.helpers.fake_peer import FakePeerConnection, candidate_payload
from tests.helpers.mock_session import wait_for
from tests.integration.conftest import RelayHandle, drain, recv_json, recv_until

pytestmark = pytest.mark.integration


async def test_session_start_then_count(relay_server: RelayHandle) -> None:
    websocket, session_id = await relay_server.connect()
    try:
        assert session_id
        count = await recv_json(websocket)
        assert count == {"type": "client_count", "count": 1}
    finally:
        await websocket.close()


async def test_transform_fan_out(relay_server: RelayHandle) -> None:
    """alice's transform reaches bob tagged with alice's id, and echoes to alice."""
    alice, alice_id = await relay_server.connect()
    bob, _ = await relay_server.connect()
    try:
        await drain(alice)
        await drain(bob)

        await alice.send(json.dumps({"type": "position", "position": {"x": 1, "y": 0, "z": 0}}))

        received = await recv_until(bob, "position")
        assert received == {
            "type": "position",
            "id": alice_id,
            "position": {"x": 1.0, "y": 0.0, "z": 0.0},
        }
        echo = await recv_until(alice, "position")
        assert echo["id"] == alice_id
    finally:
        await alice.close()
        await bob.close()


async def test_departure_announced_once(relay_server: RelayHandle) -> None:
    alice, alice_id = await relay_server.connect()
    bob, _ = await relay_server.connect()
    carol, _ = await relay_server.connect()
    try:
        await alice.send(json.dumps({"type": "position", "position": {"x": 1, "y": 0, "z": 0}}))
        await asyncio.sleep(0.05)
        await alice.close()

        for observer in (bob, carol):
            frames = await drain(observer)
            about_alice = [f["type"] for f in frames if f.get("id") == alice_id]
            assert about_alice == ["position", "disconnect_client"]
            assert frames[-1] == {"type": "client_count", "count": 2}
    finally:
        await bob.close()
        await carol.close()


async def test_signalling_is_directed(relay_server: RelayHandle) -> None:
    alice, alice_id = await relay_server.connect()
    bob, bob_id = await relay_server.connect()
    carol, _ = await relay_server.connect()
    try:
        for ws in (alice, bob, carol):
            await drain(ws)

        await alice.send(
            json.dumps({"type": "ice_candidate", "to": bob_id, "candidate": candidate_payload()})
        )

        event = await recv_until(bob, "ice_candidate")
        assert event["from"] == alice_id
        assert event["candidate"]["candidate"] == candidate_payload()["candidate"]
        assert await drain(carol) == []
        assert await drain(alice) == []
    finally:
        for ws in (alice, bob, carol):
            await ws.close()


async def test_bad_frames_do_not_disconnect(relay_server: RelayHandle) -> None:
    alice, _ = await relay_server.connect()
    try:
        await drain(alice)

        await alice.send("{oops")
        assert (await recv_json(alice))["type"] == "error"

        await alice.send(json.dumps({"type": "rtc_offer", "to": "nobody"}))
        assert (await recv_json(alice))["code"] == "INVALID_SIGNAL"

        await alice.send(json.dumps({"type": "position", "position": "here"}))
        assert (await recv_json(alice))["type"] == "position"
    finally:
        await alice.close()


async def test_two_clients_negotiate_through_relay(relay_server: RelayHandle) -> None:
    """Both clients discover each other and complete the handshake, one offer only."""
    config = ClientConfig(relay_url=relay_server.url, transform_interval_s=0.02)
    clients = [
        RelayClient(
            config,
            transform_source=lambda: PositionUpdate(position=Vec3(x=1)),
            peer_connection_factory=FakePeerConnection,
        )
        for _ in range(2)
    ]
    tasks = [asyncio.create_task(client.run()) for client in clients]

    def connected() -> bool:
        for client in clients:
            if client.negotiator is None or len(client.negotiator.links) != 1:
                return False
            link = next(iter(client.negotiator.links.values()))
            if link.state is not LinkState.CONNECTED:
                return False
        return True

    try:
        await wait_for(connected, timeout=5.0)

        first, second = clients
        assert first.session_id is not None and second.session_id is not None
        assert first.negotiator.link(second.session_id) is not None
        assert second.avatars.get(first.session_id) is not None
        assert first.avatars.get(first.session_id) is None

        offers = [
            call
            for client in clients
            for link in client.negotiator.links.values()
            for call in link.pc.calls
            if call == "createOffer"
        ]
        assert len(offers) == 1
    finally:
        await relay_server.relay.transport.stop()
        reasons = await asyncio.gather(*tasks)

    assert all(reason for reason in reasons)
    assert all(client.negotiator.links == {} for client in clients)
