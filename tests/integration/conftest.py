"""Integration test fixtures.

Runs a real relay (WebSocket transport on an ephemeral port, HTTP side app
disabled) inside the test's event loop.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import websockets
from websockets.asyncio.client import ClientConnection

from src.mingle.config import RelayConfig
from src.mingle.metrics import MetricsCollector
from src.mingle.server import RelayServer, start_server

logger = logging.getLogger(__name__)


class RelayHandle:
    """Running relay plus helpers for connecting raw clients."""

    def __init__(self, relay: RelayServer) -> None:
        self.relay = relay

    @property
    def url(self) -> str:
        assert self.relay.transport is not None
        return f"ws://127.0.0.1:{self.relay.transport.port}"

    async def connect(self) -> tuple[ClientConnection, str]:
        """Open a raw client connection and read its session id."""
        websocket = await websockets.connect(self.url)
        start = await recv_json(websocket)
        assert start["type"] == "session_start"
        return websocket, start["session_id"]


async def recv_json(websocket: ClientConnection, timeout: float = 2.0) -> dict[str, Any]:
    return json.loads(await asyncio.wait_for(websocket.recv(), timeout=timeout))


async def recv_until(
    websocket: ClientConnection, message_type: str, timeout: float = 2.0
) -> dict[str, Any]:
    """Skip frames until one of ``message_type`` arrives."""
    while True:
        data = await recv_json(websocket, timeout=timeout)
        if data["type"] == message_type:
            return data


async def drain(websocket: ClientConnection, quiet_s: float = 0.2) -> list[dict[str, Any]]:
    """Collect every frame until the connection is quiet for ``quiet_s``."""
    frames: list[dict[str, Any]] = []
    while True:
        try:
            frames.append(await recv_json(websocket, timeout=quiet_s))
        except asyncio.TimeoutError:
            return frames


def make_relay_config(**overrides: Any) -> RelayConfig:
    data: dict[str, Any] = {
        "transport": {"websocket": {"host": "127.0.0.1", "port": 0, "max_connections": 10}},
        "http": {"enabled": False},
        "graceful_shutdown_timeout_s": 1.0,
    }
    data.update(overrides)
    return RelayConfig.model_validate(data)


@pytest.fixture
async def relay_server() -> AsyncIterator[RelayHandle]:
    """Relay running until the test finishes."""
    relay = RelayServer(make_relay_config(), metrics=MetricsCollector())
    task = asyncio.create_task(start_server(Path("/nonexistent/relay.yaml"), relay))

    loop = asyncio.get_running_loop()
    deadline = loop.time() + 5.0
    while not relay.is_running:
        if task.done():
            task.result()
        if loop.time() >= deadline:
            raise TimeoutError("Relay did not start")
        await asyncio.sleep(0.01)

    yield RelayHandle(relay)

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
