"""Relay server with WebSocket transport and HTTP side app.

Main server implementation that:
1. Starts the WebSocket transport
2. Provides HTTP health, metrics and world-config endpoints
3. Accepts client sessions and registers them
4. Fans out transform updates to every session
5. Routes directed WebRTC signalling between two sessions
6. Announces departures and the live session count
"""

import argparse
import asyncio
import logging
import socket
import ssl
import sys
from pathlib import Path
from typing import Any

from aiohttp.web import Application, AppRunner, TCPSite

from src.mingle.config import RelayConfig, TlsConfig
from src.mingle.health import setup_client_routes, setup_health_routes
from src.mingle.logging_utils import setup_logging
from src.mingle.metrics import MetricsCollector, get_metrics_collector
from src.mingle.presence import PresenceNotifier
from src.mingle.protocol import SIGNAL_TYPES, ErrorMessage, SessionStartMessage
from src.mingle.registry import SessionRegistry
from src.mingle.signalling import SignallingBroker
from src.mingle.transform_relay import TransformRelay
from src.mingle.transport.base import TransportSession
from src.mingle.transport.websocket_transport import WebSocketTransport
from src.mingle.world import WorldConfigStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "relay.yaml"


class RelayServer:
    """Owns the session registry and dispatches every client frame.

    All registry mutation happens on the event loop this object runs on, so
    no locking is needed.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: SessionRegistry | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        # An empty registry is falsy (it has __len__), so test for None explicitly.
        self.registry = registry if registry is not None else SessionRegistry()
        self.metrics = metrics if metrics is not None else get_metrics_collector()

        self.presence = PresenceNotifier(self.registry, self.metrics)
        self.transforms = TransformRelay(
            self.registry,
            self.metrics,
            include_sender=config.relay.broadcast_includes_sender,
            debug=config.debug,
        )
        self.broker = SignallingBroker(self.registry, self.metrics, debug=config.debug)

        self.transport: WebSocketTransport | None = None
        self._session_tasks: set[asyncio.Task[None]] = set()

    @property
    def is_running(self) -> bool:
        return self.transport is not None and self.transport.is_running

    @property
    def session_count(self) -> int:
        return self.registry.count

    def create_transport(self, ssl_context: ssl.SSLContext | None = None) -> WebSocketTransport:
        ws_config = self.config.transport.websocket
        self.transport = WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
            session_id_factory=self.registry.allocate_id,
            ssl_context=ssl_context,
        )
        return self.transport

    async def handle_session(self, transport_session: TransportSession) -> None:
        """Run one session from accept to departure.

        Departure processing runs exactly once whichever way the loop ends.
        """
        try:
            await transport_session.send_message(
                SessionStartMessage(session_id=transport_session.session_id)
            )
        except ConnectionError:
            logger.info(
                "Client left before session start",
                extra={"session_id": transport_session.session_id},
            )
            await self._release(transport_session)
            return

        session = await self.presence.on_connect(transport_session)
        try:
            if self.config.relay.late_join_snapshot:
                await self.transforms.send_snapshot(session.id)

            async for data in transport_session.receive_messages():
                await self.dispatch(session.id, data)

        except ConnectionError as e:
            logger.info(
                "Session connection lost",
                extra={"session_id": session.id, "error": str(e)},
            )
        finally:
            await self.presence.on_disconnect(session.id)
            await self._release(transport_session)

    async def _release(self, transport_session: TransportSession) -> None:
        await transport_session.close()
        transport_session.release()

    async def dispatch(self, session_id: str, data: dict[str, Any]) -> None:
        """Route one decoded client frame by its ``type``."""
        message_type = data.get("type")

        if message_type == "position":
            await self.transforms.on_transform(session_id, data)
        elif message_type in SIGNAL_TYPES:
            await self.broker.on_signal(session_id, data)
        else:
            logger.warning(
                "Unknown message type",
                extra={"session_id": session_id, "type": message_type},
            )
            self.metrics.record_invalid_message()
            await self.registry.send_to(
                session_id,
                ErrorMessage(
                    message=f"Unknown message type: {message_type!r}", code="UNKNOWN_TYPE"
                ),
            )

    async def serve(self) -> None:
        """Accept sessions forever, one task per session."""
        if self.transport is None:
            raise RuntimeError("Transport not created")

        while True:
            transport_session = await self.transport.accept_session()
            task = asyncio.create_task(
                self.handle_session(transport_session),
                name=f"session-{transport_session.session_id}",
            )
            self._session_tasks.add(task)
            task.add_done_callback(self._session_done)

    def _session_done(self, task: asyncio.Task[None]) -> None:
        self._session_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session task failed",
                extra={"task": task.get_name(), "error": repr(exc)},
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for session tasks to finish their departure processing."""
        if not self._session_tasks:
            return

        logger.info("Waiting for sessions to finish", extra={"count": len(self._session_tasks)})
        _, pending = await asyncio.wait(
            set(self._session_tasks), timeout=self.config.graceful_shutdown_timeout_s
        )
        for task in pending:
            task.cancel()


def build_http_app(relay: RelayServer, world_store: WorldConfigStore) -> Application:
    app = Application()
    setup_health_routes(app, relay=relay, metrics_collector=relay.metrics)
    setup_client_routes(
        app,
        world_store,
        admin_token=relay.config.admin_token,
        debug=relay.config.debug,
    )
    return app


def build_ssl_context(tls: TlsConfig) -> ssl.SSLContext | None:
    """Server-side TLS context, or None when TLS is disabled.

    Raises:
        FileNotFoundError: If the certificate or key file is missing
        ssl.SSLError: If the files do not hold a matching PEM pair
    """
    if not tls.enabled:
        return None

    for label, path in (("certificate", tls.certfile), ("key", tls.keyfile)):
        if not path.is_file():
            raise FileNotFoundError(f"TLS {label} not found: {path}")

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(tls.certfile), str(tls.keyfile))
    return context


def listen_urls(host: str, port: int, secure: bool) -> list[str]:
    """Addresses other machines can use to reach the relay.

    A wildcard bind is expanded to this host's IPv4 LAN addresses.
    """
    scheme = "wss" if secure else "ws"
    if host not in ("0.0.0.0", ""):  # noqa: S104
        return [f"{scheme}://{host}:{port}"]

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except socket.gaierror:
        infos = []

    addresses = sorted({info[4][0] for info in infos if not info[4][0].startswith("127.")})
    return [f"{scheme}://{address}:{port}" for address in addresses or ["localhost"]]


async def start_server(config_path: Path, relay: RelayServer | None = None) -> None:
    """Start the relay with its configured transport and HTTP app.

    Runs until cancelled or interrupted.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
        relay: Optional pre-created relay (for testing)

    Raises:
        OSError: If the WebSocket or HTTP port cannot be bound, or TLS is
            enabled and its certificate or key cannot be loaded
    """
    config = relay.config if relay is not None else RelayConfig.from_yaml_with_defaults(config_path)
    setup_logging(config.effective_log_level)
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if relay is None:
        relay = RelayServer(config)

    # Load certificates before binding anything so a bad path fails fast.
    ssl_context = build_ssl_context(config.tls)
    if ssl_context is not None:
        logger.info(
            "TLS enabled",
            extra={"certfile": str(config.tls.certfile), "keyfile": str(config.tls.keyfile)},
        )
    else:
        logger.warning(
            "Serving plain ws:// and http://; browsers on other machines may block "
            "camera and microphone access. Set USE_HTTPS=true to enable TLS."
        )

    world_store = WorldConfigStore(config.world_config_path)
    world_store.load()

    transport = relay.create_transport(ssl_context)
    await transport.start()

    runner: AppRunner | None = None
    if config.http.enabled:
        runner = AppRunner(build_http_app(relay, world_store))
        await runner.setup()
        site = TCPSite(runner, config.http.host, config.http.port, ssl_context=ssl_context)
        await site.start()
        logger.info(
            "HTTP endpoints started",
            extra={
                "host": config.http.host,
                "port": config.http.port,
                "tls": ssl_context is not None,
            },
        )

    logger.info(
        "Relay reachable",
        extra={"urls": listen_urls(transport.host, transport.port, ssl_context is not None)},
    )

    if config.admin_token is None:
        logger.warning("No admin token configured; world-config writes are disabled")

    try:
        logger.info(
            "Mingle relay ready",
            extra={"port": transport.port, "debug": config.debug},
        )
        await relay.serve()

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down relay")

        await transport.stop()
        await relay.drain()

        if runner is not None:
            await runner.cleanup()
            logger.info("HTTP endpoints stopped")

        logger.info("Relay stopped")


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Mingle session relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to relay config YAML file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log every relayed message",
    )
    args = parser.parse_args()

    config = RelayConfig.from_yaml_with_defaults(args.config)
    if args.debug:
        config = config.model_copy(update={"debug": True})

    try:
        asyncio.run(start_server(args.config, RelayServer(config)))
    except KeyboardInterrupt:
        logger.info("Relay interrupted")
    except OSError as e:
        logger.error("Relay failed to start", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
