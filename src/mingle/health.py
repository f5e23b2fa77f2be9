"""HTTP side app for the relay.

Provides health check endpoints for load balancers and container
orchestration, Prometheus metrics, the debug flag script read by browser
clients, and the admin-gated world configuration endpoint.
"""

import asyncio
import hmac
import logging
import time
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from src.mingle.metrics import MetricsCollector, get_metrics_collector
from src.mingle.world import WorldConfig, WorldConfigStore

logger = logging.getLogger(__name__)

ADMIN_TOKEN_HEADER = "x-admin-token"


class HealthCheckHandler:
    """Health check handler for the relay.

    ``relay`` is anything exposing ``is_running`` and ``session_count``
    (normally :class:`src.mingle.server.RelayServer`).
    """

    def __init__(
        self,
        relay: Any = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        self.relay = relay
        self.start_time = time.time()
        self.metrics_collector = (
            metrics_collector if metrics_collector is not None else get_metrics_collector()
        )

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay transport is accepting connections
            503 Service Unavailable: Relay transport is down
        """
        running = bool(self.relay is not None and self.relay.is_running)
        sessions = self.relay.session_count if self.relay is not None else 0

        response_data = {
            "status": "healthy" if running else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "sessions": sessions,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})
        return web.json_response(response_data, status=200 if running else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint (same criteria as health)."""
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the transport is down.
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint."""
        try:
            metrics_text = self.metrics_collector.export_prometheus()
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

        return web.Response(
            text=metrics_text,
            content_type="text/plain",
            headers={"X-Prometheus-Format": "0.0.4"},
            status=200,
        )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint."""
        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": self.metrics_collector.get_summary(),
            },
            status=200,
        )


class ClientConfigHandler:
    """Endpoints consumed by browser clients and the admin page."""

    def __init__(
        self,
        world_store: WorldConfigStore,
        admin_token: str | None = None,
        debug: bool = False,
    ) -> None:
        self.world_store = world_store
        self.admin_token = admin_token
        self.debug = debug

    async def config_script(self, request: web.Request) -> web.Response:
        """Tiny script telling the browser whether debug logging is on."""
        flag = "true" if self.debug else "false"
        return web.Response(
            text=f"window.MINGLE_DEBUG = {flag};",
            content_type="application/javascript",
        )

    async def get_world_config(self, request: web.Request) -> web.Response:
        return web.json_response(self.world_store.config.model_dump(mode="json"))

    async def put_world_config(self, request: web.Request) -> web.Response:
        """Replace the world configuration.

        Returns:
            200 OK: Stored configuration
            400 Bad Request: Body is not valid JSON or fails validation
            401 Unauthorized: Missing or wrong admin token
            403 Forbidden: No admin token configured on the relay
            500 Internal Server Error: Backing file could not be written
        """
        if self.admin_token is None:
            return web.json_response(
                {"error": "Configuration writes are disabled"}, status=403
            )

        supplied = request.headers.get(ADMIN_TOKEN_HEADER, "")
        if not hmac.compare_digest(supplied.encode(), self.admin_token.encode()):
            logger.warning(
                "Rejected world-config write with bad admin token",
                extra={"remote": request.remote},
            )
            return web.json_response({"error": "Invalid admin token"}, status=401)

        try:
            body = await request.json()
            config = WorldConfig.model_validate(body)
        except ValueError as e:
            # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
            detail: Any = (
                e.errors(include_url=False, include_context=False, include_input=False)
                if isinstance(e, ValidationError)
                else str(e)
            )
            return web.json_response(
                {"error": "Invalid world configuration", "detail": detail}, status=400
            )

        try:
            await asyncio.to_thread(self.world_store.replace, config)
        except OSError as e:
            logger.error(
                "Could not save world configuration",
                extra={"path": str(self.world_store.path), "error": str(e)},
            )
            return web.json_response({"error": "Could not save world configuration"}, status=500)

        logger.info("World configuration updated", extra={"remote": request.remote})
        return web.json_response(config.model_dump(mode="json"))


def setup_health_routes(
    app: web.Application,
    relay: Any = None,
    metrics_collector: MetricsCollector | None = None,
) -> None:
    """Set up health check and metrics routes on application."""
    handler = HealthCheckHandler(relay=relay, metrics_collector=metrics_collector)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info(
        "Health check endpoints configured: "
        "/health, /readiness, /liveness, /metrics, /metrics/summary"
    )


def setup_client_routes(
    app: web.Application,
    world_store: WorldConfigStore,
    admin_token: str | None = None,
    debug: bool = False,
) -> None:
    """Set up /config.js and /world-config routes on application."""
    handler = ClientConfigHandler(world_store, admin_token=admin_token, debug=debug)

    app.router.add_get("/config.js", handler.config_script)
    app.router.add_get("/world-config", handler.get_world_config)
    app.router.add_put("/world-config", handler.put_world_config)
    app.router.add_post("/world-config", handler.put_world_config)
