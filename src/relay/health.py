"""Health and info endpoints for the relay.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe).
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any

from aiohttp import web

from src.relay.config import RelayConfig

logger = logging.getLogger(__name__)

SERVICE_NAME = "Realtime Relay Server"
SERVICE_VERSION = "1.0.0"


class HealthCheckHandler:
    """Health/info handler for the relay.

    Reads the relay server's listen port and live client/session counts.
    """

    def __init__(self, relay: Any, config: RelayConfig) -> None:
        """Initialize handler.

        Args:
            relay: RelayServer exposing ``port``, ``client_count`` and ``registry``
            config: Relay configuration
        """
        self.relay = relay
        self.config = config
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK with ``{"status": "ok", "timestamp": <ISO-8601>}``
        """
        return web.json_response(
            {
                "status": "ok",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status=200,
        )

    async def info(self, request: web.Request) -> web.Response:
        """Server info endpoint.

        Response format:
        {
            "name": str,
            "version": str,
            "wsPort": int,
            "environment": str,
            "clients": int,
            "sessions": int,
            "uptime_seconds": float
        }
        """
        response_data = {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "wsPort": self.relay.port,
            "environment": self.config.environment,
            "clients": self.relay.client_count,
            "sessions": self.relay.registry.session_count,
            "uptime_seconds": time.time() - self.start_time,
        }

        logger.debug("Info requested", extra={"clients": response_data["clients"]})

        return web.json_response(response_data, status=200)


def setup_health_routes(app: web.Application, relay: Any, config: RelayConfig) -> None:
    """Set up health/info routes on application.

    Args:
        app: aiohttp Application instance
        relay: RelayServer instance
        config: Relay configuration
    """
    handler = HealthCheckHandler(relay, config)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/info", handler.info)

    logger.info("HTTP endpoints configured: /health, /info")
