"""Relay server with WebSocket transport and upstream session bridging.

Main server implementation that:
1. Starts the client-facing WebSocket server
2. Opens one upstream session per accepted client
3. Decodes client frames and dispatches them upstream
4. Pings clients periodically and evicts silent ones
5. Provides HTTP health/info endpoints
6. Shuts everything down cleanly on SIGINT/SIGTERM
"""

import argparse
import asyncio
import functools
import logging
import signal
import sys
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import websockets
from aiohttp.web import Application, AppRunner, TCPSite
from websockets.asyncio.server import ServerConnection
from websockets.frames import Frame, Opcode
from websockets.protocol import Event, State

from src.relay.config import RelayConfig
from src.relay.dispatcher import ProtocolDispatcher
from src.relay.errors import ConfigError, InvalidMessageFormatError, RelayError
from src.relay.health import setup_health_routes
from src.relay.protocol import (
    ConnectionEstablishedMessage,
    ErrorMessage,
    ServerMessage,
    decode_client_frame,
)
from src.relay.registry import SessionRegistry
from src.relay.upstream import UpstreamConnectionManager
from src.relay.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class ClientConnection:
    """Accepted client socket and its liveness bookkeeping."""

    client_id: str
    websocket: ServerConnection
    remote_address: str | None = None
    connected_at: float = field(default_factory=time.time)
    last_pong: float = field(default_factory=time.time)


class PongTrackingConnection(ServerConnection):
    """Server connection that reports every pong frame it receives.

    Unsolicited pongs count too, not only the ones answering our pings.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.pong_handler: Callable[[bytes], None] | None = None

    def process_event(self, event: Event) -> None:
        super().process_event(event)
        if (
            self.pong_handler is not None
            and isinstance(event, Frame)
            and event.opcode is Opcode.PONG
        ):
            self.pong_handler(bytes(event.data))


class RelayServer:
    """Client-facing relay server.

    Accepts client WebSocket connections, binds each one to an upstream
    session, relays events, and evicts clients that stop answering pings.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: RelayConfig,
        upstream: UpstreamConnectionManager | None = None,
        registry: SessionRegistry | None = None,
    ) -> None:
        """Initialize relay server.

        Args:
            config: Relay configuration
            upstream: Upstream connection manager (created from config if None)
            registry: Session registry (created over ``upstream`` if None)
        """
        self.config = config
        self.upstream = upstream or UpstreamConnectionManager(config.upstream)
        self.registry = registry or SessionRegistry(self.upstream)
        self.dispatcher = ProtocolDispatcher(self.registry, config.audio)

        self._clients: dict[str, ClientConnection] = {}
        self._server: Any = None  # websockets Server
        self._liveness_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None

        logger.info(
            "Relay server initialized",
            extra={"host": config.server.host, "port": config.server.port},
        )

    @property
    def port(self) -> int:
        """Configured listen port."""
        return self.config.server.port

    @property
    def client_count(self) -> int:
        """Number of connected clients."""
        return len(self._clients)

    @property
    def is_running(self) -> bool:
        """Check if the server is accepting connections."""
        return self._server is not None

    def get_client(self, client_id: str) -> ClientConnection | None:
        """Get a connected client record."""
        return self._clients.get(client_id)

    async def start(self) -> None:
        """Bind the listening endpoint and start liveness checks.

        Raises:
            RuntimeError: If the server is already running
            OSError: If port binding fails
        """
        if self._server is not None:
            raise RuntimeError("Relay server is already running")

        server_config = self.config.server
        logger.info(
            "Starting relay server",
            extra={"host": server_config.host, "port": server_config.port},
        )

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                server_config.host,
                server_config.port,
                max_size=server_config.max_message_size,
                ping_interval=None,  # Liveness is handled by check_liveness()
                create_connection=PongTrackingConnection,
            )
        except OSError as e:
            logger.error(
                "Failed to bind relay server",
                extra={"host": server_config.host, "port": server_config.port, "error": str(e)},
            )
            raise

        self._shutdown_task = None
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        logger.info("Relay server started", extra={"port": server_config.port})

    async def _handle_connection(self, websocket: PongTrackingConnection) -> None:
        """Serve one client connection until it closes."""
        client_id = await self.accept_connection(websocket, self._remote_address(websocket))
        if client_id is None:
            return

        try:
            async for raw in websocket:
                await self.on_client_message(client_id, raw)
        except websockets.exceptions.ConnectionClosedError as e:
            self.on_transport_error(client_id, e)
        finally:
            await self.on_disconnect(client_id)

    @staticmethod
    def _remote_address(websocket: ServerConnection) -> str | None:
        request = getattr(websocket, "request", None)
        if request is not None:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                return str(forwarded)
        remote = websocket.remote_address
        if isinstance(remote, tuple) and remote:
            return str(remote[0])
        return str(remote) if remote is not None else None

    async def accept_connection(
        self, websocket: PongTrackingConnection, remote_address: str | None = None
    ) -> str | None:
        """Register a new client and open its upstream session.

        On failure the client receives an ``error`` event and the transport
        is closed without registering the client.

        Args:
            websocket: Client transport
            remote_address: Client address for logging

        Returns:
            Assigned client identifier, or None if session creation failed
        """
        client_id = str(uuid.uuid4())
        logger.info(
            "New client connection",
            extra={"client_id": client_id, "remote": remote_address},
        )

        self._clients[client_id] = ClientConnection(
            client_id=client_id, websocket=websocket, remote_address=remote_address
        )
        websocket.pong_handler = functools.partial(self._on_pong, client_id)

        try:
            await self.registry.create_session(client_id, websocket)
        except Exception as e:
            self._clients.pop(client_id, None)
            code = e.code if isinstance(e, RelayError) else "initialization_failed"
            logger.error(
                "Failed to initialize client session",
                extra={"client_id": client_id, "error": str(e)},
            )
            await self._send(websocket, ErrorMessage.build(f"Failed to initialize: {e}", code))
            try:
                await websocket.close()
            except Exception as close_error:
                logger.warning(
                    "Error closing client after failed initialization",
                    extra={"client_id": client_id, "error": str(close_error)},
                )
            return None

        await self._send(websocket, ConnectionEstablishedMessage(client_id=client_id))
        return client_id

    async def on_client_message(self, client_id: str, raw: str | bytes) -> None:
        """Decode a client frame and dispatch it.

        Malformed frames are answered with an ``invalid_message_format``
        error; the connection stays open.

        Args:
            client_id: Originating client
            raw: Text or binary frame
        """
        client = self._clients.get(client_id)
        if client is None:
            logger.warning("Message from unknown client", extra={"client_id": client_id})
            return

        try:
            event = decode_client_frame(raw)
        except InvalidMessageFormatError as e:
            logger.error(
                "Invalid client message",
                extra={"client_id": client_id, "error": str(e)},
            )
            await self._send(
                client.websocket, ErrorMessage.build(f"Invalid message format: {e}", e.code)
            )
            return

        await self.dispatcher.dispatch(client_id, event)

    async def on_disconnect(self, client_id: str) -> None:
        """Tear down a client's session and forget the client.

        Safe to call multiple times.
        """
        client = self._clients.pop(client_id, None)
        if client is not None:
            logger.info("Client disconnected", extra={"client_id": client_id})
        await self.registry.close_client_sessions(client_id)

    def on_transport_error(self, client_id: str, error: BaseException) -> None:
        """Log a client transport error.

        Teardown happens when the transport reports its close.
        """
        logger.error(
            "Client connection error",
            extra={"client_id": client_id, "error": str(error)},
        )

    async def check_liveness(self) -> list[str]:
        """Ping open clients and evict stale or closed ones.

        A client is evicted when its transport is closed or when no pong has
        been seen for longer than ``pong_timeout_s``.

        Returns:
            Identifiers of evicted clients
        """
        now = time.time()
        timeout = self.config.server.pong_timeout_s
        evicted: list[str] = []

        for client_id, client in list(self._clients.items()):
            state = client.websocket.state
            if state == State.OPEN:
                if now - client.last_pong > timeout:
                    logger.warning(
                        "Client did not answer ping, closing connection",
                        extra={"client_id": client_id, "silent_s": now - client.last_pong},
                    )
                    await self._evict(client)
                    evicted.append(client_id)
                else:
                    await self._ping(client)
            elif state != State.CONNECTING:
                await self._evict(client)
                evicted.append(client_id)

        return evicted

    async def _ping(self, client: ClientConnection) -> None:
        # Pong frames are reported through the connection's pong_handler
        try:
            await client.websocket.ping()
        except Exception as e:
            logger.debug(
                "Ping failed",
                extra={"client_id": client.client_id, "error": str(e)},
            )

    def _on_pong(self, client_id: str, payload: bytes) -> None:
        """Record a pong from a client; any payload counts."""
        client = self._clients.get(client_id)
        if client is not None:
            client.last_pong = time.time()

    async def _evict(self, client: ClientConnection) -> None:
        await self.on_disconnect(client.client_id)
        if client.websocket.state in (State.OPEN, State.CONNECTING):
            try:
                await client.websocket.close()
            except Exception as e:
                logger.warning(
                    "Error closing evicted client",
                    extra={"client_id": client.client_id, "error": str(e)},
                )

    async def _liveness_loop(self) -> None:
        interval = self.config.server.ping_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error("Liveness check failed", extra={"error": str(e)}, exc_info=True)

    async def _send(self, websocket: ServerConnection, message: ServerMessage) -> None:
        if websocket.state != State.OPEN:
            return
        try:
            await websocket.send(message.to_json())
        except Exception as e:
            logger.error("Failed to send message to client", extra={"error": str(e)})

    async def shutdown(self) -> None:
        """Stop liveness checks, close every session and client, release the port.

        Idempotent: every caller, including one arriving while teardown is in
        progress, returns only after teardown has finished. A failure in one
        step is logged and the remaining steps still run.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        logger.info("Shutting down relay server")

        if self._liveness_task is not None:
            self._liveness_task.cancel()
            await asyncio.gather(self._liveness_task, return_exceptions=True)
            self._liveness_task = None

        for client_id, client in list(self._clients.items()):
            try:
                await self.registry.close_client_sessions(client_id)
                if client.websocket.state == State.OPEN:
                    await client.websocket.close()
            except Exception as e:
                logger.error(
                    "Error closing client connection",
                    extra={"client_id": client_id, "error": str(e)},
                )
        self._clients.clear()

        try:
            await self.registry.close_all()
            await self.upstream.close_all()
        except Exception as e:
            logger.error("Error closing upstream sessions", extra={"error": str(e)})

        if self._server is not None:
            try:
                self._server.close()
                await self._server.wait_closed()
            except Exception as e:
                logger.error("Error closing listening socket", extra={"error": str(e)})
            self._server = None

        logger.info("Relay server stopped")


async def start_server(config: RelayConfig, relay: RelayServer | None = None) -> None:
    """Run the relay and health servers until SIGINT/SIGTERM.

    Args:
        config: Relay configuration
        relay: Optional pre-built relay server
    """
    if relay is None:
        relay = RelayServer(config)

    await relay.start()

    runner: AppRunner | None = None
    if config.http.enabled:
        health_app = Application()
        setup_health_routes(health_app, relay, config)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.http.host, config.http.port)
        await site.start()
        logger.info("HTTP server started", extra={"port": config.http.port})

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Signal handlers unavailable (e.g. Windows); rely on KeyboardInterrupt
            pass

    try:
        logger.info("Relay server ready", extra={"ws_port": relay.port})
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        try:
            await asyncio.wait_for(relay.shutdown(), timeout=config.graceful_shutdown_timeout_s)
        except TimeoutError:
            logger.error("Forced shutdown after timeout")

        if runner is not None:
            await runner.cleanup()
            logger.info("HTTP server stopped")


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Realtime relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    config = RelayConfig.from_yaml_with_defaults(args.config)
    setup_logging(config.logging.level, config.logging.log_dir)

    try:
        config.require_api_key()
    except ConfigError as e:
        logger.critical(str(e))
        sys.exit(1)

    try:
        asyncio.run(start_server(config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
