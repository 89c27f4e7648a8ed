"""Upstream realtime API connection management.

This module owns every outbound WebSocket connection to the upstream
streaming API. Each relay session gets its own connection so that a slow or
failing upstream for one client cannot stall another, and tearing one down
never touches the rest.

Example usage:
    >>> manager = UpstreamConnectionManager(config.upstream)
    >>> connection_id = await manager.create_connection("client-123")
    >>> manager.set_message_handler(connection_id, on_event)
    >>> event_id = await manager.send_event(connection_id, {"type": "response.create"})
    >>> created = await manager.wait_for_event(connection_id, "response.created", timeout=5.0)
    >>> await manager.close_connection(connection_id)
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import websockets
from websockets.asyncio.client import ClientConnection, connect

from src.relay.config import UpstreamConfig
from src.relay.errors import (
    ConnectionNotFoundError,
    ConnectTimeoutError,
    UpstreamConnectError,
    WaitTimeoutError,
)
from src.relay.protocol import Event, decode_upstream_frame, encode_event

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Event], Awaitable[None] | None]

MAX_LOGGED_EVENT_CHARS = 1000


def generate_event_id() -> str:
    """Generate an event identifier: epoch milliseconds plus a random suffix."""
    return f"evt_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class UpstreamConnection:
    """Record of one open upstream connection."""

    id: str
    client_id: str
    websocket: ClientConnection
    created_at: float = field(default_factory=time.time)
    handler: MessageHandler | None = None
    reader_task: asyncio.Task[None] | None = None
    waiters: list[tuple[str, asyncio.Future[Event]]] = field(default_factory=list)


class UpstreamConnectionManager:
    """Async manager for upstream realtime API connections.

    Opens, tracks, reads from, writes to and closes one WebSocket connection
    per session. Each connection runs a reader task that decodes inbound
    frames and hands them to the registered handler in arrival order.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, config: UpstreamConfig) -> None:
        """Initialize connection manager.

        Args:
            config: Upstream endpoint, credentials and timeouts
        """
        self._config = config
        self._connections: dict[str, UpstreamConnection] = {}

    @property
    def connection_count(self) -> int:
        """Number of open upstream connections."""
        return len(self._connections)

    def has_connection(self, connection_id: str) -> bool:
        """Check whether a connection id is registered."""
        return connection_id in self._connections

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._config.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        if self._config.organization_id:
            headers["OpenAI-Organization"] = self._config.organization_id
        if self._config.project_id:
            headers["OpenAI-Project"] = self._config.project_id
        return headers

    async def _open(self) -> ClientConnection:
        return await connect(
            self._config.url,
            additional_headers=self._headers(),
            open_timeout=None,
            max_size=None,
        )

    async def create_connection(self, client_id: str) -> str:
        """Open a new upstream connection for a client.

        Args:
            client_id: Client that requested the connection

        Returns:
            Identifier of the new connection

        Raises:
            ConnectTimeoutError: If the connection is not open within the
                configured timeout
            UpstreamConnectError: If the handshake fails for any other reason
        """
        connection_id = str(uuid.uuid4())
        timeout = self._config.connect_timeout_s

        logger.info(
            "Creating upstream connection",
            extra={"client_id": client_id, "connection_id": connection_id},
        )

        try:
            websocket = await asyncio.wait_for(self._open(), timeout=timeout)
        except TimeoutError as e:
            logger.error(
                "Upstream connection timed out",
                extra={"client_id": client_id, "timeout_s": timeout},
            )
            raise ConnectTimeoutError(
                f"Timed out connecting to upstream after {timeout}s"
            ) from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.error(
                "Failed to create upstream connection",
                extra={"client_id": client_id, "error": str(e)},
            )
            raise UpstreamConnectError(f"Failed to connect to upstream: {e}") from e

        connection = UpstreamConnection(
            id=connection_id, client_id=client_id, websocket=websocket
        )
        self._connections[connection_id] = connection
        # Reader starts on the next loop iteration, so a handler attached
        # right after this returns sees every inbound event.
        connection.reader_task = asyncio.create_task(self._read_loop(connection))

        logger.info("Upstream connection established", extra={"connection_id": connection_id})
        return connection_id

    def set_message_handler(self, connection_id: str, handler: MessageHandler) -> None:
        """Attach the inbound event handler for a connection.

        A later call replaces the earlier handler.

        Args:
            connection_id: Connection identifier
            handler: Callable (sync or async) receiving each decoded event

        Raises:
            ConnectionNotFoundError: If the connection is unknown
        """
        self._get(connection_id).handler = handler

    async def send_event(self, connection_id: str, event: Event) -> str:
        """Serialize and send an event upstream.

        Assigns ``event_id`` when the caller did not supply one.

        Args:
            connection_id: Connection identifier
            event: Event to send

        Returns:
            The event's identifier

        Raises:
            ConnectionNotFoundError: If the connection is unknown
        """
        connection = self._get(connection_id)

        if not event.get("event_id"):
            event["event_id"] = generate_event_id()

        try:
            await connection.websocket.send(encode_event(event))
        except Exception as e:
            logger.error(
                "Failed to send event upstream",
                extra={"connection_id": connection_id, "error": str(e)},
            )
            raise

        logger.debug(
            "Event sent upstream",
            extra={
                "connection_id": connection_id,
                "event_type": event.get("type"),
                "event_id": event["event_id"],
            },
        )
        return str(event["event_id"])

    async def close_connection(self, connection_id: str) -> None:
        """Close an upstream connection and forget it.

        Safe to call multiple times.

        Args:
            connection_id: Connection identifier
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return

        logger.info("Closing upstream connection", extra={"connection_id": connection_id})

        for _, waiter in connection.waiters:
            if not waiter.done():
                waiter.set_exception(ConnectionNotFoundError(connection_id))
        connection.waiters.clear()

        task = connection.reader_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        try:
            await connection.websocket.close()
        except Exception as e:
            logger.warning(
                "Error closing upstream connection",
                extra={"connection_id": connection_id, "error": str(e)},
            )

    async def close_all(self) -> None:
        """Close every open upstream connection."""
        for connection_id in list(self._connections):
            await self.close_connection(connection_id)

    async def wait_for_event(
        self, connection_id: str, event_type: str, timeout: float = 10.0
    ) -> Event:
        """Wait for the next inbound event of a given type.

        Args:
            connection_id: Connection identifier
            event_type: Event ``type`` to wait for
            timeout: Maximum wait in seconds

        Returns:
            The matching event

        Raises:
            ConnectionNotFoundError: If the connection is unknown or closes
                while waiting
            WaitTimeoutError: If no matching event arrives in time
        """
        connection = self._get(connection_id)
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()
        waiter = (event_type, future)
        connection.waiters.append(waiter)

        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except TimeoutError as e:
            raise WaitTimeoutError(
                f"Timed out after {timeout}s waiting for event: {event_type}"
            ) from e
        finally:
            if waiter in connection.waiters:
                connection.waiters.remove(waiter)

    def _get(self, connection_id: str) -> UpstreamConnection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection

    async def _read_loop(self, connection: UpstreamConnection) -> None:
        """Decode inbound frames and deliver them in order."""
        try:
            async for raw in connection.websocket:
                try:
                    event = decode_upstream_frame(raw)
                except ValueError as e:
                    logger.error(
                        "Dropping undecodable upstream frame",
                        extra={"connection_id": connection.id, "error": str(e)},
                    )
                    continue

                self._log_inbound(connection.id, event)
                self._resolve_waiters(connection, event)

                if connection.handler is None:
                    logger.debug(
                        "No handler registered, dropping upstream event",
                        extra={"connection_id": connection.id, "event_type": event.get("type")},
                    )
                    continue

                try:
                    result = connection.handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "Upstream event handler failed",
                        extra={"connection_id": connection.id, "error": str(e)},
                        exc_info=True,
                    )

        except websockets.exceptions.ConnectionClosed as e:
            logger.info(
                "Upstream connection closed",
                extra={"connection_id": connection.id, "reason": str(e)},
            )

    @staticmethod
    def _resolve_waiters(connection: UpstreamConnection, event: Event) -> None:
        matched = [w for w in connection.waiters if w[0] == event.get("type")]
        for waiter in matched:
            connection.waiters.remove(waiter)
            if not waiter[1].done():
                waiter[1].set_result(event)

    @staticmethod
    def _log_inbound(connection_id: str, event: Event) -> None:
        event_type = event.get("type")
        extra: dict[str, object] = {"connection_id": connection_id, "event_type": event_type}

        if event_type == "response.text.delta":
            extra["delta"] = event.get("delta")
        elif event_type == "response.audio.delta":
            extra["has_audio"] = bool(event.get("delta"))
        elif event_type == "error":
            logger.error(
                "Error event received from upstream",
                extra={**extra, "error": event.get("error")},
            )
            return
        else:
            text = encode_event(event)
            if len(text) > MAX_LOGGED_EVENT_CHARS:
                text = text[:MAX_LOGGED_EVENT_CHARS] + "..."
            extra["payload"] = text

        logger.debug("Upstream event received", extra=extra)
