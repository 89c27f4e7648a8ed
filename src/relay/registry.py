"""Session registry.

Single owner of the client→session and session id→session maps. Creates
sessions (opening their upstream connection), routes upstream events back to
the owning client, and tears sessions down.
"""

import asyncio
import logging

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.relay.errors import SessionNotFoundError
from src.relay.protocol import Event, UpstreamEventType, encode_event
from src.relay.session import Session
from src.relay.upstream import UpstreamConnectionManager

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Registry of active relay sessions.

    Enforces at most one session per client and exactly one upstream
    connection per session. A session is only stored once its upstream
    connection is open and its handler attached, so lookups never observe a
    half-created session.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, upstream: UpstreamConnectionManager) -> None:
        """Initialize session registry.

        Args:
            upstream: Manager used to open and close upstream connections
        """
        self._upstream = upstream
        self._sessions: dict[str, Session] = {}
        self._client_to_session: dict[str, str] = {}
        self._create_locks: dict[str, asyncio.Lock] = {}

    @property
    def session_count(self) -> int:
        """Number of active sessions."""
        return len(self._sessions)

    def get_session(self, session_id: str) -> Session | None:
        """Get a session by id."""
        return self._sessions.get(session_id)

    def get_client_session(self, client_id: str) -> Session | None:
        """Get the session owned by a client."""
        session_id = self._client_to_session.get(client_id)
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    async def create_session(self, client_id: str, client_socket: ServerConnection) -> Session:
        """Create the session for a client, or return the existing one.

        Args:
            client_id: Client identifier
            client_socket: Client transport that upstream events are forwarded to

        Returns:
            The client's session

        Raises:
            UpstreamConnectError: If the upstream connection cannot be opened
                (ConnectTimeoutError when the handshake times out)
        """
        lock = self._create_locks.setdefault(client_id, asyncio.Lock())
        try:
            async with lock:
                existing = self.get_client_session(client_id)
                if existing is not None:
                    logger.warning(
                        "Client already has an active session",
                        extra={"client_id": client_id, "session_id": existing.id},
                    )
                    return existing

                connection_id = await self._upstream.create_connection(client_id)
                session = Session(
                    client_id=client_id,
                    connection_id=connection_id,
                    client_socket=client_socket,
                )
                self._upstream.set_message_handler(
                    connection_id,
                    lambda event, session_id=session.id: self.handle_upstream_message(
                        session_id, event
                    ),
                )

                self._sessions[session.id] = session
                self._client_to_session[client_id] = session.id

                logger.info(
                    "Session created",
                    extra={
                        "client_id": client_id,
                        "session_id": session.id,
                        "connection_id": connection_id,
                    },
                )
                return session
        except Exception as e:
            logger.error(
                "Failed to create session",
                extra={"client_id": client_id, "error": str(e)},
            )
            self._create_locks.pop(client_id, None)
            raise

    async def handle_upstream_message(self, session_id: str, event: Event) -> None:
        """Update session state from an upstream event and forward it to the client.

        Args:
            session_id: Session the event belongs to
            event: Decoded upstream event
        """
        session = self._sessions.get(session_id)
        if session is None:
            logger.error(
                "Dropping upstream event for unknown session",
                extra={"session_id": session_id, "event_type": event.get("type")},
            )
            return

        try:
            self._update_state(session, event)
        except Exception as e:
            logger.error(
                "Failed to update session state from upstream event",
                extra={"session_id": session_id, "event_type": event.get("type"), "error": str(e)},
            )

        socket = session.client_socket
        if socket is None or socket.state != State.OPEN:
            return

        try:
            await socket.send(encode_event(event))
            logger.debug(
                "Event forwarded to client",
                extra={"session_id": session_id, "event_type": event.get("type")},
            )
        except Exception as e:
            logger.error(
                "Failed to relay upstream event",
                extra={"session_id": session_id, "error": str(e)},
            )

    @staticmethod
    def _nested_id(event: Event, key: str) -> str | None:
        value = event.get(key)
        if not isinstance(value, dict):
            return None
        nested_id = value.get("id")
        return nested_id if isinstance(nested_id, str) else None

    def _update_state(self, session: Session, event: Event) -> None:
        event_type = event.get("type")

        if event_type == UpstreamEventType.SESSION_CREATED:
            session.state.remote_session_id = self._nested_id(event, "session")
            logger.info(
                "Upstream session created",
                extra={
                    "session_id": session.id,
                    "remote_session_id": session.state.remote_session_id,
                },
            )
        elif event_type == UpstreamEventType.CONVERSATION_CREATED:
            session.state.remote_conversation_id = self._nested_id(event, "conversation")
            logger.info(
                "Upstream conversation created",
                extra={
                    "session_id": session.id,
                    "remote_conversation_id": session.state.remote_conversation_id,
                },
            )
        elif event_type == UpstreamEventType.ERROR:
            # Reported only; the session stays live
            logger.error(
                "Upstream API error",
                extra={"session_id": session.id, "error": event.get("error")},
            )

    async def send_to_upstream(self, session_id: str, event: Event) -> str:
        """Send an event upstream on behalf of a session.

        Args:
            session_id: Session identifier
            event: Event to forward

        Returns:
            Identifier assigned to the event

        Raises:
            SessionNotFoundError: If the session is unknown
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        return await self._upstream.send_event(session.connection_id, event)

    async def close_session(self, session_id: str) -> None:
        """Close a session and its upstream connection.

        No-op if the session is already gone.

        Args:
            session_id: Session identifier
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.warning("Attempt to close unknown session", extra={"session_id": session_id})
            return

        if self._client_to_session.get(session.client_id) == session_id:
            del self._client_to_session[session.client_id]
        self._create_locks.pop(session.client_id, None)
        session.state.is_connected = False

        logger.info(
            "Closing session",
            extra={"session_id": session_id, "client_id": session.client_id},
        )

        await self._upstream.close_connection(session.connection_id)

    async def close_client_sessions(self, client_id: str) -> None:
        """Close the session owned by a client, if any."""
        session_id = self._client_to_session.get(client_id)
        if session_id is not None:
            await self.close_session(session_id)

    async def close_all(self) -> None:
        """Close every session, continuing past individual failures."""
        for session_id in list(self._sessions):
            try:
                await self.close_session(session_id)
            except Exception as e:
                logger.error(
                    "Error closing session",
                    extra={"session_id": session_id, "error": str(e)},
                )
