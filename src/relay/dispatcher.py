"""Client event routing.

Maps each recognized client event kind to its forwarding action. Every
recognized event is forwarded upstream unchanged for the client's session;
unrecognized kinds are dropped.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.relay.audio.codec import is_format_supported
from src.relay.config import AudioConfig
from src.relay.errors import InternalDispatchError, UnrecognizedEventTypeError
from src.relay.protocol import ClientEventType, ErrorMessage, Event
from src.relay.registry import SessionRegistry

logger = logging.getLogger(__name__)

Route = Callable[[str, Event], Awaitable[str]]

SESSION_AUDIO_FORMAT_KEYS = ("input_audio_format", "output_audio_format")


class ProtocolDispatcher:
    """Routes decoded client events to the owning session's upstream."""

    def __init__(self, registry: SessionRegistry, audio: AudioConfig | None = None) -> None:
        """Initialize dispatcher.

        Args:
            registry: Session registry used to resolve and forward to sessions
            audio: Audio settings; session updates naming a format outside
                ``audio.supported_formats`` are flagged in the logs
        """
        self._registry = registry
        self._audio = audio or AudioConfig()
        self._routes: dict[ClientEventType, Route] = {
            ClientEventType.SESSION_UPDATE: self._forward_session_update,
            ClientEventType.INPUT_AUDIO_BUFFER_APPEND: self._forward_audio_append,
            ClientEventType.INPUT_AUDIO_BUFFER_COMMIT: self._forward,
            ClientEventType.INPUT_AUDIO_BUFFER_CLEAR: self._forward,
            ClientEventType.RESPONSE_CREATE: self._forward,
            ClientEventType.RESPONSE_CANCEL: self._forward,
            ClientEventType.CONVERSATION_ITEM_CREATE: self._forward,
            ClientEventType.CONVERSATION_ITEM_DELETE: self._forward,
        }

    def route_for(self, kind: ClientEventType) -> Route:
        """Get the forwarding action for an event kind.

        Raises:
            UnrecognizedEventTypeError: If the kind has no route
        """
        route = self._routes.get(kind)
        if route is None:
            raise UnrecognizedEventTypeError(f"No route for event kind: {kind.value}")
        return route

    async def dispatch(self, client_id: str, event: Event) -> str | None:
        """Forward a client event upstream.

        Forwarding failures are reported to the client as ``internal_error``
        events and never raised.

        Args:
            client_id: Originating client
            event: Decoded client event

        Returns:
            Upstream event id, or None if the event was dropped or failed
        """
        session = self._registry.get_client_session(client_id)
        if session is None:
            logger.error(
                "Client has no active session, dropping event",
                extra={"client_id": client_id, "event_type": event.get("type")},
            )
            return None

        try:
            route = self.route_for(ClientEventType.from_event(event))
        except UnrecognizedEventTypeError:
            logger.warning(
                "Unknown event type, dropping",
                extra={"client_id": client_id, "event_type": event.get("type")},
            )
            return None

        logger.debug(
            "Client event received",
            extra={"client_id": client_id, "session_id": session.id, "event_type": event["type"]},
        )

        try:
            return await route(session.id, event)
        except Exception as e:
            error = InternalDispatchError(f"Failed to process request: {e}")
            logger.error(
                "Failed to forward client event",
                extra={"client_id": client_id, "session_id": session.id, "error": str(e)},
            )
            await self._send_error(session.client_socket, error, event.get("event_id"))
            return None

    async def _forward(self, session_id: str, event: Event) -> str:
        return await self._registry.send_to_upstream(session_id, event)

    async def _forward_session_update(self, session_id: str, event: Event) -> str:
        settings = event.get("session")
        if isinstance(settings, dict):
            for key in SESSION_AUDIO_FORMAT_KEYS:
                audio_format = settings.get(key)
                if isinstance(audio_format, str) and not is_format_supported(
                    audio_format, self._audio.supported_formats
                ):
                    logger.warning(
                        "Session update requests an unsupported audio format",
                        extra={
                            "session_id": session_id,
                            "field": key,
                            "audio_format": audio_format,
                        },
                    )
        return await self._registry.send_to_upstream(session_id, event)

    async def _forward_audio_append(self, session_id: str, event: Event) -> str:
        audio = event.get("audio")
        logger.debug(
            "Forwarding audio buffer append",
            extra={"session_id": session_id, "audio_length": len(audio) if audio else 0},
        )
        return await self._registry.send_to_upstream(session_id, event)

    @staticmethod
    async def _send_error(
        socket: ServerConnection | None, error: InternalDispatchError, event_id: Any
    ) -> None:
        if socket is None or socket.state != State.OPEN:
            return

        message = ErrorMessage.build(str(error), error.code, event_id)
        try:
            await socket.send(message.to_json())
        except Exception as e:
            logger.error("Failed to send error to client", extra={"error": str(e)})
