"""Realtime event protocol definitions.

Defines the closed set of client event kinds the relay forwards upstream,
Pydantic models for the frames the relay itself emits, and JSON frame
decoding for both directions.
"""

import json
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.relay.errors import InvalidMessageFormatError

Event = dict[str, Any]


class ClientEventType(str, Enum):
    """Client → Server event kinds.

    Every recognized kind is forwarded upstream unchanged. Anything else maps
    to UNRECOGNIZED and is dropped.
    """

    SESSION_UPDATE = "session.update"
    INPUT_AUDIO_BUFFER_APPEND = "input_audio_buffer.append"
    INPUT_AUDIO_BUFFER_COMMIT = "input_audio_buffer.commit"
    INPUT_AUDIO_BUFFER_CLEAR = "input_audio_buffer.clear"
    RESPONSE_CREATE = "response.create"
    RESPONSE_CANCEL = "response.cancel"
    CONVERSATION_ITEM_CREATE = "conversation.item.create"
    CONVERSATION_ITEM_DELETE = "conversation.item.delete"
    UNRECOGNIZED = "__unrecognized__"

    @classmethod
    def from_event(cls, event: Event) -> "ClientEventType":
        """Classify an event by its ``type`` field."""
        try:
            kind = cls(event.get("type"))
        except ValueError:
            return cls.UNRECOGNIZED
        return kind


class UpstreamEventType(str, Enum):
    """Upstream event kinds that update session state."""

    SESSION_CREATED = "session.created"
    CONVERSATION_CREATED = "conversation.created"
    ERROR = "error"


class ErrorDetail(BaseModel):
    """Error payload carried inside an ``error`` event."""

    message: str = Field(..., description="Error description")
    code: str = Field(default="internal_error", description="Error code")


class ErrorMessage(BaseModel):
    """Server → Client: Error notification.

    Sent when a client frame cannot be decoded, when forwarding fails, or when
    session initialization fails.
    """

    type: Literal["error"] = "error"
    error: ErrorDetail
    event_id: Any = Field(default=None, description="Correlated client event id, echoed as sent")

    @classmethod
    def build(cls, message: str, code: str, event_id: Any = None) -> "ErrorMessage":
        """Create an error message from its parts."""
        return cls(error=ErrorDetail(message=message, code=code), event_id=event_id)

    def to_json(self) -> str:
        """Serialize to a wire frame, omitting an absent event id."""
        return self.model_dump_json(exclude_none=True)


class ConnectionEstablishedMessage(BaseModel):
    """Server → Client: Connection established notification.

    Sent once the client's upstream session is ready.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["connection.established"] = "connection.established"
    client_id: str = Field(..., alias="clientId", description="Assigned client identifier")
    timestamp: int = Field(
        default_factory=lambda: int(time.time() * 1000),
        description="Server time in epoch milliseconds",
    )

    def to_json(self) -> str:
        """Serialize to a wire frame using protocol field names."""
        return self.model_dump_json(by_alias=True)


ServerMessage = ErrorMessage | ConnectionEstablishedMessage


def decode_client_frame(raw: str | bytes) -> Event:
    """Decode a client frame into an event.

    Args:
        raw: Text or binary WebSocket frame

    Returns:
        Decoded event mapping

    Raises:
        InvalidMessageFormatError: If the frame is not valid JSON or not a
            JSON object. A missing or non-string ``type`` is left to event
            classification, which treats it as unrecognized.
    """
    try:
        text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
        event = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidMessageFormatError(f"Invalid JSON: {e}") from e

    if not isinstance(event, dict):
        raise InvalidMessageFormatError(
            f"Expected a JSON object, got {type(event).__name__}"
        )

    return event


def decode_upstream_frame(raw: str | bytes) -> Event:
    """Decode an upstream frame into an event.

    Raises:
        ValueError: If the frame is not a JSON object
    """
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    event = json.loads(text)
    if not isinstance(event, dict):
        raise ValueError(f"Expected a JSON object, got {type(event).__name__}")
    return event


def encode_event(event: Event) -> str:
    """Serialize an event to a JSON text frame."""
    return json.dumps(event)
