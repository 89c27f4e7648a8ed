"""Relay session records.

A Session binds one client connection to one upstream connection and
tracks the conversational state the upstream reports back.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


@dataclass
class SessionState:
    """Mutable state updated from upstream events."""

    remote_session_id: str | None = None
    remote_conversation_id: str | None = None
    is_connected: bool = True


@dataclass
class Session:
    """Bound pairing of a client transport and its upstream connection.

    Attributes:
        client_id: Owning client identifier
        connection_id: Upstream connection identifier
        client_socket: Client transport handle (events are forwarded here)
        id: Unique session identifier
        state: Conversational state reported by the upstream
        created_at: Creation time (epoch seconds)
    """

    client_id: str
    connection_id: str
    client_socket: Any
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = field(default_factory=SessionState)
    created_at: float = field(default_factory=time.time)

    def summary(self) -> dict[str, str | bool | float | None]:
        """Get session summary for logging/monitoring."""
        return {
            "session_id": self.id,
            "client_id": self.client_id,
            "connection_id": self.connection_id,
            "remote_session_id": self.state.remote_session_id,
            "remote_conversation_id": self.state.remote_conversation_id,
            "is_connected": self.state.is_connected,
            "age_s": time.time() - self.created_at,
        }
