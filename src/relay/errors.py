"""Error taxonomy for the relay.

Each error carries the protocol-level ``code`` that is reported to clients
when the error is translated into an ``error`` event at the server boundary.
"""


class RelayError(Exception):
    """Base class for all relay errors."""

    code: str = "internal_error"


class ConfigError(RelayError):
    """Required configuration is missing or invalid (fatal at startup)."""

    code = "configuration_error"


class UpstreamConnectError(RelayError):
    """Upstream connection could not be established."""

    code = "initialization_failed"


class ConnectTimeoutError(UpstreamConnectError):
    """Upstream handshake did not complete within the configured timeout."""


class SessionNotFoundError(RelayError, LookupError):
    """Caller referenced an unknown or already closed session."""

    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ConnectionNotFoundError(RelayError, LookupError):
    """Caller referenced an unknown or already closed upstream connection."""

    code = "connection_not_found"

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection not found: {connection_id}")
        self.connection_id = connection_id


class WaitTimeoutError(RelayError, TimeoutError):
    """No matching upstream event arrived before the wait deadline."""

    code = "wait_timeout"


class InvalidMessageFormatError(RelayError, ValueError):
    """Client frame is not a JSON object with a string ``type``."""

    code = "invalid_message_format"


class UnrecognizedEventTypeError(RelayError):
    """Client event ``type`` is outside the forwarded set."""

    code = "unrecognized_event_type"


class InternalDispatchError(RelayError):
    """Unexpected failure while forwarding a client event upstream."""

    code = "internal_error"
