"""Configuration schema for the relay.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from src.relay.errors import ConfigError

KNOWN_AUDIO_FORMATS = ("pcm16", "g711_ulaw", "g711_alaw")


class ServerConfig(BaseModel):
    """Client-facing WebSocket server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")
    ping_interval_s: float = Field(
        default=30.0, gt=0, description="Interval between liveness pings"
    )
    pong_timeout_s: float = Field(
        default=60.0, gt=0, description="Evict clients silent for longer than this"
    )
    max_message_size: int = Field(
        default=2**20, ge=1024, description="Maximum inbound frame size in bytes"
    )


class UpstreamConfig(BaseModel):
    """Upstream realtime API configuration."""

    api_key: str | None = Field(default=None, description="Bearer credential")
    organization_id: str | None = Field(default=None, description="Organization header")
    project_id: str | None = Field(default=None, description="Project header")
    model: str = Field(
        default="gpt-4o-realtime-preview",
        description="Model name passed as the ?model= query parameter",
    )
    endpoint: str = Field(
        default="wss://api.openai.com/v1/realtime",
        description="Upstream WebSocket endpoint",
    )
    connect_timeout_s: float = Field(
        default=10.0, gt=0, description="Handshake timeout for new connections"
    )

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        """Validate that the endpoint is a WebSocket URL."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Upstream endpoint must start with ws:// or wss://, got '{v}'")
        return v

    @property
    def url(self) -> str:
        """Endpoint URL parameterized by the configured model."""
        return f"{self.endpoint}?model={self.model}"


class AudioConfig(BaseModel):
    """Audio format configuration."""

    supported_formats: list[str] = Field(
        default_factory=lambda: list(KNOWN_AUDIO_FORMATS),
        description="Audio formats accepted by the upstream API",
    )

    @field_validator("supported_formats")
    @classmethod
    def validate_supported_formats(cls, v: list[str]) -> list[str]:
        """Validate that every listed format is known."""
        unknown = [fmt for fmt in v if fmt not in KNOWN_AUDIO_FORMATS]
        if unknown:
            raise ValueError(
                f"Unsupported audio formats {unknown}, must be within {list(KNOWN_AUDIO_FORMATS)}"
            )
        return v


class HttpConfig(BaseModel):
    """Health/info HTTP surface configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /info")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Logging level")
    log_dir: Path | None = Field(
        default=None, description="Directory for rotating log files (console only if unset)"
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize the log level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}, got '{v}'")
        return v.upper()


class RelayConfig(BaseModel):
    """Root relay configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    environment: str = Field(default="development", description="Deployment environment name")
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    def require_api_key(self) -> str:
        """Return the upstream API key.

        Raises:
            ConfigError: If no API key is configured
        """
        if not self.upstream.api_key:
            raise ConfigError(
                "Upstream API key not configured. "
                "Set OPENAI_API_KEY or upstream.api_key in the config file."
            )
        return self.upstream.api_key

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides are applied in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


# (environment variable, config section, field)
_ENV_OVERRIDES: list[tuple[str, str | None, str]] = [
    ("WS_PORT", "server", "port"),
    ("HTTP_PORT", "http", "port"),
    ("OPENAI_API_KEY", "upstream", "api_key"),
    ("OPENAI_ORG_ID", "upstream", "organization_id"),
    ("OPENAI_PROJECT_ID", "upstream", "project_id"),
    ("OPENAI_MODEL", "upstream", "model"),
    ("LOG_LEVEL", "logging", "level"),
    ("LOG_DIR", "logging", "log_dir"),
    ("NODE_ENV", None, "environment"),
    ("ENVIRONMENT", None, "environment"),
]


def _apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables onto raw config data."""
    import os

    for env_name, section, key in _ENV_OVERRIDES:
        value = os.getenv(env_name)
        if not value:
            continue
        if section is None:
            data[key] = value
            continue
        if not isinstance(data.get(section), dict):
            data[section] = {}
        data[section][key] = value

    return data
