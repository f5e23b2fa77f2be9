"""Configuration schema for the Mingle relay and headless client.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _validate_log_level(v: str) -> str:
    level = v.upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}, got '{v}'")
    return level


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3000, ge=0, le=65535, description="Bind port (0 picks a free one)")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent sessions")
    max_message_bytes: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Largest accepted client frame (SDP offers are the biggest)",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HttpConfig(BaseModel):
    """Health, metrics and world-config HTTP endpoints."""

    enabled: bool = Field(default=True, description="Serve the HTTP side app")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=3001, ge=0, le=65535, description="Bind port (0 picks a free one)")


class TlsConfig(BaseModel):
    """TLS for the relay socket and the HTTP side app.

    Browsers grant camera and microphone access only on secure origins or
    localhost, so a relay reached over a LAN needs this enabled.
    """

    enabled: bool = Field(default=False, description="Serve wss:// and https://")
    certfile: Path = Field(
        default=Path("certs/mingle.cert"), description="PEM certificate (chain) file"
    )
    keyfile: Path = Field(default=Path("certs/mingle.key"), description="PEM private key file")


class RelayBehaviourConfig(BaseModel):
    """Fan-out policy of the relay."""

    broadcast_includes_sender: bool = Field(
        default=True,
        description="Echo position updates back to their sender (clients self-filter)",
    )
    late_join_snapshot: bool = Field(
        default=False,
        description="Send a newly joined session the last transform of every other session",
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    tls: TlsConfig = Field(default_factory=TlsConfig)
    relay: RelayBehaviourConfig = Field(default_factory=RelayBehaviourConfig)

    admin_token: str | None = Field(
        default=None,
        description="Shared token gating world-config writes (None disables writes)",
    )
    world_config_path: Path | None = Field(
        default=None,
        description="YAML file the world configuration is loaded from and saved to",
    )

    # Operational settings
    debug: bool = Field(default=False, description="Verbose per-message relay logging")
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the logging level."""
        return _validate_log_level(v)

    @field_validator("admin_token")
    @classmethod
    def validate_admin_token(cls, v: str | None) -> str | None:
        """Treat an empty token as unset."""
        if v is not None and not v.strip():
            return None
        return v

    @property
    def effective_log_level(self) -> str:
        """Logging level after applying the debug flag."""
        return "DEBUG" if self.debug else self.log_level

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
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        data = _load_yaml_mapping(path)
        apply_relay_env_overrides(data)
        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict[str, Any] = {}
        apply_relay_env_overrides(data)
        return cls.model_validate(data)


def apply_relay_env_overrides(data: dict[str, Any]) -> None:
    """Apply the relay's environment overrides.

    Recognised: PORT, LISTEN_HOST, USE_HTTPS, SSL_CERT, SSL_KEY,
    MINGLE_ADMIN_TOKEN, MINGLE_DEBUG and LOG_LEVEL.

    LISTEN_HOST is used rather than HOST because many shells export HOST,
    which would silently bind the relay to an unreachable address.
    """
    ws = data.setdefault("transport", {}).setdefault("websocket", {})

    if port := os.getenv("PORT"):
        ws["port"] = int(port)

    if host := os.getenv("LISTEN_HOST"):
        ws["host"] = host

    tls = data.setdefault("tls", {})

    if use_https := os.getenv("USE_HTTPS"):
        tls["enabled"] = use_https.lower() in ("true", "1", "yes")

    if certfile := os.getenv("SSL_CERT"):
        tls["certfile"] = certfile

    if keyfile := os.getenv("SSL_KEY"):
        tls["keyfile"] = keyfile

    if admin_token := os.getenv("MINGLE_ADMIN_TOKEN"):
        data["admin_token"] = admin_token

    if debug := os.getenv("MINGLE_DEBUG"):
        data["debug"] = debug.lower() in ("true", "1", "yes")

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level


class MediaConfig(BaseModel):
    """Local camera/microphone capture for the headless client.

    Devices are opened through FFmpeg (aiortc's MediaPlayer), e.g.
    ``/dev/video0`` with format ``v4l2`` on Linux.
    """

    enabled: bool = Field(default=True, description="Try to capture local media")
    video_device: str | None = Field(default=None, description="Video device or file")
    video_format: str | None = Field(default=None, description="FFmpeg input format")
    video_options: dict[str, str] = Field(
        default_factory=lambda: {"video_size": "640x480", "framerate": "30"},
        description="FFmpeg input options for the video device",
    )
    audio_device: str | None = Field(default=None, description="Audio device or file")
    audio_format: str | None = Field(default=None, description="FFmpeg input format")


class ClientConfig(BaseModel):
    """Headless participant configuration."""

    relay_url: str = Field(default="ws://localhost:3000", description="Relay WebSocket URL")
    transform_interval_s: float = Field(
        default=0.1,
        gt=0,
        le=5.0,
        description="Interval between outgoing transform updates",
    )
    ice_servers: list[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        description="STUN/TURN URLs handed to every peer connection",
    )
    negotiation_timeout_s: float = Field(
        default=15.0,
        gt=0,
        description="Close a peer link that has not connected within this time",
    )
    retry_cooldown_s: float = Field(
        default=5.0,
        ge=0,
        description="Ignore rediscovery of a peer for this long after a failed link",
    )
    media: MediaConfig = Field(default_factory=MediaConfig)
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("relay_url")
    @classmethod
    def validate_relay_url(cls, v: str) -> str:
        """Validate that the relay URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"relay_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalise and validate the logging level."""
        return _validate_log_level(v)

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load client configuration from YAML.

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        data = _load_yaml_mapping(path)
        apply_client_env_overrides(data)
        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load client configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict[str, Any] = {}
        apply_client_env_overrides(data)
        return cls.model_validate(data)


def apply_client_env_overrides(data: dict[str, Any]) -> None:
    """Apply MINGLE_RELAY_URL and LOG_LEVEL."""
    if relay_url := os.getenv("MINGLE_RELAY_URL"):
        data["relay_url"] = relay_url

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level


def _load_yaml_mapping(path: Path) -> dict[str, Any]:
    import yaml  # type: ignore[import-untyped]

    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {path}")
    return data
