"""Configuration schema for the chat client.

Defines Pydantic models for loading and validating client configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, field_validator


class IceServerConfig(BaseModel):
    """STUN/TURN server entry."""

    urls: list[str] = Field(..., min_length=1, description="Server URLs (stun:, turn:)")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")


class ReconnectPolicy(BaseModel):
    """Automatic re-queue after a partner leaves or a connection fails.

    The debounce is cancelled by stop(), or by a match/offer that arrives
    while waiting.
    """

    enabled: bool = Field(default=True, description="Re-join the queue automatically")
    debounce_s: float = Field(
        default=2.0,
        ge=0.0,
        le=30.0,
        description="Delay before re-joining the queue",
    )


class SignalingClientConfig(BaseModel):
    """Signaling connection retry settings."""

    reconnection_attempts: int = Field(
        default=5,
        ge=0,
        le=100,
        description="Reconnection attempts after the server connection drops",
    )
    reconnection_delay_s: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Delay between reconnection attempts",
    )


class MediaConfig(BaseModel):
    """Local capture settings (passed to aiortc's MediaPlayer)."""

    source: str = Field(
        default="/dev/video0",
        description="Capture device or file (e.g. /dev/video0, default:none, clip.mp4)",
    )
    format: str | None = Field(
        default="v4l2",
        description="Input format (v4l2, avfoundation, dshow) or null for files",
    )
    options: dict[str, str] = Field(
        default_factory=lambda: {"framerate": "30", "video_size": "640x480"},
        description="Demuxer options",
    )
    audio: bool = Field(default=True, description="Send audio")
    video: bool = Field(default=True, description="Send video")


class ClientConfig(BaseModel):
    """Root chat client configuration."""

    server_url: str = Field(
        default="ws://localhost:3001",
        description="Signaling server WebSocket URL",
    )
    ice_servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig(urls=["stun:stun.l.google.com:19302"])],
        description="ICE servers for NAT traversal",
    )
    reconnect: ReconnectPolicy = Field(default_factory=ReconnectPolicy)
    signaling: SignalingClientConfig = Field(default_factory=SignalingClientConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate WebSocket URL scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "ClientConfig":
        """Load configuration from YAML file with environment variable overrides.

        Environment overrides:
            SERVER_URL: Signaling server URL
            MEDIA_SOURCE: Capture device or file

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ClientConfig":
        """Load configuration from YAML or use defaults if file doesn't exist."""
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    if server_url := os.getenv("SERVER_URL"):
        data["server_url"] = server_url

    if media_source := os.getenv("MEDIA_SOURCE"):
        data.setdefault("media", {})["source"] = media_source

    return data
