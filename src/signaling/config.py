"""Configuration schema for the signaling server.

Defines Pydantic models for loading and validating server configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3001, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=1000, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**16,
        ge=1024,
        description="Maximum inbound frame size (SDP blobs are a few KB)",
    )
    outbound_queue_size: int = Field(
        default=256,
        ge=8,
        description="Per-peer outbound message buffer size",
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HealthConfig(BaseModel):
    """Health/metrics HTTP endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=3002, ge=1024, le=65535, description="Bind port")


class SignalingConfig(BaseModel):
    """Root signaling server configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "SignalingConfig":
        """Load configuration from YAML file with environment variable overrides.

        Environment overrides:
            PORT: WebSocket bind port
            HEALTH_PORT: Health endpoint bind port
            LOG_LEVEL: Logging level

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

        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "SignalingConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    if port := os.getenv("PORT"):
        data.setdefault("transport", {}).setdefault("websocket", {})["port"] = int(port)

    if health_port := os.getenv("HEALTH_PORT"):
        data.setdefault("health", {})["port"] = int(health_port)

    if log_level := os.getenv("LOG_LEVEL"):
        data["log_level"] = log_level

    return data
