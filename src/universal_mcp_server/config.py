"""Server configuration.

Configuration is a YAML document validated into pydantic models:

    name: my-server
    version: 1.0.0
    transports:
      websocket: {port: 3000}
      http: {port: 3001, path: /mcp}
      stdio: {}
    logging: {level: info, format: text}

Channels start in the order their keys appear under `transports`.

Environment overrides:
    MCP_SERVER_LOG_LEVEL   logging level (debug, info, warning, error)
    MCP_SERVER_LOG_FORMAT  text or json
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_SERVER_NAME = "Universal MCP Server"
CHANNEL_NAMES = ("websocket", "http", "stdio")

ENV_LOG_LEVEL = "MCP_SERVER_LOG_LEVEL"
ENV_LOG_FORMAT = "MCP_SERVER_LOG_FORMAT"


class WebSocketChannelConfig(BaseModel):
    """Persistent socket channel."""

    host: str = "localhost"
    port: int = Field(default=3000, ge=0, le=65535)
    path: str = "/"
    max_connections: int | None = Field(default=None, ge=1)
    max_message_size: int = Field(default=10 * 1024 * 1024, ge=1)


class HttpChannelConfig(BaseModel):
    """Stateless request/response channel."""

    host: str = "localhost"
    port: int = Field(default=3001, ge=0, le=65535)
    path: str = "/mcp"
    cors: bool = True
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    max_body_size: int = Field(default=10 * 1024 * 1024, ge=1)
    # Seconds an exchange waits for its response before answering with an ack
    request_timeout: float = Field(default=30.0, gt=0)
    # "result": reply with the dispatched response; "ack": reply immediately
    response_mode: Literal["result", "ack"] = "result"


class StdioChannelConfig(BaseModel):
    """Delimited stream channel over stdin/stdout."""

    encoding: str = "utf-8"
    delimiter: str = Field(default="\n", min_length=1)
    max_buffer_size: int = Field(default=10 * 1024 * 1024, ge=1)
    read_chunk_size: int = Field(default=64 * 1024, ge=1)


ChannelConfig = WebSocketChannelConfig | HttpChannelConfig | StdioChannelConfig


class TransportsConfig(BaseModel):
    """Which channels to run, in start order."""

    websocket: WebSocketChannelConfig | None = None
    http: HttpChannelConfig | None = None
    stdio: StdioChannelConfig | None = None
    order: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _remember_order(cls, data: Any) -> Any:
        if isinstance(data, dict) and "order" not in data:
            data = dict(data)
            data["order"] = [key for key in data if key in CHANNEL_NAMES]
        return data

    @field_validator("order")
    @classmethod
    def _known_channels(cls, value: list[str]) -> list[str]:
        unknown = [name for name in value if name not in CHANNEL_NAMES]
        if unknown:
            raise ValueError(f"Unknown channels: {', '.join(unknown)}")
        return value

    def channels(self) -> list[tuple[str, ChannelConfig]]:
        """Configured channels in the order they were given."""
        names = list(dict.fromkeys(self.order))
        names += [name for name in CHANNEL_NAMES if name not in names]

        configured: list[tuple[str, ChannelConfig]] = []
        for name in names:
            channel_config = getattr(self, name)
            if channel_config is not None:
                configured.append((name, channel_config))
        return configured


class PluginConfig(BaseModel):
    name: str
    enabled: bool = True
    module: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class LoggingConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error"] = "info"
    format: Literal["text", "json"] = "text"
    file: str | None = None

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.lower()
            return "warning" if value == "warn" else value
        return value


class ServerConfig(BaseModel):
    name: str = DEFAULT_SERVER_NAME
    version: str = "1.0.0"
    description: str = ""
    transports: TransportsConfig = Field(
        default_factory=lambda: TransportsConfig(stdio=StdioChannelConfig())
    )
    plugins: list[PluginConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    # Default upper bound in seconds for a single tool call (None: unbounded)
    request_timeout: float | None = Field(default=None, gt=0)


def apply_env_overrides(config: ServerConfig) -> ServerConfig:
    """Apply MCP_SERVER_* environment variables on top of a config."""
    updates: dict[str, Any] = {}
    if level := os.environ.get(ENV_LOG_LEVEL):
        updates["level"] = level
    if fmt := os.environ.get(ENV_LOG_FORMAT):
        updates["format"] = fmt
    if not updates:
        return config

    logging_config = LoggingConfig.model_validate({**config.logging.model_dump(), **updates})
    return config.model_copy(update={"logging": logging_config})


def load_config(path: str | Path | None = None) -> ServerConfig:
    """Load configuration from a YAML file (or defaults) plus environment.

    Raises:
        FileNotFoundError: If the path does not exist
        pydantic.ValidationError: If the document is invalid
    """
    data: dict[str, Any] = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

    return apply_env_overrides(ServerConfig.model_validate(data))
