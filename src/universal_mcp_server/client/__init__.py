"""Client library for talking to a Universal MCP Server over any channel."""

from .client import (
    MCPClient,
    RequestFailed,
    create_http_client,
    create_stdio_client,
    create_websocket_client,
)
from .transport import (
    BaseClientTransport,
    ClientConnectionError,
    ClientError,
    ClientTimeout,
    HttpClientConfig,
    HttpClientTransport,
    StdioClientConfig,
    StdioClientTransport,
    TransportState,
    WebSocketClientConfig,
    WebSocketClientTransport,
)

__all__ = [
    "MCPClient",
    "RequestFailed",
    "create_websocket_client",
    "create_http_client",
    "create_stdio_client",
    "BaseClientTransport",
    "WebSocketClientTransport",
    "HttpClientTransport",
    "StdioClientTransport",
    "WebSocketClientConfig",
    "HttpClientConfig",
    "StdioClientConfig",
    "TransportState",
    "ClientError",
    "ClientConnectionError",
    "ClientTimeout",
]
