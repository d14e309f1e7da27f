"""MCP client.

Wraps a client transport with one method per protocol operation.

Usage:
    async with create_websocket_client("ws://localhost:3000/") as client:
        tools = await client.list_tools()
        result = await client.call_tool("echo", {"message": "hi"})

    async with create_stdio_client() as client:   # launches universal-mcp-server
        info = await client.server_info()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..protocol.messages import ErrorInfo, Method, Response
from .transport import (
    BaseClientTransport,
    ClientError,
    HttpClientConfig,
    HttpClientTransport,
    StdioClientConfig,
    StdioClientTransport,
    WebSocketClientConfig,
    WebSocketClientTransport,
)


class RequestFailed(ClientError):
    """The server answered with an error response."""

    def __init__(self, method: str, error: ErrorInfo) -> None:
        super().__init__(f"{method} failed ({error.code}): {error.message}")
        self.method = method
        self.code = error.code
        self.data = error.data


@dataclass
class MCPClient:
    """Protocol operations over any client transport."""

    transport: BaseClientTransport

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    async def connect(self) -> None:
        await self.transport.connect()

    async def disconnect(self) -> None:
        await self.transport.disconnect()

    async def request(self, method: str | Method, params: dict[str, Any] | None = None) -> Any:
        """Send a request and return its result.

        Raises:
            RequestFailed: If the server answered with an error
        """
        response = await self.transport.request(method, params)
        return _result_of(method, response)

    async def list_tools(self) -> list[dict[str, Any]]:
        result = await self.request(Method.LIST_TOOLS)
        return result["tools"]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        params: dict[str, Any] = {"name": name}
        if arguments is not None:
            params["arguments"] = arguments
        return await self.request(Method.CALL_TOOL, params)

    async def list_resources(self) -> list[dict[str, Any]]:
        result = await self.request(Method.LIST_RESOURCES)
        return result["resources"]

    async def read_resource(self, uri: str) -> list[dict[str, Any]]:
        result = await self.request(Method.READ_RESOURCE, {"uri": uri})
        return result["contents"]

    async def server_info(self) -> dict[str, Any]:
        return await self.request(Method.SERVER_INFO)

    async def __aenter__(self) -> MCPClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


def _result_of(method: str | Method, response: Response) -> Any:
    if response.error is not None:
        name = method.value if isinstance(method, Method) else method
        raise RequestFailed(name, response.error)
    return response.result


# =============================================================================
# Factories
# =============================================================================


def create_websocket_client(url: str, timeout: float = 30.0) -> MCPClient:
    return MCPClient(WebSocketClientTransport(WebSocketClientConfig(url=url, timeout=timeout)))


def create_http_client(
    base_url: str, path: str = "/mcp", timeout: float = 30.0
) -> MCPClient:
    return MCPClient(
        HttpClientTransport(HttpClientConfig(base_url=base_url, path=path, timeout=timeout))
    )


def create_stdio_client(
    command: list[str] | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 30.0,
) -> MCPClient:
    """Client that launches the server as a subprocess.

    Args:
        command: Server command line (default: ["universal-mcp-server"])
        cwd: Working directory for the subprocess
        env: Variables added to the inherited environment
    """
    config = StdioClientConfig(cwd=cwd, env=env, timeout=timeout)
    if command is not None:
        config.command = command
    return MCPClient(StdioClientTransport(config))
