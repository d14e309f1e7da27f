"""Universal MCP Server.

Serves one tool protocol over WebSocket, HTTP and stdio at the same time.
"""

from .config import ServerConfig, load_config
from .plugins import Plugin, Resource
from .protocol import ProtocolError, Request, Response, ToolError
from .server import AlreadyRunning, MCPServer, ServerState
from .tools import ToolDefinition, ToolRegistry, tool

__version__ = "1.0.0"

__all__ = [
    "MCPServer",
    "ServerState",
    "AlreadyRunning",
    "ServerConfig",
    "load_config",
    "ToolDefinition",
    "ToolRegistry",
    "tool",
    "Plugin",
    "Resource",
    "Request",
    "Response",
    "ProtocolError",
    "ToolError",
]
