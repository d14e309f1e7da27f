"""Transport-agnostic protocol layer.

Defines the request/response envelopes that work identically across all
channels (WebSocket, HTTP, stdio).

Key concepts:
- Request: client -> server, carries an id, a method and params
- Response: server -> client, carries the same id and a result or an error
- Correlation: every response links back to its originating request
"""

from .errors import (
    ErrorCode,
    InternalError,
    InvalidParams,
    InvalidRequest,
    MethodNotFound,
    ParseError,
    ProtocolError,
    RequestTimeout,
    ResourceNotFound,
    ToolError,
    ToolNameRequired,
    UnknownTool,
)
from .handler import RequestHandler
from .messages import ErrorInfo, Method, Request, Response, notification

__all__ = [
    "Request",
    "Response",
    "ErrorInfo",
    "Method",
    "notification",
    "RequestHandler",
    "ErrorCode",
    "ProtocolError",
    "ParseError",
    "InvalidRequest",
    "MethodNotFound",
    "InvalidParams",
    "ToolNameRequired",
    "UnknownTool",
    "ResourceNotFound",
    "RequestTimeout",
    "InternalError",
    "ToolError",
]
