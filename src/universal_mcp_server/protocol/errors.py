"""Protocol error taxonomy.

Every per-request failure is a ProtocolError. The dispatch core renders
them into the error field of a Response envelope; nothing here is ever
allowed to escape to a transport.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Numeric error codes (JSON-RPC reserved range plus server codes)."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Server-defined
    RESOURCE_NOT_FOUND = -32002
    REQUEST_TIMEOUT = -32003


class ProtocolError(Exception):
    """Base class for errors that become a structured error response.

    Tool handlers may raise any subclass (or ToolError directly) to control
    the code and detail payload the client sees.
    """

    code: int = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, *, code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """Render as a wire error object."""
        error: dict[str, Any] = {"code": int(self.code), "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


class ParseError(ProtocolError):
    """The payload was not valid JSON."""

    code = ErrorCode.PARSE_ERROR


class InvalidRequest(ProtocolError):
    """The frame was JSON but not a valid request envelope."""

    code = ErrorCode.INVALID_REQUEST

    def __init__(
        self,
        message: str = "Invalid Request",
        *,
        request_id: str | int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message, data=data)
        self.request_id = request_id


class MethodNotFound(ProtocolError):
    code = ErrorCode.METHOD_NOT_FOUND

    def __init__(self, method: str) -> None:
        super().__init__(f"Unknown method: {method}")
        self.method = method


class InvalidParams(ProtocolError):
    code = ErrorCode.INVALID_PARAMS


class ToolNameRequired(InvalidParams):
    def __init__(self) -> None:
        super().__init__("Tool name is required")


class UnknownTool(ProtocolError):
    code = ErrorCode.METHOD_NOT_FOUND

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ResourceNotFound(ProtocolError):
    code = ErrorCode.RESOURCE_NOT_FOUND

    def __init__(self, uri: str) -> None:
        super().__init__(f"Resource not found: {uri}")
        self.uri = uri


class RequestTimeout(ProtocolError):
    code = ErrorCode.REQUEST_TIMEOUT


class InternalError(ProtocolError):
    code = ErrorCode.INTERNAL_ERROR

    @classmethod
    def from_exception(cls, exc: BaseException) -> InternalError:
        """Capture an unexpected handler failure."""
        message = str(exc) or "Internal server error"
        return cls(message, data={"type": type(exc).__name__})


class ToolError(ProtocolError):
    """Raised by tool handlers that want a specific error code.

    Example:
        raise ToolError("Quota exceeded", code=4029, data={"retry_after": 30})
    """
