"""Canonical request/response envelopes.

Requests are what every channel adapter produces after unframing; responses
are what the dispatch core hands back. Both are JSON-RPC 2.0 shaped on the
wire:

    -> {"jsonrpc": "2.0", "id": "req_1", "method": "tools/list", "params": {}}
    <- {"jsonrpc": "2.0", "id": "req_1", "result": {...}, "timestamp": 1700000000000}

The response always carries the id of the request that produced it.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import ProtocolError

JSONRPC_VERSION = "2.0"


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


class Method(str, Enum):
    """Protocol-level operations understood by the dispatch core."""

    LIST_TOOLS = "tools/list"
    CALL_TOOL = "tools/call"
    LIST_RESOURCES = "resources/list"
    READ_RESOURCE = "resources/read"
    SERVER_INFO = "server/info"


class Request(BaseModel):
    """A request envelope.

    Immutable once built. `id` is whatever the caller sent (string or
    integer); a missing or null id is replaced with a generated one so that
    the response can always be correlated.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | int = Field(default_factory=generate_request_id)
    method: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    received_at: float = Field(default_factory=time.time, exclude=True)

    @field_validator("id", mode="before")
    @classmethod
    def _fill_missing_id(cls, value: Any) -> Any:
        if value is None:
            return generate_request_id()
        return value

    @field_validator("params", mode="before")
    @classmethod
    def _null_params(cls, value: Any) -> Any:
        return {} if value is None else value

    def get_param(self, key: str, default: Any = None) -> Any:
        """Get a parameter with optional default."""
        return self.params.get(key, default)

    @classmethod
    def create(
        cls,
        method: str | Method,
        params: dict[str, Any] | None = None,
        request_id: str | int | None = None,
    ) -> Request:
        """Factory method for creating requests."""
        return cls(
            id=request_id,
            method=method.value if isinstance(method, Method) else method,
            params=params or {},
        )

    def to_wire(self) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


class ErrorInfo(BaseModel):
    """Structured error carried by a failed response."""

    code: int
    message: str
    data: Any = None

    @classmethod
    def from_exception(cls, exc: ProtocolError) -> ErrorInfo:
        return cls(code=int(exc.code), message=exc.message, data=exc.data)


class Response(BaseModel):
    """A response envelope: exactly one of `result` or `error`."""

    id: str | int | None
    result: Any = None
    error: ErrorInfo | None = None
    timestamp: float = Field(default_factory=time.time)

    @model_validator(mode="after")
    def _result_xor_error(self) -> Response:
        if self.error is not None and self.result is not None:
            raise ValueError("Response cannot carry both a result and an error")
        return self

    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def success(cls, request_id: str | int | None, result: Any) -> Response:
        """Create a successful response."""
        return cls(id=request_id, result=result)

    @classmethod
    def failure(cls, request_id: str | int | None, error: ProtocolError | ErrorInfo) -> Response:
        """Create an error response."""
        if isinstance(error, ProtocolError):
            error = ErrorInfo.from_exception(error)
        return cls(id=request_id, error=error)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON-RPC shaped wire dict."""
        data: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            data["error"] = self.error.model_dump(exclude_none=True)
        else:
            data["result"] = self.result
        data["timestamp"] = int(self.timestamp * 1000)
        return data


def notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build an uncorrelated server-to-client notification."""
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": params or {}}
