"""Unit tests for request/response envelopes and frame parsing.

Tests:
- Request id handling (kept, generated, null)
- Params normalization and validation
- Response wire format and result/error exclusivity
- parse_request framing vs. envelope errors
"""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from universal_mcp_server.protocol.errors import (
    ErrorCode,
    InternalError,
    InvalidRequest,
    MethodNotFound,
    ToolError,
    UnknownTool,
)
from universal_mcp_server.protocol.messages import (
    ErrorInfo,
    Method,
    Request,
    Response,
    notification,
)
from universal_mcp_server.transport.base import FramingError, encode_message, parse_request

# =============================================================================
# Request
# =============================================================================


class TestRequest:
    """Tests for the request envelope."""

    def test_keeps_caller_id(self) -> None:
        request = Request.model_validate({"id": "abc", "method": "tools/list"})
        assert request.id == "abc"

    def test_keeps_integer_id(self) -> None:
        request = Request.model_validate({"id": 42, "method": "tools/list"})
        assert request.id == 42

    def test_generates_missing_id(self) -> None:
        request = Request.model_validate({"method": "tools/list"})
        assert isinstance(request.id, str)
        assert request.id.startswith("req_")

    def test_generates_id_for_null(self) -> None:
        request = Request.model_validate({"id": None, "method": "tools/list"})
        assert isinstance(request.id, str)
        assert request.id.startswith("req_")

    def test_generated_ids_are_unique(self) -> None:
        ids = {Request.model_validate({"method": "x"}).id for _ in range(100)}
        assert len(ids) == 100

    def test_null_params_become_empty(self) -> None:
        request = Request.model_validate({"id": 1, "method": "x", "params": None})
        assert request.params == {}

    def test_rejects_empty_method(self) -> None:
        with pytest.raises(ValidationError):
            Request.model_validate({"id": 1, "method": ""})

    def test_rejects_non_object_params(self) -> None:
        with pytest.raises(ValidationError):
            Request.model_validate({"id": 1, "method": "x", "params": [1, 2]})

    def test_ignores_unknown_keys(self) -> None:
        request = Request.model_validate({"jsonrpc": "2.0", "id": 1, "method": "x", "extra": True})
        assert request.method == "x"

    def test_is_immutable(self) -> None:
        request = Request.create(Method.LIST_TOOLS)
        with pytest.raises(ValidationError):
            request.method = "other"  # type: ignore[misc]

    def test_create_from_method_enum(self) -> None:
        request = Request.create(Method.CALL_TOOL, {"name": "echo"}, request_id="r1")
        assert request.method == "tools/call"
        assert request.get_param("name") == "echo"
        assert request.get_param("missing", "default") == "default"

    def test_to_wire(self) -> None:
        request = Request.create("tools/list", request_id=7)
        assert request.to_wire() == {
            "jsonrpc": "2.0",
            "id": 7,
            "method": "tools/list",
            "params": {},
        }


# =============================================================================
# Response
# =============================================================================


class TestResponse:
    """Tests for the response envelope."""

    def test_success_wire_format(self) -> None:
        wire = Response.success("r1", {"ok": True}).to_wire()

        assert wire["jsonrpc"] == "2.0"
        assert wire["id"] == "r1"
        assert wire["result"] == {"ok": True}
        assert "error" not in wire
        assert isinstance(wire["timestamp"], int)

    def test_failure_wire_format(self) -> None:
        wire = Response.failure("r2", MethodNotFound("nope")).to_wire()

        assert wire["id"] == "r2"
        assert "result" not in wire
        assert wire["error"] == {"code": -32601, "message": "Unknown method: nope"}

    def test_failure_keeps_error_data(self) -> None:
        error = ToolError("Quota exceeded", code=4029, data={"retry_after": 30})
        wire = Response.failure(1, error).to_wire()

        assert wire["error"]["code"] == 4029
        assert wire["error"]["data"] == {"retry_after": 30}

    def test_cannot_carry_result_and_error(self) -> None:
        with pytest.raises(ValidationError):
            Response(id=1, result={"x": 1}, error=ErrorInfo(code=-1, message="bad"))

    def test_is_error(self) -> None:
        assert Response.failure(1, UnknownTool("x")).is_error()
        assert not Response.success(1, None).is_error()

    def test_null_id_allowed_for_failures(self) -> None:
        wire = Response.failure(None, InvalidRequest()).to_wire()
        assert wire["id"] is None
        assert wire["error"]["code"] == ErrorCode.INVALID_REQUEST


class TestErrors:
    """Tests for the error taxonomy."""

    def test_internal_error_from_exception(self) -> None:
        error = InternalError.from_exception(ValueError("bad value"))

        assert error.code == ErrorCode.INTERNAL_ERROR
        assert error.message == "bad value"
        assert error.data == {"type": "ValueError"}

    def test_internal_error_default_message(self) -> None:
        error = InternalError.from_exception(RuntimeError())
        assert error.message == "Internal server error"

    def test_unknown_tool_uses_method_not_found_code(self) -> None:
        assert UnknownTool("x").to_dict() == {"code": -32601, "message": "Unknown tool: x"}


def test_notification_shape() -> None:
    assert notification("connected", {"connectionId": "websocket-1"}) == {
        "jsonrpc": "2.0",
        "method": "connected",
        "params": {"connectionId": "websocket-1"},
    }


# =============================================================================
# Frame parsing
# =============================================================================


class TestParseRequest:
    """Tests for turning a raw frame into a request."""

    def test_parses_text(self) -> None:
        request = parse_request('{"id": 1, "method": "tools/list"}')
        assert request.id == 1
        assert request.method == "tools/list"

    def test_parses_utf8_bytes(self) -> None:
        request = parse_request('{"id": "ü", "method": "x"}'.encode())
        assert request.id == "ü"

    @pytest.mark.parametrize("frame", ["not json", "[1, 2]", "42", ""])
    def test_framing_errors(self, frame: str) -> None:
        with pytest.raises(FramingError):
            parse_request(frame)

    def test_invalid_envelope_keeps_id(self) -> None:
        with pytest.raises(InvalidRequest) as exc_info:
            parse_request('{"id": 9, "params": {}}')

        assert exc_info.value.request_id == 9
        assert exc_info.value.data["errors"]

    def test_invalid_envelope_without_usable_id(self) -> None:
        with pytest.raises(InvalidRequest) as exc_info:
            parse_request('{"id": {"nested": 1}, "method": ""}')

        assert exc_info.value.request_id is None

    def test_encode_message_round_trip_fields(self) -> None:
        text = encode_message(Response.success(3, {"text": "héllo"}))
        assert "héllo" in text
        assert json.loads(text)["result"] == {"text": "héllo"}
