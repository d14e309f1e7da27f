"""Request Handler - transport-agnostic dispatch core.

Resolves a request's method, runs it, and converts the outcome into a
Response envelope. Every transport funnels requests through this same
handler, so behavior does not depend on how a request arrived.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol

from ..metrics import memory_usage
from .errors import (
    InternalError,
    InvalidParams,
    MethodNotFound,
    ProtocolError,
    RequestTimeout,
    ResourceNotFound,
    ToolNameRequired,
    UnknownTool,
)
from .messages import Method, Request, Response

if TYPE_CHECKING:
    from ..metrics import MetricsCollector
    from ..plugins import Resource
    from ..tools import ToolRegistry

logger = logging.getLogger(__name__)


class ResourceProvider(Protocol):
    def all_resources(self) -> list[Resource]: ...

    def get_resource(self, uri: str) -> Resource | None: ...


class RequestHandler:
    """Dispatches requests and yields exactly one response each.

    Usage:
        handler = RequestHandler(registry, plugin_manager, metrics, server.describe)
        response = await handler.handle(request, connection_id)

    Correlation:
        The response id is always the request id.

    Metrics:
        Every call to `handle` records exactly one observation, whatever the
        outcome.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        resources: ResourceProvider,
        metrics: MetricsCollector,
        server_info: Callable[[], dict[str, Any]],
        default_timeout: float | None = None,
    ) -> None:
        """Initialize handler.

        Args:
            registry: Tools reachable through tools/list and tools/call
            resources: Source of resources/list and resources/read
            metrics: Sink for one (duration, success) observation per request
            server_info: Returns name, version, description and uptime
            default_timeout: Upper bound in seconds for a tool call that
                declares no timeout of its own (None: unbounded)
        """
        self._registry = registry
        self._resources = resources
        self._metrics = metrics
        self._server_info = server_info
        self.default_timeout = default_timeout
        self._activity: dict[str, float] = {}

    # =========================================================================
    # Connection activity
    # =========================================================================

    def track_connection(self, connection_id: str) -> None:
        self._activity[connection_id] = time.time()

    def touch(self, connection_id: str) -> None:
        if connection_id in self._activity:
            self._activity[connection_id] = time.time()

    def forget_connection(self, connection_id: str) -> None:
        self._activity.pop(connection_id, None)

    def clear_connections(self) -> None:
        self._activity.clear()

    @property
    def active_connections(self) -> int:
        return len(self._activity)

    def last_activity(self, connection_id: str) -> float | None:
        return self._activity.get(connection_id)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, request: Request, connection_id: str | None = None) -> Response:
        """Process a request into its response. Never raises."""
        started = time.perf_counter()
        if connection_id is not None:
            self.touch(connection_id)

        logger.debug(f"Handling request: {request.method} (id={request.id})")

        try:
            result = await self._dispatch(request)
            response = Response.success(request.id, result)
        except ProtocolError as e:
            logger.debug(f"Request {request.id} failed: {e.message}")
            response = Response.failure(request.id, e)
        except Exception as e:
            logger.exception(f"Error handling {request.method}: {e}")
            response = Response.failure(request.id, InternalError.from_exception(e))

        duration_ms = (time.perf_counter() - started) * 1000
        self._metrics.record_request(duration_ms, success=not response.is_error())
        return response

    async def _dispatch(self, request: Request) -> Any:
        match request.method:
            case Method.LIST_TOOLS.value:
                return self._list_tools()

            case Method.CALL_TOOL.value:
                return await self._call_tool(request)

            case Method.LIST_RESOURCES.value:
                return self._list_resources()

            case Method.READ_RESOURCE.value:
                return self._read_resource(request)

            case Method.SERVER_INFO.value:
                return self.server_info()

            case _:
                raise MethodNotFound(request.method)

    # =========================================================================
    # Methods
    # =========================================================================

    def _list_tools(self) -> dict[str, Any]:
        return {"tools": [tool.describe() for tool in self._registry.list_tools()]}

    async def _call_tool(self, request: Request) -> Any:
        name = request.get_param("name")
        if not name:
            raise ToolNameRequired()
        if not isinstance(name, str):
            raise InvalidParams("Tool name must be a string")

        tool = self._registry.get(name)
        if tool is None:
            raise UnknownTool(name)

        arguments = request.get_param("arguments") or {}
        if not isinstance(arguments, dict):
            raise InvalidParams("Tool arguments must be an object")

        timeout = tool.timeout if tool.timeout is not None else self.default_timeout
        if timeout is None:
            return await tool.handler(arguments)

        try:
            return await asyncio.wait_for(tool.handler(arguments), timeout=timeout)
        except TimeoutError as e:
            raise RequestTimeout(f"Tool {name} timed out after {timeout}s") from e

    def _list_resources(self) -> dict[str, Any]:
        return {"resources": [resource.describe() for resource in self._resources.all_resources()]}

    def _read_resource(self, request: Request) -> dict[str, Any]:
        uri = request.get_param("uri")
        if not uri:
            raise InvalidParams("Resource uri is required")
        if not isinstance(uri, str):
            raise InvalidParams("Resource uri must be a string")

        resource = self._resources.get_resource(uri)
        if resource is None:
            raise ResourceNotFound(uri)
        return {"contents": [resource.contents()]}

    def server_info(self) -> dict[str, Any]:
        """Identity, advertised capabilities and process usage."""
        info = dict(self._server_info())
        info["capabilities"] = {"tools": True, "resources": True}
        info["memoryUsage"] = memory_usage()
        return info
