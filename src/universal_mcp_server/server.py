"""MCP server.

Owns one of each component (tool registry, plugin manager, metrics,
dispatch core, transport manager, event bus) and drives the lifecycle:

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED

Usage:
    server = MCPServer(load_config("server.yaml"))
    await server.start()
    ...
    await server.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, BinaryIO

from .builtin_tools import builtin_tools, server_tools
from .bus import EventBus
from .config import ServerConfig
from .events import (
    ConnectionClosed,
    ConnectionClosedProps,
    ConnectionOpened,
    ConnectionOpenedProps,
    ServerStarted,
    ServerStartedProps,
    ServerStopped,
    ServerStoppedProps,
)
from .metrics import Metrics, MetricsCollector
from .plugins import PluginManager
from .protocol.handler import RequestHandler
from .protocol.messages import Request, Response
from .tools import ToolDefinition, ToolRegistry
from .transport.base import Connection
from .transport.manager import TransportManager
from .transport.stdio import StdioChannel

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class AlreadyRunning(RuntimeError):
    """start() was called while the server was not stopped."""

    def __init__(self, state: ServerState) -> None:
        super().__init__(f"Server is already running (state: {state.value})")
        self.state = state


class MCPServer:
    """Serves the tool protocol over every configured channel at once.

    The tool registry belongs to the server instance and survives
    stop/start cycles; transports and plugins are rebuilt on each start.
    Tools contributed by plugins leave the registry on stop and come back
    with their plugin on the next start.
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self.config = config or ServerConfig()
        self.state = ServerState.STOPPED
        self.bus = EventBus()

        self.metrics = MetricsCollector()
        self.registry = ToolRegistry()
        self.plugins = PluginManager()
        self.handler = RequestHandler(
            self.registry,
            self.plugins,
            self.metrics,
            self._identity,
            default_timeout=self.config.request_timeout,
        )
        self.transports = TransportManager(self.config.name, stdin=stdin, stdout=stdout)

        self._builtins_registered = False
        # name -> (plugin tool, definition it displaced)
        self._plugin_tools: dict[str, tuple[ToolDefinition, ToolDefinition | None]] = {}
        self._started_at: float | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def is_running(self) -> bool:
        return self.state == ServerState.RUNNING

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Populate the registry and start every configured channel.

        Raises:
            AlreadyRunning: If the server is not stopped
            TransportError: If a channel cannot start (the server is left
                stopped with no channel running)
        """
        if self.state != ServerState.STOPPED:
            raise AlreadyRunning(self.state)

        self.state = ServerState.STARTING
        logger.info(f"Starting MCP server: {self.config.name} v{self.config.version}")

        try:
            await self.plugins.initialize(self.config.plugins)
            self._register_builtin_tools()
            self._merge_plugin_tools()

            self.transports.on_message(self._on_message)
            self.transports.on_connect(self._on_connect)
            self.transports.on_disconnect(self._on_disconnect)
            await self.transports.start(self.config.transports)
        except Exception as e:
            logger.error(f"Failed to start MCP server: {e}")
            await self.transports.stop()
            self._withdraw_plugin_tools()
            await self.plugins.cleanup()
            self.handler.clear_connections()
            self.state = ServerState.STOPPED
            raise

        self._started_at = time.time()
        self.state = ServerState.RUNNING
        logger.info(
            f"MCP server started with {len(self.registry)} tools on "
            f"{', '.join(self.transports.channel_names)}"
        )
        await self.bus.publish(
            ServerStarted,
            ServerStartedProps(
                name=self.config.name,
                version=self.config.version,
                channels=self.transports.channel_names,
            ),
        )

    async def stop(self) -> None:
        """Close every channel and clean up plugins. No-op when stopped.

        In-flight requests are not awaited; their responses are dropped.
        """
        if self.state == ServerState.STOPPED:
            return

        self.state = ServerState.STOPPING
        logger.info("Stopping MCP server")

        try:
            await self.transports.stop()
            self._withdraw_plugin_tools()
            await self.plugins.cleanup()
        finally:
            self.handler.clear_connections()
            self._started_at = None
            self.state = ServerState.STOPPED

        logger.info("MCP server stopped")
        await self.bus.publish(ServerStopped, ServerStoppedProps(name=self.config.name))

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for requests that are currently being dispatched."""
        pending = [task for task in self._tasks if not task.done()]
        if not pending:
            return
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        if still_pending:
            logger.warning(f"{len(still_pending)} requests still running after drain")

    async def wait_for_stdio_eof(self) -> None:
        """Return once the stdio channel's input has ended.

        Returns immediately when stdio is not running.
        """
        channel = self.transports.get_channel("stdio")
        if isinstance(channel, StdioChannel):
            await channel.wait_closed()

    def _register_builtin_tools(self) -> None:
        if self._builtins_registered:
            return
        for tool in [*builtin_tools(), *server_tools(self)]:
            self.registry.register_or_replace(tool)
        self._builtins_registered = True

    def _merge_plugin_tools(self) -> None:
        for tool in self.plugins.all_tools():
            _, displaced = self._plugin_tools.get(tool.name, (None, self.registry.get(tool.name)))
            self.registry.register_or_replace(tool)
            self._plugin_tools[tool.name] = (tool, displaced)

    def _withdraw_plugin_tools(self) -> None:
        """Remove plugin tools, restoring whatever each one displaced.

        A tool re-registered through register_tool since start is left alone.
        """
        for name, (tool, displaced) in self._plugin_tools.items():
            if self.registry.get(name) is not tool:
                continue
            if displaced is None:
                self.registry.unregister(name)
            else:
                self.registry.register_or_replace(displaced)
        self._plugin_tools.clear()

    # =========================================================================
    # Requests
    # =========================================================================

    async def process_request(
        self, request: Request, connection_id: str | None = None
    ) -> Response:
        """Dispatch a request without going through a transport."""
        return await self.handler.handle(request, connection_id)

    def _on_message(self, request: Request, connection_id: str, channel: str) -> None:
        logger.debug(f"{channel} request {request.method} (id={request.id}) from {connection_id}")
        self._spawn(self._respond(request, connection_id))

    async def _respond(self, request: Request, connection_id: str) -> None:
        response = await self.handler.handle(request, connection_id)
        if self.state not in (ServerState.STARTING, ServerState.RUNNING):
            logger.info(f"Server stopped; dropping response {response.id} for {connection_id}")
            return
        await self.transports.send(connection_id, response)

    def _on_connect(self, connection: Connection) -> None:
        self.handler.track_connection(connection.id)
        self._spawn(
            self.bus.publish(
                ConnectionOpened,
                ConnectionOpenedProps(connection_id=connection.id, channel=connection.channel),
            )
        )

    def _on_disconnect(self, connection: Connection) -> None:
        self.handler.forget_connection(connection.id)
        self._spawn(
            self.bus.publish(
                ConnectionClosed,
                ConnectionClosedProps(connection_id=connection.id, channel=connection.channel),
            )
        )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Tools
    # =========================================================================

    def register_tool(self, tool: ToolDefinition) -> None:
        """Add or replace a tool; visible to the next dispatch."""
        self.registry.register_or_replace(tool)

    def unregister_tool(self, name: str) -> bool:
        return self.registry.unregister(name)

    def get_tools(self) -> list[ToolDefinition]:
        return self.registry.list_tools()

    # =========================================================================
    # Introspection
    # =========================================================================

    def _identity(self) -> dict[str, Any]:
        uptime = time.time() - self._started_at if self._started_at is not None else 0.0
        return {
            "name": self.config.name,
            "version": self.config.version,
            "description": self.config.description,
            "uptime": uptime,
        }

    def server_info(self) -> dict[str, Any]:
        return self.handler.server_info()

    def get_metrics(self) -> Metrics:
        return self.metrics.snapshot(active_connections=self.handler.active_connections)

    def transport_status(self) -> dict[str, dict[str, Any]]:
        return self.transports.status()
