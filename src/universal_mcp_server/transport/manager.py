"""Transport manager.

Owns the active channel adapters, fans their inbound messages into a single
sink tagged with (connection id, channel name), and routes each response
back to the adapter that owns the connection.

Usage:
    manager = TransportManager("my-server")
    manager.on_message(lambda request, connection_id, channel: ...)
    await manager.start(config.transports)
    ...
    await manager.send(connection_id, response)
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, BinaryIO

from ..config import (
    DEFAULT_SERVER_NAME,
    HttpChannelConfig,
    StdioChannelConfig,
    TransportsConfig,
    WebSocketChannelConfig,
)
from ..protocol.messages import Request, Response
from .base import (
    ChannelAdapter,
    ChannelAlreadyStarted,
    Connection,
    ConnectionNotFound,
    NoTransportsConfigured,
    TransportError,
    TransportStartFailure,
    channel_prefix,
)
from .http import HttpChannel
from .stdio import StdioChannel
from .websocket import WebSocketChannel

logger = logging.getLogger(__name__)

# (request, connection_id, channel_name)
ManagerMessageCallback = Callable[[Request, str, str], None]
ConnectionCallback = Callable[[Connection], None]


class TransportManager:
    """Single point of convergence for every channel.

    Callbacks are single-subscriber; registering again replaces the previous
    callback. Lifecycle fan-out to many listeners belongs to the server's
    event bus, not here.
    """

    def __init__(
        self,
        server_name: str = DEFAULT_SERVER_NAME,
        *,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self.server_name = server_name
        self._stdin = stdin
        self._stdout = stdout
        self._channels: dict[str, ChannelAdapter] = {}
        self._connections: dict[str, Connection] = {}
        self._message_callback: ManagerMessageCallback | None = None
        self._connect_callback: ConnectionCallback | None = None
        self._disconnect_callback: ConnectionCallback | None = None

    # =========================================================================
    # Callbacks
    # =========================================================================

    def on_message(self, callback: ManagerMessageCallback) -> None:
        self._message_callback = callback

    def on_connect(self, callback: ConnectionCallback) -> None:
        self._connect_callback = callback

    def on_disconnect(self, callback: ConnectionCallback) -> None:
        self._disconnect_callback = callback

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def build_channels(self, config: TransportsConfig) -> list[ChannelAdapter]:
        """Create (but do not start) one adapter per configured channel."""
        adapters: list[ChannelAdapter] = []
        for name, channel_config in config.channels():
            match channel_config:
                case WebSocketChannelConfig():
                    adapters.append(WebSocketChannel(channel_config, server_name=self.server_name))
                case HttpChannelConfig():
                    adapters.append(HttpChannel(channel_config, server_name=self.server_name))
                case StdioChannelConfig():
                    adapters.append(
                        StdioChannel(
                            channel_config,
                            input_stream=self._stdin,
                            output_stream=self._stdout,
                        )
                    )
                case _:
                    raise ValueError(f"Unsupported channel configuration for {name}")
        return adapters

    async def start(self, config: TransportsConfig) -> None:
        """Build and start every configured channel, all or nothing.

        Raises:
            NoTransportsConfigured: If the configuration names no channel
            TransportStartFailure: If any channel fails to start
        """
        await self.start_channels(self.build_channels(config))

    async def start_channels(self, adapters: list[ChannelAdapter]) -> None:
        """Start pre-built adapters sequentially, all or nothing.

        On the first failure every adapter started so far is stopped again
        and the failure is re-raised.
        """
        if not adapters:
            raise NoTransportsConfigured()

        seen: set[str] = set()
        for adapter in adapters:
            if adapter.name in self._channels or adapter.name in seen:
                raise ChannelAlreadyStarted(adapter.name)
            seen.add(adapter.name)

        started: list[ChannelAdapter] = []
        for adapter in adapters:
            self._wire(adapter)
            try:
                await adapter.start()
            except Exception as e:
                logger.error(f"Failed to start {adapter.name} channel: {e}")
                await self._rollback([*started, adapter])
                if isinstance(e, TransportError):
                    raise
                raise TransportStartFailure(adapter.name, str(e)) from e

            self._channels[adapter.name] = adapter
            started.append(adapter)
            logger.info(f"{adapter.name} channel started")

        logger.info(f"Transport manager started: {', '.join(self.channel_names)}")

    async def stop(self) -> None:
        """Stop every channel concurrently. Never raises."""
        adapters = list(self._channels.values())
        if adapters:
            results = await asyncio.gather(
                *(adapter.stop() for adapter in adapters), return_exceptions=True
            )
            for adapter, result in zip(adapters, results, strict=True):
                if isinstance(result, BaseException):
                    logger.error(f"Error stopping {adapter.name} channel: {result}")

        self._channels.clear()
        for connection_id in list(self._connections):
            self._drop_connection(connection_id)

        if adapters:
            logger.info("Transport manager stopped")

    async def _rollback(self, adapters: list[ChannelAdapter]) -> None:
        for adapter in reversed(adapters):
            try:
                await adapter.stop()
            except Exception as e:
                logger.error(f"Error stopping {adapter.name} channel during rollback: {e}")
            self._channels.pop(adapter.name, None)

        names = {adapter.name for adapter in adapters}
        for connection_id, connection in list(self._connections.items()):
            if connection.channel in names:
                self._drop_connection(connection_id)

    # =========================================================================
    # Routing
    # =========================================================================

    async def send(self, connection_id: str, response: Response) -> bool:
        """Deliver a response to the connection that asked for it.

        Returns:
            True if an adapter accepted the response. Failures are logged,
            never raised.
        """
        adapter = self._channels.get(channel_prefix(connection_id))
        if adapter is not None:
            return await self._send_via(adapter, connection_id, response)

        # Unrecognized prefix: let each live channel try, in start order
        for adapter in list(self._channels.values()):
            try:
                await adapter.send(connection_id, response)
                return True
            except ConnectionNotFound:
                continue
            except Exception as e:
                logger.error(f"Error sending via {adapter.name} to {connection_id}: {e}")

        logger.warning(f"No channel accepted response {response.id} for {connection_id}")
        return False

    async def _send_via(
        self, adapter: ChannelAdapter, connection_id: str, response: Response
    ) -> bool:
        try:
            await adapter.send(connection_id, response)
            return True
        except ConnectionNotFound:
            logger.warning(
                f"Dropping response {response.id}: connection {connection_id} is gone"
            )
        except Exception as e:
            logger.error(f"Error sending via {adapter.name} to {connection_id}: {e}")
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def channel_names(self) -> list[str]:
        return list(self._channels)

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    @property
    def is_running(self) -> bool:
        return bool(self._channels)

    def get_channel(self, name: str) -> ChannelAdapter | None:
        return self._channels.get(name)

    def get_connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def status(self) -> dict[str, dict[str, Any]]:
        """Per channel: whether it is live and how many connections it holds."""
        return {
            name: {
                "connected": adapter.is_connected(),
                "connections": adapter.connection_count(),
            }
            for name, adapter in self._channels.items()
        }

    # =========================================================================
    # Adapter events
    # =========================================================================

    def _wire(self, adapter: ChannelAdapter) -> None:
        adapter.on_message(functools.partial(self._handle_message, adapter.name))
        adapter.on_connect(self._handle_connect)
        adapter.on_disconnect(self._handle_disconnect)

    def _handle_message(self, channel: str, request: Request, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.touch()
        if self._message_callback is None:
            logger.warning(f"No message handler registered; dropping {request.method}")
            return
        self._message_callback(request, connection_id, channel)

    def _handle_connect(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        logger.debug(f"Connection opened: {connection.id} ({connection.channel})")
        if self._connect_callback is not None:
            self._connect_callback(connection)

    def _handle_disconnect(self, connection_id: str) -> None:
        self._drop_connection(connection_id)

    def _drop_connection(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        logger.debug(f"Connection closed: {connection_id} ({connection.channel})")
        if self._disconnect_callback is not None:
            try:
                self._disconnect_callback(connection)
            except Exception:
                logger.exception("Error in disconnect callback")
