"""Channel adapter contract.

A channel adapter owns one physical transport (a listening socket, a byte
stream) and turns its framing into Request envelopes. Everything above the
adapter sees only envelopes and connection ids; the physical handles never
leave the adapter that created them.

Callbacks are single-sink: registering a second callback for the same kind
replaces the first.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ..protocol.errors import InvalidRequest
from ..protocol.messages import Request, Response

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Request, str], None]
ConnectCallback = Callable[["Connection"], None]
DisconnectCallback = Callable[[str], None]


# =============================================================================
# Errors
# =============================================================================


class TransportError(Exception):
    """Base class for transport-level failures."""


class TransportStartFailure(TransportError):
    """A channel could not acquire its resource."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"Failed to start {channel} channel: {reason}")
        self.channel = channel
        self.reason = reason


class ConnectionNotFound(TransportError):
    """The connection id is unknown or already closed on this channel."""

    def __init__(self, connection_id: str, channel: str | None = None) -> None:
        where = f" on {channel} channel" if channel else ""
        super().__init__(f"Connection not found{where}: {connection_id}")
        self.connection_id = connection_id
        self.channel = channel


class NoTransportsConfigured(TransportError):
    def __init__(self) -> None:
        super().__init__("No transports configured")


class ChannelAlreadyStarted(TransportError):
    def __init__(self, channel: str) -> None:
        super().__init__(f"Channel already started: {channel}")
        self.channel = channel


class FramingError(ValueError):
    """Inbound bytes could not be parsed into a JSON object."""


# =============================================================================
# Connection
# =============================================================================


@dataclass
class Connection:
    """One logical endpoint on one channel."""

    id: str
    channel: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_activity = time.time()


def new_connection_id(channel: str) -> str:
    """Channel-prefixed, process-unique connection id."""
    return f"{channel}-{uuid.uuid4().hex}"


def channel_prefix(connection_id: str) -> str:
    return connection_id.split("-", 1)[0]


# =============================================================================
# Framing helpers
# =============================================================================


def parse_request(frame: str | bytes) -> Request:
    """Parse one frame into a Request.

    Raises:
        FramingError: The frame is not a JSON object (nothing to correlate)
        InvalidRequest: The frame is a JSON object but not a valid envelope
    """
    try:
        data = json.loads(frame)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FramingError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise FramingError(f"Expected a JSON object, got {type(data).__name__}")

    try:
        return Request.model_validate(data)
    except ValidationError as e:
        request_id = data.get("id")
        if not isinstance(request_id, str | int):
            request_id = None
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise InvalidRequest(request_id=request_id, data={"errors": errors}) from e


def encode_message(message: Response | dict[str, Any]) -> str:
    """Serialize a response or notification to JSON text."""
    payload = message.to_wire() if isinstance(message, Response) else message
    return json.dumps(payload, ensure_ascii=False, default=str)


# =============================================================================
# Adapter base
# =============================================================================


class ChannelAdapter(ABC):
    """Base class for the three channel adapters.

    Subclasses implement start/stop/send and the liveness queries, and use
    the `_open_connection` / `_close_connection` / `_deliver` helpers so
    that lifecycle events are emitted consistently (a close is reported
    exactly once per connection).
    """

    name: str = "channel"

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._message_callback: MessageCallback | None = None
        self._connect_callback: ConnectCallback | None = None
        self._disconnect_callback: DisconnectCallback | None = None

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @abstractmethod
    async def start(self) -> None:
        """Acquire the transport resource and begin accepting/reading.

        Raises:
            TransportStartFailure: If the resource cannot be acquired
        """
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Release the resource and close all connections. Never raises."""
        ...

    @abstractmethod
    async def send(self, connection_id: str, response: Response) -> None:
        """Deliver a response to one connection.

        Raises:
            ConnectionNotFound: If the id is unknown or closed
        """
        ...

    @abstractmethod
    def is_connected(self) -> bool: ...

    def connection_count(self) -> int:
        return len(self._connections)

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callback = callback

    def on_connect(self, callback: ConnectCallback) -> None:
        self._connect_callback = callback

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        self._disconnect_callback = callback

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._connections

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def _open_connection(self, connection_id: str | None = None) -> Connection:
        connection = Connection(
            id=connection_id or new_connection_id(self.name),
            channel=self.name,
        )
        self._connections[connection.id] = connection
        logger.debug(f"{self.name} connection opened: {connection.id}")
        if self._connect_callback is not None:
            self._safe_callback(self._connect_callback, connection)
        return connection

    def _close_connection(self, connection_id: str) -> bool:
        if self._connections.pop(connection_id, None) is None:
            return False
        logger.debug(f"{self.name} connection closed: {connection_id}")
        if self._disconnect_callback is not None:
            self._safe_callback(self._disconnect_callback, connection_id)
        return True

    def _close_all_connections(self) -> None:
        for connection_id in list(self._connections):
            self._close_connection(connection_id)

    def _deliver(self, request: Request, connection_id: str) -> None:
        """Hand a parsed request to the registered sink."""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.touch()
        if self._message_callback is None:
            logger.warning(f"{self.name} channel has no message sink; dropping {request.method}")
            return
        self._safe_callback(self._message_callback, request, connection_id)

    def _safe_callback(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Error in {self.name} channel callback")
