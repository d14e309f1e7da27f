"""Transport layer.

Three channel adapters share one contract (`ChannelAdapter`):
- websocket - persistent bidirectional connections
- http - one short-lived connection per POST
- stdio - a single delimited stream over stdin/stdout

`TransportManager` starts them together and routes responses back to the
connection that sent the request.
"""

from .base import (
    ChannelAdapter,
    ChannelAlreadyStarted,
    Connection,
    ConnectionNotFound,
    FramingError,
    NoTransportsConfigured,
    TransportError,
    TransportStartFailure,
)
from .http import HttpChannel
from .manager import TransportManager
from .stdio import StdioChannel
from .websocket import WebSocketChannel

__all__ = [
    # Contract
    "ChannelAdapter",
    "Connection",
    # Errors
    "TransportError",
    "TransportStartFailure",
    "ConnectionNotFound",
    "NoTransportsConfigured",
    "ChannelAlreadyStarted",
    "FramingError",
    # Channels
    "HttpChannel",
    "StdioChannel",
    "WebSocketChannel",
    "TransportManager",
]
