"""Event type definitions.

Lifecycle events published on a server's EventBus.
"""

from pydantic import BaseModel

from .bus import define_event

# =============================================================================
# Server Lifecycle Events
# =============================================================================


class ServerStartedProps(BaseModel):
    """All configured channels are accepting traffic."""

    name: str
    version: str
    channels: list[str]


class ServerStoppedProps(BaseModel):
    """Channels are closed and plugins cleaned up."""

    name: str


ServerStarted = define_event("server.started", ServerStartedProps)
ServerStopped = define_event("server.stopped", ServerStoppedProps)


# =============================================================================
# Connection Events
# =============================================================================


class ConnectionOpenedProps(BaseModel):
    connection_id: str
    channel: str


class ConnectionClosedProps(BaseModel):
    connection_id: str
    channel: str


ConnectionOpened = define_event("connection.opened", ConnectionOpenedProps)
ConnectionClosed = define_event("connection.closed", ConnectionClosedProps)
