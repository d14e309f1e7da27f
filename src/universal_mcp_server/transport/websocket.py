"""WebSocket channel.

Full-duplex persistent connections. One physical WebSocket is one
Connection; each text (or UTF-8 binary) frame carries exactly one request
envelope.

Protocol:
1. Client connects to ws://host:port<path>
2. Server immediately sends
   {"jsonrpc": "2.0", "method": "connected",
    "params": {"connectionId": "websocket-...", "server": "..."}}
3. Client sends request envelopes; responses come back on the same socket,
   correlated by id, in whatever order the handlers complete
4. Frames that are not JSON objects are logged and discarded; the
   connection stays open
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from starlette.applications import Starlette
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from ..config import DEFAULT_SERVER_NAME, WebSocketChannelConfig
from ..protocol.errors import InvalidRequest
from ..protocol.messages import Response, notification
from .asgi import AsgiServerRunner
from .base import (
    ChannelAdapter,
    ConnectionNotFound,
    FramingError,
    TransportStartFailure,
    encode_message,
    parse_request,
)

logger = logging.getLogger(__name__)

# Close code sent when max_connections is reached ("try again later")
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketPeer:
    """Server side of one WebSocket connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, text: str) -> None:
        async with self._send_lock:
            await self.websocket.send_text(text)

    async def close(self, code: int = 1000) -> None:
        if self.is_open:
            with contextlib.suppress(Exception):
                await self.websocket.close(code=code)


class WebSocketChannel(ChannelAdapter):
    """Persistent socket channel served by an embedded uvicorn server."""

    name = "websocket"

    def __init__(
        self,
        config: WebSocketChannelConfig | None = None,
        server_name: str = DEFAULT_SERVER_NAME,
    ) -> None:
        super().__init__()
        self.config = config or WebSocketChannelConfig()
        self.server_name = server_name
        self._peers: dict[str, WebSocketPeer] = {}
        # Handshakes past the limit check that have not been accepted yet
        self._handshaking = 0
        self._runner: AsgiServerRunner | None = None
        self._accepting = False

    @property
    def port(self) -> int | None:
        return self._runner.port if self._runner else None

    def build_app(self) -> Starlette:
        """ASGI app exposing the WebSocket endpoint."""
        return Starlette(routes=[WebSocketRoute(self.config.path, self._endpoint)])

    async def start(self) -> None:
        if self._runner is not None:
            raise TransportStartFailure(self.name, "already started")

        runner = AsgiServerRunner(
            self.build_app(),
            channel=self.name,
            host=self.config.host,
            port=self.config.port,
            ws_max_size=self.config.max_message_size,
        )
        await runner.start()
        self._runner = runner
        self._accepting = True

    async def stop(self) -> None:
        if self._runner is None:
            return

        self._accepting = False
        try:
            peers = list(self._peers.values())
            await asyncio.gather(*(peer.close() for peer in peers), return_exceptions=True)
            await self._runner.stop()
        except Exception as e:
            logger.error(f"Error stopping WebSocket channel: {e}")
        finally:
            self._runner = None
            self._peers.clear()
            self._close_all_connections()
            logger.info("WebSocket channel stopped")

    async def send(self, connection_id: str, response: Response) -> None:
        await self._send_raw(connection_id, encode_message(response))

    def is_connected(self) -> bool:
        return len(self._connections) > 0

    async def _send_raw(self, connection_id: str, text: str) -> None:
        peer = self._peers.get(connection_id)
        if peer is None or not peer.is_open:
            raise ConnectionNotFound(connection_id, self.name)
        try:
            await peer.send_text(text)
        except (WebSocketDisconnect, RuntimeError) as e:
            raise ConnectionNotFound(connection_id, self.name) from e

    async def _endpoint(self, websocket: WebSocket) -> None:
        """Serve one WebSocket connection until it closes."""
        if not self._accepting:
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        limit = self.config.max_connections
        if limit is not None and len(self._peers) + self._handshaking >= limit:
            logger.warning(f"WebSocket connection refused: limit of {limit} reached")
            await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
            return

        self._handshaking += 1
        try:
            await websocket.accept()
        finally:
            self._handshaking -= 1
        peer = WebSocketPeer(websocket)
        connection = self._open_connection()
        self._peers[connection.id] = peer

        client = websocket.client
        peer_host = client.host if client else "?"
        logger.info(f"WebSocket client connected: {connection.id} from {peer_host}")

        try:
            await self._send_raw(
                connection.id,
                encode_message(
                    notification(
                        "connected",
                        {"connectionId": connection.id, "server": self.server_name},
                    )
                ),
            )

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                frame = message.get("text")
                if frame is None:
                    frame = message.get("bytes") or b""
                await self._handle_frame(connection.id, frame)

        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.exception(f"WebSocket error for {connection.id}: {e}")
        finally:
            self._peers.pop(connection.id, None)
            self._close_connection(connection.id)
            logger.info(f"WebSocket client disconnected: {connection.id}")

    async def _handle_frame(self, connection_id: str, frame: str | bytes) -> None:
        try:
            request = parse_request(frame)
        except FramingError as e:
            logger.warning(f"Discarding malformed frame from {connection_id}: {e}")
            return
        except InvalidRequest as e:
            logger.warning(f"Invalid request from {connection_id}: {e.data}")
            with contextlib.suppress(ConnectionNotFound):
                await self.send(connection_id, Response.failure(e.request_id, e))
            return

        self._deliver(request, connection_id)
