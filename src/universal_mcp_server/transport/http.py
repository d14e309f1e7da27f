"""HTTP channel.

Stateless request/response: every POST to the configured path is its own
short-lived Connection. The reply handle is a future owned by this channel;
the first `send` for the connection resolves it and the HTTP response goes
out, any later `send` finds the connection gone.

Response modes:
    result  wait up to `request_timeout` for the dispatched response and
            return it as the body; on timeout answer 202 with an
            acknowledgment instead
    ack     answer 202 immediately; the dispatched response is discarded

Endpoints:
    POST <path>   one request envelope per body
    GET  /health  liveness check, answered without dispatch
"""

from __future__ import annotations

import asyncio
import logging
import random
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request as HttpRequest
from starlette.responses import JSONResponse
from starlette.responses import Response as HttpResponse
from starlette.routing import Route

from ..config import DEFAULT_SERVER_NAME, HttpChannelConfig
from ..protocol.errors import InternalError, InvalidRequest, ParseError, ProtocolError
from ..protocol.messages import Response
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

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_exchange_id() -> str:
    """http-<epoch millis>-<9 random base36 chars>"""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"http-{int(time.time() * 1000)}-{suffix}"


@dataclass
class _Exchange:
    request_id: str | int
    future: asyncio.Future[Response] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )


def _envelope_response(response: Response, status_code: int = 200) -> HttpResponse:
    return HttpResponse(
        content=encode_message(response),
        status_code=status_code,
        media_type="application/json",
    )


class HttpChannel(ChannelAdapter):
    """Request/response channel served by an embedded uvicorn server."""

    name = "http"

    def __init__(
        self,
        config: HttpChannelConfig | None = None,
        server_name: str = DEFAULT_SERVER_NAME,
    ) -> None:
        super().__init__()
        self.config = config or HttpChannelConfig()
        self.server_name = server_name
        self._exchanges: dict[str, _Exchange] = {}
        self._runner: AsgiServerRunner | None = None
        self._stopping = False

    @property
    def port(self) -> int | None:
        return self._runner.port if self._runner else None

    def build_app(self) -> Starlette:
        """ASGI app exposing the POST endpoint and /health."""
        routes = [
            Route("/health", self._health, methods=["GET"]),
            Route(self.config.path, self._handle_post, methods=["POST"]),
        ]
        middleware = []
        if self.config.cors:
            middleware.append(
                Middleware(
                    CORSMiddleware,
                    allow_origins=self.config.cors_origins,
                    allow_methods=["GET", "POST", "OPTIONS"],
                    allow_headers=["*"],
                )
            )
        return Starlette(routes=routes, middleware=middleware)

    async def start(self) -> None:
        if self._runner is not None:
            raise TransportStartFailure(self.name, "already started")

        runner = AsgiServerRunner(
            self.build_app(),
            channel=self.name,
            host=self.config.host,
            port=self.config.port,
        )
        await runner.start()
        self._runner = runner
        self._stopping = False

    async def stop(self) -> None:
        if self._runner is None and not self._exchanges:
            return

        self._stopping = True
        self._release_pending()
        try:
            if self._runner is not None:
                await self._runner.stop()
        except Exception as e:
            logger.error(f"Error stopping HTTP channel: {e}")
        finally:
            self._runner = None
            self._close_all_connections()
            logger.info("HTTP channel stopped")

    async def send(self, connection_id: str, response: Response) -> None:
        exchange = self._exchanges.pop(connection_id, None)
        if exchange is None or exchange.future.done():
            raise ConnectionNotFound(connection_id, self.name)
        exchange.future.set_result(response)

    def is_connected(self) -> bool:
        return self._runner is not None and self._runner.running

    def _release_pending(self) -> None:
        """Answer every waiting exchange with a shutdown error."""
        shutdown = InternalError("Server shutting down")
        for exchange in self._exchanges.values():
            if not exchange.future.done():
                exchange.future.set_result(Response.failure(exchange.request_id, shutdown))
        self._exchanges.clear()

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def _health(self, request: HttpRequest) -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "server": self.server_name,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    async def _handle_post(self, request: HttpRequest) -> HttpResponse:
        if self._stopping:
            return _envelope_response(
                Response.failure(None, InternalError("Server is shutting down")),
                status_code=503,
            )

        limit = self.config.max_body_size
        declared = request.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > limit:
            return self._too_large()

        body = await request.body()
        if len(body) > limit:
            return self._too_large()

        try:
            envelope = parse_request(body)
        except FramingError as e:
            logger.warning(f"Rejecting unparsable HTTP body: {e}")
            return _envelope_response(Response.failure(None, ParseError(str(e))), status_code=400)
        except InvalidRequest as e:
            logger.warning(f"Rejecting invalid HTTP request: {e.data}")
            return _envelope_response(Response.failure(e.request_id, e), status_code=400)

        connection = self._open_connection(new_exchange_id())
        exchange = _Exchange(request_id=envelope.id)
        self._exchanges[connection.id] = exchange

        try:
            self._deliver(envelope, connection.id)

            if self.config.response_mode == "ack":
                return self._ack(connection.id)

            try:
                response = await asyncio.wait_for(
                    asyncio.shield(exchange.future), timeout=self.config.request_timeout
                )
            except TimeoutError:
                logger.warning(
                    f"No response for {connection.id} within {self.config.request_timeout}s; "
                    "acknowledging instead"
                )
                return self._ack(connection.id)

            return _envelope_response(response)
        finally:
            self._exchanges.pop(connection.id, None)
            self._close_connection(connection.id)

    def _ack(self, connection_id: str) -> JSONResponse:
        return JSONResponse({"status": "received", "connectionId": connection_id}, status_code=202)

    def _too_large(self) -> HttpResponse:
        error = ProtocolError(
            f"Request body exceeds {self.config.max_body_size} bytes",
            code=InvalidRequest.code,
        )
        return _envelope_response(Response.failure(None, error), status_code=413)
