"""Client-side transports.

Each transport carries request envelopes to a running server and hands the
matching response back to the caller:

- WebSocketClientTransport: one persistent socket, responses correlated by id
- HttpClientTransport: one POST per request, the response is the body
- StdioClientTransport: launches the server as a subprocess and speaks
  delimited JSON over its stdin/stdout

Requests may be issued concurrently on any transport. Server notifications
(messages with a method and no result or error) are queued for
`notifications()`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx
import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from ..protocol.messages import Method, Request, Response

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class ClientError(Exception):
    """Base class for client-side failures."""


class ClientConnectionError(ClientError, ConnectionError):
    """The transport is not connected or the connection was lost."""


class ClientTimeout(ClientError, TimeoutError):
    """No response arrived within the transport's timeout."""


class TransportState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


def parse_response(message: dict[str, Any]) -> Response:
    """Build a Response from a wire dict (timestamp in epoch milliseconds)."""
    data = dict(message)
    timestamp = data.pop("timestamp", None)
    if isinstance(timestamp, int | float):
        data["timestamp"] = timestamp / 1000
    return Response.model_validate(data)


def _is_notification(message: dict[str, Any]) -> bool:
    return "method" in message and "result" not in message and "error" not in message


class BaseClientTransport(ABC):
    """Shared connection state and request/response correlation.

    Subclasses implement `_do_connect`, `_do_disconnect`, `_do_send` and,
    for transports with an inbound stream, `_receive`.
    """

    name: str = "base"
    # Whether responses arrive on a stream read by a background task
    streaming: bool = True

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout
        self._state = TransportState.DISCONNECTED
        self._pending: dict[str | int, asyncio.Future[Response]] = {}
        self._notifications: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._reader_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    async def connect(self) -> None:
        """Open the connection. No-op when already connected.

        Raises:
            ClientConnectionError: If the server cannot be reached
        """
        async with self._lock:
            if self._state == TransportState.CONNECTED:
                return

            self._state = TransportState.CONNECTING
            try:
                await self._do_connect()
            except Exception as e:
                self._state = TransportState.DISCONNECTED
                raise ClientConnectionError(f"{self.name} connect failed: {e}") from e

            self._state = TransportState.CONNECTED
            if self.streaming:
                self._reader_task = asyncio.create_task(self._read_loop())
            logger.info(f"{self.name} client transport connected")

    async def disconnect(self) -> None:
        async with self._lock:
            if self._state in (TransportState.DISCONNECTED, TransportState.CLOSED):
                return
            self._state = TransportState.CLOSED

            task, self._reader_task = self._reader_task, None
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            self._fail_pending(ClientConnectionError(f"{self.name} transport disconnected"))
            try:
                await self._do_disconnect()
            finally:
                self._state = TransportState.DISCONNECTED
            logger.info(f"{self.name} client transport disconnected")

    async def send(self, request: Request) -> Response:
        """Send one request and wait for the response carrying its id.

        Raises:
            ClientConnectionError: If not connected, or the connection drops
                before the response arrives
            ClientTimeout: If no response arrives within `timeout` seconds
        """
        if not self.is_connected:
            raise ClientConnectionError(f"{self.name} transport not connected")
        if request.id in self._pending:
            raise ClientError(f"Request id already in flight: {request.id}")

        future: asyncio.Future[Response] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            await self._do_send(request)
            return await asyncio.wait_for(future, timeout=self.timeout)
        except TimeoutError as e:
            raise ClientTimeout(
                f"No response to {request.method} ({request.id}) within {self.timeout}s"
            ) from e
        finally:
            self._pending.pop(request.id, None)

    async def request(
        self, method: str | Method, params: dict[str, Any] | None = None
    ) -> Response:
        return await self.send(Request.create(method, params))

    async def notifications(self) -> AsyncIterator[dict[str, Any]]:
        """Yield uncorrelated messages while connected."""
        while self.is_connected or not self._notifications.empty():
            try:
                yield await asyncio.wait_for(self._notifications.get(), timeout=1.0)
            except TimeoutError:
                continue

    def _route(self, message: dict[str, Any]) -> None:
        if _is_notification(message):
            self._notifications.put_nowait(message)
            return

        try:
            response = parse_response(message)
        except ValidationError as e:
            logger.warning(f"Discarding malformed {self.name} response: {e}")
            return

        future = self._pending.get(response.id) if response.id is not None else None
        if future is None or future.done():
            logger.warning(f"{self.name} response {response.id} matches no pending request")
            return
        future.set_result(response)

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)

    async def _read_loop(self) -> None:
        try:
            async for message in self._receive():
                self._route(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{self.name} read loop error: {e}")

        # Stream ended underneath us
        if self._state == TransportState.CONNECTED:
            logger.info(f"{self.name} server closed the connection")
            self._state = TransportState.DISCONNECTED
            self._fail_pending(ClientConnectionError(f"{self.name} connection closed"))

    @abstractmethod
    async def _do_connect(self) -> None: ...

    @abstractmethod
    async def _do_disconnect(self) -> None: ...

    @abstractmethod
    async def _do_send(self, request: Request) -> None: ...

    async def _receive(self) -> AsyncIterator[dict[str, Any]]:
        """Inbound messages; only called when `streaming` is true."""
        return
        yield

    async def __aenter__(self) -> BaseClientTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


# =============================================================================
# WebSocket
# =============================================================================


@dataclass
class WebSocketClientConfig:
    url: str = "ws://localhost:3000/"
    timeout: float = DEFAULT_TIMEOUT
    open_timeout: float = 10.0
    max_message_size: int | None = 10 * 1024 * 1024


class WebSocketClientTransport(BaseClientTransport):
    """Persistent socket; expects the server's `connected` greeting first."""

    name = "websocket"

    def __init__(self, config: WebSocketClientConfig | None = None) -> None:
        self.config = config or WebSocketClientConfig()
        super().__init__(self.config.timeout)
        self._ws: Any = None
        self.connection_id: str | None = None

    async def _do_connect(self) -> None:
        ws = await websockets.connect(
            self.config.url,
            open_timeout=self.config.open_timeout,
            max_size=self.config.max_message_size,
        )
        try:
            greeting = json.loads(await asyncio.wait_for(ws.recv(), self.config.open_timeout))
        except Exception:
            await ws.close()
            raise

        if greeting.get("method") != "connected":
            await ws.close()
            raise ClientConnectionError(f"Unexpected greeting: {greeting}")

        self._ws = ws
        self.connection_id = greeting.get("params", {}).get("connectionId")
        logger.debug(f"WebSocket connection id: {self.connection_id}")

    async def _do_disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _do_send(self, request: Request) -> None:
        if self._ws is None:
            raise ClientConnectionError("WebSocket not connected")
        try:
            await self._ws.send(json.dumps(request.to_wire()))
        except ConnectionClosed as e:
            raise ClientConnectionError(f"WebSocket closed: {e}") from e

    async def _receive(self) -> AsyncIterator[dict[str, Any]]:
        try:
            async for frame in self._ws:
                try:
                    message = json.loads(frame)
                except json.JSONDecodeError as e:
                    logger.warning(f"Invalid WebSocket frame: {e}")
                    continue
                if isinstance(message, dict):
                    yield message
        except ConnectionClosed:
            return


# =============================================================================
# HTTP
# =============================================================================


@dataclass
class HttpClientConfig:
    base_url: str = "http://localhost:3001"
    path: str = "/mcp"
    timeout: float = DEFAULT_TIMEOUT
    headers: dict[str, str] = field(default_factory=dict)
    retry_attempts: int = 3
    retry_delay: float = 1.0


class HttpClientTransport(BaseClientTransport):
    """One POST per request.

    Connection failures are retried with a linear backoff; any answer from
    the server (including 4xx/5xx) is not.
    """

    name = "http"
    streaming = False

    def __init__(self, config: HttpClientConfig | None = None) -> None:
        self.config = config or HttpClientConfig()
        super().__init__(self.config.timeout)
        self._http: httpx.AsyncClient | None = None

    async def _do_connect(self) -> None:
        client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            headers=self.config.headers,
        )
        try:
            health = await client.get("/health")
            health.raise_for_status()
        except Exception:
            await client.aclose()
            raise
        self._http = client

    async def _do_disconnect(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _do_send(self, request: Request) -> None:
        if self._http is None:
            raise ClientConnectionError("HTTP client not connected")

        response = await self._post_with_retry(request)
        if response.status_code == 202:
            raise ClientError(f"Server accepted {request.id} without returning a response")
        try:
            body = response.json()
        except ValueError as e:
            raise ClientError(f"Non-JSON response (HTTP {response.status_code})") from e
        if not isinstance(body, dict):
            raise ClientError(f"Unexpected response body: {body!r}")

        if body.get("id") is None and "error" in body:
            # Rejected before dispatch (unparseable or oversized body)
            body = {**body, "id": request.id}
        self._route(body)

        pending = self._pending.get(request.id)
        if pending is not None and not pending.done():
            raise ClientError(f"HTTP {response.status_code} body did not answer {request.id}")

    async def _post_with_retry(self, request: Request) -> httpx.Response:
        assert self._http is not None
        attempts = max(1, self.config.retry_attempts)
        attempt = 1
        while True:
            try:
                return await self._http.post(self.config.path, json=request.to_wire())
            except httpx.TransportError as e:
                if attempt >= attempts:
                    raise ClientConnectionError(f"HTTP request failed: {e}") from e
                logger.warning(f"HTTP attempt {attempt}/{attempts} failed: {e}; retrying")
                await asyncio.sleep(self.config.retry_delay * attempt)
                attempt += 1

    async def health(self) -> dict[str, Any]:
        """GET /health."""
        if self._http is None:
            raise ClientConnectionError("HTTP client not connected")
        response = await self._http.get("/health")
        response.raise_for_status()
        return response.json()


# =============================================================================
# stdio
# =============================================================================


@dataclass
class StdioClientConfig:
    command: list[str] = field(default_factory=lambda: ["universal-mcp-server"])
    cwd: str | None = None
    env: dict[str, str] | None = None
    delimiter: str = "\n"
    encoding: str = "utf-8"
    timeout: float = DEFAULT_TIMEOUT
    # Seconds to wait for the process to exit after stdin is closed
    shutdown_timeout: float = 5.0
    max_frame_size: int = 10 * 1024 * 1024


class StdioClientTransport(BaseClientTransport):
    """Runs the server as a subprocess and talks to it over its stdio.

    Disconnecting closes the child's stdin, which lets a stdio-only server
    finish in-flight requests and exit on its own; it is terminated if it
    does not exit within `shutdown_timeout`.
    """

    name = "stdio"

    def __init__(self, config: StdioClientConfig | None = None) -> None:
        self.config = config or StdioClientConfig()
        super().__init__(self.config.timeout)
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def _do_connect(self) -> None:
        env = {**os.environ, **self.config.env} if self.config.env else None
        self._process = await asyncio.create_subprocess_exec(
            *self.config.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.config.cwd,
            env=env,
            limit=self.config.max_frame_size,
        )
        self._stderr_task = asyncio.create_task(self._log_stderr())
        logger.info(f"Launched {' '.join(self.config.command)} (pid={self._process.pid})")

    async def _do_disconnect(self) -> None:
        process, self._process = self._process, None
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            try:
                await asyncio.wait_for(process.wait(), self.config.shutdown_timeout)
            except TimeoutError:
                logger.warning(f"Server pid={process.pid} did not exit; terminating")
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), self.config.shutdown_timeout)
                except TimeoutError:
                    process.kill()
                    await process.wait()
            logger.info(f"Server pid={process.pid} exited with {process.returncode}")

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

    async def _do_send(self, request: Request) -> None:
        if self._process is None or self._process.stdin is None:
            raise ClientConnectionError("Server process not running")
        frame = json.dumps(request.to_wire()) + self.config.delimiter
        try:
            self._process.stdin.write(frame.encode(self.config.encoding))
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ClientConnectionError(f"Server stdin closed: {e}") from e

    async def _receive(self) -> AsyncIterator[dict[str, Any]]:
        if self._process is None or self._process.stdout is None:
            raise ClientConnectionError("Server process not running")

        stdout = self._process.stdout
        delimiter = self.config.delimiter.encode(self.config.encoding)
        while True:
            try:
                raw = await stdout.readuntil(delimiter)
            except asyncio.IncompleteReadError as e:
                raw = e.partial
                if not raw:
                    return
            text = raw.decode(self.config.encoding, errors="replace")
            text = text.removesuffix(self.config.delimiter).strip()
            if text.startswith("{"):
                try:
                    message = json.loads(text)
                except json.JSONDecodeError as e:
                    logger.debug(f"Skipping unparseable line: {e}")
                else:
                    yield message
            elif text:
                logger.debug(f"Skipping non-JSON line: {text[:50]}")

            if stdout.at_eof():
                return

    async def _log_stderr(self) -> None:
        if self._process is None or self._process.stderr is None:
            return
        stderr = self._process.stderr
        while line := await stderr.readline():
            logger.debug(f"[server stderr] {line.decode(errors='replace').rstrip()}")
