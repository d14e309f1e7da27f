"""Embedded uvicorn server for the network channels.

The listening socket is bound before uvicorn is involved, so address
problems surface as TransportStartFailure instead of uvicorn's own
sys.exit(). Signal handling is left to the host process: several channels
share one event loop and none of them may install process-wide handlers.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import Iterator
from typing import Any

import uvicorn

from .base import TransportStartFailure

logger = logging.getLogger(__name__)

STARTUP_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0


def bind_socket(host: str, port: int, backlog: int = 2048) -> socket.socket:
    """Bind and listen on host:port (port 0 picks a free port).

    Raises:
        OSError: Address in use, permission denied, unresolvable host
    """
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    family, socktype, proto, _, address = infos[0]
    sock = socket.socket(family, socktype, proto)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(address)
        sock.listen(backlog)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that never touches process signal handlers."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class AsgiServerRunner:
    """Runs one ASGI app on its own socket inside the current event loop."""

    def __init__(
        self,
        app: Any,
        *,
        channel: str,
        host: str,
        port: int,
        **uvicorn_options: Any,
    ) -> None:
        self._app = app
        self._channel = channel
        self._host = host
        self._port = port
        self._options = uvicorn_options
        self._socket: socket.socket | None = None
        self._server: EmbeddedServer | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def port(self) -> int | None:
        """Actual bound port (useful when configured with port 0)."""
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def running(self) -> bool:
        return (
            self._server is not None
            and self._server.started
            and not self._server.should_exit
        )

    async def start(self) -> None:
        if self._server is not None:
            raise TransportStartFailure(self._channel, "already started")

        try:
            self._socket = bind_socket(self._host, self._port)
        except OSError as e:
            raise TransportStartFailure(self._channel, f"{self._host}:{self._port}: {e}") from e

        config = uvicorn.Config(
            self._app,
            lifespan="off",
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=SHUTDOWN_TIMEOUT,
            **self._options,
        )
        self._server = EmbeddedServer(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + STARTUP_TIMEOUT
        while not self._server.started:
            if self._task.done() or loop.time() > deadline:
                await self.stop()
                raise TransportStartFailure(self._channel, "server did not start")
            await asyncio.sleep(0.01)

        logger.info(f"{self._channel} listening on {self._host}:{self.port}")

    async def stop(self) -> None:
        server, task = self._server, self._task
        if server is None or task is None:
            return

        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=SHUTDOWN_TIMEOUT + 1.0)
        except TimeoutError:
            logger.warning(f"{self._channel} server did not shut down in time; forcing exit")
            server.force_exit = True
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        except Exception as e:
            logger.error(f"{self._channel} server stopped with error: {e}")
        finally:
            if self._socket is not None:
                self._socket.close()
            self._socket = None
            self._server = None
            self._task = None
