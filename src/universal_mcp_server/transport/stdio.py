"""stdio channel.

Maps delimiter-separated JSON on an input byte stream to request envelopes
and writes response envelopes, one per frame, to an output byte stream.
Each start opens a single Connection. The first one in a process is
`stdio-main`; later restarts get `stdio-main-2`, `stdio-main-3` and so on, so
an id is never reused.

Wire format (default delimiter LF, UTF-8):
    stdin:  {"jsonrpc": "2.0", "id": 1, "method": "tools/list"}\\n
    stdout: {"jsonrpc": "2.0", "id": 1, "result": {...}, "timestamp": ...}\\n

Framing:
- Bytes are decoded incrementally, so multi-byte characters split across
  reads survive
- A trailing fragment without delimiter is buffered until the next read;
  at EOF it is processed as the final frame
- CR before an LF delimiter, empty frames and a leading BOM are ignored

End of input does not close the connection. Responses to requests that are
still in flight can be written until the channel is stopped.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import io
import itertools
import logging
import os
import sys
from typing import BinaryIO

from ..config import StdioChannelConfig
from ..protocol.errors import InvalidRequest
from ..protocol.messages import Response
from .base import (
    ChannelAdapter,
    ConnectionNotFound,
    FramingError,
    TransportStartFailure,
    encode_message,
    parse_request,
)

logger = logging.getLogger(__name__)

CONNECTION_ID = "stdio-main"

_attach_numbers = itertools.count(1)


def _next_connection_id() -> str:
    number = next(_attach_numbers)
    return CONNECTION_ID if number == 1 else f"{CONNECTION_ID}-{number}"


class StdioChannel(ChannelAdapter):
    """Delimited stream channel over a pair of binary streams.

    Usage:
        channel = StdioChannel()          # sys.stdin.buffer / sys.stdout.buffer
        channel.on_message(handle)
        await channel.start()
        await channel.wait_closed()       # returns at input EOF
        await channel.stop()
    """

    name = "stdio"

    def __init__(
        self,
        config: StdioChannelConfig | None = None,
        input_stream: BinaryIO | None = None,
        output_stream: BinaryIO | None = None,
    ) -> None:
        super().__init__()
        self.config = config or StdioChannelConfig()
        self._input = input_stream if input_stream is not None else sys.stdin.buffer
        self._output = output_stream if output_stream is not None else sys.stdout.buffer

        self._decoder = codecs.getincrementaldecoder(self.config.encoding)(errors="replace")
        self._buffer = ""
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._eof = asyncio.Event()
        self._started = False
        self.connection_id: str | None = None
        self._pipe_transport: asyncio.ReadTransport | None = None
        self._error_tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        if self._started:
            raise TransportStartFailure(self.name, "stream already attached")
        self._started = True

        self._buffer = ""
        self._decoder.reset()
        self._eof.clear()
        self.connection_id = _next_connection_id()
        self._open_connection(self.connection_id)
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info("stdio channel started")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        if self._pipe_transport is not None:
            self._pipe_transport.close()
            self._pipe_transport = None

        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._eof.set()
        self._close_all_connections()
        logger.info("stdio channel stopped")

    async def send(self, connection_id: str, response: Response) -> None:
        if connection_id != self.connection_id or not self.has_connection(connection_id):
            raise ConnectionNotFound(connection_id, self.name)
        await self._write_frame(encode_message(response))

    def is_connected(self) -> bool:
        return self.connection_id is not None and self.has_connection(self.connection_id)

    @property
    def at_eof(self) -> bool:
        return self._eof.is_set()

    async def wait_closed(self) -> None:
        """Block until the input stream reaches EOF (or the channel stops)."""
        await self._eof.wait()

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            reader = await self._attach_pipe()
            if reader is not None:
                while chunk := await reader.read(self.config.read_chunk_size):
                    self._feed(chunk)
            else:
                loop = asyncio.get_running_loop()
                while chunk := await loop.run_in_executor(None, self._blocking_read):
                    self._feed(chunk)

            self._finish()
            logger.info("stdio input closed")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"stdio read error: {e}")
        finally:
            self._eof.set()

    async def _attach_pipe(self) -> asyncio.StreamReader | None:
        """Non-blocking reader for pipes and ttys; None for anything else.

        The pipe transport reads from a duplicate of the input descriptor and
        closes only that copy, so the caller's stream (usually the process's
        stdin) stays usable for the next start.
        """
        try:
            fd = self._input.fileno()
        except (AttributeError, OSError, ValueError, io.UnsupportedOperation):
            return None

        pipe = os.fdopen(os.dup(fd), "rb", buffering=0)
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.config.max_buffer_size)
        protocol = asyncio.StreamReaderProtocol(reader)
        try:
            transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
        except (OSError, ValueError):
            # Regular files are not supported by the pipe transport
            pipe.close()
            return None
        self._pipe_transport = transport
        return reader

    def _blocking_read(self) -> bytes:
        read1 = getattr(self._input, "read1", None)
        if read1 is not None:
            return read1(self.config.read_chunk_size)
        return self._input.read(self.config.read_chunk_size)

    def _feed(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)

        delimiter = self.config.delimiter
        *frames, self._buffer = self._buffer.split(delimiter)
        for frame in frames:
            self._handle_frame(frame)

        if len(self._buffer) > self.config.max_buffer_size:
            logger.error(
                f"stdio buffer exceeded {self.config.max_buffer_size} characters "
                "without a delimiter; discarding"
            )
            self._buffer = ""

    def _finish(self) -> None:
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if remainder:
            self._handle_frame(remainder)

    def _handle_frame(self, frame: str) -> None:
        frame = frame.strip()
        if frame.startswith("\ufeff"):
            frame = frame[1:]
        if not frame:
            return

        try:
            request = parse_request(frame)
        except FramingError as e:
            logger.warning(f"Discarding malformed stdio frame: {e}")
            return
        except InvalidRequest as e:
            logger.warning(f"Invalid stdio request: {e.data}")
            task = asyncio.create_task(self._write_error(Response.failure(e.request_id, e)))
            self._error_tasks.add(task)
            task.add_done_callback(self._error_tasks.discard)
            return

        if self.connection_id is not None:
            self._deliver(request, self.connection_id)

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    async def _write_error(self, response: Response) -> None:
        with contextlib.suppress(ConnectionNotFound):
            await self._write_frame(encode_message(response))

    async def _write_frame(self, text: str) -> None:
        data = (text + self.config.delimiter).encode(self.config.encoding)
        async with self._write_lock:
            try:
                self._output.write(data)
                self._output.flush()
            except (BrokenPipeError, ValueError) as e:
                # Output closed underneath us
                connection_id = self.connection_id or CONNECTION_ID
                self._close_connection(connection_id)
                raise ConnectionNotFound(connection_id, self.name) from e
