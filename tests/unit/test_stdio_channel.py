"""Unit tests for the stdio channel.

Input is fed from in-memory byte streams (executor path) or an OS pipe
(non-blocking path); output is captured in a BytesIO.
"""

from __future__ import annotations

import contextlib
import io
import json
import os
from collections.abc import Callable
from typing import Any

import pytest

from universal_mcp_server.config import StdioChannelConfig
from universal_mcp_server.protocol.messages import Request, Response
from universal_mcp_server.transport.base import ConnectionNotFound, TransportStartFailure
from universal_mcp_server.transport.stdio import CONNECTION_ID, StdioChannel


def make_channel(
    data: bytes, **config: Any
) -> tuple[StdioChannel, io.BytesIO, list[tuple[Request, str]]]:
    output = io.BytesIO()
    channel = StdioChannel(StdioChannelConfig(**config), io.BytesIO(data), output)
    received: list[tuple[Request, str]] = []
    channel.on_message(lambda request, connection_id: received.append((request, connection_id)))
    return channel, output, received


def output_lines(output: io.BytesIO) -> list[dict[str, Any]]:
    return [json.loads(line) for line in output.getvalue().decode().splitlines() if line]


class TestReading:
    """Tests for framing inbound bytes."""

    @pytest.mark.asyncio
    async def test_reads_delimited_frames(self) -> None:
        data = b'{"id": 1, "method": "tools/list"}\n{"id": 2, "method": "server/info"}\n'
        channel, _, received = make_channel(data)

        await channel.start()
        await channel.wait_closed()

        assert [(r.id, r.method) for r, _ in received] == [(1, "tools/list"), (2, "server/info")]
        assert {connection_id for _, connection_id in received} == {channel.connection_id}
        await channel.stop()

    @pytest.mark.asyncio
    async def test_small_chunks_and_split_multibyte_character(self) -> None:
        data = '{"id": "ü-€", "method": "tools/call"}\n'.encode()
        channel, _, received = make_channel(data, read_chunk_size=5)

        await channel.start()
        await channel.wait_closed()

        assert len(received) == 1
        assert received[0][0].id == "ü-€"
        await channel.stop()

    @pytest.mark.asyncio
    async def test_trailing_fragment_processed_at_eof(self) -> None:
        channel, _, received = make_channel(b'{"id": 1, "method": "a"}\n{"id": 2, "method": "b"}')

        await channel.start()
        await channel.wait_closed()

        assert [r.id for r, _ in received] == [1, 2]
        await channel.stop()

    @pytest.mark.asyncio
    async def test_custom_delimiter(self) -> None:
        channel, _, received = make_channel(
            b'{"id": 1, "method": "a"}\x00{"id": 2, "method": "b"}\x00', delimiter="\x00"
        )

        await channel.start()
        await channel.wait_closed()

        assert [r.id for r, _ in received] == [1, 2]
        await channel.stop()

    @pytest.mark.asyncio
    async def test_ignores_blank_lines_crlf_and_bom(self) -> None:
        data = b'\n\r\n\xef\xbb\xbf{"id": 1, "method": "a"}\r\n   \n'
        channel, _, received = make_channel(data)

        await channel.start()
        await channel.wait_closed()

        assert [r.id for r, _ in received] == [1]
        await channel.stop()

    @pytest.mark.asyncio
    async def test_malformed_frames_are_dropped(self) -> None:
        data = b'not json\n[1, 2]\n{"id": 3, "method": "ok"}\n'
        channel, output, received = make_channel(data)

        await channel.start()
        await channel.wait_closed()

        assert [r.id for r, _ in received] == [3]
        assert output.getvalue() == b""
        await channel.stop()

    @pytest.mark.asyncio
    async def test_invalid_envelope_gets_error_line(self, wait_until: Callable[..., Any]) -> None:
        channel, output, received = make_channel(b'{"id": 7, "params": {}}\n')

        await channel.start()
        await channel.wait_closed()
        await wait_until(lambda: output.getvalue() != b"")

        assert received == []
        (line,) = output_lines(output)
        assert line["id"] == 7
        assert line["error"]["code"] == -32600
        await channel.stop()

    @pytest.mark.asyncio
    async def test_oversized_fragment_is_discarded(self) -> None:
        data = b"x" * 100 + b'\n{"id": 1, "method": "a"}\n'
        channel, _, received = make_channel(data, max_buffer_size=32, read_chunk_size=8)

        await channel.start()
        await channel.wait_closed()

        assert [r.id for r, _ in received] == [1]
        await channel.stop()


class TestWriting:
    """Tests for writing responses."""

    @pytest.mark.asyncio
    async def test_send_after_eof(self) -> None:
        channel, output, _ = make_channel(b"")

        await channel.start()
        await channel.wait_closed()
        assert channel.at_eof
        assert channel.is_connected()

        await channel.send(channel.connection_id, Response.success(1, {"ok": True}))

        assert output.getvalue().endswith(b"\n")
        assert output_lines(output)[0]["result"] == {"ok": True}
        await channel.stop()

    @pytest.mark.asyncio
    async def test_send_uses_configured_delimiter(self) -> None:
        channel, output, _ = make_channel(b"", delimiter="\x00")

        await channel.start()
        await channel.send(channel.connection_id, Response.success(1, "x"))

        assert output.getvalue().endswith(b"\x00")
        await channel.stop()

    @pytest.mark.asyncio
    async def test_send_to_unknown_connection(self) -> None:
        channel, _, _ = make_channel(b"")
        await channel.start()

        with pytest.raises(ConnectionNotFound):
            await channel.send("websocket-1", Response.success(1, None))
        await channel.stop()

    @pytest.mark.asyncio
    async def test_send_after_stop(self) -> None:
        channel, _, _ = make_channel(b"")
        await channel.start()
        await channel.stop()

        with pytest.raises(ConnectionNotFound):
            await channel.send(channel.connection_id, Response.success(1, None))

    @pytest.mark.asyncio
    async def test_closed_output_closes_connection(self) -> None:
        channel, output, _ = make_channel(b"")
        await channel.start()
        output.close()

        with pytest.raises(ConnectionNotFound):
            await channel.send(channel.connection_id, Response.success(1, None))
        assert not channel.is_connected()
        await channel.stop()


class TestLifecycle:
    """Tests for start/stop."""

    @pytest.mark.asyncio
    async def test_connection_events(self) -> None:
        channel, _, _ = make_channel(b"")
        opened: list[str] = []
        closed: list[str] = []
        channel.on_connect(lambda connection: opened.append(connection.id))
        channel.on_disconnect(closed.append)

        await channel.start()
        await channel.wait_closed()
        assert opened == [channel.connection_id]
        assert closed == []

        await channel.stop()
        await channel.stop()
        assert closed == [channel.connection_id]

    @pytest.mark.asyncio
    async def test_double_start_rejected(self) -> None:
        channel, _, _ = make_channel(b"")
        await channel.start()

        with pytest.raises(TransportStartFailure):
            await channel.start()
        await channel.stop()

    @pytest.mark.asyncio
    async def test_reads_from_os_pipe(self, wait_until: Callable[..., Any]) -> None:
        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb", buffering=0)
        output = io.BytesIO()
        channel = StdioChannel(StdioChannelConfig(), reader, output)
        received: list[Request] = []
        channel.on_message(lambda request, _: received.append(request))

        try:
            await channel.start()
            os.write(write_fd, b'{"id": 1, "method": "a"}\n{"id": 2,')
            await wait_until(lambda: len(received) == 1)

            os.write(write_fd, b' "method": "b"}\n')
            os.close(write_fd)
            write_fd = -1
            await channel.wait_closed()

            assert [r.id for r in received] == [1, 2]
        finally:
            await channel.stop()
            if write_fd != -1:
                os.close(write_fd)
            with contextlib.suppress(OSError):
                reader.close()

    @pytest.mark.asyncio
    async def test_restart_keeps_input_stream_open(self, wait_until: Callable[..., Any]) -> None:
        read_fd, write_fd = os.pipe()
        reader = os.fdopen(read_fd, "rb", buffering=0)
        channel = StdioChannel(StdioChannelConfig(), reader, io.BytesIO())
        received: list[tuple[Any, str]] = []
        channel.on_message(
            lambda request, connection_id: received.append((request.id, connection_id))
        )

        try:
            await channel.start()
            os.write(write_fd, b'{"id": 1, "method": "a"}\n')
            await wait_until(lambda: len(received) == 1)
            await channel.stop()

            assert not reader.closed
            os.fstat(reader.fileno())

            await channel.start()
            os.write(write_fd, b'{"id": 2, "method": "b"}\n')
            await wait_until(lambda: len(received) == 2)

            (first_id, first_connection), (second_id, second_connection) = received
            assert (first_id, second_id) == (1, 2)
            assert first_connection != second_connection
            assert second_connection.startswith("stdio-")
            assert channel.is_connected()
        finally:
            await channel.stop()
            os.close(write_fd)
            reader.close()

    @pytest.mark.asyncio
    async def test_connection_ids_not_reused(self) -> None:
        ids = []
        for _ in range(3):
            channel, _, _ = make_channel(b"")
            await channel.start()
            ids.append(channel.connection_id)
            await channel.stop()

        assert len(set(ids)) == 3
        assert all(connection_id.startswith(CONNECTION_ID) for connection_id in ids)
