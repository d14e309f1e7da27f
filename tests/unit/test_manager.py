"""Unit tests for the transport manager, using in-memory adapters."""

from __future__ import annotations

import io

import pytest

from universal_mcp_server.config import StdioChannelConfig, TransportsConfig
from universal_mcp_server.protocol.messages import Request, Response
from universal_mcp_server.transport.base import (
    ChannelAdapter,
    ChannelAlreadyStarted,
    Connection,
    ConnectionNotFound,
    NoTransportsConfigured,
    TransportStartFailure,
)
from universal_mcp_server.transport.http import HttpChannel
from universal_mcp_server.transport.manager import TransportManager
from universal_mcp_server.transport.stdio import StdioChannel
from universal_mcp_server.transport.websocket import WebSocketChannel


class FakeAdapter(ChannelAdapter):
    """Adapter that records what it was asked to do."""

    def __init__(self, name: str, log: list[str], *, fail_start: Exception | None = None) -> None:
        super().__init__()
        self.name = name
        self.log = log
        self.fail_start = fail_start
        self.sent: list[tuple[str, Response]] = []
        self.running = False
        self.send_error: Exception | None = None

    async def start(self) -> None:
        self.log.append(f"start:{self.name}")
        if self.fail_start is not None:
            raise self.fail_start
        self.running = True

    async def stop(self) -> None:
        self.log.append(f"stop:{self.name}")
        self.running = False
        self._close_all_connections()

    async def send(self, connection_id: str, response: Response) -> None:
        if self.send_error is not None:
            raise self.send_error
        if not self.has_connection(connection_id):
            raise ConnectionNotFound(connection_id, self.name)
        self.sent.append((connection_id, response))

    def is_connected(self) -> bool:
        return self.running

    # Test hooks
    def connect(self, connection_id: str) -> Connection:
        return self._open_connection(connection_id)

    def disconnect(self, connection_id: str) -> None:
        self._close_connection(connection_id)

    def receive(self, request: Request, connection_id: str) -> None:
        self._deliver(request, connection_id)


class TestBuildChannels:
    """Tests for turning configuration into adapters."""

    def test_one_adapter_per_channel_in_order(self) -> None:
        config = TransportsConfig.model_validate({"http": {}, "stdio": {}, "websocket": {}})

        adapters = TransportManager().build_channels(config)

        assert [type(a) for a in adapters] == [HttpChannel, StdioChannel, WebSocketChannel]

    def test_server_name_is_passed_on(self) -> None:
        config = TransportsConfig.model_validate({"http": {}})

        (adapter,) = TransportManager("named").build_channels(config)

        assert isinstance(adapter, HttpChannel)
        assert adapter.server_name == "named"


class TestStart:
    """Tests for all-or-nothing startup."""

    @pytest.mark.asyncio
    async def test_starts_in_order(self) -> None:
        log: list[str] = []
        manager = TransportManager()

        await manager.start_channels([FakeAdapter("a", log), FakeAdapter("b", log)])

        assert log == ["start:a", "start:b"]
        assert manager.channel_names == ["a", "b"]
        assert manager.is_running

    @pytest.mark.asyncio
    async def test_failure_rolls_back_started_channels(self) -> None:
        log: list[str] = []
        manager = TransportManager()
        adapters = [
            FakeAdapter("a", log),
            FakeAdapter("b", log),
            FakeAdapter("c", log, fail_start=TransportStartFailure("c", "port in use")),
            FakeAdapter("d", log),
        ]

        with pytest.raises(TransportStartFailure):
            await manager.start_channels(adapters)

        assert log == ["start:a", "start:b", "start:c", "stop:c", "stop:b", "stop:a"]
        assert manager.channel_names == []
        assert not manager.is_running

    @pytest.mark.asyncio
    async def test_unexpected_failure_is_wrapped(self) -> None:
        manager = TransportManager()

        with pytest.raises(TransportStartFailure) as exc_info:
            await manager.start_channels([FakeAdapter("a", [], fail_start=RuntimeError("nope"))])

        assert exc_info.value.channel == "a"
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_rollback_drops_connections(self) -> None:
        log: list[str] = []
        manager = TransportManager()
        dropped: list[str] = []
        manager.on_disconnect(lambda connection: dropped.append(connection.id))

        class ConnectingAdapter(FakeAdapter):
            async def start(self) -> None:
                await super().start()
                self.connect("a-1")

        with pytest.raises(TransportStartFailure):
            await manager.start_channels(
                [ConnectingAdapter("a", log), FakeAdapter("b", log, fail_start=OSError("x"))]
            )

        assert dropped == ["a-1"]
        assert manager.connections == []

    @pytest.mark.asyncio
    async def test_nothing_configured(self) -> None:
        with pytest.raises(NoTransportsConfigured):
            await TransportManager().start(TransportsConfig())

    @pytest.mark.asyncio
    async def test_duplicate_channel_names(self) -> None:
        log: list[str] = []
        manager = TransportManager()

        with pytest.raises(ChannelAlreadyStarted):
            await manager.start_channels([FakeAdapter("a", log), FakeAdapter("a", log)])
        assert log == []

    @pytest.mark.asyncio
    async def test_channel_already_running(self) -> None:
        manager = TransportManager()
        await manager.start_channels([FakeAdapter("a", [])])

        with pytest.raises(ChannelAlreadyStarted):
            await manager.start_channels([FakeAdapter("a", [])])
        assert manager.channel_names == ["a"]


class TestRouting:
    """Tests for message fan-in and response routing."""

    @pytest.mark.asyncio
    async def test_messages_are_tagged_with_channel(self) -> None:
        manager = TransportManager()
        received: list[tuple[object, str, str]] = []
        manager.on_message(
            lambda request, cid, channel: received.append((request.id, cid, channel))
        )
        adapter = FakeAdapter("a", [])
        await manager.start_channels([adapter])
        adapter.connect("a-1")

        adapter.receive(Request.create("tools/list", request_id=1), "a-1")

        assert received == [(1, "a-1", "a")]

    @pytest.mark.asyncio
    async def test_send_by_prefix(self) -> None:
        manager = TransportManager()
        first, second = FakeAdapter("a", []), FakeAdapter("b", [])
        await manager.start_channels([first, second])
        second.connect("b-1")

        assert await manager.send("b-1", Response.success(1, "ok"))
        assert [cid for cid, _ in second.sent] == ["b-1"]
        assert first.sent == []

    @pytest.mark.asyncio
    async def test_send_tries_live_channels_when_prefix_unknown(self) -> None:
        manager = TransportManager()
        first, second = FakeAdapter("a", []), FakeAdapter("b", [])
        await manager.start_channels([first, second])
        second.connect("custom-id")

        assert await manager.send("custom-id", Response.success(1, "ok"))
        assert [cid for cid, _ in second.sent] == ["custom-id"]

    @pytest.mark.asyncio
    async def test_send_to_gone_connection(self) -> None:
        manager = TransportManager()
        await manager.start_channels([FakeAdapter("a", [])])

        assert await manager.send("a-404", Response.success(1, None)) is False
        assert await manager.send("zzz", Response.success(1, None)) is False

    @pytest.mark.asyncio
    async def test_send_failure_is_not_raised(self) -> None:
        manager = TransportManager()
        adapter = FakeAdapter("a", [])
        adapter.send_error = RuntimeError("socket exploded")
        await manager.start_channels([adapter])

        assert await manager.send("a-1", Response.success(1, None)) is False


class TestConnections:
    """Tests for connection tracking and lifecycle events."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_propagate(self) -> None:
        manager = TransportManager()
        opened: list[str] = []
        closed: list[str] = []
        manager.on_connect(lambda connection: opened.append(connection.id))
        manager.on_disconnect(lambda connection: closed.append(connection.id))
        adapter = FakeAdapter("a", [])
        await manager.start_channels([adapter])

        adapter.connect("a-1")
        assert manager.get_connection("a-1") is not None
        adapter.disconnect("a-1")
        adapter.disconnect("a-1")

        assert opened == ["a-1"]
        assert closed == ["a-1"]
        assert manager.get_connection("a-1") is None

    @pytest.mark.asyncio
    async def test_status(self) -> None:
        manager = TransportManager()
        adapter = FakeAdapter("a", [])
        await manager.start_channels([adapter])
        adapter.connect("a-1")

        assert manager.status() == {"a": {"connected": True, "connections": 1}}

    @pytest.mark.asyncio
    async def test_stop_closes_each_connection_once(self) -> None:
        log: list[str] = []
        manager = TransportManager()
        closed: list[str] = []
        manager.on_disconnect(lambda connection: closed.append(connection.id))
        first, second = FakeAdapter("a", log), FakeAdapter("b", log)
        await manager.start_channels([first, second])
        first.connect("a-1")
        second.connect("b-1")

        await manager.stop()
        await manager.stop()

        assert sorted(closed) == ["a-1", "b-1"]
        assert manager.channel_names == []
        assert manager.connections == []
        assert sorted(log[2:]) == ["stop:a", "stop:b"]

    @pytest.mark.asyncio
    async def test_stop_survives_failing_adapter(self) -> None:
        class BrokenStop(FakeAdapter):
            async def stop(self) -> None:
                raise RuntimeError("cannot stop")

        manager = TransportManager()
        await manager.start_channels([BrokenStop("a", []), FakeAdapter("b", [])])

        await manager.stop()

        assert not manager.is_running

    def test_stdio_streams_are_passed_on(self) -> None:
        stdin, stdout = io.BytesIO(), io.BytesIO()
        manager = TransportManager(stdin=stdin, stdout=stdout)

        (adapter,) = manager.build_channels(TransportsConfig(stdio=StdioChannelConfig()))

        assert isinstance(adapter, StdioChannel)
        assert adapter._input is stdin
