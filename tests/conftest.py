"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from universal_mcp_server.metrics import MetricsCollector
from universal_mcp_server.plugins import Plugin, PluginManager, Resource
from universal_mcp_server.protocol.handler import RequestHandler
from universal_mcp_server.tools import ToolDefinition, ToolRegistry


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Poll until predicate() is true or fail after timeout seconds."""
    return _wait_until


async def _echo(arguments: dict[str, Any]) -> dict[str, Any]:
    return {"echo": arguments}


async def _fail(arguments: dict[str, Any]) -> None:
    raise RuntimeError("handler exploded")


@pytest.fixture
def registry() -> ToolRegistry:
    """Registry with an echoing tool and a failing tool."""
    registry = ToolRegistry()
    registry.register(ToolDefinition(name="echo", description="Echo arguments", handler=_echo))
    registry.register(ToolDefinition(name="fail", description="Always fails", handler=_fail))
    return registry


@pytest.fixture
def plugin_manager() -> PluginManager:
    """Plugin manager with one plugin exposing a readme resource."""
    manager = PluginManager()
    manager.register_plugin(
        Plugin(
            name="docs",
            version="1.2.0",
            resources=[
                Resource(
                    uri="file:///readme.md",
                    name="README",
                    description="Project readme",
                    mime_type="text/markdown",
                    text="# Hello",
                )
            ],
        )
    )
    return manager


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def handler(
    registry: ToolRegistry, plugin_manager: PluginManager, metrics: MetricsCollector
) -> RequestHandler:
    return RequestHandler(
        registry,
        plugin_manager,
        metrics,
        lambda: {"name": "test-server", "version": "0.1.0", "description": "", "uptime": 1.5},
    )
