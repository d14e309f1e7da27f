"""Tools reachable through `tools/list` and `tools/call`.

A tool is an async callable taking the call's `arguments` object and
returning any JSON-serializable payload:

    async def lookup(arguments: dict) -> dict:
        return {"answer": arguments["query"].upper()}

    registry = ToolRegistry()
    registry.register(ToolDefinition(
        name="lookup",
        description="Look something up",
        handler=lookup,
        input_schema={"type": "object", "properties": {"query": {"type": "string"}}},
    ))

Registration is synchronous and takes effect for the next dispatch.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


def _empty_object_schema() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass
class ToolDefinition:
    """One callable capability.

    `timeout` (seconds) bounds a single call; None defers to the server's
    default.
    """

    name: str
    description: str
    handler: ToolHandler
    input_schema: dict[str, Any] = field(default_factory=_empty_object_schema)
    category: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        problems = []
        if not self.name:
            problems.append("name is empty")
        if not self.description:
            problems.append("description is empty")
        if not callable(self.handler):
            problems.append("handler is not callable")
        if not isinstance(self.input_schema, dict):
            problems.append("input_schema is not a mapping")
        if self.timeout is not None and self.timeout <= 0:
            problems.append("timeout must be positive")
        if problems:
            raise ValueError(f"Invalid tool {self.name!r}: {', '.join(problems)}")

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolRegistry:
    """Tools by name, iterated in registration order.

    A dispatch looks its definition up once, so unregistering a tool does
    not affect calls that are already running.
    """

    def __init__(self) -> None:
        self._by_name: dict[str, ToolDefinition] = {}

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(list(self._by_name.values()))

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def register(self, definition: ToolDefinition) -> None:
        """Add a new tool.

        Raises:
            ValueError: If the name is taken
        """
        if definition.name in self._by_name:
            raise ValueError(f"Tool already registered: {definition.name}")
        self._store(definition)

    def register_or_replace(self, definition: ToolDefinition) -> bool:
        """Add a tool, overwriting one with the same name.

        Returns:
            Whether an earlier definition was overwritten
        """
        existed = definition.name in self._by_name
        self._store(definition)
        return existed

    def _store(self, definition: ToolDefinition) -> None:
        previous = self._by_name.get(definition.name)
        self._by_name[definition.name] = definition
        logger.debug(
            f"Tool {definition.name} {'replaced' if previous is not None else 'registered'}"
        )

    def unregister(self, name: str) -> bool:
        removed = self._by_name.pop(name, None) is not None
        if removed:
            logger.debug(f"Tool {name} unregistered")
        return removed

    def get(self, name: str) -> ToolDefinition | None:
        return self._by_name.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self)

    def names(self) -> list[str]:
        return [definition.name for definition in self]


def tool(
    registry: ToolRegistry,
    name: str,
    description: str,
    input_schema: dict[str, Any] | None = None,
    *,
    category: str | None = None,
    timeout: float | None = None,
) -> Callable[[ToolHandler], ToolHandler]:
    """Register the decorated coroutine function as a tool.

        @tool(registry, "greet", "Say hello")
        async def greet(arguments: dict) -> str:
            return f"hello {arguments.get('name', 'world')}"
    """

    def register(func: ToolHandler) -> ToolHandler:
        registry.register(
            ToolDefinition(
                name,
                description,
                func,
                input_schema or _empty_object_schema(),
                category=category,
                timeout=timeout,
            )
        )
        return func

    return register
