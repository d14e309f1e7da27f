"""Plugins contribute tools and resources.

A plugin is a Python module named in the configuration:

    plugins:
      - name: docs
        module: myapp.docs_plugin
        options: {root: ./docs}

The module exposes either `create_plugin(config) -> Plugin` or a module
level `plugin` instance. Plugins that fail to load are logged and marked
as errored; they never prevent the server from starting.

Plugins handed over with `register_plugin` belong to the embedding code, not
to the configuration. Stopping the server cleans them up and leaves them
inactive; the next start initializes them again.
"""

from __future__ import annotations

import importlib
import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .config import PluginConfig

if TYPE_CHECKING:
    from .tools import ToolDefinition

logger = logging.getLogger(__name__)


class Resource(BaseModel):
    """A readable resource exposed through resources/list and resources/read."""

    model_config = ConfigDict(populate_by_name=True)

    uri: str
    name: str
    description: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    text: str | None = None

    def describe(self) -> dict[str, Any]:
        """Listing form (no inline content)."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"text"})

    def contents(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Plugin:
    """Base class for plugins.

    Subclass and override `initialize`/`cleanup` when the plugin owns
    resources of its own; otherwise instantiate directly.
    """

    def __init__(
        self,
        name: str,
        version: str = "0.0.0",
        description: str = "",
        tools: list[ToolDefinition] | None = None,
        resources: list[Resource] | None = None,
    ) -> None:
        self.name = name
        self.version = version
        self.description = description
        self.tools = list(tools or [])
        self.resources = list(resources or [])

    async def initialize(self, config: PluginConfig) -> None:
        """Called once after loading."""

    async def cleanup(self) -> None:
        """Called when the plugin is unloaded or the server stops."""


class PluginState(str, Enum):
    LOADING = "loading"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


@dataclass
class PluginRecord:
    plugin: Plugin | None
    config: PluginConfig | None
    state: PluginState
    error: str | None = None
    loaded_at: float | None = None
    registered: bool = False


class PluginManager:
    """Loads plugins and aggregates their tools and resources."""

    def __init__(self) -> None:
        self._plugins: dict[str, PluginRecord] = {}

    async def initialize(self, configs: list[PluginConfig]) -> None:
        """Load every enabled plugin. Failures are logged, not raised."""
        logger.info(f"Initializing {len(configs)} plugins")
        await self._reactivate_registered()

        for config in configs:
            if not config.enabled:
                logger.info(f"Plugin disabled: {config.name}")
                continue
            if config.name in self._plugins:
                continue
            try:
                await self.load_plugin(config)
            except Exception as e:
                logger.error(f"Failed to initialize plugin {config.name}: {e}")

        logger.info(f"Plugin initialization complete. Active plugins: {self.active_count}")

    async def load_plugin(self, config: PluginConfig) -> Plugin:
        """Import, create and initialize a plugin from its module."""
        if config.name in self._plugins and self._plugins[config.name].state != PluginState.ERROR:
            raise ValueError(f"Plugin already loaded: {config.name}")

        record = PluginRecord(plugin=None, config=config, state=PluginState.LOADING)
        self._plugins[config.name] = record

        try:
            if not config.module:
                raise ValueError(f"Plugin {config.name} has no module")
            module = importlib.import_module(config.module)

            if hasattr(module, "create_plugin"):
                plugin = module.create_plugin(config)
                if inspect.isawaitable(plugin):
                    plugin = await plugin
            elif isinstance(getattr(module, "plugin", None), Plugin):
                plugin = module.plugin
            else:
                raise ValueError(
                    f"Module {config.module} defines neither create_plugin() nor plugin"
                )

            await plugin.initialize(config)
        except Exception as e:
            record.state = PluginState.ERROR
            record.error = str(e)
            raise

        record.plugin = plugin
        record.state = PluginState.ACTIVE
        record.loaded_at = time.time()
        logger.info(f"Plugin loaded: {config.name} v{plugin.version}")
        return plugin

    def register_plugin(self, plugin: Plugin) -> None:
        """Register an already constructed plugin (embedding and tests)."""
        if plugin.name in self._plugins:
            raise ValueError(f"Plugin already registered: {plugin.name}")
        self._plugins[plugin.name] = PluginRecord(
            plugin=plugin,
            config=None,
            state=PluginState.ACTIVE,
            loaded_at=time.time(),
            registered=True,
        )
        logger.info(f"Plugin registered: {plugin.name} v{plugin.version}")

    async def unregister_plugin(self, name: str) -> None:
        record = self._plugins.pop(name, None)
        if record is None:
            raise KeyError(f"Plugin not found: {name}")
        if record.state == PluginState.ACTIVE and record.plugin is not None:
            await record.plugin.cleanup()
        logger.info(f"Plugin unloaded: {name}")

    async def reload_plugin(self, name: str) -> Plugin:
        record = self._plugins.get(name)
        if record is None:
            raise KeyError(f"Plugin not found: {name}")
        if record.config is None:
            raise ValueError(f"Plugin {name} was registered directly and cannot be reloaded")
        await self.unregister_plugin(name)
        return await self.load_plugin(record.config)

    async def _reactivate_registered(self) -> None:
        for name, record in self._plugins.items():
            if not record.registered or record.state != PluginState.INACTIVE:
                continue
            assert record.plugin is not None
            try:
                await record.plugin.initialize(PluginConfig(name=name))
            except Exception as e:
                record.state = PluginState.ERROR
                record.error = str(e)
                logger.error(f"Failed to reactivate plugin {name}: {e}")
                continue
            record.state = PluginState.ACTIVE
            record.error = None
            record.loaded_at = time.time()

    async def cleanup(self) -> None:
        """Clean up every active plugin.

        Plugins loaded from configuration are forgotten; directly registered
        ones are kept as inactive.
        """
        for name, record in list(self._plugins.items()):
            if record.state == PluginState.ACTIVE and record.plugin is not None:
                try:
                    await record.plugin.cleanup()
                except Exception as e:
                    logger.error(f"Error cleaning up plugin {name}: {e}")

            if record.registered:
                record.state = PluginState.INACTIVE
            else:
                del self._plugins[name]

    def get_state(self, name: str) -> PluginState | None:
        record = self._plugins.get(name)
        return record.state if record else None

    def _active(self) -> list[Plugin]:
        return [
            r.plugin
            for r in self._plugins.values()
            if r.state == PluginState.ACTIVE and r.plugin is not None
        ]

    @property
    def active_count(self) -> int:
        return len(self._active())

    def all_tools(self) -> list[ToolDefinition]:
        return [t for plugin in self._active() for t in plugin.tools]

    def all_resources(self) -> list[Resource]:
        return [r for plugin in self._active() for r in plugin.resources]

    def get_resource(self, uri: str) -> Resource | None:
        for resource in self.all_resources():
            if resource.uri == uri:
                return resource
        return None
