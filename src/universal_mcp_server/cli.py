"""Universal MCP Server CLI.

Default mode serves stdio only (for IDE/subprocess integration). Network
channels are enabled from the config file or with their port options.

Usage:
    universal-mcp-server                          # stdio only
    universal-mcp-server --config server.yaml     # channels from config
    universal-mcp-server --websocket-port 3000 --http-port 3001 --no-stdio
    universal-mcp-server --health                 # Check HTTP channel health

    universal-mcp-server config                   # Show effective configuration
    universal-mcp-server tools                    # List built-in tools
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys

import click
import httpx
from pydantic import ValidationError

from .builtin_tools import builtin_tools
from .config import (
    HttpChannelConfig,
    LoggingConfig,
    ServerConfig,
    StdioChannelConfig,
    WebSocketChannelConfig,
    load_config,
)
from .logging_setup import configure_logging
from .server import MCPServer
from .transport.base import TransportError

logger = logging.getLogger(__name__)

# Seconds to wait for in-flight requests after stdin closes
DRAIN_TIMEOUT = 30.0

LOG_LEVELS = ["debug", "info", "warning", "error"]
LOG_FORMATS = ["text", "json"]


def build_config(
    config_path: str | None = None,
    *,
    host: str | None = None,
    websocket_port: int | None = None,
    http_port: int | None = None,
    http_path: str | None = None,
    stdio: bool | None = None,
    log_level: str | None = None,
    log_format: str | None = None,
) -> ServerConfig:
    """Load the config file (or defaults) and apply command line overrides.

    Channels enabled on the command line start after those from the file.
    """
    config = load_config(config_path)
    transports = config.transports
    updates: dict[str, WebSocketChannelConfig | HttpChannelConfig | StdioChannelConfig | None] = {}

    if websocket_port is not None:
        websocket = transports.websocket or WebSocketChannelConfig()
        updates["websocket"] = websocket.model_copy(update={"port": websocket_port})

    if http_port is not None:
        http = transports.http or HttpChannelConfig()
        updates["http"] = http.model_copy(update={"port": http_port})

    if http_path is not None:
        http = updates.get("http") or transports.http
        if http is None:
            raise click.UsageError("--http-path requires the HTTP channel (--http-port or config)")
        updates["http"] = http.model_copy(update={"path": http_path})

    if host is not None:
        for name in ("websocket", "http"):
            channel = updates.get(name) or getattr(transports, name)
            if channel is not None:
                updates[name] = channel.model_copy(update={"host": host})

    if stdio is True:
        updates["stdio"] = transports.stdio or StdioChannelConfig()
    elif stdio is False:
        updates["stdio"] = None

    order = [name for name, _ in transports.channels()]
    order += [name for name, value in updates.items() if value is not None and name not in order]
    enabled = {name: updates.get(name, getattr(transports, name)) for name in order}
    transports = transports.model_copy(
        update={**updates, "order": [name for name in order if enabled[name] is not None]}
    )

    logging_updates = {}
    if log_level is not None:
        logging_updates["level"] = log_level
    if log_format is not None:
        logging_updates["format"] = log_format
    logging_config = config.logging
    if logging_updates:
        logging_config = LoggingConfig.model_validate(
            {**config.logging.model_dump(), **logging_updates}
        )

    return config.model_copy(update={"transports": transports, "logging": logging_config})


@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to YAML configuration file",
)
@click.option("--host", default=None, help="Host for the network channels")
@click.option(
    "--websocket-port",
    type=click.IntRange(0, 65535),
    default=None,
    help="Enable the WebSocket channel on this port",
)
@click.option(
    "--http-port",
    type=click.IntRange(0, 65535),
    default=None,
    help="Enable the HTTP channel on this port",
)
@click.option("--http-path", default=None, help="Path of the HTTP request endpoint")
@click.option("--stdio/--no-stdio", default=None, help="Enable or disable the stdio channel")
@click.option("--log-level", type=click.Choice(LOG_LEVELS), default=None, help="Logging level")
@click.option("--log-format", type=click.Choice(LOG_FORMATS), default=None, help="Log line format")
@click.option("--health", "health_check", is_flag=True, help="Check HTTP server health and exit")
@click.option("--health-url", default="http://localhost:3001", help="Server URL for health check")
@click.pass_context
def main(
    ctx: click.Context,
    config_path: str | None,
    host: str | None,
    websocket_port: int | None,
    http_port: int | None,
    http_path: str | None,
    stdio: bool | None,
    log_level: str | None,
    log_format: str | None,
    health_check: bool,
    health_url: str,
) -> None:
    """Universal MCP Server - one tool protocol over WebSocket, HTTP and stdio.

    By default, serves stdio only. Output on stdout is reserved for the
    protocol; logs go to stderr.
    """
    if health_check:
        _do_health_check(health_url)
        return

    try:
        config = build_config(
            config_path,
            host=host,
            websocket_port=websocket_port,
            http_port=http_port,
            http_path=http_path,
            stdio=stdio,
            log_level=log_level,
            log_format=log_format,
        )
    except (ValidationError, ValueError, OSError) as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    ctx.obj = config

    # If a subcommand is invoked, let it handle everything
    if ctx.invoked_subcommand is not None:
        return

    configure_logging(config.logging)
    _run_server(config)


def _do_health_check(url: str) -> None:
    """Check server health."""

    async def check() -> None:
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{url.rstrip('/')}/health")
                if response.status_code == 200:
                    data = response.json()
                    click.echo(f"Server is healthy: {data}")
                else:
                    click.echo(f"Server returned {response.status_code}", err=True)
                    sys.exit(1)
        except httpx.ConnectError:
            click.echo(f"Cannot connect to server at {url}", err=True)
            sys.exit(1)

    asyncio.run(check())


def _run_server(config: ServerConfig) -> None:
    channels = ", ".join(name for name, _ in config.transports.channels()) or "none"
    click.echo(f"Starting {config.name} v{config.version} ({channels})", err=True)

    try:
        asyncio.run(serve(config))
    except TransportError as e:
        raise click.ClickException(str(e)) from e
    except KeyboardInterrupt:
        click.echo("\nShutting down", err=True)


async def serve(config: ServerConfig) -> None:
    """Run a server until SIGINT/SIGTERM, or stdin EOF when stdio is alone."""
    server = MCPServer(config)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_requested.set)
            installed.append(sig)

    try:
        await server.start()

        waiters = [asyncio.create_task(stop_requested.wait())]
        if server.transports.channel_names == ["stdio"]:
            waiters.append(asyncio.create_task(server.wait_for_stdio_eof()))

        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        if not stop_requested.is_set():
            logger.info("stdin closed; finishing in-flight requests")
            await server.drain(timeout=DRAIN_TIMEOUT)
    finally:
        await server.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


# =============================================================================
# Inspection Commands
# =============================================================================


@main.command("config")
@click.pass_obj
def show_config(config: ServerConfig) -> None:
    """Show the effective configuration as JSON.

    Examples:

        universal-mcp-server config
        universal-mcp-server --http-port 8080 config
    """
    click.echo(json.dumps(config.model_dump(mode="json"), indent=2))


@main.command("tools")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def list_tools(output_json: bool) -> None:
    """List the built-in tools.

    The server_info and server_metrics tools are added at runtime and are
    not listed here.
    """
    tools = builtin_tools()

    if output_json:
        click.echo(json.dumps([tool.describe() for tool in tools], indent=2))
        return

    width = max(len(tool.name) for tool in tools)
    for tool in tools:
        click.echo(f"{tool.name:<{width}}  {tool.description}")


if __name__ == "__main__":
    main()
