"""Built-in tools registered on every server.

General-purpose tools return MCP-style content:

    {"content": [{"type": "text", "text": "..."}], "isError": false}

Failures inside a tool (missing file, unreachable URL) are reported with
`isError: true` rather than raised, so the client sees them as tool output.

Tools that run shell commands or delete files are not part of this set.
"""

from __future__ import annotations

import asyncio
import json
import os
import platform
import sys
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from .tools import ToolDefinition

if TYPE_CHECKING:
    from .server import MCPServer

DEFAULT_SEARCH_LIMIT = 100
DEFAULT_HTTP_TIMEOUT_MS = 30000


def text_result(text: str, *, is_error: bool = False) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _json_result(data: Any) -> dict[str, Any]:
    return text_result(json.dumps(data, indent=2, default=str))


# =============================================================================
# General
# =============================================================================


async def echo(arguments: dict[str, Any]) -> dict[str, Any]:
    return text_result(f"Echo: {arguments.get('message', '')}")


async def get_system_info(arguments: dict[str, Any]) -> dict[str, Any]:
    info: dict[str, Any] = {
        "platform": sys.platform,
        "arch": platform.machine(),
        "pythonVersion": platform.python_version(),
        "hostname": platform.node(),
        "cpus": os.cpu_count(),
        "homedir": str(Path.home()),
        "tmpdir": tempfile.gettempdir(),
    }
    if hasattr(os, "getloadavg"):
        info["loadavg"] = list(os.getloadavg())

    include = arguments.get("include")
    if include:
        info = {key: value for key, value in info.items() if key in include}
    return _json_result(info)


# =============================================================================
# Filesystem
# =============================================================================


def _list_files(directory: str, recursive: bool) -> list[str]:
    root = Path(directory)
    if recursive:
        return sorted(str(p) for p in root.rglob("*") if p.is_file())
    return sorted(str(p) for p in root.iterdir())


async def list_files(arguments: dict[str, Any]) -> dict[str, Any]:
    directory = arguments.get("path") or "."
    try:
        files = await asyncio.to_thread(_list_files, directory, bool(arguments.get("recursive")))
    except OSError as e:
        return text_result(f"Error listing files: {e}", is_error=True)
    return _json_result({"directory": directory, "files": files, "count": len(files)})


async def read_file(arguments: dict[str, Any]) -> dict[str, Any]:
    path = arguments.get("path")
    if not path:
        return text_result("Error reading file: path is required", is_error=True)
    encoding = arguments.get("encoding") or "utf-8"
    try:
        content = await asyncio.to_thread(Path(path).read_text, encoding=encoding)
    except (OSError, UnicodeDecodeError, LookupError) as e:
        return text_result(f"Error reading file: {e}", is_error=True)
    return text_result(content)


async def write_file(arguments: dict[str, Any]) -> dict[str, Any]:
    path = arguments.get("path")
    content = arguments.get("content")
    if not path or content is None:
        return text_result("Error writing file: path and content are required", is_error=True)
    encoding = arguments.get("encoding") or "utf-8"
    try:
        await asyncio.to_thread(Path(path).write_text, str(content), encoding=encoding)
    except (OSError, UnicodeEncodeError, LookupError) as e:
        return text_result(f"Error writing file: {e}", is_error=True)
    return text_result(f"Successfully wrote {len(str(content))} characters to {path}")


def _search(directory: str, pattern: str, include_hidden: bool) -> list[str]:
    root = Path(directory)
    matches = []
    for match in root.glob(pattern):
        relative = match.relative_to(root)
        if not include_hidden and any(part.startswith(".") for part in relative.parts):
            continue
        matches.append(str(relative))
    return sorted(matches)


async def search_files(arguments: dict[str, Any]) -> dict[str, Any]:
    pattern = arguments.get("pattern")
    if not pattern:
        return text_result("File search error: pattern is required", is_error=True)
    directory = arguments.get("directory") or "."
    limit = int(arguments.get("max_results") or DEFAULT_SEARCH_LIMIT)
    try:
        files = await asyncio.to_thread(
            _search, directory, pattern, bool(arguments.get("include_hidden"))
        )
    except (OSError, ValueError) as e:
        return text_result(f"File search error: {e}", is_error=True)
    return _json_result(
        {
            "pattern": pattern,
            "directory": directory,
            "files": files[:limit],
            "count": len(files),
        }
    )


async def create_directory(arguments: dict[str, Any]) -> dict[str, Any]:
    path = arguments.get("path")
    if not path:
        return text_result("Error creating directory: path is required", is_error=True)
    recursive = arguments.get("recursive", True) is not False
    try:
        await asyncio.to_thread(Path(path).mkdir, parents=recursive, exist_ok=recursive)
    except OSError as e:
        return text_result(f"Error creating directory: {e}", is_error=True)
    return text_result(f"Successfully created directory: {path}")


# =============================================================================
# Network
# =============================================================================


async def http_request(arguments: dict[str, Any]) -> dict[str, Any]:
    url = arguments.get("url")
    if not url:
        return text_result("HTTP request failed: url is required", is_error=True)
    timeout_ms = arguments.get("timeout") or DEFAULT_HTTP_TIMEOUT_MS

    try:
        async with httpx.AsyncClient(timeout=timeout_ms / 1000) as client:
            response = await client.request(
                (arguments.get("method") or "GET").upper(),
                url,
                headers=arguments.get("headers") or {},
                content=arguments.get("body"),
            )
    except httpx.TimeoutException:
        return text_result(f"HTTP request timed out after {timeout_ms}ms", is_error=True)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        return text_result(f"HTTP request failed: {e}", is_error=True)

    return _json_result(
        {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": response.text,
        }
    )


# =============================================================================
# Registry
# =============================================================================


def _path_schema(description: str, **extra: Any) -> dict[str, Any]:
    properties = {"path": {"type": "string", "description": description}, **extra}
    return {"type": "object", "properties": properties, "required": ["path"]}


def builtin_tools() -> list[ToolDefinition]:
    """Fresh definitions of the general-purpose tools."""
    return [
        ToolDefinition(
            name="echo",
            description="Echo back the provided message",
            handler=echo,
            input_schema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "Message to echo back"}
                },
                "required": ["message"],
            },
            category="general",
        ),
        ToolDefinition(
            name="list_files",
            description="List files in a directory",
            handler=list_files,
            input_schema=_path_schema(
                "Directory path to list",
                recursive={"type": "boolean", "description": "List recursively", "default": False},
            ),
            category="filesystem",
        ),
        ToolDefinition(
            name="read_file",
            description="Read file contents",
            handler=read_file,
            input_schema=_path_schema(
                "File path to read",
                encoding={"type": "string", "description": "File encoding", "default": "utf-8"},
            ),
            category="filesystem",
        ),
        ToolDefinition(
            name="write_file",
            description="Write content to a file",
            handler=write_file,
            input_schema={
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "File path to write"},
                    "content": {"type": "string", "description": "Content to write"},
                    "encoding": {
                        "type": "string",
                        "description": "File encoding",
                        "default": "utf-8",
                    },
                },
                "required": ["path", "content"],
            },
            category="filesystem",
        ),
        ToolDefinition(
            name="search_files",
            description="Search for files matching a glob pattern",
            handler=search_files,
            input_schema={
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Search pattern (glob)"},
                    "directory": {"type": "string", "description": "Directory to search in"},
                    "max_results": {
                        "type": "number",
                        "description": "Maximum results",
                        "default": DEFAULT_SEARCH_LIMIT,
                    },
                    "include_hidden": {
                        "type": "boolean",
                        "description": "Include hidden files",
                        "default": False,
                    },
                },
                "required": ["pattern"],
            },
            category="filesystem",
        ),
        ToolDefinition(
            name="create_directory",
            description="Create a directory (including parent directories)",
            handler=create_directory,
            input_schema=_path_schema(
                "Directory path to create",
                recursive={
                    "type": "boolean",
                    "description": "Create parent directories if needed",
                    "default": True,
                },
            ),
            category="filesystem",
        ),
        ToolDefinition(
            name="get_system_info",
            description="Get system information",
            handler=get_system_info,
            input_schema={
                "type": "object",
                "properties": {
                    "include": {
                        "type": "array",
                        "description": "Information to include (optional filter)",
                        "items": {"type": "string"},
                    }
                },
            },
            category="system",
        ),
        ToolDefinition(
            name="http_request",
            description="Make an HTTP request",
            handler=http_request,
            input_schema={
                "type": "object",
                "properties": {
                    "url": {"type": "string", "description": "URL to request"},
                    "method": {"type": "string", "description": "HTTP method", "default": "GET"},
                    "headers": {"type": "object", "description": "Request headers"},
                    "body": {"type": "string", "description": "Request body"},
                    "timeout": {
                        "type": "number",
                        "description": "Request timeout in milliseconds",
                        "default": DEFAULT_HTTP_TIMEOUT_MS,
                    },
                },
                "required": ["url"],
            },
            category="network",
        ),
    ]


def server_tools(server: MCPServer) -> list[ToolDefinition]:
    """Tools that report on the server they are registered with."""

    async def server_info(arguments: dict[str, Any]) -> dict[str, Any]:
        return server.server_info()

    async def server_metrics(arguments: dict[str, Any]) -> dict[str, Any]:
        return server.get_metrics().model_dump(by_alias=True)

    return [
        ToolDefinition(
            name="server_info",
            description="Get server information and status",
            handler=server_info,
            category="server",
        ),
        ToolDefinition(
            name="server_metrics",
            description="Get server performance metrics",
            handler=server_metrics,
            category="server",
        ),
    ]
