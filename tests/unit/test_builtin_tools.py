"""Unit tests for the built-in tools.

Network tests only exercise failure paths that never leave the process.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from universal_mcp_server.builtin_tools import (
    builtin_tools,
    create_directory,
    echo,
    get_system_info,
    http_request,
    list_files,
    read_file,
    search_files,
    text_result,
    write_file,
)


def text_of(result: dict[str, Any]) -> str:
    return result["content"][0]["text"]


class TestCatalog:
    """Tests for the tool set."""

    def test_names(self) -> None:
        names = [tool.name for tool in builtin_tools()]
        assert names == [
            "echo",
            "list_files",
            "read_file",
            "write_file",
            "search_files",
            "create_directory",
            "get_system_info",
            "http_request",
        ]

    def test_no_destructive_tools(self) -> None:
        names = {tool.name for tool in builtin_tools()}
        assert "execute_command" not in names
        assert "delete_file" not in names

    def test_schemas_are_objects(self) -> None:
        for tool in builtin_tools():
            assert tool.input_schema["type"] == "object"

    def test_fresh_definitions_each_call(self) -> None:
        assert builtin_tools()[0] is not builtin_tools()[0]


class TestGeneral:
    """Tests for echo and get_system_info."""

    @pytest.mark.asyncio
    async def test_echo(self) -> None:
        result = await echo({"message": "hi"})
        assert result == text_result("Echo: hi")
        assert result["isError"] is False

    @pytest.mark.asyncio
    async def test_system_info(self) -> None:
        info = json.loads(text_of(await get_system_info({})))
        assert {"platform", "arch", "pythonVersion", "cpus"} <= set(info)

    @pytest.mark.asyncio
    async def test_system_info_filter(self) -> None:
        info = json.loads(text_of(await get_system_info({"include": ["platform"]})))
        assert list(info) == ["platform"]


class TestFilesystem:
    """Tests for the filesystem tools against a temporary directory."""

    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path: Path) -> None:
        path = tmp_path / "note.txt"

        written = await write_file({"path": str(path), "content": "héllo"})
        read = await read_file({"path": str(path)})

        assert written["isError"] is False
        assert "5 characters" in text_of(written)
        assert text_of(read) == "héllo"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, tmp_path: Path) -> None:
        result = await read_file({"path": str(tmp_path / "missing.txt")})

        assert result["isError"] is True
        assert text_of(result).startswith("Error reading file")

    @pytest.mark.asyncio
    async def test_write_requires_content(self, tmp_path: Path) -> None:
        result = await write_file({"path": str(tmp_path / "x")})
        assert result["isError"] is True

    @pytest.mark.asyncio
    async def test_list_files(self, tmp_path: Path) -> None:
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_text("b")

        flat = json.loads(text_of(await list_files({"path": str(tmp_path)})))
        deep = json.loads(text_of(await list_files({"path": str(tmp_path), "recursive": True})))

        assert flat["count"] == 2
        assert deep["files"] == [str(tmp_path / "a.txt"), str(tmp_path / "sub" / "b.txt")]

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, tmp_path: Path) -> None:
        result = await list_files({"path": str(tmp_path / "nope")})
        assert result["isError"] is True

    @pytest.mark.asyncio
    async def test_search_files(self, tmp_path: Path) -> None:
        (tmp_path / "a.py").write_text("")
        (tmp_path / "b.py").write_text("")
        (tmp_path / "c.txt").write_text("")
        (tmp_path / ".hidden.py").write_text("")

        result = json.loads(
            text_of(await search_files({"pattern": "*.py", "directory": str(tmp_path)}))
        )

        assert result["files"] == ["a.py", "b.py"]
        assert result["count"] == 2

    @pytest.mark.asyncio
    async def test_search_files_hidden_and_limit(self, tmp_path: Path) -> None:
        for name in ("a.py", "b.py", ".c.py"):
            (tmp_path / name).write_text("")

        result = json.loads(
            text_of(
                await search_files(
                    {
                        "pattern": "*.py",
                        "directory": str(tmp_path),
                        "include_hidden": True,
                        "max_results": 2,
                    }
                )
            )
        )

        assert result["count"] == 3
        assert result["files"] == [".c.py", "a.py"]

    @pytest.mark.asyncio
    async def test_search_requires_pattern(self) -> None:
        result = await search_files({})
        assert result["isError"] is True

    @pytest.mark.asyncio
    async def test_create_directory(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b"

        result = await create_directory({"path": str(target)})

        assert result["isError"] is False
        assert target.is_dir()

    @pytest.mark.asyncio
    async def test_create_directory_without_parents(self, tmp_path: Path) -> None:
        result = await create_directory({"path": str(tmp_path / "x" / "y"), "recursive": False})
        assert result["isError"] is True


class TestNetwork:
    """Tests for http_request failure handling."""

    @pytest.mark.asyncio
    async def test_url_required(self) -> None:
        result = await http_request({})
        assert result["isError"] is True

    @pytest.mark.asyncio
    async def test_unsupported_scheme(self) -> None:
        result = await http_request({"url": "ftp://example.invalid/file"})

        assert result["isError"] is True
        assert text_of(result).startswith("HTTP request failed")
