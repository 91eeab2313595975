"""Tests for nebo/builtin_tools.py -- workspace file and shell tools."""

import shlex
import sys

import pytest

from nebo.ai.types import ToolCall
from nebo.builtin_tools import (
    ToolInputError,
    _validate_path,
    read_file,
    register_builtin_tools,
    run_shell,
    write_file,
)
from nebo.runner.file_tracker import FileAccessTracker
from nebo.tools import LocalToolRegistry

PY = shlex.quote(sys.executable)


def _text(result: dict) -> str:
    return result["content"][0]["text"]


class TestValidatePath:
    def test_relative_inside(self, tmp_path):
        assert _validate_path("sub/a.txt", str(tmp_path)) == (tmp_path / "sub" / "a.txt").resolve()

    def test_escape_rejected(self, tmp_path):
        with pytest.raises(ToolInputError, match="outside workspace"):
            _validate_path("../secret", str(tmp_path))

    def test_absolute_outside_rejected(self, tmp_path):
        with pytest.raises(ToolInputError):
            _validate_path("/etc/passwd", str(tmp_path))


class TestFileTool:
    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        await write_file("notes/a.txt", "one\ntwo\nthree\n", str(tmp_path))
        assert (tmp_path / "notes" / "a.txt").read_text() == "one\ntwo\nthree\n"
        assert _text(await read_file("notes/a.txt", str(tmp_path))) == "one\ntwo\nthree\n"

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, tmp_path):
        (tmp_path / "a.txt").write_text("one\ntwo\nthree\n")
        assert _text(await read_file("a.txt", str(tmp_path), offset=1, limit=1)) == "two\n"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ToolInputError, match="File not found"):
            await read_file("nope.txt", str(tmp_path))

    @pytest.mark.asyncio
    async def test_empty_file(self, tmp_path):
        (tmp_path / "empty.txt").write_text("")
        assert _text(await read_file("empty.txt", str(tmp_path))) == "(empty file)"


class TestShellTool:
    @pytest.mark.asyncio
    async def test_stdout(self, tmp_path):
        result = await run_shell(f"{PY} -c \"print('hello')\"", str(tmp_path))
        assert _text(result) == "hello\n"

    @pytest.mark.asyncio
    async def test_stderr_and_exit_code(self, tmp_path):
        cmd = f"{PY} -c \"import sys; sys.stderr.write('bad'); sys.exit(3)\""
        text = _text(await run_shell(cmd, str(tmp_path)))
        assert "STDERR:\nbad" in text
        assert text.endswith("Exit code: 3")

    @pytest.mark.asyncio
    async def test_no_output(self, tmp_path):
        assert _text(await run_shell(f"{PY} -c \"pass\"", str(tmp_path))) == "(no output)"

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, tmp_path):
        workspace = tmp_path / "ws"
        await run_shell(f"{PY} -c \"open('made.txt', 'w').write('x')\"", str(workspace))
        assert (workspace / "made.txt").exists()

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        with pytest.raises(ToolInputError, match="timed out after 1s"):
            await run_shell(f"{PY} -c \"import time; time.sleep(10)\"", str(tmp_path), timeout=1)


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registered_tools(self, settings):
        registry = LocalToolRegistry(FileAccessTracker(), settings.workspace_dir)
        register_builtin_tools(registry, settings)
        assert [t.name for t in registry.list()] == ["file", "shell"]

    @pytest.mark.asyncio
    async def test_file_roundtrip_through_registry(self, settings):
        tracker = FileAccessTracker()
        registry = LocalToolRegistry(tracker, settings.workspace_dir)
        register_builtin_tools(registry, settings)

        write = ToolCall(id="c1", name="file", input={"action": "write", "path": "a.txt", "content": "hi"})
        assert not (await registry.execute(write)).is_error
        read = await registry.execute(ToolCall(id="c2", name="file", input={"action": "read", "path": "a.txt"}))
        assert read.content == "hi"
        assert len(tracker.snapshot()) == 1

    @pytest.mark.asyncio
    async def test_shell_timeout_is_error_result(self, settings):
        registry = LocalToolRegistry()
        register_builtin_tools(registry, settings)
        call = ToolCall(id="c1", name="shell", input={"command": f"{PY} -c \"import time; time.sleep(10)\"", "timeout": 1})
        result = await registry.execute(call)
        assert result.is_error
        assert "timed out" in result.content

    @pytest.mark.asyncio
    async def test_unknown_file_action(self, settings):
        registry = LocalToolRegistry()
        register_builtin_tools(registry, settings)
        result = await registry.execute(ToolCall(id="c1", name="file", input={"action": "delete", "path": "a"}))
        assert result.is_error
        assert "Unknown file action" in result.content
