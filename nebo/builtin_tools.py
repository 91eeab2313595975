"""Built-in tools: file (read/write) and shell (exec).

Both use the resource/action argument shape the context manager recognizes
when summarizing and trimming old results. Paths are confined to the
workspace directory. Handlers return MCP-format responses.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from nebo.config import Settings
from nebo.tools import LocalToolRegistry

logger = logging.getLogger(__name__)

_MAX_SHELL_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024
_MAX_FILE_SIZE = 1 * 1024 * 1024


class ToolInputError(ValueError):
    """Bad tool arguments; surfaced to the model as an error result."""


def _mcp_response(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}]}


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve path under workspace_dir; raise ToolInputError if it escapes."""
    workspace = Path(workspace_dir).resolve()
    path = Path(path_str)
    target = path.resolve() if path.is_absolute() else (workspace / path).resolve()
    if not target.is_relative_to(workspace):
        raise ToolInputError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def read_file(path: str, workspace_dir: str, offset: int = 0, limit: int = 0) -> dict[str, Any]:
    target = _validate_path(path, workspace_dir)
    if not target.is_file():
        raise ToolInputError(f"File not found: {path}")
    size = target.stat().st_size
    if size > _MAX_FILE_SIZE and not limit:
        raise ToolInputError(
            f"File too large: {size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes). Use offset/limit to read portions."
        )
    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    if offset > 0 or limit > 0:
        lines = content.splitlines(keepends=True)
        lines = lines[offset:] if offset > 0 else lines
        lines = lines[:limit] if limit > 0 else lines
        content = "".join(lines)
    return _mcp_response(content or "(empty file)")


async def write_file(path: str, content: str, workspace_dir: str) -> dict[str, Any]:
    target = _validate_path(path, workspace_dir)
    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return _mcp_response(f"File written successfully: {target}\nSize: {len(content):,} bytes")


async def run_shell(command: str, workspace_dir: str, timeout: int = 30) -> dict[str, Any]:
    """Run a command in the workspace. Timeouts and nonzero exits are reported in the text."""
    effective_timeout = max(1, min(timeout, _MAX_SHELL_TIMEOUT))
    workspace = Path(workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(workspace),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolInputError(f"Command timed out after {effective_timeout}s.\nCommand: {command}")

    stdout_text = stdout.decode("utf-8", errors="replace")
    stderr_text = stderr.decode("utf-8", errors="replace")
    if len(stdout_text) > _MAX_OUTPUT_CHARS:
        stdout_text = stdout_text[:_MAX_OUTPUT_CHARS] + "\n... [output truncated at 100KB]"
    if len(stderr_text) > _MAX_OUTPUT_CHARS:
        stderr_text = stderr_text[:_MAX_OUTPUT_CHARS] + "\n... [stderr truncated at 100KB]"

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    return _mcp_response("\n".join(parts) if parts else "(no output)")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read or write a file in the workspace directory",
    "properties": {
        "action": {"type": "string", "enum": ["read", "write"]},
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write (action: write)"},
        "offset": {"type": "integer", "description": "Line offset to start reading from (0-indexed)", "default": 0},
        "limit": {"type": "integer", "description": "Number of lines to read (0 = all)", "default": 0},
    },
    "required": ["action", "path"],
}

_SHELL_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "resource": {"type": "string", "enum": ["bash"], "default": "bash"},
        "action": {"type": "string", "enum": ["exec"], "default": "exec"},
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(registry: LocalToolRegistry, settings: Settings) -> None:
    """Register file and shell with closures that bind the workspace directory."""
    workspace = settings.workspace_dir

    async def _file(action: str, path: str, content: str = "", offset: int = 0, limit: int = 0) -> dict[str, Any]:
        if action == "read":
            return await read_file(path, workspace, offset, limit)
        if action == "write":
            return await write_file(path, content, workspace)
        raise ToolInputError(f"Unknown file action: {action}")

    async def _shell(command: str, timeout: int = 30, resource: str = "bash", action: str = "exec") -> dict[str, Any]:
        return await run_shell(command, workspace, timeout)

    registry.register("file", _file, _FILE_SCHEMA)
    registry.register("shell", _shell, _SHELL_SCHEMA)
