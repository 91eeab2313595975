"""Tool registry consumed by the runner.

Provides:
- ToolRegistry protocol: list() and execute(call, session_id)
- LocalToolRegistry: registers async handlers, dispatches calls, and
  records file paths touched by file tools for context recovery
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from nebo.ai.types import ToolCall, ToolDefinition, ToolResult

if TYPE_CHECKING:
    from nebo.runner.file_tracker import FileAccessTracker

logger = logging.getLogger(__name__)

_PATH_KEYS = ("path", "file_path", "file")


class ToolRegistry(Protocol):
    def list(self) -> list[ToolDefinition]: ...

    async def execute(self, call: ToolCall, session_id: str = "") -> ToolResult: ...


def _result_text(result: Any) -> str:
    """Plain text from a handler result: a string or an MCP {"content": [{"text": ...}]} dict."""
    if isinstance(result, str):
        return result
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return "".join(
            part.get("text", "") for part in result["content"] if isinstance(part, dict)
        )
    return str(result)


def touched_file(call: ToolCall) -> str:
    """The file a call reads or writes, or "" if it is not a file operation."""
    args = call.input
    if call.name != "file" and not (call.name == "system" and args.get("resource") == "file"):
        return ""
    for key in _PATH_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


class LocalToolRegistry:
    """Registers tool handlers and executes calls from the runner.

    Each handler is an async callable taking the call's input as **kwargs
    and returning text or an MCP-format dict. Unknown tools and handler
    exceptions come back as is_error results, never as raised errors.
    """

    def __init__(self, file_tracker: FileAccessTracker | None = None, workspace_dir: str = "") -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._definitions: dict[str, ToolDefinition] = {}
        self._files = file_tracker
        self._workspace = workspace_dir

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any], description: str = "") -> None:
        """Register a tool handler with its JSON input schema."""
        self._handlers[name] = handler
        self._definitions[name] = ToolDefinition(
            name=name,
            description=description or schema.get("description", ""),
            input_schema=schema,
        )

    def list(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    async def execute(self, call: ToolCall, session_id: str = "") -> ToolResult:
        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult(tool_call_id=call.id, content=f"Unknown tool: {call.name}", is_error=True)
        try:
            result = await handler(**call.input)
        except Exception as e:
            logger.exception("Tool execution error for %s", call.name)
            return ToolResult(tool_call_id=call.id, content=f"Tool error: {e}", is_error=True)

        path = touched_file(call)
        if path and self._files is not None:
            if self._workspace and not Path(path).is_absolute():
                path = str(Path(self._workspace) / path)
            self._files.track(path, session_id)
        return ToolResult(tool_call_id=call.id, content=_result_text(result))
