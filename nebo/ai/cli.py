"""Adapter for autonomous coding CLIs (claude, codex, gemini) run as subprocesses.

The CLI runs its own agent loop and executes tools itself (through the MCP
server it is pointed at), so handles_tools() is True and the runner only
forwards the tool calls it sees. Output is read line by line; claude emits
stream-json, anything that is not JSON is passed through as text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from typing import Any

from nebo.ai.base import DEFAULT_QUEUE_SIZE, EventStream
from nebo.ai.errors import ProviderError
from nebo.ai.types import (
    ChatRequest,
    EventType,
    Message,
    Role,
    StreamEvent,
    ToolCall,
    ToolResult,
    parse_tool_input,
)

logger = logging.getLogger(__name__)

_LINE_LIMIT = 1024 * 1024

_ROLE_HEADERS = {
    Role.SYSTEM: "[System]",
    Role.USER: "[User]",
    Role.ASSISTANT: "[Assistant]",
}

# line types that carry nothing for the caller
_SILENT_TYPES = {"content_block_start", "message_delta", "message_stop", "content_block_stop", "message_start"}


class CLIProvider:
    """Runs a CLI agent per request and normalizes its stdout into StreamEvents."""

    def __init__(self, name: str, command: str, args: list[str] | None = None,
                 queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.name = name
        self.command = command
        self.args = list(args or [])
        self._queue_size = queue_size

    def id(self) -> str:
        return self.name

    def profile_id(self) -> str:
        return ""

    def handles_tools(self) -> bool:
        return True

    def build_args(self, request: ChatRequest, prompt: str) -> list[str]:
        args = list(self.args)
        if request.model and self.name in ("claude-code", "codex-cli"):
            args += ["--model", request.model]
        if request.system and self.command == "claude":
            args += ["--system-prompt", request.system]
        args += ["--", prompt]
        return args

    async def stream(self, request: ChatRequest) -> EventStream:
        prompt = build_prompt_from_messages(request.messages)
        args = self.build_args(request, prompt)
        logger.info("[%s] Running: %s (prompt_len=%d)", self.name, self.command, len(prompt))

        try:
            proc = await asyncio.create_subprocess_exec(
                self.command, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_LINE_LIMIT,
            )
        except OSError as e:
            raise ProviderError(f"failed to start {self.command}: {e}") from e
        logger.debug("[%s] Command started, pid=%d", self.name, proc.pid)

        async def produce(out: EventStream) -> None:
            try:
                await self._pump(proc, out)
            finally:
                if proc.returncode is None:
                    logger.info("[%s] Killing pid=%d", self.name, proc.pid)
                    proc.kill()
                    await proc.wait()

        return EventStream(self._queue_size).start(produce)

    async def _pump(self, proc: asyncio.subprocess.Process, out: EventStream) -> None:
        stderr_task = asyncio.create_task(proc.stderr.read())
        parser = StreamJsonParser()

        try:
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                line = raw.decode(errors="replace").rstrip("\r\n")
                for event in parser.feed(line):
                    await out.put(event)
                    if event.type == EventType.ERROR:
                        stderr_task.cancel()
                        return
        except BaseException:
            stderr_task.cancel()
            raise

        stderr = (await stderr_task).decode(errors="replace").strip()
        code = await proc.wait()
        logger.debug("[%s] Command finished, exit=%d", self.name, code)

        if code != 0:
            message = f"{self.command} exited with code {code}"
            if stderr:
                message = f"{message}: {stderr}"
            logger.error("[%s] %s", self.name, message)
            await out.put(StreamEvent(type=EventType.ERROR, error=ProviderError(message, raw=stderr)))
            return

        if stderr:
            logger.warning("[%s] stderr: %s", self.name, stderr)
        await out.put(StreamEvent(type=EventType.DONE))


class StreamJsonParser:
    """Turns claude stream-json lines into StreamEvents.

    Tool-use blocks are held until their content_block_stop so the call is
    emitted once with its full input. A "result" line only marks completion;
    the adapter emits the terminal done itself after the process exits.
    """

    def __init__(self) -> None:
        self._tool: dict[str, Any] | None = None
        self.completed = False

    def feed(self, line: str) -> list[StreamEvent]:
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return [StreamEvent(type=EventType.TEXT, text=line + "\n")]
        if not isinstance(data, dict):
            return [StreamEvent(type=EventType.TEXT, text=line + "\n")]

        if isinstance(data.get("event"), dict):
            data = data["event"]
        event_type = data.get("type", "")

        if event_type == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool = {"id": block.get("id", ""), "name": block.get("name", ""), "input": []}
            return []

        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "input_json_delta":
                if self._tool is not None:
                    self._tool["input"].append(delta.get("partial_json", ""))
                return []
            if delta_type == "text_delta":
                return _text(delta.get("text", ""))
            if delta_type == "thinking_delta":
                text = delta.get("thinking", "")
                return [StreamEvent(type=EventType.THINKING, text=text)] if text else []
            return []

        if event_type == "content_block_stop":
            if self._tool is None:
                return []
            tool, self._tool = self._tool, None
            call = ToolCall(id=tool["id"], name=tool["name"], input=parse_tool_input("".join(tool["input"])))
            return [StreamEvent(type=EventType.TOOL_CALL, tool_call=call)]

        if event_type in _SILENT_TYPES:
            return []

        if event_type == "result":
            if data.get("subtype") in ("success", "error_max_turns"):
                self.completed = True
                return []
            result = data.get("result")
            return _text(result) if isinstance(result, str) else []

        if event_type == "system":
            msg = data.get("message")
            return _text(f"[system] {msg}\n") if isinstance(msg, str) else []

        if event_type == "assistant":
            return self._assistant_message(data.get("message"))

        if event_type == "user":
            return self._user_message(data.get("message"))

        if event_type == "error":
            return [StreamEvent(type=EventType.ERROR, error=ProviderError(str(data.get("error")), raw=line))]

        if event_type == "task":
            if data.get("status"):
                return _text(f"[Task {data.get('task_id', '')}] {data['status']}: {data.get('description', '')}\n")
            return []

        if event_type in ("agent_output", "subagent"):
            if data.get("output"):
                return _text(f"[Agent {data.get('agent_id', '')}] {data['output']}\n")
            return []

        return []

    def _assistant_message(self, message: Any) -> list[StreamEvent]:
        if not isinstance(message, dict):
            return []
        texts: list[str] = []
        calls: list[ToolCall] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "tool_use":
                calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    input=block.get("input") if isinstance(block.get("input"), dict) else {},
                ))
        msg = Message(role=Role.ASSISTANT, content="\n".join(texts), tool_calls=calls)
        return [StreamEvent(type=EventType.MESSAGE, message=msg, text=msg.content)]

    def _user_message(self, message: Any) -> list[StreamEvent]:
        if not isinstance(message, dict):
            return []
        texts: list[str] = []
        results: list[ToolResult] = []
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and isinstance(block.get("text"), str):
                texts.append(block["text"])
            elif block.get("type") == "tool_result":
                results.append(ToolResult(
                    tool_call_id=block.get("tool_use_id", ""),
                    content=extract_tool_result_content(block.get("content")),
                    is_error=bool(block.get("is_error", False)),
                ))
        role = Role.TOOL if results else Role.USER
        msg = Message(role=role, content="\n".join(texts), tool_results=results)
        if msg.content or msg.tool_results:
            return [StreamEvent(type=EventType.MESSAGE, message=msg)]
        return []


def _text(text: str) -> list[StreamEvent]:
    return [StreamEvent(type=EventType.TEXT, text=text)] if text else []


# ------------------------------------------------------------------
# Presets
# ------------------------------------------------------------------


def claude_code_provider(max_turns: int = 0) -> CLIProvider:
    """claude in print mode running its own built-in tools; turns come back as MESSAGE events."""
    args = [
        "--print",
        "--verbose",  # required for stream-json with --print
        "--output-format", "stream-json",
        "--include-partial-messages",
        "--dangerously-skip-permissions",
    ]
    if max_turns > 0:
        args += ["--max-turns", str(max_turns)]
    return CLIProvider("claude-code", "claude", args)


def gemini_cli_provider() -> CLIProvider:
    return CLIProvider("gemini-cli", "gemini", [])


def codex_cli_provider() -> CLIProvider:
    return CLIProvider("codex-cli", "codex", ["--full-auto"])


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def extract_tool_result_content(value: Any) -> str:
    """Flatten a tool_result content field (string, text blocks, or anything else)."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "\n".join(
            block["text"] for block in value
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def build_prompt_from_messages(messages: list[Message]) -> str:
    """Render a session as a single text prompt for a CLI agent.

    Consecutive messages with the same role are merged under one header;
    tool results are shown to the CLI as user text. Content already present
    in the pending block is not repeated.
    """
    parts: list[str] = []
    last_role = ""
    pending = ""

    def flush() -> None:
        if pending and last_role in _ROLE_HEADERS:
            parts.append(f"{_ROLE_HEADERS[last_role]}\n{pending}")

    for msg in messages:
        role = Role.USER if msg.role == Role.TOOL else msg.role
        content = msg.content.strip()
        for tr in msg.tool_results:
            if tr.content:
                if content:
                    content += "\n"
                content += f"[Tool Result: {tr.tool_call_id}]\n{tr.content}"
        if not content:
            continue

        if role == last_role:
            if content not in pending:
                pending += "\n\n" + content
        else:
            flush()
            last_role = role
            pending = content
    flush()

    return "\n\n".join(parts)


def check_cli_available(command: str) -> bool:
    return shutil.which(command) is not None


def get_available_cli_providers() -> list[str]:
    return [cli for cli in ("claude", "gemini", "codex") if check_cli_available(cli)]
