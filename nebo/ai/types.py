"""Shared data models for providers, the context manager and the runner.

Messages are plain dataclasses. Anything that rewrites a message (pruning,
micro-compaction, steering injection) builds a new instance with
dataclasses.replace() so the caller's copy is never mutated.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class EventType(StrEnum):
    TEXT = "text"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    ERROR = "error"
    DONE = "done"
    MESSAGE = "message"  # full message from a CLI provider's internal loop


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


@dataclass
class ToolResult:
    """Outcome of a tool call, keyed back to the call by tool_call_id."""

    tool_call_id: str
    content: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"tool_call_id": self.tool_call_id, "content": self.content, "is_error": self.is_error}


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class Message:
    """A single message in a session log."""

    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    session_id: str = ""

    def is_empty(self) -> bool:
        return not self.content and not self.tool_calls and not self.tool_results


@dataclass
class StreamEvent:
    """A single normalized event from a provider stream."""

    type: EventType
    text: str = ""
    tool_call: ToolCall | None = None
    error: Exception | None = None
    message: Message | None = None


@dataclass
class ChatRequest:
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    max_tokens: int = 0
    temperature: float = 0.0
    system: str = ""
    model: str = ""  # overrides the provider default when set
    enable_thinking: bool = False


@dataclass
class RateLimitInfo:
    """Token budget windows reported by a gateway in response headers."""

    session_limit_tokens: int = 0
    session_remaining_tokens: int = 0
    session_reset_at: datetime | None = None
    weekly_limit_tokens: int = 0
    weekly_remaining_tokens: int = 0
    weekly_reset_at: datetime | None = None
    updated_at: datetime | None = None


# ------------------------------------------------------------------
# Serialization helpers
# ------------------------------------------------------------------


def serialize_tool_calls(calls: list[ToolCall]) -> str:
    if not calls:
        return ""
    return json.dumps([c.to_dict() for c in calls], separators=(",", ":"))


def serialize_tool_results(results: list[ToolResult]) -> str:
    if not results:
        return ""
    return json.dumps([r.to_dict() for r in results], separators=(",", ":"))


def parse_tool_input(raw: str) -> dict[str, Any]:
    """Decode accumulated tool-argument JSON, tolerating empty or bad input."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def tool_id_index(messages: list[Message]) -> tuple[set[str], set[str]]:
    """Return (issued call ids, responded call ids) for orphan filtering.

    A call is sendable when its id is in both sets; a result is sendable
    when its tool_call_id is in both sets.
    """
    issued: set[str] = set()
    responded: set[str] = set()
    for msg in messages:
        if msg.role == Role.ASSISTANT:
            issued.update(tc.id for tc in msg.tool_calls)
        if msg.role == Role.TOOL:
            responded.update(tr.tool_call_id for tr in msg.tool_results)
    return issued, responded
