"""Summary text written to the session when history is compacted.

The summary lists what the user asked for and appends recent tool failures
so the model does not retry a command that already failed before the
compaction erased it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from nebo.ai.types import Message, Role

MAX_TOOL_FAILURES = 8
MAX_TOOL_FAILURE_CHARS = 240
MAX_REQUEST_CHARS = 200

SUMMARY_HEADER = "[Previous conversation summary]\n"

_WHITESPACE = re.compile(r"[ \t\r\n]+")
_EXIT_CODE = re.compile(r"exit code[ :=]*(\d+)", re.IGNORECASE)
_EXITED_WITH_CODE = re.compile(r"exited with code\D*(\d+)", re.IGNORECASE)


@dataclass
class ToolFailure:
    tool_call_id: str
    tool_name: str
    summary: str
    meta: str = ""  # e.g. "exitCode=1 status=timeout"


def _tool_name(messages: list[Message], tool_call_id: str) -> str:
    for msg in messages:
        if msg.role != Role.ASSISTANT:
            continue
        for tc in msg.tool_calls:
            if tc.id == tool_call_id:
                return tc.name
    return ""


def normalize_failure_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    if max_chars <= 3:
        return text[:max_chars]
    return text[:max_chars - 3] + "..."


def extract_failure_meta(content: str) -> str:
    parts: list[str] = []
    lower = content.lower()

    if "exit code" in lower:
        m = _EXIT_CODE.search(content)
        if m:
            parts.append(f"exitCode={m.group(1)}")
    elif "exited with code" in lower:
        m = _EXITED_WITH_CODE.search(content)
        if m:
            parts.append(f"exitCode={m.group(1)}")

    if "command timed out" in lower:
        parts.append("status=timeout")
    elif "permission denied" in lower:
        parts.append("status=permission_denied")
    elif "not found" in lower or "enoent" in lower:
        parts.append("status=not_found")

    return " ".join(parts)


def collect_tool_failures(messages: list[Message]) -> list[ToolFailure]:
    """Error results in order, one per call id."""
    failures: list[ToolFailure] = []
    seen: set[str] = set()
    for msg in messages:
        if msg.role != Role.TOOL:
            continue
        for tr in msg.tool_results:
            if not tr.is_error or not tr.tool_call_id or tr.tool_call_id in seen:
                continue
            seen.add(tr.tool_call_id)
            summary = normalize_failure_text(tr.content) or "failed (no output)"
            failures.append(ToolFailure(
                tool_call_id=tr.tool_call_id,
                tool_name=_tool_name(messages, tr.tool_call_id) or "tool",
                summary=truncate_text(summary, MAX_TOOL_FAILURE_CHARS),
                meta=extract_failure_meta(tr.content),
            ))
    return failures


def format_tool_failures_section(failures: list[ToolFailure]) -> str:
    if not failures:
        return ""
    lines = ["\n\n## Tool Failures\n"]
    for f in failures[:MAX_TOOL_FAILURES]:
        if f.meta:
            lines.append(f"- {f.tool_name} ({f.meta}): {f.summary}\n")
        else:
            lines.append(f"- {f.tool_name}: {f.summary}\n")
    if len(failures) > MAX_TOOL_FAILURES:
        lines.append(f"- ...and {len(failures) - MAX_TOOL_FAILURES} more\n")
    return "".join(lines)


def enhanced_summary(messages: list[Message], base_summary: str) -> str:
    return base_summary + format_tool_failures_section(collect_tool_failures(messages))


def generate_summary(messages: list[Message]) -> str:
    lines = [SUMMARY_HEADER]
    for msg in messages:
        if msg.role == Role.USER and msg.content:
            content = msg.content
            if len(content) > MAX_REQUEST_CHARS:
                content = content[:MAX_REQUEST_CHARS] + "..."
            lines.append(f"- User request: {content}\n")
    return enhanced_summary(messages, "".join(lines))
