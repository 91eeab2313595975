"""Token budgeting for the message window: estimation, pruning, micro-compaction.

All functions take the iteration's message list and return a new list.
Rewritten messages are fresh copies; the caller's instances are never
touched, so nothing here can leak into the persisted session.

Two mechanisms run every iteration:

* micro_compact() trims old results of high-volume tools (file reads,
  shell, web) down to a one-line marker and strips images the model has
  already seen. It is a no-op unless the savings clear a floor.
* prune_context() is the threshold-driven two-stage pruner. Above the soft
  ratio, large unprotected tool results keep only head and tail; above the
  hard ratio they are replaced by a placeholder. The last N assistant turns
  and everything after them are protected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any

from nebo.ai.types import Message, Role, ToolResult, serialize_tool_calls, serialize_tool_results
from nebo.config import PruningConfig

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4

MICRO_COMPACT_MIN_SAVINGS = 5000  # tokens
MICRO_COMPACT_PROACTIVE_MIN_SAVINGS = 2000  # tokens, below the warning threshold
MICRO_COMPACT_PROACTIVE_AGE = 8  # messages from the end
MICRO_COMPACT_KEEP_RECENT = 3
MICRO_COMPACT_MIN_RESULT_TOKENS = 10

# "system" covers file and shell actions; "file"/"shell" are older tool names
MICRO_COMPACT_TOOLS = frozenset({"system", "web", "file", "shell"})

HARD_CLEAR_MIN_CHARS = 200
TRIMMED_PREFIX = "[trimmed:"
TRIMMED_INPUT: dict[str, Any] = {"trimmed": True}
IMAGE_PLACEHOLDER = "[image]"


@dataclass
class ToolCallInfo:
    """What pruning needs to know about the call behind a result."""

    name: str
    input: dict[str, Any]
    summary: str


def summarize_tool_call(name: str, tool_input: dict[str, Any]) -> str:
    """name(action: X, url: U, profile: P, resource: R), or just name.

    Only these keys are rendered and only when "action" is present; other
    argument shapes collapse to the tool name.
    """
    action = tool_input.get("action")
    if not isinstance(action, str):
        return name
    summary = f"{name}(action: {action}"
    for key in ("url", "profile", "resource"):
        value = tool_input.get(key)
        if isinstance(value, str):
            summary += f", {key}: {value}"
    return summary + ")"


def build_tool_call_index(messages: list[Message]) -> dict[str, ToolCallInfo]:
    index: dict[str, ToolCallInfo] = {}
    for msg in messages:
        for tc in msg.tool_calls:
            tool_input = tc.input if isinstance(tc.input, dict) else {}
            index[tc.id] = ToolCallInfo(tc.name, tool_input, summarize_tool_call(tc.name, tool_input))
    return index


def trim_priority(info: ToolCallInfo) -> int:
    """Lower trims first: file reads 0, shell 1, web 2, anything else 3."""
    resource = info.input.get("resource")
    action = info.input.get("action")
    if (info.name == "system" and resource == "file" and action == "read") or (
        info.name == "file" and action == "read"
    ):
        return 0
    if (info.name == "system" and resource == "shell") or info.name == "shell":
        return 1
    if info.name == "web":
        return 2
    return 3


# ------------------------------------------------------------------
# Estimation
# ------------------------------------------------------------------


def estimate_message_chars(msg: Message) -> int:
    return len(msg.content) + len(serialize_tool_calls(msg.tool_calls)) + len(serialize_tool_results(msg.tool_results))


def estimate_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_chars(m) // CHARS_PER_TOKEN for m in messages)


# ------------------------------------------------------------------
# Micro-compaction
# ------------------------------------------------------------------


@dataclass
class _Candidate:
    tool_call_id: str
    msg_idx: int
    tokens: int
    info: ToolCallInfo


def _acknowledged_user_indexes(messages: list[Message]) -> set[int]:
    """User messages that an assistant message has since replied to."""
    acknowledged: set[int] = set()
    pending: list[int] = []
    for i, msg in enumerate(messages):
        if msg.role == Role.USER:
            pending.append(i)
        elif msg.role == Role.ASSISTANT and pending:
            acknowledged.update(pending)
            pending = []
    return acknowledged


def micro_compact(messages: list[Message], warning_threshold: int) -> tuple[list[Message], int]:
    """Trim old high-volume tool results and acknowledged images.

    Returns (messages, estimated tokens saved). The most recent
    MICRO_COMPACT_KEEP_RECENT candidates are never trimmed. Below the
    warning threshold only results older than MICRO_COMPACT_PROACTIVE_AGE
    messages are considered, against a lower savings floor.
    """
    if not messages:
        return messages, 0

    above_warning = estimate_tokens(messages) >= warning_threshold
    index = build_tool_call_index(messages)

    candidates: list[_Candidate] = []
    for i, msg in enumerate(messages):
        for tr in msg.tool_results:
            info = index.get(tr.tool_call_id)
            if info is None or info.summary.split("(", 1)[0] not in MICRO_COMPACT_TOOLS:
                continue
            if tr.content.startswith(TRIMMED_PREFIX):
                continue
            tokens = len(tr.content) // CHARS_PER_TOKEN
            if tokens < MICRO_COMPACT_MIN_RESULT_TOKENS:
                continue
            candidates.append(_Candidate(tr.tool_call_id, i, tokens, info))

    if not above_warning:
        candidates = [c for c in candidates if len(messages) - c.msg_idx > MICRO_COMPACT_PROACTIVE_AGE]

    # candidates are in chronological order; the newest K are never trimmed
    protected = {c.tool_call_id for c in candidates[-MICRO_COMPACT_KEEP_RECENT:]}
    candidates = sorted(
        (c for c in candidates if c.tool_call_id not in protected),
        key=lambda c: (trim_priority(c.info), c.msg_idx),
    )

    to_trim: dict[str, str] = {}
    savings = 0
    if candidates:
        for c in candidates:
            to_trim[c.tool_call_id] = c.info.summary
            savings += c.tokens
        floor = MICRO_COMPACT_MIN_SAVINGS if above_warning else MICRO_COMPACT_PROACTIVE_MIN_SAVINGS
        if savings < floor:
            to_trim, savings = {}, 0

    acknowledged = _acknowledged_user_indexes(messages)
    result = list(messages)
    trim_count = 0
    image_saved = 0

    for i, msg in enumerate(result):
        if to_trim and msg.tool_results and any(tr.tool_call_id in to_trim for tr in msg.tool_results):
            results = []
            for tr in msg.tool_results:
                if tr.tool_call_id in to_trim:
                    trim_count += 1
                    tr = replace(tr, content=f"[trimmed: {to_trim[tr.tool_call_id]}]")
                results.append(tr)
            msg = replace(msg, tool_results=results)

        if to_trim and msg.role == Role.ASSISTANT and any(tc.id in to_trim for tc in msg.tool_calls):
            msg = replace(msg, tool_calls=[
                replace(tc, input=dict(TRIMMED_INPUT)) if tc.id in to_trim else tc
                for tc in msg.tool_calls
            ])

        if msg.role == Role.USER and i in acknowledged and "data:image/" in msg.content:
            image_saved += (len(msg.content) - len(IMAGE_PLACEHOLDER)) // CHARS_PER_TOKEN
            msg = replace(msg, content=IMAGE_PLACEHOLDER)

        result[i] = msg

    saved = savings + image_saved
    if trim_count or image_saved:
        logger.info(
            "Micro-compacted: saved ~%d tokens (%d tool results trimmed, %d image tokens stripped)",
            saved, trim_count, image_saved,
        )
    return result, saved


# ------------------------------------------------------------------
# Two-stage pruning
# ------------------------------------------------------------------


def identify_protected(messages: list[Message], keep_last_assistant: int) -> set[int]:
    """Indexes from the Nth-from-last assistant message to the end.

    With no assistant message nothing is protected.
    """
    if keep_last_assistant <= 0:
        return set()
    cutoff = len(messages)
    count = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == Role.ASSISTANT:
            count += 1
            cutoff = i
            if count >= keep_last_assistant:
                break
    return set(range(cutoff, len(messages)))


def _result_header(tr: ToolResult, index: dict[str, ToolCallInfo]) -> str:
    status = "failed" if tr.is_error else "succeeded"
    info = index.get(tr.tool_call_id)
    if info is None:
        return f"[{status}]"
    return f"[{info.summary} — {status}]"


def soft_trim_tool_results(
    messages: list[Message],
    protected: set[int],
    index: dict[str, ToolCallInfo],
    total_chars: int,
    cfg: PruningConfig,
) -> tuple[list[Message], int, int]:
    """Keep head and tail of large unprotected results. Returns (messages, count, total_chars)."""
    trimmed = 0
    result = list(messages)
    for i, msg in enumerate(result):
        if i in protected or not msg.tool_results:
            continue
        results = []
        for tr in msg.tool_results:
            if len(tr.content) > cfg.soft_trim_max_chars:
                old_len = len(tr.content)
                head = tr.content[:cfg.soft_trim_head]
                tail = tr.content[old_len - cfg.soft_trim_tail:]
                tr = replace(tr, content=f"{_result_header(tr, index)}\n{head}\n...\n{tail}")
                total_chars -= old_len - len(tr.content)
                trimmed += 1
            results.append(tr)
        result[i] = replace(msg, tool_results=results)
    return result, trimmed, total_chars


def hard_clear_tool_results(
    messages: list[Message],
    protected: set[int],
    index: dict[str, ToolCallInfo],
    total_chars: int,
    cfg: PruningConfig,
) -> tuple[list[Message], int, int]:
    """Replace unprotected results with the placeholder. Already-cleared and short results are left alone."""
    cleared = 0
    result = list(messages)
    for i, msg in enumerate(result):
        if i in protected or not msg.tool_results:
            continue
        results = []
        for tr in msg.tool_results:
            if cfg.hard_clear_placeholder not in tr.content and len(tr.content) > HARD_CLEAR_MIN_CHARS:
                old_len = len(tr.content)
                tr = replace(tr, content=f"{_result_header(tr, index)}\n{cfg.hard_clear_placeholder}")
                total_chars -= old_len - len(tr.content)
                cleared += 1
            results.append(tr)
        result[i] = replace(msg, tool_results=results)
    return result, cleared, total_chars


def prune_context(messages: list[Message], cfg: PruningConfig) -> list[Message]:
    """Apply soft trim, then hard clear if still over the hard ratio."""
    if not messages:
        return messages

    char_budget = cfg.context_tokens * CHARS_PER_TOKEN
    total_chars = sum(estimate_message_chars(m) for m in messages)
    soft_threshold = int(char_budget * cfg.soft_trim_ratio)
    hard_threshold = int(char_budget * cfg.hard_clear_ratio)

    if total_chars <= soft_threshold:
        return messages

    index = build_tool_call_index(messages)
    protected = identify_protected(messages, cfg.keep_last_assistant)

    result, soft_count, total_chars = soft_trim_tool_results(messages, protected, index, total_chars, cfg)
    if soft_count:
        logger.info("Soft-trimmed %d tool results (total chars: %d, budget: %d)", soft_count, total_chars, char_budget)

    if total_chars > hard_threshold:
        result, hard_count, total_chars = hard_clear_tool_results(result, protected, index, total_chars, cfg)
        if hard_count:
            logger.info("Hard-cleared %d tool results (total chars: %d, budget: %d)", hard_count, total_chars, char_budget)

    return result
