"""OpenAI-compatible chat completions adapter (SSE over httpx).

Also serves OpenAI-compatible gateways: set provider_id to give the gateway
its own identity and bot_id to send X-Bot-ID for per-bot billing. Gateways
that meter tokens report budgets in X-RateLimit-* headers; those are parsed
when present and read back through get_rate_limit().
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from typing import Any

import httpx

from nebo.ai.base import EventStream, HttpProvider
from nebo.ai.types import (
    ChatRequest,
    EventType,
    RateLimitInfo,
    Role,
    StreamEvent,
    ToolCall,
    parse_tool_input,
    tool_id_index,
)

logger = logging.getLogger(__name__)


def _header_int(headers: httpx.Headers, name: str) -> int:
    try:
        return int(headers.get(name, "0"))
    except ValueError:
        return 0


def _header_time(headers: httpx.Headers, name: str) -> datetime | None:
    value = headers.get(name, "")
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_rate_limit_headers(headers: httpx.Headers) -> RateLimitInfo | None:
    """Read X-RateLimit-* budget headers; None when absent or all-zero."""
    if not headers.get("X-RateLimit-Session-Limit-Tokens"):
        return None
    info = RateLimitInfo(
        session_limit_tokens=_header_int(headers, "X-RateLimit-Session-Limit-Tokens"),
        session_remaining_tokens=_header_int(headers, "X-RateLimit-Session-Remaining-Tokens"),
        session_reset_at=_header_time(headers, "X-RateLimit-Session-Reset"),
        weekly_limit_tokens=_header_int(headers, "X-RateLimit-Weekly-Limit-Tokens"),
        weekly_remaining_tokens=_header_int(headers, "X-RateLimit-Weekly-Remaining-Tokens"),
        weekly_reset_at=_header_time(headers, "X-RateLimit-Weekly-Reset"),
        updated_at=datetime.now(UTC),
    )
    if info.session_limit_tokens <= 0 and info.weekly_limit_tokens <= 0:
        return None
    return info


def build_messages(request: ChatRequest) -> list[dict[str, Any]]:
    """Translate session messages into chat-completions messages.

    The system prompt goes first. An assistant turn that only carries tool
    calls gets content " " because some compatible servers reject null.
    """
    issued, responded = tool_id_index(request.messages)
    result: list[dict[str, Any]] = []
    skipped_orphans = 0
    skipped_empty = 0

    if request.system:
        result.append({"role": "system", "content": request.system})

    for msg in request.messages:
        if msg.role in (Role.USER, Role.SYSTEM):
            if not msg.content:
                skipped_empty += 1
                continue
            result.append({"role": str(msg.role), "content": msg.content})

        elif msg.role == Role.ASSISTANT:
            tool_calls = []
            for tc in msg.tool_calls:
                if tc.id not in responded:
                    skipped_orphans += 1
                    continue
                tool_calls.append({
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.input or {})},
                })
            if not msg.content and not tool_calls:
                continue
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content or " "}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            result.append(entry)

        elif msg.role == Role.TOOL:
            for tr in msg.tool_results:
                if tr.tool_call_id in issued and tr.tool_call_id in responded:
                    result.append({"role": "tool", "tool_call_id": tr.tool_call_id, "content": tr.content})

    if skipped_orphans or skipped_empty:
        logger.info(
            "[openai] Cleaned history: stripped %d orphaned tool calls, %d empty messages",
            skipped_orphans, skipped_empty,
        )
    return result


class _ToolAccumulator:
    """Collects tool-call fragments per stream index.

    Some servers repeat the function name on every fragment or re-send the
    full argument payload after it already arrived; both are dropped so each
    index yields exactly one call.
    """

    def __init__(self) -> None:
        self.calls: dict[int, dict[str, Any]] = {}
        self.seen_name: set[int] = set()
        self.seen_args: set[int] = set()
        self.emitted: set[int] = set()
        self.current: int | None = None

    def add(self, fragment: dict[str, Any]) -> int | None:
        """Add one delta fragment; return the index of a call that just finished."""
        idx = fragment.get("index", 0)
        fn = fragment.get("function") or {}
        name = fn.get("name") or ""
        args = fn.get("arguments") or ""

        if name:
            if idx in self.seen_name:
                name = ""
            else:
                self.seen_name.add(idx)
        if args:
            if idx in self.seen_args:
                args = ""
            elif _is_complete_object(args):
                self.seen_args.add(idx)

        call = self.calls.setdefault(idx, {"id": "", "name": "", "args": []})
        if fragment.get("id") and not call["id"]:
            call["id"] = fragment["id"]
        if name:
            call["name"] += name
        if args:
            call["args"].append(args)
            if idx not in self.seen_args and _is_complete_object("".join(call["args"])):
                self.seen_args.add(idx)

        finished = None
        if self.current is not None and idx != self.current and self.current not in self.emitted:
            finished = self.current
        self.current = idx
        return finished

    def build(self, idx: int) -> ToolCall:
        self.emitted.add(idx)
        call = self.calls[idx]
        return ToolCall(id=call["id"], name=call["name"], input=parse_tool_input("".join(call["args"])))

    def pending(self) -> list[int]:
        return [i for i in sorted(self.calls) if i not in self.emitted and self.calls[i]["name"]]


def _is_complete_object(raw: str) -> bool:
    try:
        return isinstance(json.loads(raw), dict)
    except json.JSONDecodeError:
        return False


class OpenAIProvider(HttpProvider):
    """Streams /chat/completions and normalizes chunk deltas into StreamEvents."""

    ENDPOINT = "/chat/completions"
    PROVIDER_ID = "openai"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        provider_id: str = "",
        bot_id: str = "",
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        headers = {"authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__(base_url, model=model, headers=headers, client=client, **kwargs)
        self._provider_id = provider_id
        self._bot_id = bot_id
        self._rate_limit: RateLimitInfo | None = None
        self._rate_limit_lock = threading.Lock()

    def id(self) -> str:
        return self._provider_id or self.PROVIDER_ID

    def get_rate_limit(self) -> RateLimitInfo | None:
        with self._rate_limit_lock:
            return self._rate_limit

    def _request_headers(self, request: ChatRequest) -> dict[str, str]:
        return {"X-Bot-ID": self._bot_id} if self._bot_id else {}

    def _on_response(self, response: httpx.Response) -> None:
        info = parse_rate_limit_headers(response.headers)
        if info is None:
            return
        with self._rate_limit_lock:
            self._rate_limit = info
        logger.info(
            "[%s] Rate limit: session %d/%d, weekly %d/%d tokens",
            self.id(), info.session_remaining_tokens, info.session_limit_tokens,
            info.weekly_remaining_tokens, info.weekly_limit_tokens,
        )

    def _build_payload(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": build_messages(request),
            "stream": True,
        }
        if request.max_tokens > 0:
            payload["max_completion_tokens"] = request.max_tokens
        if request.temperature > 0:
            payload["temperature"] = request.temperature
        if request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.input_schema},
                }
                for t in request.tools
            ]
        return payload

    async def _pump(self, response: httpx.Response, out: EventStream) -> None:
        acc = _ToolAccumulator()
        chunk_count = 0
        text_chunks = 0

        async for line in response.aiter_lines():
            if not line.startswith("data: "):
                continue
            data = line[6:].strip()
            if data == "[DONE]":
                break
            try:
                chunk = json.loads(data)
            except json.JSONDecodeError:
                logger.warning("[%s] Skipping malformed SSE chunk: %s", self.id(), data[:200])
                continue

            chunk_count += 1
            choices = chunk.get("choices") or []
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}

            for fragment in delta.get("tool_calls") or []:
                finished = acc.add(fragment)
                if finished is not None:
                    await out.put(StreamEvent(type=EventType.TOOL_CALL, tool_call=acc.build(finished)))

            if delta.get("content"):
                text_chunks += 1
                await out.put(StreamEvent(type=EventType.TEXT, text=delta["content"]))

            # some servers never send [DONE]; finish_reason is authoritative
            if choice.get("finish_reason"):
                logger.debug(
                    "[%s] Stream finish_reason=%s (after %d text chunks)",
                    self.id(), choice["finish_reason"], text_chunks,
                )
                break

        for idx in acc.pending():
            logger.debug("[%s] Emitting tool call at index %d from accumulator", self.id(), idx)
            await out.put(StreamEvent(type=EventType.TOOL_CALL, tool_call=acc.build(idx)))

        if chunk_count == 0:
            logger.warning("[%s] Stream completed with 0 chunks", self.id())
        elif text_chunks == 0 and not acc.emitted:
            logger.warning("[%s] Stream had %d chunks but no text and no tool calls", self.id(), chunk_count)

        await out.put(StreamEvent(type=EventType.DONE))

