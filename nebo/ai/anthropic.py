"""Anthropic Messages API adapter (SSE over httpx)."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from nebo.ai.base import EventStream, HttpProvider
from nebo.ai.errors import ProviderError
from nebo.ai.types import (
    ChatRequest,
    EventType,
    Message,
    Role,
    StreamEvent,
    ToolCall,
    parse_tool_input,
    tool_id_index,
)

logger = logging.getLogger(__name__)

_API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 8192
THINKING_BUDGET_TOKENS = 10000
THINKING_MAX_TOKENS = 16384


def _auth_headers(api_key: str) -> dict[str, str]:
    headers = {"anthropic-version": _API_VERSION}
    if not api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")
    elif "sk-ant-oat" in api_key:
        # OAT tokens from `claude setup-token` need Bearer auth plus beta headers
        headers["authorization"] = f"Bearer {api_key}"
        headers["anthropic-beta"] = "oauth-2025-04-20"
        headers["anthropic-dangerous-direct-browser-access"] = "true"
    else:
        headers["x-api-key"] = api_key
    return headers


def build_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Translate session messages into Anthropic content-block messages.

    Tool calls without a result and results without an issued call are
    dropped. System messages are skipped; the system prompt travels in the
    top-level "system" field.
    """
    issued, responded = tool_id_index(messages)
    result: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == Role.USER:
            if not msg.content:
                continue
            result.append({"role": "user", "content": [{"type": "text", "text": msg.content}]})

        elif msg.role == Role.ASSISTANT:
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                if tc.id not in responded:
                    logger.debug("Skipping tool_use without response: %s", tc.id)
                    continue
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.input or {}})
            if blocks:
                result.append({"role": "assistant", "content": blocks})

        elif msg.role == Role.TOOL:
            blocks = []
            for tr in msg.tool_results:
                if tr.tool_call_id not in issued:
                    logger.debug("Skipping orphaned tool_result: %s", tr.tool_call_id)
                    continue
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": tr.tool_call_id,
                    "content": tr.content,
                    "is_error": tr.is_error,
                })
            if blocks:
                result.append({"role": "user", "content": blocks})

    return result


class AnthropicProvider(HttpProvider):
    """Streams from /v1/messages and normalizes SSE into StreamEvents."""

    ENDPOINT = "/v1/messages"
    PROVIDER_ID = "anthropic"

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, model=model, headers=_auth_headers(api_key), client=client, **kwargs)

    def _build_payload(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self._model,
            "max_tokens": request.max_tokens if request.max_tokens > 0 else DEFAULT_MAX_TOKENS,
            "messages": build_messages(request.messages),
            "stream": True,
        }
        if request.system:
            payload["system"] = request.system
        if request.tools:
            payload["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in request.tools
            ]
        if request.enable_thinking:
            payload["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
            if request.max_tokens <= 0:
                payload["max_tokens"] = THINKING_MAX_TOKENS
        elif request.temperature > 0:
            payload["temperature"] = request.temperature
        return payload

    async def _pump(self, response: httpx.Response, out: EventStream) -> None:
        tool_id = ""
        tool_name = ""
        input_parts: list[str] = []

        async for line in response.aiter_lines():
            # event: lines carry the same type as the data payload
            if not line.startswith("data: "):
                continue
            try:
                data = json.loads(line[6:])
            except json.JSONDecodeError:
                logger.warning("[anthropic] Skipping malformed SSE line: %s", line[:200])
                continue

            event_type = data.get("type")

            if event_type == "content_block_start":
                block = data.get("content_block", {})
                if block.get("type") == "tool_use":
                    tool_id = block.get("id", "")
                    tool_name = block.get("name", "")
                    input_parts = []

            elif event_type == "content_block_delta":
                delta = data.get("delta", {})
                delta_type = delta.get("type")
                if delta_type == "text_delta":
                    await out.put(StreamEvent(type=EventType.TEXT, text=delta.get("text", "")))
                elif delta_type == "input_json_delta":
                    input_parts.append(delta.get("partial_json", ""))
                elif delta_type == "thinking_delta":
                    await out.put(StreamEvent(type=EventType.THINKING, text=delta.get("thinking", "")))

            elif event_type == "content_block_stop":
                if tool_id:
                    call = ToolCall(id=tool_id, name=tool_name, input=parse_tool_input("".join(input_parts)))
                    await out.put(StreamEvent(type=EventType.TOOL_CALL, tool_call=call))
                    tool_id, tool_name, input_parts = "", "", []

            elif event_type == "message_stop":
                await out.put(StreamEvent(type=EventType.DONE))
                return

            elif event_type == "error":
                err = data.get("error", {})
                await out.put(StreamEvent(
                    type=EventType.ERROR,
                    error=ProviderError(
                        f"stream error: {err.get('type', 'unknown')}: {err.get('message', '')}",
                        type=err.get("type", ""),
                        raw=line[6:],
                    ),
                ))
                return

        # body ended without message_stop
        await out.put(StreamEvent(type=EventType.DONE))
