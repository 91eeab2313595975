"""Local inference adapter for Ollama's /api/chat (NDJSON stream)."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from nebo.ai.base import EventStream, HttpProvider
from nebo.ai.errors import ProviderError
from nebo.ai.types import ChatRequest, EventType, Message, Role, StreamEvent, ToolCall, tool_id_index

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen3:4b"


def _find_tool_name(call_id: str, messages: list[Message]) -> str:
    for msg in messages:
        if msg.role != Role.ASSISTANT:
            continue
        for tc in msg.tool_calls:
            if tc.id == call_id:
                return tc.name
    return "unknown"


def build_messages(request: ChatRequest) -> list[dict[str, Any]]:
    """Translate session messages into Ollama chat messages.

    Tool results carry the tool_name of their call since Ollama matches
    results by name rather than id.
    """
    issued, responded = tool_id_index(request.messages)
    result: list[dict[str, Any]] = []

    if request.system:
        result.append({"role": "system", "content": request.system})

    for msg in request.messages:
        if msg.role in (Role.USER, Role.SYSTEM):
            result.append({"role": str(msg.role), "content": msg.content})

        elif msg.role == Role.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
            calls = []
            for tc in msg.tool_calls:
                if tc.id not in responded:
                    logger.debug("Skipping tool_call without response: %s", tc.id)
                    continue
                calls.append({"id": tc.id, "function": {"name": tc.name, "arguments": tc.input or {}}})
            if calls:
                entry["tool_calls"] = calls
            if msg.content or calls:
                result.append(entry)

        elif msg.role == Role.TOOL:
            for tr in msg.tool_results:
                if tr.tool_call_id not in issued:
                    continue
                result.append({
                    "role": "tool",
                    "content": tr.content,
                    "tool_call_id": tr.tool_call_id,
                    "tool_name": _find_tool_name(tr.tool_call_id, request.messages),
                })

    return result


def _build_tools(request: ChatRequest) -> list[dict[str, Any]]:
    tools = []
    for t in request.tools:
        schema = t.input_schema or {}
        tools.append({
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": {
                    "type": "object",
                    "properties": schema.get("properties", {}),
                    "required": schema.get("required", []),
                },
            },
        })
    return tools


class OllamaProvider(HttpProvider):
    ENDPOINT = "/api/chat"
    PROVIDER_ID = "ollama"

    def __init__(
        self,
        base_url: str = "",
        model: str = "",
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        # local inference is slow to first token on cold models
        kwargs.setdefault("timeout_read", 300.0)
        super().__init__(base_url or DEFAULT_BASE_URL, model=model or DEFAULT_MODEL, client=client, **kwargs)

    def _build_payload(self, request: ChatRequest) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self._model,
            "messages": build_messages(request),
            "stream": True,
        }
        options: dict[str, Any] = {}
        if request.temperature > 0:
            options["temperature"] = request.temperature
        if request.max_tokens > 0:
            options["num_predict"] = request.max_tokens
        if options:
            payload["options"] = options
        if request.tools:
            payload["tools"] = _build_tools(request)
        return payload

    async def _pump(self, response: httpx.Response, out: EventStream) -> None:
        counter = 0
        async for line in response.aiter_lines():
            if not line.strip():
                continue
            try:
                chunk = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("[ollama] Skipping malformed line: %s", line[:200])
                continue

            if chunk.get("error"):
                await out.put(StreamEvent(type=EventType.ERROR, error=ProviderError(str(chunk["error"]), raw=line)))
                return

            message = chunk.get("message") or {}
            if message.get("content"):
                await out.put(StreamEvent(type=EventType.TEXT, text=message["content"]))
            if message.get("thinking"):
                await out.put(StreamEvent(type=EventType.THINKING, text=message["thinking"]))

            for tc in message.get("tool_calls") or []:
                counter += 1
                fn = tc.get("function") or {}
                args = fn.get("arguments") or {}
                if isinstance(args, str):
                    try:
                        args = json.loads(args)
                    except json.JSONDecodeError:
                        args = {}
                call = ToolCall(id=f"ollama-call-{counter}", name=fn.get("name", ""), input=args)
                await out.put(StreamEvent(type=EventType.TOOL_CALL, tool_call=call))

            if chunk.get("done"):
                await out.put(StreamEvent(type=EventType.DONE))
                return

        await out.put(StreamEvent(type=EventType.DONE))


async def check_ollama_available(base_url: str = "", client: httpx.AsyncClient | None = None) -> bool:
    """True when an Ollama server answers /api/tags."""
    url = (base_url or DEFAULT_BASE_URL).rstrip("/") + "/api/tags"
    try:
        if client is not None:
            response = await client.get(url)
        else:
            async with httpx.AsyncClient(timeout=2.0) as http:
                response = await http.get(url)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


async def list_ollama_models(base_url: str = "", client: httpx.AsyncClient | None = None) -> list[str]:
    url = (base_url or DEFAULT_BASE_URL).rstrip("/") + "/api/tags"
    if client is not None:
        response = await client.get(url)
    else:
        async with httpx.AsyncClient(timeout=5.0) as http:
            response = await http.get(url)
    response.raise_for_status()
    return [m.get("name", "") for m in response.json().get("models", [])]
