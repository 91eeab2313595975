"""Provider contract and the event stream every adapter returns.

An adapter's stream() opens the transport, raises ProviderError right away
if the backend refuses the request, and otherwise hands back an EventStream.
A producer task reads the transport and feeds a bounded queue; a full queue
blocks the producer, it never drops events. Closing the stream cancels the
producer, which releases the HTTP response or kills the subprocess.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from nebo.ai.errors import ProviderError, provider_error_from_response
from nebo.ai.types import ChatRequest, EventType, RateLimitInfo, StreamEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100

_END = object()


class EventStream:
    """Async iterator over StreamEvents produced by a background task."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self._finished = False

    def start(self, producer: Callable[[EventStream], Awaitable[None]]) -> EventStream:
        self._task = asyncio.create_task(self._run(producer))
        return self

    async def put(self, event: StreamEvent) -> None:
        await self._queue.put(event)

    async def _run(self, producer: Callable[[EventStream], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Stream producer failed: %s", e)
            await self._queue.put(StreamEvent(type=EventType.ERROR, error=e))
        await self._queue.put(_END)

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        """Stop the producer and release its transport."""
        self._finished = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    @classmethod
    def from_events(cls, events: list[StreamEvent]) -> EventStream:
        """A finished stream over a fixed event list."""
        stream = cls(maxsize=0)
        for event in events:
            stream._queue.put_nowait(event)
        stream._queue.put_nowait(_END)
        return stream


@runtime_checkable
class Provider(Protocol):
    """A model backend that turns a ChatRequest into StreamEvents."""

    def id(self) -> str: ...

    def profile_id(self) -> str: ...

    def handles_tools(self) -> bool: ...

    async def stream(self, request: ChatRequest) -> EventStream: ...


class ProfileTracker(Protocol):
    """Records usage and errors per auth profile.

    reason is one of: billing, rate_limit, auth, timeout, other.
    """

    async def record_usage(self, profile_id: str) -> None: ...

    async def record_error_with_cooldown(self, profile_id: str, reason: str) -> None: ...


# ------------------------------------------------------------------
# HTTP base
# ------------------------------------------------------------------


class HttpProvider:
    """Shared httpx plumbing for the hosted-API and local-inference adapters.

    The client is built lazily (or injected for tests). Subclasses implement
    _build_payload() and _pump() and set ENDPOINT.
    """

    ENDPOINT = ""
    PROVIDER_ID = ""

    def __init__(
        self,
        base_url: str,
        model: str = "",
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_connect: float = 10.0,
        timeout_read: float = 300.0,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._base_url = base_url
        self._model = model
        self._headers = headers or {}
        self._http = client
        self._owns_client = client is None
        self._timeout = httpx.Timeout(connect=timeout_connect, read=timeout_read, write=10.0, pool=10.0)
        self._queue_size = queue_size

    def id(self) -> str:
        return self.PROVIDER_ID

    def profile_id(self) -> str:
        return ""

    def handles_tools(self) -> bool:
        return False

    def get_rate_limit(self) -> RateLimitInfo | None:
        return None

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"content-type": "application/json"},
                timeout=self._timeout,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http

    async def close(self) -> None:
        if self._http is not None and self._owns_client:
            await self._http.aclose()
            self._http = None

    def _request_headers(self, request: ChatRequest) -> dict[str, str]:
        return {}

    def _on_response(self, response: httpx.Response) -> None:
        """Hook for reading response headers before the body is consumed."""

    def _build_payload(self, request: ChatRequest) -> dict[str, Any]:
        raise NotImplementedError

    async def _pump(self, response: httpx.Response, out: EventStream) -> None:
        raise NotImplementedError

    async def stream(self, request: ChatRequest) -> EventStream:
        payload = self._build_payload(request)
        http = self._client()
        headers = {**self._headers, **self._request_headers(request)}
        req = http.build_request("POST", self.ENDPOINT, json=payload, headers=headers)
        logger.info(
            "[%s] Sending request: model=%s messages=%d tools=%d",
            self.id(), payload.get("model", ""), len(payload.get("messages", [])), len(request.tools),
        )
        response = await http.send(req, stream=True)
        self._on_response(response)
        if response.status_code != 200:
            body = await response.aread()
            await response.aclose()
            raise provider_error_from_response(response.status_code, body)

        async def produce(out: EventStream) -> None:
            try:
                await self._pump(response, out)
            finally:
                await response.aclose()

        return EventStream(self._queue_size).start(produce)


# ------------------------------------------------------------------
# Wrappers
# ------------------------------------------------------------------


class ProfiledProvider:
    """Adds an auth profile id to a provider for usage/cooldown tracking."""

    def __init__(self, provider: Provider, profile_id: str) -> None:
        self.provider = provider
        self._profile_id = profile_id

    def id(self) -> str:
        return self.provider.id()

    def profile_id(self) -> str:
        return self._profile_id

    def handles_tools(self) -> bool:
        return self.provider.handles_tools()

    def get_rate_limit(self) -> RateLimitInfo | None:
        get = getattr(self.provider, "get_rate_limit", None)
        return get() if callable(get) else None

    async def stream(self, request: ChatRequest) -> EventStream:
        return await self.provider.stream(request)


class ModelOverrideProvider:
    """Forces a specific model on every request (background extraction)."""

    def __init__(self, provider: Provider, model: str) -> None:
        self.provider = provider
        self.model = model

    def id(self) -> str:
        return self.provider.id()

    def profile_id(self) -> str:
        return self.provider.profile_id()

    def handles_tools(self) -> bool:
        return self.provider.handles_tools()

    def get_rate_limit(self) -> RateLimitInfo | None:
        get = getattr(self.provider, "get_rate_limit", None)
        return get() if callable(get) else None

    async def stream(self, request: ChatRequest) -> EventStream:
        request.model = self.model
        return await self.provider.stream(request)


async def collect_text(stream: EventStream) -> str:
    """Drain a stream and return its concatenated text, raising on error events."""
    parts: list[str] = []
    try:
        async for event in stream:
            if event.type == EventType.TEXT:
                parts.append(event.text)
            elif event.type == EventType.ERROR:
                raise event.error or ProviderError("stream error")
    finally:
        await stream.aclose()
    return "".join(parts)


async def iterate(stream: EventStream) -> AsyncIterator[StreamEvent]:
    """Iterate a stream and always close it, even if the consumer stops early."""
    try:
        async for event in stream:
            yield event
    finally:
        await stream.aclose()
