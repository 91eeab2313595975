"""Shared fixtures: isolated settings and scripted fake providers.

No network, no subprocesses. FakeProvider replays a list of event scripts,
one per stream() call, and records every ChatRequest it receives.
"""

from __future__ import annotations

import os

import pytest

from nebo.ai.base import EventStream
from nebo.ai.errors import ProviderError
from nebo.ai.models_config import parse_models_config
from nebo.ai.types import ChatRequest, EventType, StreamEvent, ToolCall
from nebo.config import Settings

_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
    "OLLAMA_BASE_URL",
)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def clean_env(monkeypatch):
    """Remove provider credentials and NEBO_ overrides from the environment."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("NEBO_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(clean_env, tmp_path):
    """Settings isolated from .env files, with a tmp workspace."""
    return Settings(
        _env_file=None,
        workspace_dir=str(tmp_path / "workspace"),
        models_file=str(tmp_path / "missing-models.yaml"),
    )


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


def text_events(*chunks: str) -> list[StreamEvent]:
    """A script that streams text chunks then done."""
    events = [StreamEvent(type=EventType.TEXT, text=c) for c in chunks]
    events.append(StreamEvent(type=EventType.DONE))
    return events


def tool_events(*calls: ToolCall, text: str = "") -> list[StreamEvent]:
    """A script that optionally streams text, then tool calls, then done."""
    events = [StreamEvent(type=EventType.TEXT, text=text)] if text else []
    events += [StreamEvent(type=EventType.TOOL_CALL, tool_call=c) for c in calls]
    events.append(StreamEvent(type=EventType.DONE))
    return events


def error_events(err: BaseException) -> list[StreamEvent]:
    return [StreamEvent(type=EventType.ERROR, error=err)]


class FakeProvider:
    """Provider that replays scripted streams.

    Each script is either a list of StreamEvents or an exception, which is
    raised from stream() as an immediate failure. When scripts run out the
    provider streams "ok".
    """

    def __init__(
        self,
        provider_id: str = "fake",
        scripts: list | None = None,
        handles_tools: bool = False,
        profile_id: str = "",
    ) -> None:
        self._id = provider_id
        self.scripts = list(scripts or [])
        self._handles_tools = handles_tools
        self._profile_id = profile_id
        self.requests: list[ChatRequest] = []

    def id(self) -> str:
        return self._id

    def profile_id(self) -> str:
        return self._profile_id

    def handles_tools(self) -> bool:
        return self._handles_tools

    async def stream(self, request: ChatRequest) -> EventStream:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else text_events("ok")
        if isinstance(script, BaseException):
            raise script
        return EventStream.from_events(script)


def rate_limit_error() -> ProviderError:
    return ProviderError(
        "429: rate limited",
        code="rate_limit_exceeded",
        type="rate_limit_error",
        raw='{"type":"error","error":{"type":"rate_limit_error","message":"rate limited"}}',
    )


def context_overflow_error() -> ProviderError:
    return ProviderError(
        "400: prompt is too long: 250000 tokens > 200000 maximum context",
        type="invalid_request_error",
    )


# ---------------------------------------------------------------------------
# Model catalog
# ---------------------------------------------------------------------------

MODELS_YAML = """
credentials:
  anthropic: {api_key: sk-ant-test}
  openai: {api_key: sk-openai-test}
  claude: {command: claude}
task_routing:
  general: anthropic/claude-sonnet-4-5
  code: anthropic/claude-sonnet-4-5
  reasoning: anthropic/claude-opus-4-6
  vision: openai/gpt-5.2
  fallbacks:
    reasoning: [openai/o3]
aliases:
  - {alias: smart, modelId: anthropic/claude-opus-4-6}
providers:
  anthropic:
    - id: claude-sonnet-4-5
      displayName: Claude Sonnet 4.5
      pricing: {input: 3.0, output: 15.0}
      capabilities: [vision, tools]
      kind: [code]
      preferred: true
    - id: claude-opus-4-6
      displayName: Claude Opus 4.6
      pricing: {input: 15.0, output: 75.0}
      capabilities: [thinking]
    - id: claude-haiku-4-5
      displayName: Claude Haiku 4.5
      pricing: {input: 1.0, output: 5.0}
      kind: [fast, cheap]
  openai:
    - {id: gpt-5.2, displayName: GPT-5.2, pricing: {input: 1.25, output: 10.0}}
    - {id: gpt-5-mini, displayName: GPT-5 Mini, pricing: {input: 0.25, output: 2.0}, kind: [cheap]}
    - {id: o3, pricing: {input: 2.0, output: 8.0}}
    - {id: gpt-4o, active: false}
"""


@pytest.fixture
def models_config():
    return parse_models_config(MODELS_YAML)
