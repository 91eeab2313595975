"""Unit tests for Runner -- the select/stream/execute-tools loop.

Providers are FakeProviders replaying scripted streams; sessions live in
InMemoryConversationStore; tools are plain async functions.
"""

import json

import httpx
import pytest

from nebo.ai.base import ProfiledProvider
from nebo.ai.errors import ProviderError
from nebo.ai.fuzzy import FuzzyMatcher
from nebo.ai.models_config import CLIRegistry
from nebo.ai.selector import ModelSelector
from nebo.ai.types import EventType, Message, Role, StreamEvent, ToolCall, ToolResult
from nebo.runner.file_tracker import REINJECTION_HEADER, FileAccessTracker
from nebo.runner.memory import InMemoryMemoryStore, MemoryEntry
from nebo.runner.runner import CONTEXT_OVERFLOW_MESSAGE, NO_PROVIDER_MESSAGE, Runner, RunRequest
from nebo.session import InMemoryConversationStore
from nebo.tools import LocalToolRegistry
from tests.conftest import (
    FakeProvider,
    context_overflow_error,
    error_events,
    rate_limit_error,
    text_events,
    tool_events,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _MemoryStore:
    def __init__(self):
        self.entries: list[MemoryEntry] = []

    async def store(self, entry: MemoryEntry, user_id: str) -> None:
        self.entries.append(entry)


def _registry() -> tuple[LocalToolRegistry, list[dict]]:
    calls: list[dict] = []

    async def echo(text: str = "") -> str:
        calls.append({"text": text})
        return f"echo: {text}"

    registry = LocalToolRegistry()
    registry.register("echo", echo, {"type": "object", "description": "Echo text"})
    return registry, calls


def _make_runner(settings, providers, **kwargs) -> tuple[Runner, InMemoryConversationStore]:
    sessions = kwargs.pop("sessions", None) or InMemoryConversationStore()
    tools = kwargs.pop("tools", None) or _registry()[0]
    return Runner(settings, sessions, providers, tools, **kwargs), sessions


def _selector(models_config, *provider_ids: str) -> ModelSelector:
    selector = ModelSelector(models_config, CLIRegistry(set()))
    selector.set_loaded_providers(list(provider_ids))
    return selector


async def _collect(runner: Runner, **kwargs) -> list[StreamEvent]:
    events = await runner.run(RunRequest(**kwargs))
    return [e async for e in events]


async def _history(sessions: InMemoryConversationStore, key: str = "default") -> list[Message]:
    session = await sessions.get_or_create(key)
    return await sessions.get_messages(session.id)


def _types(events: list[StreamEvent]) -> list[EventType]:
    return [e.type for e in events]


# ---------------------------------------------------------------------------
# Basic runs
# ---------------------------------------------------------------------------


class TestTextRun:
    @pytest.mark.asyncio
    async def test_streams_text_then_one_done(self, settings):
        provider = FakeProvider(scripts=[text_events("Hel", "lo")])
        runner, sessions = _make_runner(settings, [provider])

        events = await _collect(runner, prompt="hi there")

        assert _types(events) == [EventType.TEXT, EventType.TEXT, EventType.DONE]
        history = await _history(sessions)
        assert [(m.role, m.content) for m in history] == [(Role.USER, "hi there"), (Role.ASSISTANT, "Hello")]

    @pytest.mark.asyncio
    async def test_no_providers_raises(self, settings):
        runner, _ = _make_runner(settings, [])
        with pytest.raises(RuntimeError, match="no providers"):
            await runner.run(RunRequest(prompt="hi"))

    @pytest.mark.asyncio
    async def test_system_prompt(self, settings):
        provider = FakeProvider()
        runner, _ = _make_runner(settings, [provider])
        await _collect(runner, prompt="hi there")

        request = provider.requests[0]
        assert "You are Nebo" in request.system
        assert "Call tools exactly as listed: echo" in request.system
        assert "Model: fake/" in request.system
        assert [t.name for t in request.tools] == ["echo"]

    @pytest.mark.asyncio
    async def test_sessions_are_separate(self, settings):
        provider = FakeProvider()
        runner, sessions = _make_runner(settings, [provider])
        await _collect(runner, prompt="one", session_key="a")
        await _collect(runner, prompt="two", session_key="b")
        assert [m.content for m in await _history(sessions, "b")] == ["two", "ok"]


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_executes_tools_and_continues(self, settings):
        provider = FakeProvider(scripts=[
            tool_events(ToolCall(id="c1", name="echo", input={"text": "x"}), text="Let me check."),
            text_events("All done."),
        ])
        tools, calls = _registry()
        runner, sessions = _make_runner(settings, [provider], tools=tools)

        events = await _collect(runner, prompt="echo x")

        assert _types(events) == [
            EventType.TEXT, EventType.TOOL_CALL, EventType.TOOL_RESULT, EventType.TEXT, EventType.DONE,
        ]
        assert events[2].text == "echo: x"
        assert calls == [{"text": "x"}]

        history = await _history(sessions)
        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert history[1].tool_calls[0].id == "c1"
        assert history[2].tool_results == [ToolResult(tool_call_id="c1", content="echo: x")]

        second = provider.requests[1].messages
        assert any(tr.tool_call_id == "c1" for m in second for tr in m.tool_results)

    @pytest.mark.asyncio
    async def test_unknown_tool_result_is_error(self, settings):
        provider = FakeProvider(scripts=[tool_events(ToolCall(id="c1", name="nope"))])
        runner, sessions = _make_runner(settings, [provider])
        await _collect(runner, prompt="go")
        result = (await _history(sessions))[2].tool_results[0]
        assert result.is_error

    @pytest.mark.asyncio
    async def test_max_iterations(self, settings):
        settings.max_iterations = 2
        provider = FakeProvider(scripts=[
            tool_events(ToolCall(id="c1", name="echo")),
            tool_events(ToolCall(id="c2", name="echo")),
        ])
        runner, _ = _make_runner(settings, [provider])

        events = await _collect(runner, prompt="loop forever")

        assert _types(events)[-1] == EventType.ERROR
        assert EventType.DONE not in _types(events)
        assert "maximum iterations (2)" in str(events[-1].error)

    @pytest.mark.asyncio
    async def test_cancel_keeps_finished_results(self, settings):
        provider = FakeProvider(scripts=[
            tool_events(ToolCall(id="c1", name="echo", input={"text": "a"}), ToolCall(id="c2", name="echo")),
        ])
        runner, sessions = _make_runner(settings, [provider])

        events = await runner.run(RunRequest(prompt="go"))
        async for event in events:
            if event.type == EventType.TOOL_RESULT:
                break
        await events.aclose()

        history = await _history(sessions)
        assert history[-1].role == Role.TOOL
        assert [tr.tool_call_id for tr in history[-1].tool_results] == ["c1"]

    @pytest.mark.asyncio
    async def test_provider_runs_own_tools(self, settings):
        """A CLI provider's turns arrive as MESSAGE events and are saved as-is."""
        call = ToolCall(id="t1", name="Bash", input={"command": "ls"})
        script = [
            StreamEvent(type=EventType.MESSAGE, message=Message(role=Role.ASSISTANT, tool_calls=[call])),
            StreamEvent(type=EventType.MESSAGE, message=Message(
                role=Role.TOOL, tool_results=[ToolResult(tool_call_id="t1", content="a.txt")],
            )),
            StreamEvent(type=EventType.TEXT, text="There is one file."),
            StreamEvent(type=EventType.DONE),
        ]
        provider = FakeProvider("claude-code", scripts=[script], handles_tools=True)
        tools, calls = _registry()
        runner, sessions = _make_runner(settings, [provider], tools=tools)

        events = await _collect(runner, prompt="list files")

        assert _types(events)[-1] == EventType.DONE
        assert _types(events).count(EventType.DONE) == 1
        assert calls == []
        history = await _history(sessions)
        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT, Role.TOOL]

    @pytest.mark.asyncio
    async def test_provider_runs_own_tools_text_only(self, settings):
        provider = FakeProvider("claude-code", scripts=[text_events("Just text.")], handles_tools=True)
        runner, sessions = _make_runner(settings, [provider])
        await _collect(runner, prompt="hello")
        assert (await _history(sessions))[-1].content == "Just text."


# ---------------------------------------------------------------------------
# Errors and recovery
# ---------------------------------------------------------------------------


class TestErrors:
    @pytest.mark.asyncio
    async def test_immediate_error_surfaces(self, settings):
        provider = FakeProvider(scripts=[ProviderError("500: boom", type="api_error")])
        runner, _ = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert _types(events) == [EventType.ERROR]
        assert "boom" in str(events[0].error)

    @pytest.mark.asyncio
    async def test_in_stream_error_surfaces(self, settings):
        provider = FakeProvider(scripts=[error_events(ProviderError("stream broke"))])
        runner, sessions = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert _types(events) == [EventType.ERROR]
        assert [m.role for m in await _history(sessions)] == [Role.USER]

    @pytest.mark.asyncio
    async def test_context_overflow_compacts_and_retries(self, settings):
        provider = FakeProvider(scripts=[context_overflow_error(), text_events("recovered")])
        runner, _ = _make_runner(settings, [provider])

        events = await _collect(runner, prompt="hi")

        assert [e.text for e in events if e.type == EventType.TEXT] == ["recovered"]
        assert _types(events)[-1] == EventType.DONE
        retry = provider.requests[1].messages
        assert any('name="compaction_recovery"' in m.content for m in retry)

    @pytest.mark.asyncio
    async def test_context_overflow_twice(self, settings):
        provider = FakeProvider(scripts=[context_overflow_error(), context_overflow_error()])
        runner, _ = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert [e.text for e in events if e.type == EventType.TEXT] == [CONTEXT_OVERFLOW_MESSAGE]
        assert _types(events)[-1] == EventType.DONE

    @pytest.mark.asyncio
    async def test_rate_limit_fails_over(self, settings, models_config):
        anthropic = FakeProvider("anthropic", scripts=[rate_limit_error()])
        openai = FakeProvider("openai", scripts=[text_events("from o3")])
        selector = _selector(models_config, "anthropic", "openai")
        runner, _ = _make_runner(settings, [anthropic, openai], selector=selector)

        events = await _collect(runner, prompt="analyze the tradeoffs step by step")

        assert [e.text for e in events if e.type == EventType.TEXT] == ["from o3"]
        assert anthropic.requests[0].model == "claude-opus-4-6"
        assert anthropic.requests[0].enable_thinking
        assert openai.requests[0].model == "o3"
        assert selector.is_in_cooldown("anthropic/claude-opus-4-6")

    @pytest.mark.asyncio
    async def test_rate_limit_without_selector_surfaces(self, settings):
        provider = FakeProvider(scripts=[rate_limit_error()])
        runner, _ = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert _types(events) == [EventType.ERROR]

    @pytest.mark.asyncio
    async def test_transport_error_fails_over(self, settings, models_config):
        anthropic = FakeProvider("anthropic", scripts=[httpx.ConnectError("connection refused")])
        openai = FakeProvider("openai", scripts=[text_events("from o3")])
        selector = _selector(models_config, "anthropic", "openai")
        runner, _ = _make_runner(settings, [anthropic, openai], selector=selector)

        events = await _collect(runner, prompt="analyze the tradeoffs step by step")

        assert [e.text for e in events if e.type == EventType.TEXT] == ["from o3"]
        assert len(anthropic.requests) == 1
        assert openai.requests[0].model == "o3"
        assert selector.is_in_cooldown("anthropic/claude-opus-4-6")

    @pytest.mark.asyncio
    async def test_transport_error_without_selector_surfaces(self, settings):
        provider = FakeProvider(scripts=[OSError("broken pipe")])
        runner, _ = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert _types(events) == [EventType.ERROR]
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_role_ordering_retried(self, settings):
        provider = FakeProvider(scripts=[ProviderError("400: roles must alternate"), text_events("fine")])
        runner, _ = _make_runner(settings, [provider])
        events = await _collect(runner, prompt="hi")
        assert [e.text for e in events if e.type == EventType.TEXT] == ["fine"]
        assert len(provider.requests) == 2


# ---------------------------------------------------------------------------
# Model selection
# ---------------------------------------------------------------------------


class TestModelSelection:
    @pytest.mark.asyncio
    async def test_routes_by_task(self, settings, models_config):
        anthropic = FakeProvider("anthropic")
        runner, _ = _make_runner(
            settings, [anthropic, FakeProvider("openai")], selector=_selector(models_config, "anthropic", "openai"),
        )
        await _collect(runner, prompt="hello there")
        assert anthropic.requests[0].model == "claude-sonnet-4-5"
        assert not anthropic.requests[0].enable_thinking

    @pytest.mark.asyncio
    async def test_model_override(self, settings, models_config):
        openai = FakeProvider("openai")
        runner, _ = _make_runner(
            settings, [FakeProvider("anthropic"), openai], selector=_selector(models_config, "anthropic", "openai"),
        )
        await _collect(runner, prompt="hello there", model_override="openai/gpt-5-mini")
        assert openai.requests[0].model == "gpt-5-mini"

    @pytest.mark.asyncio
    async def test_user_requested_switch(self, settings, models_config):
        anthropic = FakeProvider("anthropic")
        runner, _ = _make_runner(
            settings,
            [anthropic, FakeProvider("openai")],
            selector=_selector(models_config, "anthropic", "openai"),
            fuzzy=FuzzyMatcher(models_config),
        )
        await _collect(runner, prompt="switch to opus")
        assert anthropic.requests[0].model == "claude-opus-4-6"
        assert "## Model Switching" in anthropic.requests[0].system

    @pytest.mark.asyncio
    async def test_selected_provider_not_loaded(self, settings, models_config):
        """Routing to a provider that is not running falls back to the first provider."""
        openai = FakeProvider("openai")
        runner, _ = _make_runner(settings, [openai], selector=_selector(models_config, "anthropic", "openai"))
        events = await _collect(runner, prompt="hello there")
        assert _types(events)[-1] == EventType.DONE
        assert len(openai.requests) == 1


# ---------------------------------------------------------------------------
# Compaction and memory
# ---------------------------------------------------------------------------


class TestCompactionAndMemory:
    @pytest.mark.asyncio
    async def test_proactive_compaction(self, settings, tmp_path):
        settings.context_token_limit = 50
        sessions = InMemoryConversationStore()
        session = await sessions.get_or_create("default")
        for i in range(12):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            await sessions.append_message(session.id, Message(role=role, content=f"turn {i} " + "x" * 100))

        notes = tmp_path / "notes.txt"
        notes.write_text("remember me\n")
        tracker = FileAccessTracker()
        tracker.track(str(notes), session.id)

        provider = FakeProvider()
        runner, _ = _make_runner(settings, [provider], sessions=sessions, file_tracker=tracker)
        await _collect(runner, prompt="continue")

        request = provider.requests[0]
        assert "[Previous Conversation Summary]" in request.system
        assert "- User request: turn 0" in request.system
        assert any(m.content.startswith(REINJECTION_HEADER) for m in request.messages)
        assert len(await sessions.get_messages(session.id)) == 11

    @pytest.mark.asyncio
    async def test_reinjection_limited_to_own_session(self, settings, tmp_path):
        settings.context_token_limit = 50
        sessions = InMemoryConversationStore()
        alice = await sessions.get_or_create("alice")
        bob = await sessions.get_or_create("bob")
        for i in range(12):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            await sessions.append_message(bob.id, Message(role=role, content=f"turn {i} " + "x" * 100))

        secret = tmp_path / "alice_secret.txt"
        secret.write_text("alice private data\n")
        tracker = FileAccessTracker()
        tracker.track(str(secret), alice.id)

        provider = FakeProvider()
        runner, _ = _make_runner(settings, [provider], sessions=sessions, file_tracker=tracker)
        await _collect(runner, prompt="continue", session_key="bob")

        request = provider.requests[0]
        assert "[Previous Conversation Summary]" in request.system
        assert not any("alice private data" in m.content for m in request.messages)

    @pytest.mark.asyncio
    async def test_background_memory_extraction(self, settings):
        facts = json.dumps({"preferences": [{"key": "style/tabs", "value": "prefers tabs"}]})
        provider = FakeProvider(scripts=[text_events("Noted."), text_events(facts)])
        store = _MemoryStore()
        runner, _ = _make_runner(settings, [provider], memory_store=store)

        await _collect(runner, prompt="I prefer tabs")
        await runner.wait_background()

        assert [(e.layer, e.key) for e in store.entries] == [("tacit", "style/tabs")]

    @pytest.mark.asyncio
    async def test_extraction_into_in_memory_store(self, settings):
        facts = json.dumps({"entities": [{"key": "person/sarah", "value": "Sarah is the PM"}]})
        provider = FakeProvider(scripts=[text_events("Got it."), text_events(facts)])
        store = InMemoryMemoryStore()
        runner, _ = _make_runner(settings, [provider], memory_store=store)

        await _collect(runner, prompt="Sarah is our PM", user_id="u1")
        await runner.wait_background()

        assert [(e.layer, e.key) for e in await store.list("u1")] == [("entity", "person/sarah")]

    @pytest.mark.asyncio
    async def test_extraction_uses_cheapest_model(self, settings, models_config):
        facts = json.dumps({"decisions": [{"key": "db", "value": "postgres"}]})
        openai = FakeProvider("openai", scripts=[text_events(facts)])
        store = _MemoryStore()
        runner, _ = _make_runner(
            settings,
            [FakeProvider("anthropic"), openai],
            selector=_selector(models_config, "anthropic", "openai"),
            memory_store=store,
        )
        await _collect(runner, prompt="hello there")
        await runner.wait_background()

        assert openai.requests[0].model == "gpt-5-mini"
        assert [e.layer for e in store.entries] == ["daily"]

    @pytest.mark.asyncio
    async def test_skip_memory_extract(self, settings):
        provider = FakeProvider()
        store = _MemoryStore()
        runner, _ = _make_runner(settings, [provider], memory_store=store)
        await _collect(runner, prompt="heartbeat", skip_memory_extract=True)
        await runner.wait_background()
        assert len(provider.requests) == 1
        assert store.entries == []

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_break_run(self, settings):
        provider = FakeProvider(scripts=[text_events("Noted."), text_events("not json at all")])
        store = _MemoryStore()
        runner, _ = _make_runner(settings, [provider], memory_store=store)
        events = await _collect(runner, prompt="I prefer tabs")
        await runner.wait_background()
        assert _types(events)[-1] == EventType.DONE
        assert store.entries == []


class TestNoProviderSelected:
    def test_message_mentions_setup(self):
        assert "ANTHROPIC_API_KEY" in NO_PROVIDER_MESSAGE


class _Profiles:
    def __init__(self):
        self.usage: list[str] = []
        self.errors: list[tuple[str, str]] = []

    async def record_usage(self, profile_id: str) -> None:
        self.usage.append(profile_id)

    async def record_error_with_cooldown(self, profile_id: str, reason: str) -> None:
        self.errors.append((profile_id, reason))


class TestProfileTracking:
    @pytest.mark.asyncio
    async def test_usage_recorded(self, settings):
        profiles = _Profiles()
        provider = ProfiledProvider(FakeProvider(), "work-key")
        runner, _ = _make_runner(settings, [provider], profile_tracker=profiles)
        await _collect(runner, prompt="hi")
        assert profiles.usage == ["work-key"]
        assert profiles.errors == []

    @pytest.mark.asyncio
    async def test_errors_recorded_with_reason(self, settings):
        profiles = _Profiles()
        provider = ProfiledProvider(FakeProvider(scripts=[rate_limit_error()]), "work-key")
        runner, _ = _make_runner(settings, [provider], profile_tracker=profiles)
        events = await _collect(runner, prompt="hi")
        assert _types(events) == [EventType.ERROR]
        assert profiles.errors == [("work-key", "rate_limit")]
        assert profiles.usage == []

    @pytest.mark.asyncio
    async def test_no_profile_id_not_tracked(self, settings):
        profiles = _Profiles()
        runner, _ = _make_runner(settings, [FakeProvider()], profile_tracker=profiles)
        await _collect(runner, prompt="hi")
        assert profiles.usage == []
