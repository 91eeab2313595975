"""Tests for nebo/steering -- generators, pipeline, and injection."""

from datetime import datetime, timedelta, timezone

from nebo.ai.types import Message, RateLimitInfo, Role, ToolCall
from nebo.steering import (
    Context,
    Pipeline,
    Position,
    SteeringMessage,
    TaskStatus,
    WorkTask,
    format_task_list,
    inject,
    wrap_steering,
)
from nebo.steering import generators
from nebo.steering.context import count_turns_since_tool_use
from nebo.steering.templates import STEERING_FOOTER

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _chat(turns: int, user_text: str = "go on") -> list[Message]:
    """Alternating user/assistant text turns."""
    messages: list[Message] = []
    for i in range(turns):
        messages.append(Message(role=Role.USER, content=user_text))
        messages.append(Message(role=Role.ASSISTANT, content=f"reply {i}"))
    return messages


def _tool_turn(name: str = "shell") -> Message:
    return Message(role=Role.ASSISTANT, tool_calls=[ToolCall(id="t1", name=name, input={})])


def _names(msgs: list[SteeringMessage]) -> list[str]:
    return [m.content.split('"')[1] for m in msgs]


class TestTemplates:
    def test_wrap(self):
        assert wrap_steering("x", "  body\n") == f'<steering name="x">\nbody\n{STEERING_FOOTER}\n</steering>'

    def test_task_list(self):
        tasks = [
            WorkTask("1", "plan", TaskStatus.COMPLETED),
            WorkTask("2", "build", TaskStatus.IN_PROGRESS),
            WorkTask("3", "ship"),
        ]
        assert format_task_list(tasks) == "  [✓] plan\n  [→] build\n  [ ] ship\n"


class TestHistoryHelpers:
    def test_turns_since_tool_use(self):
        messages = [_tool_turn(), *_chat(3)]
        assert count_turns_since_tool_use(messages) == 3
        assert count_turns_since_tool_use(_chat(3)) == -1
        assert count_turns_since_tool_use(messages, "agent") == -1


class TestGenerators:
    def test_identity_guard_every_eighth_turn(self):
        assert generators.identity_guard(Context(messages=_chat(7))) == []
        assert len(generators.identity_guard(Context(messages=_chat(8)))) == 1
        assert generators.identity_guard(Context(messages=_chat(9))) == []
        assert len(generators.identity_guard(Context(messages=_chat(16)))) == 1

    def test_channel_adapter(self):
        [msg] = generators.channel_adapter(Context(channel="cli"))
        assert "CLI terminal" in msg.content
        assert generators.channel_adapter(Context(channel="web")) == []
        assert generators.channel_adapter(Context(channel="")) == []
        assert generators.channel_adapter(Context(channel="fax")) == []

    def test_tool_nudge(self):
        assert len(generators.tool_nudge(Context(active_task="fix bug", messages=_chat(5)))) == 1
        assert generators.tool_nudge(Context(active_task="", messages=_chat(5))) == []
        assert generators.tool_nudge(Context(active_task="fix bug", messages=_chat(4))) == []
        recent_tool = [*_chat(5), _tool_turn(), *_chat(2)]
        assert generators.tool_nudge(Context(active_task="fix bug", messages=recent_tool)) == []

    def test_compaction_recovery(self):
        assert generators.compaction_recovery(Context()) == []
        [msg] = generators.compaction_recovery(Context(just_compacted=True))
        assert "compaction_recovery" in msg.content

    def test_datetime_refresh(self):
        late = T0 + timedelta(minutes=31)
        [msg] = generators.datetime_refresh(Context(iteration=5, run_start_time=T0, now=late))
        assert "Current time is now March 01, 2026 09:31 AM UTC" in msg.content
        assert generators.datetime_refresh(Context(iteration=4, run_start_time=T0, now=late)) == []
        early = T0 + timedelta(minutes=10)
        assert generators.datetime_refresh(Context(iteration=5, run_start_time=T0, now=early)) == []
        assert generators.datetime_refresh(Context(iteration=5, now=late)) == []

    def test_memory_nudge(self):
        messages = [*_chat(9), *_chat(1, user_text="From now on, I prefer tabs")]
        assert len(generators.memory_nudge(Context(messages=messages))) == 1
        assert generators.memory_nudge(Context(messages=_chat(10))) == []
        assert generators.memory_nudge(Context(messages=_chat(3, user_text="i prefer tabs"))) == []

    def test_memory_nudge_quiet_after_memory_write(self):
        messages = [*_chat(9), _tool_turn("agent"), *_chat(1, user_text="I prefer tabs")]
        assert generators.memory_nudge(Context(messages=messages)) == []

    def test_objective_task_nudge(self):
        assert len(generators.objective_task_nudge(Context(active_task="ship", messages=_chat(2)))) == 1
        with_tasks = Context(active_task="ship", messages=_chat(2), work_tasks=[WorkTask("1", "a")])
        assert generators.objective_task_nudge(with_tasks) == []

    def test_pending_task_action(self):
        tasks = [WorkTask("1", "write tests"), WorkTask("2", "done already", TaskStatus.COMPLETED)]
        [msg] = generators.pending_task_action(Context(iteration=2, work_tasks=tasks, messages=_chat(1)))
        assert "  [ ] write tests\n" in msg.content
        assert generators.pending_task_action(Context(iteration=1, work_tasks=tasks, messages=_chat(1))) == []
        after_tool = [*_chat(1), _tool_turn()]
        assert generators.pending_task_action(Context(iteration=2, work_tasks=tasks, messages=after_tool)) == []
        all_done = [WorkTask("1", "x", TaskStatus.COMPLETED)]
        assert generators.pending_task_action(Context(iteration=2, work_tasks=all_done, messages=_chat(1))) == []

    def test_task_progress(self):
        tasks = [WorkTask("1", "build")]
        assert len(generators.task_progress(Context(iteration=8, work_tasks=tasks))) == 1
        assert generators.task_progress(Context(iteration=9, work_tasks=tasks)) == []
        assert generators.task_progress(Context(iteration=8)) == []


class TestQuotaWarning:
    def _ctx(self, session_id="s1", **rl) -> Context:
        return Context(session_id=session_id, rate_limit=RateLimitInfo(**rl))

    def test_session_window(self):
        warning = generators.QuotaWarning()
        [msg] = warning(self._ctx(session_limit_tokens=80_000, session_remaining_tokens=10_000))
        assert "87% used (session window running low)" in msg.content

    def test_weekly_window(self):
        warning = generators.QuotaWarning()
        [msg] = warning(self._ctx(weekly_limit_tokens=1000, weekly_remaining_tokens=125))
        assert "87% used (weekly window running low)" in msg.content

    def test_both_windows(self):
        warning = generators.QuotaWarning()
        [msg] = warning(self._ctx(
            session_limit_tokens=800, session_remaining_tokens=100,
            weekly_limit_tokens=1600, weekly_remaining_tokens=100,
        ))
        assert "93% used (both session and weekly window running low)" in msg.content

    def test_once_per_session(self):
        warning = generators.QuotaWarning()
        low = {"session_limit_tokens": 100, "session_remaining_tokens": 10}
        assert len(warning(self._ctx("s1", **low))) == 1
        assert warning(self._ctx("s1", **low)) == []
        assert len(warning(self._ctx("s2", **low))) == 1
        warning.reset()
        assert len(warning(self._ctx("s1", **low))) == 1

    def test_healthy_or_unknown(self):
        warning = generators.QuotaWarning()
        assert warning(Context()) == []
        assert warning(self._ctx()) == []
        assert warning(self._ctx(session_limit_tokens=100, session_remaining_tokens=50)) == []


class TestPipeline:
    def test_substitutes_agent_name(self):
        pipeline = Pipeline()
        msgs = pipeline.generate(Context(messages=_chat(8), agent_name="Nebo"))
        assert _names(msgs) == ["identity_guard"]
        assert "You are Nebo" in msgs[0].content
        assert "{agent_name}" not in msgs[0].content

    def test_order_follows_generators(self):
        ctx = Context(messages=_chat(8), channel="cli", just_compacted=True)
        assert _names(Pipeline().generate(ctx)) == ["identity_guard", "channel_adapter", "compaction_recovery"]

    def test_failing_generator_isolated(self):
        def broken(ctx):
            raise RuntimeError("boom")

        pipeline = Pipeline([("broken", broken), ("compaction_recovery", generators.compaction_recovery)])
        assert _names(pipeline.generate(Context(just_compacted=True))) == ["compaction_recovery"]

    def test_nothing_to_say(self):
        assert Pipeline().generate(Context()) == []

    def test_reset_clears_quota_state(self):
        pipeline = Pipeline()
        ctx = Context(session_id="s1", rate_limit=RateLimitInfo(session_limit_tokens=100, session_remaining_tokens=1))
        assert len(pipeline.generate(ctx)) == 1
        assert pipeline.generate(ctx) == []
        pipeline.reset()
        assert len(pipeline.generate(ctx)) == 1


class TestInject:
    def test_end_and_after_user(self):
        messages = [
            Message(role=Role.USER, content="q1"),
            Message(role=Role.ASSISTANT, content="a1"),
            Message(role=Role.USER, content="q2"),
            Message(role=Role.ASSISTANT, content="a2"),
        ]
        steering = [SteeringMessage("end"), SteeringMessage("after", Position.AFTER_USER)]
        result = inject(messages, steering)
        assert [m.content for m in result] == ["q1", "a1", "q2", "after", "a2", "end"]
        assert all(m.role == Role.USER for m in result if m.content in ("after", "end"))
        assert len(messages) == 4

    def test_no_steering_returns_input(self):
        messages = [Message(role=Role.USER, content="q")]
        assert inject(messages, []) is messages

    def test_after_user_without_user_dropped(self):
        messages = [Message(role=Role.ASSISTANT, content="a")]
        result = inject(messages, [SteeringMessage("x", Position.AFTER_USER)])
        assert [m.content for m in result] == ["a"]
