"""The default steering generators, in pipeline order.

Each generator is a plain function Context -> list[SteeringMessage].
QuotaWarning is the only stateful one; its once-per-session memory lives
on the instance owned by the pipeline.
"""

from __future__ import annotations

import threading
from datetime import timedelta

from nebo.steering import templates
from nebo.steering.context import (
    Context,
    GeneratorFn,
    Position,
    SteeringMessage,
    TaskStatus,
    WorkTask,
    count_assistant_turns,
    count_turns_since_tool_use,
    last_user_messages_contain,
)

IDENTITY_INTERVAL = 8
TOOL_NUDGE_TURNS = 5
DATETIME_REFRESH_AFTER = timedelta(minutes=30)
DATETIME_REFRESH_INTERVAL = 5
MEMORY_NUDGE_TURNS = 10
MEMORY_NUDGE_LOOKBACK = 10
TASK_PROGRESS_INTERVAL = 8
QUOTA_WARNING_RATIO = 0.20

_TASK_ICONS = {
    TaskStatus.IN_PROGRESS: "[→]",
    TaskStatus.COMPLETED: "[✓]",
}


def _steer(name: str, content: str, position: Position = Position.END) -> list[SteeringMessage]:
    return [SteeringMessage(templates.wrap_steering(name, content), position)]


def format_task_list(tasks: list[WorkTask]) -> str:
    return "".join(f"  {_TASK_ICONS.get(t.status, '[ ]')} {t.subject}\n" for t in tasks)


# ------------------------------------------------------------------
# Generators
# ------------------------------------------------------------------


def identity_guard(ctx: Context) -> list[SteeringMessage]:
    """Every 8th assistant turn, against identity drift in long conversations."""
    turns = count_assistant_turns(ctx.messages)
    if turns < IDENTITY_INTERVAL or turns % IDENTITY_INTERVAL:
        return []
    return _steer("identity_guard", templates.IDENTITY_GUARD)


def channel_adapter(ctx: Context) -> list[SteeringMessage]:
    if not ctx.channel or ctx.channel == "web":
        return []
    tmpl = templates.CHANNEL_TEMPLATES.get(ctx.channel)
    if tmpl is None:
        return []
    return _steer("channel_adapter", tmpl)


def tool_nudge(ctx: Context) -> list[SteeringMessage]:
    """Active task, 5+ assistant turns, and none of the last 5 used a tool."""
    if not ctx.active_task:
        return []
    since = count_turns_since_tool_use(ctx.messages)
    if since != -1 and since < TOOL_NUDGE_TURNS:
        return []
    if count_assistant_turns(ctx.messages) < TOOL_NUDGE_TURNS:
        return []
    return _steer("tool_nudge", templates.TOOL_NUDGE)


def compaction_recovery(ctx: Context) -> list[SteeringMessage]:
    if not ctx.just_compacted:
        return []
    return _steer("compaction_recovery", templates.COMPACTION_RECOVERY)


def datetime_refresh(ctx: Context) -> list[SteeringMessage]:
    """After 30 minutes of runtime, on every 5th iteration."""
    if ctx.iteration <= 1 or ctx.run_start_time is None:
        return []
    now = ctx.current_time()
    if now - ctx.run_start_time < DATETIME_REFRESH_AFTER:
        return []
    if ctx.iteration % DATETIME_REFRESH_INTERVAL:
        return []
    stamp = now.strftime("%B %d, %Y %I:%M %p %Z").strip()
    return _steer("datetime_refresh", templates.DATETIME_REFRESH.format(now=stamp))


def memory_nudge(ctx: Context) -> list[SteeringMessage]:
    """Self-disclosure in recent user text with no recent memory write."""
    if count_assistant_turns(ctx.messages) < MEMORY_NUDGE_TURNS:
        return []
    # memory writes go through the "agent" tool
    since = count_turns_since_tool_use(ctx.messages, "agent")
    if 0 <= since < MEMORY_NUDGE_TURNS:
        return []
    patterns = templates.SELF_DISCLOSURE_PATTERNS + templates.BEHAVIORAL_PATTERNS
    if not last_user_messages_contain(ctx.messages, MEMORY_NUDGE_LOOKBACK, patterns):
        return []
    return _steer("memory_nudge", templates.MEMORY_NUDGE)


def objective_task_nudge(ctx: Context) -> list[SteeringMessage]:
    if not ctx.active_task or ctx.work_tasks:
        return []
    if count_assistant_turns(ctx.messages) < 2:
        return []
    return _steer("objective_task_nudge", templates.OBJECTIVE_TASK_NUDGE)


def pending_task_action(ctx: Context) -> list[SteeringMessage]:
    """Open tasks remain but the model answered with text only."""
    open_tasks = [t for t in ctx.work_tasks if t.status in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)]
    if not open_tasks or ctx.iteration < 2:
        return []
    if count_turns_since_tool_use(ctx.messages) == 0:
        return []
    content = templates.PENDING_TASK_ACTION.format(tasks=format_task_list(ctx.work_tasks))
    return _steer("pending_task_action", content)


def task_progress(ctx: Context) -> list[SteeringMessage]:
    if not ctx.work_tasks:
        return []
    if ctx.iteration < TASK_PROGRESS_INTERVAL or ctx.iteration % TASK_PROGRESS_INTERVAL:
        return []
    content = templates.TASK_PROGRESS.format(tasks=format_task_list(ctx.work_tasks))
    return _steer("task_progress", content)


class QuotaWarning:
    """Warns once per session when either token window drops below 20%."""

    name = "quota_warning"

    def __init__(self) -> None:
        self._warned: set[str] = set()
        self._lock = threading.Lock()

    def __call__(self, ctx: Context) -> list[SteeringMessage]:
        rl = ctx.rate_limit
        if rl is None or (rl.session_limit_tokens <= 0 and rl.weekly_limit_tokens <= 0):
            return []
        session_ratio = (
            rl.session_remaining_tokens / rl.session_limit_tokens if rl.session_limit_tokens > 0 else 1.0
        )
        weekly_ratio = (
            rl.weekly_remaining_tokens / rl.weekly_limit_tokens if rl.weekly_limit_tokens > 0 else 1.0
        )
        if session_ratio >= QUOTA_WARNING_RATIO and weekly_ratio >= QUOTA_WARNING_RATIO:
            return []

        with self._lock:
            if ctx.session_id in self._warned:
                return []
            self._warned.add(ctx.session_id)

        if session_ratio < QUOTA_WARNING_RATIO and weekly_ratio < QUOTA_WARNING_RATIO:
            window, ratio = "both session and weekly", min(session_ratio, weekly_ratio)
        elif session_ratio < weekly_ratio:
            window, ratio = "session", session_ratio
        else:
            window, ratio = "weekly", weekly_ratio
        pct_used = int(100 - ratio * 100)
        return _steer(self.name, templates.QUOTA_WARNING.format(pct_used=pct_used, window=window))

    def reset(self) -> None:
        with self._lock:
            self._warned = set()


def default_generators(quota_warning: QuotaWarning) -> list[tuple[str, GeneratorFn]]:
    return [
        ("identity_guard", identity_guard),
        ("channel_adapter", channel_adapter),
        ("tool_nudge", tool_nudge),
        ("compaction_recovery", compaction_recovery),
        ("datetime_refresh", datetime_refresh),
        ("memory_nudge", memory_nudge),
        ("objective_task_nudge", objective_task_nudge),
        ("pending_task_action", pending_task_action),
        ("task_progress", task_progress),
        (quota_warning.name, quota_warning),
    ]
