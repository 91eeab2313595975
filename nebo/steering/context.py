"""Types the steering generators read and return, plus history helpers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from nebo.ai.types import Message, RateLimitInfo, Role


class Position(StrEnum):
    END = "end"
    AFTER_USER = "after_user"  # right after the last user message


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class WorkTask:
    id: str
    subject: str
    status: TaskStatus = TaskStatus.PENDING


@dataclass
class SteeringMessage:
    content: str
    position: Position = Position.END


@dataclass
class Context:
    """Read-only view of the run that generators decide on."""

    session_id: str = ""
    messages: list[Message] = field(default_factory=list)
    user_prompt: str = ""  # empty on tool-result turns
    active_task: str = ""
    channel: str = ""
    agent_name: str = ""
    iteration: int = 1  # 1-based
    run_start_time: datetime | None = None
    work_tasks: list[WorkTask] = field(default_factory=list)
    rate_limit: RateLimitInfo | None = None
    just_compacted: bool = False
    now: datetime | None = None  # wall clock override

    def current_time(self) -> datetime:
        return self.now or datetime.now().astimezone()


GeneratorFn = Callable[[Context], list[SteeringMessage]]


# ------------------------------------------------------------------
# History helpers for generators
# ------------------------------------------------------------------


def count_assistant_turns(messages: list[Message]) -> int:
    """Assistant messages with text content."""
    return sum(1 for m in messages if m.role == Role.ASSISTANT and m.content)


def count_turns_since_tool_use(messages: list[Message], name_contains: str = "") -> int:
    """Text assistant turns since the last matching tool call, -1 if none.

    The turn that made the call is not counted. An empty name matches any tool.
    """
    turns = 0
    for m in reversed(messages):
        if m.role != Role.ASSISTANT:
            continue
        if any(name_contains in tc.name for tc in m.tool_calls):
            return turns
        if m.content:
            turns += 1
    return -1


def last_user_messages_contain(messages: list[Message], n: int, patterns: tuple[str, ...]) -> bool:
    found = 0
    for m in reversed(messages):
        if found >= n:
            break
        if m.role != Role.USER:
            continue
        found += 1
        lower = m.content.lower()
        if any(p in lower for p in patterns):
            return True
    return False
