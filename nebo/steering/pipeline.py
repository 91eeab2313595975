"""Steering pipeline -- ephemeral guidance injected into each model request.

Steering messages are generated fresh every loop iteration, merged into the
request as user-role messages, and never persisted or shown to the user.
Each generator runs in isolation: an exception in one is logged and treated
as no output.
"""

from __future__ import annotations

import logging

from nebo.ai.types import Message, Role
from nebo.steering.context import Context, GeneratorFn, Position, SteeringMessage
from nebo.steering.generators import QuotaWarning, default_generators

logger = logging.getLogger(__name__)


class Pipeline:
    """Runs every generator in order and collects their messages.

    Owns the per-session state generators need (the quota warning's
    already-warned set); reset() clears it.
    """

    def __init__(self, generators: list[tuple[str, GeneratorFn]] | None = None) -> None:
        self.quota_warning = QuotaWarning()
        self.generators = generators if generators is not None else default_generators(self.quota_warning)

    def generate(self, ctx: Context) -> list[SteeringMessage]:
        msgs: list[SteeringMessage] = []
        for name, fn in self.generators:
            for m in self._safe_generate(name, fn, ctx):
                m.content = m.content.replace("{agent_name}", ctx.agent_name)
                msgs.append(m)
        if msgs:
            logger.info("Generated %d steering messages from %d generators", len(msgs), len(self.generators))
        return msgs

    def _safe_generate(self, name: str, fn: GeneratorFn, ctx: Context) -> list[SteeringMessage]:
        try:
            return list(fn(ctx) or [])
        except Exception:
            logger.exception("Steering generator %s failed", name)
            return []

    def reset(self) -> None:
        self.quota_warning.reset()


def inject(messages: list[Message], steering: list[SteeringMessage]) -> list[Message]:
    """Merge steering into a new message list as user-role messages.

    AFTER_USER messages go right after the last user message (or nowhere if
    there is none); END messages are appended.
    """
    if not steering:
        return messages

    after_user = [s for s in steering if s.position == Position.AFTER_USER]
    end = [s for s in steering if s.position != Position.AFTER_USER]

    last_user = -1
    if after_user:
        for i in range(len(messages) - 1, -1, -1):
            if messages[i].role == Role.USER:
                last_user = i
                break

    result: list[Message] = []
    for i, msg in enumerate(messages):
        result.append(msg)
        if i == last_user:
            result.extend(_to_message(s) for s in after_user)
    result.extend(_to_message(s) for s in end)
    return result


def _to_message(s: SteeringMessage) -> Message:
    return Message(role=Role.USER, content=s.content)
