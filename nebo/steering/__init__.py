"""Steering -- ephemeral, never-persisted guidance for the model.

Public API:
    Pipeline     - runs the generators, owns per-session warning state
    Context      - read-only run snapshot handed to every generator
    inject()     - merges SteeringMessages into a request's message list
"""

from nebo.steering.context import Context, Position, SteeringMessage, TaskStatus, WorkTask
from nebo.steering.generators import QuotaWarning, format_task_list
from nebo.steering.pipeline import Pipeline, inject
from nebo.steering.templates import wrap_steering

__all__ = [
    "Context",
    "Pipeline",
    "Position",
    "QuotaWarning",
    "SteeringMessage",
    "TaskStatus",
    "WorkTask",
    "format_task_list",
    "inject",
    "wrap_steering",
]
