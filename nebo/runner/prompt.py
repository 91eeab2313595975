"""System prompt assembly.

The static part is built once per run: base prompt, the registered tool
names, model-switching aliases and a closing tool fence. The dynamic suffix
(model, clock, host) and the compaction summary are appended every
iteration.
"""

from __future__ import annotations

import platform
import socket
from datetime import datetime

DEFAULT_SYSTEM_PROMPT = """You are {agent_name}, a local AI agent running on this computer. You have your own tool set, described in your tool definitions. When a user asks what tools you have, ONLY list the tools in your tool definitions and never list tools from your training data.

## Tools
Tools use a resource/action pattern: tool_name(resource: "resource", action: "action", param: "value").
- file: read, write, edit, glob and grep files
- shell: run commands, manage processes and persistent shell sessions
- web: HTTP fetch, web search and browser automation
- agent: sub-agents, scheduled jobs, memory and messaging

## Memory
You have persistent memory that survives across sessions. When the user shares a fact about
themselves, store it with agent(resource: memory, action: store, ...). When the user asks about
past conversations, search memory before answering.

## Behavioral Guidelines
1. Break complex tasks into smaller steps and use tools to gather information before acting
2. If you encounter errors, analyze them and try alternative approaches
3. Always verify your changes work before considering a task complete"""

DEFAULT_IDENTITY = (
    "# Identity\n\nYou are {agent_name}, a personal AI assistant. "
    "Always introduce yourself as {agent_name}."
)

_OS_NAMES = {"darwin": "macOS", "linux": "Linux", "windows": "Windows"}


def build_system_prompt(
    agent_name: str,
    system: str = "",
    tool_names: list[str] | None = None,
    model_aliases: list[str] | None = None,
) -> str:
    prompt = system or DEFAULT_SYSTEM_PROMPT
    if tool_names:
        prompt += (
            "\n\n## Registered Tools (runtime)\nTool names are case-sensitive. Call tools exactly as listed: "
            + ", ".join(tool_names)
            + "\nThese are your ONLY tools. Do not reference or attempt to call any tool not in this list."
        )

    prompt = DEFAULT_IDENTITY + "\n\n---\n\n" + prompt

    if model_aliases:
        prompt += (
            "\n\n## Model Switching\n\nUsers can ask to switch models. Available models:\n"
            + "\n".join(model_aliases)
            + "\n\nWhen a user asks to switch models, acknowledge the request and confirm the switch."
        )

    if tool_names:
        prompt += (
            "\n\n---\nREMINDER: You are {agent_name}. Your ONLY tools are: " + ", ".join(tool_names)
            + ". When a user asks about your capabilities, describe these tools."
        )
    return prompt.replace("{agent_name}", agent_name)


def inject_system_context(system_prompt: str, provider_id: str, model_name: str, now: datetime | None = None) -> str:
    """Append the [System Context] block: model, local date/time, host and OS."""
    now = now or datetime.now().astimezone()
    try:
        hostname = socket.gethostname() or "unknown"
    except OSError:
        hostname = "unknown"
    system = platform.system()
    os_name = _OS_NAMES.get(system.lower(), system or "unknown")

    return (
        f"{system_prompt}\n\n---\n[System Context]\n"
        f"Model: {provider_id}/{model_name}\n"
        f"Date: {now.strftime('%A, %B')} {now.day}, {now.year}\n"
        f"Time: {now.strftime('%I:%M %p').lstrip('0')}\n"
        f"Timezone: {now.tzname() or 'UTC'}\n"
        f"Computer: {hostname}\n"
        f"OS: {os_name} ({platform.machine()})\n"
        "---"
    )


def append_summary(system_prompt: str, summary: str) -> str:
    if not summary:
        return system_prompt
    return f"{system_prompt}\n\n---\n[Previous Conversation Summary]\n{summary}\n---"
