"""Nebo agent entry point.

Initializes all components and runs the agent from the terminal:
  Settings -> ModelsConfig -> Providers -> Selector -> Tools -> Sessions -> Steering -> Runner

With a prompt argument it runs once and exits; without one it reads
prompts from stdin until EOF or "exit".
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from nebo.ai.anthropic import AnthropicProvider
from nebo.ai.base import HttpProvider, Provider
from nebo.ai.cli import claude_code_provider, codex_cli_provider, gemini_cli_provider
from nebo.ai.fuzzy import FuzzyMatcher
from nebo.ai.models_config import CLIRegistry, load_models_config
from nebo.ai.ollama import OllamaProvider
from nebo.ai.openai import OpenAIProvider
from nebo.ai.selector import ModelSelector
from nebo.ai.types import EventType
from nebo.builtin_tools import register_builtin_tools
from nebo.config import Settings
from nebo.runner.file_tracker import FileAccessTracker
from nebo.runner.memory import InMemoryMemoryStore
from nebo.runner.runner import Runner, RunRequest
from nebo.session import InMemoryConversationStore
from nebo.steering import Pipeline
from nebo.tools import LocalToolRegistry

logger = logging.getLogger(__name__)


def build_providers(settings: Settings, cli_registry: CLIRegistry) -> list[Provider]:
    """One provider per configured backend, API providers first."""
    http_kwargs = {
        "timeout_connect": float(settings.api_timeout_connect),
        "timeout_read": float(settings.api_timeout_read),
        "queue_size": settings.event_queue_size,
    }
    providers: list[Provider] = []
    if settings.anthropic_api_key:
        providers.append(AnthropicProvider(
            settings.anthropic_api_key, settings.anthropic_model, settings.anthropic_base_url, **http_kwargs,
        ))
    if settings.openai_api_key:
        providers.append(OpenAIProvider(
            settings.openai_api_key, settings.openai_model, settings.openai_base_url, **http_kwargs,
        ))
    if settings.ollama_base_url:
        providers.append(OllamaProvider(settings.ollama_base_url, settings.ollama_model, **http_kwargs))

    presets = {
        "claude-code": lambda: claude_code_provider(settings.cli_max_turns),
        "codex-cli": codex_cli_provider,
        "gemini-cli": gemini_cli_provider,
    }
    for provider_id in settings.cli_providers:
        info = cli_registry.get(provider_id)
        if info is None:
            logger.warning("Unknown CLI provider %r, skipping", provider_id)
            continue
        if not info.installed:
            logger.warning("CLI provider %s is enabled but %r is not on PATH (%s)",
                           info.id, info.command, info.install_hint)
            continue
        providers.append(presets[info.id]())
    return providers


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components, for shutdown_components().
    """
    models = load_models_config(settings.models_file)
    cli_registry = CLIRegistry(set(settings.cli_providers))
    providers = build_providers(settings, cli_registry)

    selector = ModelSelector(models, cli_registry)
    selector.set_loaded_providers([p.id() for p in providers])
    fuzzy = FuzzyMatcher(models)

    file_tracker = FileAccessTracker()
    tools = LocalToolRegistry(file_tracker, settings.workspace_dir)
    register_builtin_tools(tools, settings)

    sessions = InMemoryConversationStore()
    memory = InMemoryMemoryStore()
    steering = Pipeline()

    runner = Runner(
        settings,
        sessions,
        providers,
        tools,
        selector=selector,
        fuzzy=fuzzy,
        memory_store=memory,
        steering=steering,
        file_tracker=file_tracker,
    )
    logger.info(
        "Components ready: providers=%s tools=%s",
        [p.id() for p in providers], [t.name for t in tools.list()],
    )
    return {
        "settings": settings,
        "providers": providers,
        "selector": selector,
        "tools": tools,
        "sessions": sessions,
        "memory": memory,
        "runner": runner,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown: drain background work, then close HTTP clients."""
    runner = components.get("runner")
    if runner is not None:
        await runner.wait_background()
    for provider in components.get("providers", []):
        if isinstance(provider, HttpProvider):
            await provider.close()
    logger.info("Nebo shutdown complete.")


async def run_prompt(runner: Runner, prompt: str, session_key: str, model: str = "") -> bool:
    """Run one prompt, printing text as it streams. Returns False on error."""
    if not runner.providers:
        print("No model providers configured. Set ANTHROPIC_API_KEY, OPENAI_API_KEY or OLLAMA_BASE_URL.")
        return False
    events = await runner.run(RunRequest(prompt=prompt, session_key=session_key, model_override=model, channel="cli"))
    ok = True
    async for event in events:
        if event.type == EventType.TEXT:
            print(event.text, end="", flush=True)
        elif event.type == EventType.TOOL_CALL and event.tool_call is not None:
            print(f"\n[tool] {event.tool_call.name}", flush=True)
        elif event.type == EventType.ERROR:
            print(f"\nError: {event.error}", file=sys.stderr)
            ok = False
    print()
    return ok


async def _amain(args: argparse.Namespace, settings: Settings) -> int:
    components = await create_components(settings)
    runner: Runner = components["runner"]
    try:
        if args.prompt:
            ok = await run_prompt(runner, " ".join(args.prompt), args.session, args.model)
            return 0 if ok else 1

        while True:
            try:
                line = await asyncio.to_thread(input, "you> ")
            except EOFError:
                break
            line = line.strip()
            if not line:
                continue
            if line in ("exit", "quit"):
                break
            await run_prompt(runner, line, args.session, args.model)
        return 0
    finally:
        await shutdown_components(components)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nebo local agent (one-shot prompt or interactive chat).")
    parser.add_argument("--session", default="cli", help="Session key; runs with the same key share history.")
    parser.add_argument("--model", default="", help="Model override as provider/model (e.g. anthropic/claude-opus-4-6).")
    parser.add_argument("prompt", nargs="*", help="Prompt to run once. Omit for interactive mode.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry point: parse settings and arguments, then run."""
    settings = Settings()
    args = parse_args(sys.argv[1:] if argv is None else argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting Nebo agent: %s", settings.agent_name)

    if not (settings.anthropic_api_key or settings.openai_api_key or settings.ollama_base_url or settings.cli_providers):
        logger.warning("No provider configured; set ANTHROPIC_API_KEY, OPENAI_API_KEY, OLLAMA_BASE_URL or NEBO_CLI_PROVIDERS")

    sys.exit(asyncio.run(_amain(args, settings)))


if __name__ == "__main__":
    main()
