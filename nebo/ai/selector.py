"""Task-aware model selection with failure cooldowns.

Model ids are "provider/model". A model is usable when it is not excluded
for this call, not cooling down, and available: its provider has a loaded
instance (or, for CLI providers, the binary is installed, enabled and
declares the model).
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from nebo.ai.models_config import CLIRegistry, ModelInfo, ModelsConfig, is_cli_provider
from nebo.ai.types import Message, Role

logger = logging.getLogger(__name__)

COOLDOWN_BASE_SECONDS = 5
COOLDOWN_MAX_SECONDS = 3600

AUDIO_KEYWORDS = (
    "transcribe", "transcription", "audio", "voice", "speech to text",
    "speech-to-text", "text to speech", "text-to-speech", "tts", "stt",
    "dictation", "recording", "podcast", "listen to", "voice memo", "voice note",
)

REASONING_KEYWORDS = (
    "think through", "analyze", "prove", "complex", "step by step", "reasoning",
    "logical", "deduce", "infer", "evaluate", "compare and contrast",
    "weigh the options", "consider all", "philosophical", "mathematical proof",
    "derive", "formalize",
)

CODE_KEYWORDS = (
    "code", "function", "implement", "refactor", "debug", "fix the bug",
    "write a program", "create a script", "programming", "algorithm", "class",
    "method", "variable", "syntax", "compile", "runtime", "api", "endpoint",
    "database query", "sql", "javascript", "python", "golang", "typescript",
    "react", "vue", "html", "css",
)

_THINKING_CAPABILITIES = {"thinking", "reasoning", "extended_thinking"}


class TaskType(StrEnum):
    VISION = "vision"
    AUDIO = "audio"
    REASONING = "reasoning"
    CODE = "code"
    GENERAL = "general"


@dataclass
class ModelCooldownState:
    failure_count: int = 0
    failed_at: float = 0.0
    cooldown_until: float = 0.0


def parse_model_id(model_id: str) -> tuple[str, str]:
    """Split "provider/model" into its parts; no slash means no provider."""
    provider, sep, model = model_id.partition("/")
    if not sep:
        return "", model_id
    return provider, model


def _json_parts(content: str) -> list[dict]:
    if not content.startswith("["):
        return []
    try:
        parts = json.loads(content)
    except json.JSONDecodeError:
        return []
    return [p for p in parts if isinstance(p, dict)] if isinstance(parts, list) else []


def _looks_like_base64_image(content: str) -> bool:
    s = content.replace("\n", "").replace(" ", "")
    if s.startswith("data:image/"):
        return True
    if len(s) <= 100:
        return False
    try:
        base64.b64decode(s[:100], validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def has_image_content(messages: list[Message]) -> bool:
    for msg in messages:
        if msg.role != Role.USER:
            continue
        content = msg.content.strip()
        if any(p.get("type") in ("image", "image_url") for p in _json_parts(content)):
            return True
        if "data:image/" in content:
            return True
        if len(content) > 1000 and _looks_like_base64_image(content):
            return True
    return False


def has_audio_content(messages: list[Message]) -> bool:
    for msg in messages:
        if msg.role != Role.USER:
            continue
        content = msg.content.strip()
        if any(p.get("type") in ("audio", "input_audio") for p in _json_parts(content)):
            return True
        if "data:audio/" in content:
            return True
    return False


def classify_task(messages: list[Message]) -> TaskType:
    """Media first, then keyword lists against the latest user message."""
    if has_image_content(messages):
        return TaskType.VISION
    if has_audio_content(messages):
        return TaskType.AUDIO

    last_user = ""
    for msg in reversed(messages):
        if msg.role == Role.USER and msg.content:
            last_user = msg.content.lower()
            break
    if not last_user:
        return TaskType.GENERAL

    if any(kw in last_user for kw in AUDIO_KEYWORDS):
        return TaskType.AUDIO
    if any(kw in last_user for kw in REASONING_KEYWORDS):
        return TaskType.REASONING
    if any(kw in last_user for kw in CODE_KEYWORDS):
        return TaskType.CODE
    return TaskType.GENERAL


class ModelSelector:
    """Routes a conversation to a model and tracks per-model cooldowns.

    One instance is shared by all runs; cooldowns, exclusions and the
    provider sets are lock-guarded. clear_failed() resets failure state.
    """

    def __init__(
        self,
        config: ModelsConfig,
        cli_registry: CLIRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._cli = cli_registry or CLIRegistry()
        self._clock = clock
        self._lock = threading.RLock()
        self._excluded: set[str] = set()
        self._cooldowns: dict[str, ModelCooldownState] = {}
        self._runtime_providers: set[str] = set()
        self._loaded_providers: set[str] | None = None  # None until providers are built

    def set_runtime_providers(self, provider_ids: list[str]) -> None:
        with self._lock:
            self._runtime_providers = set(provider_ids)

    def set_loaded_providers(self, provider_ids: list[str]) -> None:
        with self._lock:
            self._loaded_providers = set(provider_ids)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def classify_task(self, messages: list[Message]) -> TaskType:
        return classify_task(messages)

    def select(self, messages: list[Message]) -> str:
        return self.select_with_exclusions(messages, [])

    def select_with_exclusions(self, messages: list[Message], exclude: list[str]) -> str:
        task = classify_task(messages)
        model = self._select_for_task(task, set(exclude))
        logger.debug("Selected %r for task %s", model, task)
        return model

    def _select_for_task(self, task: TaskType, exclude: set[str]) -> str:
        with self._lock:
            excluded = exclude | self._excluded

        def usable(model_id: str) -> bool:
            return (
                bool(model_id)
                and model_id not in excluded
                and not self.is_in_cooldown(model_id)
                and self.is_model_available(model_id)
            )

        routing = self.config.task_routing
        if routing is None:
            defaults = self.config.defaults
            if defaults is None:
                return ""
            for candidate in [defaults.primary, *defaults.fallbacks]:
                if usable(candidate):
                    return candidate
            return ""

        primary = routing.primary_for(task)
        if usable(primary):
            return primary
        for candidate in routing.fallbacks.get(str(task), []):
            if usable(candidate):
                return candidate
        if task != TaskType.GENERAL and usable(routing.general):
            return routing.general
        return ""

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def mark_failed(self, model_id: str) -> None:
        """Exclude a model and put it in cooldown: 5s, 10s, 20s ... capped at one hour."""
        now = self._clock()
        with self._lock:
            self._excluded.add(model_id)
            state = self._cooldowns.setdefault(model_id, ModelCooldownState())
            state.failure_count += 1
            state.failed_at = now
            backoff = min(COOLDOWN_BASE_SECONDS << (state.failure_count - 1), COOLDOWN_MAX_SECONDS)
            state.cooldown_until = now + backoff
        logger.warning("Model %s failed (%d), cooling down for %ds", model_id, state.failure_count, backoff)

    def is_in_cooldown(self, model_id: str) -> bool:
        with self._lock:
            state = self._cooldowns.get(model_id)
            return state is not None and self._clock() < state.cooldown_until

    def get_cooldown_remaining(self, model_id: str) -> float:
        """Seconds left in the model's cooldown, 0 when none."""
        with self._lock:
            state = self._cooldowns.get(model_id)
            if state is None:
                return 0.0
            return max(state.cooldown_until - self._clock(), 0.0)

    def clear_failed(self) -> None:
        with self._lock:
            self._excluded = set()
            self._cooldowns = {}

    # ------------------------------------------------------------------
    # Availability and catalog lookups
    # ------------------------------------------------------------------

    def is_model_available(self, model_id: str) -> bool:
        provider_id, model_name = parse_model_id(model_id)
        if not provider_id:
            return False

        cli = self._cli.get(provider_id)
        if cli is not None:
            if not cli.active or not cli.installed:
                return False
            if model_name and cli.models:
                return model_name in cli.models
            return True

        with self._lock:
            loaded = self._loaded_providers
            runtime = provider_id in self._runtime_providers
        is_loaded = loaded is not None and provider_id in loaded

        if loaded is not None and not is_loaded:
            return False
        if loaded is None and not runtime and self.config.credentials is not None:
            creds = self.config.credentials.get(provider_id)
            if creds is None or not creds.has_any():
                return False

        models = self.config.providers.get(provider_id)
        if models is None:
            return is_loaded
        return any(m.id == model_name and m.is_active() for m in models)

    def get_model_info(self, model_id: str) -> ModelInfo | None:
        provider_id, model_name = parse_model_id(model_id)
        if not provider_id:
            return None
        for m in self.config.providers.get(provider_id, []):
            if m.id == model_name:
                return m
        return None

    def get_provider_models(self, provider_id: str) -> list[ModelInfo]:
        return list(self.config.providers.get(provider_id, []))

    def supports_thinking(self, model_id: str) -> bool:
        info = self.get_model_info(model_id)
        if info is not None and _THINKING_CAPABILITIES & set(info.capabilities):
            return True
        lower = model_id.lower()
        return "opus" in lower or "o1" in lower or "o3" in lower

    def get_cheapest_model(self) -> str:
        """Cheapest active API model for background work.

        Ranked by input + 2*output price (extraction is output-heavy), then
        the first model tagged "cheap", then "fast", then any active model.
        """
        candidates: list[tuple[str, ModelInfo]] = []
        for provider_id in sorted(self.config.providers):
            if not self._is_api_provider(provider_id):
                continue
            for m in self.config.providers[provider_id]:
                if m.is_active():
                    candidates.append((f"{provider_id}/{m.id}", m))

        cheapest, cheapest_cost = "", -1.0
        for model_id, m in candidates:
            if m.pricing is not None and (m.pricing.input > 0 or m.pricing.output > 0):
                cost = m.pricing.input + m.pricing.output * 2
                if cheapest_cost < 0 or cost < cheapest_cost:
                    cheapest, cheapest_cost = model_id, cost
        if cheapest:
            return cheapest

        for tag in ("cheap", "fast"):
            for model_id, m in candidates:
                if tag in (k.lower() for k in m.kind):
                    return model_id

        return candidates[0][0] if candidates else ""

    def _is_api_provider(self, provider_id: str) -> bool:
        if self.config.credentials is None:
            return not is_cli_provider(provider_id)
        creds = self.config.credentials.get(provider_id)
        return creds is not None and bool(creds.api_key or creds.base_url)
