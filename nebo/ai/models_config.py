"""Declarative model catalog (models.yaml) and the known CLI provider registry.

Example::

    credentials:
      anthropic: {api_key: "${ANTHROPIC_API_KEY}"}
      ollama: {base_url: "http://localhost:11434"}
    defaults:
      primary: anthropic/claude-sonnet-4-5
      fallbacks: [openai/gpt-5-mini]
    task_routing:
      general: anthropic/claude-sonnet-4-5
      reasoning: anthropic/claude-opus-4-1
      fallbacks:
        reasoning: [openai/o3]
    aliases:
      - {alias: sonnet, modelId: anthropic/claude-sonnet-4-5}
    providers:
      anthropic:
        - id: claude-sonnet-4-5
          displayName: Claude Sonnet 4.5
          contextWindow: 200000
          pricing: {input: 3.0, output: 15.0}
          capabilities: [vision, tools, thinking]
          kind: [smart, code]
          preferred: true
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ModelPricing(_Model):
    """Dollars per million tokens."""

    input: float = 0.0
    output: float = 0.0
    cached_input: float = Field(0.0, alias="cachedInput")


class ModelInfo(_Model):
    id: str
    display_name: str = Field("", alias="displayName")
    context_window: int = Field(0, alias="contextWindow")
    pricing: ModelPricing | None = None
    capabilities: list[str] = Field(default_factory=list)
    kind: list[str] = Field(default_factory=list)  # semantic tags: fast, smart, code, cheap
    preferred: bool = False
    active: bool | None = None  # unset means active

    def is_active(self) -> bool:
        return self.active is None or self.active


class ProviderCredentials(_Model):
    api_key: str = ""
    base_url: str = ""
    command: str = ""  # CLI providers
    args: str = ""

    def has_any(self) -> bool:
        return bool(self.api_key or self.base_url or self.command)


class TaskRouting(_Model):
    vision: str = ""
    audio: str = ""
    reasoning: str = ""
    code: str = ""
    general: str = ""
    fallbacks: dict[str, list[str]] = Field(default_factory=dict)

    def primary_for(self, task: str) -> str:
        if task in ("vision", "audio", "reasoning", "code"):
            return getattr(self, task)
        return self.general


class Defaults(_Model):
    primary: str = ""
    fallbacks: list[str] = Field(default_factory=list)


class ModelAlias(_Model):
    alias: str
    model_id: str = Field(alias="modelId")


class ModelsConfig(_Model):
    version: str = "1.0"
    credentials: dict[str, ProviderCredentials] | None = None
    defaults: Defaults | None = None
    task_routing: TaskRouting | None = None
    aliases: list[ModelAlias] = Field(default_factory=list)
    providers: dict[str, list[ModelInfo]] = Field(default_factory=dict)

    def get_credentials(self, provider_id: str) -> ProviderCredentials | None:
        if self.credentials is None:
            return None
        return self.credentials.get(provider_id)


def _expand_env(value: object) -> object:
    if isinstance(value, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    return value


def parse_models_config(text: str) -> ModelsConfig:
    """Parse models.yaml content; ${VAR} references are read from the environment."""
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError("models config must be a mapping")
    return ModelsConfig.model_validate(_expand_env(data))


def load_models_config(path: str | Path) -> ModelsConfig:
    """Load models.yaml; a missing file yields an empty catalog."""
    path = Path(path)
    if not path.exists():
        logger.info("No models file at %s, starting with an empty catalog", path)
        return ModelsConfig()
    config = parse_models_config(path.read_text())
    logger.info(
        "Loaded models from %s: %d providers, %d aliases",
        path, len(config.providers), len(config.aliases),
    )
    return config


# ------------------------------------------------------------------
# CLI providers
# ------------------------------------------------------------------


@dataclass
class CLIProviderInfo:
    id: str
    display_name: str
    command: str
    install_hint: str = ""
    models: list[str] = field(default_factory=list)
    installed: bool = False
    path: str = ""
    active: bool = False


KNOWN_CLI_PROVIDERS: tuple[CLIProviderInfo, ...] = (
    CLIProviderInfo("claude-code", "Claude Code CLI", "claude", "brew install claude-code",
                    ["opus", "sonnet", "haiku"]),
    CLIProviderInfo("codex-cli", "OpenAI Codex CLI", "codex", "npm i -g @openai/codex",
                    ["gpt-5.2", "o3", "o4-mini"]),
    CLIProviderInfo("gemini-cli", "Gemini CLI", "gemini", "npm i -g @google/gemini-cli",
                    ["gemini-3-flash", "gemini-3-pro"]),
)

# credential keys used for CLI providers in models.yaml
CLI_COMMAND_ALIASES = {"claude": "claude-code", "codex": "codex-cli", "gemini": "gemini-cli"}


def is_cli_provider(provider_id: str) -> bool:
    return any(p.id == provider_id for p in KNOWN_CLI_PROVIDERS) or provider_id in CLI_COMMAND_ALIASES


class CLIRegistry:
    """Known CLI providers with install state resolved against PATH.

    active is the set of CLI provider ids the user enabled; a CLI that is
    installed but not enabled is never selected.
    """

    def __init__(self, active: set[str] | None = None, which=shutil.which) -> None:
        self._active = {CLI_COMMAND_ALIASES.get(a, a) for a in (active or set())}
        self._which = which

    def get(self, provider_id: str) -> CLIProviderInfo | None:
        provider_id = CLI_COMMAND_ALIASES.get(provider_id, provider_id)
        for known in KNOWN_CLI_PROVIDERS:
            if known.id == provider_id:
                path = self._which(known.command) or ""
                return CLIProviderInfo(
                    id=known.id,
                    display_name=known.display_name,
                    command=known.command,
                    install_hint=known.install_hint,
                    models=list(known.models),
                    installed=bool(path),
                    path=path,
                    active=known.id in self._active,
                )
        return None

    def installed(self) -> list[CLIProviderInfo]:
        infos = [self.get(p.id) for p in KNOWN_CLI_PROVIDERS]
        return [i for i in infos if i is not None and i.installed]
