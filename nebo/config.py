"""Settings via pydantic-settings with NEBO_ env prefix.

Vendor credentials use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...) the vendor SDKs use, so one
.env file serves both.
"""

from dataclasses import dataclass

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


@dataclass(frozen=True)
class PruningConfig:
    """Two-stage context pruning settings.

    Stage 1 (soft trim) starts at soft_trim_ratio of the budget and keeps
    head + tail of large tool results. Stage 2 (hard clear) starts at
    hard_clear_ratio and replaces them with a placeholder.
    """

    context_tokens: int = 200000
    soft_trim_ratio: float = 0.3
    hard_clear_ratio: float = 0.5
    keep_last_assistant: int = 3
    soft_trim_max_chars: int = 4000
    soft_trim_head: int = 1500
    soft_trim_tail: int = 1500
    hard_clear_placeholder: str = "[Old tool result cleared]"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="NEBO_", env_file=".env", extra="ignore")

    log_level: str = "info"

    # Agent identity
    agent_name: str = "Nebo"
    channel: str = "web"  # web, cli, dm, voice

    # Provider credentials; unprefixed aliases match vendor SDK env vars
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-sonnet-4-5"
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    openai_base_url: str = Field("https://api.openai.com/v1", validation_alias="OPENAI_BASE_URL")
    openai_model: str = "gpt-5.2"
    ollama_base_url: str = Field("", validation_alias="OLLAMA_BASE_URL")
    ollama_model: str = ""
    cli_providers: list[str] = Field(default_factory=list)  # e.g. ["claude-code"]
    cli_max_turns: int = 0  # 0 = unlimited

    # Model routing table (models.yaml)
    models_file: str = "models.yaml"

    # Built-in file and shell tools are confined here
    workspace_dir: str = "/tmp/nebo-workspace"

    # HTTP
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds, streaming bodies can be slow
    event_queue_size: int = 100

    # Agentic loop
    max_iterations: int = 100
    max_context: int = 50  # messages loaded per iteration
    context_token_limit: int = 6000  # proactive compaction above this
    memory_flush_threshold: int = 4500
    memory_flush_timeout: float = 45.0
    memory_extract_timeout: float = 60.0
    micro_compact_warning_tokens: int = 4000

    # Context pruning
    prune_context_tokens: int = 200000
    prune_soft_trim_ratio: float = 0.3
    prune_hard_clear_ratio: float = 0.5
    prune_keep_last_assistant: int = 3
    prune_soft_trim_max_chars: int = 4000
    prune_soft_trim_head: int = 1500
    prune_soft_trim_tail: int = 1500
    prune_hard_clear_placeholder: str = "[Old tool result cleared]"

    @model_validator(mode="after")
    def _validate_pruning(self) -> "Settings":
        for name in ("prune_soft_trim_ratio", "prune_hard_clear_ratio"):
            value = getattr(self, name)
            if not 0 < value <= 1:
                raise ValueError(f"{name} must be in (0, 1], got {value}")
        if self.prune_soft_trim_ratio > self.prune_hard_clear_ratio:
            raise ValueError(
                f"prune_soft_trim_ratio ({self.prune_soft_trim_ratio}) must be <= "
                f"prune_hard_clear_ratio ({self.prune_hard_clear_ratio})"
            )
        if self.prune_soft_trim_head + self.prune_soft_trim_tail >= self.prune_soft_trim_max_chars:
            raise ValueError("prune_soft_trim_head + prune_soft_trim_tail must be < prune_soft_trim_max_chars")
        return self

    @property
    def pruning(self) -> PruningConfig:
        return PruningConfig(
            context_tokens=self.prune_context_tokens,
            soft_trim_ratio=self.prune_soft_trim_ratio,
            hard_clear_ratio=self.prune_hard_clear_ratio,
            keep_last_assistant=self.prune_keep_last_assistant,
            soft_trim_max_chars=self.prune_soft_trim_max_chars,
            soft_trim_head=self.prune_soft_trim_head,
            soft_trim_tail=self.prune_soft_trim_tail,
            hard_clear_placeholder=self.prune_hard_clear_placeholder,
        )
