"""Provider layer -- one StreamEvent contract over every model backend.

Public API:
    AnthropicProvider, OpenAIProvider, OllamaProvider, CLIProvider
    EventStream        - async iterator returned by Provider.stream()
    ModelSelector      - task routing with failure cooldowns
    FuzzyMatcher       - loose model-name resolution
    DedupeCache, ApiErrorDeduper
"""

from nebo.ai.anthropic import AnthropicProvider
from nebo.ai.base import EventStream, ModelOverrideProvider, ProfiledProvider, ProfileTracker, Provider
from nebo.ai.cli import CLIProvider
from nebo.ai.dedupe import ApiErrorDeduper, DedupeCache
from nebo.ai.errors import ProviderError
from nebo.ai.fuzzy import FuzzyMatcher, parse_model_request
from nebo.ai.models_config import ModelsConfig, load_models_config
from nebo.ai.ollama import OllamaProvider
from nebo.ai.openai import OpenAIProvider
from nebo.ai.selector import ModelSelector, TaskType, parse_model_id
from nebo.ai.types import (
    ChatRequest,
    EventType,
    Message,
    RateLimitInfo,
    Role,
    StreamEvent,
    ToolCall,
    ToolDefinition,
    ToolResult,
)

__all__ = [
    "AnthropicProvider",
    "ApiErrorDeduper",
    "CLIProvider",
    "ChatRequest",
    "DedupeCache",
    "EventStream",
    "EventType",
    "FuzzyMatcher",
    "Message",
    "ModelOverrideProvider",
    "ModelSelector",
    "ModelsConfig",
    "OllamaProvider",
    "OpenAIProvider",
    "ProfileTracker",
    "ProfiledProvider",
    "Provider",
    "ProviderError",
    "RateLimitInfo",
    "Role",
    "StreamEvent",
    "TaskType",
    "ToolCall",
    "ToolDefinition",
    "ToolResult",
    "load_models_config",
    "parse_model_id",
    "parse_model_request",
]
