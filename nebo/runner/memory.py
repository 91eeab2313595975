"""Memory extraction -- durable facts pulled out of a conversation.

Runs after a completed turn and before compaction. Uses whatever provider
the runner hands it (normally the cheapest model) and never raises into
the foreground; callers wrap extract() with a timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from nebo.ai.base import Provider, collect_text
from nebo.ai.types import ChatRequest, Message, Role

logger = logging.getLogger(__name__)

EXTRACT_MESSAGE_LIMIT = 50
MIN_MESSAGES_FOR_EXTRACTION = 2

_EXTRACT_PROMPT = """Analyze the following conversation and extract durable facts that should be remembered long-term.

Return a JSON object with three arrays:
1. "preferences" - User preferences and learned behaviors (e.g., code style, favorite tools, communication preferences)
2. "entities" - Information about people, places, projects mentioned (format key as "type/name", e.g., "person/sarah", "project/nebo")
3. "decisions" - Important decisions made during this conversation

Each fact should have:
- "key": A unique, descriptive key for retrieval (use path-like format: "category/name")
- "value": The actual information to remember
- "category": One of "preference", "entity", "decision"
- "tags": Relevant tags for searching

Skip:
- Greetings and casual chat
- Temporary or time-sensitive information
- Technical details that are already in code
- Information that can be easily looked up

Only include facts that would be valuable to remember in future conversations.

Conversation to analyze:
{conversation}

Respond ONLY with valid JSON, no other text."""


class Fact(BaseModel):
    key: str
    value: str
    category: str = ""
    tags: list[str] = Field(default_factory=list)


class ExtractedFacts(BaseModel):
    preferences: list[Fact] = Field(default_factory=list)
    entities: list[Fact] = Field(default_factory=list)
    decisions: list[Fact] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.preferences or self.entities or self.decisions)

    def total_count(self) -> int:
        return len(self.preferences) + len(self.entities) + len(self.decisions)

    def format_for_storage(self, today: date | None = None) -> list[MemoryEntry]:
        """Map facts to memory layers: preferences are tacit, decisions are filed under today's date."""
        day = (today or date.today()).isoformat()
        entries: list[MemoryEntry] = []
        for fact in self.preferences:
            entries.append(MemoryEntry("tacit", "preferences", fact.key, fact.value, [*fact.tags, "preference"]))
        for fact in self.entities:
            entries.append(MemoryEntry("entity", "default", fact.key, fact.value, [*fact.tags, "entity"]))
        for fact in self.decisions:
            entries.append(MemoryEntry("daily", day, fact.key, fact.value, [*fact.tags, "decision"]))
        return entries


@dataclass
class MemoryEntry:
    layer: str
    namespace: str
    key: str
    value: str
    tags: list[str] = field(default_factory=list)


class MemoryStore(Protocol):
    """Persistent memory the extracted facts are written to."""

    async def store(self, entry: MemoryEntry, user_id: str) -> None: ...


class InMemoryMemoryStore:
    """MemoryStore over a dict; a repeated (layer, namespace, key) replaces the old value."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str, str, str], MemoryEntry] = {}
        self._lock = asyncio.Lock()

    async def store(self, entry: MemoryEntry, user_id: str) -> None:
        if not entry.key or not entry.value:
            raise ValueError("memory entry needs a key and a value")
        async with self._lock:
            self._entries[(user_id, entry.layer, entry.namespace, entry.key)] = entry
        logger.debug("Stored memory %s/%s/%s for user %r", entry.layer, entry.namespace, entry.key, user_id)

    async def get(self, user_id: str, layer: str, namespace: str, key: str) -> MemoryEntry | None:
        async with self._lock:
            return self._entries.get((user_id, layer, namespace, key))

    async def list(self, user_id: str, layer: str = "") -> list[MemoryEntry]:
        """Entries for one user in insertion order, optionally limited to a layer."""
        async with self._lock:
            return [
                entry for (uid, entry_layer, _, _), entry in self._entries.items()
                if uid == user_id and (not layer or entry_layer == layer)
            ]



def format_conversation(messages: list[Message]) -> str:
    return "".join(f"[{m.role}]: {m.content}\n\n" for m in messages if m.content)


def parse_extracted_facts(text: str) -> ExtractedFacts:
    """Parse the model's reply, tolerating prose around the JSON object.

    Raises ValueError when no valid object can be found.
    """
    text = text.strip()
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        text = text[start:end + 1]
    try:
        return ExtractedFacts.model_validate(json.loads(text))
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"failed to parse extracted facts: {e}") from e


class MemoryExtractor:
    """Asks a model for durable facts in a conversation."""

    def __init__(self, provider: Provider) -> None:
        self._provider = provider

    async def extract(self, messages: list[Message]) -> ExtractedFacts:
        conversation = format_conversation(messages)
        if not conversation:
            return ExtractedFacts()
        prompt = _EXTRACT_PROMPT.format(conversation=conversation)
        stream = await self._provider.stream(ChatRequest(messages=[Message(role=Role.USER, content=prompt)]))
        return parse_extracted_facts(await collect_text(stream))


async def store_facts(store: MemoryStore, facts: ExtractedFacts, user_id: str) -> int:
    """Write every fact, skipping ones the store rejects. Returns the number stored."""
    stored = 0
    for entry in facts.format_for_storage():
        try:
            await store.store(entry, user_id)
            stored += 1
        except Exception:
            logger.warning("Failed to store memory %s/%s", entry.layer, entry.key, exc_info=True)
    return stored
