"""Conversation store interface and an in-memory implementation.

The runner only talks to ConversationStore. Persistent backends live
outside this package; InMemoryConversationStore backs tests and the CLI.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Protocol

from nebo.ai.types import Message

logger = logging.getLogger(__name__)

COMPACT_KEEP_MESSAGES = 10


@dataclass
class Session:
    id: str
    key: str
    user_id: str = ""
    summary: str = ""
    last_compacted_at: float | None = None


class ConversationStore(Protocol):
    """Append-only session log. Append order and atomicity are the store's job."""

    async def get_or_create(self, key: str, user_id: str = "") -> Session: ...

    async def append_message(self, session_id: str, message: Message) -> None: ...

    async def get_messages(self, session_id: str, limit: int = 0) -> list[Message]: ...

    async def compact(self, session_id: str, summary: str) -> None: ...

    async def get_summary(self, session_id: str) -> str: ...


@dataclass
class _SessionLog:
    session: Session
    messages: list[Message] = field(default_factory=list)
    compacted: int = 0  # messages[:compacted] are hidden from get_messages


class InMemoryConversationStore:
    """ConversationStore over a dict; compaction hides all but the last 10 messages."""

    def __init__(self, keep_on_compact: int = COMPACT_KEEP_MESSAGES) -> None:
        self._logs: dict[str, _SessionLog] = {}
        self._by_key: dict[tuple[str, str], str] = {}
        self._keep = keep_on_compact
        self._lock = asyncio.Lock()

    async def get_or_create(self, key: str, user_id: str = "") -> Session:
        async with self._lock:
            session_id = self._by_key.get((key, user_id))
            if session_id is None:
                session_id = str(uuid.uuid4())
                self._by_key[(key, user_id)] = session_id
                self._logs[session_id] = _SessionLog(Session(id=session_id, key=key, user_id=user_id))
            return self._logs[session_id].session

    async def append_message(self, session_id: str, message: Message) -> None:
        async with self._lock:
            self._log(session_id).messages.append(replace(message, session_id=session_id))

    async def get_messages(self, session_id: str, limit: int = 0) -> list[Message]:
        """The newest `limit` visible messages in order (all when limit <= 0)."""
        async with self._lock:
            log = self._log(session_id)
            visible = log.messages[log.compacted:]
            if limit > 0:
                visible = visible[-limit:]
            return list(visible)

    async def compact(self, session_id: str, summary: str) -> None:
        async with self._lock:
            log = self._log(session_id)
            if len(log.messages) - log.compacted <= self._keep:
                return
            log.compacted = len(log.messages) - self._keep
            log.session.summary = summary
            log.session.last_compacted_at = time.time()
        logger.info("Compacted session %s, %d messages kept", session_id, self._keep)

    async def get_summary(self, session_id: str) -> str:
        async with self._lock:
            return self._log(session_id).session.summary

    def _log(self, session_id: str) -> _SessionLog:
        log = self._logs.get(session_id)
        if log is None:
            raise KeyError(f"unknown session: {session_id}")
        return log
