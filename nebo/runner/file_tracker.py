"""Recently accessed files, re-injected into context after compaction."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path

from nebo.ai.types import Message, Role
from nebo.runner.pruning import CHARS_PER_TOKEN

logger = logging.getLogger(__name__)

MAX_REINJECTED_FILES = 5
MAX_TOKENS_PER_FILE = 5000
MAX_REINJECTED_TOKENS = 50000
MAX_LINE_CHARS = 500

REINJECTION_HEADER = "[Context recovery — recently accessed files]\n"
TRUNCATED_MARKER = "... (truncated)"


class FileAccessTracker:
    """Per-session path -> last access time, filled in by file tool executions.

    Each session only ever sees the files its own tool calls touched.
    """

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, float]] = {}
        self._lock = threading.Lock()

    def track(self, path: str, session_id: str = "") -> None:
        if not path:
            return
        with self._lock:
            self._entries.setdefault(session_id, {})[path] = time.time()

    def snapshot(self, session_id: str = "") -> dict[str, float]:
        with self._lock:
            return dict(self._entries.get(session_id, {}))

    def clear(self, session_id: str = "") -> None:
        with self._lock:
            self._entries.pop(session_id, None)


def read_file_for_reinjection(path: str, max_chars: int) -> str:
    """Line-numbered file content capped at max_chars; "" if unreadable."""
    try:
        with Path(path).open(encoding="utf-8", errors="replace") as f:
            out: list[str] = []
            size = 0
            for num, line in enumerate(f, start=1):
                line = line.rstrip("\r\n")
                if len(line) > MAX_LINE_CHARS:
                    line = line[:MAX_LINE_CHARS] + "..."
                formatted = "%6d\t%s\n" % (num, line)
                if size + len(formatted) > max_chars:
                    out.append(TRUNCATED_MARKER + "\n")
                    break
                out.append(formatted)
                size += len(formatted)
    except OSError as e:
        logger.debug("Skipping re-injection of %s: %s", path, e)
        return ""
    return "".join(out)


def build_file_reinjection_message(tracker: FileAccessTracker | None, session_id: str = "") -> Message | None:
    """A synthetic user message with the session's most recently touched files, newest first."""
    if tracker is None:
        return None
    snapshot = tracker.snapshot(session_id)
    if not snapshot:
        return None

    recent = sorted(snapshot.items(), key=lambda kv: kv[1], reverse=True)[:MAX_REINJECTED_FILES]
    max_per_file = MAX_TOKENS_PER_FILE * CHARS_PER_TOKEN
    max_total = MAX_REINJECTED_TOKENS * CHARS_PER_TOKEN

    parts = [REINJECTION_HEADER]
    total = 0
    included = 0
    for path, _ in recent:
        if total >= max_total:
            break
        content = read_file_for_reinjection(path, max_per_file)
        if not content:
            continue
        remaining = max_total - total
        if len(content) > remaining:
            content = content[:remaining] + "\n" + TRUNCATED_MARKER
        parts.append(f"\n=== {path} ===\n{content}\n")
        total += len(content)
        included += 1

    if not included:
        return None
    logger.info("Re-injecting %d recently accessed files (~%d tokens)", included, total // CHARS_PER_TOKEN)
    return Message(role=Role.USER, content="".join(parts))
