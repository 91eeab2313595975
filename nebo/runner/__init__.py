"""Agentic runner and the context window machinery it drives.

Public API:
    Runner, RunRequest     - the select/stream/execute-tools loop
    micro_compact()        - trims old high-volume tool results
    prune_context()        - two-stage soft trim / hard clear
    generate_summary()     - deterministic compaction summary
    FileAccessTracker      - files re-injected after compaction
    MemoryExtractor        - post-run fact extraction
    InMemoryMemoryStore    - dict-backed MemoryStore used by the CLI
"""

from nebo.runner.compaction import generate_summary
from nebo.runner.file_tracker import FileAccessTracker, build_file_reinjection_message
from nebo.runner.memory import (
    ExtractedFacts,
    InMemoryMemoryStore,
    MemoryEntry,
    MemoryExtractor,
    MemoryStore,
)
from nebo.runner.pruning import estimate_tokens, micro_compact, prune_context
from nebo.runner.runner import Runner, RunRequest

__all__ = [
    "ExtractedFacts",
    "FileAccessTracker",
    "InMemoryMemoryStore",
    "MemoryEntry",
    "MemoryExtractor",
    "MemoryStore",
    "RunRequest",
    "Runner",
    "build_file_reinjection_message",
    "estimate_tokens",
    "generate_summary",
    "micro_compact",
    "prune_context",
]
