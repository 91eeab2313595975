"""Agentic loop -- select a model, stream, execute tools, repeat.

One run per user message. run() persists the prompt and returns an async
iterator of StreamEvents that ends with exactly one done or error. Each
iteration reloads the session, compacts once if it is over budget, fits
the window (micro-compaction, pruning, steering) and streams from the
selected provider. Recoverable provider errors (context overflow once,
rate limit/auth, role ordering) are retried without surfacing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from datetime import datetime

from nebo.ai.base import ModelOverrideProvider, ProfileTracker, Provider
from nebo.ai.dedupe import ApiErrorDeduper, get_api_error_payload_fingerprint, hash_text
from nebo.ai.errors import (
    ProviderError,
    classify_error_reason,
    is_context_overflow,
    is_rate_limit_or_auth,
    is_role_ordering_error,
    is_transport_error,
)
from nebo.ai.fuzzy import FuzzyMatcher, parse_model_request
from nebo.ai.selector import ModelSelector, TaskType, parse_model_id
from nebo.ai.types import (
    ChatRequest,
    EventType,
    Message,
    RateLimitInfo,
    Role,
    StreamEvent,
    ToolCall,
    ToolResult,
)
from nebo.config import Settings
from nebo.runner.compaction import generate_summary
from nebo.runner.file_tracker import FileAccessTracker, build_file_reinjection_message
from nebo.runner.memory import (
    EXTRACT_MESSAGE_LIMIT,
    MIN_MESSAGES_FOR_EXTRACTION,
    MemoryExtractor,
    MemoryStore,
    store_facts,
)
from nebo.runner.pruning import estimate_tokens, micro_compact, prune_context
from nebo.runner.prompt import append_summary, build_system_prompt, inject_system_context
from nebo.session import ConversationStore
from nebo.steering import Context, Pipeline, WorkTask, inject
from nebo.tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100

NO_PROVIDER_MESSAGE = (
    "I'm not fully set up yet! To start chatting, please configure a model provider:\n\n"
    "1. Set an API key (ANTHROPIC_API_KEY or OPENAI_API_KEY), or point OLLAMA_BASE_URL at a local server\n"
    "2. Or install a supported CLI (claude, codex, gemini) and enable it in NEBO_CLI_PROVIDERS\n"
    "3. Come back here and say hello!"
)

CONTEXT_OVERFLOW_MESSAGE = (
    "⚠️ Context overflow: prompt too large for this model. "
    "Try again with less input or start a new session."
)


@dataclass
class RunRequest:
    prompt: str = ""
    session_key: str = "default"
    system: str = ""  # replaces the default base prompt
    model_override: str = ""  # "provider/model"
    user_id: str = ""
    skip_memory_extract: bool = False  # heartbeats and other non-conversation runs
    channel: str = ""
    active_task: str = ""
    work_tasks: list[WorkTask] = field(default_factory=list)


@dataclass
class _Selection:
    provider: Provider | None
    model_id: str = ""  # "provider/model" from the override or the selector
    model_name: str = ""  # "" means the provider's default


class Runner:
    """Executes runs against a conversation store, providers and tools.

    Selector, fuzzy matcher, profile tracker, memory store and file tracker
    are optional. Cooldowns live in the selector and error fingerprints in
    the deduper; both are shared by every run of this runner.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: ConversationStore,
        providers: list[Provider],
        tools: ToolRegistry,
        selector: ModelSelector | None = None,
        fuzzy: FuzzyMatcher | None = None,
        profile_tracker: ProfileTracker | None = None,
        memory_store: MemoryStore | None = None,
        steering: Pipeline | None = None,
        file_tracker: FileAccessTracker | None = None,
        error_deduper: ApiErrorDeduper | None = None,
    ) -> None:
        self._settings = settings
        self._sessions = sessions
        self._providers = list(providers)
        self._tools = tools
        self._selector = selector
        self._fuzzy = fuzzy
        self._profiles = profile_tracker
        self._memory = memory_store
        self._steering = steering or Pipeline()
        self._files = file_tracker
        self._errors = error_deduper or ApiErrorDeduper()
        self._provider_map: dict[str, Provider] = {}
        for p in self._providers:
            self._provider_map.setdefault(p.id(), p)
        self._background: set[asyncio.Task] = set()

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)

    async def run(self, req: RunRequest) -> AsyncIterator[StreamEvent]:
        """Persist the prompt and start the loop.

        Raises RuntimeError when no providers are configured. Closing the
        returned iterator stops the run; tool results already produced are
        still written to the session.
        """
        if not self._providers:
            raise RuntimeError("no providers configured")
        session = await self._sessions.get_or_create(req.session_key or "default", req.user_id)
        if req.prompt:
            await self._sessions.append_message(
                session.id, Message(role=Role.USER, content=req.prompt, session_id=session.id),
            )
        logger.info("Run started: session=%s key=%s", session.id, req.session_key or "default")
        return self._run_loop(session.id, req)

    async def wait_background(self) -> None:
        """Wait for pending background memory extraction."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run_loop(self, session_id: str, req: RunRequest) -> AsyncIterator[StreamEvent]:
        settings = self._settings
        start_time = datetime.now().astimezone()
        system_prompt = build_system_prompt(
            settings.agent_name,
            req.system,
            [t.name for t in self._tools.list()],
            self._fuzzy.get_aliases() if self._fuzzy is not None else None,
        )
        model_override = req.model_override
        max_iterations = settings.max_iterations if settings.max_iterations > 0 else DEFAULT_MAX_ITERATIONS
        compaction_attempted = False
        just_compacted = False
        failed_models: set[str] = set()

        for iteration in range(1, max_iterations + 1):
            logger.debug("Iteration %d (session=%s)", iteration, session_id)
            messages = await self._sessions.get_messages(session_id, settings.max_context)

            tokens = estimate_tokens(messages)
            if tokens > settings.context_token_limit and not compaction_attempted:
                logger.info("Token limit exceeded (~%d tokens), compacting", tokens)
                compaction_attempted = True
                if await self._compact(session_id, req.user_id, messages):
                    just_compacted = True
                    messages = await self._sessions.get_messages(session_id, settings.max_context)
                    logger.info("After compaction: %d messages, ~%d tokens", len(messages), estimate_tokens(messages))

            switch = self._detect_user_model_switch(messages)
            if switch and not model_override and switch not in failed_models:
                logger.info("User requested model switch to %s", switch)
                model_override = switch

            sel = self._select(messages, model_override)
            if sel.provider is None:
                yield StreamEvent(type=EventType.TEXT, text=NO_PROVIDER_MESSAGE)
                yield StreamEvent(type=EventType.DONE)
                return
            provider = sel.provider

            prompt = inject_system_context(system_prompt, provider.id(), sel.model_name)
            prompt = append_summary(prompt, await self._sessions.get_summary(session_id))

            window, _ = micro_compact(messages, settings.micro_compact_warning_tokens)
            window = prune_context(window, settings.pruning)
            if just_compacted:
                reinjection = build_file_reinjection_message(self._files, session_id)
                if reinjection is not None:
                    window = [*window, reinjection]

            steering = self._steering.generate(Context(
                session_id=session_id,
                messages=messages,
                user_prompt=req.prompt if iteration == 1 else "",
                active_task=req.active_task,
                channel=req.channel or settings.channel,
                agent_name=settings.agent_name,
                iteration=iteration,
                run_start_time=start_time,
                work_tasks=req.work_tasks,
                rate_limit=_rate_limit(provider),
                just_compacted=just_compacted,
            ))
            window = inject(window, steering)
            just_compacted = False

            request = ChatRequest(
                messages=window,
                tools=self._tools.list(),
                system=prompt,
                model=sel.model_name,
            )
            if (
                self._selector is not None
                and sel.model_id
                and self._selector.classify_task(messages) == TaskType.REASONING
                and self._selector.supports_thinking(sel.model_id)
            ):
                request.enable_thinking = True

            error: BaseException | None = None
            content: list[str] = []
            tool_calls: list[ToolCall] = []
            saved_messages = 0
            try:
                stream = await provider.stream(request)
            except Exception as e:
                error = e
            else:
                try:
                    async for event in stream:
                        if event.type == EventType.DONE:
                            continue
                        if event.type == EventType.ERROR:
                            error = event.error or ProviderError("stream error")
                            break
                        if event.type == EventType.MESSAGE:
                            # turn from a CLI provider's own tool loop
                            if event.message is not None and not event.message.is_empty():
                                await self._sessions.append_message(
                                    session_id, replace(event.message, session_id=session_id),
                                )
                                saved_messages += 1
                        elif event.type == EventType.TEXT:
                            content.append(event.text)
                        elif event.type == EventType.TOOL_CALL and event.tool_call is not None:
                            tool_calls.append(event.tool_call)
                        yield event
                finally:
                    await stream.aclose()

            if error is not None:
                logger.warning("Provider %s failed: %s", provider.id(), error)
                if is_context_overflow(error):
                    if not compaction_attempted:
                        compaction_attempted = True
                        if await self._compact(session_id, req.user_id, messages):
                            just_compacted = True
                            continue
                    yield StreamEvent(type=EventType.TEXT, text=CONTEXT_OVERFLOW_MESSAGE)
                    yield StreamEvent(type=EventType.DONE)
                    return
                if is_rate_limit_or_auth(error):
                    await self._record_profile_error(provider, error)
                    if self._selector is not None and sel.model_id:
                        self._selector.mark_failed(sel.model_id)
                        failed_models.add(sel.model_id)
                        if sel.model_id == model_override:
                            model_override = ""
                        continue
                    # nothing left to reselect
                    yield StreamEvent(type=EventType.ERROR, error=error)
                    return
                if is_role_ordering_error(error):
                    logger.warning("Role ordering error, retrying: %s", error)
                    continue
                if is_transport_error(error) and self._selector is not None and sel.model_id:
                    # reselect instead of repeating the same call
                    self._selector.mark_failed(sel.model_id)
                    failed_models.add(sel.model_id)
                    if sel.model_id == model_override:
                        model_override = ""
                    continue
                await self._record_profile_error(provider, error)
                yield StreamEvent(type=EventType.ERROR, error=error)
                return

            text = "".join(content)
            if provider.handles_tools():
                # the provider ran its own tool loop; its turns were saved as MESSAGE events
                if not saved_messages and text:
                    await self._sessions.append_message(
                        session_id, Message(role=Role.ASSISTANT, content=text, session_id=session_id),
                    )
            else:
                if text or tool_calls:
                    await self._sessions.append_message(session_id, Message(
                        role=Role.ASSISTANT, content=text, tool_calls=tool_calls, session_id=session_id,
                    ))
                if tool_calls:
                    results: list[ToolResult] = []
                    try:
                        for call in tool_calls:
                            result = await self._execute_tool(call, session_id)
                            results.append(result)
                            yield StreamEvent(type=EventType.TOOL_RESULT, text=result.content, tool_call=call)
                    finally:
                        if results:
                            await self._sessions.append_message(session_id, Message(
                                role=Role.TOOL, tool_results=results, session_id=session_id,
                            ))
                    continue

            await self._record_profile_usage(provider)
            if not req.skip_memory_extract:
                self._spawn_extraction(session_id, req.user_id)
            yield StreamEvent(type=EventType.DONE)
            return

        yield StreamEvent(
            type=EventType.ERROR,
            error=RuntimeError(f"reached maximum iterations ({max_iterations})"),
        )

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _select(self, messages: list[Message], model_override: str) -> _Selection:
        """Provider for the override or the selector's pick, else the first provider."""
        model_id = ""
        provider: Provider | None = None
        model_name = ""

        if model_override:
            model_id = model_override
            provider_id, model_name = parse_model_id(model_override)
            provider = self._provider_map.get(provider_id)
        elif self._selector is not None:
            model_id = self._selector.select(messages)
            if model_id:
                provider_id, model_name = parse_model_id(model_id)
                provider = self._provider_map.get(provider_id)
                if provider is None:
                    logger.info("Provider %s not loaded, excluding %s and re-selecting", provider_id, model_id)
                    model_id = self._selector.select_with_exclusions(messages, [model_id])
                    provider_id, model_name = parse_model_id(model_id)
                    provider = self._provider_map.get(provider_id) if model_id else None

        if provider is None and self._providers:
            return _Selection(self._providers[0])
        return _Selection(provider, model_id, model_name)

    def _detect_user_model_switch(self, messages: list[Message]) -> str:
        if self._fuzzy is None:
            return ""
        for msg in reversed(messages):
            if msg.role == Role.USER and msg.content:
                request = parse_model_request(msg.content)
                return self._fuzzy.match(request) if request else ""
        return ""

    def _extraction_provider(self) -> Provider:
        """The cheapest model for background work, else the first provider."""
        if self._selector is not None:
            cheapest = self._selector.get_cheapest_model()
            if cheapest:
                provider_id, model_name = parse_model_id(cheapest)
                provider = self._provider_map.get(provider_id)
                if provider is not None:
                    return ModelOverrideProvider(provider, model_name)
                logger.debug("Cheapest model %s has no loaded provider", cheapest)
        return self._providers[0]

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def _execute_tool(self, call: ToolCall, session_id: str) -> ToolResult:
        logger.info("Executing tool: %s", call.name)
        try:
            return await self._tools.execute(call, session_id)
        except Exception as e:
            logger.exception("Tool %s raised", call.name)
            return ToolResult(tool_call_id=call.id, content=f"Tool error: {e}", is_error=True)

    # ------------------------------------------------------------------
    # Compaction and memory
    # ------------------------------------------------------------------

    async def _compact(self, session_id: str, user_id: str, messages: list[Message]) -> bool:
        """Flush memories, then replace older history with a summary."""
        await self._memory_flush(session_id, user_id, messages)
        try:
            await self._sessions.compact(session_id, generate_summary(messages))
        except Exception:
            logger.exception("Compaction failed for session %s", session_id)
            return False
        return True

    async def _memory_flush(self, session_id: str, user_id: str, messages: list[Message]) -> bool:
        """Store durable facts before they are summarized away. True if extraction ran."""
        tokens = estimate_tokens(messages)
        if tokens < self._settings.memory_flush_threshold or self._memory is None:
            return False
        logger.info(
            "Context at %d tokens (threshold %d), running memory flush for session %s",
            tokens, self._settings.memory_flush_threshold, session_id,
        )
        extractor = MemoryExtractor(self._extraction_provider())
        try:
            facts = await asyncio.wait_for(extractor.extract(messages), timeout=self._settings.memory_flush_timeout)
        except TimeoutError:
            logger.warning("Memory flush timed out after %ss", self._settings.memory_flush_timeout)
            return False
        except Exception as e:
            logger.warning("Memory flush extraction failed: %s", e)
            return False
        if not facts.is_empty():
            stored = await store_facts(self._memory, facts, user_id)
            logger.info("Memory flush stored %d memories before compaction", stored)
        return True

    def _spawn_extraction(self, session_id: str, user_id: str) -> None:
        if self._memory is None:
            return
        task = asyncio.create_task(self._extract_and_store(session_id, user_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _extract_and_store(self, session_id: str, user_id: str) -> None:
        """Background fact extraction; failures and timeouts are logged, never raised."""
        try:
            await asyncio.wait_for(
                self._extract_memories(session_id, user_id),
                timeout=self._settings.memory_extract_timeout,
            )
        except TimeoutError:
            logger.warning("Memory extraction timed out for session %s", session_id)
        except Exception:
            logger.exception("Memory extraction failed for session %s", session_id)

    async def _extract_memories(self, session_id: str, user_id: str) -> None:
        messages = await self._sessions.get_messages(session_id, EXTRACT_MESSAGE_LIMIT)
        if len(messages) < MIN_MESSAGES_FOR_EXTRACTION:
            return
        facts = await MemoryExtractor(self._extraction_provider()).extract(messages)
        if facts.is_empty():
            return
        stored = await store_facts(self._memory, facts, user_id)
        logger.info("Auto-extracted %d memories from session %s", stored, session_id)

    # ------------------------------------------------------------------
    # Profile tracking
    # ------------------------------------------------------------------

    async def _record_profile_usage(self, provider: Provider) -> None:
        if self._profiles is None or not provider.profile_id():
            return
        try:
            await self._profiles.record_usage(provider.profile_id())
        except Exception as e:
            logger.warning("Failed to record profile usage: %s", e)

    async def _record_profile_error(self, provider: Provider, err: BaseException) -> None:
        if self._profiles is None or not provider.profile_id():
            return
        profile_id = provider.profile_id()
        raw = getattr(err, "raw", "") or str(err)
        fingerprint = get_api_error_payload_fingerprint(raw)
        duplicate = bool(fingerprint) and self._errors.is_recent(fingerprint)

        reason = classify_error_reason(err)
        try:
            await self._profiles.record_error_with_cooldown(profile_id, reason)
        except Exception as e:
            logger.warning("Failed to record profile error: %s", e)

        if duplicate:
            logger.info(
                "Recorded duplicate error for profile %s: reason=%s fingerprint=%s",
                profile_id, reason, hash_text(fingerprint)[:12],
            )
        else:
            logger.warning("Recorded error for profile %s: reason=%s error=%s", profile_id, reason, err)


def _rate_limit(provider: Provider) -> RateLimitInfo | None:
    get = getattr(provider, "get_rate_limit", None)
    return get() if callable(get) else None
