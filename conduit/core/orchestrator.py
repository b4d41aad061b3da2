"""
ConversationOrchestrator: the facade the app talks to.

One query at a time per orchestrator: a second query while one is in flight
fails with ConversationBusy instead of queueing. Every failure is kept as
``last_error`` and re-raised.
"""

import asyncio
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from pydantic import BaseModel

from conduit.budget.enforcer import BudgetEnforcer
from conduit.core.context import ContextProvider, format_context, no_context
from conduit.core.guard import ResourceGuard, StaticResourceGuard
from conduit.llm.base import LLMProvider
from conduit.llm.errors import (
    BudgetExceeded,
    ConversationBusy,
    ErrorCategory,
    InvalidConfiguration,
    ProviderError,
    ProviderSpecificError,
    ResourcePressure,
)
from conduit.llm.prompts import DEFAULT_HISTORY_WINDOW, tldr_prompt
from conduit.llm.registry import ProviderRegistry
from conduit.llm.types import LLMResponse, ResponseMetadata, Role, UsageStatistics
from conduit.memory.history import ConversationHistory
from conduit.observability.logger import get_logger

log = get_logger("orchestrator")

RECOVERY_MESSAGE = "Sorry, I couldn't generate a response. Please try again."
HEALTH_CHECK_QUERY = "Hello"
SUMMARY_MESSAGE_LIMIT = 20
# Completion size assumed when pricing a query before it is sent
PREFLIGHT_COMPLETION_TOKENS = 256

# A stream that dies before its first chunk with one of these gets one non-streaming retry
_FALLBACK_CATEGORIES = (ErrorCategory.TRANSIENT, ErrorCategory.PROVIDER)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    STREAMING = "streaming"
    ERROR = "error"


class AnimationState(BaseModel):
    streaming: bool = False
    message_id: Optional[str] = None


class SystemStatus(BaseModel):
    initialized: bool
    state: OrchestratorState
    active_provider: Optional[str] = None
    active_provider_name: str = "None"
    provider_kind: Optional[str] = None
    selected_model: Optional[str] = None
    available_providers: list[str] = []
    conversation_length: int = 0
    usage: Optional[UsageStatistics] = None
    last_error: Optional[str] = None


StateListener = Callable[[OrchestratorState, AnimationState], None]


class ConversationOrchestrator:
    def __init__(
        self,
        registry: ProviderRegistry,
        history: Optional[ConversationHistory] = None,
        context_provider: ContextProvider = no_context,
        resource_guard: Optional[ResourceGuard] = None,
        enforcer: Optional[BudgetEnforcer] = None,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        max_context_chars: int = 8000,
    ):
        self.registry = registry
        self.history = history or ConversationHistory()
        self.context_provider = context_provider
        self.resource_guard = resource_guard or StaticResourceGuard()
        self.enforcer = enforcer
        self.history_window = history_window
        self.max_context_chars = max_context_chars
        self.state = OrchestratorState.IDLE
        self.animation = AnimationState()
        self.last_error: Optional[ProviderError] = None
        self._listeners: list[StateListener] = []
        self._lock = asyncio.Lock()

    # State

    def subscribe(self, listener: StateListener):
        self._listeners.append(listener)

    def _set_state(self, state: OrchestratorState, animation: Optional[AnimationState] = None):
        self.state = state
        if animation is not None:
            self.animation = animation
        for listener in list(self._listeners):
            try:
                listener(self.state, self.animation)
            except Exception as e:
                log.warning("state_listener_failed", error=str(e))

    def _fail(self, error: ProviderError):
        self.last_error = error
        log.error("query_failed", error=error.message, category=error.category.value,
                  provider=error.provider_id)
        self._set_state(OrchestratorState.ERROR, AnimationState())

    def _fail_unexpected(self, error: Exception) -> ProviderError:
        wrapped = ProviderSpecificError(
            f"Unexpected error: {str(error) or type(error).__name__}", provider_id=self.registry.active_id,
        )
        self._fail(wrapped)
        return wrapped

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    # Preconditions

    async def _ready_provider(self) -> LLMProvider:
        provider = self.registry.active
        if provider is None:
            raise InvalidConfiguration("No AI provider selected")
        if not await provider.is_ready():
            await provider.initialize()
        return provider

    def _check_resources(self):
        if not self.resource_guard.is_safe_to_run():
            raise ResourcePressure(
                f"System resources are under {self.resource_guard.pressure_level().value} pressure"
            )

    def _check_budget(self, provider: LLMProvider, query: str, context: Optional[str]):
        if self.enforcer is None or provider.selected_model is None:
            return
        history_text = "".join(m.content for m in self.history.recent_messages(self.history_window))
        prompt_tokens = provider.estimate_tokens(query + (context or "") + history_text)
        cost = provider.selected_model.estimate_cost(prompt_tokens, PREFLIGHT_COMPLETION_TOKENS)
        if cost and not self.enforcer.check_and_record(cost, provider.provider_id):
            alert = self.enforcer.last_alert
            raise BudgetExceeded(
                alert.message if alert else f"Budget exceeded for {provider.provider_id}",
                provider_id=provider.provider_id,
            )

    async def _context(self, include_context: bool) -> Optional[str]:
        if not include_context:
            return None
        page = await self.context_provider()
        return format_context(page, self.max_context_chars)

    async def _prepare(self, query: str, include_context: bool):
        provider = await self._ready_provider()
        self._check_resources()
        context = await self._context(include_context)
        self._check_budget(provider, query, context)
        return provider, context

    # Queries

    async def process_query(self, query: str, include_context: bool = True) -> LLMResponse:
        if self._lock.locked():
            raise ConversationBusy()
        async with self._lock:
            self._set_state(OrchestratorState.PROCESSING)
            try:
                provider, context = await self._prepare(query, include_context)
                history = self.history.recent_messages(self.history_window)
                self.history.add(Role.USER, query, context_snapshot=context)
                response = await provider.generate_response(query, context, history)
                self.history.add(Role.ASSISTANT, response.text, metadata=response.metadata)
            except ProviderError as e:
                self._fail(e)
                raise
            except asyncio.CancelledError:
                self._set_state(OrchestratorState.IDLE)
                raise
            except Exception as e:
                raise self._fail_unexpected(e) from e
            self.last_error = None
            self._set_state(OrchestratorState.IDLE)
            return response

    async def process_streaming_query(self, query: str, include_context: bool = True) -> AsyncIterator[str]:
        if self._lock.locked():
            raise ConversationBusy()
        async with self._lock:
            self._set_state(OrchestratorState.PROCESSING)
            try:
                provider, context = await self._prepare(query, include_context)
            except ProviderError as e:
                self._fail(e)
                raise
            except asyncio.CancelledError:
                self._set_state(OrchestratorState.IDLE)
                raise
            except Exception as e:
                raise self._fail_unexpected(e) from e

            history = self.history.recent_messages(self.history_window)
            self.history.add(Role.USER, query, context_snapshot=context)
            placeholder = self.history.add(Role.ASSISTANT, "")
            self._set_state(OrchestratorState.STREAMING, AnimationState(streaming=True, message_id=placeholder.id))

            parts: list[str] = []
            metadata = None
            try:
                try:
                    async with aclosing(provider.generate_streaming_response(query, context, history)) as chunks:
                        async for chunk in chunks:
                            parts.append(chunk)
                            yield chunk
                except ProviderError as e:
                    if parts or e.category not in _FALLBACK_CATEGORIES:
                        raise
                    log.warning("stream_failed_before_output", provider=provider.provider_id, error=e.message)
                    text = await self._non_streaming_retry(provider, query, context, history, e)
                    parts.append(text)
                    yield text
                else:
                    if not parts:
                        text = await self._empty_stream_fallback(provider, query, context, history)
                        parts.append(text)
                        yield text
                metadata = self._stream_metadata(provider, query, context, "".join(parts))
            except ProviderError as e:
                self._fail(e)
                raise
            except Exception as e:
                raise self._fail_unexpected(e) from e
            finally:
                self.history.update_content(placeholder.id, "".join(parts), metadata)
                if metadata is None and self.state == OrchestratorState.STREAMING:
                    # cancelled or closed by the consumer
                    self._set_state(OrchestratorState.IDLE, AnimationState())

            self.last_error = None
            self._set_state(OrchestratorState.IDLE, AnimationState())

    async def _non_streaming_retry(self, provider, query, context, history, original: ProviderError) -> str:
        try:
            response = await provider.generate_response(query, context, history)
        except ProviderError as e:
            log.warning("stream_retry_failed", provider=provider.provider_id, error=e.message)
            raise original from e
        if not response.text:
            return RECOVERY_MESSAGE
        return response.text

    async def _empty_stream_fallback(self, provider, query, context, history) -> str:
        log.warning("stream_empty", provider=provider.provider_id)
        try:
            response = await provider.generate_response(query, context, history)
        except ProviderError as e:
            log.warning("stream_fallback_failed", provider=provider.provider_id, error=e.message)
            return RECOVERY_MESSAGE
        return response.text or RECOVERY_MESSAGE

    @staticmethod
    def _stream_metadata(provider: LLMProvider, query: str, context: Optional[str], text: str) -> ResponseMetadata:
        model = provider.selected_model
        prompt_tokens = provider.estimate_tokens(query + (context or ""))
        completion_tokens = provider.estimate_tokens(text)
        return ResponseMetadata(
            model_id=model.id if model else "unknown",
            provider_id=provider.provider_id,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost_usd=model.estimate_cost(prompt_tokens, completion_tokens) if model else None,
            context_used=bool(context),
            streamed=True,
        )

    # Conversation management

    async def reset_conversation_state(self):
        self.history.clear()
        provider = self.registry.active
        if provider is not None:
            await provider.reset_conversation()
        self.last_error = None
        self._set_state(OrchestratorState.IDLE, AnimationState())
        log.info("conversation_reset")

    async def clear_conversation(self):
        self.history.clear()
        provider = self.registry.active
        if provider is not None:
            await provider.reset_conversation()
        log.info("conversation_cleared")

    async def switch_provider(self, provider_id: str) -> LLMProvider:
        try:
            return await self.registry.switch_to(provider_id)
        except ProviderError as e:
            self.last_error = e
            raise

    # Page and conversation summaries

    async def summarize_page(self) -> str:
        provider = await self._ready_provider()
        self._check_resources()
        page = await self.context_provider()
        if page is None or not page.text.strip():
            raise ProviderSpecificError("No page content available to summarize", provider_id=provider.provider_id)
        try:
            return await provider.generate_raw_response(tldr_prompt(page.title, page.text))
        except ProviderError as e:
            self.last_error = e
            raise

    async def summarize_page_streaming(self) -> AsyncIterator[str]:
        yield await self.summarize_page()

    async def conversation_summary(self) -> str:
        provider = await self._ready_provider()
        messages = self.history.recent_messages(SUMMARY_MESSAGE_LIMIT)
        return await provider.summarize_conversation(messages)

    # Health

    async def health_check(self) -> bool:
        try:
            provider = await self._ready_provider()
            await provider.generate_response(HEALTH_CHECK_QUERY)
        except ProviderError as e:
            log.warning("health_check_failed", error=e.message, category=e.category.value)
            return False
        return True

    def system_status(self) -> SystemStatus:
        provider = self.registry.active
        return SystemStatus(
            initialized=provider is not None,
            state=self.state,
            active_provider=provider.provider_id if provider else None,
            active_provider_name=provider.display_name if provider else "None",
            provider_kind=provider.kind.value if provider else None,
            selected_model=provider.selected_model.id if provider and provider.selected_model else None,
            available_providers=[p.display_name for p in self.registry.providers()],
            conversation_length=self.history.count(),
            usage=provider.get_usage_statistics() if provider else None,
            last_error=self.last_error.message if self.last_error else None,
        )
