import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from conduit.budget.models import UsageEvent
from conduit.budget.recorder import UsageRecorder
from conduit.llm.errors import (
    InvalidConfiguration,
    MissingAPIKey,
    ModelNotAvailable,
    ProviderError,
    ResponseFormatError,
    UnsupportedOperation,
)
from conduit.llm.executor import ResilientRequestExecutor
from conduit.llm.prompts import (
    CHARS_PER_TOKEN,
    DEFAULT_HISTORY_WINDOW,
    build_chat_messages,
    estimate_tokens,
    summary_prompt,
    system_prompt,
)
from conduit.llm.types import (
    Capability,
    ChoiceSetting,
    ConversationMessage,
    LLMResponse,
    ModelDescriptor,
    NumberSetting,
    ProviderDescriptor,
    ProviderKind,
    ProviderSetting,
    ResponseMetadata,
    UsageStatistics,
)
from conduit.observability.logger import get_logger

log = get_logger("llm")


class Completion:
    """Text and token counts pulled out of one non-streaming response body."""

    def __init__(self, text: str, prompt_tokens: int = 0, completion_tokens: int = 0, finish_reason: str = None):
        self.text = text
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.finish_reason = finish_reason


class ProviderStats:
    def __init__(self):
        self._stats = UsageStatistics()

    def record(self, tokens: int, elapsed: float, cost: Optional[float] = None, error: bool = False):
        s = self._stats
        s.request_count += 1
        s.token_count += tokens
        # Running mean over every request, failed ones included
        s.average_response_time += (elapsed - s.average_response_time) / s.request_count
        if error:
            s.error_count += 1
        if cost:
            s.estimated_cost += cost
        s.last_used = datetime.now(timezone.utc)

    def snapshot(self) -> UsageStatistics:
        return self._stats.model_copy()


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    Subclasses describe their wire format (request building, body parsing,
    stream decoding); the generation flow, usage recording and settings live
    here. Every outbound call goes through the shared executor.
    """

    provider_id: str = "base"
    display_name: str = "Base"
    kind: ProviderKind = ProviderKind.EXTERNAL
    capabilities: frozenset[Capability] = frozenset({
        Capability.TEXT_GENERATION, Capability.CONVERSATION, Capability.SUMMARIZATION,
    })
    default_model_id: Optional[str] = None
    chars_per_token: float = CHARS_PER_TOKEN

    def __init__(
        self,
        executor: ResilientRequestExecutor,
        recorder: Optional[UsageRecorder] = None,
        timeout: float = 60.0,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        share_context: bool = True,
    ):
        self.executor = executor
        self.recorder = recorder
        self.timeout = timeout
        self.history_window = history_window
        self.share_context = share_context
        self.temperature = 0.7
        self.max_tokens = 4096
        self.models: list[ModelDescriptor] = []
        self.selected_model: Optional[ModelDescriptor] = None
        self._ready = False
        # chosen model, kept across cleanup so the next initialize can restore it
        self._last_model_id: Optional[str] = None
        self._stats = ProviderStats()

    # Lifecycle

    @abstractmethod
    async def initialize(self):
        """Resolve credentials, validate them and load the model catalog. Idempotent."""

    @abstractmethod
    async def validate_configuration(self):
        pass

    async def is_ready(self) -> bool:
        return self._ready and self.selected_model is not None

    async def cleanup(self):
        if self.selected_model is not None:
            self._last_model_id = self.selected_model.id
        self.models = []
        self.selected_model = None
        self._ready = False

    async def reset_conversation(self):
        # Stateless HTTP backends keep nothing between calls
        pass

    # Wire format

    @abstractmethod
    def _chat_request(self, model_id: str, system: Optional[str], turns: list[dict], stream: bool) -> httpx.Request:
        pass

    @abstractmethod
    def _parse_completion(self, data: dict) -> Completion:
        pass

    @abstractmethod
    def _stream_text(self, response: httpx.Response) -> AsyncIterator[str]:
        pass

    # Generation

    async def generate_response(
        self,
        query: str,
        context: Optional[str] = None,
        history: Sequence[ConversationMessage] = (),
        model: Optional[str] = None,
    ) -> LLMResponse:
        descriptor = self.resolve_model(model)
        context = self._effective_context(context)
        turns = build_chat_messages(query, context, history, self.history_window, include_system=False)
        completion, elapsed = await self._complete(descriptor, system_prompt(context), turns, bool(context))
        return self._response(descriptor, completion, elapsed, bool(context))

    async def generate_streaming_response(
        self,
        query: str,
        context: Optional[str] = None,
        history: Sequence[ConversationMessage] = (),
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        descriptor = self.resolve_model(model)
        context = self._effective_context(context)
        system = system_prompt(context)
        turns = build_chat_messages(query, context, history, self.history_window, include_system=False)
        request = self._chat_request(descriptor.id, system, turns, stream=True)
        prompt_tokens = self._estimate_prompt(system, turns)

        log.info("provider_request", provider=self.provider_id, model=descriptor.id, stream=True)
        started = time.perf_counter()
        parts: list[str] = []
        try:
            async with self.executor.stream(self.provider_id, request, model_id=descriptor.id) as response:
                async for text in self._stream_text(response):
                    if text:
                        parts.append(text)
                        yield text
        except ProviderError:
            self._record(descriptor, prompt_tokens, self.estimate_tokens("".join(parts)),
                         started, success=False, context_used=bool(context))
            raise
        self._record(descriptor, prompt_tokens, self.estimate_tokens("".join(parts)),
                     started, success=True, context_used=bool(context))

    async def generate_raw_response(self, prompt: str, model: Optional[str] = None) -> str:
        descriptor = self.resolve_model(model)
        turns = [{"role": "user", "content": prompt}]
        completion, _ = await self._complete(descriptor, None, turns, False)
        return completion.text

    async def summarize_conversation(self, messages: Sequence[ConversationMessage], model: Optional[str] = None) -> str:
        return await self.generate_raw_response(summary_prompt(messages), model)

    async def _complete(self, descriptor: ModelDescriptor, system: Optional[str], turns: list[dict], context_used: bool):
        request = self._chat_request(descriptor.id, system, turns, stream=False)
        log.info("provider_request", provider=self.provider_id, model=descriptor.id, stream=False)
        started = time.perf_counter()
        try:
            data = await self.executor.send_json(self.provider_id, request, model_id=descriptor.id)
            completion = self._parse_completion(data)
        except ProviderError:
            self._record(descriptor, self._estimate_prompt(system, turns), 0, started,
                         success=False, context_used=context_used)
            raise
        if not completion.prompt_tokens:
            completion.prompt_tokens = self._estimate_prompt(system, turns)
        if not completion.completion_tokens:
            completion.completion_tokens = self.estimate_tokens(completion.text)
        elapsed = self._record(descriptor, completion.prompt_tokens, completion.completion_tokens,
                               started, success=True, context_used=context_used)
        return completion, elapsed

    def _response(self, descriptor: ModelDescriptor, completion: Completion, elapsed: float, context_used: bool) -> LLMResponse:
        return LLMResponse(
            text=completion.text,
            token_count=completion.prompt_tokens + completion.completion_tokens,
            processing_time=elapsed,
            metadata=ResponseMetadata(
                model_id=descriptor.id,
                provider_id=self.provider_id,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                estimated_cost_usd=descriptor.estimate_cost(completion.prompt_tokens, completion.completion_tokens),
                context_used=context_used,
                finish_reason=completion.finish_reason,
            ),
        )

    def _record(self, descriptor: ModelDescriptor, prompt_tokens: int, completion_tokens: int,
                started: float, success: bool, context_used: bool) -> float:
        elapsed = time.perf_counter() - started
        cost = descriptor.estimate_cost(prompt_tokens, completion_tokens) if success else None
        self._stats.record(prompt_tokens + completion_tokens, elapsed, cost, error=not success)
        if self.recorder is not None:
            self.recorder.record(UsageEvent(
                provider_id=self.provider_id,
                model_id=descriptor.id,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
                estimated_cost_usd=cost,
                success=success,
                latency_ms=int(elapsed * 1000),
                context_included=context_used,
            ))
        return elapsed

    # Helpers

    def _effective_context(self, context: Optional[str]) -> Optional[str]:
        return context if (context and self.share_context) else None

    def _estimate_prompt(self, system: Optional[str], turns: list[dict]) -> int:
        text = (system or "") + "".join(t["content"] for t in turns)
        return self.estimate_tokens(text)

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, self.chars_per_token)

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int, model: Optional[str] = None) -> Optional[float]:
        return self.resolve_model(model).estimate_cost(prompt_tokens, completion_tokens)

    def find_model(self, model_id: str) -> Optional[ModelDescriptor]:
        for m in self.models:
            if m.id == model_id or m.name == model_id:
                return m
        return None

    def resolve_model(self, model: Optional[str] = None) -> ModelDescriptor:
        if model is None:
            if self.selected_model is None:
                raise InvalidConfiguration(f"{self.display_name} has no model selected", provider_id=self.provider_id)
            return self.selected_model
        descriptor = self.find_model(model)
        if descriptor is None:
            raise ModelNotAvailable(model, provider_id=self.provider_id)
        return descriptor

    def select_model(self, model_id: str) -> ModelDescriptor:
        descriptor = self.find_model(model_id)
        if descriptor is None:
            raise ModelNotAvailable(model_id, provider_id=self.provider_id)
        self.selected_model = descriptor
        log.info("model_selected", provider=self.provider_id, model=descriptor.id)
        return descriptor

    def _select_default_model(self, preferred: Sequence[str] = ()):
        if self.selected_model is not None and self.find_model(self.selected_model.id):
            return
        for model_id in [self._last_model_id, *preferred, self.default_model_id]:
            if model_id and self.find_model(model_id):
                self.selected_model = self.find_model(model_id)
                return
        self.selected_model = self.models[0] if self.models else None

    @staticmethod
    def _require(data: dict, key: str, provider_id: str) -> Any:
        if key not in data:
            raise ResponseFormatError(f"Response is missing '{key}'", provider_id=provider_id)
        return data[key]

    # Introspection and settings

    def get_usage_statistics(self) -> UsageStatistics:
        return self._stats.snapshot()

    def descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            id=self.provider_id,
            display_name=self.display_name,
            kind=self.kind,
            capabilities=self.capabilities,
            models=list(self.models),
            selected_model=self.selected_model,
        )

    def get_configurable_settings(self) -> list[ProviderSetting]:
        default_model = self.find_model(self.default_model_id) if self.default_model_id else None
        return [
            ChoiceSetting(
                id="model_selection",
                name="Model",
                description=f"Select the {self.display_name} model to use",
                options=[m.id for m in self.models],
                default=default_model.id if default_model else "",
                current=self.selected_model.id if self.selected_model else "",
                required=True,
            ),
            NumberSetting(
                id="temperature",
                name="Temperature",
                description="Controls randomness in responses (0.0-2.0)",
                default=0.7,
                current=self.temperature,
                minimum=0.0,
                maximum=2.0,
            ),
            NumberSetting(
                id="max_tokens",
                name="Max Tokens",
                description="Maximum tokens in a response",
                default=4096,
                current=self.max_tokens,
                minimum=1,
                maximum=32_768,
            ),
        ]

    def update_setting(self, setting_id: str, value: Any):
        setting = next((s for s in self.get_configurable_settings() if s.id == setting_id), None)
        if setting is None:
            raise UnsupportedOperation(f"setting '{setting_id}'", provider_id=self.provider_id)

        if isinstance(setting, ChoiceSetting):
            if not isinstance(value, str) or value not in setting.options:
                raise InvalidConfiguration(f"{setting.name} must be one of {setting.options}", provider_id=self.provider_id)
            self.select_model(value)
            return

        if isinstance(setting, NumberSetting):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidConfiguration(f"{setting.name} must be a number", provider_id=self.provider_id)
            if (setting.minimum is not None and value < setting.minimum) or \
                    (setting.maximum is not None and value > setting.maximum):
                raise InvalidConfiguration(
                    f"{setting.name} must be between {setting.minimum} and {setting.maximum}",
                    provider_id=self.provider_id,
                )
            if setting_id == "temperature":
                self.temperature = float(value)
            else:
                self.max_tokens = int(value)
            return

        raise UnsupportedOperation(f"setting '{setting_id}'", provider_id=self.provider_id)


class ExternalProvider(LLMProvider):
    """A remote API reached with a key from the credential store."""

    kind = ProviderKind.EXTERNAL
    preferred_models: tuple[str, ...] = ()

    def __init__(self, executor: ResilientRequestExecutor, credentials, base_url: str,
                 recorder: Optional[UsageRecorder] = None, **kwargs):
        super().__init__(executor, recorder, **kwargs)
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.api_key: Optional[str] = None

    @abstractmethod
    def catalog(self) -> list[ModelDescriptor]:
        pass

    @abstractmethod
    def _models_request(self) -> httpx.Request:
        pass

    async def initialize(self):
        if self._ready:
            return
        self.api_key = self.credentials.get(self.provider_id)
        if not self.api_key:
            raise MissingAPIKey(self.display_name, provider_id=self.provider_id)
        self.models = self.catalog()
        self._select_default_model(self.preferred_models)
        await self.validate_configuration()
        self._ready = True
        log.info("provider_initialized", provider=self.provider_id, models=len(self.models),
                 model=self.selected_model.id if self.selected_model else None)

    async def validate_configuration(self):
        if not self.api_key:
            raise MissingAPIKey(self.display_name, provider_id=self.provider_id)
        await self.executor.send(self.provider_id, self._models_request())
        log.info("provider_validated", provider=self.provider_id)

    async def is_ready(self) -> bool:
        return bool(self.api_key) and await super().is_ready()

    async def cleanup(self):
        await super().cleanup()
        self.api_key = None
