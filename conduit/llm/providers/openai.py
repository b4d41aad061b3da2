from typing import AsyncIterator, Optional, Sequence

import httpx

from conduit.llm.base import Completion, ExternalProvider
from conduit.llm.errors import AuthenticationFailed, CircuitOpen, ProviderError, ResponseFormatError
from conduit.llm.streaming import iter_sse_json
from conduit.llm.types import Capability, ConversationMessage, LLMResponse, ModelDescriptor, ModelPricing
from conduit.observability.logger import get_logger

log = get_logger("llm.openai")

_ALL = frozenset({
    Capability.TEXT_GENERATION, Capability.CONVERSATION, Capability.SUMMARIZATION,
    Capability.CODE_GENERATION, Capability.FUNCTION_CALLING, Capability.IMAGE_ANALYSIS,
})

# Tried in order when a gpt-5 request fails for reasons other than auth or an open circuit
FALLBACK_MODELS = ("gpt-4o-mini", "gpt-4o")


def uses_completion_tokens(model_id: str) -> bool:
    return model_id.startswith("gpt-4o") or model_id.startswith("gpt-5")


class OpenAIProvider(ExternalProvider):
    provider_id = "openai"
    display_name = "OpenAI"
    capabilities = _ALL
    default_model_id = "gpt-5-mini"
    preferred_models = ("gpt-5-mini", "gpt-4o-mini")

    def catalog(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                id="gpt-5",
                name="GPT-5",
                description="Latest flagship model for reasoning and complex tasks",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=5.00, output_per_mtok_usd=15.00, cached_input_per_mtok_usd=2.50),
                capabilities=_ALL,
            ),
            ModelDescriptor(
                id="gpt-5-mini",
                name="GPT-5 Mini",
                description="Fast and affordable general-purpose model",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=0.60, output_per_mtok_usd=2.40, cached_input_per_mtok_usd=0.30),
                capabilities=_ALL - {Capability.IMAGE_ANALYSIS},
            ),
            ModelDescriptor(
                id="gpt-5-nano",
                name="GPT-5 Nano",
                description="Lowest-latency and most economical GPT-5 variant",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=0.20, output_per_mtok_usd=0.80, cached_input_per_mtok_usd=0.10),
                capabilities=_ALL - {Capability.IMAGE_ANALYSIS, Capability.FUNCTION_CALLING},
            ),
            ModelDescriptor(
                id="gpt-4o-mini",
                name="GPT-4o Mini",
                description="Fast, low-cost omni model ideal for most tasks",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=0.60, output_per_mtok_usd=2.40, cached_input_per_mtok_usd=0.30),
                capabilities=_ALL,
            ),
            ModelDescriptor(
                id="gpt-4o",
                name="GPT-4o",
                description="General-purpose omni model with high quality",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=5.00, output_per_mtok_usd=15.00, cached_input_per_mtok_usd=2.50),
                capabilities=_ALL,
            ),
        ]

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _models_request(self) -> httpx.Request:
        return self.executor.client.build_request(
            "GET", f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout,
        )

    def _chat_request(self, model_id: str, system: Optional[str], turns: list[dict], stream: bool) -> httpx.Request:
        messages = [{"role": "system", "content": system}] if system else []
        messages.extend(turns)
        body = {"model": model_id, "messages": messages}
        # gpt-5 models only accept the default temperature
        if not model_id.startswith("gpt-5"):
            body["temperature"] = self.temperature
        body["max_completion_tokens" if uses_completion_tokens(model_id) else "max_tokens"] = self.max_tokens
        if stream:
            body["stream"] = True
        return self.executor.client.build_request(
            "POST", f"{self.base_url}/chat/completions", json=body, headers=self._headers(), timeout=self.timeout,
        )

    def _parse_completion(self, data: dict) -> Completion:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ResponseFormatError("Response has no choices", provider_id=self.provider_id)
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}
        return Completion(
            text=message.get("content") or "",
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            finish_reason=choices[0].get("finish_reason"),
        )

    async def _stream_text(self, response: httpx.Response) -> AsyncIterator[str]:
        async for payload in iter_sse_json(response, self.provider_id):
            choices = payload.get("choices") or []
            if choices:
                delta = choices[0].get("delta") or {}
                if delta.get("content"):
                    yield delta["content"]

    async def generate_response(
        self,
        query: str,
        context: Optional[str] = None,
        history: Sequence[ConversationMessage] = (),
        model: Optional[str] = None,
    ) -> LLMResponse:
        descriptor = self.resolve_model(model)
        return await self._with_fallback(
            descriptor.id, lambda model_id: super(OpenAIProvider, self).generate_response(query, context, history, model_id),
        )

    async def generate_raw_response(self, prompt: str, model: Optional[str] = None) -> str:
        descriptor = self.resolve_model(model)
        return await self._with_fallback(
            descriptor.id, lambda model_id: super(OpenAIProvider, self).generate_raw_response(prompt, model_id),
        )

    async def _with_fallback(self, model_id: str, call):
        try:
            return await call(model_id)
        except (AuthenticationFailed, CircuitOpen):
            raise
        except ProviderError as e:
            if not model_id.startswith("gpt-5"):
                raise
            for fallback_id in FALLBACK_MODELS:
                if self.find_model(fallback_id) is None:
                    continue
                log.warning("model_fallback", provider=self.provider_id, model=model_id,
                            fallback=fallback_id, error=e.message)
                try:
                    return await call(fallback_id)
                except (AuthenticationFailed, CircuitOpen):
                    raise
                except ProviderError:
                    continue
            raise e
