from typing import AsyncIterator, Optional

import httpx

from conduit.llm.base import Completion, ExternalProvider
from conduit.llm.errors import ProviderSpecificError, ResponseFormatError
from conduit.llm.streaming import iter_sse_json
from conduit.llm.types import Capability, ModelDescriptor, ModelPricing

_FULL = frozenset({
    Capability.TEXT_GENERATION, Capability.CONVERSATION, Capability.SUMMARIZATION,
    Capability.CODE_GENERATION, Capability.IMAGE_ANALYSIS, Capability.FUNCTION_CALLING,
})


class AnthropicProvider(ExternalProvider):
    provider_id = "anthropic"
    display_name = "Anthropic Claude"
    capabilities = _FULL
    default_model_id = "claude-4-sonnet-latest"

    def __init__(self, executor, credentials, base_url: str, api_version: str = "2023-06-01", **kwargs):
        super().__init__(executor, credentials, base_url, **kwargs)
        self.api_version = api_version

    def catalog(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                id="claude-4-sonnet-latest",
                name="Claude 4 Sonnet (latest)",
                description="Most capable Claude model, excellent for complex tasks and reasoning",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=3.0, output_per_mtok_usd=15.0),
                capabilities=_FULL,
            ),
            ModelDescriptor(
                id="claude-4-haiku-latest",
                name="Claude 4 Haiku (latest)",
                description="Fastest Claude model, optimized for quick responses",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=0.25, output_per_mtok_usd=1.25),
                capabilities=frozenset({
                    Capability.TEXT_GENERATION, Capability.CONVERSATION,
                    Capability.SUMMARIZATION, Capability.CODE_GENERATION,
                }),
            ),
            ModelDescriptor(
                id="claude-4-opus-latest",
                name="Claude 4 Opus (latest)",
                description="Most powerful Claude model for the most complex tasks",
                context_window_tokens=200_000,
                pricing=ModelPricing(input_per_mtok_usd=15.0, output_per_mtok_usd=75.0),
                capabilities=_FULL,
            ),
        ]

    def _headers(self) -> dict:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "content-type": "application/json",
        }

    def _models_request(self) -> httpx.Request:
        return self.executor.client.build_request(
            "GET", f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout,
        )

    def _chat_request(self, model_id: str, system: Optional[str], turns: list[dict], stream: bool) -> httpx.Request:
        body = {
            "model": model_id,
            "max_tokens": self.max_tokens,
            "temperature": min(self.temperature, 1.0),
            "messages": turns,
        }
        if system:
            body["system"] = system
        if stream:
            body["stream"] = True
        return self.executor.client.build_request(
            "POST", f"{self.base_url}/messages", json=body, headers=self._headers(), timeout=self.timeout,
        )

    def _parse_completion(self, data: dict) -> Completion:
        content = self._require(data, "content", self.provider_id)
        if not isinstance(content, list):
            raise ResponseFormatError("Response content is not a list", provider_id=self.provider_id)
        text = "".join(
            block.get("text", "") for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return Completion(
            text=text,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            finish_reason=data.get("stop_reason"),
        )

    async def _stream_text(self, response: httpx.Response) -> AsyncIterator[str]:
        async for event in iter_sse_json(response, self.provider_id):
            kind = event.get("type")
            if kind == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield delta["text"]
            elif kind == "message_stop":
                return
            elif kind == "error":
                error = event.get("error") or {}
                raise ProviderSpecificError(error.get("message", "stream error"), provider_id=self.provider_id)
