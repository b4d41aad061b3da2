from typing import AsyncIterator, Optional

import httpx

from conduit.llm.base import Completion, ExternalProvider
from conduit.llm.errors import ResponseFormatError
from conduit.llm.streaming import iter_sse_json
from conduit.llm.types import Capability, ModelDescriptor

_FULL = frozenset({
    Capability.TEXT_GENERATION, Capability.CONVERSATION, Capability.SUMMARIZATION,
    Capability.CODE_GENERATION, Capability.IMAGE_ANALYSIS, Capability.FUNCTION_CALLING,
})


def _candidate_text(payload: dict) -> Optional[str]:
    candidates = payload.get("candidates") or []
    if not candidates:
        return None
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiProvider(ExternalProvider):
    provider_id = "gemini"
    display_name = "Google Gemini"
    capabilities = _FULL
    default_model_id = "gemini-2.0-flash-exp"

    def catalog(self) -> list[ModelDescriptor]:
        # Flat per-token rates, approximate
        return [
            ModelDescriptor(
                id="gemini-2.0-flash-exp",
                name="Gemini 2.0 Flash",
                description="Latest Gemini model with advanced multimodal capabilities",
                context_window_tokens=1_048_576,
                cost_per_token=0.000001,
                capabilities=_FULL,
            ),
            ModelDescriptor(
                id="gemini-1.5-pro",
                name="Gemini 1.5 Pro",
                description="Most capable Gemini 1.5 model with large context window",
                context_window_tokens=2_097_152,
                cost_per_token=0.00000125,
                capabilities=_FULL,
            ),
            ModelDescriptor(
                id="gemini-1.5-flash",
                name="Gemini 1.5 Flash",
                description="Fast and efficient Gemini model for quick responses",
                context_window_tokens=1_048_576,
                cost_per_token=0.000000375,
                capabilities=_FULL - {Capability.FUNCTION_CALLING},
            ),
        ]

    def _models_request(self) -> httpx.Request:
        return self.executor.client.build_request(
            "GET", f"{self.base_url}/models", params={"key": self.api_key}, timeout=self.timeout,
        )

    def _chat_request(self, model_id: str, system: Optional[str], turns: list[dict], stream: bool) -> httpx.Request:
        body = {
            "contents": [
                {
                    "role": "model" if t["role"] == "assistant" else "user",
                    "parts": [{"text": t["content"]}],
                }
                for t in turns
            ],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        if stream:
            url = f"{self.base_url}/models/{model_id}:streamGenerateContent"
            params = {"alt": "sse", "key": self.api_key}
        else:
            url = f"{self.base_url}/models/{model_id}:generateContent"
            params = {"key": self.api_key}
        return self.executor.client.build_request(
            "POST", url, params=params, json=body, timeout=self.timeout,
            headers={"Content-Type": "application/json"},
        )

    def _parse_completion(self, data: dict) -> Completion:
        text = _candidate_text(data)
        if text is None:
            raise ResponseFormatError("Response has no candidates", provider_id=self.provider_id)
        usage = data.get("usageMetadata") or {}
        return Completion(
            text=text,
            prompt_tokens=usage.get("promptTokenCount", 0),
            completion_tokens=usage.get("candidatesTokenCount", 0),
            finish_reason=(data["candidates"][0] or {}).get("finishReason"),
        )

    async def _stream_text(self, response: httpx.Response) -> AsyncIterator[str]:
        async for payload in iter_sse_json(response, self.provider_id):
            text = _candidate_text(payload)
            if text:
                yield text
