from typing import AsyncIterator, Optional

import httpx

from conduit.llm.base import Completion, LLMProvider
from conduit.llm.errors import ModelNotAvailable, ProviderError, ProviderSpecificError, ResponseFormatError
from conduit.llm.streaming import iter_ndjson
from conduit.llm.types import Capability, ModelDescriptor, ProviderKind
from conduit.observability.logger import get_logger

log = get_logger("llm.ollama")


class OllamaProvider(LLMProvider):
    """Local inference through an Ollama server on the loopback interface."""

    provider_id = "local"
    display_name = "Local (Ollama)"
    kind = ProviderKind.LOCAL
    capabilities = frozenset({
        Capability.TEXT_GENERATION, Capability.CONVERSATION,
        Capability.SUMMARIZATION, Capability.CODE_GENERATION,
    })
    # Local tokenizers run a little denser than the remote ones
    chars_per_token = 3.5

    def __init__(self, executor, base_url: str = "http://localhost:11434",
                 default_model: str = "gemma3:2b", **kwargs):
        kwargs.setdefault("timeout", 120.0)
        super().__init__(executor, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.default_model_id = default_model

    async def initialize(self):
        if self._ready:
            return
        await self.validate_configuration()
        if not self.models:
            raise ModelNotAvailable(self.default_model_id, provider_id=self.provider_id)
        self._select_default_model()
        self._ready = True
        log.info("provider_initialized", provider=self.provider_id, models=len(self.models),
                 model=self.selected_model.id)

    async def validate_configuration(self):
        self.models = await self.discover_models()

    async def discover_models(self) -> list[ModelDescriptor]:
        request = self.executor.client.build_request("GET", f"{self.base_url}/api/tags", timeout=self.timeout)
        data = await self.executor.send_json(self.provider_id, request)
        models = []
        for entry in data.get("models") or []:
            name = entry.get("name") if isinstance(entry, dict) else None
            if not name:
                continue
            models.append(ModelDescriptor(
                id=name,
                name=name,
                description=(entry.get("details") or {}).get("parameter_size", ""),
                cost_per_token=0.0,
                capabilities=self.capabilities,
            ))
        log.info("ollama_models_discovered", count=len(models))
        return models

    async def reset_conversation(self):
        """Unload the model so its KV cache is dropped."""
        if self.selected_model is None:
            return
        request = self.executor.client.build_request(
            "POST", f"{self.base_url}/api/generate",
            json={"model": self.selected_model.id, "keep_alive": 0},
            timeout=self.timeout,
        )
        try:
            await self.executor.send(self.provider_id, request, model_id=self.selected_model.id)
            log.info("ollama_model_unloaded", model=self.selected_model.id)
        except ProviderError as e:
            log.warning("ollama_unload_failed", model=self.selected_model.id, error=e.message)

    def _chat_request(self, model_id: str, system: Optional[str], turns: list[dict], stream: bool) -> httpx.Request:
        messages = [{"role": "system", "content": system}] if system else []
        messages.extend(turns)
        return self.executor.client.build_request(
            "POST",
            f"{self.base_url}/api/chat",
            json={
                "model": model_id,
                "messages": messages,
                "stream": stream,
                "options": {
                    "temperature": self.temperature,
                    "num_predict": self.max_tokens,
                },
            },
            timeout=self.timeout,
        )

    def _parse_completion(self, data: dict) -> Completion:
        if "error" in data:
            raise ProviderSpecificError(str(data["error"]), provider_id=self.provider_id)
        message = data.get("message")
        if not isinstance(message, dict):
            raise ResponseFormatError("Response has no message", provider_id=self.provider_id)
        return Completion(
            text=message.get("content") or "",
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
            finish_reason=data.get("done_reason", "stop"),
        )

    async def _stream_text(self, response: httpx.Response) -> AsyncIterator[str]:
        async for payload in iter_ndjson(response, self.provider_id):
            if "error" in payload:
                raise ProviderSpecificError(str(payload["error"]), provider_id=self.provider_id)
            content = (payload.get("message") or {}).get("content")
            if content:
                yield content
            if payload.get("done"):
                return
