import json

import httpx
import pytest

from conduit.llm.credentials import MemoryCredentialStore, SettingsCredentialStore
from conduit.config import Settings
from conduit.llm.errors import (
    AuthenticationFailed,
    InvalidConfiguration,
    MissingAPIKey,
    ModelNotAvailable,
    ProviderSpecificError,
    ResponseFormatError,
    UnsupportedOperation,
)
from conduit.llm.providers.anthropic import AnthropicProvider
from conduit.llm.providers.gemini import GeminiProvider
from conduit.llm.providers.ollama import OllamaProvider
from conduit.llm.providers.openai import OpenAIProvider
from conduit.llm.types import ChoiceSetting, ConversationMessage, NumberSetting, ProviderKind, Role
from helpers import ndjson_body, sse_body

OPENAI_URL = "https://api.openai.test/v1"
ANTHROPIC_URL = "https://api.anthropic.test/v1"
GEMINI_URL = "https://gemini.test/v1beta"
OLLAMA_URL = "http://ollama.test:11434"


def openai_completion(text="Hello there", prompt_tokens=12, completion_tokens=3):
    return {
        "choices": [{"message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


class RouteTable:
    """MockTransport handler that keeps every request it sees."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, suffix), respond in self.routes.items():
            if request.method == method and request.url.path.endswith(suffix):
                if isinstance(respond, httpx.Response):
                    # fresh copy, a Response can only be sent once
                    return httpx.Response(respond.status_code, headers=respond.headers, content=respond.content)
                return respond(request)
        return httpx.Response(404)

    def bodies(self, suffix):
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(suffix)]


@pytest.mark.asyncio
class TestOpenAIProvider:
    def make(self, make_executor, recorder, routes, key="sk-test"):
        transport = RouteTable(routes)
        credentials = MemoryCredentialStore({"openai": key} if key else {})
        provider = OpenAIProvider(make_executor(transport), credentials, OPENAI_URL, recorder=recorder)
        return provider, transport

    async def test_initialize_selects_default_model(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {("GET", "/models"): httpx.Response(200, json={"data": []})})
        await provider.initialize()
        assert await provider.is_ready()
        assert provider.selected_model.id == "gpt-5-mini"
        assert transport.requests[0].headers["Authorization"] == "Bearer sk-test"

    async def test_initialize_is_idempotent(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {("GET", "/models"): httpx.Response(200, json={})})
        await provider.initialize()
        await provider.initialize()
        assert len(transport.requests) == 1

    async def test_cleanup_clears_credential_and_models(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {("GET", "/models"): httpx.Response(200, json={})})
        await provider.initialize()
        provider.select_model("gpt-4o")

        await provider.cleanup()
        assert provider.api_key is None
        assert provider.models == []
        assert provider.selected_model is None
        assert not await provider.is_ready()

        await provider.initialize()
        assert provider.api_key == "sk-test"
        assert provider.selected_model.id == "gpt-4o"
        assert len(transport.requests) == 2

    async def test_missing_key(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {}, key=None)
        with pytest.raises(MissingAPIKey):
            await provider.initialize()
        assert transport.requests == []
        assert not await provider.is_ready()

    async def test_bad_key(self, make_executor, recorder):
        provider, _ = self.make(make_executor, recorder, {("GET", "/models"): httpx.Response(401)})
        with pytest.raises(AuthenticationFailed):
            await provider.initialize()
        assert not await provider.is_ready()

    async def test_generate_response_payload_and_usage(self, make_executor, recorder, ledger):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): httpx.Response(200, json=openai_completion()),
        })
        await provider.initialize()
        history = [
            ConversationMessage(role=Role.USER, content=f"question {i}") if i % 2 == 0
            else ConversationMessage(role=Role.ASSISTANT, content=f"answer {i}")
            for i in range(14)
        ]

        response = await provider.generate_response("What is this page?", "Page text", history, "gpt-4o")

        body = transport.bodies("/chat/completions")[0]
        assert body["model"] == "gpt-4o"
        assert body["max_completion_tokens"] == 4096
        assert "max_tokens" not in body
        assert body["messages"][0]["role"] == "system"
        assert "Page text" in body["messages"][0]["content"]
        # system + last 10 history + query
        assert len(body["messages"]) == 12
        assert body["messages"][1]["content"] == "question 4"
        assert body["messages"][-1] == {"role": "user", "content": "What is this page?"}

        assert response.text == "Hello there"
        assert response.token_count == 15
        assert response.metadata.context_used is True
        assert response.metadata.estimated_cost_usd == pytest.approx(12 * 5e-6 + 3 * 15e-6)

        events = ledger.events()
        assert len(events) == 1
        assert events[0].provider_id == "openai"
        assert events[0].model_id == "gpt-4o"
        assert events[0].success is True
        assert events[0].context_included is True
        assert provider.get_usage_statistics().request_count == 1

    async def test_context_sharing_disabled(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): httpx.Response(200, json=openai_completion()),
        })
        provider.share_context = False
        await provider.initialize()
        response = await provider.generate_response("hi", "secret page", [])
        system = transport.bodies("/chat/completions")[0]["messages"][0]["content"]
        assert "secret page" not in system
        assert response.metadata.context_used is False

    async def test_gpt5_falls_back(self, make_executor, recorder, ledger):
        def completions(request):
            model = json.loads(request.content)["model"]
            if model.startswith("gpt-5"):
                return httpx.Response(400, text="model not supported")
            return httpx.Response(200, json=openai_completion("from fallback"))

        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): completions,
        })
        await provider.initialize()
        response = await provider.generate_response("hi", model="gpt-5")

        assert response.text == "from fallback"
        assert response.metadata.model_id == "gpt-4o-mini"
        assert [b["model"] for b in transport.bodies("/chat/completions")] == ["gpt-5", "gpt-4o-mini"]
        assert [(e.model_id, e.success) for e in ledger.events()] == [("gpt-5", False), ("gpt-4o-mini", True)]

    async def test_no_fallback_on_auth_failure(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): httpx.Response(401),
        })
        await provider.initialize()
        with pytest.raises(AuthenticationFailed):
            await provider.generate_response("hi", model="gpt-5")
        assert len(transport.bodies("/chat/completions")) == 1

    async def test_older_models_use_max_tokens(self, make_executor, recorder):
        provider, _ = self.make(make_executor, recorder, {})
        request = provider._chat_request("gpt-3.5-turbo", None, [{"role": "user", "content": "x"}], stream=False)
        body = json.loads(request.content)
        assert body["max_tokens"] == 4096
        assert body["temperature"] == 0.7

    async def test_streaming(self, make_executor, recorder, ledger):
        stream = sse_body(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
        )
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): httpx.Response(200, content=stream),
        })
        await provider.initialize()

        chunks = [c async for c in provider.generate_streaming_response("hi")]
        assert chunks == ["Hel", "lo"]
        assert transport.bodies("/chat/completions")[0]["stream"] is True
        event = ledger.events()[0]
        assert event.success is True
        assert event.completion_tokens == 1  # "Hello" at 4 chars per token

    async def test_missing_choices_is_format_error(self, make_executor, recorder, ledger):
        provider, _ = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/chat/completions"): httpx.Response(200, json={"id": "x"}),
        })
        await provider.initialize()
        with pytest.raises(ResponseFormatError):
            await provider.generate_response("hi", model="gpt-4o")
        assert ledger.events()[0].success is False


@pytest.mark.asyncio
class TestAnthropicProvider:
    def make(self, make_executor, recorder, routes):
        transport = RouteTable(routes)
        credentials = MemoryCredentialStore({"anthropic": "ak-test"})
        provider = AnthropicProvider(make_executor(transport), credentials, ANTHROPIC_URL, recorder=recorder)
        return provider, transport

    async def test_generate_response(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={"data": []}),
            ("POST", "/messages"): httpx.Response(200, json={
                "content": [{"type": "text", "text": "Hi "}, {"type": "text", "text": "there"}],
                "usage": {"input_tokens": 20, "output_tokens": 2},
                "stop_reason": "end_turn",
            }),
        })
        await provider.initialize()
        response = await provider.generate_response("hello", "ctx")

        request = transport.requests[-1]
        assert request.headers["x-api-key"] == "ak-test"
        assert request.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(request.content)
        assert body["model"] == "claude-4-sonnet-latest"
        assert "ctx" in body["system"]
        assert body["messages"] == [{"role": "user", "content": "hello"}]

        assert response.text == "Hi there"
        assert response.metadata.finish_reason == "end_turn"
        assert response.metadata.estimated_cost_usd == pytest.approx(20 * 3e-6 + 2 * 15e-6)

    async def test_streaming_events(self, make_executor, recorder):
        stream = sse_body(
            {"type": "message_start", "message": {}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Bon"}},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "jour"}},
            {"type": "message_stop"},
            {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "ignored"}},
            done=False,
        )
        provider, _ = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/messages"): httpx.Response(200, content=stream),
        })
        await provider.initialize()
        chunks = [c async for c in provider.generate_streaming_response("hi")]
        assert chunks == ["Bon", "jour"]

    async def test_stream_error_event(self, make_executor, recorder, ledger):
        stream = sse_body({"type": "error", "error": {"message": "overloaded"}}, done=False)
        provider, _ = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", "/messages"): httpx.Response(200, content=stream),
        })
        await provider.initialize()
        with pytest.raises(ProviderSpecificError, match="overloaded"):
            async for _ in provider.generate_streaming_response("hi"):
                pass
        assert ledger.events()[0].success is False


@pytest.mark.asyncio
class TestGeminiProvider:
    def make(self, make_executor, recorder, routes):
        transport = RouteTable(routes)
        credentials = MemoryCredentialStore({"gemini": "g-key"})
        provider = GeminiProvider(make_executor(transport), credentials, GEMINI_URL, recorder=recorder)
        return provider, transport

    async def test_generate_response_uses_flat_rate(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={"models": []}),
            ("POST", ":generateContent"): httpx.Response(200, json={
                "candidates": [{"content": {"parts": [{"text": "Gemini says hi"}]}, "finishReason": "STOP"}],
                "usageMetadata": {"promptTokenCount": 100, "candidatesTokenCount": 4},
            }),
        })
        await provider.initialize()
        history = [
            ConversationMessage(role=Role.USER, content="earlier"),
            ConversationMessage(role=Role.ASSISTANT, content="reply"),
        ]
        response = await provider.generate_response("now", None, history)

        request = transport.requests[-1]
        assert request.url.path.endswith("/models/gemini-2.0-flash-exp:generateContent")
        assert request.url.params["key"] == "g-key"
        body = json.loads(request.content)
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert "systemInstruction" in body
        assert response.text == "Gemini says hi"
        assert response.metadata.estimated_cost_usd == pytest.approx(104 * 0.000001)

    async def test_streaming_uses_sse(self, make_executor, recorder):
        stream = sse_body(
            {"candidates": [{"content": {"parts": [{"text": "a"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "b"}]}}]},
            done=False,
        )
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/models"): httpx.Response(200, json={}),
            ("POST", ":streamGenerateContent"): httpx.Response(200, content=stream),
        })
        await provider.initialize()
        chunks = [c async for c in provider.generate_streaming_response("hi")]
        assert chunks == ["a", "b"]
        assert transport.requests[-1].url.params["alt"] == "sse"


@pytest.mark.asyncio
class TestOllamaProvider:
    def make(self, make_executor, recorder, routes):
        transport = RouteTable(routes)
        provider = OllamaProvider(make_executor(transport), base_url=OLLAMA_URL,
                                  default_model="gemma3:2b", recorder=recorder)
        return provider, transport

    TAGS = httpx.Response(200, json={"models": [{"name": "llama3:8b"}, {"name": "gemma3:2b"}]})

    async def test_discovers_models_and_picks_default(self, make_executor, recorder):
        provider, _ = self.make(make_executor, recorder, {("GET", "/api/tags"): self.TAGS})
        await provider.initialize()
        assert provider.kind == ProviderKind.LOCAL
        assert [m.id for m in provider.models] == ["llama3:8b", "gemma3:2b"]
        assert provider.selected_model.id == "gemma3:2b"

    async def test_no_models_installed(self, make_executor, recorder):
        provider, _ = self.make(make_executor, recorder, {("GET", "/api/tags"): httpx.Response(200, json={"models": []})})
        with pytest.raises(ModelNotAvailable):
            await provider.initialize()

    async def test_streaming_ndjson(self, make_executor, recorder, ledger):
        stream = ndjson_body(
            {"message": {"role": "assistant", "content": "Local "}, "done": False},
            {"message": {"role": "assistant", "content": "answer"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 2},
        )
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/api/tags"): self.TAGS,
            ("POST", "/api/chat"): httpx.Response(200, content=stream),
        })
        await provider.initialize()
        chunks = [c async for c in provider.generate_streaming_response("hi")]
        assert chunks == ["Local ", "answer"]
        assert transport.bodies("/api/chat")[0]["stream"] is True
        # 12 chars at 3.5 chars per token
        assert ledger.events()[0].completion_tokens == 3
        assert ledger.events()[0].estimated_cost_usd == 0.0

    async def test_reset_unloads_model(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/api/tags"): self.TAGS,
            ("POST", "/api/generate"): httpx.Response(200, json={"done": True}),
        })
        await provider.initialize()
        await provider.reset_conversation()
        assert transport.bodies("/api/generate") == [{"model": "gemma3:2b", "keep_alive": 0}]

    async def test_reset_failure_is_logged_not_raised(self, make_executor, recorder):
        provider, _ = self.make(make_executor, recorder, {
            ("GET", "/api/tags"): self.TAGS,
            ("POST", "/api/generate"): httpx.Response(400),
        })
        await provider.initialize()
        await provider.reset_conversation()

    async def test_summarize_delegates_to_raw(self, make_executor, recorder):
        provider, transport = self.make(make_executor, recorder, {
            ("GET", "/api/tags"): self.TAGS,
            ("POST", "/api/chat"): httpx.Response(200, json={"message": {"content": "A short summary."}}),
        })
        await provider.initialize()
        messages = [
            ConversationMessage(role=Role.USER, content="What is MLX?"),
            ConversationMessage(role=Role.ASSISTANT, content="A framework."),
        ]
        summary = await provider.summarize_conversation(messages)
        assert summary == "A short summary."
        sent = transport.bodies("/api/chat")[0]["messages"]
        assert len(sent) == 1
        assert "User: What is MLX?" in sent[0]["content"]


class TestProviderSettings:
    def make(self):
        provider = OpenAIProvider(executor=None, credentials=MemoryCredentialStore(), base_url=OPENAI_URL)
        provider.models = provider.catalog()
        provider._select_default_model(provider.preferred_models)
        return provider

    def test_settings_shape(self):
        settings = self.make().get_configurable_settings()
        by_id = {s.id: s for s in settings}
        assert isinstance(by_id["model_selection"], ChoiceSetting)
        assert "gpt-4o" in by_id["model_selection"].options
        assert by_id["model_selection"].current == "gpt-5-mini"
        assert isinstance(by_id["temperature"], NumberSetting)
        assert by_id["temperature"].current == 0.7

    def test_update_model(self):
        provider = self.make()
        provider.update_setting("model_selection", "gpt-4o")
        assert provider.selected_model.id == "gpt-4o"

    def test_update_temperature(self):
        provider = self.make()
        provider.update_setting("temperature", 1.2)
        assert provider.temperature == 1.2

    def test_wrong_kind(self):
        provider = self.make()
        with pytest.raises(InvalidConfiguration):
            provider.update_setting("temperature", "hot")
        with pytest.raises(InvalidConfiguration):
            provider.update_setting("temperature", 5)
        with pytest.raises(InvalidConfiguration):
            provider.update_setting("model_selection", "gpt-2")

    def test_unknown_setting(self):
        with pytest.raises(UnsupportedOperation):
            self.make().update_setting("top_k", 3)

    def test_descriptor(self):
        descriptor = self.make().descriptor()
        assert descriptor.id == "openai"
        assert descriptor.kind == ProviderKind.EXTERNAL
        assert descriptor.selected_model.id == "gpt-5-mini"
        assert len(descriptor.models) == 5


class TestCredentialStores:
    def test_memory_store(self):
        store = MemoryCredentialStore()
        assert not store.has("openai")
        store.set("openai", "  sk-1  ")
        assert store.get("openai") == "sk-1"
        store.set("openai", "")
        assert not store.has("openai")

    def test_settings_store(self):
        store = SettingsCredentialStore(Settings(openai_api_key="sk-env", anthropic_api_key=None))
        assert store.get("openai") == "sk-env"
        assert not store.has("anthropic")
        store.delete("openai")
        assert store.get("openai") is None
