import json
from typing import Optional

from conduit.llm.base import LLMProvider
from conduit.llm.types import LLMResponse, ModelDescriptor, ModelPricing, ProviderKind, ResponseMetadata


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep; records delays instead of waiting."""

    def __init__(self, clock: FakeClock = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, delay: float):
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


def sse_body(*payloads, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def ndjson_body(*payloads) -> bytes:
    return "".join(json.dumps(p) + "\n" for p in payloads).encode()


class ScriptedProvider(LLMProvider):
    """Provider with no wire format: replies, stream chunks and failures are scripted.

    ``replies`` and ``stream`` items are either text or an exception to raise.
    """

    def __init__(self, provider_id: str = "scripted", kind: ProviderKind = ProviderKind.EXTERNAL,
                 replies=(), stream=(), init_error: Optional[Exception] = None, price: float = 1.0):
        super().__init__(executor=None)
        self.provider_id = provider_id
        self.display_name = provider_id.title()
        self.kind = kind
        self.model_catalog = [
            ModelDescriptor(id="model-a", name="Model A",
                            pricing=ModelPricing(input_per_mtok_usd=price, output_per_mtok_usd=price)),
            ModelDescriptor(id="model-b", name="Model B"),
        ]
        self.models = list(self.model_catalog)
        self.replies = list(replies)
        self.stream = list(stream)
        self.init_error = init_error
        self.raw_reply = "raw reply"
        self.calls: list[dict] = []
        self.raw_prompts: list[str] = []
        self.init_count = 0
        self.cleanup_count = 0
        self.reset_count = 0
        self.closed_streams = 0

    async def initialize(self):
        self.init_count += 1
        if self.init_error is not None:
            self._ready = False
            raise self.init_error
        self.models = list(self.model_catalog)
        self._select_default_model()
        self._ready = True

    async def validate_configuration(self):
        pass

    async def cleanup(self):
        self.cleanup_count += 1
        await super().cleanup()

    async def reset_conversation(self):
        self.reset_count += 1

    def _chat_request(self, model_id, system, turns, stream):
        raise NotImplementedError

    def _parse_completion(self, data):
        raise NotImplementedError

    def _stream_text(self, response):
        raise NotImplementedError

    async def generate_response(self, query, context=None, history=(), model=None):
        self.calls.append({"query": query, "context": context, "history": list(history)})
        reply = self.replies.pop(0) if self.replies else "ok"
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(
            text=reply,
            token_count=len(reply),
            metadata=ResponseMetadata(model_id=self.selected_model.id, provider_id=self.provider_id),
        )

    async def generate_streaming_response(self, query, context=None, history=(), model=None):
        self.calls.append({"query": query, "context": context, "history": list(history), "stream": True})
        try:
            for item in self.stream:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.closed_streams += 1

    async def generate_raw_response(self, prompt, model=None):
        self.raw_prompts.append(prompt)
        if isinstance(self.raw_reply, Exception):
            raise self.raw_reply
        return self.raw_reply
