import json
from typing import AsyncIterator

import httpx

from conduit.llm.errors import ResponseFormatError, StreamInterrupted

SSE_DONE = "[DONE]"


async def iter_lines(response: httpx.Response, provider_id: str) -> AsyncIterator[str]:
    """Lines of an open stream; transport failures become StreamInterrupted."""
    try:
        async for line in response.aiter_lines():
            yield line
    except httpx.TransportError as e:
        raise StreamInterrupted(e, provider_id=provider_id) from e
    except httpx.DecodingError as e:
        raise ResponseFormatError(f"Undecodable stream body: {e}", provider_id=provider_id) from e


async def iter_sse_json(response: httpx.Response, provider_id: str) -> AsyncIterator[dict]:
    """Decoded ``data:`` payloads of a server-sent-events stream, up to ``[DONE]``."""
    async for line in iter_lines(response, provider_id):
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == SSE_DONE:
            return
        if not data:
            continue
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            yield payload


async def iter_ndjson(response: httpx.Response, provider_id: str) -> AsyncIterator[dict]:
    async for line in iter_lines(response, provider_id):
        line = line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            yield payload
