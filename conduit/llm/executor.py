"""
ResilientRequestExecutor: retry, backoff and circuit-breaker handling for one
logical HTTP exchange.

Retry policy:
  2xx                      -> success, breaker reset
  401                      -> AuthenticationFailed, never retried, not counted
  429/500/502/503/504      -> backoff and retry, counted once attempts run out
  transport error/timeout  -> backoff and retry, counted once attempts run out
  undecodable body         -> ResponseFormatError, counted
  other request errors     -> NetworkError (e.g. redirect loops), counted
  anything else            -> permanent failure, counted

Streaming exchanges are only retried while the connection is being set up.
Once a stream is open, read errors propagate to the caller. A stream counts
as a success when its body is read to the end and as a failure when the read
breaks off; a consumer that stops early or is cancelled counts as neither.
"""

import asyncio
import random
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from conduit.llm.circuit_breaker import CircuitBreaker
from conduit.llm.errors import (
    AuthenticationFailed,
    InvalidConfiguration,
    ModelNotAvailable,
    NetworkError,
    ProviderSpecificError,
    RateLimitExceeded,
    ResponseFormatError,
    StreamInterrupted,
)
from conduit.llm.rate_limiter import RateLimiter
from conduit.observability.logger import get_logger

log = get_logger("llm.executor")

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
ERROR_SNIPPET_CHARS = 500


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After as seconds, or an HTTP-date converted to a relative offset."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def compute_backoff(
    attempt: int,
    retry_after: Optional[float] = None,
    base: float = 0.5,
    maximum: float = 8.0,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    if retry_after is not None:
        return min(maximum, max(base, retry_after))
    delay = min(maximum, base * (2 ** (attempt - 1)))
    jitter = uniform(0.0, delay * 0.2)
    return min(maximum, delay + jitter)


class ResilientRequestExecutor:
    def __init__(
        self,
        client: httpx.AsyncClient,
        circuit_breaker: CircuitBreaker,
        rate_limiter: RateLimiter,
        max_attempts: int = 5,
        base_backoff: float = 0.5,
        max_backoff: float = 8.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        uniform: Callable[[float, float], float] = random.uniform,
    ):
        self.client = client
        self.circuit_breaker = circuit_breaker
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self._sleep = sleep
        self._uniform = uniform

    def backoff_delay(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        retry_after = None
        if response is not None:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
        return compute_backoff(attempt, retry_after, self.base_backoff, self.max_backoff, self._uniform)

    async def send(self, provider_id: str, request: httpx.Request, model_id: str = None) -> httpx.Response:
        return await self._execute(provider_id, request, stream=False, model_id=model_id)

    async def send_json(self, provider_id: str, request: httpx.Request, model_id: str = None) -> dict:
        response = await self.send(provider_id, request, model_id=model_id)
        try:
            data = response.json()
        except ValueError as e:
            raise ResponseFormatError("Failed to parse response", provider_id=provider_id) from e
        if not isinstance(data, dict):
            raise ResponseFormatError("Invalid JSON response", provider_id=provider_id)
        return data

    @asynccontextmanager
    async def stream(self, provider_id: str, request: httpx.Request, model_id: str = None) -> AsyncIterator[httpx.Response]:
        response = await self._execute(provider_id, request, stream=True, model_id=model_id)
        try:
            yield response
        except (StreamInterrupted, ResponseFormatError) as e:
            await self.circuit_breaker.record_failure(provider_id, None)
            log.warning("stream_interrupted", provider=provider_id, error=e.message)
            raise
        else:
            await self.circuit_breaker.record_success(provider_id)
        finally:
            await response.aclose()

    async def _execute(self, provider_id: str, request: httpx.Request, stream: bool, model_id: Optional[str]) -> httpx.Response:
        for attempt in range(1, self.max_attempts + 1):
            await self.circuit_breaker.preflight(provider_id)
            await self.rate_limiter.wait_if_needed(provider_id)

            try:
                response = await self.client.send(request, stream=stream)
            except httpx.TransportError as e:
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt)
                    log.warning("retry_scheduled", provider=provider_id, attempt=attempt,
                                delay=round(delay, 3), error=type(e).__name__)
                    await self._sleep(delay)
                    continue
                await self.circuit_breaker.record_failure(provider_id, None)
                log.error("request_failed", provider=provider_id, attempts=attempt, error=str(e))
                raise NetworkError(e, provider_id=provider_id) from e
            except httpx.DecodingError as e:
                await self.circuit_breaker.record_failure(provider_id, None)
                log.error("response_undecodable", provider=provider_id, error=str(e))
                raise ResponseFormatError(f"Undecodable response body: {e}", provider_id=provider_id) from e
            except httpx.RequestError as e:
                await self.circuit_breaker.record_failure(provider_id, None)
                log.error("request_failed", provider=provider_id, attempts=attempt, error=str(e))
                raise NetworkError(e, provider_id=provider_id) from e

            status = response.status_code
            if 200 <= status < 300:
                if not stream:
                    await self.circuit_breaker.record_success(provider_id)
                return response

            snippet = await self._drain(response)

            if status == 401:
                await self.circuit_breaker.record_failure(provider_id, 401)
                log.warning("authentication_failed", provider=provider_id)
                raise AuthenticationFailed(provider_id=provider_id)

            if status in RETRYABLE_STATUSES:
                if attempt < self.max_attempts:
                    delay = self.backoff_delay(attempt, response)
                    log.warning("retry_scheduled", provider=provider_id, attempt=attempt,
                                delay=round(delay, 3), status=status)
                    await self._sleep(delay)
                    continue
                await self.circuit_breaker.record_failure(provider_id, status)
                log.error("request_failed", provider=provider_id, attempts=attempt, status=status)
                if status == 429:
                    raise RateLimitExceeded(provider_id=provider_id)
                raise ProviderSpecificError(f"HTTP {status}", provider_id=provider_id, status_code=status)

            await self.circuit_breaker.record_failure(provider_id, status)
            log.error("request_rejected", provider=provider_id, status=status, body=snippet)
            raise self._permanent_error(provider_id, status, snippet, model_id)

        # max_attempts < 1
        raise InvalidConfiguration("max_attempts must be at least 1", provider_id=provider_id)

    @staticmethod
    async def _drain(response: httpx.Response) -> str:
        try:
            await response.aread()
            return response.text[:ERROR_SNIPPET_CHARS]
        except httpx.HTTPError:
            return ""
        finally:
            await response.aclose()

    @staticmethod
    def _permanent_error(provider_id: str, status: int, snippet: str, model_id: Optional[str]):
        if status == 404:
            return ModelNotAvailable(model_id or "unknown", provider_id=provider_id, status_code=status)
        if status in (400, 422):
            detail = f"request rejected (HTTP {status})"
            if snippet:
                detail += f": {snippet}"
            return InvalidConfiguration(detail, provider_id=provider_id, status_code=status)
        return ProviderSpecificError(f"HTTP {status}", provider_id=provider_id, status_code=status)
