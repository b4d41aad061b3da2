import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from conduit.llm.errors import CircuitOpen
from conduit.observability.logger import get_logger

log = get_logger("llm.circuit_breaker")


@dataclass
class CircuitBreakerState:
    consecutive_failures: int = 0
    open_until: Optional[float] = None


class CircuitBreaker:
    """Per-provider failure counter with a cooldown.

    Closed -> Open after ``failure_threshold`` consecutive failures. There is no
    half-open probe: once ``open_until`` passes, the next request goes through
    and its outcome is recorded like any other. 401s never count, since a bad
    credential needs the user, not a cooldown.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = asyncio.Lock()

    def _state(self, provider_id: str) -> CircuitBreakerState:
        state = self._states.get(provider_id)
        if state is None:
            state = self._states[provider_id] = CircuitBreakerState()
        return state

    async def preflight(self, provider_id: str):
        async with self._lock:
            state = self._state(provider_id)
            now = self._clock()
            if state.open_until is not None and now < state.open_until:
                raise CircuitOpen(provider_id, retry_in=state.open_until - now)

    async def record_success(self, provider_id: str):
        async with self._lock:
            state = self._state(provider_id)
            if state.open_until is not None or state.consecutive_failures:
                log.info("circuit_reset", provider=provider_id, failures=state.consecutive_failures)
            state.consecutive_failures = 0
            state.open_until = None

    async def record_failure(self, provider_id: str, http_status: Optional[int] = None):
        if http_status == 401:
            return
        async with self._lock:
            state = self._state(provider_id)
            state.consecutive_failures += 1
            if state.consecutive_failures >= self.failure_threshold:
                state.open_until = self._clock() + self.cooldown_seconds
                log.warning(
                    "circuit_opened",
                    provider=provider_id,
                    failures=state.consecutive_failures,
                    cooldown_seconds=self.cooldown_seconds,
                    status=http_status,
                )

    def state(self, provider_id: str) -> CircuitBreakerState:
        state = self._states.get(provider_id, CircuitBreakerState())
        return CircuitBreakerState(state.consecutive_failures, state.open_until)

    def is_open(self, provider_id: str) -> bool:
        state = self._states.get(provider_id)
        return bool(state and state.open_until is not None and self._clock() < state.open_until)

    def reset(self, provider_id: str):
        self._states.pop(provider_id, None)
