import asyncio
import time
from collections import defaultdict
from typing import Awaitable, Callable, Optional

from conduit.observability.logger import get_logger

log = get_logger("llm.rate_limiter")


class RateLimiter:
    """Best-effort pacer: spaces out request starts per provider.

    Not an admission gate; it never rejects, it only delays.
    """

    def __init__(
        self,
        intervals: Optional[dict[str, float]] = None,
        default_interval: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.intervals: dict[str, float] = dict(intervals or {})
        self.default_interval = default_interval
        self._clock = clock
        self._sleep = sleep
        self._last_request: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def interval_for(self, provider_id: str) -> float:
        return self.intervals.get(provider_id, self.default_interval)

    async def wait_if_needed(self, provider_id: str) -> float:
        """Returns the number of seconds spent waiting."""
        async with self._locks[provider_id]:
            waited = 0.0
            last = self._last_request.get(provider_id)
            if last is not None:
                delay = self.interval_for(provider_id) - (self._clock() - last)
                if delay > 0:
                    log.debug("rate_limit_wait", provider=provider_id, delay=round(delay, 3))
                    await self._sleep(delay)
                    waited = delay
            self._last_request[provider_id] = self._clock()
            return waited

    def last_request_time(self, provider_id: str) -> Optional[float]:
        return self._last_request.get(provider_id)
