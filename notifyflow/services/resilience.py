from __future__ import annotations

import asyncio
import math
import time
from typing import Callable


def calculate_tokens(
    *,
    tokens: float | None,
    last_ms: int | None,
    now_ms: int,
    rate: float,
    burst: int,
) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if tokens is None:
        tokens = float(burst)
    if last_ms is None or now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def retry_after_ms(tokens: float, *, rate: float, cost: int = 1) -> int:
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - tokens) / rate) * 1000))


def exponential_backoff_s(attempt: int, *, base_s: float, cap_s: float | None = None) -> float:
    # base, 2*base, 4*base... for attempt 1, 2, 3.
    delay = max(0.0, float(base_s)) * (2 ** max(0, int(attempt) - 1))
    if cap_s is not None:
        delay = min(delay, float(cap_s))
    return delay


class TokenBucket:
    """In-process token bucket shared by the jobs of one worker."""

    def __init__(
        self,
        rate: float,
        *,
        burst: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = float(rate)
        self.burst = max(1, int(burst if burst is not None else math.ceil(rate) or 1))
        self._clock = clock
        self._tokens: float | None = None
        self._last_ms: int | None = None
        self._lock = asyncio.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def try_acquire(self, cost: int = 1) -> int:
        """Take ``cost`` tokens if available; otherwise return the wait in ms."""
        now_ms = self._now_ms()
        tokens = calculate_tokens(
            tokens=self._tokens, last_ms=self._last_ms, now_ms=now_ms, rate=self.rate, burst=self.burst
        )
        self._last_ms = now_ms
        if tokens >= cost:
            self._tokens = tokens - cost
            return 0
        self._tokens = tokens
        return retry_after_ms(tokens, rate=self.rate, cost=cost)

    async def acquire(self, cost: int = 1) -> None:
        if self.rate <= 0:
            return
        async with self._lock:
            while True:
                wait_ms = self.try_acquire(cost)
                if wait_ms <= 0:
                    return
                await asyncio.sleep(wait_ms / 1000.0)
