"""
Token bucket limiter for outbound legacy API calls.

Callers suspend until a token is available rather than failing. Once more
than ``max_waiters`` callers are already suspended, further callers fail fast
so a backlog cannot grow without bound.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable

from casebridge.core.config import settings

logger = logging.getLogger(__name__)


class RateLimiterSaturated(Exception):
    """Too many callers are already waiting for a token."""

    def __init__(self, key: str, waiting: int):
        super().__init__(f"Rate limiter {key} saturated ({waiting} waiting)")
        self.key = key
        self.waiting = waiting


class TokenBucket:
    """
    Refills ``rate`` tokens per second up to ``burst``.

    With ``burst=1`` calls are evenly paced, so no one-second window ever sees
    more than ``rate`` calls. Larger bursts trade that bound for latency.
    """

    def __init__(
        self,
        rate: float,
        burst: int = 1,
        max_waiters: int = 50,
        *,
        key: str = "global",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.burst = max(1, burst)
        self.max_waiters = max_waiters
        self.key = key
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.burst)
        self._updated = clock()
        self._waiters = 0
        self._lock = asyncio.Lock()

    @property
    def waiting(self) -> int:
        return self._waiters

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        """Take one token, waiting for it if necessary."""
        if self._waiters >= self.max_waiters:
            raise RateLimiterSaturated(self.key, self._waiters)
        self._waiters += 1
        try:
            # The lock keeps waiters in arrival order
            async with self._lock:
                while True:
                    self._refill()
                    if self._tokens >= 1.0:
                        self._tokens -= 1.0
                        return
                    await self._sleep((1.0 - self._tokens) / self.rate)
        finally:
            self._waiters -= 1


_buckets: dict[str, TokenBucket] = {}


def get_bucket(office_id: uuid.UUID | str | None) -> TokenBucket:
    """Shared bucket for an office (or the whole process when scope is global)."""
    if settings.LEGACY_RATE_LIMIT_SCOPE == "global" or office_id is None:
        key = "global"
    else:
        key = f"office:{office_id}"
    bucket = _buckets.get(key)
    if bucket is None:
        bucket = TokenBucket(
            settings.LEGACY_RATE_LIMIT_PER_SECOND,
            settings.LEGACY_RATE_LIMIT_BURST,
            settings.LEGACY_RATE_LIMIT_MAX_QUEUE,
            key=key,
        )
        _buckets[key] = bucket
        logger.debug(
            "Created legacy rate limiter %s at %.1f req/s", key, settings.LEGACY_RATE_LIMIT_PER_SECOND
        )
    return bucket


def reset_buckets() -> None:
    _buckets.clear()
