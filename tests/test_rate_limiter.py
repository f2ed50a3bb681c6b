"""Token bucket tests, driven by a fake clock."""

import asyncio

import pytest

from casebridge.services import rate_limiter
from casebridge.services.rate_limiter import RateLimiterSaturated, TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.gate: asyncio.Event | None = None

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.now += seconds
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_concurrent_callers_never_exceed_rate_in_any_window():
    clock = FakeClock()
    bucket = TokenBucket(8, burst=1, max_waiters=100, clock=clock, sleep=clock.sleep)
    granted: list[float] = []

    async def caller():
        await bucket.acquire()
        granted.append(clock())

    await asyncio.gather(*(caller() for _ in range(40)))

    assert len(granted) == 40
    granted.sort()
    for i, start in enumerate(granted):
        in_window = [t for t in granted[i:] if t - start < 1.0]
        assert len(in_window) <= 8


@pytest.mark.asyncio
async def test_tokens_refill_over_time():
    clock = FakeClock()
    bucket = TokenBucket(2, burst=2, clock=clock, sleep=clock.sleep)

    await bucket.acquire()
    await bucket.acquire()
    assert clock() == 0.0

    await bucket.acquire()
    assert clock() == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_saturated_bucket_fails_fast():
    clock = FakeClock()
    clock.gate = asyncio.Event()
    bucket = TokenBucket(1, burst=1, max_waiters=1, clock=clock, sleep=clock.sleep)

    await bucket.acquire()
    waiter = asyncio.create_task(bucket.acquire())
    await asyncio.sleep(0)
    assert bucket.waiting == 1

    with pytest.raises(RateLimiterSaturated):
        await bucket.acquire()

    clock.gate.set()
    await waiter
    assert bucket.waiting == 0


def test_rate_must_be_positive():
    with pytest.raises(ValueError):
        TokenBucket(0)


def test_buckets_are_shared_per_office(monkeypatch):
    monkeypatch.setattr(rate_limiter.settings, "LEGACY_RATE_LIMIT_SCOPE", "office")
    first = rate_limiter.get_bucket("office-a")
    assert rate_limiter.get_bucket("office-a") is first
    assert rate_limiter.get_bucket("office-b") is not first


def test_global_scope_uses_one_bucket(monkeypatch):
    monkeypatch.setattr(rate_limiter.settings, "LEGACY_RATE_LIMIT_SCOPE", "global")
    assert rate_limiter.get_bucket("office-a") is rate_limiter.get_bucket("office-b")
