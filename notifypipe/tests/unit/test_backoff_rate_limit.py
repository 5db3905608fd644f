from __future__ import annotations

import pytest

from notifypipe.services import rate_limit
from notifypipe.services.rate_limit import DispatchRateLimiter, RedisRateLimiter
from notifypipe.services.worker_pool import retry_backoff_ms
from notifypipe.tests.utils.fake_redis import FakeRedis


def test_backoff_is_deterministic_per_job_and_attempt() -> None:
    assert retry_backoff_ms(job_id="job-1", attempt_no=2) == retry_backoff_ms(job_id="job-1", attempt_no=2)


def test_backoff_never_decreases_across_attempts() -> None:
    for job_id in ("job-1", "job-2", "job-urgent"):
        delays = [retry_backoff_ms(job_id=job_id, attempt_no=attempt) for attempt in range(1, 10)]
        assert delays == sorted(delays)
        assert delays[0] >= 5000
        assert delays[1] >= 10000
        assert delays[-1] == 300000


def test_backoff_jitter_stays_below_the_next_step() -> None:
    first = retry_backoff_ms(job_id="job-1", attempt_no=1, base_ms=5000)
    assert 5000 <= first < 5251


def test_token_bucket_math_refills_and_caps() -> None:
    tokens = rate_limit._calculate_tokens(tokens=0.0, last_ms=0, now_ms=100, rate=50.0, burst=50)
    assert tokens == 5.0

    capped = rate_limit._calculate_tokens(tokens=49.0, last_ms=0, now_ms=10_000, rate=50.0, burst=50)
    assert capped == 50.0


def test_retry_after_computation() -> None:
    assert rate_limit._retry_after_ms(0.0, rate=50.0, cost=1) == 20
    assert rate_limit._retry_after_ms(1.0, rate=50.0, cost=1) == 0


def test_limiter_grants_burst_then_reports_wait() -> None:
    now = {"ms": 0}
    limiter = DispatchRateLimiter(rate_per_s=50, clock_ms=lambda: now["ms"])
    granted = [limiter.try_acquire() for _ in range(50)]
    assert granted == [0] * 50
    assert limiter.try_acquire() == 20

    now["ms"] += 20
    assert limiter.try_acquire() == 0


@pytest.mark.asyncio
async def test_acquire_sleeps_until_a_token_is_available() -> None:
    now = {"ms": 0}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["ms"] += int(seconds * 1000)

    limiter = DispatchRateLimiter(rate_per_s=2, clock_ms=lambda: now["ms"], sleep=fake_sleep)
    for _ in range(3):
        await limiter.acquire()

    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_non_positive_rate_disables_limiting() -> None:
    limiter = DispatchRateLimiter(rate_per_s=0)
    for _ in range(100):
        await limiter.acquire()


@pytest.mark.asyncio
async def test_redis_limiter_budget_is_shared_across_processes() -> None:
    redis = FakeRedis()
    now = {"ms": 1_700_000_000_000}
    first = RedisRateLimiter(redis, rate_per_s=2, key="jobs:rate", clock_ms=lambda: now["ms"])
    second = RedisRateLimiter(redis, rate_per_s=2, key="jobs:rate", clock_ms=lambda: now["ms"])

    assert await first.try_acquire() == 0
    assert await second.try_acquire() == 0
    assert await first.try_acquire() == 500
    assert await second.try_acquire() == 500
    assert redis.expirations["jobs:rate"] == 2

    now["ms"] += 500
    assert await second.try_acquire() == 0
    assert await first.try_acquire() == 500


@pytest.mark.asyncio
async def test_redis_limiter_acquire_waits_out_the_deficit() -> None:
    redis = FakeRedis()
    now = {"ms": 1_700_000_000_000}
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["ms"] += int(seconds * 1000)

    limiter = RedisRateLimiter(redis, rate_per_s=4, clock_ms=lambda: now["ms"], sleep=fake_sleep)
    for _ in range(5):
        await limiter.acquire()

    assert sleeps == [0.25]
