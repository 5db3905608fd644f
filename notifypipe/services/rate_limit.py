from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Protocol


# KEYS: bucket. ARGV: now_ms, rate, burst, cost, ttl_s. Returns 0 when granted, else the wait in ms.
_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local burst = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = burst
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(burst, tokens + ((now_ms - ts) / 1000.0) * rate)

local retry_after = 0
if tokens >= cost then
  tokens = tokens - cost
elseif rate <= 0 then
  retry_after = 1000
else
  retry_after = math.ceil(((cost - tokens) / rate) * 1000)
end

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)
return retry_after
"""


class RateLimiter(Protocol):
    async def acquire(self, cost: int = 1) -> None: ...


def _calculate_tokens(
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
    if last_ms is None:
        last_ms = now_ms
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    tokens = min(float(burst), tokens + (delta_s * rate))
    return tokens


def _retry_after_ms(tokens: float, *, rate: float, cost: int) -> int:
    # Compute retry-after using the token deficit and sustained rate.
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    needed = cost - tokens
    return int(math.ceil((needed / rate) * 1000))


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class DispatchRateLimiter:
    # Process-wide token bucket shared by all worker tasks; callers wait instead of being rejected.
    def __init__(
        self,
        *,
        rate_per_s: float,
        burst: int | None = None,
        clock_ms: Callable[[], int] = _monotonic_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._rate = float(rate_per_s)
        self._burst = max(1, int(burst if burst is not None else math.ceil(self._rate)))
        self._clock_ms = clock_ms
        self._sleep = sleep
        self._tokens: float | None = None
        self._last_ms: int | None = None
        self._lock = asyncio.Lock()

    def try_acquire(self, cost: int = 1) -> int:
        # Take tokens when available and return 0; otherwise return the wait in ms without consuming.
        now_ms = self._clock_ms()
        tokens = _calculate_tokens(
            tokens=self._tokens,
            last_ms=self._last_ms,
            now_ms=now_ms,
            rate=self._rate,
            burst=self._burst,
        )
        self._last_ms = now_ms
        retry_after_ms = _retry_after_ms(tokens, rate=self._rate, cost=cost)
        if retry_after_ms == 0:
            tokens -= cost
        self._tokens = tokens
        return retry_after_ms

    async def acquire(self, cost: int = 1) -> None:
        # Serialize waiters so tokens are granted in arrival order.
        if self._rate <= 0:
            return
        async with self._lock:
            while True:
                retry_after_ms = self.try_acquire(cost)
                if retry_after_ms == 0:
                    return
                await self._sleep(retry_after_ms / 1000.0)


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


def _ttl_seconds(rate: float, burst: int) -> int:
    # Keep idle buckets around long enough to refill fully before expiring.
    if rate <= 0:
        return 1
    return max(1, int(math.ceil((burst / rate) * 2)))


class RedisRateLimiter:
    # One bucket in Redis shared by every worker process consuming the same queue.
    def __init__(
        self,
        redis: Any,
        *,
        rate_per_s: float,
        key: str = "notification-queue:rate",
        burst: int | None = None,
        clock_ms: Callable[[], int] = _wall_clock_ms,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._redis = redis
        self._key = key
        self._rate = float(rate_per_s)
        self._burst = max(1, int(burst if burst is not None else math.ceil(self._rate)))
        self._clock_ms = clock_ms
        self._sleep = sleep

    async def try_acquire(self, cost: int = 1) -> int:
        result = await self._redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            self._key,
            self._clock_ms(),
            self._rate,
            self._burst,
            cost,
            _ttl_seconds(self._rate, self._burst),
        )
        return int(result)

    async def acquire(self, cost: int = 1) -> None:
        if self._rate <= 0:
            return
        while True:
            retry_after_ms = await self.try_acquire(cost)
            if retry_after_ms == 0:
                return
            await self._sleep(retry_after_ms / 1000.0)
