from __future__ import annotations

import asyncio
from dataclasses import dataclass
import heapq
import itertools
import logging
import time
from typing import Any, Callable, Protocol

from pydantic import BaseModel
from redis.asyncio import Redis

from notifypipe.core.errors import QueueError
from notifypipe.domain.jobs import NotificationJobRecord


logger = logging.getLogger(__name__)

# Priority tiers are small integers; this spacing keeps per-tier FIFO sequences from overlapping.
_TIER_SPACING = 10**13


class QueueItem(BaseModel):
    # Full job payload carried through the queue so workers never re-read pending state.
    job_id: str
    priority: int
    job: NotificationJobRecord

    @classmethod
    def from_job(cls, job: NotificationJobRecord) -> "QueueItem":
        return cls(job_id=job.id, priority=job.priority, job=job)

    @property
    def attempt(self) -> int:
        return int(self.job.retry_count) + 1


@dataclass(frozen=True)
class QueueDepth:
    waiting: int
    active: int
    delayed: int


class WorkQueue(Protocol):
    async def enqueue(self, item: QueueItem, *, delay_ms: int = 0) -> bool: ...

    async def requeue(self, item: QueueItem, *, delay_ms: int = 0) -> None: ...

    async def dequeue(self, *, timeout_s: float = 1.0) -> QueueItem | None: ...

    async def ack(self, job_id: str) -> None: ...

    async def depth(self) -> QueueDepth: ...

    async def close(self) -> None: ...

    async def ping(self) -> None: ...


class InMemoryWorkQueue:
    # Single-process priority queue; dedup reservations cover waiting, delayed and in-flight items.
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._ready: list[tuple[int, int, str]] = []
        self._delayed: list[tuple[float, int, str]] = []
        self._items: dict[str, QueueItem] = {}
        self._active: set[str] = set()
        self._seq = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    async def ping(self) -> None:
        return None

    def _push(self, item: QueueItem, delay_ms: int) -> None:
        if delay_ms > 0:
            ready_at = self._clock() + delay_ms / 1000.0
            heapq.heappush(self._delayed, (ready_at, next(self._seq), item.job_id))
        else:
            heapq.heappush(self._ready, (item.priority, next(self._seq), item.job_id))

    def _promote_due(self) -> None:
        # Promoted items take a fresh sequence so they queue behind peers already waiting in the tier.
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _ready_at, _seq, job_id = heapq.heappop(self._delayed)
            item = self._items.get(job_id)
            if item is None:
                continue
            heapq.heappush(self._ready, (item.priority, next(self._seq), job_id))

    async def enqueue(self, item: QueueItem, *, delay_ms: int = 0) -> bool:
        async with self._cond:
            if self._closed:
                raise QueueError("queue is closed")
            if item.job_id in self._items:
                return False
            self._items[item.job_id] = item
            self._push(item, delay_ms)
            self._cond.notify()
        return True

    async def requeue(self, item: QueueItem, *, delay_ms: int = 0) -> None:
        # Return an in-flight item without releasing its dedup reservation.
        async with self._cond:
            if self._closed:
                raise QueueError("queue is closed")
            self._active.discard(item.job_id)
            self._items[item.job_id] = item
            self._push(item, delay_ms)
            self._cond.notify()

    async def dequeue(self, *, timeout_s: float = 1.0) -> QueueItem | None:
        deadline = self._clock() + max(0.0, timeout_s)
        async with self._cond:
            while True:
                if self._closed:
                    return None
                self._promote_due()
                if self._ready:
                    _priority, _seq, job_id = heapq.heappop(self._ready)
                    item = self._items.get(job_id)
                    if item is None:
                        continue
                    self._active.add(job_id)
                    return item
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return None
                wait_s = remaining
                if self._delayed:
                    wait_s = min(wait_s, max(0.0, self._delayed[0][0] - self._clock()))
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait_s)
                except asyncio.TimeoutError:
                    pass

    async def ack(self, job_id: str) -> None:
        async with self._cond:
            self._active.discard(job_id)
            self._items.pop(job_id, None)

    async def depth(self) -> QueueDepth:
        async with self._cond:
            self._promote_due()
            return QueueDepth(waiting=len(self._ready), active=len(self._active), delayed=len(self._delayed))

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()


# KEYS: items, ready, delayed, active, seq. ARGV: job_id, payload, now_ms, delay_ms, priority, tier_spacing.
# Returns 0 when the job is already tracked, 1 when reserved, 2 when an orphaned reservation was reclaimed.
_ENQUEUE_LUA = r"""
local job_id = ARGV[1]
local now_ms = tonumber(ARGV[3])
local delay_ms = tonumber(ARGV[4])
local status = 1
if redis.call("HEXISTS", KEYS[1], job_id) == 1 then
  if redis.call("ZSCORE", KEYS[2], job_id) or redis.call("ZSCORE", KEYS[3], job_id) then
    return 0
  end
  local lease = redis.call("ZSCORE", KEYS[4], job_id)
  if lease and tonumber(lease) > now_ms then
    return 0
  end
  redis.call("ZREM", KEYS[4], job_id)
  status = 2
end
redis.call("HSET", KEYS[1], job_id, ARGV[2])
if delay_ms > 0 then
  redis.call("ZADD", KEYS[3], string.format("%.0f", now_ms + delay_ms), job_id)
else
  local seq = redis.call("INCR", KEYS[5])
  local score = tonumber(ARGV[5]) * tonumber(ARGV[6]) + seq
  redis.call("ZADD", KEYS[2], string.format("%.0f", score), job_id)
end
return status
"""

# KEYS: items, ready, delayed, active, seq. ARGV: now_ms, lease_ms, promote_batch, tier_spacing.
# Promotes due retries, then pops the best ready job and leases it in one step.
_DEQUEUE_LUA = r"""
local now_ms = tonumber(ARGV[1])
local spacing = tonumber(ARGV[4])
local due = redis.call("ZRANGEBYSCORE", KEYS[3], "-inf", now_ms, "LIMIT", 0, tonumber(ARGV[3]))
for _, job_id in ipairs(due) do
  redis.call("ZREM", KEYS[3], job_id)
  local payload = redis.call("HGET", KEYS[1], job_id)
  if payload then
    local priority = tonumber(cjson.decode(payload)["priority"])
    local seq = redis.call("INCR", KEYS[5])
    redis.call("ZADD", KEYS[2], string.format("%.0f", priority * spacing + seq), job_id)
  end
end
while true do
  local popped = redis.call("ZPOPMIN", KEYS[2])
  if #popped == 0 then
    return false
  end
  local job_id = popped[1]
  local payload = redis.call("HGET", KEYS[1], job_id)
  if payload then
    redis.call("ZADD", KEYS[4], string.format("%.0f", now_ms + tonumber(ARGV[2])), job_id)
    return {job_id, payload}
  end
end
"""


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class RedisWorkQueue:
    # Shared queue for multi-process workers; reservation and leasing run as atomic scripts.
    def __init__(
        self,
        redis: Any,
        *,
        name: str = "notification-queue",
        owns_connection: bool = True,
        lease_ms: int = 300_000,
        poll_interval_s: float = 0.05,
        clock_ms: Callable[[], int] = _wall_clock_ms,
    ) -> None:
        self._redis = redis
        self._owns_connection = owns_connection
        # In-flight leases expire so a dead worker's job can be enqueued again.
        self._lease_ms = int(lease_ms)
        self._poll_interval_s = poll_interval_s
        self._clock_ms = clock_ms
        self._items_key = f"{name}:items"
        self._ready_key = f"{name}:ready"
        self._delayed_key = f"{name}:delayed"
        self._active_key = f"{name}:active"
        self._seq_key = f"{name}:seq"

    @classmethod
    def from_url(cls, redis_url: str, *, name: str, lease_ms: int = 300_000) -> "RedisWorkQueue":
        redis = Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(redis, name=name, lease_ms=lease_ms)

    @property
    def redis(self) -> Any:
        return self._redis

    def _keys(self) -> tuple[str, str, str, str, str]:
        return self._items_key, self._ready_key, self._delayed_key, self._active_key, self._seq_key

    async def ping(self) -> None:
        await self._redis.ping()

    async def _push(self, item: QueueItem, delay_ms: int) -> None:
        if delay_ms > 0:
            await self._redis.zadd(self._delayed_key, {item.job_id: self._clock_ms() + int(delay_ms)})
            return
        seq = int(await self._redis.incr(self._seq_key))
        await self._redis.zadd(self._ready_key, {item.job_id: item.priority * _TIER_SPACING + seq})

    async def enqueue(self, item: QueueItem, *, delay_ms: int = 0) -> bool:
        status = int(
            await self._redis.eval(
                _ENQUEUE_LUA,
                5,
                *self._keys(),
                item.job_id,
                item.model_dump_json(),
                self._clock_ms(),
                max(0, int(delay_ms)),
                item.priority,
                _TIER_SPACING,
            )
        )
        if status == 2:
            logger.warning("notification queue reclaimed orphaned reservation job_id=%s", item.job_id)
        return status > 0

    async def requeue(self, item: QueueItem, *, delay_ms: int = 0) -> None:
        # The holder re-pushes before dropping its lease so the job is never untracked.
        await self._redis.hset(self._items_key, item.job_id, item.model_dump_json())
        await self._push(item, delay_ms)
        await self._redis.zrem(self._active_key, item.job_id)

    async def dequeue(self, *, timeout_s: float = 1.0) -> QueueItem | None:
        deadline = time.monotonic() + max(0.0, timeout_s)
        while True:
            popped = await self._redis.eval(
                _DEQUEUE_LUA,
                5,
                *self._keys(),
                self._clock_ms(),
                self._lease_ms,
                100,
                _TIER_SPACING,
            )
            if popped:
                _job_id, payload = popped
                return QueueItem.model_validate_json(payload)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval_s, remaining))

    async def ack(self, job_id: str) -> None:
        await self._redis.zrem(self._active_key, job_id)
        await self._redis.hdel(self._items_key, job_id)

    async def depth(self) -> QueueDepth:
        waiting = await self._redis.zcard(self._ready_key)
        active = await self._redis.zcard(self._active_key)
        delayed = await self._redis.zcard(self._delayed_key)
        return QueueDepth(waiting=int(waiting), active=int(active), delayed=int(delayed))

    async def close(self) -> None:
        if self._owns_connection:
            await self._redis.aclose()
