from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from notifypipe.domain.models import NotificationJob
from notifypipe.services.channels.base import DispatchRequest, DispatchResult
from notifypipe.services.channels.email import SendGridEmailDispatcher
from notifypipe.services.channels.push import PUSH_NOT_IMPLEMENTED, PushDispatcher
from notifypipe.services.poller import JobPoller
from notifypipe.services.queue import InMemoryWorkQueue, RedisWorkQueue
from notifypipe.services.worker_pool import WorkerPool
from notifypipe.tests.utils.fake_redis import FakeRedis
from notifypipe.tests.utils.seed import seed_job, seed_recipient


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _ScriptedDispatcher:
    # Returns queued results in order, then repeats the last one.
    method = "sms"

    def __init__(self, *results: DispatchResult) -> None:
        self._results = list(results)
        self.calls: list[DispatchRequest] = []

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None:
        return phone or None

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        self.calls.append(request)
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


def _build(job_store, recipients, dispatchers, **kwargs):  # noqa: ANN001, ANN202
    clock = _Clock()
    queue = InMemoryWorkQueue(clock=clock)
    poller = JobPoller(store=job_store, queue=queue, stale_after_s=None)
    pool = WorkerPool(
        queue=queue,
        store=job_store,
        dispatchers={dispatcher.method: dispatcher for dispatcher in dispatchers},
        recipients=recipients,
        **kwargs,
    )
    return clock, queue, poller, pool


async def _run_until_idle(clock: _Clock, queue: InMemoryWorkQueue, pool: WorkerPool) -> list[str]:
    # Drive single attempts by hand, jumping the clock past each backoff.
    outcomes: list[str] = []
    for _ in range(20):
        item = await queue.dequeue(timeout_s=0)
        if item is None:
            depth = await queue.depth()
            if depth.delayed == 0:
                return outcomes
            clock.now += 3600
            continue
        outcomes.append(await pool.process_item(item))
    return outcomes


async def _job_row(session_factory, job_id: str) -> NotificationJob:  # noqa: ANN001
    async with session_factory() as session:
        row = await session.get(NotificationJob, job_id)
    assert row is not None
    return row


@pytest.mark.asyncio
async def test_email_job_is_sent_with_a_delivered_log(session_factory, job_store, recipients) -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(202, headers={"X-Message-Id": "sg-123"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        dispatcher = SendGridEmailDispatcher(
            client=client,
            api_key="SG.key",
            from_email="updates@example.com",
            from_name="Updates",
        )
        recipient_id = await seed_recipient(session_factory, email="parent@example.com")
        job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="email")
        clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

        assert await poller.poll_once() == 1
        outcomes = await _run_until_idle(clock, queue, pool)

    assert outcomes == ["sent"]
    assert len(captured) == 1
    row = await _job_row(session_factory, job_id)
    assert row.status == "sent"
    assert row.message_id and row.message_id.startswith("notify-")
    assert row.processed_at is not None
    logs = await job_store.get_delivery_logs(job_id)
    assert [log.status for log in logs] == ["delivered"]
    assert logs[0].provider_message_id == row.message_id
    assert pool.completed == 1


@pytest.mark.asyncio
async def test_push_job_fails_without_retry(session_factory, job_store, recipients) -> None:
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="push")
    clock, queue, poller, pool = _build(job_store, recipients, [PushDispatcher()])

    await poller.poll_once()
    outcomes = await _run_until_idle(clock, queue, pool)

    assert outcomes == ["failed"]
    row = await _job_row(session_factory, job_id)
    assert row.status == "failed"
    assert row.failure_reason == PUSH_NOT_IMPLEMENTED
    logs = await job_store.get_delivery_logs(job_id)
    assert [log.error_message for log in logs] == [PUSH_NOT_IMPLEMENTED]


@pytest.mark.asyncio
async def test_always_failing_job_gets_exactly_three_attempts(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=False, error="provider 503", status_code=503))
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms", max_retries=10)
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

    await poller.poll_once()
    outcomes = await _run_until_idle(clock, queue, pool)

    assert outcomes == ["retry", "retry", "failed"]
    assert len(dispatcher.calls) == 3
    row = await _job_row(session_factory, job_id)
    assert row.status == "failed"
    assert row.retry_count == 3
    assert row.failure_reason == "provider 503"
    assert len(await job_store.get_delivery_logs(job_id)) == 3
    depth = await queue.depth()
    assert (depth.waiting, depth.active, depth.delayed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_transient_failure_then_success_records_retry_count(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(
        DispatchResult(success=False, error="timeout"),
        DispatchResult(success=True, message_id="SM123"),
    )
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

    await poller.poll_once()
    assert await _run_until_idle(clock, queue, pool) == ["retry", "sent"]

    row = await _job_row(session_factory, job_id)
    assert row.status == "sent"
    assert row.retry_count == 1
    assert row.message_id == "SM123"


@pytest.mark.asyncio
async def test_job_ceiling_caps_pool_policy(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=False, error="flaky"))
    recipient_id = await seed_recipient(session_factory)
    await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms", max_retries=1)
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

    await poller.poll_once()
    assert await _run_until_idle(clock, queue, pool) == ["failed"]


@pytest.mark.asyncio
async def test_urgent_override_changes_attempt_ceiling(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=False, error="flaky"))
    recipient_id = await seed_recipient(session_factory)
    await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms", urgency_level="urgent", max_retries=10)
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher], urgent_max_attempts=5)

    await poller.poll_once()
    assert await _run_until_idle(clock, queue, pool) == ["retry"] * 4 + ["failed"]


@pytest.mark.asyncio
async def test_inactive_recipient_is_skipped(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=True, message_id="SM1"))
    recipient_id = await seed_recipient(session_factory, is_active=False)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

    await poller.poll_once()
    assert await _run_until_idle(clock, queue, pool) == ["skipped"]
    assert dispatcher.calls == []
    row = await _job_row(session_factory, job_id)
    assert row.status == "skipped"


@pytest.mark.asyncio
async def test_missing_address_and_unknown_method_fail_permanently(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=True, message_id="SM1"))
    recipient_id = await seed_recipient(session_factory, phone=None)
    no_phone = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    unknown = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="pigeon")
    clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

    await poller.poll_once()
    assert await _run_until_idle(clock, queue, pool) == ["failed", "failed"]
    assert dispatcher.calls == []
    assert (await _job_row(session_factory, no_phone)).failure_reason.startswith("Recipient sms address not found")
    assert (await _job_row(session_factory, unknown)).failure_reason == "pigeon delivery not supported"


@pytest.mark.asyncio
async def test_unconfigured_provider_fails_without_retry(session_factory, job_store, recipients) -> None:
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))) as client:
        dispatcher = SendGridEmailDispatcher(client=client, api_key=None, from_email="a@example.com", from_name="A")
        recipient_id = await seed_recipient(session_factory)
        job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="email")
        clock, queue, poller, pool = _build(job_store, recipients, [dispatcher])

        await poller.poll_once()
        assert await _run_until_idle(clock, queue, pool) == ["failed"]

    row = await _job_row(session_factory, job_id)
    assert row.failure_reason == "Email service not configured"


@pytest.mark.asyncio
async def test_started_pool_drains_queue_and_stops(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=True, message_id="SM1"))
    recipient_id = await seed_recipient(session_factory)
    job_ids = [
        await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms") for _ in range(4)
    ]
    queue = InMemoryWorkQueue()
    poller = JobPoller(store=job_store, queue=queue, stale_after_s=None)
    pool = WorkerPool(
        queue=queue,
        store=job_store,
        dispatchers={"sms": dispatcher},
        recipients=recipients,
        concurrency=2,
        dequeue_timeout_s=0.05,
    )

    await poller.poll_once()
    pool.start()
    assert pool.is_running
    for _ in range(100):
        if pool.completed == len(job_ids):
            break
        await asyncio.sleep(0.02)
    await pool.stop(grace_s=1)

    assert pool.completed == len(job_ids)
    assert not pool.is_running
    assert len(dispatcher.calls) == len(job_ids)


class _CrashingStore:
    # Delegates to the real store but fails the named method for its first `failures` calls.
    def __init__(self, inner, *, method: str, failures: int = 1) -> None:  # noqa: ANN001
        self._inner = inner
        self._method = method
        self._failures = failures
        self.calls = 0

    def __getattr__(self, name: str):  # noqa: ANN204
        target = getattr(self._inner, name)
        if name != self._method:
            return target

        async def wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            self.calls += 1
            if self.calls <= self._failures:
                raise RuntimeError("database connection lost")
            return await target(*args, **kwargs)

        return wrapper


class _SlowDispatcher:
    method = "sms"

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None:
        return phone or None

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        await asyncio.sleep(1)
        return DispatchResult(success=True, message_id="SM-late")


@pytest.mark.asyncio
async def test_provider_timeout_is_retried(session_factory, job_store, recipients) -> None:
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    clock, queue, poller, pool = _build(job_store, recipients, [_SlowDispatcher()], provider_timeout_s=0.01)

    await poller.poll_once()
    item = await queue.dequeue(timeout_s=0)
    assert item is not None
    assert await pool.process_item(item) == "retry"

    row = await _job_row(session_factory, job_id)
    assert row.status == "processing"
    assert row.retry_count == 1
    assert row.failure_reason == "Provider call timed out after 0.01s"
    depth = await queue.depth()
    assert (depth.active, depth.delayed) == (0, 1)


@pytest.mark.asyncio
async def test_crashed_attempt_releases_reservation_for_stale_recovery(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=True, message_id="SM1"))
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    store = _CrashingStore(job_store, method="mark_terminal")
    queue = InMemoryWorkQueue()
    poller = JobPoller(store=store, queue=queue, stale_after_s=900)
    pool = WorkerPool(
        queue=queue,
        store=store,
        dispatchers={"sms": dispatcher},
        recipients=recipients,
        concurrency=1,
        dequeue_timeout_s=0.05,
    )

    assert await poller.poll_once() == 1
    pool.start()
    for _ in range(100):
        if store.calls == 1 and pool.in_flight == 0:
            break
        await asyncio.sleep(0.02)
    await pool.stop(grace_s=1)

    depth = await queue.depth()
    assert (depth.waiting, depth.active, depth.delayed) == (0, 0, 0)
    assert (await _job_row(session_factory, job_id)).status == "processing"

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert await poller.poll_once(now=later) == 1
    item = await queue.dequeue(timeout_s=0)
    assert item is not None
    assert await pool.process_item(item) == "sent"
    assert (await _job_row(session_factory, job_id)).status == "sent"
    assert len(dispatcher.calls) == 2


@pytest.mark.asyncio
async def test_stale_job_held_by_dead_redis_worker_is_recovered(session_factory, job_store, recipients) -> None:
    dispatcher = _ScriptedDispatcher(DispatchResult(success=True, message_id="SM1"))
    recipient_id = await seed_recipient(session_factory)
    job_id = await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    redis = FakeRedis()
    now = {"ms": 1_700_000_000_000}

    crashed_queue = RedisWorkQueue(redis, name="jobs", lease_ms=300_000, clock_ms=lambda: now["ms"])
    assert await JobPoller(store=job_store, queue=crashed_queue, stale_after_s=900).poll_once() == 1
    assert await crashed_queue.dequeue(timeout_s=0) is not None
    # The process holding the lease dies here without acknowledging.

    now["ms"] += 3_600_000
    queue = RedisWorkQueue(redis, name="jobs", lease_ms=300_000, clock_ms=lambda: now["ms"])
    poller = JobPoller(store=job_store, queue=queue, stale_after_s=900)
    pool = WorkerPool(queue=queue, store=job_store, dispatchers={"sms": dispatcher}, recipients=recipients)

    assert await poller.poll_once(now=datetime.now(timezone.utc) + timedelta(hours=1)) == 1
    item = await queue.dequeue(timeout_s=0)
    assert item is not None and item.job_id == job_id
    assert await pool.process_item(item) == "sent"
    depth = await queue.depth()
    assert (depth.waiting, depth.active, depth.delayed) == (0, 0, 0)


@pytest.mark.asyncio
async def test_poller_survives_store_outage(session_factory, job_store) -> None:
    recipient_id = await seed_recipient(session_factory)
    await seed_job(session_factory, recipient_id=recipient_id, delivery_method="sms")
    store = _CrashingStore(job_store, method="fetch_due_pending")
    queue = InMemoryWorkQueue()
    poller = JobPoller(store=store, queue=queue, interval_s=0.01, stale_after_s=None)

    task = asyncio.create_task(poller.run())
    for _ in range(100):
        if (await queue.depth()).waiting == 1:
            break
        await asyncio.sleep(0.02)
    poller.stop()
    await asyncio.wait_for(task, timeout=1)

    assert store.calls >= 2
    assert (await queue.depth()).waiting == 1
    assert not poller.is_running
