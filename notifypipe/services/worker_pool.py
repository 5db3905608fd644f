from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import hashlib
import logging
import time
from typing import Mapping

from notifypipe.core.errors import DispatchError
from notifypipe.domain.jobs import DeliveryLogEntry, NotificationJobRecord
from notifypipe.services.channels.base import ChannelDispatcher, DispatchRequest, DispatchResult
from notifypipe.services.job_store import JobStore
from notifypipe.services.queue import QueueItem, WorkQueue
from notifypipe.services.rate_limit import RateLimiter
from notifypipe.services.recipients import RecipientDirectory
from notifypipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def retry_backoff_ms(*, job_id: str, attempt_no: int, base_ms: int = 5000, max_ms: int = 300000) -> int:
    # Exponential backoff with deterministic jitter kept under 5% so delays never shrink between attempts.
    base = max(1, int(base_ms))
    cap = max(base, int(max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    jitter_span = min(251, max(1, base // 20))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % jitter_span
    return min(cap, backoff + jitter)


class WorkerPool:
    # Fixed set of consumer tasks; each runs one dispatch at a time under a shared rate limit.
    def __init__(
        self,
        *,
        queue: WorkQueue,
        store: JobStore,
        dispatchers: Mapping[str, ChannelDispatcher],
        recipients: RecipientDirectory,
        rate_limiter: RateLimiter | None = None,
        concurrency: int = 5,
        max_attempts: int = 3,
        urgent_max_attempts: int | None = None,
        backoff_base_ms: int = 5000,
        backoff_max_ms: int = 300000,
        provider_timeout_s: float = 30,
        dequeue_timeout_s: float = 1.0,
    ) -> None:
        self._queue = queue
        self._store = store
        self._dispatchers = dict(dispatchers)
        self._recipients = recipients
        self._rate_limiter = rate_limiter
        self._concurrency = max(1, int(concurrency))
        self._max_attempts = max(1, int(max_attempts))
        self._urgent_max_attempts = urgent_max_attempts
        self._backoff_base_ms = backoff_base_ms
        self._backoff_max_ms = backoff_max_ms
        self._provider_timeout_s = provider_timeout_s
        self._dequeue_timeout_s = dequeue_timeout_s
        self._tasks: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._in_flight = 0
        self.completed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def attempt_ceiling(self, job: NotificationJobRecord) -> int:
        # The job's own ceiling caps the pool policy; urgent jobs may carry a separate override.
        ceiling = self._max_attempts
        if job.urgency_level == "urgent" and self._urgent_max_attempts:
            ceiling = max(1, int(self._urgent_max_attempts))
        if job.max_retries > 0:
            ceiling = min(ceiling, int(job.max_retries))
        return ceiling

    def start(self) -> None:
        if self._tasks:
            logger.warning("notification worker pool already started")
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._consume(index), name=f"notification-worker-{index}")
            for index in range(self._concurrency)
        ]
        logger.info("notification worker pool started concurrency=%s", self._concurrency)

    async def stop(self, *, grace_s: float = 30) -> None:
        # Stop pulling work, let in-flight dispatches finish within the grace period, then cancel.
        if not self._tasks:
            return
        self._stopping.set()
        _done, pending = await asyncio.wait(self._tasks, timeout=max(0.0, grace_s))
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("notification worker pool cancelled tasks after grace period count=%s", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("notification worker pool stopped")

    async def _consume(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                item = await self._queue.dequeue(timeout_s=self._dequeue_timeout_s)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - queue outages are retried on the next dequeue.
                logger.exception("notification dequeue failed worker=%s", index)
                await asyncio.sleep(self._dequeue_timeout_s)
                continue
            if item is None:
                continue
            self._in_flight += 1
            try:
                if self._rate_limiter is not None:
                    await self._rate_limiter.acquire()
                await self.process_item(item)
            except Exception:  # noqa: BLE001 - keep the consumer alive; stale recovery re-enqueues the job.
                logger.exception("notification job processing crashed job_id=%s", item.job_id)
                await self._release(item)
            finally:
                self._in_flight -= 1

    async def _release(self, item: QueueItem) -> None:
        # Drop the queue reservation so stale recovery can enqueue the job again.
        try:
            await self._queue.ack(item.job_id)
        except Exception:  # noqa: BLE001 - the reservation lease expires on its own.
            logger.exception("notification queue release failed job_id=%s", item.job_id)

    async def _dispatch(self, dispatcher: ChannelDispatcher, request: DispatchRequest) -> DispatchResult:
        # Timeouts and raised errors become results; DispatchError carries its own retryability.
        try:
            return await asyncio.wait_for(dispatcher.dispatch(request), timeout=self._provider_timeout_s)
        except asyncio.TimeoutError:
            return DispatchResult(success=False, error=f"Provider call timed out after {self._provider_timeout_s}s")
        except DispatchError as exc:
            logger.warning("notification dispatcher refused job_id=%s error=%s", request.job_id, exc)
            return DispatchResult(success=False, error=str(exc), retryable=exc.retryable)
        except Exception as exc:  # noqa: BLE001 - provider adapters may raise arbitrary client errors.
            logger.exception("notification dispatcher raised job_id=%s", request.job_id)
            return DispatchResult(success=False, error=str(exc) or exc.__class__.__name__)

    async def process_item(self, item: QueueItem) -> str:
        # Run one dispatch attempt and record its outcome; returns sent/retry/failed/skipped.
        job = item.job
        attempt = item.attempt
        logger.info(
            "processing notification job job_id=%s method=%s attempt=%s",
            job.id,
            job.delivery_method,
            attempt,
        )
        dispatcher = self._dispatchers.get(job.delivery_method)
        if dispatcher is None:
            result = DispatchResult.permanent_failure(f"{job.delivery_method} delivery not supported")
            return await self._finish_failure(item, result, duration_ms=0)

        contact = await self._recipients.get_contact(job.recipient_id)
        if contact is None:
            result = DispatchResult.permanent_failure(f"Recipient not found: {job.recipient_id}")
            return await self._finish_failure(item, result, duration_ms=0)
        if not contact.is_active:
            await self._store.mark_terminal(job.id, "skipped", failure_reason="Recipient is inactive")
            await self._queue.ack(job.id)
            logger.info("notification job skipped for inactive recipient job_id=%s", job.id)
            return "skipped"

        address = dispatcher.resolve_address(email=contact.email, phone=contact.phone)
        if address is None:
            result = DispatchResult.permanent_failure(
                f"Recipient {job.delivery_method} address not found: {job.recipient_id}"
            )
            return await self._finish_failure(item, result, duration_ms=0)

        request = DispatchRequest(
            job_id=job.id,
            recipient_id=job.recipient_id,
            group_id=job.group_id,
            notification_type=job.notification_type,
            address=address,
            subject=job.content.subject,
            body=job.content.body,
            media_urls=tuple(job.content.media_urls or ()),
            metadata=dict(job.metadata or {}),
        )
        start = time.monotonic()
        result = await self._dispatch(dispatcher, request)
        duration_ms = int((time.monotonic() - start) * 1000)
        if result.success:
            return await self._finish_success(item, result, duration_ms=duration_ms)
        return await self._finish_failure(item, result, duration_ms=duration_ms)

    async def _finish_success(self, item: QueueItem, result: DispatchResult, *, duration_ms: int) -> str:
        job = item.job
        now = _utc_now()
        await self._store.mark_terminal(
            job.id,
            "sent",
            message_id=result.message_id,
            retry_count=item.attempt - 1,
            processed_at=now,
        )
        await self._store.append_delivery_log(
            DeliveryLogEntry(
                job_id=job.id,
                recipient_id=job.recipient_id,
                group_id=job.group_id,
                delivery_method=job.delivery_method,
                status="delivered",
                provider_message_id=result.message_id,
                provider_response=result.provider_response,
                delivery_time=now,
                delivery_duration_ms=duration_ms,
            )
        )
        await self._queue.ack(job.id)
        self.completed += 1
        increment_counter(f"dispatch.{job.delivery_method}.sent")
        logger.info("notification job sent job_id=%s message_id=%s", job.id, result.message_id)
        return "sent"

    async def _finish_failure(self, item: QueueItem, result: DispatchResult, *, duration_ms: int) -> str:
        job = item.job
        attempt = item.attempt
        ceiling = self.attempt_ceiling(job)
        now = _utc_now()
        reason = result.error or "Unknown delivery error"
        await self._store.append_delivery_log(
            DeliveryLogEntry(
                job_id=job.id,
                recipient_id=job.recipient_id,
                group_id=job.group_id,
                delivery_method=job.delivery_method,
                status="failed",
                provider_message_id=result.message_id,
                provider_response=result.provider_response,
                delivery_time=now,
                error_code=str(result.status_code) if result.status_code is not None else None,
                error_message=reason,
                delivery_duration_ms=duration_ms,
            )
        )
        if result.retryable and attempt < ceiling:
            delay_ms = retry_backoff_ms(
                job_id=job.id,
                attempt_no=attempt,
                base_ms=self._backoff_base_ms,
                max_ms=self._backoff_max_ms,
            )
            await self._store.record_retry(job.id, retry_count=attempt, failure_reason=reason, now=now)
            retried = item.model_copy(
                update={"job": job.model_copy(update={"retry_count": attempt, "failure_reason": reason})}
            )
            await self._queue.requeue(retried, delay_ms=delay_ms)
            increment_counter(f"dispatch.{job.delivery_method}.retried")
            logger.warning(
                "notification job attempt failed; retrying job_id=%s attempt=%s delay_ms=%s reason=%s",
                job.id,
                attempt,
                delay_ms,
                reason,
            )
            return "retry"

        await self._store.mark_terminal(
            job.id,
            "failed",
            failure_reason=reason,
            retry_count=attempt,
            processed_at=now,
        )
        await self._queue.ack(job.id)
        self.failed += 1
        increment_counter(f"dispatch.{job.delivery_method}.failed")
        logger.error(
            "notification job failed job_id=%s attempts=%s retryable=%s reason=%s",
            job.id,
            attempt,
            result.retryable,
            reason,
        )
        return "failed"
