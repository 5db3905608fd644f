from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging

from notifypipe.services.job_store import JobStore
from notifypipe.services.queue import QueueItem, WorkQueue


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobPoller:
    # Producer: claims due pending jobs and hands them to the work queue on a fixed cadence.
    def __init__(
        self,
        *,
        store: JobStore,
        queue: WorkQueue,
        interval_s: float = 10,
        batch_size: int = 100,
        stale_after_s: int | None = 900,
    ) -> None:
        self._store = store
        self._queue = queue
        self._interval_s = max(0.01, float(interval_s))
        self._batch_size = max(1, int(batch_size))
        self._stale_after_s = stale_after_s
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def poll_once(self, *, now: datetime | None = None) -> int:
        current = now or _utc_now()
        jobs = await self._store.fetch_due_pending(limit=self._batch_size, now=current)
        if jobs:
            logger.info("notification poll found pending jobs count=%s", len(jobs))
        enqueued = 0
        for job in jobs:
            try:
                if not await self._store.mark_processing(job.id, now=current):
                    # Another poller claimed it first.
                    logger.debug("notification job claim lost job_id=%s", job.id)
                    continue
                claimed = job.model_copy(update={"status": "processing", "claimed_at": current})
                if await self._queue.enqueue(QueueItem.from_job(claimed)):
                    enqueued += 1
            except Exception:  # noqa: BLE001 - one bad job must not stall the rest of the batch.
                logger.exception("notification job enqueue failed job_id=%s", job.id)
        enqueued += await self._recover_stale(current)
        return enqueued

    async def _recover_stale(self, now: datetime) -> int:
        # Re-enqueue processing jobs orphaned by a crashed worker; queue dedup drops ones still queued.
        if not self._stale_after_s:
            return 0
        stale_before = now - timedelta(seconds=int(self._stale_after_s))
        jobs = await self._store.reclaim_stale_processing(
            stale_before=stale_before,
            limit=self._batch_size,
            now=now,
        )
        recovered = 0
        for job in jobs:
            try:
                if await self._queue.enqueue(QueueItem.from_job(job)):
                    recovered += 1
                    logger.warning("notification job recovered from stale processing job_id=%s", job.id)
            except Exception:  # noqa: BLE001 - keep recovering the remaining jobs.
                logger.exception("stale notification job enqueue failed job_id=%s", job.id)
        return recovered

    async def run(self) -> None:
        # Poll immediately, then on the interval until stopped; store outages only skip a tick.
        self._running = True
        try:
            while not self._stop_event.is_set():
                try:
                    await self.poll_once()
                except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in logs.
                    logger.exception("notification poll cycle failed")
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_s)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False

    def stop(self) -> None:
        self._stop_event.set()
