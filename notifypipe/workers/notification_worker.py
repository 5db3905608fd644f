from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from notifypipe.core.config import Settings, get_settings
from notifypipe.core.errors import ConfigurationError
from notifypipe.core.logging import configure_logging
from notifypipe.persistence.db import build_engine, build_session_factory, ping
from notifypipe.services.channels.registry import build_dispatchers
from notifypipe.services.job_store import SqlJobStore
from notifypipe.services.poller import JobPoller
from notifypipe.services.queue import InMemoryWorkQueue, RedisWorkQueue, WorkQueue
from notifypipe.services.rate_limit import DispatchRateLimiter, RateLimiter, RedisRateLimiter
from notifypipe.services.recipients import SqlRecipientDirectory
from notifypipe.services.worker_pool import WorkerPool


logger = logging.getLogger(__name__)

QUEUE_BACKENDS = ("redis", "memory")


def validate_settings(settings: Settings) -> None:
    # Refuse to start with missing infrastructure instead of failing on the first poll.
    if not settings.database_url:
        raise ConfigurationError("DATABASE_URL is required")
    if settings.queue_backend not in QUEUE_BACKENDS:
        raise ConfigurationError(f"Unsupported QUEUE_BACKEND: {settings.queue_backend}")
    if settings.queue_backend == "redis" and not settings.redis_url:
        raise ConfigurationError("REDIS_URL is required when QUEUE_BACKEND=redis")
    if settings.notify_queue_lease_s <= 0 or settings.notify_queue_lease_s > settings.notify_stale_processing_after_s:
        raise ConfigurationError("NOTIFY_QUEUE_LEASE_S must be positive and no longer than NOTIFY_STALE_PROCESSING_AFTER_S")


class NotificationPipeline:
    # Owns the poller, work queue and worker pool for one process; built and torn down by its caller.
    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        queue: WorkQueue,
        poller: JobPoller,
        pool: WorkerPool,
        engine: AsyncEngine | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.queue = queue
        self.poller = poller
        self.pool = pool
        self._engine = engine
        self._http_client = http_client
        self._poller_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "NotificationPipeline":
        settings = settings or get_settings()
        validate_settings(settings)
        engine = build_engine(settings.database_url, settings)
        session_factory = build_session_factory(engine)
        queue: WorkQueue
        rate_limiter: RateLimiter
        if settings.queue_backend == "redis":
            redis_queue = RedisWorkQueue.from_url(
                settings.redis_url,
                name=settings.queue_name,
                lease_ms=settings.notify_queue_lease_s * 1000,
            )
            # Every process draining this queue shares one dispatch budget.
            rate_limiter = RedisRateLimiter(
                redis_queue.redis,
                rate_per_s=settings.notify_rate_limit_per_s,
                key=f"{settings.queue_name}:rate",
            )
            queue = redis_queue
        else:
            queue = InMemoryWorkQueue()
            rate_limiter = DispatchRateLimiter(rate_per_s=settings.notify_rate_limit_per_s)
        http_client = httpx.AsyncClient(timeout=settings.notify_provider_timeout_s)
        store = SqlJobStore(session_factory)
        poller = JobPoller(
            store=store,
            queue=queue,
            interval_s=settings.notify_poll_interval_s,
            batch_size=settings.notify_poll_batch_size,
            stale_after_s=settings.notify_stale_processing_after_s,
        )
        pool = WorkerPool(
            queue=queue,
            store=store,
            dispatchers=build_dispatchers(settings, http_client),
            recipients=SqlRecipientDirectory(session_factory),
            rate_limiter=rate_limiter,
            concurrency=settings.notify_worker_concurrency,
            max_attempts=settings.notify_max_attempts,
            urgent_max_attempts=settings.notify_urgent_max_attempts,
            backoff_base_ms=settings.notify_backoff_base_ms,
            backoff_max_ms=settings.notify_backoff_max_ms,
            provider_timeout_s=settings.notify_provider_timeout_s,
        )
        return cls(
            settings=settings,
            session_factory=session_factory,
            queue=queue,
            poller=poller,
            pool=pool,
            engine=engine,
            http_client=http_client,
        )

    @property
    def is_running(self) -> bool:
        return self._started and not self._closed

    async def initialize(self) -> None:
        # Prove the store and queue are reachable before any worker starts.
        try:
            if self._engine is not None:
                await ping(self._engine)
            await self.queue.ping()
        except Exception as exc:  # noqa: BLE001 - any connectivity failure is fatal at startup.
            raise ConfigurationError(f"notification pipeline dependencies unreachable: {exc}") from exc
        logger.info("notification pipeline initialized queue_backend=%s", self.settings.queue_backend)

    async def start(self) -> None:
        if self._started:
            logger.warning("notification pipeline already started")
            return
        self._started = True
        self.pool.start()
        self._poller_task = asyncio.create_task(self.poller.run(), name="notification-poller")
        logger.info(
            "notification pipeline started concurrency=%s poll_interval_s=%s",
            self.settings.notify_worker_concurrency,
            self.settings.notify_poll_interval_s,
        )

    async def shutdown(self, grace_s: float | None = None) -> None:
        # Stop producing first, then drain consumers, then release connections.
        if self._closed:
            return
        self._closed = True
        grace = self.settings.notify_shutdown_grace_s if grace_s is None else grace_s
        logger.info("notification pipeline shutting down grace_s=%s", grace)
        self.poller.stop()
        if self._poller_task is not None:
            try:
                await asyncio.wait_for(self._poller_task, timeout=max(0.0, grace))
            except asyncio.TimeoutError:
                logger.warning("notification poller did not stop within grace period")
            self._poller_task = None
        await self.pool.stop(grace_s=grace)
        await self.queue.close()
        if self._http_client is not None:
            await self._http_client.aclose()
        if self._engine is not None:
            await self._engine.dispose()
        logger.info("notification pipeline stopped")

    async def health(self) -> dict[str, Any]:
        depth = await self.queue.depth()
        return {
            "queue": {
                "waiting": depth.waiting,
                "active": depth.active,
                "completed": self.pool.completed,
                "failed": self.pool.failed,
                "delayed": depth.delayed,
            },
            "worker": {
                "is_running": self.pool.is_running,
                "polling": self.poller.is_running,
            },
        }


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Event loops without signal support still stop on KeyboardInterrupt.
            logger.warning("signal handlers unavailable on this platform signal=%s", sig.name)


async def run_pipeline(settings: Settings | None = None) -> int:
    # Process entrypoint: build, start, wait for SIGINT/SIGTERM, then shut down cleanly.
    configure_logging()
    try:
        pipeline = NotificationPipeline.from_settings(settings)
    except ConfigurationError:
        logger.exception("notification pipeline configuration invalid")
        return 1
    try:
        await pipeline.initialize()
    except ConfigurationError:
        logger.exception("notification pipeline failed to start")
        await pipeline.shutdown(grace_s=0)
        return 1

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    await pipeline.start()
    try:
        await stop_event.wait()
        logger.info("notification pipeline received shutdown signal")
    finally:
        await pipeline.shutdown()
    return 0
