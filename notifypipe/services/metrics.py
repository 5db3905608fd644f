from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.domain.jobs import DELIVERY_METHODS, JOB_STATUSES, NOTIFICATION_TYPES, as_utc
from notifypipe.domain.models import NotificationJob, Recipient


logger = logging.getLogger(__name__)

MIN_WINDOW_HOURS = 1
MAX_WINDOW_HOURS = 168
PROCESSING_SAMPLE_LIMIT = 1000
RECENT_FAILURE_LIMIT = 10
OVERDUE_LIST_LIMIT = 10


def success_rate_percent(sent: int, failed: int) -> int:
    # Share of completed jobs that were sent; skipped and cancelled jobs do not count as completed.
    completed = int(sent) + int(failed)
    if completed <= 0:
        return 0
    return round(int(sent) / completed * 100)


def average_processing_ms(samples: Iterable[tuple[datetime | None, datetime | None]]) -> int | None:
    # Mean of processed_at - created_at over rows that finished; None when nothing finished.
    durations: list[float] = []
    for created_at, processed_at in samples:
        if created_at is None or processed_at is None:
            continue
        durations.append((as_utc(processed_at) - as_utc(created_at)).total_seconds() * 1000)
    if not durations:
        return None
    return round(sum(durations) / len(durations))


def _fill_counts(keys: Iterable[str], rows: Iterable[tuple[Any, Any]]) -> dict[str, int]:
    # Every known key appears in the payload, even with zero jobs.
    counts = {key: 0 for key in keys}
    for key, count in rows:
        if key is None:
            continue
        counts[str(key)] = counts.get(str(key), 0) + int(count or 0)
    return counts


def _scoped(query: Select[Any], owner_id: str | None) -> Select[Any]:
    if owner_id is None:
        return query
    owned = select(Recipient.id).where(Recipient.owner_id == owner_id)
    return query.where(NotificationJob.recipient_id.in_(owned))


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


async def collect_job_metrics(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    hours: int = 24,
    owner_id: str | None = None,
    now: datetime | None = None,
    queue_health: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Read-only aggregation over the job table; owner_id=None means system-wide.
    if not MIN_WINDOW_HOURS <= int(hours) <= MAX_WINDOW_HOURS:
        raise ValueError(f"hours must be between {MIN_WINDOW_HOURS} and {MAX_WINDOW_HOURS}")
    end = now or datetime.now(timezone.utc)
    start = end - timedelta(hours=int(hours))
    in_window = NotificationJob.created_at >= start

    async with session_factory() as session:

        async def grouped(column: Any) -> list[tuple[Any, Any]]:
            query = _scoped(select(column, func.count()).where(in_window).group_by(column), owner_id)
            return [tuple(row) for row in (await session.execute(query)).all()]

        status_counts = _fill_counts(JOB_STATUSES, await grouped(NotificationJob.status))
        delivery_methods = _fill_counts(DELIVERY_METHODS, await grouped(NotificationJob.delivery_method))
        notification_types = _fill_counts(NOTIFICATION_TYPES, await grouped(NotificationJob.notification_type))

        samples = (
            await session.execute(
                _scoped(
                    select(NotificationJob.created_at, NotificationJob.processed_at)
                    .where(in_window, NotificationJob.processed_at.is_not(None))
                    .order_by(NotificationJob.created_at.desc())
                    .limit(PROCESSING_SAMPLE_LIMIT),
                    owner_id,
                )
            )
        ).all()

        failures = (
            await session.execute(
                _scoped(
                    select(NotificationJob)
                    .where(in_window, NotificationJob.status == "failed")
                    .order_by(NotificationJob.created_at.desc(), NotificationJob.id.asc())
                    .limit(RECENT_FAILURE_LIMIT),
                    owner_id,
                )
            )
        ).scalars().all()

        # Overdue is a live backlog signal, so it ignores the reporting window.
        overdue_filter = (NotificationJob.status == "pending", NotificationJob.scheduled_for < end)
        overdue_total = int(
            (
                await session.execute(
                    _scoped(select(func.count()).select_from(NotificationJob).where(*overdue_filter), owner_id)
                )
            ).scalar_one()
            or 0
        )
        overdue_rows = (
            await session.execute(
                _scoped(
                    select(NotificationJob)
                    .where(*overdue_filter)
                    .order_by(NotificationJob.scheduled_for.asc(), NotificationJob.id.asc())
                    .limit(OVERDUE_LIST_LIMIT),
                    owner_id,
                )
            )
        ).scalars().all()

    total_jobs = sum(status_counts.values())
    return {
        "time_range": {"hours": int(hours), "start": start.isoformat(), "end": end.isoformat()},
        "summary": {
            "total_jobs": total_jobs,
            "success_rate_percent": success_rate_percent(status_counts["sent"], status_counts["failed"]),
            "avg_processing_time_ms": average_processing_ms((row[0], row[1]) for row in samples),
            "overdue_jobs": overdue_total,
        },
        "status_counts": status_counts,
        "delivery_methods": delivery_methods,
        "notification_types": notification_types,
        "queue_health": queue_health,
        "recent_failures": [
            {
                "id": row.id,
                "created_at": _iso(row.created_at),
                "failure_reason": row.failure_reason,
                "retry_count": int(row.retry_count or 0),
            }
            for row in failures
        ],
        "overdue_jobs": [
            {
                "id": row.id,
                "scheduled_for": _iso(row.scheduled_for),
                "created_at": _iso(row.created_at),
                "notification_type": row.notification_type,
            }
            for row in overdue_rows
        ],
    }
