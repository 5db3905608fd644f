from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.core.errors import InvalidTransitionError, JobStoreError
from notifypipe.domain.jobs import (
    TERMINAL_STATUSES,
    DeliveryLogEntry,
    NotificationJobRecord,
    ensure_transition,
)
from notifypipe.domain.models import NotificationDeliveryLog, NotificationJob, Recipient


logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS = {
    "created_at": NotificationJob.created_at,
    "scheduled_for": NotificationJob.scheduled_for,
    "processed_at": NotificationJob.processed_at,
}


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def to_record(row: NotificationJob) -> NotificationJobRecord:
    # Map one ORM row into the typed record; raises ValidationError for rows the pipeline cannot dispatch.
    return NotificationJobRecord(
        id=row.id,
        recipient_id=row.recipient_id,
        group_id=row.group_id,
        update_id=row.update_id,
        notification_type=row.notification_type,
        urgency_level=row.urgency_level or "normal",
        delivery_method=row.delivery_method,
        content=row.content or {},
        metadata=row.metadata_json,
        scheduled_for=row.scheduled_for,
        status=row.status,
        retry_count=int(row.retry_count or 0),
        max_retries=int(row.max_retries or 0),
        failure_reason=row.failure_reason,
        message_id=row.message_id,
        processed_at=row.processed_at,
        claimed_at=row.claimed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class JobStore(Protocol):
    # Durable source of truth for job status; every status write is a compare-and-set.
    async def fetch_due_pending(
        self, *, limit: int = 100, now: datetime | None = None
    ) -> list[NotificationJobRecord]: ...

    async def mark_processing(self, job_id: str, *, now: datetime | None = None) -> bool: ...

    async def mark_terminal(
        self,
        job_id: str,
        status: str,
        *,
        message_id: str | None = None,
        failure_reason: str | None = None,
        retry_count: int | None = None,
        processed_at: datetime | None = None,
    ) -> bool: ...

    async def record_retry(
        self,
        job_id: str,
        *,
        retry_count: int,
        failure_reason: str | None,
        now: datetime | None = None,
    ) -> bool: ...

    async def append_delivery_log(self, entry: DeliveryLogEntry) -> str: ...

    async def get_job(self, job_id: str) -> NotificationJobRecord | None: ...

    async def reclaim_stale_processing(
        self, *, stale_before: datetime, limit: int = 100, now: datetime | None = None
    ) -> list[NotificationJobRecord]: ...

    async def cancel_pending(self, job_id: str) -> bool: ...


class SqlJobStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _transition(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        expected: str,
        target: str,
        values: dict[str, Any],
        extra_where: tuple[Any, ...] = (),
    ) -> bool:
        # Apply a status change only when the row is still in the expected state.
        ensure_transition(expected, target)
        result = await session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == job_id, NotificationJob.status == expected, *extra_where)
            .values(status=target, **values)
        )
        return int(result.rowcount or 0) == 1

    async def fetch_due_pending(
        self, *, limit: int = 100, now: datetime | None = None
    ) -> list[NotificationJobRecord]:
        # Oldest due jobs first; the cap bounds the cost of one poll cycle.
        current = now or _utc_now()
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationJob)
                    .where(
                        NotificationJob.status == "pending",
                        NotificationJob.scheduled_for <= current,
                    )
                    .order_by(NotificationJob.scheduled_for.asc(), NotificationJob.id.asc())
                    .limit(max(1, int(limit)))
                )
            ).scalars().all()
        records: list[NotificationJobRecord] = []
        for row in rows:
            try:
                records.append(to_record(row))
            except ValidationError as exc:
                await self._quarantine_invalid(row.id, exc)
        return records

    async def _quarantine_invalid(self, job_id: str, exc: ValidationError) -> None:
        # Walk malformed rows through processing -> failed so they stop reappearing in every poll.
        reason = f"Invalid job record: {exc.errors()[0].get('loc')} {exc.errors()[0].get('msg')}"
        logger.error("notification job rejected at store boundary job_id=%s reason=%s", job_id, reason)
        if await self.mark_processing(job_id):
            await self.mark_terminal(job_id, "failed", failure_reason=reason)

    async def mark_processing(self, job_id: str, *, now: datetime | None = None) -> bool:
        current = now or _utc_now()
        async with self._session_factory() as session:
            claimed = await self._transition(
                session,
                job_id=job_id,
                expected="pending",
                target="processing",
                values={"claimed_at": current, "updated_at": current},
            )
            await session.commit()
        return claimed

    async def mark_terminal(
        self,
        job_id: str,
        status: str,
        *,
        message_id: str | None = None,
        failure_reason: str | None = None,
        retry_count: int | None = None,
        processed_at: datetime | None = None,
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"{status} is not a terminal job status")
        current = processed_at or _utc_now()
        values: dict[str, Any] = {
            "processed_at": current,
            "updated_at": current,
            "message_id": message_id,
            "failure_reason": failure_reason,
        }
        if retry_count is not None:
            values["retry_count"] = int(retry_count)
        async with self._session_factory() as session:
            applied = await self._transition(
                session,
                job_id=job_id,
                expected="processing",
                target=status,
                values=values,
            )
            await session.commit()
        if not applied:
            logger.warning("notification job terminal write skipped job_id=%s target=%s", job_id, status)
        return applied

    async def record_retry(
        self,
        job_id: str,
        *,
        retry_count: int,
        failure_reason: str | None,
        now: datetime | None = None,
    ) -> bool:
        current = now or _utc_now()
        async with self._session_factory() as session:
            applied = await self._transition(
                session,
                job_id=job_id,
                expected="processing",
                target="processing",
                values={
                    "retry_count": int(retry_count),
                    "failure_reason": failure_reason,
                    "claimed_at": current,
                    "updated_at": current,
                },
            )
            await session.commit()
        return applied

    async def append_delivery_log(self, entry: DeliveryLogEntry) -> str:
        log_id = uuid4().hex
        async with self._session_factory() as session:
            session.add(
                NotificationDeliveryLog(
                    id=log_id,
                    job_id=entry.job_id,
                    recipient_id=entry.recipient_id,
                    group_id=entry.group_id,
                    delivery_method=entry.delivery_method,
                    status=entry.status,
                    provider_message_id=entry.provider_message_id,
                    provider_response=entry.provider_response,
                    delivery_time=entry.delivery_time,
                    error_code=entry.error_code,
                    error_message=entry.error_message,
                    delivery_duration_ms=entry.delivery_duration_ms,
                    created_at=_utc_now(),
                )
            )
            await session.commit()
        return log_id

    async def get_job(self, job_id: str) -> NotificationJobRecord | None:
        async with self._session_factory() as session:
            row = await session.get(NotificationJob, job_id)
        if row is None:
            return None
        try:
            return to_record(row)
        except ValidationError as exc:
            raise JobStoreError(f"notification job {job_id} is not a valid record") from exc

    async def reclaim_stale_processing(
        self, *, stale_before: datetime, limit: int = 100, now: datetime | None = None
    ) -> list[NotificationJobRecord]:
        # Re-stamp orphaned processing rows with a CAS on the old claim so only one worker re-enqueues each.
        current = now or _utc_now()
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationJob)
                    .where(
                        NotificationJob.status == "processing",
                        NotificationJob.claimed_at.is_not(None),
                        NotificationJob.claimed_at < stale_before,
                    )
                    .order_by(NotificationJob.claimed_at.asc())
                    .limit(max(1, int(limit)))
                )
            ).scalars().all()
            reclaimed: list[NotificationJobRecord] = []
            for row in rows:
                previous_claim = row.claimed_at
                applied = await self._transition(
                    session,
                    job_id=row.id,
                    expected="processing",
                    target="processing",
                    values={"claimed_at": current, "updated_at": current},
                    extra_where=(NotificationJob.claimed_at == previous_claim,),
                )
                if not applied:
                    continue
                try:
                    record = to_record(row)
                except ValidationError:
                    logger.exception("stale notification job could not be mapped job_id=%s", row.id)
                    continue
                reclaimed.append(record.model_copy(update={"claimed_at": current}))
            await session.commit()
        return reclaimed

    async def cancel_pending(self, job_id: str) -> bool:
        current = _utc_now()
        async with self._session_factory() as session:
            cancelled = await self._transition(
                session,
                job_id=job_id,
                expected="pending",
                target="cancelled",
                values={"updated_at": current},
            )
            await session.commit()
        return cancelled

    async def get_job_owner(self, job_id: str) -> str | None:
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(Recipient.owner_id)
                    .join(NotificationJob, NotificationJob.recipient_id == Recipient.id)
                    .where(NotificationJob.id == job_id)
                )
            ).scalar_one_or_none()

    async def list_jobs(
        self,
        *,
        owner_id: str | None,
        filters: dict[str, str | None],
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[NotificationJobRecord], int]:
        # Owner-scoped listing for the job API; owner_id=None means system-wide.
        query = select(NotificationJob)
        count_query = select(func.count()).select_from(NotificationJob)
        if owner_id is not None:
            owned = select(Recipient.id).where(Recipient.owner_id == owner_id)
            query = query.where(NotificationJob.recipient_id.in_(owned))
            count_query = count_query.where(NotificationJob.recipient_id.in_(owned))
        for field, value in filters.items():
            if value is None:
                continue
            column = getattr(NotificationJob, field)
            query = query.where(column == value)
            count_query = count_query.where(column == value)
        column = _SORTABLE_COLUMNS.get(sort_by, NotificationJob.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        query = query.order_by(ordering, NotificationJob.id.asc()).limit(limit).offset(offset)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            total = int((await session.execute(count_query)).scalar_one() or 0)
        try:
            return [to_record(row) for row in rows], total
        except ValidationError as exc:
            raise JobStoreError("notification job listing contains an invalid record") from exc

    async def get_delivery_logs(self, job_id: str) -> list[NotificationDeliveryLog]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(NotificationDeliveryLog)
                    .where(NotificationDeliveryLog.job_id == job_id)
                    .order_by(NotificationDeliveryLog.created_at.desc(), NotificationDeliveryLog.id.desc())
                )
            ).scalars().all()
        return list(rows)
