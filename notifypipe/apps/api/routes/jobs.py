from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.apps.api.deps import Principal, ensure_role, get_current_principal, get_session_factory
from notifypipe.apps.api.openapi import DEFAULT_ERROR_RESPONSES, JOB_ERROR_RESPONSES, METRICS_ERROR_RESPONSES
from notifypipe.apps.api.response import SuccessEnvelope, success_response
from notifypipe.domain.jobs import NotificationJobRecord, as_utc
from notifypipe.domain.models import NotificationDeliveryLog
from notifypipe.services.auth.api_keys import role_allows
from notifypipe.services.job_store import SqlJobStore
from notifypipe.services.metrics import MAX_WINDOW_HOURS, MIN_WINDOW_HOURS, collect_job_metrics


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


class JobMetricsResponse(BaseModel):
    time_range: dict[str, Any]
    summary: dict[str, Any]
    status_counts: dict[str, int]
    delivery_methods: dict[str, int]
    notification_types: dict[str, int]
    queue_health: dict[str, Any] | None
    recent_failures: list[dict[str, Any]]
    overdue_jobs: list[dict[str, Any]]


class JobListResponse(BaseModel):
    items: list[dict[str, Any]]
    pagination: dict[str, Any]


class JobDetailResponse(BaseModel):
    job: dict[str, Any]
    delivery_logs: list[dict[str, Any]]


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return as_utc(value).isoformat()


def _millis_between(start: datetime, end: datetime) -> int:
    return int((as_utc(end) - as_utc(start)).total_seconds() * 1000)


def serialize_job(job: NotificationJobRecord, *, now: datetime, detailed: bool = False) -> dict[str, Any]:
    # Derived timing fields are computed at read time; nothing here is persisted.
    processing_time_ms = None
    if job.processed_at is not None and job.created_at is not None:
        processing_time_ms = _millis_between(job.created_at, job.processed_at)
    time_until_scheduled_ms = None
    if job.processed_at is None:
        time_until_scheduled_ms = max(0, _millis_between(now, job.scheduled_for))
    payload: dict[str, Any] = {
        "id": job.id,
        "recipient_id": job.recipient_id,
        "group_id": job.group_id,
        "status": job.status,
        "notification_type": job.notification_type,
        "urgency_level": job.urgency_level,
        "delivery_method": job.delivery_method,
        "scheduled_for": _iso(job.scheduled_for),
        "processed_at": _iso(job.processed_at),
        "created_at": _iso(job.created_at),
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "message_id": job.message_id,
        "failure_reason": job.failure_reason,
        "processing_time_ms": processing_time_ms,
        "time_until_scheduled_ms": time_until_scheduled_ms,
        "is_overdue": job.status == "pending" and time_until_scheduled_ms == 0,
    }
    if detailed:
        payload.update(
            {
                "update_id": job.update_id,
                "updated_at": _iso(job.updated_at),
                "content": job.content.model_dump(),
                "metadata": job.metadata,
                "can_retry": job.status == "failed" and job.retry_count < job.max_retries,
            }
        )
    return payload


def serialize_delivery_log(row: NotificationDeliveryLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "status": row.status,
        "delivery_method": row.delivery_method,
        "provider_message_id": row.provider_message_id,
        "error_message": row.error_message,
        "error_code": row.error_code,
        "delivery_time": _iso(row.delivery_time),
        "delivery_duration_ms": row.delivery_duration_ms,
        "created_at": _iso(row.created_at),
    }


def _job_not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "JOB_NOT_FOUND", "message": "Notification job not found"},
    )


async def _authorize_job(store: SqlJobStore, job_id: str, principal: Principal) -> None:
    # Missing jobs are 404; jobs of another owner are 403 unless the caller is an admin.
    owner_id = await store.get_job_owner(job_id)
    if owner_id is None:
        if await store.get_job(job_id) is None:
            raise _job_not_found()
    if owner_id != principal.owner_id and not role_allows(role=principal.role, minimum_role="admin"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "AUTH_FORBIDDEN", "message": "Notification job belongs to another owner"},
        )


# Declared before /{job_id} so "metrics" is never captured as a job id.
@router.get("/metrics", response_model=SuccessEnvelope[JobMetricsResponse], responses=METRICS_ERROR_RESPONSES)
async def job_metrics(
    request: Request,
    hours: int = Query(default=24, ge=MIN_WINDOW_HOURS, le=MAX_WINDOW_HOURS),
    admin: bool = Query(default=False),
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    if admin:
        ensure_role(principal, "admin")
    queue_health: dict[str, Any] | None = None
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        try:
            queue_health = await pipeline.health()
        except Exception:  # noqa: BLE001 - metrics stay available while the queue is unreachable.
            logger.exception("notification queue health unavailable")
    payload = await collect_job_metrics(
        session_factory,
        hours=hours,
        owner_id=None if admin else principal.owner_id,
        queue_health=queue_health,
    )
    return success_response(request=request, data=payload)


@router.get("", response_model=SuccessEnvelope[JobListResponse])
async def list_jobs(
    request: Request,
    status_filter: Literal["pending", "processing", "sent", "failed", "skipped", "cancelled"] | None = Query(
        default=None, alias="status"
    ),
    delivery_method: Literal["email", "sms", "whatsapp", "push"] | None = Query(default=None),
    notification_type: Literal["immediate", "digest", "milestone"] | None = Query(default=None),
    recipient_id: str | None = Query(default=None),
    group_id: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sort_by: Literal["created_at", "scheduled_for", "processed_at"] = Query(default="created_at"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    store = SqlJobStore(session_factory)
    jobs, total = await store.list_jobs(
        owner_id=principal.owner_id,
        filters={
            "status": status_filter,
            "delivery_method": delivery_method,
            "notification_type": notification_type,
            "recipient_id": recipient_id,
            "group_id": group_id,
        },
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    now = datetime.now(timezone.utc)
    payload = JobListResponse(
        items=[serialize_job(job, now=now) for job in jobs],
        pagination={"limit": limit, "offset": offset, "total": total, "has_more": offset + len(jobs) < total},
    )
    return success_response(request=request, data=payload)


@router.get("/{job_id}", response_model=SuccessEnvelope[JobDetailResponse], responses=JOB_ERROR_RESPONSES)
async def get_job(
    request: Request,
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    store = SqlJobStore(session_factory)
    await _authorize_job(store, job_id, principal)
    job = await store.get_job(job_id)
    if job is None:
        raise _job_not_found()
    logs = await store.get_delivery_logs(job_id)
    payload = JobDetailResponse(
        job=serialize_job(job, now=datetime.now(timezone.utc), detailed=True),
        delivery_logs=[serialize_delivery_log(row) for row in logs],
    )
    return success_response(request=request, data=payload)


@router.delete("/{job_id}", response_model=SuccessEnvelope[dict[str, Any]], responses=JOB_ERROR_RESPONSES)
async def cancel_job(
    request: Request,
    job_id: str,
    principal: Principal = Depends(get_current_principal),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    store = SqlJobStore(session_factory)
    await _authorize_job(store, job_id, principal)
    # The conditional pending -> cancelled write decides; a job claimed meanwhile stays claimed.
    if not await store.cancel_pending(job_id):
        job = await store.get_job(job_id)
        if job is None:
            raise _job_not_found()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "JOB_NOT_CANCELLABLE",
                "message": "Only pending jobs can be cancelled",
                "current_status": job.status,
            },
        )
    logger.info("notification job cancelled job_id=%s owner_id=%s", job_id, principal.owner_id)
    return success_response(request=request, data={"id": job_id, "status": "cancelled"})
