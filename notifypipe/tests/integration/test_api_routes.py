from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from notifypipe.domain.models import NotificationJob
from notifypipe.tests.utils.seed import create_test_api_key, seed_delivery_log, seed_job, seed_recipient


@pytest.mark.asyncio
async def test_health_is_public_and_enveloped(api_client: httpx.AsyncClient) -> None:
    response = await api_client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok"}
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_metrics_requires_api_key(api_client: httpx.AsyncClient) -> None:
    response = await api_client.get("/v1/jobs/metrics")

    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["error"]["message"] == "Missing API key"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_revoked_or_unknown_keys_are_rejected(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    revoked = await create_test_api_key(session_factory, owner_id="owner-1", revoked=True)

    response = await api_client.get("/v1/jobs/metrics", headers=revoked)
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "API key is revoked"

    response = await api_client.get("/v1/jobs/metrics", headers={"Authorization": "Bearer npk_unknown"})
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid API key"

    response = await api_client.get("/v1/jobs/metrics", headers={"Authorization": "Token abc"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_metrics_shape_for_owner(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    headers = await create_test_api_key(session_factory, owner_id="owner-1")
    recipient_id = await seed_recipient(session_factory, owner_id="owner-1")
    other_recipient = await seed_recipient(session_factory, owner_id="owner-2")
    now = datetime.now(timezone.utc)
    for _ in range(7):
        await seed_job(session_factory, recipient_id=recipient_id, status="sent", processed_at=now)
    for _ in range(3):
        await seed_job(session_factory, recipient_id=recipient_id, status="failed", processed_at=now)
    await seed_job(session_factory, recipient_id=other_recipient, status="failed")

    response = await api_client.get("/v1/jobs/metrics", params={"hours": 24}, headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert set(data) == {
        "time_range",
        "summary",
        "status_counts",
        "delivery_methods",
        "notification_types",
        "queue_health",
        "recent_failures",
        "overdue_jobs",
    }
    assert data["summary"]["total_jobs"] == 10
    assert data["summary"]["success_rate_percent"] == 70
    assert data["queue_health"] is None
    assert len(data["recent_failures"]) == 3


@pytest.mark.asyncio
async def test_system_wide_metrics_require_admin(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    reader = await create_test_api_key(session_factory, owner_id="owner-1")
    admin = await create_test_api_key(session_factory, owner_id="ops", role="admin")
    recipient_id = await seed_recipient(session_factory, owner_id="owner-1")
    await seed_job(session_factory, recipient_id=recipient_id, status="sent")

    forbidden = await api_client.get("/v1/jobs/metrics", params={"admin": "true"}, headers=reader)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

    allowed = await api_client.get("/v1/jobs/metrics", params={"admin": "true"}, headers=admin)
    assert allowed.status_code == 200
    assert allowed.json()["data"]["summary"]["total_jobs"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("hours", ["0", "169", "abc"])
async def test_metrics_window_is_validated(api_client: httpx.AsyncClient, session_factory, hours: str) -> None:  # noqa: ANN001
    headers = await create_test_api_key(session_factory, owner_id="owner-1")

    response = await api_client.get("/v1/jobs/metrics", params={"hours": hours}, headers=headers)

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_list_jobs_is_scoped_and_paginated(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    headers = await create_test_api_key(session_factory, owner_id="owner-1")
    mine = await seed_recipient(session_factory, owner_id="owner-1")
    theirs = await seed_recipient(session_factory, owner_id="owner-2")
    now = datetime.now(timezone.utc)
    for index in range(3):
        await seed_job(session_factory, recipient_id=mine, created_at=now - timedelta(minutes=index))
    await seed_job(session_factory, recipient_id=mine, status="sent", processed_at=now)
    await seed_job(session_factory, recipient_id=theirs)

    response = await api_client.get("/v1/jobs", params={"status": "pending", "limit": 2}, headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pagination"] == {"limit": 2, "offset": 0, "total": 3, "has_more": True}
    assert len(data["items"]) == 2
    assert all(item["status"] == "pending" for item in data["items"])
    assert all(item["recipient_id"] == mine for item in data["items"])
    assert data["items"][0]["is_overdue"] is True

    invalid = await api_client.get("/v1/jobs", params={"status": "bogus"}, headers=headers)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_job_detail_includes_delivery_logs(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    headers = await create_test_api_key(session_factory, owner_id="owner-1")
    recipient_id = await seed_recipient(session_factory, owner_id="owner-1")
    job_id = await seed_job(session_factory, recipient_id=recipient_id, status="failed", retry_count=1)
    await seed_delivery_log(
        session_factory,
        job_id=job_id,
        recipient_id=recipient_id,
        provider_message_id="notify-1",
        status="failed",
    )

    response = await api_client.get(f"/v1/jobs/{job_id}", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["job"]["id"] == job_id
    assert data["job"]["can_retry"] is True
    assert data["job"]["content"]["subject"] == "Hello"
    assert [log["provider_message_id"] for log in data["delivery_logs"]] == ["notify-1"]


@pytest.mark.asyncio
async def test_job_access_is_limited_to_owner(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    reader = await create_test_api_key(session_factory, owner_id="owner-2")
    admin = await create_test_api_key(session_factory, owner_id="ops", role="admin")
    recipient_id = await seed_recipient(session_factory, owner_id="owner-1")
    job_id = await seed_job(session_factory, recipient_id=recipient_id)

    missing = await api_client.get("/v1/jobs/job-missing", headers=reader)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "JOB_NOT_FOUND"

    forbidden = await api_client.get(f"/v1/jobs/{job_id}", headers=reader)
    assert forbidden.status_code == 403

    allowed = await api_client.get(f"/v1/jobs/{job_id}", headers=admin)
    assert allowed.status_code == 200


@pytest.mark.asyncio
async def test_cancel_only_pending_jobs(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    headers = await create_test_api_key(session_factory, owner_id="owner-1")
    recipient_id = await seed_recipient(session_factory, owner_id="owner-1")
    pending = await seed_job(session_factory, recipient_id=recipient_id)
    sent = await seed_job(session_factory, recipient_id=recipient_id, status="sent")

    response = await api_client.delete(f"/v1/jobs/{pending}", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"] == {"id": pending, "status": "cancelled"}
    async with session_factory() as session:
        row = (await session.execute(select(NotificationJob).where(NotificationJob.id == pending))).scalar_one()
    assert row.status == "cancelled"

    conflict = await api_client.delete(f"/v1/jobs/{sent}", headers=headers)
    assert conflict.status_code == 400
    error = conflict.json()["error"]
    assert error["code"] == "JOB_NOT_CANCELLABLE"
    assert error["details"] == {"current_status": "sent"}

    missing = await api_client.delete("/v1/jobs/job-missing", headers=headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_ops_telemetry_requires_admin(api_client: httpx.AsyncClient, session_factory) -> None:  # noqa: ANN001
    reader = await create_test_api_key(session_factory, owner_id="owner-1")
    admin = await create_test_api_key(session_factory, owner_id="ops", role="admin")

    assert (await api_client.get("/v1/ops/telemetry", headers=reader)).status_code == 403

    response = await api_client.get("/v1/ops/telemetry", params={"window_s": 60}, headers=admin)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["window_s"] == 60
    assert data["providers"] == {}


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope(api_client: httpx.AsyncClient) -> None:
    response = await api_client.get("/v1/nope")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_openapi_documents_metrics_window_validation(api_client: httpx.AsyncClient) -> None:
    response = await api_client.get("/openapi.json")

    assert response.status_code == 200
    operation = response.json()["paths"]["/v1/jobs/metrics"]["get"]
    example = operation["responses"]["422"]["content"]["application/json"]["example"]
    assert example["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert example["error"]["details"]["errors"][0]["loc"] == ["query", "hours"]
    hours = next(param for param in operation["parameters"] if param["name"] == "hours")
    assert (hours["schema"]["minimum"], hours["schema"]["maximum"]) == (1, 168)
