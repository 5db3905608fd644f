from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from notifypipe.apps.api.deps import Principal, require_role
from notifypipe.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifypipe.apps.api.response import SuccessEnvelope, success_response
from notifypipe.services.telemetry import counters_snapshot, provider_call_stats

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class TelemetryResponse(BaseModel):
    window_s: int
    providers: dict[str, dict[str, float | int | None]]
    counters: dict[str, int]


@router.get("/telemetry", response_model=SuccessEnvelope[TelemetryResponse])
async def telemetry(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    _principal: Principal = Depends(require_role("admin")),
) -> dict:
    # In-process view only; each worker or API process reports its own samples.
    payload = TelemetryResponse(
        window_s=window_s,
        providers=provider_call_stats(window_s),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
