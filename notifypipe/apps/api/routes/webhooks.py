from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.apps.api.deps import get_app_settings, get_session_factory
from notifypipe.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from notifypipe.core.config import Settings
from notifypipe.core.errors import WebhookVerificationError
from notifypipe.services.recipients import SqlRecipientDirectory
from notifypipe.services.telemetry import increment_counter
from notifypipe.services.webhooks.sendgrid import SendGridEventProcessor
from notifypipe.services.webhooks.signature import authenticate_webhook


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)


class WebhookBatchResponse(BaseModel):
    success: bool
    processed: int
    failed: int


@router.post("/sendgrid", response_model=WebhookBatchResponse)
async def sendgrid_events(
    request: Request,
    settings: Settings = Depends(get_app_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    # Signature is checked over the exact raw bytes before the body is parsed.
    raw_body = await request.body()
    try:
        authenticate_webhook(
            public_key=settings.sendgrid_webhook_public_key,
            headers=request.headers,
            raw_body=raw_body,
            environment=settings.environment,
            relaxed_validation=settings.sendgrid_webhook_relaxed_validation,
        )
    except WebhookVerificationError as exc:
        increment_counter("webhook.sendgrid.rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "WEBHOOK_SIGNATURE_INVALID", "message": str(exc), "reason": exc.reason},
        ) from exc

    try:
        events = json.loads(raw_body)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_INVALID_PAYLOAD", "message": "Request body is not valid JSON"},
        ) from exc
    if not isinstance(events, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "WEBHOOK_INVALID_PAYLOAD", "message": "Expected a JSON array of events"},
        )

    processor = SendGridEventProcessor(
        session_factory=session_factory,
        recipients=SqlRecipientDirectory(session_factory),
    )
    result = await processor.process_batch(events)
    return result.as_response()
