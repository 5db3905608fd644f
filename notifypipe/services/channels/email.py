from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Any

import httpx

from notifypipe.core.errors import ProviderConfigError
from notifypipe.services.channels.base import DispatchRequest, DispatchResult, strip_html
from notifypipe.services.telemetry import record_provider_call


logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
# Header echoed back by the event webhook as messageId for correlation.
MESSAGE_ID_HEADER = "X-Notify-Message-ID"


def generate_message_id(prefix: str) -> str:
    # Sortable-ish correlation id: prefix, epoch ms, then 9 random base36 characters.
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def _provider_error_message(response: httpx.Response) -> str:
    # SendGrid returns {"errors": [{"message": ...}]} for rejected requests.
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            message = errors[0].get("message")
            if message:
                return str(message)
    return f"SendGrid error: {response.status_code}"


class SendGridEmailDispatcher:
    method = "email"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        api_key: str | None,
        from_email: str,
        from_name: str,
        base_url: str = "https://api.sendgrid.com",
        message_id_prefix: str = "notify",
        service_name: str = "notifypipe",
    ) -> None:
        self._client = client
        self._api_key = api_key
        self._from_email = from_email
        self._from_name = from_name
        self._url = f"{base_url.rstrip('/')}/v3/mail/send"
        self._message_id_prefix = message_id_prefix
        self._service_name = service_name

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None:
        return email or None

    def _build_payload(self, request: DispatchRequest, message_id: str) -> dict[str, Any]:
        # Correlation args ride along on every provider event so webhooks can find the delivery log.
        custom_args = {
            "notificationJobId": request.job_id,
            "recipientId": request.recipient_id,
            "groupId": request.group_id,
            "messageId": message_id,
            "service": self._service_name,
        }
        return {
            "personalizations": [{"to": [{"email": request.address}]}],
            "from": {"email": self._from_email, "name": self._from_name},
            "subject": request.subject,
            "content": [
                {"type": "text/plain", "value": strip_html(request.body)},
                {"type": "text/html", "value": request.body},
            ],
            "categories": ["notification", request.notification_type],
            "custom_args": custom_args,
            "headers": {MESSAGE_ID_HEADER: message_id},
        }

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        if not self._api_key:
            raise ProviderConfigError("Email service not configured")
        message_id = generate_message_id(self._message_id_prefix)
        payload = self._build_payload(request, message_id)
        headers = {"Authorization": f"Bearer {self._api_key}"}
        start = time.monotonic()
        try:
            response = await self._client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            record_provider_call(
                provider="email.sendgrid",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("sendgrid request failed job_id=%s error=%s", request.job_id, exc)
            return DispatchResult(success=False, error=f"SendGrid request failed: {exc.__class__.__name__}")
        latency_ms = (time.monotonic() - start) * 1000.0

        if response.status_code >= 400:
            record_provider_call(provider="email.sendgrid", latency_ms=latency_ms, success=False)
            error = _provider_error_message(response)
            # Throttling and server faults are transient; other client errors will not improve on retry.
            retryable = response.status_code >= 500 or response.status_code in {408, 429}
            logger.warning(
                "sendgrid rejected message job_id=%s status_code=%s retryable=%s",
                request.job_id,
                response.status_code,
                retryable,
            )
            return DispatchResult(
                success=False,
                error=error,
                retryable=retryable,
                status_code=response.status_code,
            )

        record_provider_call(provider="email.sendgrid", latency_ms=latency_ms, success=True)
        return DispatchResult(
            success=True,
            message_id=message_id,
            status_code=response.status_code,
            provider_status="accepted",
            provider_response={"x_message_id": response.headers.get("X-Message-Id")},
        )
