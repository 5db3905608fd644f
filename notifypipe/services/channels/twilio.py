from __future__ import annotations

import logging
import re
import time

import httpx

from notifypipe.core.errors import ProviderConfigError
from notifypipe.services.channels.base import DispatchRequest, DispatchResult, strip_html
from notifypipe.services.telemetry import record_provider_call


logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-()]")
_WHATSAPP_PREFIX = "whatsapp:"

_TWILIO_STATUS_MAP: dict[str, str] = {
    "queued": "queued",
    "accepted": "queued",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "received": "delivered",
    "failed": "failed",
    "undelivered": "failed",
}


def normalize_phone_number(value: str) -> str:
    return _PHONE_SEPARATORS_RE.sub("", value or "")


def is_valid_phone_number(value: str) -> bool:
    # E.164-style check after dropping common formatting characters.
    return bool(_PHONE_RE.match(normalize_phone_number(value)))


def mask_phone_number(value: str) -> str:
    # Keep enough of the number to correlate logs without exposing it.
    if len(value) < 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


def map_twilio_status(status: str | None) -> str:
    return _TWILIO_STATUS_MAP.get((status or "").lower(), "queued")


def with_whatsapp_prefix(value: str) -> str:
    return value if value.startswith(_WHATSAPP_PREFIX) else f"{_WHATSAPP_PREFIX}{value}"


def compose_text_message(subject: str, body: str) -> str:
    text = strip_html(body).strip()
    if subject:
        return f"{subject}\n\n{text}" if text else subject
    return text


class _TwilioMessagesDispatcher:
    # Shared Messages API call for SMS and WhatsApp; subclasses only shape the addresses.
    method = ""
    provider = ""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        account_sid: str | None,
        auth_token: str | None,
        from_number: str | None,
        base_url: str = "https://api.twilio.com",
    ) -> None:
        self._client = client
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._base_url = base_url.rstrip("/")

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None:
        return phone or None

    def _format_addresses(self, to_number: str, from_number: str) -> tuple[str, str]:
        return to_number, from_number

    def _extra_form(self, request: DispatchRequest) -> dict[str, str]:
        return {}

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        if not self._account_sid or not self._auth_token:
            raise ProviderConfigError(f"{self.method.upper()} service not configured")
        if not self._from_number:
            raise ProviderConfigError(f"No {self.method} sender number configured")
        raw_to = request.address.removeprefix(_WHATSAPP_PREFIX)
        if not is_valid_phone_number(raw_to):
            return DispatchResult.permanent_failure("Invalid recipient phone number format")
        to_number, from_number = self._format_addresses(normalize_phone_number(raw_to), self._from_number)
        form = {
            "To": to_number,
            "From": from_number,
            "Body": compose_text_message(request.subject, request.body),
            **self._extra_form(request),
        }
        url = f"{self._base_url}/2010-04-01/Accounts/{self._account_sid}/Messages.json"
        logger.info(
            "sending %s message job_id=%s to=%s from=%s length=%s",
            self.method,
            request.job_id,
            mask_phone_number(to_number),
            mask_phone_number(from_number),
            len(form["Body"]),
        )
        start = time.monotonic()
        try:
            response = await self._client.post(url, data=form, auth=(self._account_sid, self._auth_token))
        except httpx.HTTPError as exc:
            record_provider_call(
                provider=self.provider,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("twilio request failed job_id=%s error=%s", request.job_id, exc)
            return DispatchResult(success=False, error=f"Twilio request failed: {exc.__class__.__name__}")
        latency_ms = (time.monotonic() - start) * 1000.0

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.status_code >= 400:
            record_provider_call(provider=self.provider, latency_ms=latency_ms, success=False)
            retryable = response.status_code >= 500 or response.status_code in {408, 429}
            error = str(body.get("message") or f"Twilio error: {response.status_code}")
            return DispatchResult(
                success=False,
                error=error,
                retryable=retryable,
                status_code=response.status_code,
                provider_response={"code": body.get("code")},
            )

        record_provider_call(provider=self.provider, latency_ms=latency_ms, success=True)
        twilio_status = body.get("status")
        delivery_status = map_twilio_status(twilio_status)
        if delivery_status == "failed":
            return DispatchResult(
                success=False,
                message_id=body.get("sid"),
                error=str(body.get("error_message") or "Twilio reported message failure"),
                retryable=False,
                status_code=response.status_code,
                provider_status=delivery_status,
            )
        return DispatchResult(
            success=True,
            message_id=body.get("sid"),
            status_code=response.status_code,
            provider_status=delivery_status,
            provider_response={"twilio_status": twilio_status},
        )


class TwilioSmsDispatcher(_TwilioMessagesDispatcher):
    method = "sms"
    provider = "sms.twilio"


class TwilioWhatsAppDispatcher(_TwilioMessagesDispatcher):
    method = "whatsapp"
    provider = "whatsapp.twilio"

    def _format_addresses(self, to_number: str, from_number: str) -> tuple[str, str]:
        # WhatsApp addresses carry a channel prefix even when the number matches the SMS sender.
        return with_whatsapp_prefix(to_number), with_whatsapp_prefix(from_number)

    def _extra_form(self, request: DispatchRequest) -> dict[str, str]:
        if request.media_urls:
            return {"MediaUrl": request.media_urls[0]}
        return {}
