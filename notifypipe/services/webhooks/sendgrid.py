from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifypipe.domain.models import EmailLog, NotificationDeliveryLog
from notifypipe.services.recipients import RecipientDirectory
from notifypipe.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Log statuses that record an undeliverable or unwanted outcome; engagement events never overwrite them.
FAILURE_LOG_STATUSES: frozenset[str] = frozenset({"failed", "spam_reported", "unsubscribed"})
_ENGAGEMENT_RANK: dict[str, int] = {"delivered": 1, "opened": 2, "clicked": 3}

_FAILURE_EVENTS: dict[str, str] = {
    "bounce": "Unknown",
    "blocked": "Blocked by provider",
    "dropped": "Dropped by provider",
}
_SPAM_EVENTS = frozenset({"spamreport", "spam_report"})
_UNSUBSCRIBE_EVENTS = frozenset({"unsubscribe", "group_unsubscribe"})
_ENGAGEMENT_EVENTS: dict[str, str] = {"delivered": "delivered", "open": "opened", "click": "clicked"}
_INFORMATIONAL_EVENTS = frozenset({"processed", "deferred", "group_resubscribe"})


@dataclass(frozen=True)
class EventOutcome:
    event_type: str
    message_id: str | None
    updated_logs: int
    recipient_disabled: bool = False


@dataclass(frozen=True)
class BatchResult:
    processed: int
    failed: int

    def as_response(self) -> dict[str, Any]:
        return {"success": True, "processed": self.processed, "failed": self.failed}


def resolve_message_id(event: dict[str, Any]) -> str | None:
    # Our own correlation id wins over the provider's ids.
    for key in ("messageId", "sg_message_id", "smtp-id"):
        value = event.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def event_time(value: Any) -> datetime:
    # Provider timestamps are epoch seconds; missing values fall back to receipt time.
    if value is None or value == "":
        return datetime.now(timezone.utc)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"invalid event timestamp: {value!r}")
    try:
        seconds = float(value)
    except ValueError as exc:
        raise ValueError(f"invalid event timestamp: {value!r}") from exc
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _blocked_statuses_for(log_status: str) -> set[str]:
    # Statuses an engagement update must not overwrite: failures and deeper engagement.
    rank = _ENGAGEMENT_RANK[log_status]
    deeper = {status for status, other in _ENGAGEMENT_RANK.items() if other > rank}
    return set(FAILURE_LOG_STATUSES) | deeper


class SendGridEventProcessor:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        recipients: RecipientDirectory,
    ) -> None:
        self._session_factory = session_factory
        self._recipients = recipients

    async def process_batch(self, events: Iterable[Any]) -> BatchResult:
        # Each event stands alone; one bad event only bumps the failed count.
        processed = 0
        failed = 0
        for event in events:
            try:
                await self.process_event(event)
                processed += 1
            except Exception:  # noqa: BLE001 - isolate per-event failures from the rest of the batch.
                failed += 1
                logger.exception("sendgrid event processing failed")
        logger.info("sendgrid webhook batch processed processed=%s failed=%s", processed, failed)
        return BatchResult(processed=processed, failed=failed)

    async def process_event(self, event: Any) -> EventOutcome:
        if not isinstance(event, dict):
            raise ValueError("event must be a JSON object")
        event_type = str(event.get("event") or "").strip().lower()
        message_id = resolve_message_id(event)
        occurred_at = event_time(event.get("timestamp"))
        increment_counter(f"webhook.sendgrid.{event_type or 'unknown'}")

        if event_type in _INFORMATIONAL_EVENTS:
            logger.debug("sendgrid informational event event=%s message_id=%s", event_type, message_id)
            return EventOutcome(event_type=event_type, message_id=message_id, updated_logs=0)
        if event_type in _FAILURE_EVENTS:
            reason = str(event.get("reason") or _FAILURE_EVENTS[event_type])
            updated = await self._apply_failure(
                message_id,
                status="failed",
                error_message=reason,
                error_code=_optional_str(event.get("status")),
                occurred_at=occurred_at,
                event=event,
            )
            await self._record_email_event(message_id, event, event_type=event_type, occurred_at=occurred_at)
            disabled = await self._disable_email(event, reason=event_type)
            return EventOutcome(event_type, message_id, updated, disabled)
        if event_type in _SPAM_EVENTS:
            updated = await self._apply_failure(
                message_id,
                status="spam_reported",
                error_message="Recipient reported spam",
                error_code=None,
                occurred_at=occurred_at,
                event=event,
            )
            await self._record_email_event(message_id, event, event_type=event_type, occurred_at=occurred_at)
            disabled = await self._disable_email(event, reason="spam_report")
            return EventOutcome(event_type, message_id, updated, disabled)
        if event_type in _UNSUBSCRIBE_EVENTS:
            updated = await self._apply_failure(
                message_id,
                status="unsubscribed",
                error_message=None,
                error_code=None,
                occurred_at=occurred_at,
                event=event,
            )
            await self._record_email_event(message_id, event, event_type=event_type, occurred_at=occurred_at)
            disabled = await self._disable_email(event, reason="unsubscribe")
            return EventOutcome(event_type, message_id, updated, disabled)
        if event_type in _ENGAGEMENT_EVENTS:
            updated = await self._apply_engagement(
                message_id,
                status=_ENGAGEMENT_EVENTS[event_type],
                occurred_at=occurred_at,
                event=event,
            )
            await self._record_email_event(message_id, event, event_type=event_type, occurred_at=occurred_at)
            return EventOutcome(event_type, message_id, updated)

        # Accept new provider vocabulary without failing the batch.
        logger.warning("sendgrid unknown event type event=%s", event_type or "<missing>")
        return EventOutcome(event_type=event_type, message_id=message_id, updated_logs=0)

    async def _update_logs(
        self,
        message_id: str | None,
        *,
        values: dict[str, Any],
        blocked_statuses: set[str] | None = None,
    ) -> int:
        if not message_id:
            logger.warning("sendgrid event missing message identifier; delivery log not updated")
            return 0
        statement = update(NotificationDeliveryLog).where(NotificationDeliveryLog.provider_message_id == message_id)
        if blocked_statuses:
            statement = statement.where(NotificationDeliveryLog.status.not_in(sorted(blocked_statuses)))
        async with self._session_factory() as session:
            result = await session.execute(statement.values(**values))
            await session.commit()
        updated = int(result.rowcount or 0)
        if updated == 0:
            logger.warning("no notification delivery logs updated for message message_id=%s", message_id)
        return updated

    async def _apply_failure(
        self,
        message_id: str | None,
        *,
        status: str,
        error_message: str | None,
        error_code: str | None,
        occurred_at: datetime,
        event: dict[str, Any],
    ) -> int:
        # Failure outcomes always win over earlier engagement states.
        return await self._update_logs(
            message_id,
            values={
                "status": status,
                "delivery_time": occurred_at,
                "error_message": error_message,
                "error_code": error_code,
                "provider_response": event,
            },
        )

    async def _apply_engagement(
        self,
        message_id: str | None,
        *,
        status: str,
        occurred_at: datetime,
        event: dict[str, Any],
    ) -> int:
        values: dict[str, Any] = {
            "status": status,
            "delivery_time": occurred_at,
            "provider_response": event,
        }
        if status == "delivered":
            values["error_message"] = None
            values["error_code"] = None
        return await self._update_logs(
            message_id,
            values=values,
            blocked_statuses=_blocked_statuses_for(status),
        )

    async def _record_email_event(
        self,
        message_id: str | None,
        event: dict[str, Any],
        *,
        event_type: str,
        occurred_at: datetime,
    ) -> None:
        # Fold the event into the per-message email log, creating the row on first sight.
        if not message_id:
            return
        values, metadata = email_log_changes(event_type, event, occurred_at)
        email = event.get("email")
        async with self._session_factory() as session:
            row = (
                await session.execute(select(EmailLog).where(EmailLog.message_id == message_id))
            ).scalar_one_or_none()
            if row is None:
                row = EmailLog(id=f"eml-{uuid4().hex}", message_id=message_id, open_count=0, click_count=0)
                session.add(row)
            if isinstance(email, str) and email.strip():
                row.recipient_email = email.strip()
            for column, value in values.items():
                setattr(row, column, value)
            if event_type == "open":
                row.open_count = (row.open_count or 0) + 1
            elif event_type == "click":
                row.click_count = (row.click_count or 0) + 1
            row.metadata_json = {**(row.metadata_json or {}), **metadata}
            await session.commit()

    async def _disable_email(self, event: dict[str, Any], *, reason: str) -> bool:
        email = event.get("email")
        if not isinstance(email, str) or not email.strip():
            logger.warning("sendgrid event missing recipient email; preferences unchanged reason=%s", reason)
            return False
        return await self._recipients.disable_email_channel(email.strip(), reason=reason)


def email_log_changes(
    event_type: str, event: dict[str, Any], occurred_at: datetime
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Column values and metadata keys an event writes to its email log row."""
    values: dict[str, Any] = {"last_event_type": event_type, "last_event_at": occurred_at}
    metadata: dict[str, Any]
    if event_type == "bounce":
        values.update(status="bounced", bounced_at=occurred_at)
        metadata = {
            "bounce_reason": str(event.get("reason") or _FAILURE_EVENTS["bounce"]),
            "bounce_status": _optional_str(event.get("status")),
            "bounce_type": event.get("type") or "unknown",
        }
    elif event_type == "blocked":
        values.update(status="blocked", blocked_at=occurred_at)
        metadata = {"block_reason": str(event.get("reason") or _FAILURE_EVENTS["blocked"])}
    elif event_type == "dropped":
        values.update(status="dropped", dropped_at=occurred_at)
        metadata = {"drop_reason": str(event.get("reason") or _FAILURE_EVENTS["dropped"])}
    elif event_type in _SPAM_EVENTS:
        values.update(status="spam_reported", spam_reported_at=occurred_at)
        metadata = {
            "spam_reported": True,
            "spam_metadata": {"useragent": event.get("useragent"), "ip": event.get("ip")},
        }
    elif event_type in _UNSUBSCRIBE_EVENTS:
        values.update(status="unsubscribed", unsubscribed_at=occurred_at)
        metadata = {"unsubscribe_source": event_type}
    elif event_type == "delivered":
        values.update(status="delivered", delivered_at=occurred_at)
        metadata = {"delivered_response": event.get("response"), "smtp_id": event.get("smtp-id")}
    elif event_type == "open":
        values["last_opened_at"] = occurred_at
        metadata = {"last_open_ip": event.get("ip"), "last_open_user_agent": event.get("useragent")}
    elif event_type == "click":
        url = event.get("url")
        values.update(last_clicked_at=occurred_at, last_clicked_url=url)
        metadata = {
            "last_click_ip": event.get("ip"),
            "last_click_user_agent": event.get("useragent"),
            "last_clicked_url": url,
        }
    else:
        metadata = {}
    return values, metadata


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
