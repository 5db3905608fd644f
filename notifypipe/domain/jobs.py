from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from notifypipe.core.errors import InvalidTransitionError


JobStatus = Literal["pending", "processing", "sent", "failed", "skipped", "cancelled"]
DeliveryMethod = Literal["email", "sms", "whatsapp", "push"]
UrgencyLevel = Literal["low", "normal", "urgent"]
NotificationType = Literal["immediate", "digest", "milestone"]
DeliveryLogStatus = Literal["delivered", "failed", "spam_reported", "unsubscribed", "opened", "clicked"]

JOB_STATUSES: tuple[str, ...] = ("pending", "processing", "sent", "failed", "skipped", "cancelled")
DELIVERY_METHODS: tuple[str, ...] = ("email", "sms", "whatsapp", "push")
NOTIFICATION_TYPES: tuple[str, ...] = ("immediate", "digest", "milestone")
TERMINAL_STATUSES: frozenset[str] = frozenset({"sent", "failed", "skipped", "cancelled"})

# processing -> processing records retry bookkeeping without changing status.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "cancelled"}),
    "processing": frozenset({"processing", "sent", "failed", "skipped", "cancelled"}),
    "sent": frozenset(),
    "failed": frozenset(),
    "skipped": frozenset(),
    "cancelled": frozenset(),
}

URGENT_PRIORITY = 1
DEFAULT_PRIORITY = 10


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    # Reject status writes the state machine does not allow before they reach the store.
    if not can_transition(current, target):
        raise InvalidTransitionError(f"invalid job transition {current} -> {target}")


def priority_for_urgency(urgency_level: str) -> int:
    # Lower numbers dequeue first; only urgent jobs jump the line.
    return URGENT_PRIORITY if urgency_level == "urgent" else DEFAULT_PRIORITY


def as_utc(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo; treat naive store timestamps as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class JobContent(BaseModel):
    # Rendered upstream; unknown keys are preserved for pass-through.
    model_config = {"extra": "allow"}

    subject: str = ""
    body: str = ""
    media_urls: list[str] | None = None
    milestone_type: str | None = None


class NotificationJobRecord(BaseModel):
    # Typed view of a notification_jobs row, validated once at the store boundary.
    id: str
    recipient_id: str
    group_id: str
    update_id: str
    notification_type: NotificationType
    urgency_level: UrgencyLevel = "normal"
    delivery_method: str
    content: JobContent = Field(default_factory=JobContent)
    metadata: dict[str, Any] | None = None
    scheduled_for: datetime
    status: JobStatus = "pending"
    retry_count: int = 0
    max_retries: int = 3
    failure_reason: str | None = None
    message_id: str | None = None
    processed_at: datetime | None = None
    claimed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("scheduled_for", "processed_at", "claimed_at", "created_at", "updated_at")
    @classmethod
    def _coerce_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @property
    def priority(self) -> int:
        return priority_for_urgency(self.urgency_level)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class DeliveryLogEntry(BaseModel):
    # One immutable dispatch attempt outcome.
    job_id: str
    recipient_id: str
    group_id: str
    delivery_method: str
    status: DeliveryLogStatus
    provider_message_id: str | None = None
    provider_response: dict[str, Any] | None = None
    delivery_time: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    delivery_duration_ms: int | None = None
