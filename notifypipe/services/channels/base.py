from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Protocol


_HTML_TAG_RE = re.compile(r"<[^>]*>")


@dataclass(frozen=True)
class DispatchRequest:
    job_id: str
    recipient_id: str
    group_id: str
    notification_type: str
    address: str
    subject: str
    body: str
    media_urls: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message_id: str | None = None
    error: str | None = None
    # False marks deterministic failures that another attempt cannot fix.
    retryable: bool = True
    status_code: int | None = None
    provider_status: str | None = None
    provider_response: dict[str, Any] | None = None

    @classmethod
    def permanent_failure(cls, error: str, **kwargs: Any) -> "DispatchResult":
        return cls(success=False, error=error, retryable=False, **kwargs)


class ChannelDispatcher(Protocol):
    # One implementation per delivery method; the worker pool only sees this contract.
    method: str

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None: ...

    async def dispatch(self, request: DispatchRequest) -> DispatchResult: ...


def strip_html(value: str) -> str:
    # Plain-text fallback for rendered HTML bodies.
    return _HTML_TAG_RE.sub("", value or "")
