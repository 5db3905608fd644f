from __future__ import annotations

from notifypipe.services.channels.base import DispatchRequest, DispatchResult


PUSH_NOT_IMPLEMENTED = "Push notification delivery not implemented"


class PushDispatcher:
    # Reserves the push slot; every attempt fails deterministically until a provider is wired in.
    method = "push"

    def resolve_address(self, *, email: str | None, phone: str | None) -> str | None:
        return ""

    async def dispatch(self, request: DispatchRequest) -> DispatchResult:
        return DispatchResult.permanent_failure(PUSH_NOT_IMPLEMENTED)
