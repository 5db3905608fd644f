from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"
# Provider callbacks expect their own bare response bodies.
ENVELOPE_EXEMPT_PREFIXES: tuple[str, ...] = (f"/{API_VERSION}/webhooks",)

PayloadT = TypeVar("PayloadT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[PayloadT]):
    data: PayloadT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware normally sets this; handlers that run before it fall back to the header.
    cached = getattr(request.state, "request_id", None)
    if not cached:
        cached = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = cached
    return cached


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def is_enveloped_request(request: Request) -> bool:
    path = request.url.path
    return is_versioned_request(request) and not path.startswith(ENVELOPE_EXEMPT_PREFIXES)


def success_response(*, request: Request, data: Any) -> Any:
    if is_enveloped_request(request):
        return {"data": data, "meta": _meta(request)}
    return data


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details).model_dump(exclude_none=True)
    return {"error": error, "meta": _meta(request)}
