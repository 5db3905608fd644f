from __future__ import annotations

from typing import Any

from notifypipe.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _error_response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _error_response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

JOB_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    400: _error_response(
        "Job cannot be cancelled",
        code="JOB_NOT_CANCELLABLE",
        message="Only pending jobs can be cancelled",
        details={"current_status": "sent"},
    ),
    404: _error_response("Job not found", code="JOB_NOT_FOUND", message="Notification job not found"),
}

WEBHOOK_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response("Malformed event batch", code="WEBHOOK_INVALID_PAYLOAD", message="Expected a JSON array"),
    401: _error_response(
        "Signature verification failed",
        code="WEBHOOK_SIGNATURE_INVALID",
        message="Webhook signature verification failed",
    ),
}

METRICS_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    422: _error_response(
        "Metrics window out of range",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["query", "hours"], "msg": "Input should be less than or equal to 168"}]},
    ),
}
