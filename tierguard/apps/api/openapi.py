from __future__ import annotations

from typing import Any

from tierguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    402: _response(
        "Quota exceeded",
        "QUOTA_EXCEEDED",
        "Quota exhausted for this billing period",
        {"quota": "customers", "limit": 9, "used": 9, "upgrade_tier": "professional"},
    ),
    403: _response(
        "Capability not available",
        "FEATURE_LOCKED",
        "Capability is not included in the current tier",
        {"capability": "export.excel", "upgrade_tier": "enterprise"},
    ),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Temporarily unavailable", "TEMPORARILY_UNAVAILABLE", "Service is temporarily unavailable"),
}
