from __future__ import annotations

import logging
from typing import Any, NoReturn

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tierguard.apps.api.response import error_response, is_versioned_request
from tierguard.core.errors import StorageFailureError, TierguardError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    402: "QUOTA_EXCEEDED",
    403: "FEATURE_LOCKED",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "TEMPORARILY_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Normalize HTTP errors into the shared error envelope for v1 routes.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def storage_failure_handler(request: Request, exc: StorageFailureError) -> JSONResponse:
    # 503 tells the payment provider to redeliver; nothing was recorded.
    logger.error("storage_unavailable path=%s error=%s", request.url.path, exc)
    headers = {"Retry-After": "5"}
    if not is_versioned_request(request):
        return JSONResponse(content={"status": "unavailable"}, status_code=503, headers=headers)
    payload = error_response(
        request=request,
        code="TEMPORARILY_UNAVAILABLE",
        message="Storage is temporarily unavailable",
    )
    return JSONResponse(content=payload, status_code=503, headers=headers)


async def domain_exception_handler(request: Request, exc: TierguardError) -> JSONResponse:
    logger.warning("domain_error path=%s type=%s error=%s", request.url.path, type(exc).__name__, exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": str(exc)}, status_code=400)
    payload = error_response(request=request, code="BAD_REQUEST", message=str(exc))
    return JSONResponse(content=payload, status_code=400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)


def raise_http(status_code: int, code: str, message: str, **details: Any) -> NoReturn:
    raise HTTPException(status_code=status_code, detail={"code": code, "message": message, **details})
