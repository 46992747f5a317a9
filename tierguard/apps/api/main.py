from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from tierguard.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    storage_failure_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tierguard.apps.api.response import API_VERSION, is_versioned_request
from tierguard.apps.api.routes.entitlements import router as entitlements_router
from tierguard.apps.api.routes.health import router as health_router
from tierguard.apps.api.routes.jobs import router as jobs_router
from tierguard.apps.api.routes.ops import router as ops_router
from tierguard.apps.api.routes.webhooks import router as webhooks_router
from tierguard.core.errors import StorageFailureError, TierguardError
from tierguard.core.logging import configure_logging
from tierguard.services.engine import BillingEngine, build_engine
from tierguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)


def create_app(engine: BillingEngine | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Build the engine lazily so importing the module never touches storage.
        owned = app.state.engine is None
        if owned:
            app.state.engine = await build_engine()
        await app.state.engine.start()
        try:
            yield
        finally:
            await app.state.engine.shutdown()
            if owned:
                app.state.engine = None

    app = FastAPI(title="Tierguard Billing API", lifespan=lifespan)
    # Injected engines are usable before lifespan runs (ASGI test transports skip it).
    app.state.engine = engine

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        logger.debug(
            "request_done path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and "meta" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped_response = JSONResponse(
                            content={
                                "data": payload,
                                "meta": {"request_id": request_id, "api_version": API_VERSION},
                            },
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(StorageFailureError)
    async def _storage_failure_handler(request: Request, exc: StorageFailureError):
        return await storage_failure_handler(request, exc)

    @app.exception_handler(TierguardError)
    async def _domain_exception_handler(request: Request, exc: TierguardError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Provider webhooks keep a stable unversioned path.
    app.include_router(webhooks_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(entitlements_router, prefix=f"/{API_VERSION}")
    app.include_router(jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Tierguard Billing API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    return app


app = create_app()
