from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tierguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tierguard.apps.api.response import SuccessEnvelope, success_response
from tierguard.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Liveness only; storage problems surface on the routes that need storage.
    payload = HealthResponse(status="ok", db_pool=pool_stats())
    return success_response(request=request, data=payload)
