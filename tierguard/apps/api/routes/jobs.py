from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tierguard.apps.api.deps import get_engine
from tierguard.apps.api.errors import raise_http
from tierguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tierguard.apps.api.response import SuccessEnvelope, success_response
from tierguard.services.catalog import FEATURE_AI_GENERATE, QUOTA_AI_GENERATIONS
from tierguard.services.engine import BillingEngine
from tierguard.services.gate import REASON_QUOTA_EXCEEDED, REASON_SUBSCRIPTION_INACTIVE
from tierguard.services.job_handlers import AI_GENERATION_JOB
from tierguard.services.jobs import SUBMIT_CIRCUIT_OPEN, SubmitResult


logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


class JobSubmitRequest(BaseModel):
    job_type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)


class JobSubmitResponse(BaseModel):
    job_id: str
    job_type: str


class AIGenerationRequest(BaseModel):
    account_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    kind: str = "meal_plan"


def _raise_for_refusal(result: SubmitResult) -> None:
    # Callers learn the dependency is degraded, never which one.
    if result.status == SUBMIT_CIRCUIT_OPEN:
        raise_http(503, "TEMPORARILY_UNAVAILABLE", "Service is temporarily unavailable")
    if result.reason == "unknown_job_type":
        raise_http(400, "UNKNOWN_JOB_TYPE", "Job type is not registered")
    raise_http(503, "TEMPORARILY_UNAVAILABLE", "Service is temporarily unavailable")


def _accepted(request: Request, job_id: str, job_type: str) -> JSONResponse:
    payload = JobSubmitResponse(job_id=job_id, job_type=job_type)
    return JSONResponse(status_code=202, content=success_response(request=request, data=payload))


@router.post(
    "/jobs",
    status_code=202,
    response_model=SuccessEnvelope[JobSubmitResponse] | JobSubmitResponse,
)
async def submit_job(
    request: Request,
    body: JobSubmitRequest,
    engine: BillingEngine = Depends(get_engine),
) -> JSONResponse:
    result = await engine.jobs.submit(body.job_type, body.payload)
    if not result.accepted:
        _raise_for_refusal(result)
    return _accepted(request, result.job_id, body.job_type)


@router.post(
    "/ai/generations",
    status_code=202,
    response_model=SuccessEnvelope[JobSubmitResponse] | JobSubmitResponse,
)
async def request_ai_generation(
    request: Request,
    body: AIGenerationRequest,
    engine: BillingEngine = Depends(get_engine),
) -> JSONResponse:
    # Consume the unit before queuing; a refused submission gives it back.
    decision = await engine.gate.authorize(body.account_id, FEATURE_AI_GENERATE)
    if not decision.allowed:
        status_code, code = 403, "FEATURE_LOCKED"
        if decision.reason == REASON_QUOTA_EXCEEDED:
            status_code, code = 402, "QUOTA_EXCEEDED"
        elif decision.reason == REASON_SUBSCRIPTION_INACTIVE:
            # Clients prompt for reactivation here rather than an upgrade.
            status_code, code = 403, "SUBSCRIPTION_INACTIVE"
        raise_http(
            status_code,
            code,
            "AI generation is not available for this account",
            reason=decision.reason,
            upgrade_tier=decision.upgrade_tier,
            quota=decision.quota_name,
            limit=decision.limit,
            used=decision.usage,
        )
    result = await engine.jobs.submit(
        AI_GENERATION_JOB,
        {
            "account_id": body.account_id,
            "prompt": body.prompt,
            "kind": body.kind,
            "quota_units": 1,
            "request_id": getattr(request.state, "request_id", None),
        },
    )
    if not result.accepted:
        await engine.ledger.release(body.account_id, QUOTA_AI_GENERATIONS, 1)
        logger.warning(
            "ai_generation_refused account_id=%s status=%s reason=%s",
            body.account_id,
            result.status,
            result.reason,
        )
        _raise_for_refusal(result)
    return _accepted(request, result.job_id, AI_GENERATION_JOB)
