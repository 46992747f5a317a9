from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.apps.api.deps import get_db, get_engine
from tierguard.apps.api.errors import raise_http
from tierguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tierguard.apps.api.response import SuccessEnvelope, success_response
from tierguard.persistence.repos import audit as audit_repo
from tierguard.services.engine import BillingEngine
from tierguard.services.reconciliation import reconcile_pending_events, replay_event
from tierguard.services.subscriptions import OUTCOME_NOT_FOUND
from tierguard.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class CircuitBreakerResponse(BaseModel):
    name: str
    state: str
    consecutive_failures: int
    opened_at: float | None
    half_open_trials_in_flight: int
    half_open_successes: int


class CircuitBreakerListResponse(BaseModel):
    items: list[CircuitBreakerResponse]


class DeadLetterResponse(BaseModel):
    id: str
    job_id: str
    job_type: str
    dependency: str
    attempts: int
    reason: str
    last_error: str | None
    created_at: datetime


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]


class ReconcileResponse(BaseModel):
    scanned: int
    applied: int
    no_op: int
    deferred: int
    failed: int
    abandoned: int


class ReplayResponse(BaseModel):
    event_id: str
    status: str
    account_id: str | None
    replayed: bool
    detail: str | None


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    integrations: dict[str, dict[str, float | None]]
    jobs: dict[str, Any]


@router.get(
    "/circuit-breakers",
    response_model=SuccessEnvelope[CircuitBreakerListResponse] | CircuitBreakerListResponse,
)
async def circuit_breakers(request: Request, engine: BillingEngine = Depends(get_engine)) -> dict:
    snapshots = [await breaker.snapshot() for breaker in engine.jobs.breakers()]
    payload = CircuitBreakerListResponse(
        items=[
            CircuitBreakerResponse(
                name=snap["name"],
                state=snap["state"],
                consecutive_failures=snap["consecutive_failures"],
                opened_at=snap["opened_at"],
                half_open_trials_in_flight=snap["half_open_trials_in_flight"],
                half_open_successes=snap["half_open_successes"],
            )
            for snap in snapshots
        ]
    )
    return success_response(request=request, data=payload)


@router.get(
    "/dead-letters",
    response_model=SuccessEnvelope[DeadLetterListResponse] | DeadLetterListResponse,
)
async def dead_letters(
    request: Request,
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await audit_repo.list_dead_letters(db, limit=limit)
    payload = DeadLetterListResponse(
        items=[
            DeadLetterResponse(
                id=row.id,
                job_id=row.job_id,
                job_type=row.job_type,
                dependency=row.dependency,
                attempts=row.attempts,
                reason=row.reason,
                last_error=row.last_error,
                created_at=row.created_at,
            )
            for row in rows
        ]
    )
    return success_response(request=request, data=payload)


@router.post("/reconcile", response_model=SuccessEnvelope[ReconcileResponse] | ReconcileResponse)
async def reconcile(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=10000),
    engine: BillingEngine = Depends(get_engine),
) -> dict:
    # Operator-triggered sweep; same code path as the periodic worker loop.
    report = await reconcile_pending_events(
        engine.state_machine, engine.session_factory, limit=limit, now=engine.gate.now()
    )
    return success_response(request=request, data=ReconcileResponse(**report.as_dict()))


@router.post(
    "/events/{event_id}/replay",
    response_model=SuccessEnvelope[ReplayResponse] | ReplayResponse,
)
async def replay(request: Request, event_id: str, engine: BillingEngine = Depends(get_engine)) -> dict:
    outcome = await replay_event(engine.state_machine, engine.session_factory, event_id)
    if outcome.status == OUTCOME_NOT_FOUND:
        raise_http(404, "EVENT_NOT_FOUND", "No stored event with this id", event_id=event_id)
    payload = ReplayResponse(
        event_id=outcome.event_id,
        status=outcome.status,
        account_id=outcome.account_id,
        replayed=outcome.replayed,
        detail=outcome.detail,
    )
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse] | MetricsResponse)
async def metrics(request: Request, engine: BillingEngine = Depends(get_engine)) -> dict:
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        integrations=external_latency_by_integration(window_s=300),
        jobs=await engine.jobs.stats(),
    )
    return success_response(request=request, data=payload)
