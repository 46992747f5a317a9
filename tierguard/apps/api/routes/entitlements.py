from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.apps.api.deps import get_db, get_engine
from tierguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tierguard.apps.api.response import SuccessEnvelope, success_response
from tierguard.persistence.repos import audit as audit_repo
from tierguard.persistence.repos import usage_counters as counters_repo
from tierguard.services.engine import BillingEngine


router = APIRouter(tags=["entitlements"], responses=DEFAULT_ERROR_RESPONSES)


class AuthorizeRequest(BaseModel):
    account_id: str = Field(min_length=1)
    capability: str = Field(min_length=1)
    amount: int = Field(default=1, ge=1)


class AuthorizeResponse(BaseModel):
    allowed: bool
    reason: str | None = None
    upgrade_tier: str | None = None
    quota_name: str | None = None
    usage: int | None = None
    limit: int | None = None


class EntitlementResponse(BaseModel):
    account_id: str
    tier_id: str | None
    status: str | None
    active: bool
    features: list[str]
    limits: dict[str, int | None]
    usage: dict[str, int]
    version: int
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    access_until: datetime | None


class UsagePeriodResponse(BaseModel):
    quota_name: str
    period_start: datetime
    period_end: datetime | None
    count: int
    closed_at: datetime | None


class UsageHistoryResponse(BaseModel):
    account_id: str
    items: list[UsagePeriodResponse]


class PaymentLogResponse(BaseModel):
    event_id: str
    event_type: str
    amount: int | None
    currency: str | None
    occurred_at: datetime
    metadata: dict[str, Any] | None = None


class PaymentHistoryResponse(BaseModel):
    account_id: str
    items: list[PaymentLogResponse]


@router.post("/authorize", response_model=SuccessEnvelope[AuthorizeResponse] | AuthorizeResponse)
async def authorize(
    request: Request,
    body: AuthorizeRequest,
    engine: BillingEngine = Depends(get_engine),
) -> dict:
    # Denials are a normal answer, not an HTTP error; callers branch on allowed.
    result = await engine.gate.authorize(body.account_id, body.capability, amount=body.amount)
    payload = AuthorizeResponse(
        allowed=result.allowed,
        reason=getattr(result, "reason", None),
        upgrade_tier=getattr(result, "upgrade_tier", None),
        quota_name=result.quota_name,
        usage=result.usage,
        limit=result.limit,
    )
    return success_response(request=request, data=payload)


@router.get(
    "/entitlements/{account_id}",
    response_model=SuccessEnvelope[EntitlementResponse] | EntitlementResponse,
)
async def get_entitlement(
    request: Request,
    account_id: str,
    engine: BillingEngine = Depends(get_engine),
) -> dict:
    entitlement = await engine.cache.resolve(account_id)
    # Counters move on every authorization, so read usage live rather than from the cache.
    usage = await engine.ledger.current_usage(account_id)
    payload = EntitlementResponse(
        account_id=entitlement.account_id,
        tier_id=entitlement.tier_id,
        status=entitlement.status,
        active=entitlement.is_active(engine.gate.now()),
        features=sorted(entitlement.features),
        limits=dict(entitlement.limits),
        usage=usage,
        version=entitlement.version,
        current_period_start=entitlement.current_period_start,
        current_period_end=entitlement.current_period_end,
        cancel_at_period_end=entitlement.cancel_at_period_end,
        access_until=entitlement.access_until,
    )
    return success_response(request=request, data=payload)


@router.get(
    "/accounts/{account_id}/usage",
    response_model=SuccessEnvelope[UsageHistoryResponse] | UsageHistoryResponse,
)
async def usage_history(
    request: Request,
    account_id: str,
    quota_name: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Closed periods stay queryable for billing disputes and audits.
    rows = await counters_repo.list_counters(db, account_id, quota_name)
    payload = UsageHistoryResponse(
        account_id=account_id,
        items=[
            UsagePeriodResponse(
                quota_name=row.quota_name,
                period_start=row.period_start,
                period_end=row.period_end,
                count=row.count,
                closed_at=row.closed_at,
            )
            for row in rows
        ],
    )
    return success_response(request=request, data=payload)


@router.get(
    "/accounts/{account_id}/payments",
    response_model=SuccessEnvelope[PaymentHistoryResponse] | PaymentHistoryResponse,
)
async def payment_history(
    request: Request,
    account_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await audit_repo.list_payment_logs(db, account_id)
    payload = PaymentHistoryResponse(
        account_id=account_id,
        items=[
            PaymentLogResponse(
                event_id=row.event_id,
                event_type=row.event_type,
                amount=row.amount,
                currency=row.currency,
                occurred_at=row.occurred_at,
                metadata=row.metadata_json,
            )
            for row in rows
        ],
    )
    return success_response(request=request, data=payload)
