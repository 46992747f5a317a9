from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.domain.models import WebhookEvent


# Recorded on events parked until their subscription exists.
AWAITING_SUBSCRIPTION = "awaiting_subscription"


async def insert_if_absent(
    session: AsyncSession,
    *,
    event_id: str,
    event_type: str,
    occurred_at: datetime,
    received_at: datetime,
    payload_json: dict[str, Any],
    account_id: str | None,
    provider_subscription_id: str | None = None,
) -> bool:
    # Commit the idempotency marker in its own transaction; False means it already existed.
    try:
        async with session.begin():
            session.add(
                WebhookEvent(
                    event_id=event_id,
                    event_type=event_type,
                    occurred_at=occurred_at,
                    received_at=received_at,
                    payload_json=payload_json,
                    account_id=account_id,
                    provider_subscription_id=provider_subscription_id,
                    status="received",
                )
            )
    except IntegrityError:
        return False
    return True


async def get_event(session: AsyncSession, event_id: str, *, for_update: bool = False) -> WebhookEvent | None:
    stmt = select(WebhookEvent).where(WebhookEvent.event_id == event_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_pending(
    session: AsyncSession,
    *,
    received_before: datetime,
    limit: int,
) -> list[WebhookEvent]:
    # Unprocessed events in causal order, excluding those given up on.
    result = await session.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.processed_at.is_(None),
            WebhookEvent.status != "failed",
            WebhookEvent.received_at <= received_before,
        )
        .order_by(WebhookEvent.occurred_at, WebhookEvent.event_id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_deferred_for_account(
    session: AsyncSession,
    account_id: str,
    provider_subscription_id: str | None = None,
) -> list[str]:
    # Includes deferred events the sweep gave up on; a late checkout still unblocks them.
    owner = WebhookEvent.account_id == account_id
    if provider_subscription_id is not None:
        owner = or_(owner, WebhookEvent.provider_subscription_id == provider_subscription_id)
    result = await session.execute(
        select(WebhookEvent.event_id)
        .where(
            owner,
            WebhookEvent.processed_at.is_(None),
            or_(
                WebhookEvent.status == "deferred",
                and_(WebhookEvent.status == "failed", WebhookEvent.last_error == AWAITING_SUBSCRIPTION),
            ),
        )
        .order_by(WebhookEvent.occurred_at, WebhookEvent.event_id)
    )
    return list(result.scalars().all())


async def record_apply_failure(session: AsyncSession, event_id: str, *, error: str) -> None:
    # Keep the event pending for reconciliation while tracking the attempt.
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id, WebhookEvent.processed_at.is_(None))
        .values(apply_attempts=WebhookEvent.apply_attempts + 1, last_error=error[:2000])
    )


async def mark_failed(session: AsyncSession, event_id: str, *, error: str | None) -> None:
    await session.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id, WebhookEvent.processed_at.is_(None))
        .values(status="failed", last_error=error)
    )


async def reopen(session: AsyncSession, event_id: str) -> bool:
    # Give an abandoned event a fresh attempt budget for a manual replay.
    result = await session.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.event_id == event_id,
            WebhookEvent.processed_at.is_(None),
            WebhookEvent.status == "failed",
        )
        .values(status="received", apply_attempts=0)
    )
    return (result.rowcount or 0) > 0
