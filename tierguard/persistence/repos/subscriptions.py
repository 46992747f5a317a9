from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.domain.models import Subscription


async def get_current(
    session: AsyncSession, account_id: str, *, for_update: bool = False
) -> Subscription | None:
    # The row with the highest generation is the account's live subscription.
    stmt = (
        select(Subscription)
        .where(Subscription.account_id == account_id)
        .order_by(Subscription.generation.desc())
        .limit(1)
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def find_account_id(session: AsyncSession, provider_subscription_id: str) -> str | None:
    # Resolve invoice events that only reference the provider subscription.
    result = await session.execute(
        select(Subscription.account_id)
        .where(Subscription.provider_subscription_id == provider_subscription_id)
        .order_by(Subscription.generation.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_history(session: AsyncSession, account_id: str) -> list[Subscription]:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.account_id == account_id)
        .order_by(Subscription.generation.desc())
    )
    return list(result.scalars().all())
