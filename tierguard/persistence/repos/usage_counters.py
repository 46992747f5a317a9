from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.domain.models import UsageCounter


async def try_increment(
    session: AsyncSession,
    *,
    account_id: str,
    quota_name: str,
    by: int,
    limit: int | None,
) -> bool:
    # Single guarded UPDATE; the WHERE clause is the quota check.
    stmt = (
        update(UsageCounter)
        .where(
            UsageCounter.account_id == account_id,
            UsageCounter.quota_name == quota_name,
            UsageCounter.closed_at.is_(None),
        )
        .values(count=UsageCounter.count + by)
        .execution_options(synchronize_session=False)
    )
    if limit is not None:
        stmt = stmt.where(UsageCounter.count + by <= limit)
    result = await session.execute(stmt)
    return (result.rowcount or 0) > 0


async def try_decrement(
    session: AsyncSession,
    *,
    account_id: str,
    quota_name: str,
    by: int,
) -> bool:
    result = await session.execute(
        update(UsageCounter)
        .where(
            UsageCounter.account_id == account_id,
            UsageCounter.quota_name == quota_name,
            UsageCounter.closed_at.is_(None),
            UsageCounter.count >= by,
        )
        .values(count=UsageCounter.count - by)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


async def get_open(session: AsyncSession, account_id: str, quota_name: str) -> UsageCounter | None:
    result = await session.execute(
        select(UsageCounter).where(
            UsageCounter.account_id == account_id,
            UsageCounter.quota_name == quota_name,
            UsageCounter.closed_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def list_open(session: AsyncSession, account_id: str) -> list[UsageCounter]:
    result = await session.execute(
        select(UsageCounter)
        .where(UsageCounter.account_id == account_id, UsageCounter.closed_at.is_(None))
        .order_by(UsageCounter.quota_name)
    )
    return list(result.scalars().all())


async def list_counters(
    session: AsyncSession, account_id: str, quota_name: str | None = None
) -> list[UsageCounter]:
    stmt = select(UsageCounter).where(UsageCounter.account_id == account_id)
    if quota_name is not None:
        stmt = stmt.where(UsageCounter.quota_name == quota_name)
    result = await session.execute(
        stmt.order_by(UsageCounter.quota_name, UsageCounter.period_start.desc())
    )
    return list(result.scalars().all())


async def close_open(session: AsyncSession, account_id: str, *, closed_at: datetime) -> int:
    result = await session.execute(
        update(UsageCounter)
        .where(UsageCounter.account_id == account_id, UsageCounter.closed_at.is_(None))
        .values(closed_at=closed_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def open_counter(
    session: AsyncSession,
    *,
    account_id: str,
    quota_name: str,
    period_start: datetime,
    period_end: datetime | None,
) -> UsageCounter:
    counter = UsageCounter(
        account_id=account_id,
        quota_name=quota_name,
        period_start=period_start,
        period_end=period_end,
        count=0,
    )
    session.add(counter)
    return counter
