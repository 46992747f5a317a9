from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tierguard.domain.models import JobDeadLetter, PaymentLog


def add_payment_log(
    session: AsyncSession,
    *,
    account_id: str,
    event_id: str,
    event_type: str,
    occurred_at: datetime,
    amount: int | None = None,
    currency: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> PaymentLog:
    row = PaymentLog(
        account_id=account_id,
        event_id=event_id,
        event_type=event_type,
        amount=amount,
        currency=currency,
        metadata_json=metadata_json,
        occurred_at=occurred_at,
    )
    session.add(row)
    return row


async def list_payment_logs(session: AsyncSession, account_id: str) -> list[PaymentLog]:
    result = await session.execute(
        select(PaymentLog)
        .where(PaymentLog.account_id == account_id)
        .order_by(PaymentLog.occurred_at, PaymentLog.id)
    )
    return list(result.scalars().all())


def add_dead_letter(
    session: AsyncSession,
    *,
    job_id: str,
    job_type: str,
    dependency: str,
    payload_json: dict[str, Any],
    attempts: int,
    reason: str,
    last_error: str | None,
) -> JobDeadLetter:
    row = JobDeadLetter(
        id=uuid4().hex,
        job_id=job_id,
        job_type=job_type,
        dependency=dependency,
        payload_json=payload_json,
        attempts=attempts,
        reason=reason,
        last_error=last_error,
    )
    session.add(row)
    return row


async def list_dead_letters(session: AsyncSession, *, limit: int = 100) -> list[JobDeadLetter]:
    result = await session.execute(
        select(JobDeadLetter).order_by(JobDeadLetter.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())
