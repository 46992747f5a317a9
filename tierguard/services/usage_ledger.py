from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.domain.models import UsageCounter
from tierguard.persistence.repos import usage_counters as counters_repo
from tierguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IncrementResult:
    # ok=False is the QuotaExceeded outcome; count is the open period's value afterwards.
    ok: bool
    quota_name: str
    count: int
    limit: int | None

    @property
    def remaining(self) -> int | None:
        if self.limit is None:
            return None
        return max(0, self.limit - self.count)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UsageLedger:
    """Per-account quota counters scoped to the subscription's billing period.

    Increments are a single guarded UPDATE so concurrent callers can never push a
    counter past its ceiling. Closed periods are kept as history.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._now = time_source or _utc_now

    async def increment(
        self,
        account_id: str,
        quota_name: str,
        *,
        limit: int | None,
        by: int = 1,
        period: tuple[datetime, datetime | None] | None = None,
    ) -> IncrementResult:
        if by < 1:
            raise ValueError("increment amount must be positive")
        async with self._session_factory() as session:
            async with session.begin():
                ok = await counters_repo.try_increment(
                    session, account_id=account_id, quota_name=quota_name, by=by, limit=limit
                )
                if not ok and await counters_repo.get_open(session, account_id, quota_name) is None:
                    # First use of this quota in the period: open the row, then retry once.
                    await self._open_if_absent(session, account_id, quota_name, period)
                    ok = await counters_repo.try_increment(
                        session, account_id=account_id, quota_name=quota_name, by=by, limit=limit
                    )
                counter = await counters_repo.get_open(session, account_id, quota_name)
                count = await self._fresh_count(session, counter)
        if not ok:
            increment_counter(f"quota_exceeded_total.{quota_name}")
            logger.info(
                "quota_exceeded account_id=%s quota=%s count=%s limit=%s",
                account_id,
                quota_name,
                count,
                limit,
            )
        return IncrementResult(ok=ok, quota_name=quota_name, count=count, limit=limit)

    async def _open_if_absent(
        self,
        session: AsyncSession,
        account_id: str,
        quota_name: str,
        period: tuple[datetime, datetime | None] | None,
    ) -> None:
        period_start, period_end = period or (self._now().replace(microsecond=0), None)
        try:
            async with session.begin_nested():
                counters_repo.open_counter(
                    session,
                    account_id=account_id,
                    quota_name=quota_name,
                    period_start=period_start,
                    period_end=period_end,
                )
        except IntegrityError:
            # A concurrent caller opened it first; the retry below will use theirs.
            logger.debug("usage_counter_open_race account_id=%s quota=%s", account_id, quota_name)

    async def _fresh_count(self, session: AsyncSession, counter: UsageCounter | None) -> int:
        if counter is None:
            return 0
        # The guarded UPDATE bypasses the identity map, so reload the row.
        await session.refresh(counter)
        return counter.count

    async def release(self, account_id: str, quota_name: str, by: int = 1) -> bool:
        # Refund units for work that never completed; counts never go below zero.
        async with self._session_factory() as session:
            async with session.begin():
                released = await counters_repo.try_decrement(
                    session, account_id=account_id, quota_name=quota_name, by=by
                )
        if released:
            increment_counter(f"quota_released_total.{quota_name}")
        else:
            logger.warning(
                "usage_release_skipped account_id=%s quota=%s by=%s", account_id, quota_name, by
            )
        return released

    async def rollover(
        self,
        session: AsyncSession,
        account_id: str,
        new_start: datetime,
        new_end: datetime | None,
        quota_names: Iterable[str],
    ) -> bool:
        """Close the account's open counters and open zeroed ones for the new period.

        Runs inside the caller's transaction. Returns False when the new period is
        already open, which makes renewals replayed out of order harmless.
        """
        quota_names = list(quota_names)
        open_rows = await counters_repo.list_open(session, account_id)
        if any(row.period_start >= new_start for row in open_rows):
            await self.ensure_open(session, account_id, new_start, new_end, quota_names)
            return False
        await counters_repo.close_open(session, account_id, closed_at=self._now())
        for quota_name in quota_names:
            counters_repo.open_counter(
                session,
                account_id=account_id,
                quota_name=quota_name,
                period_start=new_start,
                period_end=new_end,
            )
        await session.flush()
        logger.info(
            "usage_rollover account_id=%s period_start=%s quotas=%s",
            account_id,
            new_start.isoformat(),
            ",".join(quota_names),
        )
        return True

    async def ensure_open(
        self,
        session: AsyncSession,
        account_id: str,
        period_start: datetime,
        period_end: datetime | None,
        quota_names: Iterable[str],
    ) -> None:
        # Open zeroed counters for quotas that have none, e.g. after an upgrade adds a quota.
        existing = {row.quota_name for row in await counters_repo.list_open(session, account_id)}
        for quota_name in quota_names:
            if quota_name in existing:
                continue
            counters_repo.open_counter(
                session,
                account_id=account_id,
                quota_name=quota_name,
                period_start=period_start,
                period_end=period_end,
            )
        await session.flush()

    async def current_usage(self, account_id: str, *, session: AsyncSession | None = None) -> dict[str, int]:
        if session is not None:
            rows = await counters_repo.list_open(session, account_id)
            return {row.quota_name: row.count for row in rows}
        async with self._session_factory() as own_session:
            rows = await counters_repo.list_open(own_session, account_id)
            return {row.quota_name: row.count for row in rows}

    async def list_counters(self, account_id: str, quota_name: str | None = None) -> list[UsageCounter]:
        # Full history including closed periods, newest first.
        async with self._session_factory() as session:
            return await counters_repo.list_counters(session, account_id, quota_name)
