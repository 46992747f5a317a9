from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from tierguard.services.usage_ledger import UsageLedger


@pytest.mark.asyncio
async def test_concurrent_increments_never_exceed_limit(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)
    period = (clock(), clock() + timedelta(days=30))
    async with session_factory() as session:
        async with session.begin():
            await ledger.rollover(session, "acct_1", period[0], period[1], ["customers"])
        # Eight of nine seats are already taken.
    for _ in range(8):
        assert (await ledger.increment("acct_1", "customers", limit=9, period=period)).ok

    results = await asyncio.gather(
        *(ledger.increment("acct_1", "customers", limit=9, period=period) for _ in range(10))
    )

    assert sum(1 for result in results if result.ok) == 1
    assert sum(1 for result in results if not result.ok) == 9
    assert await ledger.current_usage("acct_1") == {"customers": 9}


@pytest.mark.asyncio
async def test_concurrent_first_use_opens_a_single_counter(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)
    period = (clock(), None)

    results = await asyncio.gather(
        *(ledger.increment("acct_1", "meal_plans", limit=9, period=period) for _ in range(10))
    )

    assert sum(1 for result in results if result.ok) == 9
    counters = await ledger.list_counters("acct_1", "meal_plans")
    assert len(counters) == 1
    assert counters[0].count == 9


@pytest.mark.asyncio
async def test_increment_reports_remaining_and_unlimited(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)

    limited = await ledger.increment("acct_1", "customers", limit=3, by=2)
    unlimited = await ledger.increment("acct_1", "ai_generations", limit=None, by=500)

    assert limited.count == 2
    assert limited.remaining == 1
    assert unlimited.ok
    assert unlimited.remaining is None


@pytest.mark.asyncio
async def test_multi_unit_increment_is_all_or_nothing(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)
    await ledger.increment("acct_1", "customers", limit=5, by=4)

    result = await ledger.increment("acct_1", "customers", limit=5, by=2)

    assert not result.ok
    assert result.count == 4


@pytest.mark.asyncio
async def test_zero_limit_denies(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)

    result = await ledger.increment("acct_1", "ai_generations", limit=0)

    assert not result.ok
    assert result.count == 0


@pytest.mark.asyncio
async def test_non_positive_increment_is_rejected(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)

    with pytest.raises(ValueError):
        await ledger.increment("acct_1", "customers", limit=5, by=0)


@pytest.mark.asyncio
async def test_release_never_goes_below_zero(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)
    await ledger.increment("acct_1", "ai_generations", limit=10)

    assert await ledger.release("acct_1", "ai_generations") is True
    assert await ledger.release("acct_1", "ai_generations") is False
    assert await ledger.current_usage("acct_1") == {"ai_generations": 0}


@pytest.mark.asyncio
async def test_rollover_is_a_noop_for_an_already_open_period(session_factory, clock) -> None:
    ledger = UsageLedger(session_factory, time_source=clock)
    start = clock()
    renewal = start + timedelta(days=30)
    async with session_factory() as session:
        async with session.begin():
            assert await ledger.rollover(session, "acct_1", start, renewal, ["customers"]) is True
    await ledger.increment("acct_1", "customers", limit=9)
    async with session_factory() as session:
        async with session.begin():
            assert await ledger.rollover(session, "acct_1", renewal, None, ["customers"]) is True
            # A replayed renewal for the same or an older period leaves counters alone.
            assert await ledger.rollover(session, "acct_1", start, renewal, ["customers"]) is False

    history = await ledger.list_counters("acct_1", "customers")
    assert [(row.period_start, row.count, row.closed_at is None) for row in history] == [
        (renewal, 0, True),
        (start, 1, False),
    ]
