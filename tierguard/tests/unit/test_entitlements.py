from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest

from tierguard.core.config import Settings
from tierguard.domain.models import Subscription
from tierguard.services.catalog import FEATURE_CUSTOMERS_INVITE, FEATURE_EXPORT_CSV, load_tier_catalog
from tierguard.services.entitlements import EntitlementCache, access_until_for
from tierguard.services.telemetry import counters_snapshot
from tierguard.services.usage_ledger import UsageLedger
from tierguard.tests.utils.events import checkout_event, signed, subscription_updated_event


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _deliver(engine, clock, payload):
    body, header = signed(payload, engine.settings.webhook_secret, clock())
    return await engine.ingestor.ingest(body, header)


def _subscription(status: str, **fields) -> Subscription:
    return Subscription(
        account_id="acct_1",
        tier_id="starter",
        status=status,
        status_changed_at=T0,
        last_applied_event_at=T0,
        cancel_at_period_end=fields.pop("cancel_at_period_end", False),
        **fields,
    )


def test_access_until_for_each_status() -> None:
    assert access_until_for(_subscription("active"), 72) is None
    assert access_until_for(_subscription("trial"), 72) is None
    assert access_until_for(_subscription("past_due"), 72) == T0 + timedelta(hours=72)
    assert access_until_for(_subscription("unpaid"), 72) == T0
    assert access_until_for(_subscription("canceled"), 72) == T0
    period_end = T0 + timedelta(days=3)
    assert (
        access_until_for(
            _subscription("canceled", cancel_at_period_end=True, current_period_end=period_end), 72
        )
        == period_end
    )


@pytest.mark.asyncio
async def test_account_without_subscription_has_no_entitlement(billing_engine) -> None:
    entitlement = await billing_engine.cache.resolve("acct_missing")

    assert entitlement.status is None
    assert entitlement.version == 0
    assert entitlement.features == frozenset()
    assert not entitlement.is_active(T0)


@pytest.mark.asyncio
async def test_resolve_serves_cached_entry_until_invalidated(billing_engine, clock) -> None:
    await _deliver(billing_engine, clock, checkout_event("acct_1", "starter", created=clock()))

    first = await billing_engine.cache.resolve("acct_1")
    second = await billing_engine.cache.resolve("acct_1")

    assert first is second
    assert counters_snapshot().get("entitlement_cache_hit_total") == 1
    assert FEATURE_CUSTOMERS_INVITE in first.features
    assert first.limit_for("customers") == 9
    assert first.limit_for("ai_generations") == 100
    assert first.limit_for("storage_gb") == 0


@pytest.mark.asyncio
async def test_applied_event_is_visible_on_next_resolve(billing_engine, clock) -> None:
    t0 = clock()
    await _deliver(billing_engine, clock, checkout_event("acct_1", "starter", created=t0))
    before = await billing_engine.cache.resolve("acct_1")
    assert FEATURE_EXPORT_CSV not in before.features

    await _deliver(
        billing_engine,
        clock,
        subscription_updated_event(created=t0 + timedelta(minutes=1), tier_id="professional"),
    )
    after = await billing_engine.cache.resolve("acct_1")

    assert after.tier_id == "professional"
    assert after.version > before.version
    assert FEATURE_EXPORT_CSV in after.features


@pytest.mark.asyncio
async def test_pushed_generation_rejects_older_cached_entry(billing_engine, clock) -> None:
    await _deliver(billing_engine, clock, checkout_event("acct_1", "starter", created=clock()))
    cached = await billing_engine.cache.resolve("acct_1")

    # A generation pushed by another process makes the local entry unusable.
    billing_engine.cache.invalidate("acct_1", cached.version + 1)
    recomputed = await billing_engine.cache.resolve("acct_1")

    assert recomputed is not cached
    assert counters_snapshot().get("entitlement_cache_miss_total") == 2


@pytest.mark.asyncio
async def test_ttl_expiry_recomputes(billing_engine, clock) -> None:
    await _deliver(billing_engine, clock, checkout_event("acct_1", "starter", created=clock()))
    cached = await billing_engine.cache.resolve("acct_1")

    clock.advance(seconds=billing_engine.settings.entitlement_cache_ttl_s + 1)

    assert await billing_engine.cache.resolve("acct_1") is not cached


@pytest.mark.asyncio
async def test_tier_grace_override_wins_over_default(session_factory) -> None:
    catalog = load_tier_catalog(
        Settings(
            tier_catalog_json=json.dumps(
                {
                    "tiers": [
                        {"tier_id": "basic", "rank": 1},
                        {"tier_id": "plus", "rank": 2, "past_due_grace_hours": 24},
                    ]
                }
            )
        )
    )
    seen: list[tuple[str, int | None]] = []
    cache = EntitlementCache(
        session_factory,
        catalog,
        UsageLedger(session_factory),
        ttl_s=60,
        grace_hours=12,
        on_invalidate=lambda account_id, generation: seen.append((account_id, generation)),
    )

    assert cache.grace_hours_for("basic") == 12
    assert cache.grace_hours_for("plus") == 24
    assert cache.grace_hours_for(None) == 12
    cache.invalidate("acct_1", 4)
    assert seen == [("acct_1", 4)]
