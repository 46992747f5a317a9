from __future__ import annotations

from datetime import timedelta

import pytest

from tierguard.domain.events import parse_provider_event
from tierguard.persistence.repos import subscriptions as subscriptions_repo
from tierguard.persistence.repos import webhook_events as events_repo
from tierguard.services.reconciliation import reconcile_pending_events, replay_event
from tierguard.tests.utils.events import checkout_event, payment_failed_event, signed


async def _record_only(engine, payload, received_at) -> str:
    # Store the marker without applying, as if the process died right after acknowledging.
    envelope = parse_provider_event(payload).envelope
    async with engine.session_factory() as session:
        assert await events_repo.insert_if_absent(
            session,
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            occurred_at=envelope.occurred_at,
            received_at=received_at,
            payload_json=payload,
            account_id=envelope.account_id,
            provider_subscription_id=envelope.provider_subscription_id,
        )
    return envelope.event_id


async def _sweep(engine, clock, **options):
    options.setdefault("limit", 50)
    options.setdefault("min_age_s", 60)
    options.setdefault("max_attempts", 3)
    return await reconcile_pending_events(
        engine.state_machine, engine.session_factory, now=clock(), **options
    )


async def _event(engine, event_id: str):
    async with engine.session_factory() as session:
        return await events_repo.get_event(session, event_id)


@pytest.mark.asyncio
async def test_sweep_applies_events_left_unprocessed(billing_engine, clock) -> None:
    t0 = clock()
    event_id = await _record_only(billing_engine, checkout_event("acct_1", "starter", created=t0), t0)

    too_soon = await _sweep(billing_engine, clock)
    clock.advance(minutes=2)
    report = await _sweep(billing_engine, clock)

    assert too_soon.scanned == 0
    assert report.as_dict() == {
        "scanned": 1,
        "applied": 1,
        "no_op": 0,
        "deferred": 0,
        "failed": 0,
        "abandoned": 0,
    }
    assert (await _event(billing_engine, event_id)).status == "applied"
    async with billing_engine.session_factory() as session:
        assert (await subscriptions_repo.get_current(session, "acct_1")).status == "active"


@pytest.mark.asyncio
async def test_sweep_is_idempotent(billing_engine, clock) -> None:
    t0 = clock()
    await _record_only(billing_engine, checkout_event("acct_1", "starter", created=t0), t0)
    clock.advance(minutes=2)

    await _sweep(billing_engine, clock)
    second = await _sweep(billing_engine, clock)

    assert second.scanned == 0


@pytest.mark.asyncio
async def test_abandoned_deferred_event_applies_when_checkout_arrives(billing_engine, clock) -> None:
    t0 = clock()
    failed_id = await _record_only(
        billing_engine, payment_failed_event(created=t0 + timedelta(hours=1), subscription_id="sub_late"), t0
    )
    clock.advance(minutes=2)

    first = await _sweep(billing_engine, clock, max_attempts=1)
    second = await _sweep(billing_engine, clock, max_attempts=1)

    assert first.deferred == 1
    assert second.abandoned == 1
    assert (await _event(billing_engine, failed_id)).status == "failed"
    assert (await _sweep(billing_engine, clock, max_attempts=1)).scanned == 0

    # The checkout shows up long after the sweep gave up on the event.
    body, header = signed(
        checkout_event("acct_1", "starter", created=t0, subscription_id="sub_late"),
        billing_engine.settings.webhook_secret,
        clock(),
    )
    await billing_engine.ingestor.ingest(body, header)

    row = await _event(billing_engine, failed_id)
    assert row.status == "applied"
    assert row.account_id == "acct_1"
    async with billing_engine.session_factory() as session:
        assert (await subscriptions_repo.get_current(session, "acct_1")).status == "past_due"


@pytest.mark.asyncio
async def test_replay_reopens_abandoned_event(billing_engine, clock) -> None:
    t0 = clock()
    event_id = await _record_only(billing_engine, checkout_event("acct_1", "starter", created=t0), t0)
    async with billing_engine.session_factory() as session:
        async with session.begin():
            await events_repo.mark_failed(session, event_id, error="storage unavailable")

    clock.advance(minutes=2)
    assert (await _sweep(billing_engine, clock)).scanned == 0
    outcome = await replay_event(billing_engine.state_machine, billing_engine.session_factory, event_id)

    assert outcome.status == "applied"
    assert outcome.replayed is False
    assert outcome.account_id == "acct_1"
    async with billing_engine.session_factory() as session:
        assert (await subscriptions_repo.get_current(session, "acct_1")).status == "active"


@pytest.mark.asyncio
async def test_replay_of_processed_event_reports_recorded_outcome(billing_engine, clock) -> None:
    payload = checkout_event("acct_1", "starter", created=clock(), event_id="evt_done")
    body, header = signed(payload, billing_engine.settings.webhook_secret, clock())
    await billing_engine.ingestor.ingest(body, header)

    outcome = await replay_event(billing_engine.state_machine, billing_engine.session_factory, "evt_done")
    missing = await replay_event(billing_engine.state_machine, billing_engine.session_factory, "evt_missing")

    assert outcome.status == "applied"
    assert outcome.replayed is True
    assert missing.status == "not_found"
