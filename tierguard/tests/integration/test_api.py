from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from tierguard.apps.api.main import create_app
from tierguard.services.catalog import FEATURE_CUSTOMERS_INVITE, FEATURE_EXPORT_EXCEL, QUOTA_AI_GENERATIONS
from tierguard.services.job_handlers import AI_DEPENDENCY, NOTIFICATION_JOB
from tierguard.tests.utils.events import checkout_event, signed, subscription_deleted_event


@pytest.fixture
async def client(billing_engine):
    app = create_app(engine=billing_engine)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _post_webhook(client, engine, clock, payload):
    body, header = signed(payload, engine.settings.webhook_secret, clock())
    return await client.post(
        "/webhooks/payments",
        content=body,
        headers={engine.settings.webhook_signature_header: header, "Content-Type": "application/json"},
    )


async def _subscribe(client, engine, clock, tier_id: str = "starter") -> None:
    t0 = clock()
    response = await _post_webhook(
        client,
        engine,
        clock,
        checkout_event("acct_1", tier_id, created=t0, period_start=t0, period_end=t0 + timedelta(days=30)),
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_health_is_enveloped(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_webhook_accepts_then_reports_duplicate(client, billing_engine, clock) -> None:
    payload = checkout_event("acct_1", "starter", created=clock(), event_id="evt_api_1")

    first = await _post_webhook(client, billing_engine, clock, payload)
    second = await _post_webhook(client, billing_engine, clock, payload)

    assert first.status_code == 200
    assert first.json() == {"status": "accepted", "event_id": "evt_api_1"}
    assert second.status_code == 200
    assert second.json() == {"status": "duplicate", "event_id": "evt_api_1"}


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected(client, billing_engine, clock) -> None:
    body, header = signed(checkout_event("acct_1", "starter", created=clock()), "wrong_secret", clock())

    response = await client.post(
        "/webhooks/payments",
        content=body,
        headers={billing_engine.settings.webhook_signature_header: header},
    )

    assert response.status_code == 400
    assert response.json() == {"status": "rejected", "reason": "invalid_signature"}


@pytest.mark.asyncio
async def test_authorize_returns_decisions_in_envelope(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock)

    allowed = await client.post(
        "/v1/authorize", json={"account_id": "acct_1", "capability": FEATURE_CUSTOMERS_INVITE}
    )
    locked = await client.post("/v1/authorize", json={"account_id": "acct_1", "capability": FEATURE_EXPORT_EXCEL})

    assert allowed.status_code == 200
    assert allowed.json()["data"] == {
        "allowed": True,
        "reason": None,
        "upgrade_tier": None,
        "quota_name": "customers",
        "usage": 1,
        "limit": 9,
    }
    assert locked.status_code == 200
    assert locked.json()["data"]["allowed"] is False
    assert locked.json()["data"]["reason"] == "feature_locked"
    assert locked.json()["data"]["upgrade_tier"] == "enterprise"


@pytest.mark.asyncio
async def test_authorize_validates_input(client) -> None:
    response = await client.post("/v1/authorize", json={"account_id": "acct_1", "capability": "x", "amount": 0})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_entitlement_and_history_views(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock)
    await client.post("/v1/authorize", json={"account_id": "acct_1", "capability": FEATURE_CUSTOMERS_INVITE})

    entitlement = (await client.get("/v1/entitlements/acct_1")).json()["data"]
    usage = (await client.get("/v1/accounts/acct_1/usage", params={"quota_name": "customers"})).json()["data"]
    payments = (await client.get("/v1/accounts/acct_1/payments")).json()["data"]

    assert entitlement["tier_id"] == "starter"
    assert entitlement["status"] == "active"
    assert entitlement["active"] is True
    assert entitlement["usage"] == {"ai_generations": 0, "customers": 1, "meal_plans": 0, "recipes": 0}
    assert [item["count"] for item in usage["items"]] == [1]
    assert [item["event_type"] for item in payments["items"]] == ["purchase"]


@pytest.mark.asyncio
async def test_ai_generation_over_quota_suggests_upgrade(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock)
    await billing_engine.ledger.increment("acct_1", QUOTA_AI_GENERATIONS, limit=None, by=100)

    response = await client.post("/v1/ai/generations", json={"account_id": "acct_1", "prompt": "high protein"})

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["upgrade_tier"] == "professional"
    assert error["details"]["limit"] == 100


@pytest.mark.asyncio
async def test_ai_generation_for_lapsed_account_asks_for_reactivation(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock)
    await _post_webhook(
        client, billing_engine, clock, subscription_deleted_event(created=clock() + timedelta(minutes=1))
    )
    clock.advance(minutes=2)

    response = await client.post("/v1/ai/generations", json={"account_id": "acct_1", "prompt": "high protein"})

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "SUBSCRIPTION_INACTIVE"
    assert error["details"]["reason"] == "subscription_inactive"


@pytest.mark.asyncio
async def test_ai_generation_refunds_unit_when_breaker_open(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock, tier_id="professional")
    breaker = billing_engine.jobs.breaker(AI_DEPENDENCY)
    for _ in range(billing_engine.settings.cb_failure_threshold):
        await breaker.record_failure()

    response = await client.post("/v1/ai/generations", json={"account_id": "acct_1", "prompt": "high protein"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "TEMPORARILY_UNAVAILABLE"
    assert (await billing_engine.ledger.current_usage("acct_1"))["ai_generations"] == 0


@pytest.mark.asyncio
async def test_submit_job_accepts_and_rejects_unknown_type(client, billing_engine) -> None:
    accepted = await client.post(
        "/v1/jobs", json={"job_type": NOTIFICATION_JOB, "payload": {"template": "t", "account_id": "acct_1"}}
    )
    unknown = await client.post("/v1/jobs", json={"job_type": "nope", "payload": {}})
    await billing_engine.jobs.join()

    assert accepted.status_code == 202
    assert accepted.json()["data"]["job_type"] == NOTIFICATION_JOB
    assert accepted.json()["meta"]["api_version"] == "v1"
    assert unknown.status_code == 400
    assert unknown.json()["error"]["code"] == "UNKNOWN_JOB_TYPE"


@pytest.mark.asyncio
async def test_ops_views_report_breakers_and_replay(client, billing_engine, clock) -> None:
    await _subscribe(client, billing_engine, clock)

    breakers = (await client.get("/v1/ops/circuit-breakers")).json()["data"]["items"]
    missing = await client.post("/v1/ops/events/evt_missing/replay")
    metrics = (await client.get("/v1/ops/metrics")).json()["data"]

    assert {item["name"] for item in breakers} == {"notifications", "ai_provider"}
    assert all(item["state"] == "closed" for item in breakers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "EVENT_NOT_FOUND"
    assert metrics["counters"]["webhook_accepted_total"] == 1
    assert metrics["jobs"]["mode"] == "inline"


@pytest.mark.asyncio
async def test_missing_engine_is_unavailable() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/v1/authorize", json={"account_id": "acct_1", "capability": "x"})

    assert response.status_code == 503
    assert response.json()["error"]["code"] == "TEMPORARILY_UNAVAILABLE"
