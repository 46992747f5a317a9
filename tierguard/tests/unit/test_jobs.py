from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tierguard.persistence.repos import audit as audit_repo
from tierguard.services.catalog import QUOTA_AI_GENERATIONS
from tierguard.services.engine import build_engine
from tierguard.services.job_handlers import AI_DEPENDENCY, AI_GENERATION_JOB, NOTIFICATION_JOB
from tierguard.services.jobs import JobQueue
from tierguard.services.resilience import CircuitBreakerConfig
from tierguard.services.signatures import build_signature
from tierguard.services.telemetry import counters_snapshot
from tierguard.tests.utils.events import checkout_event, signed


class _Provider:
    # Records calls and answers with a fixed status.
    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})


@pytest.fixture
def provider() -> _Provider:
    return _Provider()


@pytest.fixture
async def wired_engine(session_factory, settings, clock, provider):
    settings = settings.model_copy(
        update={
            "ai_provider_url": "https://ai.test/generate",
            "notify_webhook_url": "https://notify.test/hooks",
            "notify_webhook_secret": "notify_secret",
        }
    )
    engine = await build_engine(
        session_factory, settings=settings, clock=clock, job_transport=httpx.MockTransport(provider)
    )
    await engine.start()
    yield engine
    await engine.shutdown()


async def _dead_letters(session_factory):
    async with session_factory() as session:
        return await audit_repo.list_dead_letters(session, limit=10)


def _queue(session_factory, **overrides) -> JobQueue:
    options = {
        "mode": "inline",
        "workers": 1,
        "max_attempts": 3,
        "backoff_ms": 1,
        "backoff_max_ms": 5,
        "breaker_config": CircuitBreakerConfig(
            failure_threshold=5, failure_window_s=60, open_seconds=30, half_open_trials=1
        ),
    }
    options.update(overrides)
    return JobQueue(session_factory, **options)


@pytest.mark.asyncio
async def test_ai_generation_job_calls_provider(wired_engine, provider) -> None:
    submitted = await wired_engine.jobs.submit(AI_GENERATION_JOB, {"account_id": "acct_1", "prompt": "keto week"})
    await wired_engine.jobs.join()

    assert submitted.accepted
    assert len(provider.requests) == 1
    assert json.loads(provider.requests[0].content)["prompt"] == "keto week"
    assert counters_snapshot().get(f"jobs_succeeded_total.{AI_GENERATION_JOB}") == 1


@pytest.mark.asyncio
async def test_failing_job_retries_then_dead_letters_and_refunds(wired_engine, provider, session_factory) -> None:
    provider.status_code = 503
    await wired_engine.ledger.increment("acct_1", QUOTA_AI_GENERATIONS, limit=None)

    await wired_engine.jobs.submit(AI_GENERATION_JOB, {"account_id": "acct_1", "prompt": "vegan"})
    await wired_engine.jobs.join()

    assert len(provider.requests) == 3
    rows = await _dead_letters(session_factory)
    assert [(row.job_type, row.dependency, row.attempts, row.reason) for row in rows] == [
        (AI_GENERATION_JOB, AI_DEPENDENCY, 3, "max_attempts")
    ]
    assert rows[0].payload_json["prompt"] == "vegan"
    assert await wired_engine.ledger.current_usage("acct_1") == {QUOTA_AI_GENERATIONS: 0}
    # Three failures stay under the breaker threshold.
    assert not await wired_engine.jobs.breaker(AI_DEPENDENCY).is_open()


@pytest.mark.asyncio
async def test_open_breaker_refuses_submission(wired_engine, provider) -> None:
    breaker = wired_engine.jobs.breaker(AI_DEPENDENCY)
    for _ in range(wired_engine.settings.cb_failure_threshold):
        await breaker.record_failure()

    result = await wired_engine.jobs.submit(AI_GENERATION_JOB, {"account_id": "acct_1", "prompt": "x"})

    assert result.status == "circuit_open"
    assert result.job_id is None
    assert provider.requests == []


@pytest.mark.asyncio
async def test_breaker_recovers_after_cooldown(wired_engine, provider, clock) -> None:
    breaker = wired_engine.jobs.breaker(AI_DEPENDENCY)
    for _ in range(wired_engine.settings.cb_failure_threshold):
        await breaker.record_failure()

    clock.advance(seconds=wired_engine.settings.cb_open_seconds)
    for _ in range(wired_engine.settings.cb_half_open_trials):
        result = await wired_engine.jobs.submit(AI_GENERATION_JOB, {"account_id": "acct_1", "prompt": "x"})
        assert result.accepted
        await wired_engine.jobs.join()

    assert (await breaker.snapshot())["state"] == "closed"


@pytest.mark.asyncio
async def test_lifecycle_notification_is_signed(wired_engine, provider, clock) -> None:
    body, header = signed(
        checkout_event("acct_1", "starter", created=clock()), wired_engine.settings.webhook_secret, clock()
    )
    await wired_engine.ingestor.ingest(body, header)
    await wired_engine.jobs.join()

    assert len(provider.requests) == 1
    request = provider.requests[0]
    assert request.headers["X-Notification-Template"] == "subscription.started"
    assert request.headers["X-Signature"] == build_signature("notify_secret", request.content)


@pytest.mark.asyncio
async def test_unknown_job_type_is_rejected(session_factory) -> None:
    queue = _queue(session_factory)

    result = await queue.submit("does.not.exist", {})

    assert result.status == "rejected"
    assert result.reason == "unknown_job_type"


@pytest.mark.asyncio
async def test_shutdown_dead_letters_pending_retries(session_factory) -> None:
    failed_once = asyncio.Event()
    dead: list[tuple[str, str]] = []

    async def handler(payload: dict) -> None:
        failed_once.set()
        raise RuntimeError("provider down")

    async def on_dead_letter(job, reason: str) -> None:
        dead.append((job.job_type, reason))

    queue = _queue(session_factory, backoff_ms=60_000, backoff_max_ms=60_000, on_dead_letter=on_dead_letter)
    queue.register(NOTIFICATION_JOB, handler, dependency="notifications")
    await queue.submit(NOTIFICATION_JOB, {"template": "t", "account_id": "acct_1"})
    await failed_once.wait()
    while (await queue.stats())["pending_retries"] == 0:
        await asyncio.sleep(0.01)

    await queue.shutdown(timeout=1)

    assert dead == [(NOTIFICATION_JOB, "shutdown")]
    rows = await _dead_letters(session_factory)
    assert [(row.reason, row.attempts) for row in rows] == [("shutdown", 1)]
    assert (await queue.submit(NOTIFICATION_JOB, {})).reason == "shutting_down"


@pytest.mark.asyncio
async def test_dead_letter_callback_failure_does_not_break_queue(session_factory) -> None:
    async def handler(payload: dict) -> None:
        raise RuntimeError("boom")

    async def broken_callback(job, reason: str) -> None:
        raise RuntimeError("callback failed")

    queue = _queue(session_factory, max_attempts=1)
    queue.register("flaky.job", handler, dependency="flaky", on_dead_letter=broken_callback)
    await queue.submit("flaky.job", {"n": 1})
    await queue.join()
    await queue.submit("flaky.job", {"n": 2})
    await queue.join()
    await queue.shutdown()

    assert len(await _dead_letters(session_factory)) == 2
