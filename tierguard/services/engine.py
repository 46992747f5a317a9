from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import Settings, get_settings
from tierguard.services.catalog import TierCatalog, load_tier_catalog
from tierguard.services.entitlements import EntitlementCache
from tierguard.services.gate import TierEnforcementGate
from tierguard.services.ingestor import EventIngestor
from tierguard.services.job_handlers import register_builtin_jobs
from tierguard.services.jobs import JobQueue
from tierguard.services.resilience import CircuitBreakerConfig, RetryPolicy, get_resilience_redis
from tierguard.services.subscriptions import SubscriptionStateMachine
from tierguard.services.usage_ledger import UsageLedger


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class BillingEngine:
    # One wired set of components per process; the API keeps it on app.state.
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    catalog: TierCatalog
    ledger: UsageLedger
    cache: EntitlementCache
    gate: TierEnforcementGate
    jobs: JobQueue
    state_machine: SubscriptionStateMachine
    ingestor: EventIngestor

    async def start(self) -> None:
        await self.jobs.start()

    async def shutdown(self) -> None:
        await self.jobs.shutdown()


async def build_engine(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    settings: Settings | None = None,
    catalog: TierCatalog | None = None,
    clock: Callable[[], datetime] | None = None,
    job_transport: httpx.AsyncBaseTransport | None = None,
    register_jobs: bool = True,
) -> BillingEngine:
    """Wire the engine's components around one session factory and one clock."""
    settings = settings or get_settings()
    if session_factory is None:
        from tierguard.persistence.db import SessionLocal

        session_factory = SessionLocal
    clock = clock or _utc_now
    catalog = catalog or load_tier_catalog(settings)

    redis = await get_resilience_redis() if settings.cb_shared_state else None
    storage_retry = RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.storage_retry_max_attempts,
        backoff_ms=settings.storage_retry_backoff_ms,
    )
    ledger = UsageLedger(session_factory, time_source=clock)
    cache = EntitlementCache(
        session_factory,
        catalog,
        ledger,
        ttl_s=settings.entitlement_cache_ttl_s,
        grace_hours=settings.past_due_grace_hours,
        time_source=clock,
    )
    gate = TierEnforcementGate(cache, ledger, catalog, time_source=clock)
    jobs = JobQueue(
        session_factory,
        mode=settings.job_execution_mode,
        workers=settings.job_workers,
        max_attempts=settings.job_max_attempts,
        backoff_ms=settings.job_backoff_ms,
        backoff_max_ms=settings.job_backoff_max_ms,
        redis=redis,
        breaker_config=CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            failure_window_s=settings.cb_failure_window_s,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        ),
        time_source=lambda: clock().timestamp(),
    )
    if register_jobs:
        register_builtin_jobs(jobs, ledger, settings, transport=job_transport)
    state_machine = SubscriptionStateMachine(
        session_factory,
        catalog,
        ledger,
        cache,
        jobs=jobs,
        trial_period_days=settings.trial_period_days,
        retry_policy=storage_retry,
        time_source=clock,
    )
    ingestor = EventIngestor(
        session_factory,
        state_machine,
        secret=settings.webhook_secret,
        tolerance_s=settings.webhook_tolerance_s,
        retry_policy=storage_retry,
        time_source=clock,
    )
    logger.info(
        "billing_engine_built tiers=%s job_mode=%s shared_breakers=%s",
        ",".join(tier.tier_id for tier in catalog.tiers()),
        jobs.mode,
        redis is not None,
    )
    return BillingEngine(
        settings=settings,
        session_factory=session_factory,
        catalog=catalog,
        ledger=ledger,
        cache=cache,
        gate=gate,
        jobs=jobs,
        state_machine=state_machine,
        ingestor=ingestor,
    )
