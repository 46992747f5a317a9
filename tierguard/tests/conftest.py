from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tierguard.core.config import Settings, get_settings
from tierguard.domain.models import Base
from tierguard.services.engine import build_engine
from tierguard.services.telemetry import reset_telemetry


class FakeClock:
    # Mutable UTC clock shared by every component under test.
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Counters and cached settings are process globals; keep tests isolated.
    reset_telemetry()
    get_settings.cache_clear()
    yield
    reset_telemetry()
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # A file database gives every session its own connection, so concurrent
    # transactions behave like they do on Postgres instead of sharing one handle.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'tierguard.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, _record) -> None:
        # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs work on SQLite.
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn) -> None:
        # Take the write lock up front so concurrent writers queue instead of deadlocking.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        webhook_secret="whsec_test",
        trial_period_days=0,
        past_due_grace_hours=72,
        storage_retry_max_attempts=2,
        storage_retry_backoff_ms=1,
        job_execution_mode="inline",
        job_workers=2,
        job_max_attempts=3,
        job_backoff_ms=1,
        job_backoff_max_ms=5,
        cb_failure_threshold=5,
        cb_failure_window_s=60,
        cb_open_seconds=30,
        cb_half_open_trials=2,
        cb_shared_state=False,
        notify_webhook_url=None,
        ai_provider_url=None,
    )


@pytest.fixture
async def billing_engine(session_factory, settings, clock):
    engine = await build_engine(session_factory, settings=settings, clock=clock)
    await engine.start()
    yield engine
    await engine.shutdown()
