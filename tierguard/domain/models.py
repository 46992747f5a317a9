from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    # Normalize timestamps to aware UTC so comparisons behave the same on Postgres and SQLite.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# Use JSONB on Postgres and plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


SUBSCRIPTION_STATUSES = ("trial", "active", "past_due", "unpaid", "canceled")


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # The highest generation row is the account's current subscription.
        UniqueConstraint("account_id", "generation", name="uq_subscriptions_account_generation"),
        Index("ix_subscriptions_provider_subscription_id", "provider_subscription_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    tier_id: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Monotonic ordering guard; events at or before this instant are no-ops.
    last_applied_event_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # Bumped on every mutation so cached entitlements can detect staleness.
    generation: Mapped[int] = mapped_column(BigInteger, default=1, nullable=False)
    # Track when the status last changed to evaluate past-due grace windows.
    status_changed_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    provider_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


WEBHOOK_EVENT_STATUSES = (
    "received",
    "applied",
    "stale",
    "ignored",
    "invalid_transition",
    "deferred",
    "failed",
)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (
        # Reconciliation scans unprocessed events in causal order.
        Index("ix_webhook_events_pending", "processed_at", "occurred_at"),
        Index("ix_webhook_events_account_pending", "account_id", "processed_at"),
        Index("ix_webhook_events_subscription_pending", "provider_subscription_id", "processed_at"),
    )

    # Provider-assigned id doubles as the idempotency marker.
    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    event_type: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Lets events that arrive before their checkout be matched once the subscription exists.
    provider_subscription_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="received", nullable=False)
    # Null until the state machine reaches a terminal outcome for the event.
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    apply_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        # Exactly one open counter per account and quota.
        Index(
            "uq_usage_counters_open",
            "account_id",
            "quota_name",
            unique=True,
            postgresql_where=text("closed_at IS NULL"),
            sqlite_where=text("closed_at IS NULL"),
        ),
    )

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    quota_name: Mapped[str] = mapped_column(String, primary_key=True)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime, primary_key=True)
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Closed rows are the immutable audit trail of previous periods.
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, onupdate=_utc_now)


class PaymentLog(Base):
    __tablename__ = "payment_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    # purchase, renewal, failed, upgrade, downgrade, canceled.
    event_type: Mapped[str] = mapped_column(String)
    # Minor currency units as reported by the provider; no conversion happens here.
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)


class JobDeadLetter(Base):
    __tablename__ = "job_dead_letters"

    # Persist exhausted jobs so operators can inspect and replay them.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    job_id: Mapped[str] = mapped_column(String, index=True)
    job_type: Mapped[str] = mapped_column(String)
    dependency: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    attempts: Mapped[int] = mapped_column(Integer)
    reason: Mapped[str] = mapped_column(String)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
