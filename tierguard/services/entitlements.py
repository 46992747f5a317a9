from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import asyncio
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import get_settings
from tierguard.domain.models import Subscription
from tierguard.persistence.repos import subscriptions as subscriptions_repo
from tierguard.services.catalog import TierCatalog
from tierguard.services.telemetry import increment_counter
from tierguard.services.usage_ledger import UsageLedger


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Entitlement:
    # Derived view of what an account may do; never persisted.
    account_id: str
    tier_id: str | None
    status: str | None
    features: frozenset[str]
    limits: dict[str, int | None]
    usage: dict[str, int]
    version: int
    computed_at: datetime
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    # Instant after which access lapses; None while the subscription is in good standing.
    access_until: datetime | None = None

    def is_active(self, at: datetime) -> bool:
        if self.status in ("trial", "active"):
            return True
        if self.status in ("past_due", "canceled"):
            # Access runs through the access_until instant itself.
            return self.access_until is not None and at <= self.access_until
        return False

    def limit_for(self, quota_name: str) -> int | None:
        # Quotas missing from the tier are closed rather than unlimited.
        if quota_name not in self.limits:
            return 0
        return self.limits[quota_name]

    def as_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "tier_id": self.tier_id,
            "status": self.status,
            "features": sorted(self.features),
            "limits": dict(self.limits),
            "usage": dict(self.usage),
            "version": self.version,
            "current_period_start": self.current_period_start.isoformat() if self.current_period_start else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
            "access_until": self.access_until.isoformat() if self.access_until else None,
            "computed_at": self.computed_at.isoformat(),
        }


def access_until_for(subscription: Subscription, grace_hours: int) -> datetime | None:
    # Past-due accounts keep access through the grace window; canceled ones through the paid period.
    if subscription.status == "past_due":
        return subscription.status_changed_at + timedelta(hours=grace_hours)
    if subscription.status == "canceled":
        if subscription.cancel_at_period_end and subscription.current_period_end is not None:
            return subscription.current_period_end
        return subscription.status_changed_at
    if subscription.status == "unpaid":
        return subscription.status_changed_at
    return None


class EntitlementCache:
    """Cache-aside entitlements with push invalidation.

    A cached entry is served only while its version is at least the latest
    generation pushed through ``invalidate`` and the TTL has not elapsed; the TTL
    only guards against invalidations missed by other processes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: TierCatalog,
        ledger: UsageLedger,
        *,
        ttl_s: int | None = None,
        grace_hours: int | None = None,
        time_source: Callable[[], datetime] | None = None,
        on_invalidate: Callable[[str, int | None], None] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._catalog = catalog
        self._ledger = ledger
        self._ttl = timedelta(seconds=settings.entitlement_cache_ttl_s if ttl_s is None else ttl_s)
        self._grace_hours = settings.past_due_grace_hours if grace_hours is None else grace_hours
        self._now = time_source or _utc_now
        self._on_invalidate = on_invalidate
        self._entries: dict[str, tuple[datetime, Entitlement]] = {}
        self._generations: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def resolve(self, account_id: str) -> Entitlement:
        now = self._now()
        cached = self._entries.get(account_id)
        if cached is not None:
            expires_at, entitlement = cached
            if expires_at > now and entitlement.version >= self._generations.get(account_id, 0):
                increment_counter("entitlement_cache_hit_total")
                return entitlement
        increment_counter("entitlement_cache_miss_total")
        entitlement = await self._compute(account_id, now)
        async with self._lock:
            # Keep the newer entry when a concurrent recompute finished first.
            current = self._entries.get(account_id)
            if current is None or current[1].version <= entitlement.version:
                self._entries[account_id] = (now + self._ttl, entitlement)
        return entitlement

    def invalidate(self, account_id: str, generation: int | None = None) -> None:
        # Called right after a committed mutation so the next resolve recomputes.
        self._entries.pop(account_id, None)
        if generation is not None:
            self._generations[account_id] = max(generation, self._generations.get(account_id, 0))
        logger.debug("entitlement_invalidated account_id=%s generation=%s", account_id, generation)
        if self._on_invalidate is not None:
            self._on_invalidate(account_id, generation)

    def reset(self) -> None:
        # Clear cached entitlements for deterministic tests.
        self._entries.clear()
        self._generations.clear()

    def grace_hours_for(self, tier_id: str | None) -> int:
        tier = self._catalog.get(tier_id) if tier_id else None
        if tier is not None and tier.past_due_grace_hours is not None:
            return tier.past_due_grace_hours
        return self._grace_hours

    async def _compute(self, account_id: str, now: datetime) -> Entitlement:
        async with self._session_factory() as session:
            subscription = await subscriptions_repo.get_current(session, account_id)
            if subscription is None:
                return Entitlement(
                    account_id=account_id,
                    tier_id=None,
                    status=None,
                    features=frozenset(),
                    limits={},
                    usage={},
                    version=0,
                    computed_at=now,
                )
            usage = await self._ledger.current_usage(account_id, session=session)
        tier = self._catalog.get(subscription.tier_id)
        if tier is None:
            logger.warning(
                "entitlement_unknown_tier account_id=%s tier_id=%s", account_id, subscription.tier_id
            )
        return Entitlement(
            account_id=account_id,
            tier_id=subscription.tier_id,
            status=subscription.status,
            features=tier.features if tier else frozenset(),
            limits=dict(tier.limits) if tier else {},
            usage=usage,
            version=subscription.generation,
            computed_at=now,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=subscription.cancel_at_period_end,
            access_until=access_until_for(subscription, self.grace_hours_for(subscription.tier_id)),
        )
