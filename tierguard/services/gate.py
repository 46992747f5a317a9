from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Union

from tierguard.services.catalog import TierCatalog
from tierguard.services.entitlements import EntitlementCache
from tierguard.services.telemetry import increment_counter
from tierguard.services.usage_ledger import UsageLedger


logger = logging.getLogger(__name__)

REASON_SUBSCRIPTION_INACTIVE = "subscription_inactive"
REASON_FEATURE_LOCKED = "feature_locked"
REASON_QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class Allowed:
    account_id: str
    capability: str
    quota_name: str | None = None
    usage: int | None = None
    limit: int | None = None

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    account_id: str
    capability: str
    reason: str
    # Lowest ranked tier that would allow the capability, for upgrade prompts.
    upgrade_tier: str | None = None
    quota_name: str | None = None
    usage: int | None = None
    limit: int | None = None

    @property
    def allowed(self) -> bool:
        return False


AuthorizationResult = Union[Allowed, Denied]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TierEnforcementGate:
    """The single authorization entry point for request handlers.

    Reads entitlements through the cache and consumes quota through the ledger;
    it never queries the subscription store itself.
    """

    def __init__(
        self,
        cache: EntitlementCache,
        ledger: UsageLedger,
        catalog: TierCatalog,
        *,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._cache = cache
        self._ledger = ledger
        self._catalog = catalog
        self._now = time_source or _utc_now

    def now(self) -> datetime:
        return self._now()

    async def authorize(self, account_id: str, capability: str, *, amount: int = 1) -> AuthorizationResult:
        entitlement = await self._cache.resolve(account_id)
        if not entitlement.is_active(self._now()):
            return self._deny(account_id, capability, REASON_SUBSCRIPTION_INACTIVE)
        if capability not in entitlement.features:
            return self._deny(
                account_id,
                capability,
                REASON_FEATURE_LOCKED,
                upgrade_tier=self._catalog.upgrade_for(capability, entitlement.tier_id),
            )

        quota_name = self._catalog.quota_for(capability)
        if quota_name is None:
            increment_counter("gate_allowed_total")
            return Allowed(account_id=account_id, capability=capability)

        limit = entitlement.limit_for(quota_name)
        period = None
        if entitlement.current_period_start is not None:
            period = (entitlement.current_period_start, entitlement.current_period_end)
        result = await self._ledger.increment(
            account_id, quota_name, limit=limit, by=amount, period=period
        )
        if not result.ok:
            return self._deny(
                account_id,
                capability,
                REASON_QUOTA_EXCEEDED,
                upgrade_tier=self._catalog.upgrade_for(capability, entitlement.tier_id),
                quota_name=quota_name,
                usage=result.count,
                limit=limit,
            )
        increment_counter("gate_allowed_total")
        return Allowed(
            account_id=account_id,
            capability=capability,
            quota_name=quota_name,
            usage=result.count,
            limit=limit,
        )

    def _deny(
        self,
        account_id: str,
        capability: str,
        reason: str,
        *,
        upgrade_tier: str | None = None,
        quota_name: str | None = None,
        usage: int | None = None,
        limit: int | None = None,
    ) -> Denied:
        increment_counter(f"gate_denied_total.{reason}")
        logger.info(
            "gate_denied account_id=%s capability=%s reason=%s upgrade_tier=%s",
            account_id,
            capability,
            reason,
            upgrade_tier,
        )
        return Denied(
            account_id=account_id,
            capability=capability,
            reason=reason,
            upgrade_tier=upgrade_tier,
            quota_name=quota_name,
            usage=usage,
            limit=limit,
        )
