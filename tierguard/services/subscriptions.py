from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import get_settings
from tierguard.core.errors import InvalidTransitionError, MalformedEventError, StorageFailureError
from tierguard.domain.events import (
    CHECKOUT_COMPLETED,
    CheckoutCompleted,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    PaymentRetriesExhausted,
    ProviderEvent,
    SubscriptionCanceled,
    SubscriptionUpdated,
    TrialWillEnd,
    UnknownEvent,
    parse_provider_event,
)
from tierguard.domain.models import Subscription, WebhookEvent
from tierguard.persistence.repos import audit as audit_repo
from tierguard.persistence.repos import subscriptions as subscriptions_repo
from tierguard.persistence.repos import webhook_events as events_repo
from tierguard.services.catalog import TierCatalog
from tierguard.services.entitlements import EntitlementCache
from tierguard.services.job_handlers import NOTIFICATION_JOB
from tierguard.services.resilience import RetryPolicy, is_transient_storage_error, retry_async, storage_retry_policy
from tierguard.services.telemetry import increment_counter
from tierguard.services.usage_ledger import UsageLedger

if TYPE_CHECKING:
    from tierguard.services.jobs import JobQueue


logger = logging.getLogger(__name__)

OUTCOME_APPLIED = "applied"
OUTCOME_STALE = "stale"
OUTCOME_IGNORED = "ignored"
OUTCOME_INVALID_TRANSITION = "invalid_transition"
OUTCOME_DEFERRED = "deferred"
OUTCOME_FAILED = "failed"
OUTCOME_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class ApplyOutcome:
    event_id: str
    status: str
    account_id: str | None = None
    event_type: str | None = None
    generation: int | None = None
    # True when the event had already reached a terminal outcome before this call.
    replayed: bool = False
    detail: str | None = None


@dataclass
class _Effects:
    subscription: Subscription
    notifications: list[dict[str, Any]] = field(default_factory=list)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SubscriptionStateMachine:
    """Applies stored provider events to the account's subscription.

    An event is applied only when it is newer than the subscription's
    ``last_applied_event_at``; anything else is recorded as a no-op, which makes
    out-of-order and replayed deliveries converge on the latest state.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: TierCatalog,
        ledger: UsageLedger,
        cache: EntitlementCache,
        *,
        jobs: JobQueue | None = None,
        trial_period_days: int | None = None,
        retry_policy: RetryPolicy | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._ledger = ledger
        self._cache = cache
        self._jobs = jobs
        self._trial_period_days = (
            get_settings().trial_period_days if trial_period_days is None else trial_period_days
        )
        self._retry_policy = retry_policy or storage_retry_policy()
        self._now = time_source or _utc_now

    def attach_jobs(self, jobs: JobQueue) -> None:
        self._jobs = jobs

    async def apply(self, event_id: str) -> ApplyOutcome:
        """Apply one stored event in its own transaction.

        Raises ``StorageFailureError`` when storage keeps failing; the event stays
        unprocessed so reconciliation can pick it up later.
        """
        try:
            outcome, notifications = await retry_async(
                lambda: self._apply_once(event_id),
                policy=self._retry_policy,
                retryable=is_transient_storage_error,
            )
        except (SQLAlchemyError, TimeoutError, OSError) as exc:
            await self._record_failure(event_id, exc)
            raise StorageFailureError(f"could not apply event {event_id}") from exc

        increment_counter(f"events_{outcome.status}_total")
        if outcome.status == OUTCOME_APPLIED and outcome.account_id is not None:
            self._cache.invalidate(outcome.account_id, outcome.generation)
            logger.info(
                "subscription_event_applied event_id=%s type=%s account_id=%s generation=%s",
                event_id,
                outcome.event_type,
                outcome.account_id,
                outcome.generation,
            )
        await self._submit_notifications(notifications)
        if (
            outcome.status == OUTCOME_APPLIED
            and outcome.event_type == CHECKOUT_COMPLETED
            and outcome.account_id is not None
        ):
            await self.redrive_deferred(outcome.account_id)
        return outcome

    async def redrive_deferred(self, account_id: str) -> list[ApplyOutcome]:
        # Events that arrived before the checkout can apply now that a subscription exists.
        async with self._session_factory() as session:
            subscription = await subscriptions_repo.get_current(session, account_id)
            event_ids = await events_repo.list_deferred_for_account(
                session,
                account_id,
                subscription.provider_subscription_id if subscription is not None else None,
            )
        outcomes: list[ApplyOutcome] = []
        for deferred_id in event_ids:
            try:
                outcomes.append(await self.apply(deferred_id))
            except StorageFailureError:
                logger.warning("deferred_redrive_interrupted account_id=%s event_id=%s", account_id, deferred_id)
                break
        return outcomes

    async def _record_failure(self, event_id: str, exc: Exception) -> None:
        logger.error("subscription_event_apply_failed event_id=%s", event_id, exc_info=exc)
        increment_counter("events_apply_failed_total")
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await events_repo.record_apply_failure(session, event_id, error=repr(exc))
        except SQLAlchemyError:
            logger.exception("subscription_event_failure_not_recorded event_id=%s", event_id)

    async def _submit_notifications(self, notifications: list[dict[str, Any]]) -> None:
        # Notifications are fire-and-forget; a refused submission never undoes the mutation.
        if not notifications or self._jobs is None:
            return
        for payload in notifications:
            result = await self._jobs.submit(NOTIFICATION_JOB, payload)
            if not result.accepted:
                logger.warning(
                    "notification_not_queued template=%s account_id=%s status=%s",
                    payload.get("template"),
                    payload.get("account_id"),
                    result.status,
                )

    async def _apply_once(self, event_id: str) -> tuple[ApplyOutcome, list[dict[str, Any]]]:
        async with self._session_factory() as session:
            async with session.begin():
                row = await events_repo.get_event(session, event_id, for_update=True)
                if row is None:
                    return ApplyOutcome(event_id=event_id, status=OUTCOME_NOT_FOUND), []
                if row.processed_at is not None:
                    return (
                        ApplyOutcome(
                            event_id=event_id,
                            status=row.status,
                            account_id=row.account_id,
                            event_type=row.event_type,
                            replayed=True,
                        ),
                        [],
                    )
                try:
                    event = parse_provider_event(row.payload_json)
                except MalformedEventError as exc:
                    row.status = OUTCOME_FAILED
                    row.last_error = str(exc)
                    logger.error("subscription_event_unparseable event_id=%s error=%s", event_id, exc)
                    return ApplyOutcome(event_id=event_id, status=OUTCOME_FAILED, detail=str(exc)), []
                return await self._apply_event(session, row, event)

    async def _apply_event(
        self, session: AsyncSession, row: WebhookEvent, event: ProviderEvent
    ) -> tuple[ApplyOutcome, list[dict[str, Any]]]:
        envelope = event.envelope
        account_id = await self._resolve_account(session, row, event)

        def outcome(status: str, **extra: Any) -> ApplyOutcome:
            return ApplyOutcome(
                event_id=envelope.event_id,
                status=status,
                account_id=account_id,
                event_type=envelope.event_type,
                **extra,
            )

        if isinstance(event, UnknownEvent):
            self._finish(row, OUTCOME_IGNORED)
            return outcome(OUTCOME_IGNORED), []
        if isinstance(event, TrialWillEnd):
            notifications = []
            if account_id is not None:
                notifications.append(
                    self._notification("trial.will_end", account_id, event, {"trial_end": _iso(event.trial_end)})
                )
            self._finish(row, OUTCOME_IGNORED)
            return outcome(OUTCOME_IGNORED), notifications
        if account_id is None and isinstance(event, CheckoutCompleted):
            # Without an account the checkout can never be applied; park it for operators.
            row.status = OUTCOME_FAILED
            row.last_error = "checkout event has no account_id"
            logger.error("checkout_without_account event_id=%s", envelope.event_id)
            return outcome(OUTCOME_FAILED, detail=row.last_error), []

        subscription = None
        if account_id is not None:
            subscription = await subscriptions_repo.get_current(session, account_id, for_update=True)
        if subscription is None and not isinstance(event, CheckoutCompleted):
            row.status = OUTCOME_DEFERRED
            row.apply_attempts = (row.apply_attempts or 0) + 1
            row.last_error = events_repo.AWAITING_SUBSCRIPTION
            logger.info(
                "subscription_event_deferred event_id=%s type=%s account_id=%s",
                envelope.event_id,
                envelope.event_type,
                account_id,
            )
            return outcome(OUTCOME_DEFERRED), []

        if subscription is not None and envelope.occurred_at <= subscription.last_applied_event_at:
            self._finish(row, OUTCOME_STALE)
            logger.info(
                "subscription_event_stale event_id=%s occurred_at=%s last_applied=%s",
                envelope.event_id,
                envelope.occurred_at.isoformat(),
                subscription.last_applied_event_at.isoformat(),
            )
            return outcome(OUTCOME_STALE), []

        try:
            effects = await self._dispatch(session, event, subscription, account_id)
        except InvalidTransitionError as exc:
            logger.warning(
                "invalid_transition event_id=%s account_id=%s status=%s type=%s",
                envelope.event_id,
                account_id,
                exc.current,
                exc.event_type,
            )
            self._finish(row, OUTCOME_INVALID_TRANSITION, error=str(exc))
            return outcome(OUTCOME_INVALID_TRANSITION, detail=str(exc)), []

        if effects.subscription is subscription:
            self._touch(effects.subscription, envelope.occurred_at)
        self._finish(row, OUTCOME_APPLIED)
        await session.flush()
        return outcome(OUTCOME_APPLIED, generation=effects.subscription.generation), effects.notifications

    async def _resolve_account(self, session: AsyncSession, row: WebhookEvent, event: ProviderEvent) -> str | None:
        account_id = event.envelope.account_id or row.account_id
        if account_id is None and event.envelope.provider_subscription_id:
            account_id = await subscriptions_repo.find_account_id(session, event.envelope.provider_subscription_id)
        if account_id is not None and row.account_id is None:
            row.account_id = account_id
        if row.provider_subscription_id is None:
            row.provider_subscription_id = event.envelope.provider_subscription_id
        return account_id

    async def _dispatch(
        self,
        session: AsyncSession,
        event: ProviderEvent,
        subscription: Subscription | None,
        account_id: str,
    ) -> _Effects:
        if isinstance(event, CheckoutCompleted):
            return await self._on_checkout(session, event, subscription, account_id)
        if subscription is None:
            raise InvalidTransitionError("none", event.envelope.event_type)
        if isinstance(event, InvoicePaymentSucceeded):
            return await self._on_payment_succeeded(session, event, subscription)
        if isinstance(event, InvoicePaymentFailed):
            return self._on_payment_failed(session, event, subscription)
        if isinstance(event, PaymentRetriesExhausted):
            return self._on_retries_exhausted(session, event, subscription)
        if isinstance(event, SubscriptionUpdated):
            return await self._on_updated(session, event, subscription)
        if isinstance(event, SubscriptionCanceled):
            return self._on_canceled(session, event, subscription)
        raise InvalidTransitionError(subscription.status, event.envelope.event_type)

    async def _on_checkout(
        self,
        session: AsyncSession,
        event: CheckoutCompleted,
        subscription: Subscription | None,
        account_id: str,
    ) -> _Effects:
        occurred_at = event.envelope.occurred_at
        if self._catalog.get(event.tier_id) is None:
            logger.warning("checkout_unknown_tier account_id=%s tier_id=%s", account_id, event.tier_id)
        trial_end = event.trial_end
        if trial_end is None and self._trial_period_days > 0:
            trial_end = occurred_at + timedelta(days=self._trial_period_days)
        in_trial = trial_end is not None and trial_end > occurred_at
        period_start = event.period_start or occurred_at
        period_end = event.period_end or (trial_end if in_trial else None)
        notifications: list[dict[str, Any]] = []

        if subscription is None or subscription.status == "canceled":
            # Re-subscription starts a new row that continues the account's generation sequence.
            subscription = Subscription(
                id=uuid4().hex,
                account_id=account_id,
                tier_id=event.tier_id,
                status="trial" if in_trial else "active",
                current_period_start=period_start,
                current_period_end=period_end,
                cancel_at_period_end=False,
                trial_end=trial_end if in_trial else None,
                last_applied_event_at=occurred_at,
                generation=(subscription.generation + 1) if subscription is not None else 1,
                status_changed_at=occurred_at,
                provider_subscription_id=event.envelope.provider_subscription_id,
                provider_customer_id=event.provider_customer_id,
            )
            session.add(subscription)
            await session.flush()
            notifications.append(
                self._notification(
                    "subscription.started",
                    account_id,
                    event,
                    {"tier_id": event.tier_id, "status": subscription.status, "trial_end": _iso(trial_end)},
                )
            )
            await self._ledger.rollover(
                session,
                account_id,
                period_start,
                period_end,
                self._catalog.quota_names(event.tier_id),
            )
        else:
            # A newer checkout for a live subscription replaces the tier; only a later period resets usage.
            subscription.tier_id = event.tier_id
            subscription.provider_subscription_id = (
                event.envelope.provider_subscription_id or subscription.provider_subscription_id
            )
            subscription.provider_customer_id = event.provider_customer_id or subscription.provider_customer_id
            if event.period_start is not None and (
                subscription.current_period_start is None or event.period_start > subscription.current_period_start
            ):
                subscription.current_period_start = event.period_start
                subscription.current_period_end = event.period_end or subscription.current_period_end
                await self._ledger.rollover(
                    session,
                    account_id,
                    event.period_start,
                    subscription.current_period_end,
                    self._catalog.quota_names(event.tier_id),
                )
            else:
                await self._ledger.ensure_open(
                    session,
                    account_id,
                    subscription.current_period_start or period_start,
                    subscription.current_period_end,
                    self._catalog.quota_names(event.tier_id),
                )

        audit_repo.add_payment_log(
            session,
            account_id=account_id,
            event_id=event.envelope.event_id,
            event_type="purchase",
            occurred_at=occurred_at,
            amount=event.amount,
            currency=event.currency,
            metadata_json={"tier_id": event.tier_id, "trial": in_trial},
        )
        return _Effects(subscription=subscription, notifications=notifications)

    async def _on_payment_succeeded(
        self, session: AsyncSession, event: InvoicePaymentSucceeded, subscription: Subscription
    ) -> _Effects:
        if subscription.status == "canceled":
            raise InvalidTransitionError(subscription.status, event.envelope.event_type)
        previous = subscription.status
        self._set_status(subscription, "active", event.envelope.occurred_at)
        if event.period_start is not None and (
            subscription.current_period_start is None or event.period_start > subscription.current_period_start
        ):
            subscription.current_period_start = event.period_start
            subscription.current_period_end = event.period_end or subscription.current_period_end
            await self._ledger.rollover(
                session,
                subscription.account_id,
                event.period_start,
                subscription.current_period_end,
                self._catalog.quota_names(subscription.tier_id),
            )
        audit_repo.add_payment_log(
            session,
            account_id=subscription.account_id,
            event_id=event.envelope.event_id,
            event_type="renewal",
            occurred_at=event.envelope.occurred_at,
            amount=event.amount,
            currency=event.currency,
            metadata_json={"period_start": _iso(event.period_start), "period_end": _iso(event.period_end)},
        )
        notifications = []
        if previous in ("past_due", "unpaid"):
            notifications.append(
                self._notification("payment.recovered", subscription.account_id, event, {"previous_status": previous})
            )
        return _Effects(subscription=subscription, notifications=notifications)

    def _on_payment_failed(
        self, session: AsyncSession, event: InvoicePaymentFailed, subscription: Subscription
    ) -> _Effects:
        if subscription.status in ("trial", "active"):
            self._set_status(subscription, "past_due", event.envelope.occurred_at)
        elif subscription.status != "past_due":
            raise InvalidTransitionError(subscription.status, event.envelope.event_type)
        self._log_failed_payment(session, subscription, event, final=False)
        return _Effects(
            subscription=subscription,
            notifications=[self._notification("payment.failed", subscription.account_id, event)],
        )

    def _on_retries_exhausted(
        self, session: AsyncSession, event: PaymentRetriesExhausted, subscription: Subscription
    ) -> _Effects:
        if subscription.status not in ("trial", "active", "past_due"):
            raise InvalidTransitionError(subscription.status, event.envelope.event_type)
        self._set_status(subscription, "unpaid", event.envelope.occurred_at)
        self._log_failed_payment(session, subscription, event, final=True)
        return _Effects(
            subscription=subscription,
            notifications=[self._notification("subscription.unpaid", subscription.account_id, event)],
        )

    async def _on_updated(
        self, session: AsyncSession, event: SubscriptionUpdated, subscription: Subscription
    ) -> _Effects:
        if subscription.status == "canceled":
            raise InvalidTransitionError(subscription.status, event.envelope.event_type)
        notifications: list[dict[str, Any]] = []
        if event.cancel_at_period_end is not None:
            subscription.cancel_at_period_end = event.cancel_at_period_end
        if event.period_start is not None and (
            subscription.current_period_start is None or event.period_start > subscription.current_period_start
        ):
            subscription.current_period_start = event.period_start
            subscription.current_period_end = event.period_end or subscription.current_period_end
            await self._ledger.rollover(
                session,
                subscription.account_id,
                event.period_start,
                subscription.current_period_end,
                self._catalog.quota_names(event.tier_id or subscription.tier_id),
            )
        if event.tier_id and event.tier_id != subscription.tier_id:
            if self._catalog.get(event.tier_id) is None:
                logger.warning(
                    "tier_change_unknown_tier account_id=%s tier_id=%s", subscription.account_id, event.tier_id
                )
            old_rank = self._catalog.rank_of(subscription.tier_id) or 0
            new_rank = self._catalog.rank_of(event.tier_id) or 0
            previous_tier = subscription.tier_id
            subscription.tier_id = event.tier_id
            period_start = subscription.current_period_start or event.envelope.occurred_at
            await self._ledger.ensure_open(
                session,
                subscription.account_id,
                period_start,
                subscription.current_period_end,
                self._catalog.quota_names(event.tier_id),
            )
            if new_rank != old_rank:
                audit_repo.add_payment_log(
                    session,
                    account_id=subscription.account_id,
                    event_id=event.envelope.event_id,
                    event_type="upgrade" if new_rank > old_rank else "downgrade",
                    occurred_at=event.envelope.occurred_at,
                    metadata_json={"from_tier": previous_tier, "to_tier": event.tier_id},
                )
            notifications.append(
                self._notification(
                    "subscription.tier_changed",
                    subscription.account_id,
                    event,
                    {"from_tier": previous_tier, "to_tier": event.tier_id},
                )
            )
        return _Effects(subscription=subscription, notifications=notifications)

    def _on_canceled(
        self, session: AsyncSession, event: SubscriptionCanceled, subscription: Subscription
    ) -> _Effects:
        self._set_status(subscription, "canceled", event.envelope.occurred_at)
        # A deletion never clears a period-end cancellation scheduled by an earlier update.
        subscription.cancel_at_period_end = subscription.cancel_at_period_end or bool(event.cancel_at_period_end)
        if event.period_end is not None:
            subscription.current_period_end = event.period_end
        audit_repo.add_payment_log(
            session,
            account_id=subscription.account_id,
            event_id=event.envelope.event_id,
            event_type="canceled",
            occurred_at=event.envelope.occurred_at,
            metadata_json={
                "cancel_at_period_end": subscription.cancel_at_period_end,
                "period_end": _iso(subscription.current_period_end),
            },
        )
        return _Effects(
            subscription=subscription,
            notifications=[
                self._notification(
                    "subscription.canceled",
                    subscription.account_id,
                    event,
                    {
                        "access_until": (
                            _iso(subscription.current_period_end) if subscription.cancel_at_period_end else None
                        )
                    },
                )
            ],
        )

    def _log_failed_payment(
        self,
        session: AsyncSession,
        subscription: Subscription,
        event: InvoicePaymentFailed | PaymentRetriesExhausted,
        *,
        final: bool,
    ) -> None:
        audit_repo.add_payment_log(
            session,
            account_id=subscription.account_id,
            event_id=event.envelope.event_id,
            event_type="failed",
            occurred_at=event.envelope.occurred_at,
            amount=event.amount,
            currency=event.currency,
            metadata_json={"final": final},
        )

    def _set_status(self, subscription: Subscription, status: str, occurred_at: datetime) -> None:
        # Grace windows are measured from the provider's timestamp of the change.
        if subscription.status != status:
            subscription.status = status
            subscription.status_changed_at = occurred_at

    def _touch(self, subscription: Subscription, occurred_at: datetime) -> None:
        subscription.last_applied_event_at = occurred_at
        subscription.generation += 1

    def _finish(self, row: WebhookEvent, status: str, *, error: str | None = None) -> None:
        row.status = status
        row.processed_at = self._now()
        row.last_error = error

    def _notification(
        self,
        template: str,
        account_id: str,
        event: ProviderEvent,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return {
            "template": template,
            "account_id": account_id,
            "event_id": event.envelope.event_id,
            "occurred_at": event.envelope.occurred_at.isoformat(),
            "data": data or {},
        }
