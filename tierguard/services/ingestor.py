from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import get_settings
from tierguard.core.errors import MalformedEventError, SignatureVerificationError, StorageFailureError
from tierguard.domain.events import parse_provider_event
from tierguard.persistence.repos import webhook_events as events_repo
from tierguard.services.resilience import RetryPolicy, is_transient_storage_error, retry_async, storage_retry_policy
from tierguard.services.signatures import verify_signature
from tierguard.services.subscriptions import ApplyOutcome, SubscriptionStateMachine
from tierguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INGEST_ACCEPTED = "accepted"
INGEST_DUPLICATE = "duplicate"
INGEST_REJECTED = "rejected"


@dataclass(frozen=True)
class IngestResult:
    status: str
    event_id: str | None = None
    reason: str | None = None
    # Present when the state machine ran synchronously after the marker committed.
    apply_outcome: ApplyOutcome | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EventIngestor:
    """Verify, dedupe and persist provider webhooks, then hand them to the state machine.

    Once the idempotency marker is committed the delivery is acknowledged, even if
    applying it fails; reconciliation finishes the job.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        state_machine: SubscriptionStateMachine,
        *,
        secret: str | None = None,
        tolerance_s: int | None = None,
        retry_policy: RetryPolicy | None = None,
        time_source: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._state_machine = state_machine
        self._secret = secret if secret is not None else settings.webhook_secret
        self._tolerance_s = settings.webhook_tolerance_s if tolerance_s is None else tolerance_s
        self._retry_policy = retry_policy or storage_retry_policy()
        self._now = time_source or _utc_now

    async def ingest(self, raw_body: bytes, signature_header: str | None) -> IngestResult:
        now = self._now()
        try:
            verify_signature(raw_body, signature_header, self._secret, now=now, tolerance_s=self._tolerance_s)
        except SignatureVerificationError as exc:
            increment_counter(f"webhook_rejected_total.{exc.reason}")
            logger.warning("webhook_rejected reason=%s detail=%s", exc.reason, exc)
            return IngestResult(status=INGEST_REJECTED, reason=exc.reason)

        try:
            decoded = json.loads(raw_body)
            event = parse_provider_event(decoded)
        except (ValueError, MalformedEventError) as exc:
            increment_counter("webhook_rejected_total.malformed_event")
            logger.warning("webhook_rejected reason=malformed_event detail=%s", exc)
            return IngestResult(status=INGEST_REJECTED, reason="malformed_event")

        envelope = event.envelope
        inserted = await self._mark(
            decoded,
            envelope.event_id,
            envelope.event_type,
            envelope.occurred_at,
            envelope.account_id,
            received_at=now,
            provider_subscription_id=envelope.provider_subscription_id,
        )
        if not inserted:
            increment_counter("webhook_duplicate_total")
            logger.info("webhook_duplicate event_id=%s type=%s", envelope.event_id, envelope.event_type)
            return IngestResult(status=INGEST_DUPLICATE, event_id=envelope.event_id)

        increment_counter("webhook_accepted_total")
        outcome: ApplyOutcome | None = None
        try:
            outcome = await self._state_machine.apply(envelope.event_id)
        except StorageFailureError:
            # Already acknowledged: leave it ingested-not-applied for the reconciliation sweep.
            logger.warning("webhook_apply_deferred_to_reconciliation event_id=%s", envelope.event_id)
        return IngestResult(status=INGEST_ACCEPTED, event_id=envelope.event_id, apply_outcome=outcome)

    async def _mark(
        self,
        payload: dict,
        event_id: str,
        event_type: str,
        occurred_at: datetime,
        account_id: str | None,
        *,
        received_at: datetime,
        provider_subscription_id: str | None = None,
    ) -> bool:
        async def _insert() -> bool:
            # A fresh session per attempt so a failed transaction never leaks into the retry.
            async with self._session_factory() as session:
                return await events_repo.insert_if_absent(
                    session,
                    event_id=event_id,
                    event_type=event_type,
                    occurred_at=occurred_at,
                    received_at=received_at,
                    payload_json=payload,
                    account_id=account_id,
                    provider_subscription_id=provider_subscription_id,
                )

        try:
            return await retry_async(_insert, policy=self._retry_policy, retryable=is_transient_storage_error)
        except (SQLAlchemyError, TimeoutError, OSError) as exc:
            increment_counter("webhook_storage_failure_total")
            logger.error("webhook_marker_write_failed event_id=%s", event_id, exc_info=exc)
            raise StorageFailureError(f"could not record event {event_id}") from exc
