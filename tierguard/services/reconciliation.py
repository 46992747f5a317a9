from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tierguard.core.config import get_settings
from tierguard.core.errors import StorageFailureError
from tierguard.persistence.repos import webhook_events as events_repo
from tierguard.services.subscriptions import (
    OUTCOME_APPLIED,
    OUTCOME_DEFERRED,
    ApplyOutcome,
    SubscriptionStateMachine,
)
from tierguard.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    scanned: int = 0
    applied: int = 0
    no_op: int = 0
    deferred: int = 0
    failed: int = 0
    # Events given up on after exhausting their attempt budget.
    abandoned: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def reconcile_pending_events(
    state_machine: SubscriptionStateMachine,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    limit: int | None = None,
    min_age_s: int | None = None,
    max_attempts: int | None = None,
    now: datetime | None = None,
) -> ReconcileReport:
    """Re-drive events that were recorded but never reached a terminal outcome.

    Events are processed in ``occurred_at`` order; the state machine's ordering
    rule keeps the sweep safe to run concurrently with live ingestion.
    """
    settings = get_settings()
    limit = settings.reconcile_batch_size if limit is None else limit
    min_age_s = settings.reconcile_min_age_s if min_age_s is None else min_age_s
    max_attempts = settings.reconcile_max_attempts if max_attempts is None else max_attempts
    now = now or _utc_now()

    async with session_factory() as session:
        pending = await events_repo.list_pending(
            session, received_before=now - timedelta(seconds=min_age_s), limit=limit
        )
        candidates = [(row.event_id, row.apply_attempts or 0, row.last_error) for row in pending]

    report = ReconcileReport(scanned=len(candidates))
    for event_id, attempts, last_error in candidates:
        if attempts >= max_attempts:
            async with session_factory() as session:
                async with session.begin():
                    await events_repo.mark_failed(session, event_id, error=last_error or "attempts exhausted")
            report.abandoned += 1
            increment_counter("reconcile_abandoned_total")
            logger.error("reconcile_event_abandoned event_id=%s attempts=%s", event_id, attempts)
            continue
        try:
            outcome = await state_machine.apply(event_id)
        except StorageFailureError:
            report.failed += 1
            continue
        _count(report, outcome)

    set_gauge("reconcile_pending_events", report.scanned - report.applied - report.no_op)
    logger.info(
        "reconcile_sweep scanned=%s applied=%s no_op=%s deferred=%s failed=%s abandoned=%s",
        report.scanned,
        report.applied,
        report.no_op,
        report.deferred,
        report.failed,
        report.abandoned,
    )
    return report


def _count(report: ReconcileReport, outcome: ApplyOutcome) -> None:
    if outcome.status == OUTCOME_APPLIED:
        report.applied += 1
    elif outcome.status == OUTCOME_DEFERRED:
        report.deferred += 1
    else:
        report.no_op += 1


async def replay_event(
    state_machine: SubscriptionStateMachine,
    session_factory: async_sessionmaker[AsyncSession],
    event_id: str,
) -> ApplyOutcome:
    # Abandoned events get a fresh budget; already processed ones report their recorded outcome.
    async with session_factory() as session:
        async with session.begin():
            reopened = await events_repo.reopen(session, event_id)
    if reopened:
        logger.info("reconcile_event_reopened event_id=%s", event_id)
    return await state_machine.apply(event_id)


async def run_reconcile_loop(
    state_machine: SubscriptionStateMachine,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    interval_s: int | None = None,
) -> None:
    interval_s = get_settings().reconcile_interval_s if interval_s is None else interval_s
    while True:
        try:
            await reconcile_pending_events(state_machine, session_factory)
        except Exception:  # noqa: BLE001 - keep the sweep alive across transient outages
            logger.exception("reconcile_sweep_failed")
        await asyncio.sleep(interval_s)
