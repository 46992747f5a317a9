from __future__ import annotations

from datetime import datetime
import json
from typing import Any
from uuid import uuid4

from tierguard.services.signatures import build_timestamped_header


def _ts(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value is not None else None


def provider_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    created: datetime,
    event_id: str | None = None,
) -> dict[str, Any]:
    # Shape payloads the way the payment provider delivers them.
    return {
        "id": event_id or f"evt_{uuid4().hex[:12]}",
        "type": event_type,
        "created": _ts(created),
        "data": {"object": obj},
    }


def checkout_event(
    account_id: str,
    tier_id: str,
    *,
    created: datetime,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    subscription_id: str = "sub_1",
    event_id: str | None = None,
    trial_end: datetime | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": "cs_test",
        "customer": "cus_1",
        "subscription": subscription_id,
        "amount_total": 4900,
        "currency": "usd",
        "metadata": {"account_id": account_id, "tier": tier_id},
        "current_period_start": _ts(period_start),
        "current_period_end": _ts(period_end),
    }
    if trial_end is not None:
        obj["trial_end"] = _ts(trial_end)
    return provider_event("checkout.session.completed", obj, created=created, event_id=event_id)


def payment_succeeded_event(
    *,
    created: datetime,
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    subscription_id: str = "sub_1",
    account_id: str | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": "in_paid",
        "subscription": subscription_id,
        "amount_paid": 4900,
        "currency": "usd",
    }
    if period_start is not None:
        obj["lines"] = {"data": [{"period": {"start": _ts(period_start), "end": _ts(period_end)}}]}
    if account_id is not None:
        obj["subscription_details"] = {"metadata": {"account_id": account_id}}
    return provider_event("invoice.payment_succeeded", obj, created=created, event_id=event_id)


def payment_failed_event(
    *,
    created: datetime,
    subscription_id: str = "sub_1",
    final: bool = False,
    event_id: str | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": "in_failed",
        "subscription": subscription_id,
        "amount_due": 4900,
        "currency": "usd",
        "next_payment_attempt": None if final else 1_900_000_000,
    }
    return provider_event("invoice.payment_failed", obj, created=created, event_id=event_id)


def subscription_updated_event(
    *,
    created: datetime,
    subscription_id: str = "sub_1",
    tier_id: str | None = None,
    cancel_at_period_end: bool | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {"id": subscription_id, "metadata": {}}
    if tier_id is not None:
        obj["metadata"]["tier"] = tier_id
    if cancel_at_period_end is not None:
        obj["cancel_at_period_end"] = cancel_at_period_end
    return provider_event("customer.subscription.updated", obj, created=created, event_id=event_id)


def subscription_deleted_event(
    *,
    created: datetime,
    subscription_id: str = "sub_1",
    cancel_at_period_end: bool | None = None,
    period_end: datetime | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    obj: dict[str, Any] = {"id": subscription_id, "current_period_end": _ts(period_end)}
    if cancel_at_period_end is not None:
        obj["cancel_at_period_end"] = cancel_at_period_end
    return provider_event("customer.subscription.deleted", obj, created=created, event_id=event_id)


def signed(payload: dict[str, Any], secret: str, at: datetime) -> tuple[bytes, str]:
    # Serialize once so the signature covers the exact bytes sent.
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return body, build_timestamped_header(secret, body, int(at.timestamp()))
