from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from tierguard.core.errors import MalformedEventError


CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_MARKED_UNCOLLECTIBLE = "invoice.marked_uncollectible"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
TRIAL_WILL_END = "customer.subscription.trial_will_end"


@dataclass(frozen=True)
class EventEnvelope:
    # Fields shared by every provider event regardless of type.
    event_id: str
    event_type: str
    occurred_at: datetime
    account_id: str | None
    provider_subscription_id: str | None


@dataclass(frozen=True)
class CheckoutCompleted:
    envelope: EventEnvelope
    tier_id: str
    period_start: datetime | None
    period_end: datetime | None
    trial_end: datetime | None
    provider_customer_id: str | None
    amount: int | None
    currency: str | None


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    envelope: EventEnvelope
    period_start: datetime | None
    period_end: datetime | None
    amount: int | None
    currency: str | None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    envelope: EventEnvelope
    amount: int | None
    currency: str | None


@dataclass(frozen=True)
class PaymentRetriesExhausted:
    envelope: EventEnvelope
    amount: int | None
    currency: str | None


@dataclass(frozen=True)
class SubscriptionUpdated:
    envelope: EventEnvelope
    tier_id: str | None
    cancel_at_period_end: bool | None
    period_start: datetime | None
    period_end: datetime | None


@dataclass(frozen=True)
class SubscriptionCanceled:
    envelope: EventEnvelope
    # None when the payload omits the flag.
    cancel_at_period_end: bool | None
    period_end: datetime | None


@dataclass(frozen=True)
class TrialWillEnd:
    envelope: EventEnvelope
    trial_end: datetime | None


@dataclass(frozen=True)
class UnknownEvent:
    envelope: EventEnvelope
    data: dict[str, Any] = field(default_factory=dict)


ProviderEvent = Union[
    CheckoutCompleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    PaymentRetriesExhausted,
    SubscriptionUpdated,
    SubscriptionCanceled,
    TrialWillEnd,
    UnknownEvent,
]


def _from_unix(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # Out-of-range timestamps are treated as missing.
        return None


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _as_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _event_object(raw: dict[str, Any]) -> dict[str, Any]:
    # Providers nest the resource under data.object; accept a flat data block too.
    data = raw.get("data")
    if not isinstance(data, dict):
        return {}
    obj = data.get("object")
    if isinstance(obj, dict):
        return obj
    return data


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    # Invoices carry subscription metadata under subscription_details.
    details = obj.get("subscription_details")
    if isinstance(details, dict) and isinstance(details.get("metadata"), dict):
        merged.update(details["metadata"])
    if isinstance(obj.get("metadata"), dict):
        merged.update(obj["metadata"])
    return merged


def _invoice_period(obj: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    start = _from_unix(obj.get("period_start") or obj.get("current_period_start"))
    end = _from_unix(obj.get("period_end") or obj.get("current_period_end"))
    # Line items hold the subscription period for renewal invoices.
    lines = obj.get("lines")
    if isinstance(lines, dict) and isinstance(lines.get("data"), list):
        for line in lines["data"]:
            period = line.get("period") if isinstance(line, dict) else None
            if isinstance(period, dict):
                start = _from_unix(period.get("start")) or start
                end = _from_unix(period.get("end")) or end
                break
    return start, end


def _subscription_ref(obj: dict[str, Any], event_type: str) -> str | None:
    if event_type.startswith("customer.subscription."):
        return _as_str(obj.get("id"))
    return _as_str(obj.get("subscription"))


def parse_provider_event(raw: Any) -> ProviderEvent:
    """Map a decoded provider payload onto its tagged event variant.

    Unknown event types parse into ``UnknownEvent`` so they can be acknowledged
    and ignored; only payloads missing ``id``, ``type`` or ``created`` are errors.
    """
    if not isinstance(raw, dict):
        raise MalformedEventError("event body must be a JSON object")
    event_id = _as_str(raw.get("id"))
    event_type = _as_str(raw.get("type"))
    occurred_at = _from_unix(raw.get("created"))
    if event_id is None or event_type is None or occurred_at is None:
        raise MalformedEventError("event requires id, type and created")

    obj = _event_object(raw)
    metadata = _metadata(obj)
    account_id = _as_str(metadata.get("account_id")) or _as_str(obj.get("account_id"))
    envelope = EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        occurred_at=occurred_at,
        account_id=account_id,
        provider_subscription_id=_subscription_ref(obj, event_type),
    )
    tier_id = _as_str(metadata.get("tier")) or _as_str(obj.get("tier"))
    currency = _as_str(obj.get("currency"))

    if event_type == CHECKOUT_COMPLETED:
        if tier_id is None:
            raise MalformedEventError("checkout event is missing the tier")
        start, end = _invoice_period(obj)
        return CheckoutCompleted(
            envelope=envelope,
            tier_id=tier_id,
            period_start=start,
            period_end=end,
            trial_end=_from_unix(obj.get("trial_end")),
            provider_customer_id=_as_str(obj.get("customer")),
            amount=_as_int(obj.get("amount_total")),
            currency=currency,
        )
    if event_type == INVOICE_PAYMENT_SUCCEEDED:
        start, end = _invoice_period(obj)
        return InvoicePaymentSucceeded(
            envelope=envelope,
            period_start=start,
            period_end=end,
            amount=_as_int(obj.get("amount_paid")),
            currency=currency,
        )
    if event_type == INVOICE_PAYMENT_FAILED:
        amount = _as_int(obj.get("amount_due"))
        # An explicit null next attempt means the provider stopped retrying.
        if "next_payment_attempt" in obj and obj["next_payment_attempt"] is None:
            return PaymentRetriesExhausted(envelope=envelope, amount=amount, currency=currency)
        return InvoicePaymentFailed(envelope=envelope, amount=amount, currency=currency)
    if event_type == INVOICE_MARKED_UNCOLLECTIBLE:
        return PaymentRetriesExhausted(
            envelope=envelope,
            amount=_as_int(obj.get("amount_due")),
            currency=currency,
        )
    if event_type == SUBSCRIPTION_UPDATED:
        start, end = _invoice_period(obj)
        cancel_flag = obj.get("cancel_at_period_end")
        return SubscriptionUpdated(
            envelope=envelope,
            tier_id=tier_id,
            cancel_at_period_end=cancel_flag if isinstance(cancel_flag, bool) else None,
            period_start=start,
            period_end=end,
        )
    if event_type == SUBSCRIPTION_DELETED:
        cancel_flag = obj.get("cancel_at_period_end")
        return SubscriptionCanceled(
            envelope=envelope,
            cancel_at_period_end=cancel_flag if isinstance(cancel_flag, bool) else None,
            period_end=_invoice_period(obj)[1],
        )
    if event_type == TRIAL_WILL_END:
        return TrialWillEnd(envelope=envelope, trial_end=_from_unix(obj.get("trial_end")))
    return UnknownEvent(envelope=envelope, data=obj)
