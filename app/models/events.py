"""
Processor Event Models - canonical internal shape for processor payloads.

Payloads arrive in several shapes depending on processor API version
(snake_case vs camelCase, ids vs expanded objects, period fields moved onto
subscription items). Everything is normalized here, once, at ingress; the
state machine only ever sees these dataclasses.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ProcessorEventType(str, Enum):
    """Event types the dispatcher routes."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_PAUSED = "customer.subscription.paused"
    SUBSCRIPTION_RESUMED = "customer.subscription.resumed"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


PAY_PER_USE_PURCHASE = "pay_per_appraisal"
RENEWAL_BILLING_REASON = "subscription_cycle"


def _get(obj: Any, key: str) -> Any:
    """Read a key from a plain-dict payload; SDK objects are converted before normalization."""
    if obj is None:
        return None
    getter = getattr(obj, "get", None)
    if getter is None:
        return None
    return getter(key)


def _ref_id(value: Any) -> str | None:
    """Resolve a reference given either as an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    ref = _get(value, "id")
    return ref if isinstance(ref, str) and ref else None


def _whole_number(value: Any) -> int | None:
    """Integer value (unix seconds, cents), or None when absent or not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value > 0:
        return value
    if isinstance(value, str) and value.strip().isdigit() and int(value) > 0:
        return int(value)
    return None


def _credit_count(value: Any) -> int | None:
    """Credit count from checkout metadata; 0 marks a present but unusable value."""
    if value is None:
        return None
    return _positive_int(value) or 0


def _first_item(payload: Any) -> Any:
    """First subscription item; `items` may be a list object or a bare list."""
    items = _get(payload, "items")
    data = items if isinstance(items, list) else _get(items, "data")
    if isinstance(data, list) and data:
        return data[0]
    return None


@dataclass(frozen=True)
class SubscriptionPayload:
    """Canonical subscription object."""

    subscription_id: str | None
    customer_id: str | None
    status: str | None
    cancel_at_period_end: bool
    current_period_start: int | None
    current_period_end: int | None
    created: int | None
    interval: str | None
    interval_count: int | None

    @classmethod
    def from_payload(cls, payload: Any) -> "SubscriptionPayload":
        item = _first_item(payload)
        recurring = _get(_get(item, "price"), "recurring")

        period_end = _whole_number(_get(payload, "current_period_end"))
        if period_end is None:
            period_end = _whole_number(_get(payload, "currentPeriodEnd"))
        if period_end is None:
            period_end = _whole_number(_get(item, "current_period_end"))

        period_start = _whole_number(_get(payload, "current_period_start"))
        if period_start is None:
            period_start = _whole_number(_get(payload, "currentPeriodStart"))
        if period_start is None:
            period_start = _whole_number(_get(item, "current_period_start"))

        cancel_flag = _get(payload, "cancel_at_period_end")
        if cancel_flag is None:
            cancel_flag = _get(payload, "cancelAtPeriodEnd")

        interval = _get(recurring, "interval")
        return cls(
            subscription_id=_ref_id(_get(payload, "id")),
            customer_id=_ref_id(_get(payload, "customer")),
            status=_get(payload, "status") if isinstance(_get(payload, "status"), str) else None,
            cancel_at_period_end=cancel_flag is True,
            current_period_start=period_start,
            current_period_end=period_end,
            created=_whole_number(_get(payload, "created")),
            interval=interval if isinstance(interval, str) else None,
            interval_count=_positive_int(_get(recurring, "interval_count")),
        )


@dataclass(frozen=True)
class CheckoutSessionPayload:
    """Canonical checkout session."""

    session_id: str | None
    mode: str | None
    customer_id: str | None
    subscription_id: str | None
    amount_total: int | None
    purchase_type: str | None
    # metadata.userId - subscription checkout
    account_id: str | None
    # metadata.user_id - pay-per-use checkout
    purchase_account_id: str | None
    # None when metadata carries no credits; 0 when present but not a positive count
    credits: int | None

    @classmethod
    def from_payload(cls, payload: Any) -> "CheckoutSessionPayload":
        metadata = _get(payload, "metadata")
        account_id = _get(metadata, "userId")
        purchase_account_id = _get(metadata, "user_id")
        purchase_type = _get(metadata, "type")
        return cls(
            session_id=_ref_id(_get(payload, "id")),
            mode=_get(payload, "mode"),
            customer_id=_ref_id(_get(payload, "customer")),
            subscription_id=_ref_id(_get(payload, "subscription")),
            amount_total=_whole_number(_get(payload, "amount_total")),
            purchase_type=purchase_type if isinstance(purchase_type, str) else None,
            account_id=account_id if isinstance(account_id, str) and account_id else None,
            purchase_account_id=(
                purchase_account_id
                if isinstance(purchase_account_id, str) and purchase_account_id
                else None
            ),
            credits=_credit_count(_get(metadata, "credits")),
        )


@dataclass(frozen=True)
class InvoicePayload:
    """Canonical invoice."""

    invoice_id: str | None
    customer_id: str | None
    subscription_id: str | None
    billing_reason: str | None

    @classmethod
    def from_payload(cls, payload: Any) -> "InvoicePayload":
        subscription_id = _ref_id(_get(payload, "subscription"))
        if subscription_id is None:
            details = _get(_get(payload, "parent"), "subscription_details")
            subscription_id = _ref_id(_get(details, "subscription"))
        return cls(
            invoice_id=_ref_id(_get(payload, "id")),
            customer_id=_ref_id(_get(payload, "customer")),
            subscription_id=subscription_id,
            billing_reason=_get(payload, "billing_reason"),
        )


@dataclass(frozen=True)
class ProcessorEvent:
    """Authenticated, normalized processor event."""

    event_id: str
    raw_type: str
    event_type: ProcessorEventType | None
    checkout: CheckoutSessionPayload | None = None
    subscription: SubscriptionPayload | None = None
    invoice: InvoicePayload | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "ProcessorEvent":
        raw_type = _get(payload, "type")
        if not isinstance(raw_type, str) or not raw_type:
            raise ValueError("Event has no type discriminator")
        event_id = _get(payload, "id")
        if not isinstance(event_id, str) or not event_id:
            raise ValueError("Event has no id")

        try:
            event_type: ProcessorEventType | None = ProcessorEventType(raw_type)
        except ValueError:
            event_type = None

        obj = _get(_get(payload, "data"), "object")
        if event_type is ProcessorEventType.CHECKOUT_COMPLETED:
            return cls(event_id, raw_type, event_type, checkout=CheckoutSessionPayload.from_payload(obj))
        if raw_type.startswith("customer.subscription.") and event_type is not None:
            return cls(event_id, raw_type, event_type, subscription=SubscriptionPayload.from_payload(obj))
        if raw_type.startswith("invoice.") and event_type is not None:
            return cls(event_id, raw_type, event_type, invoice=InvoicePayload.from_payload(obj))
        return cls(event_id, raw_type, event_type)


# ============================================================================
# Processor lookups - tri-state instead of exception-driven "not found"
# ============================================================================


@dataclass(frozen=True)
class LookupFound:
    """The processor returned the canonical object."""

    subscription: SubscriptionPayload


@dataclass(frozen=True)
class LookupDegraded:
    """Object is gone or the processor is unreachable - continue with payload data."""

    reason: str


@dataclass(frozen=True)
class LookupFatal:
    """Lookup failed in a way that must abort the event (redelivery will retry)."""

    error: str


SubscriptionLookup = LookupFound | LookupDegraded | LookupFatal


@dataclass(frozen=True)
class CheckoutLink:
    """Hosted checkout session created for a purchase."""

    session_id: str
    url: str | None
