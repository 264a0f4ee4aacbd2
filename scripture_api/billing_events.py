"""Billing provider events as a closed set of typed variants.

``parse_event`` turns a webhook envelope ``{"type": ..., "data": {"object": ...}}``
into one of the dataclasses below. Types the app does not act on become
``IgnoredEvent``.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

CORRELATION_KEY = "userId"

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class CheckoutCompleted:
    correlation_id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    payment_status: str
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionChanged:
    correlation_id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: str
    status: str
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    correlation_id: Optional[str]
    customer_ref: Optional[str]
    subscription_ref: str


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    customer_ref: Optional[str]
    subscription_ref: Optional[str]


@dataclass(frozen=True)
class InvoicePaymentFailed:
    customer_ref: Optional[str]
    subscription_ref: Optional[str]
    attempt_count: int = 0


@dataclass(frozen=True)
class ManualSync:
    """Provider snapshot fetched on the synchronous fallback path."""

    customer_ref: str
    subscription_ref: Optional[str] = None
    status: Optional[str] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class IgnoredEvent:
    event_type: str


BillingEvent = Union[
    CheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentSucceeded,
    InvoicePaymentFailed,
    ManualSync,
    IgnoredEvent,
]


def _ref(value) -> Optional[str]:
    # Provider references arrive either as ids or as expanded objects.
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value) or None


def _correlation(obj: dict) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    value = metadata.get(CORRELATION_KEY)
    return str(value) if value else None


def timestamp_to_datetime(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_period_end(subscription: dict) -> Optional[datetime]:
    """Period end from the subscription, or from its first item on newer API versions."""
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    return timestamp_to_datetime(value)


def _invoice_subscription(invoice: dict) -> Optional[str]:
    ref = _ref(invoice.get("subscription"))
    if ref:
        return ref
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return _ref(details.get("subscription"))


def parse_checkout_session(session: dict) -> CheckoutCompleted:
    subscription = session.get("subscription")
    period_end = None
    if isinstance(subscription, dict):
        period_end = subscription_period_end(subscription)
    return CheckoutCompleted(
        correlation_id=_correlation(session),
        customer_ref=_ref(session.get("customer")),
        subscription_ref=_ref(subscription),
        payment_status=session.get("payment_status") or "",
        period_end=period_end,
    )


def parse_event(envelope: dict) -> BillingEvent:
    event_type = str(envelope.get("type") or "")
    obj = (envelope.get("data") or {}).get("object") or {}
    if not isinstance(obj, dict):
        raise ValueError("event data.object must be an object")

    if event_type == CHECKOUT_COMPLETED:
        return parse_checkout_session(obj)
    if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED):
        if not obj.get("id"):
            raise ValueError("subscription event without id")
        customer_ref = _ref(obj.get("customer"))
        if not customer_ref:
            # a subscription ref is never stored without its customer
            raise ValueError("subscription event without customer")
        return SubscriptionChanged(
            correlation_id=_correlation(obj),
            customer_ref=customer_ref,
            subscription_ref=obj["id"],
            status=obj.get("status") or "",
            period_end=subscription_period_end(obj),
        )
    if event_type == SUBSCRIPTION_DELETED:
        if not obj.get("id"):
            raise ValueError("subscription event without id")
        return SubscriptionDeleted(
            correlation_id=_correlation(obj),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=obj["id"],
        )
    if event_type == INVOICE_PAYMENT_SUCCEEDED:
        return InvoicePaymentSucceeded(
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_invoice_subscription(obj),
        )
    if event_type == INVOICE_PAYMENT_FAILED:
        return InvoicePaymentFailed(
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_invoice_subscription(obj),
            attempt_count=int(obj.get("attempt_count") or 0),
        )
    return IgnoredEvent(event_type=event_type)
