"""Entitlement reconciliation against the billing provider.

Webhook deliveries and the synchronous verify/sync endpoints all end in
``transition_for``, the one place that maps a billing event onto an
entitlement change. Events are applied in arrival order with no timestamp
comparison, so a stale delivery can overwrite fresher state until the next
event or a manual sync.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from scripture_api.billing_events import (
    BillingEvent,
    CheckoutCompleted,
    IgnoredEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ManualSync,
    SubscriptionChanged,
    SubscriptionDeleted,
    parse_checkout_session,
    parse_event,
    subscription_period_end,
)
from scripture_api.config import AppConfig
from scripture_api.entitlements import (
    CANCELLED,
    FREE,
    PREMIUM,
    UNSET,
    BillingFields,
    EntitlementRecord,
    EntitlementStore,
)
from scripture_api.errors import BillingUnavailable, forbidden
from scripture_api.events import log_billing_event

PREMIUM_STATUSES = ("active", "trialing")

APPLIED = "applied"
NOOP = "noop"
UNMATCHED = "unmatched"
IGNORED = "ignored"


@dataclass(frozen=True)
class Transition:
    status: str
    fields: BillingFields = BillingFields()


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str
    event_type: str
    user_id: Optional[str] = None
    entitlement: Optional[str] = None


@dataclass(frozen=True)
class CheckoutVerification:
    activated: bool
    entitlement: str
    payment_status: str


def _subscription_status(status: Optional[str]) -> str:
    if status in PREMIUM_STATUSES:
        return PREMIUM
    if status == "canceled":
        return CANCELLED
    return FREE


def transition_for(event: BillingEvent, current: EntitlementRecord) -> Optional[Transition]:
    """Entitlement change for ``event``; ``None`` means leave the record alone."""
    if isinstance(event, CheckoutCompleted):
        if event.payment_status != "paid" or not event.subscription_ref:
            return None
        return Transition(
            PREMIUM,
            BillingFields(
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
                period_end=event.period_end or UNSET,
            ),
        )
    if isinstance(event, SubscriptionChanged):
        return Transition(
            _subscription_status(event.status),
            BillingFields(
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
                period_end=event.period_end,
            ),
        )
    if isinstance(event, SubscriptionDeleted):
        # a deletion of an older subscription must not touch the current one
        if current.billing_subscription_ref != event.subscription_ref:
            return None
        return Transition(FREE, BillingFields(subscription_ref=None, period_end=None))
    if isinstance(event, InvoicePaymentSucceeded):
        if current.entitlement == PREMIUM:
            return None
        return Transition(PREMIUM)
    if isinstance(event, InvoicePaymentFailed):
        # downgrade is left to the subscription status event that follows
        return None
    if isinstance(event, ManualSync):
        if event.subscription_ref and event.status in PREMIUM_STATUSES:
            return Transition(
                PREMIUM,
                BillingFields(
                    customer_ref=event.customer_ref,
                    subscription_ref=event.subscription_ref,
                    period_end=event.period_end,
                ),
            )
        return Transition(FREE, BillingFields(customer_ref=event.customer_ref))
    if isinstance(event, IgnoredEvent):
        return None
    raise TypeError(f"unhandled billing event: {type(event).__name__}")


def _event_name(event: BillingEvent) -> str:
    if isinstance(event, IgnoredEvent):
        return event.event_type
    return type(event).__name__


def log_payment_failed(user: EntitlementRecord, event: BillingEvent) -> None:
    log_billing_event(
        "billing_payment_failed",
        {
            "user_id": user.user_id,
            "subscription_ref": getattr(event, "subscription_ref", None),
            "attempt_count": getattr(event, "attempt_count", 0),
        },
    )


def verify_webhook_event(gateway, config: AppConfig, payload: bytes, signature: str | None) -> BillingEvent:
    """Verify and parse one webhook delivery without touching the store.

    Raises ``WebhookSignatureError`` before anything is parsed when the
    signature does not match, and ``ValueError`` for a malformed envelope.
    """
    if not config.stripe_webhook_secret:
        raise BillingUnavailable("webhook secret not configured")
    return parse_event(gateway.verify_webhook(payload, signature))


class ReconciliationEngine:
    def __init__(
        self,
        store: EntitlementStore,
        gateway,
        config: AppConfig,
        notify_payment_failed: Callable[[EntitlementRecord, BillingEvent], None] = log_payment_failed,
    ):
        self._store = store
        self._gateway = gateway
        self._config = config
        self._notify_payment_failed = notify_payment_failed

    def resolve_user(self, event: BillingEvent) -> Optional[EntitlementRecord]:
        lookups = []
        correlation_id = getattr(event, "correlation_id", None)
        if correlation_id:
            lookups.append((self._store.get, correlation_id))
        subscription_ref = getattr(event, "subscription_ref", None)
        customer_ref = getattr(event, "customer_ref", None)
        if isinstance(event, (SubscriptionDeleted, InvoicePaymentSucceeded, InvoicePaymentFailed)):
            lookups.append((self._store.find_by_subscription_ref, subscription_ref))
            lookups.append((self._store.find_by_customer_ref, customer_ref))
        else:
            lookups.append((self._store.find_by_customer_ref, customer_ref))
            lookups.append((self._store.find_by_subscription_ref, subscription_ref))
        for lookup, value in lookups:
            if not value:
                continue
            user = lookup(value)
            if user:
                return user
        return None

    def _apply_to(self, user: EntitlementRecord, event: BillingEvent) -> ReconcileResult:
        name = _event_name(event)
        if isinstance(event, InvoicePaymentFailed):
            self._notify_payment_failed(user, event)
        transition = transition_for(event, user)
        if transition is None:
            log_billing_event(
                "billing_event_noop",
                {"event": name, "user_id": user.user_id, "entitlement": user.entitlement},
            )
            return ReconcileResult(NOOP, name, user.user_id, user.entitlement)
        updated = self._store.set_entitlement(user.user_id, transition.status, transition.fields)
        if updated is None:
            return ReconcileResult(UNMATCHED, name)
        log_billing_event(
            "billing_entitlement_set",
            {
                "event": name,
                "user_id": user.user_id,
                "from": user.entitlement,
                "to": updated.entitlement,
            },
        )
        return ReconcileResult(APPLIED, name, updated.user_id, updated.entitlement)

    def apply(self, event: BillingEvent) -> ReconcileResult:
        name = _event_name(event)
        if isinstance(event, IgnoredEvent):
            log_billing_event("billing_event_ignored", {"event": name})
            return ReconcileResult(IGNORED, name)
        user = self.resolve_user(event)
        if user is None:
            log_billing_event(
                "billing_event_unmatched",
                {
                    "event": name,
                    "customer_ref": getattr(event, "customer_ref", None),
                    "subscription_ref": getattr(event, "subscription_ref", None),
                },
            )
            return ReconcileResult(UNMATCHED, name)
        return self._apply_to(user, event)

    def ensure_customer(self, user: EntitlementRecord, name: str | None = None) -> str:
        """Return the user's billing customer, creating and linking it at most once."""
        if user.billing_customer_ref:
            return user.billing_customer_ref
        customer_ref = self._gateway.find_customer_by_email(user.email)
        if not customer_ref:
            customer_ref = self._gateway.create_customer(user.email, name, user.user_id)
        updated = self._store.attach_customer(user.user_id, customer_ref)
        if updated and updated.billing_customer_ref:
            return updated.billing_customer_ref
        return customer_ref

    def verify_checkout(self, user: EntitlementRecord, session_id: str) -> CheckoutVerification:
        session = self._gateway.retrieve_checkout_session(session_id)
        event = parse_checkout_session(session)
        owned = event.correlation_id == user.user_id or (
            user.billing_customer_ref is not None and event.customer_ref == user.billing_customer_ref
        )
        if not owned:
            log_billing_event("billing_verify_forbidden", {"user_id": user.user_id})
            raise forbidden("Session does not belong to this user.")
        if transition_for(event, user) is None:
            return CheckoutVerification(False, user.entitlement, event.payment_status or "unpaid")
        result = self._apply_to(user, event)
        return CheckoutVerification(
            result.outcome == APPLIED,
            result.entitlement or user.entitlement,
            event.payment_status,
        )

    def sync_subscription(self, user: EntitlementRecord) -> ReconcileResult:
        customer_ref = self.ensure_customer(user)
        subscription = None
        for status in PREMIUM_STATUSES:
            subscription = self._gateway.find_subscription(customer_ref, status)
            if subscription:
                break
        if subscription:
            event = ManualSync(
                customer_ref=customer_ref,
                subscription_ref=subscription.get("id"),
                status=subscription.get("status"),
                period_end=subscription_period_end(subscription),
            )
        else:
            event = ManualSync(customer_ref=customer_ref)
        return self._apply_to(user, event)
