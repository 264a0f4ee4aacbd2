import pytest

from scripture_api.billing_events import (
    CheckoutCompleted,
    IgnoredEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    ManualSync,
    SubscriptionChanged,
    parse_event,
)
from scripture_api.config import AppConfig
from scripture_api.entitlements import (
    CANCELLED,
    FREE,
    PREMIUM,
    EntitlementRecord,
    MemoryEntitlementStore,
)
from scripture_api.errors import ApiError, BillingUnavailable
from scripture_api.reconcile import (
    APPLIED,
    IGNORED,
    NOOP,
    UNMATCHED,
    ReconciliationEngine,
    transition_for,
    verify_webhook_event,
)
from tests.fakes import FakeGateway


def _store(*records):
    store = MemoryEntitlementStore()
    for record in records:
        store.add(record)
    return store


def _engine(store, gateway=None, notified=None):
    kwargs = {}
    if notified is not None:
        kwargs["notify_payment_failed"] = lambda user, event: notified.append((user.user_id, event))
    return ReconciliationEngine(
        store,
        gateway or FakeGateway(),
        AppConfig(stripe_webhook_secret="whsec_test"),
        **kwargs,
    )


def _subscriber(entitlement=PREMIUM):
    return EntitlementRecord(
        user_id="U1",
        email="u1@example.com",
        entitlement=entitlement,
        billing_customer_ref="cus_456",
        billing_subscription_ref="sub_123",
    )


def test_checkout_completion_activates_premium():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    event = parse_event(
        {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "metadata": {"userId": "U1"},
                    "payment_status": "paid",
                    "subscription": "sub_123",
                    "customer": "cus_456",
                }
            },
        }
    )

    result = _engine(store).apply(event)

    user = store.get("U1")
    assert result.outcome == APPLIED
    assert user.entitlement == PREMIUM
    assert user.billing_subscription_ref == "sub_123"
    assert user.billing_customer_ref == "cus_456"


def test_unpaid_checkout_changes_nothing():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    event = CheckoutCompleted("U1", "cus_456", "sub_123", "unpaid")

    result = _engine(store).apply(event)

    assert result.outcome == NOOP
    assert store.get("U1").entitlement == FREE
    assert store.writes == 0


def test_same_active_event_twice_converges():
    store = _store(_subscriber(entitlement=FREE))
    engine = _engine(store)
    event = SubscriptionChanged(None, "cus_456", "sub_123", "active")

    engine.apply(event)
    after_first = store.get("U1")
    engine.apply(event)

    assert store.get("U1") == after_first
    assert after_first.entitlement == PREMIUM


def test_stale_event_arriving_last_wins():
    store = _store(_subscriber())
    engine = _engine(store)
    earlier_active = SubscriptionChanged(None, "cus_456", "sub_123", "active")
    later_canceled = SubscriptionChanged(None, "cus_456", "sub_123", "canceled")

    engine.apply(later_canceled)
    assert store.get("U1").entitlement == CANCELLED
    engine.apply(earlier_active)

    # arrival order decides; no timestamp comparison is made
    assert store.get("U1").entitlement == PREMIUM


@pytest.mark.parametrize(
    "status, expected",
    [("active", PREMIUM), ("trialing", PREMIUM), ("canceled", CANCELLED), ("past_due", FREE), ("unpaid", FREE)],
)
def test_subscription_status_mapping(status, expected):
    event = SubscriptionChanged(None, "cus_456", "sub_123", status)

    assert transition_for(event, _subscriber()).status == expected


def test_subscription_deletion_clears_subscription_ref():
    store = _store(_subscriber())

    result = _engine(store).apply(parse_event({"type": "customer.subscription.deleted", "data": {"object": {"id": "sub_123"}}}))

    user = store.get("U1")
    assert result.outcome == APPLIED
    assert user.entitlement == FREE
    assert user.billing_subscription_ref is None
    assert user.entitlement_period_end is None
    assert user.billing_customer_ref == "cus_456"


def test_deletion_of_replaced_subscription_is_a_noop():
    store = _store(
        EntitlementRecord(
            user_id="U1",
            email="u1@example.com",
            entitlement=PREMIUM,
            billing_customer_ref="cus_456",
            billing_subscription_ref="sub_new",
        )
    )
    event = parse_event(
        {
            "type": "customer.subscription.deleted",
            "data": {"object": {"id": "sub_old", "customer": "cus_456", "metadata": {"userId": "U1"}}},
        }
    )

    result = _engine(store).apply(event)

    user = store.get("U1")
    assert result.outcome == NOOP
    assert user.entitlement == PREMIUM
    assert user.billing_subscription_ref == "sub_new"
    assert store.writes == 0


def test_unmatched_event_mutates_nobody():
    store = _store(_subscriber())
    event = SubscriptionChanged(None, "cus_unknown", "sub_unknown", "canceled")

    result = _engine(store).apply(event)

    assert result.outcome == UNMATCHED
    assert store.writes == 0
    assert store.get("U1").entitlement == PREMIUM


def test_correlation_id_wins_over_refs():
    other = EntitlementRecord(user_id="U2", email="u2@example.com", billing_customer_ref="cus_456")
    target = EntitlementRecord(user_id="U1", email="u1@example.com")
    store = _store(other, target)

    _engine(store).apply(CheckoutCompleted("U1", "cus_789", "sub_999", "paid"))

    assert store.get("U1").entitlement == PREMIUM
    assert store.get("U2").entitlement == FREE


def test_invoice_succeeded_upgrades_only_when_not_premium():
    store = _store(_subscriber(entitlement=CANCELLED))
    engine = _engine(store)
    event = InvoicePaymentSucceeded("cus_456", "sub_123")

    assert engine.apply(event).outcome == APPLIED
    assert store.get("U1").entitlement == PREMIUM
    writes = store.writes
    assert engine.apply(event).outcome == NOOP
    assert store.writes == writes


def test_invoice_failed_only_notifies():
    store = _store(_subscriber())
    notified = []

    result = _engine(store, notified=notified).apply(InvoicePaymentFailed("cus_456", "sub_123", 1))

    assert result.outcome == NOOP
    assert store.get("U1").entitlement == PREMIUM
    assert store.writes == 0
    assert notified and notified[0][0] == "U1"


def test_ignored_event_is_acknowledged():
    store = _store(_subscriber())

    assert _engine(store).apply(IgnoredEvent("charge.refunded")).outcome == IGNORED
    assert store.writes == 0


def test_unknown_event_type_is_rejected():
    with pytest.raises(TypeError):
        transition_for(object(), _subscriber())


def test_webhook_verification_requires_secret():
    with pytest.raises(BillingUnavailable):
        verify_webhook_event(FakeGateway(), AppConfig(), b"{}", "t=1,v1=abc")


def test_ensure_customer_reuses_existing_provider_customer():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    gateway = FakeGateway(customers={"u1@example.com": "cus_existing"})
    engine = _engine(store, gateway)

    assert engine.ensure_customer(store.get("U1")) == "cus_existing"
    assert engine.ensure_customer(store.get("U1")) == "cus_existing"
    assert gateway.created_customers == []
    assert store.get("U1").billing_customer_ref == "cus_existing"


def test_ensure_customer_creates_once():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    gateway = FakeGateway()
    engine = _engine(store, gateway)

    first = engine.ensure_customer(store.get("U1"), "Ruth")
    second = engine.ensure_customer(store.get("U1"), "Ruth")

    assert first == second == "cus_new_1"
    assert len(gateway.created_customers) == 1


def test_verify_checkout_activates_owned_session():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    gateway = FakeGateway(
        sessions={
            "cs_1": {
                "metadata": {"userId": "U1"},
                "payment_status": "paid",
                "customer": "cus_456",
                "subscription": {"id": "sub_123", "current_period_end": 1790000000},
            }
        }
    )

    result = _engine(store, gateway).verify_checkout(store.get("U1"), "cs_1")

    assert result.activated is True
    assert result.entitlement == PREMIUM
    assert store.get("U1").entitlement_period_end is not None


def test_verify_checkout_reports_unpaid_session():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    gateway = FakeGateway(
        sessions={"cs_1": {"metadata": {"userId": "U1"}, "payment_status": "unpaid", "customer": "cus_456"}}
    )

    result = _engine(store, gateway).verify_checkout(store.get("U1"), "cs_1")

    assert result.activated is False
    assert result.payment_status == "unpaid"
    assert store.writes == 0


def test_verify_checkout_rejects_foreign_session():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com", billing_customer_ref="cus_mine"))
    gateway = FakeGateway(
        sessions={
            "cs_1": {
                "metadata": {"userId": "U2"},
                "payment_status": "paid",
                "customer": "cus_other",
                "subscription": "sub_9",
            }
        }
    )

    with pytest.raises(ApiError) as excinfo:
        _engine(store, gateway).verify_checkout(store.get("U1"), "cs_1")

    assert excinfo.value.status_code == 403
    assert store.writes == 0


def test_sync_finds_trialing_subscription():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com", billing_customer_ref="cus_456"))
    gateway = FakeGateway(
        subscriptions={
            ("cus_456", "trialing"): {"id": "sub_trial", "status": "trialing", "current_period_end": 1790000000}
        }
    )

    result = _engine(store, gateway).sync_subscription(store.get("U1"))

    user = store.get("U1")
    assert result.entitlement == PREMIUM
    assert user.billing_subscription_ref == "sub_trial"


def test_sync_without_subscription_sets_free_and_links_customer():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com", entitlement=PREMIUM))
    gateway = FakeGateway()

    result = _engine(store, gateway).sync_subscription(store.get("U1"))

    assert result.entitlement == FREE
    assert store.get("U1").billing_customer_ref == "cus_new_1"


def test_manual_sync_transition_without_subscription_is_free():
    transition = transition_for(ManualSync(customer_ref="cus_456"), _subscriber())

    assert transition.status == FREE


def test_provider_failure_leaves_entitlement_untouched():
    store = _store(_subscriber())

    with pytest.raises(BillingUnavailable):
        _engine(store, FakeGateway(fail=True)).sync_subscription(store.get("U1"))

    assert store.writes == 0


class _ListingDownGateway(FakeGateway):
    def find_subscription(self, customer_ref, status):
        raise BillingUnavailable("provider down")


def test_sync_links_new_customer_before_listing_subscriptions():
    store = _store(EntitlementRecord(user_id="U1", email="u1@example.com"))
    gateway = _ListingDownGateway()

    with pytest.raises(BillingUnavailable):
        _engine(store, gateway).sync_subscription(store.get("U1"))

    assert store.get("U1").billing_customer_ref == "cus_new_1"
    assert store.get("U1").entitlement == FREE
    assert len(gateway.created_customers) == 1
