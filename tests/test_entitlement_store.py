from datetime import date

import pytest

from scripture_api.entitlements import (
    FREE,
    PREMIUM,
    BillingFields,
    EntitlementRecord,
    MemoryEntitlementStore,
    PgEntitlementStore,
)

ROW = {
    "user_id": "U1",
    "email": "u1@example.com",
    "entitlement": "premium",
    "billing_customer_ref": "cus_456",
    "billing_subscription_ref": "sub_123",
    "entitlement_period_end": None,
    "usage_count": 0,
    "usage_window_date": None,
    "usage_lifetime_count": 0,
    "is_active": True,
}


class FakeCursor:
    def __init__(self, row=None):
        self.row = row
        self.queries = []

    def execute(self, query, params=None):
        self.queries.append((" ".join(str(query).split()), params))

    def fetchone(self):
        return self.row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConn:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0

    def cursor(self, cursor_factory=None):
        return self._cursor

    def commit(self):
        self.commits += 1


def test_set_entitlement_is_one_partial_update():
    cursor = FakeCursor(ROW)
    conn = FakeConn(cursor)
    store = PgEntitlementStore(conn)

    record = store.set_entitlement("U1", PREMIUM, BillingFields(subscription_ref="sub_123"))

    assert record.entitlement == PREMIUM
    assert len(cursor.queries) == 1
    query, params = cursor.queries[0]
    assert query.startswith("UPDATE app_user SET entitlement = %s, billing_subscription_ref = %s")
    assert "billing_customer_ref =" not in query
    assert "entitlement_period_end =" not in query
    assert params == ("premium", "sub_123", "U1")
    assert conn.commits == 1


def test_customer_ref_is_only_filled_when_empty():
    cursor = FakeCursor(ROW)
    store = PgEntitlementStore(FakeConn(cursor))

    store.set_entitlement("U1", PREMIUM, BillingFields(customer_ref="cus_456"))

    query, _params = cursor.queries[0]
    assert "billing_customer_ref = COALESCE(billing_customer_ref, %s)" in query


def test_clearing_subscription_writes_nulls():
    cursor = FakeCursor(dict(ROW, entitlement="free", billing_subscription_ref=None))
    store = PgEntitlementStore(FakeConn(cursor))

    record = store.set_entitlement("U1", FREE, BillingFields(subscription_ref=None, period_end=None))

    _query, params = cursor.queries[0]
    assert params == ("free", None, None, "U1")
    assert record.billing_subscription_ref is None


def test_unknown_entitlement_rejected_before_sql():
    cursor = FakeCursor(ROW)
    store = PgEntitlementStore(FakeConn(cursor))

    with pytest.raises(ValueError):
        store.set_entitlement("U1", "gold")
    assert cursor.queries == []


def test_lookups_skip_inactive_users():
    cursor = FakeCursor(None)
    store = PgEntitlementStore(FakeConn(cursor))

    assert store.find_by_customer_ref("cus_456") is None
    query, params = cursor.queries[0]
    assert "WHERE billing_customer_ref = %s AND is_active" in query
    assert params == ("cus_456",)


def test_record_usage_rolls_window_in_sql():
    cursor = FakeCursor(dict(ROW, usage_count=1, usage_window_date=date(2026, 10, 18)))
    store = PgEntitlementStore(FakeConn(cursor))

    record = store.record_usage("U1", date(2026, 10, 18))

    query, params = cursor.queries[0]
    assert "WHEN usage_window_date = %s THEN usage_count + 1" in query
    assert params == (date(2026, 10, 18), date(2026, 10, 18), "U1")
    assert record.usage_count == 1


def test_memory_store_never_replaces_customer_ref():
    store = MemoryEntitlementStore()
    store.add(EntitlementRecord(user_id="U1", email="u1@example.com", billing_customer_ref="cus_456"))

    store.set_entitlement("U1", PREMIUM, BillingFields(customer_ref="cus_other"))
    store.set_entitlement("U1", FREE, BillingFields(customer_ref=None))
    store.attach_customer("U1", "cus_third")

    assert store.get("U1").billing_customer_ref == "cus_456"


def test_memory_store_rejects_subscription_without_customer():
    store = MemoryEntitlementStore()
    store.add(EntitlementRecord(user_id="U1", email="u1@example.com"))

    with pytest.raises(ValueError):
        store.set_entitlement("U1", PREMIUM, BillingFields(subscription_ref="sub_123"))
    assert store.get("U1").entitlement == FREE


def test_memory_store_hides_inactive_users():
    store = MemoryEntitlementStore()
    store.add(EntitlementRecord(user_id="U1", email="u1@example.com", billing_customer_ref="cus_456", is_active=False))

    assert store.get("U1") is None
    assert store.find_by_customer_ref("cus_456") is None
