from datetime import date, datetime, timedelta, timezone

import pytest

from scripture_api.config import AppConfig
from scripture_api.entitlements import PREMIUM, EntitlementRecord, MemoryEntitlementStore
from scripture_api.errors import ApiError
from scripture_api.quota import QuotaGate, next_local_midnight, require_premium

NOW = datetime(2026, 10, 18, 15, 30, tzinfo=timezone.utc)
TODAY = NOW.date()
YESTERDAY = TODAY - timedelta(days=1)


def _gate(allowance=5, store=None):
    return QuotaGate(AppConfig(daily_free_allowance=allowance), store, now=lambda: NOW)


def _user(**kwargs):
    return EntitlementRecord(user_id="U1", email="u1@example.com", **kwargs)


def test_rollover_restores_full_allowance():
    status = _gate().can_proceed(_user(usage_count=5, usage_window_date=YESTERDAY))

    assert status.allowed is True
    assert status.remaining == 5
    assert status.reset_at == datetime(2026, 10, 19, tzinfo=timezone.utc)


def test_exhausted_allowance_blocks():
    status = _gate().can_proceed(_user(usage_count=5, usage_window_date=TODAY))

    assert status.allowed is False
    assert status.remaining == 0


def test_partial_usage_counts_down():
    status = _gate().can_proceed(_user(usage_count=3, usage_window_date=TODAY))

    assert status.allowed is True
    assert status.remaining == 2


def test_premium_bypasses_daily_window():
    status = _gate().can_proceed(
        _user(entitlement=PREMIUM, usage_count=500, usage_window_date=TODAY)
    )

    assert status.allowed is True
    assert status.unlimited
    assert status.reset_at is None


def test_zero_allowance_never_allows_free_users():
    status = _gate(allowance=0).can_proceed(_user())

    assert status.allowed is False
    assert status.remaining == 0


def test_record_usage_resets_stale_window_then_increments():
    store = MemoryEntitlementStore()
    store.add(_user(usage_count=5, usage_window_date=YESTERDAY, usage_lifetime_count=40))
    gate = _gate(store=store)

    updated = gate.record_usage(store.get("U1"))

    assert updated.usage_count == 1
    assert updated.usage_window_date == TODAY
    assert updated.usage_lifetime_count == 41

    updated = gate.record_usage(updated)
    assert updated.usage_count == 2
    assert gate.usage_today(updated) == 2


def test_usage_today_ignores_stale_counter():
    assert _gate().usage_today(_user(usage_count=4, usage_window_date=date(2026, 1, 1))) == 0


def test_record_usage_requires_store():
    with pytest.raises(RuntimeError):
        _gate().record_usage(_user())


def test_next_local_midnight_keeps_timezone():
    tz = timezone(timedelta(hours=-5))
    now = datetime(2026, 3, 31, 23, 59, tzinfo=tz)

    assert next_local_midnight(now) == datetime(2026, 4, 1, tzinfo=tz)


def test_require_premium_rejects_free_user():
    with pytest.raises(ApiError) as excinfo:
        require_premium(_user())

    assert excinfo.value.status_code == 402
    assert excinfo.value.code == "payment_required"
    require_premium(_user(entitlement=PREMIUM))
