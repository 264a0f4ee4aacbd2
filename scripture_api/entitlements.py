"""Durable entitlement records and the store interface behind them.

Every mutation is a single-row write that returns the updated record. There is
no version column: two writers racing on the same user resolve as last write
wins. ``EntitlementStore`` is the seam where a compare-and-swap implementation
can be swapped in without touching callers.
"""
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Dict, Optional

from psycopg2.extras import RealDictCursor

FREE = "free"
PREMIUM = "premium"
CANCELLED = "cancelled"
ENTITLEMENTS = (FREE, PREMIUM, CANCELLED)

# Marks a billing field as "leave untouched" in a partial update.
UNSET = object()


@dataclass(frozen=True)
class EntitlementRecord:
    user_id: str
    email: str
    entitlement: str = FREE
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    entitlement_period_end: Optional[datetime] = None
    usage_count: int = 0
    usage_window_date: Optional[date] = None
    usage_lifetime_count: int = 0
    is_active: bool = True

    @property
    def is_premium(self) -> bool:
        return self.entitlement == PREMIUM

    @classmethod
    def from_row(cls, row: dict) -> "EntitlementRecord":
        return cls(
            user_id=row["user_id"],
            email=row["email"],
            entitlement=row.get("entitlement") or FREE,
            billing_customer_ref=row.get("billing_customer_ref"),
            billing_subscription_ref=row.get("billing_subscription_ref"),
            entitlement_period_end=row.get("entitlement_period_end"),
            usage_count=int(row.get("usage_count") or 0),
            usage_window_date=row.get("usage_window_date"),
            usage_lifetime_count=int(row.get("usage_lifetime_count") or 0),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass(frozen=True)
class BillingFields:
    """Partial update of billing linkage; ``UNSET`` fields are left as stored.

    The customer reference is never cleared: ``None`` for it is ignored, and an
    existing value is kept.
    """

    customer_ref: object = UNSET
    subscription_ref: object = UNSET
    period_end: object = UNSET


def _merge(record: EntitlementRecord, status: str, fields: BillingFields) -> EntitlementRecord:
    customer_ref = record.billing_customer_ref
    if customer_ref is None and fields.customer_ref not in (UNSET, None):
        customer_ref = fields.customer_ref
    subscription_ref = record.billing_subscription_ref
    if fields.subscription_ref is not UNSET:
        subscription_ref = fields.subscription_ref
    period_end = record.entitlement_period_end
    if fields.period_end is not UNSET:
        period_end = fields.period_end
    if subscription_ref and not customer_ref:
        raise ValueError("subscription ref requires a customer ref")
    return replace(
        record,
        entitlement=status,
        billing_customer_ref=customer_ref,
        billing_subscription_ref=subscription_ref,
        entitlement_period_end=period_end,
    )


def _check_status(status: str) -> None:
    if status not in ENTITLEMENTS:
        raise ValueError(f"unknown entitlement: {status}")


class EntitlementStore:
    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def find_by_customer_ref(self, customer_ref: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def set_entitlement(
        self, user_id: str, status: str, fields: BillingFields = BillingFields()
    ) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def attach_customer(self, user_id: str, customer_ref: str) -> Optional[EntitlementRecord]:
        raise NotImplementedError

    def record_usage(self, user_id: str, today: date) -> Optional[EntitlementRecord]:
        raise NotImplementedError


_RECORD_COLUMNS = """
    user_id, email, entitlement, billing_customer_ref, billing_subscription_ref,
    entitlement_period_end, usage_count, usage_window_date, usage_lifetime_count, is_active
"""


class PgEntitlementStore(EntitlementStore):
    """Entitlement fields on ``app_user``; each write commits immediately."""

    def __init__(self, conn):
        self._conn = conn

    def _fetch(self, where: str, value: str) -> Optional[EntitlementRecord]:
        with self._conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT {_RECORD_COLUMNS}
                FROM app_user
                WHERE {where} = %s AND is_active
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (value,),
            )
            row = cur.fetchone()
        return EntitlementRecord.from_row(row) if row else None

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        return self._fetch("user_id", user_id)

    def find_by_customer_ref(self, customer_ref: str) -> Optional[EntitlementRecord]:
        return self._fetch("billing_customer_ref", customer_ref)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[EntitlementRecord]:
        return self._fetch("billing_subscription_ref", subscription_ref)

    def _update(self, sql: str, params: tuple) -> Optional[EntitlementRecord]:
        with self._conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
        self._conn.commit()
        return EntitlementRecord.from_row(row) if row else None

    def set_entitlement(
        self, user_id: str, status: str, fields: BillingFields = BillingFields()
    ) -> Optional[EntitlementRecord]:
        _check_status(status)
        assignments = ["entitlement = %s"]
        params: list = [status]
        if fields.customer_ref not in (UNSET, None):
            assignments.append("billing_customer_ref = COALESCE(billing_customer_ref, %s)")
            params.append(fields.customer_ref)
        if fields.subscription_ref is not UNSET:
            # app_user_subscription_needs_customer rejects a ref without a customer
            assignments.append("billing_subscription_ref = %s")
            params.append(fields.subscription_ref)
        if fields.period_end is not UNSET:
            assignments.append("entitlement_period_end = %s")
            params.append(fields.period_end)
        assignments.append("updated_at = now()")
        params.append(user_id)
        return self._update(
            f"""
            UPDATE app_user
            SET {", ".join(assignments)}
            WHERE user_id = %s
            RETURNING {_RECORD_COLUMNS}
            """,
            tuple(params),
        )

    def attach_customer(self, user_id: str, customer_ref: str) -> Optional[EntitlementRecord]:
        return self._update(
            f"""
            UPDATE app_user
            SET billing_customer_ref = COALESCE(billing_customer_ref, %s),
                updated_at = now()
            WHERE user_id = %s
            RETURNING {_RECORD_COLUMNS}
            """,
            (customer_ref, user_id),
        )

    def record_usage(self, user_id: str, today: date) -> Optional[EntitlementRecord]:
        return self._update(
            f"""
            UPDATE app_user
            SET usage_count = CASE
                    WHEN usage_window_date = %s THEN usage_count + 1
                    ELSE 1
                END,
                usage_window_date = %s,
                usage_lifetime_count = usage_lifetime_count + 1,
                updated_at = now()
            WHERE user_id = %s
            RETURNING {_RECORD_COLUMNS}
            """,
            (today, today, user_id),
        )


class MemoryEntitlementStore(EntitlementStore):
    """Process-local store used for local runs without Postgres and in tests."""

    def __init__(self, records: Optional[Dict[str, EntitlementRecord]] = None):
        self._records: Dict[str, EntitlementRecord] = dict(records or {})
        self.writes = 0

    def add(self, record: EntitlementRecord) -> EntitlementRecord:
        self._records[record.user_id] = record
        return record

    def get(self, user_id: str) -> Optional[EntitlementRecord]:
        record = self._records.get(user_id)
        if record is None or not record.is_active:
            return None
        return record

    def _find(self, attr: str, value: str) -> Optional[EntitlementRecord]:
        for record in self._records.values():
            if record.is_active and getattr(record, attr) == value:
                return record
        return None

    def find_by_customer_ref(self, customer_ref: str) -> Optional[EntitlementRecord]:
        return self._find("billing_customer_ref", customer_ref)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[EntitlementRecord]:
        return self._find("billing_subscription_ref", subscription_ref)

    def _save(self, record: EntitlementRecord) -> EntitlementRecord:
        self._records[record.user_id] = record
        self.writes += 1
        return record

    def set_entitlement(
        self, user_id: str, status: str, fields: BillingFields = BillingFields()
    ) -> Optional[EntitlementRecord]:
        _check_status(status)
        record = self._records.get(user_id)
        if record is None:
            return None
        return self._save(_merge(record, status, fields))

    def attach_customer(self, user_id: str, customer_ref: str) -> Optional[EntitlementRecord]:
        record = self._records.get(user_id)
        if record is None:
            return None
        if record.billing_customer_ref:
            return record
        return self._save(replace(record, billing_customer_ref=customer_ref))

    def record_usage(self, user_id: str, today: date) -> Optional[EntitlementRecord]:
        record = self._records.get(user_id)
        if record is None:
            return None
        count = record.usage_count + 1 if record.usage_window_date == today else 1
        return self._save(
            replace(
                record,
                usage_count=count,
                usage_window_date=today,
                usage_lifetime_count=record.usage_lifetime_count + 1,
            )
        )
