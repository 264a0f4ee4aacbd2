from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from scripture_api.config import AppConfig
from scripture_api.entitlements import EntitlementRecord, EntitlementStore
from scripture_api.errors import payment_required


def _local_now() -> datetime:
    return datetime.now().astimezone()


def next_local_midnight(now: datetime) -> datetime:
    return datetime.combine(
        now.date() + timedelta(days=1),
        datetime.min.time(),
        tzinfo=now.tzinfo,
    )


@dataclass(frozen=True)
class QuotaStatus:
    allowed: bool
    remaining: Optional[int]
    reset_at: Optional[datetime]

    @property
    def unlimited(self) -> bool:
        return self.remaining is None


class QuotaGate:
    """Daily allowance for metered operations, on calendar days of the server clock.

    ``remaining`` of ``None`` means unbounded. Checking never writes; usage is
    recorded separately once an operation has succeeded.
    """

    def __init__(
        self,
        config: AppConfig,
        store: Optional[EntitlementStore] = None,
        now: Callable[[], datetime] = _local_now,
    ):
        self._allowance = max(0, int(config.daily_free_allowance))
        self._store = store
        self._now = now

    def can_proceed(self, user: EntitlementRecord) -> QuotaStatus:
        if user.is_premium:
            return QuotaStatus(True, None, None)
        now = self._now()
        reset_at = next_local_midnight(now)
        if user.usage_window_date != now.date():
            return QuotaStatus(self._allowance > 0, self._allowance, reset_at)
        remaining = max(0, self._allowance - user.usage_count)
        return QuotaStatus(remaining > 0, remaining, reset_at)

    def usage_today(self, user: EntitlementRecord) -> int:
        if user.usage_window_date != self._now().date():
            return 0
        return user.usage_count

    def record_usage(self, user: EntitlementRecord) -> Optional[EntitlementRecord]:
        if self._store is None:
            raise RuntimeError("QuotaGate needs a store to record usage")
        return self._store.record_usage(user.user_id, self._now().date())


def require_premium(user: EntitlementRecord) -> None:
    """Admission rule enforced on metered chat endpoints."""
    if not user.is_premium:
        raise payment_required("Please subscribe to continue asking questions.")
