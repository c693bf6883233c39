"""
Ledger value types shared by the store, the cache layers and the API.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


@dataclass(frozen=True, order=True)
class BillingPeriod:
    """A calendar month; the allowance reset boundary."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"month out of range: {self.month}")

    @classmethod
    def of(cls, moment: datetime) -> "BillingPeriod":
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return cls(moment.year, moment.month)

    @classmethod
    def current(cls) -> "BillingPeriod":
        return cls.of(datetime.now(timezone.utc))

    @classmethod
    def parse(cls, value: str) -> "BillingPeriod":
        """Parse ``YYYY-MM``."""
        year, _, month = value.partition("-")
        try:
            return cls(int(year), int(month))
        except ValueError:
            raise ValueError(f"invalid billing period {value!r}, expected YYYY-MM") from None

    def next(self) -> "BillingPeriod":
        if self.month == 12:
            return BillingPeriod(self.year + 1, 1)
        return BillingPeriod(self.year, self.month + 1)

    def previous(self) -> "BillingPeriod":
        if self.month == 1:
            return BillingPeriod(self.year - 1, 12)
        return BillingPeriod(self.year, self.month - 1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class AllowanceRecord:
    """Persisted allowance row for one (account, period)."""

    used: int
    limit: int
    subscription_ref: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class SubscriptionRecord:
    id: str
    account_id: str
    plan_type: str
    status: str
    monthly_allowance: Optional[int] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
