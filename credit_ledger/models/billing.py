"""
Billing Models
==============

SQLModel tables for durable ledger state:
- Account: wallet balance per account (source of truth on cold start).
- AllowanceUsage: monthly allowance consumption per (account, year, month).
- Subscription: plan/status rows written by the payment webhook layer.
  Read-only from the ledger's point of view.
- CreditTopup: append-only record of applied credit purchases.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

# Subscription statuses that grant a monthly allowance
ALLOWANCE_STATUSES = ("active", "trialing")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(SQLModel, table=True):
    """Wallet balance for one account."""

    __tablename__ = "accounts"

    id: str = Field(primary_key=True, max_length=128)
    credit_balance: int = Field(default=0)
    updated_at: datetime = Field(default_factory=_utcnow)


class AllowanceUsage(SQLModel, table=True):
    """Allowance consumed in one billing period. Reset, never deleted."""

    __tablename__ = "allowance_usage"
    __table_args__ = (
        UniqueConstraint("account_id", "usage_year", "usage_month", name="uq_allowance_period"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True, max_length=128)
    usage_year: int
    usage_month: int
    allowance_used: int = Field(default=0)
    monthly_allowance: int = Field(default=0)
    subscription_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    allowance_reset_at: Optional[datetime] = Field(default=None, nullable=True)
    updated_at: datetime = Field(default_factory=_utcnow)


class Subscription(SQLModel, table=True):
    """Provider subscription state for an account."""

    __tablename__ = "subscriptions"

    id: str = Field(primary_key=True, max_length=128)
    account_id: str = Field(index=True, max_length=128)
    plan_type: str = Field(default="free", max_length=64)
    status: str = Field(default="active", max_length=32)
    # None → derive from the plan catalog by plan_type
    monthly_allowance: Optional[int] = Field(default=None, nullable=True)
    current_period_start: Optional[datetime] = Field(default=None, nullable=True)
    current_period_end: Optional[datetime] = Field(default=None, nullable=True)
    created_at: datetime = Field(default_factory=_utcnow)


class CreditTopup(SQLModel, table=True):
    """Applied credit purchase, keyed by the provider's transaction id."""

    __tablename__ = "credit_topups"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(index=True, max_length=128)
    external_ref: str = Field(unique=True, max_length=255)
    product_id: Optional[str] = Field(default=None, nullable=True, max_length=128)
    credits: int
    source: str = Field(default="topup", max_length=64)
    created_at: datetime = Field(default_factory=_utcnow)
