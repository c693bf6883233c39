"""SQLModel tables for the credit ledger."""

from credit_ledger.models.billing import (  # noqa: F401
    Account,
    AllowanceUsage,
    CreditTopup,
    Subscription,
)
