"""
Error code system for the credit ledger.

LedgerError is the base exception for all structured errors. Each
subclass pins one registry code; the FastAPI handler in
``credit_ledger.core.errors.middleware`` renders them as JSON.

Usage:
    from credit_ledger.core.errors import InsufficientCredits
    raise InsufficientCredits(required=500, available=400)
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^CL-[A-Z]{2,6}-\d{3}$")


class LedgerError(Exception):
    """Structured ledger error tied to the error registry.

    Args:
        code: Registry error code, e.g. "CL-LED-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    def __init__(
        self,
        code: str,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)

    def public_context(self) -> dict:
        """Context fields that are safe to return to API callers."""
        return {}


class AccountNotFound(LedgerError):
    """The durable store has no record for the account (cold-cache read)."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(
            "CL-LED-001",
            detail=f"account {account_id!r} not found",
            context={"account_id": account_id},
        )


class InsufficientCredits(LedgerError):
    """Charge exceeds what allowance + wallet can cover. Expected outcome."""

    def __init__(
        self,
        required: int,
        available: int,
        allowance_remaining: int = 0,
        wallet_balance: int | None = None,
        account_id: str | None = None,
    ) -> None:
        self.required = required
        self.available = available
        self.allowance_remaining = allowance_remaining
        self.wallet_balance = available if wallet_balance is None else wallet_balance
        self.shortfall = max(0, required - available)
        self.account_id = account_id
        super().__init__(
            "CL-LED-002",
            detail=f"required={required} available={available}",
            context={"account_id": account_id, **self.public_context()},
        )

    def public_context(self) -> dict:
        return {
            "required": self.required,
            "available": self.available,
            "shortfall": self.shortfall,
            "breakdown": {
                "allowance_remaining": self.allowance_remaining,
                "wallet_balance": self.wallet_balance,
            },
        }


class InvalidAmount(LedgerError):
    """Non-positive (or non-integer) charge/add amount."""

    def __init__(self, amount: object, operation: str) -> None:
        self.amount = amount
        self.operation = operation
        super().__init__(
            "CL-LED-003",
            detail=f"{operation}: invalid amount {amount!r}",
            context={"amount": repr(amount), "operation": operation},
        )

    def public_context(self) -> dict:
        return {"operation": self.operation}


class UnknownUsageTier(LedgerError):
    """Charge requested for a usage tier the plan catalog does not price."""

    def __init__(self, usage_tier: str) -> None:
        self.usage_tier = usage_tier
        super().__init__(
            "CL-LED-004",
            detail=f"unknown usage tier {usage_tier!r}",
            context={"usage_tier": usage_tier},
        )

    def public_context(self) -> dict:
        return {"usage_tier": self.usage_tier}


class PersistenceFailure(LedgerError):
    """Transient durable store I/O failure. Recovered locally by retry."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(
            "CL-DB-001",
            detail=f"{operation} failed: {cause}" if cause else f"{operation} failed",
            context={"operation": operation},
        )


class ConfigurationError(LedgerError):
    """Invalid or incomplete startup configuration."""

    def __init__(self, detail: str) -> None:
        super().__init__("CL-CFG-001", detail=detail)


__all__ = [
    "CODE_PATTERN",
    "LedgerError",
    "AccountNotFound",
    "InsufficientCredits",
    "InvalidAmount",
    "UnknownUsageTier",
    "PersistenceFailure",
    "ConfigurationError",
]
