"""
Ledger Router
=============

Endpoints:
1. GET  /accounts/{account_id}/balance  — wallet balance (cache-first)
2. GET  /accounts/{account_id}/summary  — wallet + current-period allowance
3. POST /accounts/{account_id}/charge   — charge credits (allowance first)
4. POST /accounts/{account_id}/charge/{usage_tier}
                                        — charge the catalog price of one use
5. POST /admin/flush                    — drain dirty balances now

LedgerError subclasses raised below are rendered by
core/errors/middleware.py (404 unknown account, 402 insufficient
credits with breakdown, 422 invalid amount or unknown usage tier,
503 store unavailable).
"""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from credit_ledger.services.ledger_engine import LedgerEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class BalanceResponse(BaseModel):
    account_id: str
    balance: int


class AllowanceView(BaseModel):
    period: str
    used: int
    limit: int
    remaining: int
    subscription_ref: Optional[str] = None


class UsageView(BaseModel):
    charges: int
    credits: int
    from_allowance: int
    from_wallet: int
    by_tier: Dict[str, int] = Field(default_factory=dict)


class SummaryResponse(BaseModel):
    account_id: str
    balance: int
    allowance: AllowanceView
    usage: UsageView
    total_available: int


class ChargeRequest(BaseModel):
    cost: int = Field(..., description="Credits to charge; must be a positive integer")
    force_write_through: bool = Field(
        default=False, description="Persist the wallet balance before returning",
    )


class UsageChargeRequest(BaseModel):
    force_write_through: bool = False


class ChargeResponse(BaseModel):
    success: bool
    source: str
    cost: int
    from_allowance: int
    from_wallet: int
    balance: Optional[int] = None
    allowance_remaining: int


class FlushResponse(BaseModel):
    attempted: int
    persisted: int
    failed: int
    remaining_dirty: int
    cached_entries: int


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------
router = APIRouter()


def get_ledger(request: Request) -> LedgerEngine:
    return request.app.state.ledger


@router.get(
    "/accounts/{account_id}/balance",
    response_model=BalanceResponse,
    summary="Wallet balance",
)
async def get_balance(account_id: str, ledger: LedgerEngine = Depends(get_ledger)):
    balance = await ledger.coordinator.get_balance(account_id)
    return BalanceResponse(account_id=account_id, balance=balance)


@router.get(
    "/accounts/{account_id}/summary",
    response_model=SummaryResponse,
    summary="Wallet balance and current-period allowance",
)
async def get_summary(account_id: str, ledger: LedgerEngine = Depends(get_ledger)):
    summary = await ledger.coordinator.account_summary(account_id)
    return SummaryResponse(
        account_id=summary.account_id,
        balance=summary.balance,
        allowance=AllowanceView(
            period=summary.period,
            used=summary.allowance_used,
            limit=summary.allowance_limit,
            remaining=summary.allowance_remaining,
            subscription_ref=summary.subscription_ref,
        ),
        usage=UsageView(
            charges=summary.usage.charges,
            credits=summary.usage.credits,
            from_allowance=summary.usage.from_allowance,
            from_wallet=summary.usage.from_wallet,
            by_tier=summary.usage.by_tier,
        ),
        total_available=summary.total_available,
    )


@router.post(
    "/accounts/{account_id}/charge",
    response_model=ChargeResponse,
    summary="Charge credits",
    description="Draws from the monthly allowance first, then the wallet. "
                "Returns 402 with a breakdown when the account cannot cover the cost.",
)
async def charge(
    account_id: str,
    body: ChargeRequest,
    ledger: LedgerEngine = Depends(get_ledger),
):
    result = await ledger.coordinator.charge_credits(
        account_id, body.cost, force_write_through=body.force_write_through,
    )
    return _charge_response(result)


@router.post(
    "/accounts/{account_id}/charge/{usage_tier}",
    response_model=ChargeResponse,
    summary="Charge one use of a usage tier",
    description="Charges the plan catalog price of the tier (e.g. 10min, 1hour, 1day).",
)
async def charge_usage(
    account_id: str,
    usage_tier: str,
    body: Optional[UsageChargeRequest] = None,
    ledger: LedgerEngine = Depends(get_ledger),
):
    result = await ledger.coordinator.charge_usage(
        account_id, usage_tier,
        force_write_through=body.force_write_through if body else False,
    )
    return _charge_response(result)


def _charge_response(result) -> ChargeResponse:
    return ChargeResponse(
        success=result.success,
        source=result.source,
        cost=result.cost,
        from_allowance=result.from_allowance,
        from_wallet=result.from_wallet,
        balance=result.balance,
        allowance_remaining=result.allowance_remaining,
    )


@router.post(
    "/admin/flush",
    response_model=FlushResponse,
    summary="Flush all dirty balances",
)
async def flush(ledger: LedgerEngine = Depends(get_ledger)):
    report = await ledger.scheduler.force_flush()
    logger.info("Admin flush: persisted=%d remaining=%d", report.persisted, report.remaining_dirty)
    return FlushResponse(
        attempted=report.attempted,
        persisted=report.persisted,
        failed=report.failed,
        remaining_dirty=report.remaining_dirty,
        cached_entries=len(ledger.cache),
    )
