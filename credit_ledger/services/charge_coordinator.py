"""
Charge Coordinator — allowance before wallet
=============================================

PURPOSE:
    Single entry point for charging and crediting an account.

    charge_credits(account_id, cost):
      split (default)   — take min(cost, allowance remaining) from the
                          monthly allowance, the rest from the wallet.
      allowance_first   — the whole cost from the allowance when it fits,
                          otherwise the whole cost from the wallet.
    A charge that cannot be covered raises InsufficientCredits and leaves
    allowance and wallet untouched.

    charge_usage(account_id, usage_tier) charges the plan catalog's price
    for one use of a usage tier ("10min", "1hour", ...). Every successful
    charge is counted in per-period usage stats (charges, credits, split,
    uses per tier), reported by account_summary().

    After a wallet debit the account is flushed immediately when
      - the new balance is below critical_balance_threshold,
      - the caller passed force_write_through, or
      - a random draw falls below probabilistic_flush_chance.
    Otherwise it waits for the scheduled flush.

    add_credits() is write-through: the credit is applied in cache and
    flushed at once. A failed flush is logged; the entry stays dirty and
    the periodic flush retries.

CONCURRENCY:
    Every read-check-write sequence on one account runs under that
    account's asyncio.Lock, so two charges can never both pass the
    balance check against the same pre-charge value. Different accounts
    proceed independently.

    Holders and waiters of an account's lock are counted. is_busy() lets
    the cleanup cycle skip those accounts when evicting, and
    prune_locks() only drops locks nobody holds or waits on.
"""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from credit_ledger.core.errors import InsufficientCredits, InvalidAmount, UnknownUsageTier
from credit_ledger.core.structured_logging import account_id_var
from credit_ledger.models.ledger import AllowanceRecord, BillingPeriod
from credit_ledger.plan_catalog import PlanCatalog
from credit_ledger.services.allowance_tracker import AllowanceTracker
from credit_ledger.services.ledger_cache import LedgerCache

logger = logging.getLogger(__name__)

__all__ = ["AccountSummary", "ChargeCoordinator", "ChargeResult", "UsageStats", "CHARGE_MODES"]

CHARGE_MODES = ("split", "allowance_first")


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a successful charge.

    source is "allowance" when nothing came from the wallet, "wallet"
    otherwise; from_allowance/from_wallet carry the exact split.
    balance is the wallet balance after the charge, or None when the
    wallet was not read (pure allowance charge on a cold wallet entry).
    """

    success: bool
    source: str
    cost: int
    from_allowance: int
    from_wallet: int
    balance: Optional[int]
    allowance_remaining: int


@dataclass
class UsageStats:
    """Successful charges of one account in one billing period."""

    charges: int = 0
    credits: int = 0
    from_allowance: int = 0
    from_wallet: int = 0
    by_tier: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AccountSummary:
    account_id: str
    balance: int
    period: str
    allowance_used: int
    allowance_limit: int
    allowance_remaining: int
    subscription_ref: Optional[str]
    dirty: bool
    usage: UsageStats = field(default_factory=UsageStats)

    @property
    def total_available(self) -> int:
        return self.balance + self.allowance_remaining


def _validate_amount(amount: object, operation: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount, operation)
    return amount


class ChargeCoordinator:
    def __init__(
        self,
        cache: LedgerCache,
        allowance: AllowanceTracker,
        catalog: Optional[PlanCatalog] = None,
        *,
        mode: str = "split",
        critical_threshold: int = 100,
        flush_chance: float = 0.05,
        rng: Callable[[], float] = random.random,
        period_fn: Callable[[], BillingPeriod] = BillingPeriod.current,
    ) -> None:
        if mode not in CHARGE_MODES:
            raise ValueError(f"unknown charge mode {mode!r}, expected one of {CHARGE_MODES}")
        self._cache = cache
        self._allowance = allowance
        self._catalog = catalog
        self._mode = mode
        self._critical_threshold = critical_threshold
        self._flush_chance = flush_chance
        self._rng = rng
        self._period_fn = period_fn
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders + waiters per account
        self._lock_users: Dict[str, int] = {}
        self._usage: Dict[Tuple[str, BillingPeriod], UsageStats] = {}

    @property
    def mode(self) -> str:
        return self._mode

    @asynccontextmanager
    async def _locked(self, account_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[account_id] - 1
            if users:
                self._lock_users[account_id] = users
            else:
                del self._lock_users[account_id]

    def is_busy(self, account_id: str) -> bool:
        """True while an operation on the account holds or awaits its lock."""
        return account_id in self._lock_users

    def prune_locks(self) -> int:
        """Drop locks of uncached accounts that nobody holds or waits on."""
        idle = [
            aid for aid in self._locks
            if aid not in self._lock_users and aid not in self._cache
        ]
        for aid in idle:
            del self._locks[aid]
        return len(idle)

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def charge_credits(
        self,
        account_id: str,
        cost: int,
        force_write_through: bool = False,
    ) -> ChargeResult:
        _validate_amount(cost, "charge")
        return await self._charge(account_id, cost, force_write_through)

    async def charge_usage(
        self,
        account_id: str,
        usage_tier: str,
        force_write_through: bool = False,
    ) -> ChargeResult:
        """Charge the catalog price of one use of usage_tier."""
        if self._catalog is None or usage_tier not in self._catalog.costs:
            raise UnknownUsageTier(usage_tier)
        cost = self._catalog.cost_for(usage_tier)
        return await self._charge(account_id, cost, force_write_through, usage_tier)

    async def _charge(
        self,
        account_id: str,
        cost: int,
        force_write_through: bool,
        usage_tier: Optional[str] = None,
    ) -> ChargeResult:
        token = account_id_var.set(account_id)
        try:
            async with self._locked(account_id):
                period = self._period_fn()
                if self._mode == "allowance_first":
                    result = await self._charge_allowance_first(account_id, period, cost)
                else:
                    result = await self._charge_split(account_id, period, cost)
                self._record_usage(account_id, period, result, usage_tier)

                if result.from_wallet:
                    await self._maybe_flush(account_id, result.balance, force_write_through)
        finally:
            account_id_var.reset(token)

        logger.info(
            "Charged %d credits: account=%s tier=%s allowance=%d wallet=%d balance=%s",
            cost, account_id, usage_tier or "-", result.from_allowance, result.from_wallet,
            result.balance,
        )
        return result

    async def _charge_allowance_first(
        self, account_id: str, period: BillingPeriod, cost: int,
    ) -> ChargeResult:
        if await self._allowance.try_consume(account_id, period, cost):
            entry = self._cache.peek(account_id)
            allowance = await self._allowance.get_allowance(account_id, period)
            return ChargeResult(
                success=True,
                source="allowance",
                cost=cost,
                from_allowance=cost,
                from_wallet=0,
                balance=entry.balance if entry is not None else None,
                allowance_remaining=allowance.remaining,
            )

        allowance = await self._allowance.get_allowance(account_id, period)
        balance = await self._cache.get_balance(account_id)
        if balance < cost:
            raise InsufficientCredits(
                required=cost,
                available=balance,
                allowance_remaining=allowance.remaining,
                wallet_balance=balance,
                account_id=account_id,
            )
        return self._debit_wallet(account_id, cost, 0, balance, allowance.remaining)

    async def _charge_split(
        self, account_id: str, period: BillingPeriod, cost: int,
    ) -> ChargeResult:
        allowance = await self._allowance.get_allowance(account_id, period)
        from_allowance = min(cost, allowance.remaining)
        from_wallet = cost - from_allowance

        balance: Optional[int] = None
        if from_wallet:
            balance = await self._cache.get_balance(account_id)
            if balance < from_wallet:
                raise InsufficientCredits(
                    required=cost,
                    available=allowance.remaining + balance,
                    allowance_remaining=allowance.remaining,
                    wallet_balance=balance,
                    account_id=account_id,
                )

        if from_allowance and not await self._allowance.try_consume(account_id, period, from_allowance):
            # allowance write failed: the wallet must carry the whole cost
            from_allowance, from_wallet = 0, cost
            if balance is None:
                balance = await self._cache.get_balance(account_id)
            if balance < cost:
                raise InsufficientCredits(
                    required=cost,
                    available=balance,
                    allowance_remaining=allowance.remaining,
                    wallet_balance=balance,
                    account_id=account_id,
                )

        remaining = allowance.remaining - from_allowance
        if not from_wallet:
            entry = self._cache.peek(account_id)
            return ChargeResult(
                success=True,
                source="allowance",
                cost=cost,
                from_allowance=from_allowance,
                from_wallet=0,
                balance=entry.balance if entry is not None else None,
                allowance_remaining=remaining,
            )
        return self._debit_wallet(account_id, cost, from_allowance, balance, remaining)

    def _debit_wallet(
        self,
        account_id: str,
        cost: int,
        from_allowance: int,
        balance: int,
        allowance_remaining: int,
    ) -> ChargeResult:
        from_wallet = cost - from_allowance
        new_balance = balance - from_wallet
        self._cache.set_balance(account_id, new_balance)
        return ChargeResult(
            success=True,
            source="wallet",
            cost=cost,
            from_allowance=from_allowance,
            from_wallet=from_wallet,
            balance=new_balance,
            allowance_remaining=allowance_remaining,
        )

    def _record_usage(
        self,
        account_id: str,
        period: BillingPeriod,
        result: ChargeResult,
        usage_tier: Optional[str],
    ) -> None:
        stats = self._usage.setdefault((account_id, period), UsageStats())
        stats.charges += 1
        stats.credits += result.cost
        stats.from_allowance += result.from_allowance
        stats.from_wallet += result.from_wallet
        if usage_tier is not None:
            stats.by_tier[usage_tier] = stats.by_tier.get(usage_tier, 0) + 1

    async def _maybe_flush(self, account_id: str, balance: Optional[int], forced: bool) -> None:
        if forced:
            reason = "write_through"
        elif balance is not None and balance < self._critical_threshold:
            reason = "critical_balance"
        elif self._rng() < self._flush_chance:
            reason = "probabilistic"
        else:
            return
        logger.debug("Immediate flush: account=%s reason=%s", account_id, reason)
        await self._cache.flush_one(account_id)

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    async def add_credits(self, account_id: str, amount: int, source: str = "manual") -> int:
        """Credit the wallet and persist immediately. Returns the new balance."""
        _validate_amount(amount, "add_credits")
        async with self._locked(account_id):
            balance = await self._cache.get_balance(account_id)
            new_balance = balance + amount
            self._cache.set_balance(account_id, new_balance)
            persisted = await self._cache.flush_one(account_id)

        if persisted:
            logger.info(
                "Added %d credits: account=%s source=%s balance=%d",
                amount, account_id, source, new_balance,
            )
        else:
            logger.warning(
                "Added %d credits but write-through failed, queued for next flush: "
                "account=%s source=%s balance=%d",
                amount, account_id, source, new_balance,
            )
        return new_balance

    # ------------------------------------------------------------------
    # Reads / allowance reset
    # ------------------------------------------------------------------

    async def get_balance(self, account_id: str) -> int:
        return await self._cache.get_balance(account_id)

    async def get_allowance(
        self, account_id: str, period: Optional[BillingPeriod] = None,
    ) -> AllowanceRecord:
        return await self._allowance.get_allowance(account_id, period or self._period_fn())

    async def reset_period(
        self,
        account_id: str,
        period: BillingPeriod,
        new_limit: int,
        subscription_ref: Optional[str] = None,
    ) -> AllowanceRecord:
        async with self._locked(account_id):
            return await self._allowance.reset_period(account_id, period, new_limit, subscription_ref)

    def usage_stats(self, account_id: str, period: Optional[BillingPeriod] = None) -> UsageStats:
        """Copy of the account's usage stats for a period (current by default)."""
        stats = self._usage.get((account_id, period or self._period_fn()))
        if stats is None:
            return UsageStats()
        return replace(stats, by_tier=dict(stats.by_tier))

    def drop_usage_before(self, period: BillingPeriod) -> int:
        old = [key for key in self._usage if key[1] < period]
        for key in old:
            del self._usage[key]
        return len(old)

    async def account_summary(self, account_id: str) -> AccountSummary:
        period = self._period_fn()
        balance = await self._cache.get_balance(account_id)
        allowance = await self._allowance.get_allowance(account_id, period)
        entry = self._cache.peek(account_id)
        return AccountSummary(
            account_id=account_id,
            balance=balance,
            period=str(period),
            allowance_used=allowance.used,
            allowance_limit=allowance.limit,
            allowance_remaining=allowance.remaining,
            subscription_ref=allowance.subscription_ref,
            dirty=bool(entry and entry.dirty),
            usage=self.usage_stats(account_id, period),
        )
