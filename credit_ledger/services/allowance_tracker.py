"""
Allowance Tracker — monthly subscription credits, consumed before the wallet
============================================================================

PURPOSE:
    Caches one entry per (account, billing period) holding
    {used, limit, subscription_ref}.

    - get_allowance(): cache-first. On a miss the period's usage row is
      loaded; without a row the limit comes from the active subscription
      (explicit allowance, else the plan catalog by tier, else 0) and
      used starts at 0.
    - try_consume(): all-or-nothing. Refuses (returns False, no mutation)
      when used + amount > limit. Otherwise WRITE-THROUGH: the increment
      is reserved in cache, persisted, and rolled back from the cache if
      the store write fails. A timed-out write has an unknown outcome: the
      entry is dropped (reloaded on next use) and PersistenceFailure is
      raised, so the caller never charges the wallet for it as well.
    - reset_period(): used=0, limit=new_limit. Idempotent. Persisted
      before the cache is updated.

    Write-through (not write-back) because allowance usage is billing
    sensitive and must survive a crash.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from credit_ledger.core.errors import (
    ConfigurationError,
    InvalidAmount,
    LedgerError,
    PersistenceFailure,
)
from credit_ledger.models.ledger import AllowanceRecord, BillingPeriod, SubscriptionRecord
from credit_ledger.plan_catalog import PlanCatalog
from credit_ledger.services.durable_store import DurableStore

logger = logging.getLogger(__name__)

__all__ = ["AllowanceGrant", "AllowanceTracker"]


@dataclass
class _AllowanceEntry:
    used: int
    limit: int
    subscription_ref: Optional[str]
    # bumped on reset so an in-flight consume doesn't undo it on rollback
    epoch: int = 0

    def snapshot(self) -> AllowanceRecord:
        return AllowanceRecord(used=self.used, limit=self.limit, subscription_ref=self.subscription_ref)


@dataclass(frozen=True)
class AllowanceGrant:
    """Limit an active subscription grants for a period."""

    account_id: str
    limit: int
    subscription_ref: Optional[str]


def _validate_amount(amount: object, operation: str) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount(amount, operation)
    return amount


class AllowanceTracker:
    """In-memory allowance state with write-through consumption."""

    def __init__(self, store: DurableStore, catalog: PlanCatalog) -> None:
        self._store = store
        self._catalog = catalog
        self._entries: Dict[Tuple[str, BillingPeriod], _AllowanceEntry] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def limit_for(self, subscription: Optional[SubscriptionRecord]) -> int:
        if subscription is None:
            return 0
        if subscription.monthly_allowance is not None:
            return max(0, subscription.monthly_allowance)
        return self._catalog.monthly_allowance_for_tier(subscription.plan_type)

    async def _entry(self, account_id: str, period: BillingPeriod) -> _AllowanceEntry:
        key = (account_id, period)
        entry = self._entries.get(key)
        if entry is not None:
            return entry

        try:
            record = await self._store.read_allowance(account_id, period)
            if record is None:
                subscription = await self._store.read_active_subscription(account_id)
                record = AllowanceRecord(
                    used=0,
                    limit=self.limit_for(subscription),
                    subscription_ref=subscription.id if subscription else None,
                )
        except LedgerError:
            raise
        except Exception as exc:
            logger.error(
                "Allowance load failed: account=%s period=%s error=%s", account_id, period, exc,
            )
            raise PersistenceFailure("read_allowance", exc) from exc

        return self._entries.setdefault(
            key,
            _AllowanceEntry(used=record.used, limit=record.limit, subscription_ref=record.subscription_ref),
        )

    async def get_allowance(self, account_id: str, period: BillingPeriod) -> AllowanceRecord:
        entry = await self._entry(account_id, period)
        return entry.snapshot()

    def peek(self, account_id: str, period: BillingPeriod) -> Optional[AllowanceRecord]:
        entry = self._entries.get((account_id, period))
        return entry.snapshot() if entry is not None else None

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    async def try_consume(self, account_id: str, period: BillingPeriod, amount: int) -> bool:
        _validate_amount(amount, "consume_allowance")
        entry = await self._entry(account_id, period)

        if entry.used + amount > entry.limit:
            return False

        entry.used += amount
        epoch = entry.epoch
        try:
            await self._store.increment_allowance_used(
                account_id, period, amount, entry.limit, entry.subscription_ref,
            )
        except TimeoutError as exc:
            # the write may still commit after the deadline; reload from the store
            key = (account_id, period)
            if self._entries.get(key) is entry:
                del self._entries[key]
            logger.error(
                "Allowance write-through timed out, outcome unknown: "
                "account=%s period=%s amount=%d error=%s",
                account_id, period, amount, exc,
            )
            raise PersistenceFailure("increment_allowance_used", exc) from exc
        except Exception as exc:
            if entry.epoch == epoch:
                entry.used -= amount
            logger.error(
                "Allowance write-through failed, falling back to wallet: "
                "account=%s period=%s amount=%d error=%s",
                account_id, period, amount, exc,
            )
            return False

        logger.debug(
            "Allowance consumed: account=%s period=%s amount=%d used=%d/%d",
            account_id, period, amount, entry.used, entry.limit,
        )
        return True

    # ------------------------------------------------------------------
    # Reset / rollover
    # ------------------------------------------------------------------

    async def reset_period(
        self,
        account_id: str,
        period: BillingPeriod,
        new_limit: int,
        subscription_ref: Optional[str] = None,
    ) -> AllowanceRecord:
        if isinstance(new_limit, bool) or not isinstance(new_limit, int) or new_limit < 0:
            raise InvalidAmount(new_limit, "reset_allowance")

        try:
            await self._store.reset_allowance(account_id, period, new_limit, subscription_ref)
        except Exception as exc:
            logger.error(
                "Allowance reset failed: account=%s period=%s error=%s", account_id, period, exc,
            )
            raise PersistenceFailure("reset_allowance", exc) from exc

        key = (account_id, period)
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _AllowanceEntry(0, new_limit, subscription_ref)
        else:
            entry.used = 0
            entry.limit = new_limit
            if subscription_ref is not None:
                entry.subscription_ref = subscription_ref
            entry.epoch += 1

        logger.info(
            "Allowance reset: account=%s period=%s limit=%d", account_id, period, new_limit,
        )
        return entry.snapshot()

    async def active_grants(self) -> List[AllowanceGrant]:
        """One grant per account with an allowance-bearing subscription."""
        subscriptions = await self._store.list_active_subscriptions()
        grants = []
        for sub in subscriptions:
            try:
                limit = self.limit_for(sub)
            except ConfigurationError as exc:
                logger.error(
                    "Skipping subscription with unknown plan: account=%s subscription=%s error=%s",
                    sub.account_id, sub.id, exc.detail,
                )
                continue
            grants.append(AllowanceGrant(sub.account_id, limit, sub.id))
        return grants

    def drop_periods_before(self, period: BillingPeriod) -> int:
        """Forget cached entries of earlier periods (rows stay in the store)."""
        old = [key for key in self._entries if key[1] < period]
        for key in old:
            del self._entries[key]
        return len(old)

    def __len__(self) -> int:
        return len(self._entries)
