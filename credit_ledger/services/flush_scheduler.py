"""
Flush Scheduler — periodic write-back, cleanup and monthly rollover
====================================================================

PURPOSE:
    Background loops started by the application lifespan:
      - flush loop    every flush_interval_s: persist up to max_flush_batch
                      dirty balances in one transaction
      - cleanup loop  every cleanup_interval_s: evict clean stale balance
                      entries of idle accounts, forget allowance entries
                      and usage stats of past periods, drop idle locks

    force_flush() drains every dirty entry (shutdown, admin endpoint).
    run_monthly_rollover() resets the allowance of every account with an
    active subscription for the given period.

    A failing cycle is logged and the loop keeps running.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from credit_ledger.models.ledger import BillingPeriod
from credit_ledger.services.allowance_tracker import AllowanceTracker
from credit_ledger.services.charge_coordinator import ChargeCoordinator
from credit_ledger.services.ledger_cache import FlushReport, LedgerCache

logger = logging.getLogger(__name__)

__all__ = ["FlushScheduler", "RolloverReport"]


@dataclass(frozen=True)
class RolloverReport:
    period: str
    reset: int = 0
    failed: List[str] = field(default_factory=list)


class FlushScheduler:
    def __init__(
        self,
        cache: LedgerCache,
        allowance: AllowanceTracker,
        coordinator: ChargeCoordinator,
        *,
        flush_interval_s: float = 300,
        cleanup_interval_s: float = 1800,
        stale_entry_age_s: float = 1800,
        max_batch: int = 50,
        period_fn: Callable[[], BillingPeriod] = BillingPeriod.current,
    ) -> None:
        self._cache = cache
        self._allowance = allowance
        self._coordinator = coordinator
        self._flush_interval_s = flush_interval_s
        self._cleanup_interval_s = cleanup_interval_s
        self._stale_entry_age_s = stale_entry_age_s
        self._max_batch = max_batch
        self._period_fn = period_fn
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_flush_cycle(self) -> FlushReport:
        return await self._cache.flush_all_dirty(self._max_batch)

    async def force_flush(self) -> FlushReport:
        """Flush batches until nothing is dirty or a pass makes no progress."""
        attempted = persisted = failed = 0
        while self._cache.dirty_count:
            report = await self._cache.flush_all_dirty(self._max_batch)
            attempted += report.attempted
            persisted += report.persisted
            failed += report.failed
            if report.persisted == 0:
                break
        total = FlushReport(
            attempted=attempted,
            persisted=persisted,
            failed=failed,
            remaining_dirty=self._cache.dirty_count,
        )
        if total.remaining_dirty:
            logger.warning(
                "Forced flush left %d dirty balances (store unavailable?)", total.remaining_dirty,
            )
        return total

    def run_cleanup_cycle(self) -> int:
        period = self._period_fn()
        evicted = self._cache.evict_stale(
            self._stale_entry_age_s, is_busy=self._coordinator.is_busy,
        )
        dropped = self._allowance.drop_periods_before(period)
        dropped += self._coordinator.drop_usage_before(period)
        locks = self._coordinator.prune_locks()
        logger.debug(
            "Cleanup: evicted=%d past_period_entries_dropped=%d locks_pruned=%d",
            evicted, dropped, locks,
        )
        return evicted

    async def run_monthly_rollover(self, period: Optional[BillingPeriod] = None) -> RolloverReport:
        period = period or self._period_fn()
        grants = await self._allowance.active_grants()
        reset = 0
        failed: List[str] = []
        for grant in grants:
            try:
                await self._coordinator.reset_period(
                    grant.account_id, period, grant.limit, grant.subscription_ref,
                )
                reset += 1
            except Exception as exc:
                logger.error(
                    "Allowance rollover failed: account=%s period=%s error=%s",
                    grant.account_id, period, exc,
                )
                failed.append(grant.account_id)
        self._allowance.drop_periods_before(period)
        self._coordinator.drop_usage_before(period)
        logger.info(
            "Monthly rollover %s: %d reset, %d failed", period, reset, len(failed),
        )
        return RolloverReport(period=str(period), reset=reset, failed=failed)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_s)
            try:
                await self.run_flush_cycle()
            except Exception:
                logger.exception("Flush cycle failed")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval_s)
            try:
                self.run_cleanup_cycle()
            except Exception:
                logger.exception("Cleanup cycle failed")

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._flush_loop(), name="ledger-flush"),
            asyncio.create_task(self._cleanup_loop(), name="ledger-cleanup"),
        ]
        logger.info(
            "Flush scheduler started: flush every %ss (batch %d), cleanup every %ss",
            self._flush_interval_s, self._max_batch, self._cleanup_interval_s,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Flush scheduler stopped")
