"""
LedgerEngine — wires store, caches, coordinator and scheduler together.

One instance per process. The FastAPI lifespan builds it with
build_ledger_engine(), calls start() and, on the way down, shutdown(),
which stops the loops and drains every dirty balance.
"""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, Optional

from credit_ledger.config import Settings, settings as default_settings
from credit_ledger.models.ledger import BillingPeriod
from credit_ledger.plan_catalog import PlanCatalog, load_plan_catalog
from credit_ledger.services.allowance_tracker import AllowanceTracker
from credit_ledger.services.charge_coordinator import ChargeCoordinator
from credit_ledger.services.durable_store import DurableStore, SqlDurableStore
from credit_ledger.services.flush_scheduler import FlushScheduler
from credit_ledger.services.ledger_cache import FlushReport, LedgerCache
from credit_ledger.services.payment_events import PaymentEventHandler

logger = logging.getLogger(__name__)


class LedgerEngine:
    def __init__(
        self,
        store: DurableStore,
        catalog: PlanCatalog,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        period_fn: Callable[[], BillingPeriod] = BillingPeriod.current,
    ) -> None:
        settings = settings or default_settings
        self.store = store
        self.catalog = catalog
        self.cache = LedgerCache(store, clock=clock)
        self.allowance = AllowanceTracker(store, catalog)
        self.coordinator = ChargeCoordinator(
            self.cache,
            self.allowance,
            catalog,
            mode=settings.charge_mode,
            critical_threshold=settings.critical_balance_threshold,
            flush_chance=settings.probabilistic_flush_chance,
            rng=rng,
            period_fn=period_fn,
        )
        self.scheduler = FlushScheduler(
            self.cache,
            self.allowance,
            self.coordinator,
            flush_interval_s=settings.flush_interval_s,
            cleanup_interval_s=settings.cleanup_interval_s,
            stale_entry_age_s=settings.stale_entry_age_s,
            max_batch=settings.max_flush_batch,
            period_fn=period_fn,
        )
        self.payments = PaymentEventHandler(self.coordinator, store, catalog)

    async def start(self) -> None:
        self.scheduler.start()
        logger.info("Ledger engine started (charge mode: %s)", self.coordinator.mode)

    async def shutdown(self) -> FlushReport:
        await self.scheduler.stop()
        report = await self.scheduler.force_flush()
        logger.info(
            "Ledger engine stopped: flushed %d balances, %d left dirty",
            report.persisted, report.remaining_dirty,
        )
        return report


def build_ledger_engine(
    settings: Optional[Settings] = None,
    store: Optional[DurableStore] = None,
) -> LedgerEngine:
    """Load the plan catalog (fails fast on bad config) and build the engine."""
    settings = settings or default_settings
    catalog = load_plan_catalog(settings.plan_catalog_path, settings.required_tiers)
    return LedgerEngine(store or SqlDurableStore(), catalog, settings)
