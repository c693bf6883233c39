"""
Payment event adapter.

Turns already-verified payment provider events into ledger operations:

- funds received (one-off credit purchase) -> record the top-up keyed by
  the provider transaction id, then add_credits. A redelivered event
  finds the top-up row already present and credits nothing.
- subscription renewed -> reset the allowance of the renewal's billing
  period to the plan's monthly credits.

Signature verification and event parsing happen in the webhook layer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from credit_ledger.core.errors import InvalidAmount
from credit_ledger.models.ledger import AllowanceRecord, BillingPeriod
from credit_ledger.plan_catalog import PlanCatalog
from credit_ledger.services.charge_coordinator import ChargeCoordinator
from credit_ledger.services.durable_store import DurableStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopupOutcome:
    applied: bool
    credits: int
    balance: Optional[int] = None


class PaymentEventHandler:
    def __init__(
        self,
        coordinator: ChargeCoordinator,
        store: DurableStore,
        catalog: PlanCatalog,
    ) -> None:
        self._coordinator = coordinator
        self._store = store
        self._catalog = catalog

    async def on_funds_received(
        self,
        account_id: str,
        transaction_id: str,
        product_id: Optional[str] = None,
        credits: Optional[int] = None,
        source: str = "topup",
    ) -> TopupOutcome:
        """Credit a purchase once per transaction id.

        The amount is ``credits`` when given, else the catalog value of
        ``product_id``.
        """
        if credits is None:
            if product_id is None:
                raise InvalidAmount(None, "topup")
            credits = self._catalog.credits_for_product(product_id)
        if isinstance(credits, bool) or not isinstance(credits, int) or credits <= 0:
            raise InvalidAmount(credits, "topup")

        # AccountNotFound before anything is recorded
        await self._coordinator.get_balance(account_id)

        if not await self._store.record_topup(
            account_id, transaction_id, credits, product_id=product_id, source=source,
        ):
            logger.info(
                "Top-up already applied, skipping: account=%s transaction=%s",
                account_id, transaction_id,
            )
            return TopupOutcome(applied=False, credits=credits)

        balance = await self._coordinator.add_credits(account_id, credits, source=source)
        return TopupOutcome(applied=True, credits=credits, balance=balance)

    async def on_subscription_renewed(
        self,
        account_id: str,
        plan_id: str,
        subscription_id: Optional[str] = None,
        renewed_at: Optional[datetime] = None,
    ) -> AllowanceRecord:
        plan = self._catalog.plan(plan_id)
        period = BillingPeriod.of(renewed_at or datetime.now(timezone.utc))
        record = await self._coordinator.reset_period(
            account_id, period, plan.monthly_credits, subscription_id,
        )
        logger.info(
            "Subscription renewed: account=%s plan=%s tier=%s period=%s allowance=%d",
            account_id, plan_id, plan.tier, period, plan.monthly_credits,
        )
        return record
