"""
Durable Store — SQL persistence behind the ledger caches
=========================================================

PURPOSE:
    The single place that talks SQL. The ledger cache, allowance tracker
    and payment adapter depend on the DurableStore protocol only, so tests
    and alternative backends can swap the implementation.

    SqlDurableStore runs each operation as one short transaction on a
    worker thread (run_sync), bounded by settings.store_timeout_s. No
    transaction is held across an await.

STATEMENTS:
    - Balances are written as absolute values
      (UPDATE accounts SET credit_balance = :value), last writer wins.
    - Batched balance writes share one transaction; each row is confirmed
      by its own rowcount so a vanished account does not block the batch.
    - Allowance usage is an upsert keyed by (account_id, year, month).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from credit_ledger.config import settings
from credit_ledger.core.async_utils import run_sync
from credit_ledger.core.database import get_engine, get_session_context
from credit_ledger.core.errors import AccountNotFound
from credit_ledger.models.billing import (
    ALLOWANCE_STATUSES,
    Account,
    AllowanceUsage,
    CreditTopup,
    Subscription,
)
from credit_ledger.models.ledger import AllowanceRecord, BillingPeriod, SubscriptionRecord

logger = logging.getLogger(__name__)

__all__ = ["DurableStore", "SqlDurableStore"]


class DurableStore(Protocol):
    async def read_balance(self, account_id: str) -> int: ...

    async def write_balance(self, account_id: str, balance: int) -> bool: ...

    async def write_balances(self, balances: Mapping[str, int]) -> set[str]: ...

    async def read_allowance(
        self, account_id: str, period: BillingPeriod,
    ) -> Optional[AllowanceRecord]: ...

    async def increment_allowance_used(
        self,
        account_id: str,
        period: BillingPeriod,
        delta: int,
        limit: int,
        subscription_ref: Optional[str] = None,
    ) -> None: ...

    async def reset_allowance(
        self,
        account_id: str,
        period: BillingPeriod,
        new_limit: int,
        subscription_ref: Optional[str] = None,
    ) -> None: ...

    async def read_active_subscription(self, account_id: str) -> Optional[SubscriptionRecord]: ...

    async def list_active_subscriptions(self) -> list[SubscriptionRecord]: ...

    async def record_topup(
        self,
        account_id: str,
        external_ref: str,
        credits: int,
        product_id: Optional[str] = None,
        source: str = "topup",
    ) -> bool: ...


def _to_record(row: Subscription) -> SubscriptionRecord:
    return SubscriptionRecord(
        id=row.id,
        account_id=row.account_id,
        plan_type=row.plan_type,
        status=row.status,
        monthly_allowance=row.monthly_allowance,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
    )


class SqlDurableStore:
    """DurableStore over a SQLAlchemy engine (SQLite, PostgreSQL, MySQL)."""

    def __init__(self, engine: Optional[Engine] = None, timeout: Optional[float] = None) -> None:
        self._engine = engine
        self._timeout = timeout if timeout is not None else settings.store_timeout_s

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    async def _run(self, fn, *args):
        return await run_sync(fn, *args, timeout=self._timeout)

    # ------------------------------------------------------------------
    # Wallet balances
    # ------------------------------------------------------------------

    async def read_balance(self, account_id: str) -> int:
        return await self._run(self._read_balance, account_id)

    def _read_balance(self, account_id: str) -> int:
        with get_session_context(self.engine) as session:
            account = session.get(Account, account_id)
            if account is None:
                raise AccountNotFound(account_id)
            return account.credit_balance or 0

    async def write_balance(self, account_id: str, balance: int) -> bool:
        confirmed = await self._run(self._write_balances, {account_id: balance})
        return account_id in confirmed

    async def write_balances(self, balances: Mapping[str, int]) -> set[str]:
        if not balances:
            return set()
        return await self._run(self._write_balances, dict(balances))

    def _write_balances(self, balances: dict[str, int]) -> set[str]:
        t = Account.__table__
        now = datetime.now(timezone.utc)
        confirmed: set[str] = set()
        with self.engine.begin() as conn:
            for account_id, balance in balances.items():
                result = conn.execute(
                    t.update()
                    .where(t.c.id == account_id)
                    .values(credit_balance=balance, updated_at=now)
                )
                if result.rowcount == 1:
                    confirmed.add(account_id)
                else:
                    logger.warning("Balance write matched no row: account=%s", account_id)
        return confirmed

    # ------------------------------------------------------------------
    # Monthly allowance
    # ------------------------------------------------------------------

    async def read_allowance(
        self, account_id: str, period: BillingPeriod,
    ) -> Optional[AllowanceRecord]:
        return await self._run(self._read_allowance, account_id, period)

    def _read_allowance(self, account_id: str, period: BillingPeriod) -> Optional[AllowanceRecord]:
        with get_session_context(self.engine) as session:
            row = session.exec(
                select(AllowanceUsage)
                .where(AllowanceUsage.account_id == account_id)
                .where(AllowanceUsage.usage_year == period.year)
                .where(AllowanceUsage.usage_month == period.month)
            ).first()
            if row is None:
                return None
            return AllowanceRecord(
                used=row.allowance_used,
                limit=row.monthly_allowance,
                subscription_ref=row.subscription_id,
            )

    async def increment_allowance_used(
        self,
        account_id: str,
        period: BillingPeriod,
        delta: int,
        limit: int,
        subscription_ref: Optional[str] = None,
    ) -> None:
        await self._run(
            self._upsert_allowance, account_id, period, delta, limit, subscription_ref, False,
        )

    async def reset_allowance(
        self,
        account_id: str,
        period: BillingPeriod,
        new_limit: int,
        subscription_ref: Optional[str] = None,
    ) -> None:
        await self._run(
            self._upsert_allowance, account_id, period, 0, new_limit, subscription_ref, True,
        )

    def _upsert_allowance(
        self,
        account_id: str,
        period: BillingPeriod,
        amount: int,
        limit: int,
        subscription_ref: Optional[str],
        reset: bool,
    ) -> None:
        """UPDATE the period row, INSERT it when absent.

        A concurrent insert from another process surfaces as IntegrityError;
        the second attempt then finds the row and updates it.
        """
        t = AllowanceUsage.__table__
        key = sa.and_(
            t.c.account_id == account_id,
            t.c.usage_year == period.year,
            t.c.usage_month == period.month,
        )
        for attempt in range(2):
            now = datetime.now(timezone.utc)
            if reset:
                values = {
                    "allowance_used": 0,
                    "monthly_allowance": limit,
                    "allowance_reset_at": now,
                    "updated_at": now,
                }
                if subscription_ref is not None:
                    values["subscription_id"] = subscription_ref
            else:
                values = {
                    "allowance_used": t.c.allowance_used + amount,
                    "updated_at": now,
                }
            try:
                with self.engine.begin() as conn:
                    result = conn.execute(t.update().where(key).values(**values))
                    if result.rowcount == 0:
                        conn.execute(
                            t.insert().values(
                                account_id=account_id,
                                usage_year=period.year,
                                usage_month=period.month,
                                allowance_used=amount,
                                monthly_allowance=limit,
                                subscription_id=subscription_ref,
                                allowance_reset_at=now if reset else None,
                                updated_at=now,
                            )
                        )
                return
            except IntegrityError:
                if attempt:
                    raise
                logger.info(
                    "Allowance row created concurrently, retrying update: account=%s period=%s",
                    account_id, period,
                )

    # ------------------------------------------------------------------
    # Subscriptions (read-only)
    # ------------------------------------------------------------------

    async def read_active_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        return await self._run(self._read_active_subscription, account_id)

    def _read_active_subscription(self, account_id: str) -> Optional[SubscriptionRecord]:
        with get_session_context(self.engine) as session:
            row = session.exec(
                select(Subscription)
                .where(Subscription.account_id == account_id)
                .where(Subscription.status.in_(ALLOWANCE_STATUSES))
                .order_by(Subscription.created_at.desc())
            ).first()
            return _to_record(row) if row is not None else None

    async def list_active_subscriptions(self) -> list[SubscriptionRecord]:
        return await self._run(self._list_active_subscriptions)

    def _list_active_subscriptions(self) -> list[SubscriptionRecord]:
        with get_session_context(self.engine) as session:
            rows = session.exec(
                select(Subscription)
                .where(Subscription.status.in_(ALLOWANCE_STATUSES))
                .order_by(Subscription.account_id, Subscription.created_at.desc())
            ).all()
            # newest subscription per account wins
            latest: dict[str, SubscriptionRecord] = {}
            for row in rows:
                latest.setdefault(row.account_id, _to_record(row))
        return list(latest.values())

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    async def record_topup(
        self,
        account_id: str,
        external_ref: str,
        credits: int,
        product_id: Optional[str] = None,
        source: str = "topup",
    ) -> bool:
        return await self._run(
            self._record_topup, account_id, external_ref, credits, product_id, source,
        )

    def _record_topup(
        self,
        account_id: str,
        external_ref: str,
        credits: int,
        product_id: Optional[str],
        source: str,
    ) -> bool:
        with get_session_context(self.engine) as session:
            session.add(
                CreditTopup(
                    account_id=account_id,
                    external_ref=external_ref,
                    product_id=product_id,
                    credits=credits,
                    source=source,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("Duplicate top-up ignored: ref=%s account=%s", external_ref, account_id)
                return False
        return True

    # ------------------------------------------------------------------
    # Seeding helpers (admin scripts / tests)
    # ------------------------------------------------------------------

    def create_accounts(self, balances: Mapping[str, int]) -> None:
        """Insert account rows synchronously."""
        with get_session_context(self.engine) as session:
            for account_id, balance in balances.items():
                session.add(Account(id=account_id, credit_balance=balance))
            session.commit()

    def add_subscriptions(self, subscriptions: Iterable[Subscription]) -> None:
        with get_session_context(self.engine) as session:
            for sub in subscriptions:
                session.add(sub)
            session.commit()
