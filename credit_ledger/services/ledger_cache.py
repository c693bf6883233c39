"""
Ledger Cache — In-memory write-back cache over wallet balances
===============================================================

PURPOSE:
    Owns every in-process read and write of wallet balances.
    1. **get_balance()** — cache-first; a miss hydrates a clean entry from
       the durable store (AccountNotFound if the account has no row).
    2. **set_balance()** — synchronous in-memory mutation, marks the entry
       dirty. Callers apply it before their next suspension point, so
       mutations of one account are applied in arrival order.
    3. **flush_one() / flush_all_dirty()** — persist dirty entries. A
       flush never raises: failures are logged and the entry stays dirty
       for the next cycle.
    4. **evict_stale()** — drop clean entries not synced for max_age.
       Dirty entries, and accounts the caller reports busy, are never
       evicted.

TIMESTAMPS:
    last_synced_at  — last confirmed agreement with the durable store
                      (hydration or successful flush). Drives eviction.
    last_mutated_at — last in-memory change. Orders flush batches and
                      feeds stats().

CONCURRENT FLUSH:
    A flush persists the value current when it starts. Each mutation
    bumps the entry's version; the dirty flag is cleared only when the
    version is unchanged after the write, so a charge landing while the
    write is in flight is not lost.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from credit_ledger.core.errors import LedgerError, PersistenceFailure
from credit_ledger.services.durable_store import DurableStore

logger = logging.getLogger(__name__)

__all__ = ["BalanceEntry", "FlushReport", "LedgerCache"]


@dataclass
class BalanceEntry:
    balance: int
    last_synced_at: float
    last_mutated_at: float
    dirty: bool = False
    version: int = 0


@dataclass(frozen=True)
class FlushReport:
    """Outcome of one flush pass."""

    attempted: int = 0
    persisted: int = 0
    failed: int = 0
    remaining_dirty: int = 0


class LedgerCache:
    """Write-back balance cache. One instance per process."""

    def __init__(
        self,
        store: DurableStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._clock = clock
        self._entries: Dict[str, BalanceEntry] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, account_id: str) -> int:
        entry = self._entries.get(account_id)
        if entry is None:
            entry = await self._hydrate(account_id)
        return entry.balance

    async def _hydrate(self, account_id: str) -> BalanceEntry:
        try:
            balance = await self._store.read_balance(account_id)
        except LedgerError:
            raise
        except Exception as exc:
            logger.error("Balance load failed: account=%s error=%s", account_id, exc)
            raise PersistenceFailure("read_balance", exc) from exc

        now = self._clock()
        # Another coroutine may have hydrated (and mutated) meanwhile; keep its entry.
        entry = self._entries.setdefault(
            account_id,
            BalanceEntry(balance=balance, last_synced_at=now, last_mutated_at=now),
        )
        logger.debug("Balance cache hydrated: account=%s balance=%d", account_id, entry.balance)
        return entry

    def peek(self, account_id: str) -> Optional[BalanceEntry]:
        """Copy of the cached entry, or None. Never touches the store."""
        entry = self._entries.get(account_id)
        return replace(entry) if entry is not None else None

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def dirty_accounts(self) -> List[str]:
        """Dirty account ids, least recently mutated first."""
        dirty = [(e.last_mutated_at, aid) for aid, e in self._entries.items() if e.dirty]
        return [aid for _, aid in sorted(dirty)]

    @property
    def dirty_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.dirty)

    def stats(self) -> dict:
        now = self._clock()
        dirty_ages = [now - e.last_mutated_at for e in self._entries.values() if e.dirty]
        return {
            "entries": len(self._entries),
            "dirty": len(dirty_ages),
            "oldest_dirty_age_s": round(max(dirty_ages), 3) if dirty_ages else 0.0,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def set_balance(self, account_id: str, new_balance: int) -> None:
        """Replace the cached balance and mark it dirty. No I/O."""
        entry = self._entries.get(account_id)
        if entry is None:
            raise KeyError(f"account {account_id!r} is not cached; call get_balance first")
        if new_balance < 0:
            raise ValueError(f"balance cannot go negative: account={account_id} balance={new_balance}")
        entry.balance = new_balance
        entry.dirty = True
        entry.version += 1
        entry.last_mutated_at = self._clock()

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush_one(self, account_id: str) -> bool:
        """Persist one entry if dirty. Returns False only on a failed write."""
        entry = self._entries.get(account_id)
        if entry is None or not entry.dirty:
            return True

        balance, version = entry.balance, entry.version
        try:
            confirmed = await self._store.write_balance(account_id, balance)
        except Exception as exc:
            logger.error(
                "Balance flush failed, will retry: account=%s balance=%d error=%s",
                account_id, balance, exc,
            )
            return False

        if not confirmed:
            logger.error("Balance flush not confirmed, will retry: account=%s", account_id)
            return False

        self._mark_persisted(account_id, version)
        logger.debug("Flushed balance: account=%s balance=%d", account_id, balance)
        return True

    async def flush_all_dirty(self, max_batch: int) -> FlushReport:
        """Persist up to max_batch dirty entries in one store transaction."""
        batch_ids = self.dirty_accounts()[:max_batch]
        if not batch_ids:
            return FlushReport()

        snapshot = {aid: (self._entries[aid].balance, self._entries[aid].version) for aid in batch_ids}
        try:
            confirmed = await self._store.write_balances(
                {aid: balance for aid, (balance, _) in snapshot.items()}
            )
        except Exception as exc:
            logger.error(
                "Batch flush failed, %d entries stay dirty: error=%s", len(snapshot), exc,
            )
            return FlushReport(
                attempted=len(snapshot),
                failed=len(snapshot),
                remaining_dirty=self.dirty_count,
            )

        for aid in confirmed:
            if aid in snapshot:
                self._mark_persisted(aid, snapshot[aid][1])

        report = FlushReport(
            attempted=len(snapshot),
            persisted=len(confirmed),
            failed=len(snapshot) - len(confirmed),
            remaining_dirty=self.dirty_count,
        )
        logger.info(
            "Batch flushed %d/%d balances (%d still dirty)",
            report.persisted, report.attempted, report.remaining_dirty,
        )
        return report

    def _mark_persisted(self, account_id: str, version: int) -> None:
        entry = self._entries.get(account_id)
        if entry is None:
            return
        entry.last_synced_at = self._clock()
        if entry.version == version:
            entry.dirty = False

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_stale(
        self,
        max_age: float,
        is_busy: Optional[Callable[[str], bool]] = None,
    ) -> int:
        """Remove clean entries whose last sync is older than max_age seconds.

        Accounts for which is_busy(account_id) is true are kept: a charge
        may have read the balance and not yet written it back.
        """
        cutoff = self._clock() - max_age
        stale = [
            aid for aid, e in self._entries.items()
            if not e.dirty and e.last_synced_at < cutoff
            and not (is_busy and is_busy(aid))
        ]
        for aid in stale:
            del self._entries[aid]
        if stale:
            logger.info("Balance cache cleanup: evicted %d, %d remaining", len(stale), len(self._entries))
        return len(stale)
