"""
Charge Coordinator Tests
========================

Coverage:
  - Wallet scenario: 1000 -> charge 600 -> 400, charge 500 rejected
  - Split mode: allowance covers, partial allowance + wallet, shortfall breakdown
  - allowance_first mode: whole cost from one source
  - Allowance write failure falls back to the wallet; a timed-out write does not
  - Conservation and non-negative balance
  - Flush triggers: critical threshold, forced, probabilistic, none
  - add_credits write-through (and tolerated flush failure)
  - Per-account serialization of concurrent charges, cleanup while a charge is in flight
  - Usage tier pricing and per-period usage stats
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import PERIOD, make_engine
from credit_ledger.core.errors import (
    AccountNotFound,
    InsufficientCredits,
    InvalidAmount,
    PersistenceFailure,
    UnknownUsageTier,
)


class TestWalletCharges:
    @pytest.mark.asyncio
    async def test_wallet_scenario(self, ledger):
        coord = ledger.coordinator
        result = await coord.charge_credits("bob", 600)
        assert result.source == "wallet"
        assert result.balance == 400

        with pytest.raises(InsufficientCredits) as exc_info:
            await coord.charge_credits("bob", 500)
        err = exc_info.value
        assert (err.required, err.available, err.shortfall) == (500, 400, 100)
        assert await coord.get_balance("bob") == 400

    @pytest.mark.asyncio
    async def test_exact_balance_allowed(self, ledger):
        result = await ledger.coordinator.charge_credits("bob", 1000)
        assert result.balance == 0

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(AccountNotFound):
            await ledger.coordinator.charge_credits("ghost", 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cost", [0, -1, 2.5, "10", None, False])
    async def test_invalid_cost_rejected_before_mutation(self, ledger, cost):
        with pytest.raises(InvalidAmount):
            await ledger.coordinator.charge_credits("bob", cost)
        assert "bob" not in ledger.cache

    @pytest.mark.asyncio
    async def test_conservation(self, ledger):
        coord = ledger.coordinator
        charges = [10, 250, 5, 99]
        adds = [40, 300]
        for cost in charges[:2]:
            await coord.charge_credits("bob", cost)
        for amount in adds:
            await coord.add_credits("bob", amount, source="test")
        for cost in charges[2:]:
            await coord.charge_credits("bob", cost)
        assert await coord.get_balance("bob") == 1000 - sum(charges) + sum(adds)


class TestSplitMode:
    @pytest.mark.asyncio
    async def test_allowance_covers_without_touching_wallet(self, ledger):
        result = await ledger.coordinator.charge_credits("alice", 500)
        assert result.source == "allowance"
        assert (result.from_allowance, result.from_wallet) == (500, 0)
        assert result.allowance_remaining == 2500
        # wallet never read
        assert "alice" not in ledger.cache

    @pytest.mark.asyncio
    async def test_partial_allowance_then_wallet(self, ledger, seeded):
        await seeded.reset_allowance("alice", PERIOD, 3000, "sub_alice")
        await seeded.increment_allowance_used("alice", PERIOD, 2990, 3000)

        result = await ledger.coordinator.charge_credits("alice", 20)
        assert result.source == "wallet"
        assert (result.from_allowance, result.from_wallet) == (10, 10)
        assert result.balance == 990
        assert ledger.allowance.peek("alice", PERIOD).used == 3000
        assert (await seeded.read_allowance("alice", PERIOD)).used == 3000

    @pytest.mark.asyncio
    async def test_shortfall_breakdown_no_side_effects(self, ledger):
        coord = ledger.coordinator
        with pytest.raises(InsufficientCredits) as exc_info:
            await coord.charge_credits("alice", 4500)
        err = exc_info.value
        assert err.available == 4000
        assert err.shortfall == 500
        assert err.public_context()["breakdown"] == {
            "allowance_remaining": 3000,
            "wallet_balance": 1000,
        }
        assert ledger.allowance.peek("alice", PERIOD).used == 0
        assert await coord.get_balance("alice") == 1000

    @pytest.mark.asyncio
    async def test_allowance_write_failure_falls_back_to_wallet(self, ledger, seeded):
        with patch.object(
            seeded, "increment_allowance_used", AsyncMock(side_effect=OSError("down")),
        ):
            result = await ledger.coordinator.charge_credits("alice", 300)
        assert (result.from_allowance, result.from_wallet) == (0, 300)
        assert result.balance == 700
        assert ledger.allowance.peek("alice", PERIOD).used == 0

    @pytest.mark.asyncio
    async def test_fallback_insufficient_leaves_state(self, ledger, seeded):
        with patch.object(
            seeded, "increment_allowance_used", AsyncMock(side_effect=OSError("down")),
        ):
            with pytest.raises(InsufficientCredits):
                await ledger.coordinator.charge_credits("alice", 2000)
        assert await ledger.coordinator.get_balance("alice") == 1000
        assert ledger.allowance.peek("alice", PERIOD).used == 0

    @pytest.mark.asyncio
    async def test_allowance_timeout_does_not_charge_wallet(self, ledger, seeded):
        real_increment = seeded.increment_allowance_used

        async def commit_then_time_out(*args):
            await real_increment(*args)
            raise TimeoutError("increment_allowance_used timed out")

        with patch.object(
            seeded, "increment_allowance_used", AsyncMock(side_effect=commit_then_time_out),
        ):
            with pytest.raises(PersistenceFailure):
                await ledger.coordinator.charge_credits("alice", 300)

        assert await ledger.coordinator.get_balance("alice") == 1000
        assert ledger.cache.peek("alice").dirty is False
        # the committed increment is what the next read sees
        assert (await ledger.coordinator.get_allowance("alice")).used == 300
        assert ledger.coordinator.usage_stats("alice").charges == 0


class TestAllowanceFirstMode:
    @pytest.fixture
    def strict(self, seeded, catalog, clock):
        return make_engine(seeded, catalog, clock, charge_mode="allowance_first")

    @pytest.mark.asyncio
    async def test_whole_cost_from_allowance(self, strict):
        result = await strict.coordinator.charge_credits("alice", 3000)
        assert result.source == "allowance"
        assert result.from_wallet == 0
        assert result.allowance_remaining == 0

    @pytest.mark.asyncio
    async def test_no_split_when_allowance_short(self, strict):
        await strict.coordinator.charge_credits("alice", 2990)
        result = await strict.coordinator.charge_credits("alice", 20)
        assert result.source == "wallet"
        assert (result.from_allowance, result.from_wallet) == (0, 20)
        assert result.balance == 980
        assert strict.allowance.peek("alice", PERIOD).used == 2990

    @pytest.mark.asyncio
    async def test_rejects_when_wallet_short(self, strict):
        with pytest.raises(InsufficientCredits) as exc_info:
            await strict.coordinator.charge_credits("bob", 1001)
        assert exc_info.value.available == 1000
        assert await strict.coordinator.get_balance("bob") == 1000


class TestFlushTriggers:
    @pytest.mark.asyncio
    async def test_no_trigger_leaves_dirty(self, ledger, seeded):
        await ledger.coordinator.charge_credits("bob", 100)
        assert ledger.cache.peek("bob").dirty is True
        assert await seeded.read_balance("bob") == 1000

    @pytest.mark.asyncio
    async def test_critical_threshold_flushes(self, ledger, seeded):
        await ledger.coordinator.charge_credits("bob", 950)
        assert ledger.cache.peek("bob").dirty is False
        assert await seeded.read_balance("bob") == 50

    @pytest.mark.asyncio
    async def test_forced_write_through(self, ledger, seeded):
        await ledger.coordinator.charge_credits("bob", 10, force_write_through=True)
        assert await seeded.read_balance("bob") == 990

    @pytest.mark.asyncio
    async def test_probabilistic_draw(self, seeded, catalog, clock):
        engine = make_engine(seeded, catalog, clock, rng=lambda: 0.01)
        await engine.coordinator.charge_credits("bob", 10)
        assert await seeded.read_balance("bob") == 990

    @pytest.mark.asyncio
    async def test_flush_failure_not_raised(self, ledger, seeded):
        with patch.object(seeded, "write_balance", AsyncMock(side_effect=OSError("down"))):
            result = await ledger.coordinator.charge_credits("bob", 10, force_write_through=True)
        assert result.balance == 990
        assert ledger.cache.peek("bob").dirty is True

    @pytest.mark.asyncio
    async def test_pure_allowance_charge_never_flushes(self, ledger, seeded):
        with patch.object(ledger.cache, "flush_one", AsyncMock()) as flush:
            await ledger.coordinator.charge_credits("alice", 10, force_write_through=True)
        flush.assert_not_called()


class TestAddCredits:
    @pytest.mark.asyncio
    async def test_write_through(self, ledger, seeded):
        balance = await ledger.coordinator.add_credits("bob", 250, source="topup")
        assert balance == 1250
        assert await seeded.read_balance("bob") == 1250
        assert ledger.cache.peek("bob").dirty is False

    @pytest.mark.asyncio
    async def test_flush_failure_stays_dirty(self, ledger, seeded):
        with patch.object(seeded, "write_balance", AsyncMock(side_effect=OSError("down"))):
            balance = await ledger.coordinator.add_credits("bob", 250)
        assert balance == 1250
        assert ledger.cache.peek("bob").dirty is True
        report = await ledger.scheduler.run_flush_cycle()
        assert report.persisted == 1
        assert await seeded.read_balance("bob") == 1250

    @pytest.mark.asyncio
    async def test_invalid_amount(self, ledger):
        with pytest.raises(InvalidAmount):
            await ledger.coordinator.add_credits("bob", 0)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_charges_never_overspend(self, ledger):
        results = await asyncio.gather(
            *(ledger.coordinator.charge_credits("bob", 300) for _ in range(5)),
            return_exceptions=True,
        )
        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientCredits)]
        assert len(succeeded) == 3
        assert len(rejected) == 2
        assert await ledger.coordinator.get_balance("bob") == 100

    @pytest.mark.asyncio
    async def test_concurrent_split_charges_respect_allowance(self, ledger):
        await asyncio.gather(
            *(ledger.coordinator.charge_credits("alice", 1000) for _ in range(4)),
        )
        assert ledger.allowance.peek("alice", PERIOD).used == 3000
        assert await ledger.coordinator.get_balance("alice") == 0

    @pytest.mark.asyncio
    async def test_prune_locks(self, ledger, clock):
        await ledger.coordinator.charge_credits("bob", 1)
        await ledger.scheduler.force_flush()
        clock.advance(4000)
        ledger.cache.evict_stale(1800)
        assert ledger.coordinator.prune_locks() == 1

    @pytest.mark.asyncio
    async def test_prune_keeps_lock_with_waiter(self, ledger):
        coord = ledger.coordinator
        async with coord._locked("bob"):
            waiter = asyncio.create_task(coord.charge_credits("bob", 1))
            await asyncio.sleep(0)
        # released, waiter queued but not resumed yet
        assert coord.is_busy("bob")
        assert coord.prune_locks() == 0

        result = await waiter
        assert result.balance == 999
        assert not coord.is_busy("bob")

    @pytest.mark.asyncio
    async def test_cleanup_during_split_charge_keeps_entry(self, ledger, seeded, clock):
        await seeded.increment_allowance_used("alice", PERIOD, 2990, 3000, "sub_alice")
        await ledger.coordinator.get_balance("alice")
        clock.advance(4000)
        real_increment = seeded.increment_allowance_used
        evicted = []

        async def increment_then_cleanup(*args):
            await real_increment(*args)
            evicted.append(ledger.scheduler.run_cleanup_cycle())

        with patch.object(
            seeded, "increment_allowance_used", AsyncMock(side_effect=increment_then_cleanup),
        ):
            result = await ledger.coordinator.charge_credits("alice", 20)

        assert evicted == [0]
        assert (result.from_allowance, result.from_wallet) == (10, 10)
        assert result.balance == 990
        assert ledger.cache.peek("alice").balance == 990

        # idle again: the next cleanup may evict once flushed
        await ledger.scheduler.force_flush()
        clock.advance(4000)
        assert ledger.scheduler.run_cleanup_cycle() == 1


class TestUsage:
    @pytest.mark.asyncio
    async def test_charge_usage_uses_catalog_price(self, ledger):
        result = await ledger.coordinator.charge_usage("bob", "1day")
        assert result.cost == 3
        assert result.balance == 997

    @pytest.mark.asyncio
    async def test_unknown_usage_tier(self, ledger):
        with pytest.raises(UnknownUsageTier):
            await ledger.coordinator.charge_usage("bob", "1week")
        assert "bob" not in ledger.cache

    @pytest.mark.asyncio
    async def test_usage_stats(self, ledger):
        coord = ledger.coordinator
        await coord.charge_usage("alice", "10min")
        await coord.charge_usage("alice", "10min")
        await coord.charge_usage("alice", "1hour")
        await coord.charge_credits("alice", 3000)

        stats = coord.usage_stats("alice")
        assert (stats.charges, stats.credits) == (4, 3004)
        assert (stats.from_allowance, stats.from_wallet) == (3000, 4)
        assert stats.by_tier == {"10min": 2, "1hour": 1}

    @pytest.mark.asyncio
    async def test_rejected_charge_not_counted(self, ledger):
        with pytest.raises(InsufficientCredits):
            await ledger.coordinator.charge_credits("bob", 5000)
        assert ledger.coordinator.usage_stats("bob").charges == 0

    @pytest.mark.asyncio
    async def test_drop_usage_before(self, ledger):
        await ledger.coordinator.charge_usage("bob", "1hour")
        assert ledger.coordinator.drop_usage_before(PERIOD) == 0
        assert ledger.coordinator.drop_usage_before(PERIOD.next()) == 1
        assert ledger.coordinator.usage_stats("bob", PERIOD).charges == 0


class TestSummary:
    @pytest.mark.asyncio
    async def test_account_summary(self, ledger):
        await ledger.coordinator.charge_credits("alice", 3100)
        summary = await ledger.coordinator.account_summary("alice")
        assert summary.balance == 900
        assert summary.period == "2026-03"
        assert (summary.allowance_used, summary.allowance_limit) == (3000, 3000)
        assert summary.total_available == 900
        assert summary.dirty is True
        assert summary.usage.charges == 1
        assert (summary.usage.from_allowance, summary.usage.from_wallet) == (3000, 100)
