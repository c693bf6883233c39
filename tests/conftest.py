"""
Shared fixtures for the credit ledger tests.

Every test gets its own SQLite file under tmp_path; the process-wide
engine (DATABASE_URL) points at a throwaway directory so importing the
app never touches /data.
"""

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="credit-ledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/app.db")
os.environ.setdefault("CREDIT_LEDGER_DATA_DIRECTORY", _TMP)
os.environ.setdefault("CREDIT_LEDGER_LOG_DIR", os.path.join(_TMP, "logs"))

import pytest

from credit_ledger.config import Settings
from credit_ledger.core.database import build_engine, init_db
from credit_ledger.models.billing import Subscription
from credit_ledger.models.ledger import BillingPeriod
from credit_ledger.plan_catalog import load_plan_catalog
from credit_ledger.services.durable_store import SqlDurableStore
from credit_ledger.services.ledger_engine import LedgerEngine

PERIOD = BillingPeriod(2026, 3)


class FakeClock:
    """Deterministic replacement for time.time."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path}/ledger.db")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(db_engine):
    return SqlDurableStore(db_engine, timeout=5)


@pytest.fixture
def catalog():
    return load_plan_catalog(required_tiers=("premium", "premium_plus"))


@pytest.fixture
def seeded(store):
    """Accounts: 'alice' 1000 (premium, 3000/month), 'bob' 1000 (no plan)."""
    store.create_accounts({"alice": 1000, "bob": 1000})
    store.add_subscriptions([
        Subscription(id="sub_alice", account_id="alice", plan_type="premium", status="active"),
    ])
    return store


def make_engine(store, catalog, clock, charge_mode="split", rng=lambda: 1.0, **overrides):
    """LedgerEngine pinned to PERIOD, no probabilistic flushes unless rng says so."""
    settings = Settings(charge_mode=charge_mode, **overrides)
    return LedgerEngine(
        store,
        catalog,
        settings,
        clock=clock,
        rng=rng,
        period_fn=lambda: PERIOD,
    )


@pytest.fixture
def ledger(seeded, catalog, clock):
    return make_engine(seeded, catalog, clock)
