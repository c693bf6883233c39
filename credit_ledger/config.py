"""
Credit Ledger Configuration
===========================

PURPOSE:
    Pydantic-Settings based configuration for the credit ledger engine.
    All settings can be overridden via environment variables
    (CREDIT_LEDGER_ prefix). The SQL backend is selected separately via
    DATABASE_URL (see core/database.py).

FLUSH POLICY:
    Wallet balances are cached in memory and written back on a fixed
    interval. Between scheduled flushes three backstops persist a single
    account immediately:
      - the post-charge balance drops below critical_balance_threshold
      - the caller requests write-through
      - a random draw below probabilistic_flush_chance
"""

import logging
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Process-wide settings, loaded once at import time."""

    app_name: str = "credit-ledger"
    debug: bool = False

    # Scheduled write-back of dirty wallet entries
    flush_interval_s: int = 300          # 5 minutes
    max_flush_batch: int = 50            # rows per flush transaction

    # Cache cleanup (eviction of clean, stale entries)
    cleanup_interval_s: int = 1800       # 30 minutes
    stale_entry_age_s: int = 1800

    # Opportunistic flush during charges
    critical_balance_threshold: int = 100
    probabilistic_flush_chance: float = 0.05

    # "split": draw what the allowance can cover, the remainder from the wallet.
    # "allowance_first": the whole cost comes from one source or the other.
    charge_mode: Literal["split", "allowance_first"] = "split"

    # Upper bound for a single durable store call (seconds)
    store_timeout_s: float = 10.0

    # Plan catalog (plan/product → credits). Defaults to the bundled plans.yaml.
    plan_catalog_path: Optional[str] = None
    # Tiers the catalog must define, otherwise startup fails.
    required_tiers: List[str] = ["premium", "premium_plus"]

    # Storage & logs
    data_directory: str = "/data"
    log_dir: str = "logs"
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_prefix = "CREDIT_LEDGER_"


settings = Settings()

if settings.charge_mode == "allowance_first":
    logger.info("Charge mode: allowance_first (no split charges)")
