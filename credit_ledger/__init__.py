"""Credit ledger: cached wallet balances, monthly allowances and flush scheduling."""

__version__ = "0.1.0"
