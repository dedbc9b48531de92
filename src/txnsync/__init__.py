"""txnsync: incremental transaction sync from Plaid into a local ledger."""

__version__ = "0.1.0"
