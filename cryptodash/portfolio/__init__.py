"""
Portfolio Ledger and Holdings
=============================

  models.py        - TradeEvent, Position, legacy record and performance dataclasses
  ledger_store.py  - SQLite trade ledger (canonical rows plus legacy journal rows)
  migration.py     - idempotent backfill of legacy rows into the ledger
  holdings.py      - weighted-average-cost replay into positions
  service.py       - validated ledger writes
"""

from cryptodash.portfolio.models import (
    AssetPerformance,
    LegacyJournalRecord,
    Position,
    TradeEvent,
    TradeKind,
    TransactionView,
)
from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.migration import LegacyMigrator
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.service import PortfolioService

__all__ = [
    "AssetPerformance", "LegacyJournalRecord", "Position", "TradeEvent",
    "TradeKind", "TransactionView",
    "LedgerStore", "LegacyMigrator", "HoldingsService", "PortfolioService",
]
