"""
Shared fixtures: throwaway SQLite stores, a fixed-price resolver and a
trade-entry helper that stamps each trade one minute after the previous one.
"""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from cryptodash.exit_strategy.engine import ExitStrategyEngine
from cryptodash.exit_strategy.service import ExitStrategyService
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.models import TradeEvent
from cryptodash.portfolio.service import PortfolioService
from cryptodash.pricing.resolver import PriceQuote, PriceSource

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class StubPriceResolver:
    """Live price for symbols in `prices`; everything else degrades to the fallback."""

    def __init__(self, prices: Optional[dict] = None) -> None:
        self.prices = dict(prices or {})
        self.calls = []

    async def resolve_current_price(self, account_id: str, symbol: str,
                                    fallback_price: float) -> PriceQuote:
        self.calls.append((account_id, symbol, fallback_price))
        if symbol in self.prices:
            return PriceQuote(price=self.prices[symbol], source=PriceSource.BINANCE,
                              is_estimated=False)
        return PriceQuote(price=max(fallback_price, 0.0), source=PriceSource.AVG_ENTRY,
                          is_estimated=True)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cryptodash.db")


@pytest.fixture
def ledger(db_path):
    store = LedgerStore(db_path)
    yield store
    store.close()


@pytest.fixture
def strategy_store(db_path):
    store = ExitStrategyStore(db_path)
    yield store
    store.close()


@pytest.fixture
def holdings(ledger) -> HoldingsService:
    return HoldingsService(ledger)


@pytest.fixture
def portfolio(ledger, holdings) -> PortfolioService:
    return PortfolioService(ledger, holdings)


@pytest.fixture
def prices() -> StubPriceResolver:
    return StubPriceResolver()


@pytest.fixture
def engine(holdings, strategy_store, prices) -> ExitStrategyEngine:
    return ExitStrategyEngine(holdings, strategy_store, prices)


@pytest.fixture
def exit_service(strategy_store, holdings, engine) -> ExitStrategyService:
    return ExitStrategyService(strategy_store, holdings, engine)


@pytest.fixture
def add_trade(ledger):
    """add_trade(symbol, kind, qty, price, fee=0.0, account_id="acct-1") -> trade id"""
    clock = itertools.count()

    def _add(symbol: str, kind: str, qty: float, price: float, fee: float = 0.0,
             account_id: str = "acct-1", executed_at: Optional[str] = None) -> str:
        at = executed_at or (BASE_TIME + timedelta(minutes=next(clock))).isoformat(
            timespec="microseconds")
        return ledger.append_trade_event(TradeEvent(
            account_id=account_id, symbol=symbol, kind=kind, quantity=qty,
            price_usd=price, fee_usd=fee, executed_at=at,
        ))

    return _add
