"""
Holdings aggregator: weighted-average-cost replay of the trade ledger.

For each symbol, events are applied in ascending executed_at order:

  buy / init : quantity += qty ; invested += qty * price + fee
  sell       : avg = invested / quantity
               reduce = min(qty, quantity)
               quantity -= reduce ; invested -= reduce * avg  (floored at 0)

Selling never changes the average cost of what remains. A sell larger than
the holding is clipped, so short positions cannot appear. Rows with a
non-positive or non-finite quantity or price are skipped.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.migration import LegacyMigrator
from cryptodash.portfolio.models import (
    CASH_SYMBOL,
    POSITION_CLOSE_EPSILON,
    AssetPerformance,
    Position,
    TradeEvent,
    TradeKind,
    TransactionView,
    normalize_symbol,
)
from cryptodash.utils.logger import get_logger
from cryptodash.utils.numbers import is_positive_finite, to_float

logger = get_logger(__name__)


@dataclass
class _Book:
    quantity: float = 0.0
    invested_usd: float = 0.0

    @property
    def avg_price(self) -> float:
        return self.invested_usd / self.quantity if self.quantity > 0 else 0.0

    def buy(self, qty: float, price: float, fee: float) -> None:
        self.quantity += qty
        self.invested_usd += qty * price + fee

    def sell(self, qty: float) -> float:
        """Reduce the book and return the average cost the sale was booked at."""
        avg = self.avg_price
        reduce_qty = min(qty, self.quantity)
        self.quantity -= reduce_qty
        self.invested_usd = max(self.invested_usd - reduce_qty * avg, 0.0)
        if self.quantity < POSITION_CLOSE_EPSILON:
            self.quantity = 0.0
            self.invested_usd = 0.0
        return avg


def _is_valid(event: TradeEvent) -> bool:
    return is_positive_finite(event.quantity) and is_positive_finite(event.price_usd)


def _fee(event: TradeEvent) -> float:
    return max(to_float(event.fee_usd), 0.0)


def replay_positions(events: Iterable[TradeEvent]) -> Dict[str, Position]:
    """Replay events (already in chronological order) into one Position per symbol.

    Closed symbols are kept with zero quantity; callers decide whether to show them.
    """
    books: Dict[str, _Book] = OrderedDict()
    for event in events:
        symbol = normalize_symbol(event.symbol)
        if symbol == CASH_SYMBOL or not _is_valid(event):
            continue
        book = books.setdefault(symbol, _Book())
        qty = float(event.quantity)
        if event.kind == TradeKind.SELL.value:
            book.sell(qty)
        else:
            book.buy(qty, float(event.price_usd), _fee(event))

    return {
        symbol: Position(
            symbol=symbol,
            quantity=book.quantity,
            invested_usd=book.invested_usd,
            avg_entry_price_usd=book.avg_price,
        )
        for symbol, book in books.items()
    }


def replay_performance(symbol: str, events: Iterable[TradeEvent],
                       current_price: Optional[float] = None) -> AssetPerformance:
    """Replay one symbol's events, also tracking realized profit per sell."""
    book = _Book()
    total_invested = 0.0
    realized = 0.0
    transactions: List[TransactionView] = []

    for event in events:
        if not _is_valid(event):
            continue
        qty = float(event.quantity)
        price = float(event.price_usd)
        fee = _fee(event)
        gross = qty * price

        if event.kind == TradeKind.SELL.value:
            avg = book.sell(qty)
            gain_loss = (price - avg) * qty - fee
            realized += gain_loss
            transactions.append(TransactionView(
                id=event.id, kind=event.kind, executed_at=event.executed_at,
                quantity=qty, price_usd=price, total_usd=gross - fee,
                gain_loss_usd=gain_loss,
                gain_loss_pct=((price - avg) / avg) * 100 if avg > 0 else None,
            ))
        else:
            book.buy(qty, price, fee)
            total_invested += gross + fee
            transactions.append(TransactionView(
                id=event.id, kind=event.kind, executed_at=event.executed_at,
                quantity=qty, price_usd=price, total_usd=gross + fee,
            ))

    # Without a market price the holding is valued at cost
    price_now = current_price if current_price and current_price > 0 else book.avg_price
    holdings_value = book.quantity * price_now
    unrealized = holdings_value - book.invested_usd
    total_profit = realized + unrealized

    transactions.reverse()
    return AssetPerformance(
        symbol=normalize_symbol(symbol),
        quantity=book.quantity,
        invested_usd=book.invested_usd,
        avg_entry_price_usd=book.avg_price,
        total_invested_usd=total_invested,
        current_price_usd=price_now,
        holdings_value_usd=holdings_value,
        realized_profit_usd=realized,
        unrealized_profit_usd=unrealized,
        total_profit_usd=total_profit,
        total_profit_pct=(total_profit / total_invested) * 100 if total_invested > 0 else 0.0,
        transactions=transactions,
    )


class HoldingsService:
    """Async entry points; every read runs the legacy migration first."""

    def __init__(self, store: LedgerStore, migrator: Optional[LegacyMigrator] = None) -> None:
        self._store = store
        self._migrator = migrator or LegacyMigrator(store)

    @property
    def migrator(self) -> LegacyMigrator:
        return self._migrator

    async def ensure_migrated(self, account_id: str) -> None:
        """Run the legacy backfill; failures are logged and the caller reads existing rows."""
        try:
            await self._migrator.migrate(account_id)
        except Exception as e:
            # The read proceeds on whatever canonical rows already exist
            logger.warning("legacy_migration_failed", account_id=account_id, error=str(e))

    async def _events(self, account_id: str, symbol: Optional[str] = None) -> List[TradeEvent]:
        await self.ensure_migrated(account_id)
        return await asyncio.get_running_loop().run_in_executor(
            None, self._store.list_trade_events, account_id, symbol
        )

    async def get_position(self, account_id: str, symbol: str) -> Optional[Position]:
        sym = normalize_symbol(symbol)
        if not sym or sym == CASH_SYMBOL:
            return None
        positions = replay_positions(await self._events(account_id, sym))
        position = positions.get(sym)
        if position is None or position.quantity <= 0:
            return None
        return position

    async def get_all_positions(self, account_id: str) -> List[Position]:
        positions = replay_positions(await self._events(account_id))
        return sorted(
            (p for p in positions.values() if p.quantity > 0),
            key=lambda p: p.symbol,
        )

    async def get_asset_performance(self, account_id: str, symbol: str,
                                    current_price: Optional[float] = None) -> Optional[AssetPerformance]:
        """None when the account has never traded the symbol."""
        sym = normalize_symbol(symbol)
        events = await self._events(account_id, sym)
        if not events:
            return None
        return replay_performance(sym, events, current_price)
