from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import Any, Optional, Union

from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.ledger_store import LedgerStore
from cryptodash.portfolio.models import (
    CASH_SYMBOL,
    PORTFOLIO_INIT_NOTE,
    TradeEvent,
    TradeKind,
    cash_delta_usd,
    normalize_symbol,
    normalize_timestamp,
)
from cryptodash.utils.exceptions import NotFoundError, ValidationError
from cryptodash.utils.logger import get_logger

logger = get_logger(__name__)

Timestamp = Union[str, datetime, None]

MAX_LIST_LIMIT = 1000


def _validate_amounts(qty: float, price_usd: float, fee_usd: float) -> None:
    for name, value in (("qty", qty), ("priceUsd", price_usd)):
        if value is None or not math.isfinite(value) or value <= 0:
            raise ValidationError(f"{name} must be a positive number")
    if fee_usd is None or not math.isfinite(fee_usd) or fee_usd < 0:
        raise ValidationError("feeUsd must be zero or positive")


def _validate_symbol(symbol: str) -> str:
    sym = normalize_symbol(symbol)
    if not sym:
        raise ValidationError("symbol is required")
    if sym == CASH_SYMBOL:
        raise ValidationError("CASH is not a tradable asset")
    return sym


def _timestamp(value: Timestamp) -> str:
    try:
        return normalize_timestamp(value)
    except ValueError as e:
        raise ValidationError(f"executedAt is not a valid ISO-8601 timestamp: {value}") from e


def _side(side: str) -> TradeKind:
    side = (side or "").lower()
    if side not in (TradeKind.BUY.value, TradeKind.SELL.value):
        raise ValidationError("side must be 'buy' or 'sell'")
    return TradeKind(side)


class PortfolioService:
    """Validated writes to the trade ledger plus read helpers for the API."""

    def __init__(self, store: LedgerStore, holdings: HoldingsService) -> None:
        self._store = store
        self._holdings = holdings

    async def _run(self, fn, *args: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def record_trade(self, account_id: str, symbol: str, side: str, qty: float,
                           price_usd: float, fee_usd: float = 0.0,
                           executed_at: Timestamp = None, note: Optional[str] = None) -> str:
        kind = _side(side)
        sym = _validate_symbol(symbol)
        _validate_amounts(qty, price_usd, fee_usd)
        await self._holdings.migrator.migrate(account_id)

        event = TradeEvent(
            account_id=account_id,
            symbol=sym,
            kind=kind.value,
            quantity=qty,
            price_usd=price_usd,
            fee_usd=fee_usd,
            cash_delta_usd=cash_delta_usd(kind, qty, price_usd, fee_usd),
            executed_at=_timestamp(executed_at),
            note=note,
        )
        trade_id = await self._run(self._store.append_trade_event, event)
        logger.info("trade_recorded", account_id=account_id, symbol=sym,
                    side=kind.value, qty=qty, price_usd=price_usd)
        return trade_id

    async def add_asset(self, account_id: str, symbol: str, qty: float, price_usd: float,
                        fee_usd: float = 0.0, executed_at: Timestamp = None) -> str:
        """Opening balance for an asset bought outside the tracked ledger."""
        sym = _validate_symbol(symbol)
        _validate_amounts(qty, price_usd, fee_usd)
        await self._holdings.migrator.migrate(account_id)

        event = TradeEvent(
            account_id=account_id,
            symbol=sym,
            kind=TradeKind.INIT.value,
            quantity=qty,
            price_usd=price_usd,
            fee_usd=fee_usd,
            cash_delta_usd=cash_delta_usd(TradeKind.INIT, qty, price_usd, fee_usd),
            executed_at=_timestamp(executed_at),
            note=PORTFOLIO_INIT_NOTE,
        )
        trade_id = await self._run(self._store.append_trade_event, event)
        logger.info("asset_added", account_id=account_id, symbol=sym, qty=qty)
        return trade_id

    async def update_trade(self, account_id: str, trade_id: str, side: str, qty: float,
                           price_usd: float, fee_usd: float = 0.0,
                           executed_at: Timestamp = None) -> None:
        kind = _side(side)
        _validate_amounts(qty, price_usd, fee_usd)
        await self._holdings.migrator.migrate(account_id)

        fields = {
            "kind": kind.value,
            "quantity": qty,
            "price_usd": price_usd,
            "fee_usd": fee_usd,
            "cash_delta_usd": cash_delta_usd(kind, qty, price_usd, fee_usd),
        }
        if executed_at:
            fields["executed_at"] = _timestamp(executed_at)

        updated = await self._run(self._store.update_trade_event, account_id, trade_id, fields)
        if not updated:
            raise NotFoundError("Transaction not found")

    async def delete_trade(self, account_id: str, trade_id: str) -> None:
        await self._holdings.migrator.migrate(account_id)
        deleted = await self._run(self._store.delete_trade_event, account_id, trade_id)
        if not deleted:
            raise NotFoundError("Transaction not found")
        logger.info("trade_deleted", account_id=account_id, trade_id=trade_id)

    async def list_transactions(self, account_id: str, limit: int = 250) -> list[TradeEvent]:
        limit = min(max(limit, 1), MAX_LIST_LIMIT)
        await self._holdings.ensure_migrated(account_id)
        return await self._run(self._store.list_recent_events, account_id, limit)
