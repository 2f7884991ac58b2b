"""Request bodies. The wire format is camelCase; fields are snake_case in Python."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateStrategyBody(CamelModel):
    all_coins: bool
    coin_symbols: Optional[List[str]] = None
    strategy_type: str = "percentage"
    sell_percent: float
    gain_percent: float


class SimulateBody(CamelModel):
    all_coins: bool
    coin_symbols: Optional[List[str]] = None
    sell_percent: float
    gain_percent: float
    max_steps: Optional[int] = None


class ExecutionBody(CamelModel):
    coin_symbol: Optional[str] = None    # required for all-coins strategies
    step_gain_percent: float
    target_price_usd: float
    executed_price_usd: float
    quantity_sold: float


class TradeBody(CamelModel):
    symbol: str
    side: str
    qty: float
    price_usd: float
    fee_usd: float = 0.0
    executed_at: Optional[str] = None
    note: Optional[str] = None


class AddAssetBody(CamelModel):
    symbol: str
    qty: float
    price_usd: float
    fee_usd: float = 0.0
    executed_at: Optional[str] = None


class UpdateTradeBody(CamelModel):
    side: str
    qty: float
    price_usd: float
    fee_usd: float = 0.0
    executed_at: Optional[str] = None
