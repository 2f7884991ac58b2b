"""
Exit Strategy Data Models
=========================

ExitStrategy          - persisted scale-out policy for one coin or for all held coins
ExitStrategyExecution - persisted, user-confirmed fill against one gain step
AssetSummary          - next step / readiness for one coin (list view)
StrategySummary       - one strategy with its resolved coins
ScaleOutStepRow       - one row of a projected schedule, never stored
StrategyDetails       - summary plus the projected schedule per coin
CoinSimulation        - stateless what-if schedule for one coin
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional

from cryptodash.portfolio.models import utc_now_iso

STRATEGY_TYPE_PERCENTAGE = "percentage"


class AssetStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"


@dataclass
class ExitStrategy:
    account_id: str
    coin_symbol: str             # "" when is_all_coins
    is_all_coins: bool
    sell_percent: float
    gain_percent: float
    strategy_type: str = STRATEGY_TYPE_PERCENTAGE
    is_active: bool = True
    created_at: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ExitStrategy":
        d2 = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        for flag in ("is_all_coins", "is_active"):
            if flag in d2:
                d2[flag] = bool(d2[flag])
        return cls(**d2)


@dataclass
class ExitStrategyExecution:
    exit_strategy_id: str
    coin_symbol: str             # "" for rows written before per-coin tracking
    step_gain_percent: float
    target_price_usd: float
    executed_price_usd: float
    quantity_sold: float
    proceeds_usd: float
    realized_profit_usd: float
    executed_at: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "ExitStrategyExecution":
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class AssetSummary:
    coin_symbol: str
    qty_open: float
    entry_price_usd: float
    current_price_usd: float
    current_price_source: str
    current_price_is_estimated: bool
    next_gain_percent: float
    target_price_usd: float
    qty_to_sell: float
    usd_value_to_sell: float
    distance_to_target_percent: float
    status: str
    step_scan_exhausted: bool = False

    @property
    def is_ready(self) -> bool:
        return self.status == AssetStatus.READY.value

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StrategySummary:
    id: str
    is_all_coins: bool
    coin_symbols: List[str]
    strategy_type: str
    sell_percent: float
    gain_percent: float
    is_active: bool
    assets: List[AssetSummary] = field(default_factory=list)
    total_assets: int = 0
    total_profit_usd: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ScaleOutStepRow:
    gain_percent: float
    target_price_usd: float
    planned_qty_to_sell: float
    executed_qty_to_sell: Optional[float]
    proceeds_usd: float
    remaining_qty_after: float
    realized_profit_usd: float
    cumulative_realized_profit_usd: float
    is_executed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class StrategyDetails:
    summary: StrategySummary
    rows_by_coin: Dict[str, List[ScaleOutStepRow]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CoinSimulation:
    coin_symbol: str
    qty_open: float
    entry_price_usd: float
    rows: List[ScaleOutStepRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
