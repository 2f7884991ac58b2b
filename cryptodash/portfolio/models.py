"""
Portfolio Data Models
=====================

TradeEvent          - canonical ledger row (buy / sell / init)
LegacyJournalRecord - old-format journal row, read only by the migration adapter
Position            - derived weighted-average-cost holding, never stored
AssetPerformance    - per-asset view with realized / unrealized profit

All models are dataclasses with to_dict()/from_dict() for SQLite storage.
Timestamps are ISO-8601 strings.
"""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Union

CASH_SYMBOL = "CASH"

# A replay that leaves less than this much of an asset treats the position as
# fully closed and zeroes both quantity and invested cost (float drift guard).
POSITION_CLOSE_EPSILON = 1e-10

# Legacy note markers recognised by the migration adapter
LEGACY_SPOT_TX_PREFIX = "[PORTFOLIO_SPOT_TX]"
LEGACY_PORTFOLIO_ADD = "[PORTFOLIO_ADD]"
LEGACY_JE_PORTFOLIO = "[JE:PORTFOLIO]"
MIGRATED_NOTE_PREFIX = "[MIGRATED_JE:"
PORTFOLIO_INIT_NOTE = "[PORTFOLIO_INIT]"


class TradeKind(str, Enum):
    BUY = "buy"
    SELL = "sell"
    INIT = "init"


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def normalize_timestamp(value: Union[str, datetime, None]) -> str:
    """Canonical UTC ISO-8601 with fixed microsecond precision.

    Stored timestamps are compared as text, so every row must share one format.
    Naive values are taken as UTC.
    """
    if value is None or value == "":
        return utc_now_iso()
    if isinstance(value, str):
        value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def migrated_note(legacy_id: str) -> str:
    return f"{MIGRATED_NOTE_PREFIX}{legacy_id}]"


def cash_delta_usd(kind: TradeKind, qty: float, price_usd: float, fee_usd: float) -> float:
    """Cash leg of a trade: sells bring proceeds in, buys and inits pay cost plus fee."""
    if kind == TradeKind.SELL:
        return price_usd * qty - fee_usd
    return -(price_usd * qty + fee_usd)


@dataclass
class TradeEvent:
    """One canonical ledger entry."""
    account_id: str
    symbol: str
    kind: str                    # TradeKind value
    quantity: float
    price_usd: float
    fee_usd: float = 0.0
    executed_at: str = field(default_factory=utc_now_iso)
    note: Optional[str] = None
    cash_delta_usd: float = 0.0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "TradeEvent":
        return cls(**{k: v for k, v in d.items() if k in cls.__dataclass_fields__})


@dataclass
class LegacyJournalRecord:
    """Old-format spot journal row that predates the canonical ledger."""
    account_id: str
    asset_name: str
    side: str                    # "buy" / "sell"
    amount: float
    entry_price: float
    trade_datetime: str
    buy_fee: float = 0.0
    sell_fee: float = 0.0
    notes_entry: str = ""
    is_spot: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "LegacyJournalRecord":
        d2 = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "is_spot" in d2:
            d2["is_spot"] = bool(d2["is_spot"])
        return cls(**d2)


@dataclass
class Position:
    """Open quantity and weighted-average cost of one asset."""
    symbol: str
    quantity: float
    invested_usd: float
    avg_entry_price_usd: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TransactionView:
    id: str
    kind: str
    executed_at: str
    quantity: float
    price_usd: float
    total_usd: float
    gain_loss_usd: Optional[float] = None
    gain_loss_pct: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AssetPerformance:
    symbol: str
    quantity: float
    invested_usd: float
    avg_entry_price_usd: float
    total_invested_usd: float
    current_price_usd: float
    holdings_value_usd: float
    realized_profit_usd: float
    unrealized_profit_usd: float
    total_profit_usd: float
    total_profit_pct: float
    transactions: List[TransactionView] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)
