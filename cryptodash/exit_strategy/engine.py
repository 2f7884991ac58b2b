"""
Exit Strategy Engine
====================

A percentage strategy sells `sell_percent` of what is still held each time
the price reaches another `gain_percent` step above the average entry price:

    step i : gain   = round(gain_percent * i, 2)
             target = entry * (1 + gain / 100)
             qty    = remaining * sell_percent / 100

Gain levels are compared after rounding to 2 decimals, which is how a
recorded execution is matched to its step.

project_schedule() is the single step generator. The strategy details view
feeds it the recorded executions (historical fills override the projection
for their step); the simulator feeds it none, so a fresh strategy and a
simulation with the same inputs always produce the same rows.
"""

from __future__ import annotations

import asyncio
import math
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from cryptodash.exit_strategy.models import (
    AssetStatus,
    AssetSummary,
    CoinSimulation,
    ExitStrategy,
    ExitStrategyExecution,
    ScaleOutStepRow,
    StrategyDetails,
    StrategySummary,
)
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.models import normalize_symbol
from cryptodash.pricing.resolver import PriceResolver
from cryptodash.utils.config import get_settings
from cryptodash.utils.exceptions import NotFoundError, ValidationError
from cryptodash.utils.logger import get_logger
from cryptodash.utils.numbers import (
    PCT_DIGITS,
    PRICE_DIGITS,
    QTY_DIGITS,
    USD_DIGITS,
    round_half_up,
)

logger = get_logger(__name__)

MAX_SELL_PERCENT = 100.0
MAX_GAIN_PERCENT = 10_000.0


# ─── Step math ───────────────────────────────────────────────────

def step_gain(gain_percent: float, index: int) -> float:
    return round_half_up(gain_percent * index, PCT_DIGITS)


def target_price(entry_price_usd: float, gain: float) -> float:
    return entry_price_usd * (1 + gain / 100) if entry_price_usd > 0 else 0.0


def next_unexecuted_gain(gain_percent: float, executed_gains: Set[float],
                         scan_limit: int = 50) -> Tuple[float, bool]:
    """First step gain with no recorded execution.

    Returns (gain, exhausted). When every step up to scan_limit has been
    executed the base gain_percent is returned with exhausted=True.
    """
    for i in range(1, scan_limit + 1):
        candidate = step_gain(gain_percent, i)
        if candidate not in executed_gains:
            return candidate, False
    return gain_percent, True


def executions_for_coin(executions: Iterable[ExitStrategyExecution],
                        coin_symbol: str) -> List[ExitStrategyExecution]:
    """Fills that apply to one coin; rows recorded without a coin apply to every coin."""
    return [e for e in executions if not e.coin_symbol or e.coin_symbol == coin_symbol]


def executions_by_gain(executions: Iterable[ExitStrategyExecution]) -> Dict[float, ExitStrategyExecution]:
    """Index fills by rounded step gain; a later fill for the same step wins."""
    by_gain: Dict[float, ExitStrategyExecution] = {}
    for e in executions:
        by_gain[round_half_up(e.step_gain_percent, PCT_DIGITS)] = e
    return by_gain


def project_schedule(qty_open: float, entry_price_usd: float, sell_percent: float,
                     gain_percent: float, max_steps: int,
                     executed: Optional[Mapping[float, ExitStrategyExecution]] = None,
                     ) -> List[ScaleOutStepRow]:
    """Step rows from the current position, stopping once nothing remains."""
    executed = executed or {}
    sell_fraction = sell_percent / 100
    remaining = qty_open
    cumulative = 0.0
    rows: List[ScaleOutStepRow] = []

    for i in range(1, max_steps + 1):
        gain = step_gain(gain_percent, i)
        target = target_price(entry_price_usd, gain)
        planned_qty = remaining * sell_fraction if remaining > 0 else 0.0
        fill = executed.get(gain)

        if fill is not None:
            sold = fill.quantity_sold
            proceeds = fill.proceeds_usd
            profit = fill.realized_profit_usd
        else:
            sold = planned_qty
            proceeds = sold * target
            profit = sold * (target - entry_price_usd)

        remaining = max(remaining - sold, 0.0)
        cumulative += profit

        rows.append(ScaleOutStepRow(
            gain_percent=gain,
            target_price_usd=round_half_up(target, PRICE_DIGITS),
            planned_qty_to_sell=round_half_up(planned_qty, QTY_DIGITS),
            executed_qty_to_sell=round_half_up(sold, QTY_DIGITS) if fill is not None else None,
            proceeds_usd=round_half_up(proceeds, USD_DIGITS),
            remaining_qty_after=round_half_up(remaining, QTY_DIGITS),
            realized_profit_usd=round_half_up(profit, USD_DIGITS),
            cumulative_realized_profit_usd=round_half_up(cumulative, USD_DIGITS),
            is_executed=fill is not None,
        ))

        if remaining <= 0:
            break

    return rows


def validate_strategy_params(sell_percent: float, gain_percent: float) -> None:
    if sell_percent is None or not math.isfinite(sell_percent) or not 0 < sell_percent <= MAX_SELL_PERCENT:
        raise ValidationError("sellPercent must be greater than 0 and at most 100")
    if gain_percent is None or not math.isfinite(gain_percent) or not 0 < gain_percent <= MAX_GAIN_PERCENT:
        raise ValidationError("gainPercent must be greater than 0 and at most 10000")


def validate_max_steps(max_steps: int) -> None:
    limit = get_settings().max_schedule_steps
    if isinstance(max_steps, bool) or not isinstance(max_steps, int) or not 1 <= max_steps <= limit:
        raise ValidationError(f"maxSteps must be an integer between 1 and {limit}")


def simulate(symbol: str, qty_open: float, entry_price_usd: float, sell_percent: float,
             gain_percent: float, max_steps: int = 10) -> CoinSimulation:
    """What-if schedule for a position; touches no stored strategy or execution."""
    validate_strategy_params(sell_percent, gain_percent)
    validate_max_steps(max_steps)
    for name, value in (("qtyOpen", qty_open), ("entryPriceUsd", entry_price_usd)):
        if value is None or not math.isfinite(value) or value < 0:
            raise ValidationError(f"{name} must be zero or positive")

    return CoinSimulation(
        coin_symbol=normalize_symbol(symbol),
        qty_open=round_half_up(qty_open, QTY_DIGITS),
        entry_price_usd=round_half_up(entry_price_usd, PRICE_DIGITS),
        rows=project_schedule(qty_open, entry_price_usd, sell_percent, gain_percent, max_steps),
    )


# ─── Engine ──────────────────────────────────────────────────────

class ExitStrategyEngine:
    """Read side of exit strategies: summaries, schedules and readiness."""

    def __init__(self, holdings: HoldingsService, store: ExitStrategyStore,
                 price_resolver: PriceResolver, scan_limit: Optional[int] = None) -> None:
        self._holdings = holdings
        self._store = store
        self._prices = price_resolver
        self._scan_limit = scan_limit or get_settings().next_step_scan_limit

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def _get_strategy(self, account_id: str, strategy_id: str) -> ExitStrategy:
        strategy = await self._run(self._store.get_strategy, strategy_id, account_id)
        if strategy is None:
            raise NotFoundError("Exit strategy not found")
        return strategy

    async def _resolve_coins(self, account_id: str, strategy: ExitStrategy) -> List[str]:
        # All-coins strategies follow whatever is held right now
        if strategy.is_all_coins:
            positions = await self._holdings.get_all_positions(account_id)
            return [p.symbol for p in positions]
        return [normalize_symbol(strategy.coin_symbol)]

    async def _position(self, account_id: str, symbol: str) -> Tuple[float, float]:
        position = await self._holdings.get_position(account_id, symbol)
        if position is None:
            return 0.0, 0.0
        return position.quantity, position.avg_entry_price_usd

    async def build_asset_summary(self, account_id: str, strategy_id: str, symbol: str,
                                  sell_percent: float, gain_percent: float) -> AssetSummary:
        coin = normalize_symbol(symbol)
        qty_open, entry = await self._position(account_id, coin)

        executions = executions_for_coin(
            await self._run(self._store.list_executions, strategy_id), coin
        )
        executed_gains = {round_half_up(e.step_gain_percent, PCT_DIGITS) for e in executions}
        next_gain, exhausted = next_unexecuted_gain(gain_percent, executed_gains, self._scan_limit)
        if exhausted:
            logger.warning("exit_step_scan_exhausted", account_id=account_id,
                           strategy_id=strategy_id, coin=coin, scan_limit=self._scan_limit)

        target = target_price(entry, next_gain)
        quote = await self._prices.resolve_current_price(account_id, coin, entry)
        current = quote.price

        qty_to_sell = qty_open * (sell_percent / 100) if qty_open > 0 else 0.0
        usd_value_to_sell = qty_to_sell * target
        distance = (max(((target - current) / current) * 100, 0.0)
                    if current > 0 and target > 0 else 0.0)
        ready = target > 0 and current >= target

        return AssetSummary(
            coin_symbol=coin,
            qty_open=round_half_up(qty_open, QTY_DIGITS),
            entry_price_usd=round_half_up(entry, PRICE_DIGITS),
            current_price_usd=round_half_up(current, PRICE_DIGITS),
            current_price_source=quote.source.value,
            current_price_is_estimated=quote.is_estimated,
            next_gain_percent=next_gain,
            target_price_usd=round_half_up(target, PRICE_DIGITS),
            qty_to_sell=round_half_up(qty_to_sell, QTY_DIGITS),
            usd_value_to_sell=round_half_up(usd_value_to_sell, USD_DIGITS),
            distance_to_target_percent=round_half_up(distance, PCT_DIGITS),
            status=(AssetStatus.READY if ready else AssetStatus.PENDING).value,
            step_scan_exhausted=exhausted,
        )

    async def _summarize(self, account_id: str, strategy: ExitStrategy) -> StrategySummary:
        coins = await self._resolve_coins(account_id, strategy)
        assets = await asyncio.gather(*(
            self.build_asset_summary(account_id, strategy.id, coin,
                                     strategy.sell_percent, strategy.gain_percent)
            for coin in coins
        ))
        total_profit = sum(a.usd_value_to_sell for a in assets if a.is_ready)

        return StrategySummary(
            id=strategy.id,
            is_all_coins=strategy.is_all_coins,
            coin_symbols=coins,
            strategy_type=strategy.strategy_type,
            sell_percent=strategy.sell_percent,
            gain_percent=strategy.gain_percent,
            is_active=strategy.is_active,
            assets=list(assets),
            total_assets=len(assets),
            total_profit_usd=round_half_up(total_profit, USD_DIGITS),
        )

    async def build_strategy_summary(self, account_id: str, strategy_id: str) -> StrategySummary:
        strategy = await self._get_strategy(account_id, strategy_id)
        return await self._summarize(account_id, strategy)

    async def list_strategy_summaries(self, account_id: str) -> List[StrategySummary]:
        strategies = await self._run(self._store.list_strategies, account_id)
        summaries = await asyncio.gather(*(self._summarize(account_id, s) for s in strategies))
        return list(summaries)

    async def _coin_schedule(self, account_id: str, strategy: ExitStrategy, coin: str,
                             executions: List[ExitStrategyExecution],
                             max_steps: int) -> List[ScaleOutStepRow]:
        qty_open, entry = await self._position(account_id, coin)
        return project_schedule(
            qty_open, entry, strategy.sell_percent, strategy.gain_percent, max_steps,
            executed=executions_by_gain(executions_for_coin(executions, coin)),
        )

    async def build_strategy_details(self, account_id: str, strategy_id: str,
                                     max_steps: Optional[int] = None) -> StrategyDetails:
        if max_steps is None:
            max_steps = get_settings().default_schedule_steps
        validate_max_steps(max_steps)

        strategy = await self._get_strategy(account_id, strategy_id)
        summary = await self._summarize(account_id, strategy)
        executions = await self._run(self._store.list_executions, strategy.id)

        coins = [a.coin_symbol for a in summary.assets]
        schedules = await asyncio.gather(*(
            self._coin_schedule(account_id, strategy, coin, executions, max_steps)
            for coin in coins
        ))
        return StrategyDetails(summary=summary, rows_by_coin=dict(zip(coins, schedules)))
