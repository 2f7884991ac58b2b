from __future__ import annotations

import asyncio
import math
from typing import Optional

from cryptodash.exit_strategy.engine import ExitStrategyEngine
from cryptodash.exit_strategy.models import ExitStrategyExecution, StrategyDetails
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.models import normalize_symbol
from cryptodash.utils.exceptions import NotFoundError, ValidationError
from cryptodash.utils.logger import get_logger

logger = get_logger(__name__)


class ExecutionRecorder:
    """Records a confirmed scale-out fill and returns the recomputed schedule."""

    def __init__(self, store: ExitStrategyStore, holdings: HoldingsService,
                 engine: ExitStrategyEngine) -> None:
        self._store = store
        self._holdings = holdings
        self._engine = engine

    async def record_execution(self, account_id: str, strategy_id: str,
                               coin_symbol: Optional[str], step_gain_percent: float,
                               target_price_usd: float, executed_price_usd: float,
                               quantity_sold: float) -> StrategyDetails:
        for name, value in (
            ("stepGainPercent", step_gain_percent),
            ("targetPriceUsd", target_price_usd),
            ("executedPriceUsd", executed_price_usd),
            ("quantitySold", quantity_sold),
        ):
            if value is None or not math.isfinite(value) or value <= 0:
                raise ValidationError(f"{name} must be a positive number")

        loop = asyncio.get_running_loop()
        strategy = await loop.run_in_executor(None, self._store.get_strategy, strategy_id, account_id)
        if strategy is None:
            raise NotFoundError()

        if strategy.is_all_coins:
            coin = normalize_symbol(coin_symbol or "")
            if not coin:
                raise ValidationError("coinSymbol is required for all-coins strategies")
        else:
            coin = normalize_symbol(strategy.coin_symbol)

        # Profit is booked against the average cost at the time of recording
        position = await self._holdings.get_position(account_id, coin)
        entry = position.avg_entry_price_usd if position else 0.0

        execution = ExitStrategyExecution(
            exit_strategy_id=strategy.id,
            coin_symbol=coin,
            step_gain_percent=step_gain_percent,
            target_price_usd=target_price_usd,
            executed_price_usd=executed_price_usd,
            quantity_sold=quantity_sold,
            proceeds_usd=quantity_sold * executed_price_usd,
            realized_profit_usd=quantity_sold * (executed_price_usd - entry),
        )
        await loop.run_in_executor(None, self._store.append_execution, execution)
        logger.info("exit_execution_recorded", account_id=account_id, strategy_id=strategy.id,
                    coin=coin, step_gain_percent=step_gain_percent,
                    quantity_sold=quantity_sold, realized_profit_usd=execution.realized_profit_usd)

        return await self._engine.build_strategy_details(account_id, strategy.id)
