from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

from cryptodash.exit_strategy.engine import (
    ExitStrategyEngine,
    simulate,
    validate_max_steps,
    validate_strategy_params,
)
from cryptodash.exit_strategy.models import (
    STRATEGY_TYPE_PERCENTAGE,
    CoinSimulation,
    ExitStrategy,
    StrategyDetails,
    StrategySummary,
)
from cryptodash.exit_strategy.recorder import ExecutionRecorder
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.portfolio.holdings import HoldingsService
from cryptodash.portfolio.models import Position, normalize_symbol
from cryptodash.utils.config import get_settings
from cryptodash.utils.exceptions import NotFoundError, ValidationError
from cryptodash.utils.logger import get_logger

logger = get_logger(__name__)


def _coin_list(coin_symbols: Optional[Iterable[str]]) -> List[str]:
    coins = [normalize_symbol(c) for c in (coin_symbols or [])]
    if not coins or any(not c for c in coins):
        raise ValidationError("coinSymbols must contain at least one non-empty symbol")
    return coins


class ExitStrategyService:
    """
    Facade used by the API: strategy lifecycle, summaries, schedules,
    execution recording and simulation.
    """

    def __init__(self, store: ExitStrategyStore, holdings: HoldingsService,
                 engine: ExitStrategyEngine, recorder: Optional[ExecutionRecorder] = None) -> None:
        self._store = store
        self._holdings = holdings
        self._engine = engine
        self._recorder = recorder or ExecutionRecorder(store, holdings, engine)

    @property
    def engine(self) -> ExitStrategyEngine:
        return self._engine

    @property
    def recorder(self) -> ExecutionRecorder:
        return self._recorder

    async def _run(self, fn, *args):
        return await asyncio.get_running_loop().run_in_executor(None, fn, *args)

    async def create_strategies(self, account_id: str, all_coins: bool,
                                coin_symbols: Optional[Iterable[str]],
                                sell_percent: float, gain_percent: float,
                                strategy_type: str = STRATEGY_TYPE_PERCENTAGE) -> List[StrategySummary]:
        if strategy_type != STRATEGY_TYPE_PERCENTAGE:
            raise ValidationError("strategyType must be 'percentage'")
        validate_strategy_params(sell_percent, gain_percent)

        if all_coins:
            strategies = [ExitStrategy(account_id=account_id, coin_symbol="", is_all_coins=True,
                                       sell_percent=sell_percent, gain_percent=gain_percent)]
        else:
            strategies = [
                ExitStrategy(account_id=account_id, coin_symbol=coin, is_all_coins=False,
                             sell_percent=sell_percent, gain_percent=gain_percent)
                for coin in _coin_list(coin_symbols)
            ]

        ids = await self._run(self._store.create_strategies, strategies)
        logger.info("exit_strategies_created", account_id=account_id, count=len(ids),
                    all_coins=all_coins, sell_percent=sell_percent, gain_percent=gain_percent)
        return list(await asyncio.gather(*(
            self._engine.build_strategy_summary(account_id, sid) for sid in ids
        )))

    async def delete_strategy(self, account_id: str, strategy_id: str) -> None:
        deleted = await self._run(self._store.delete_strategy, strategy_id, account_id)
        if not deleted:
            raise NotFoundError("Exit strategy not found")
        logger.info("exit_strategy_deleted", account_id=account_id, strategy_id=strategy_id)

    async def list_summaries(self, account_id: str) -> List[StrategySummary]:
        return await self._engine.list_strategy_summaries(account_id)

    async def get_details(self, account_id: str, strategy_id: str,
                          max_steps: Optional[int] = None) -> StrategyDetails:
        return await self._engine.build_strategy_details(account_id, strategy_id, max_steps)

    async def record_execution(self, account_id: str, strategy_id: str,
                               coin_symbol: Optional[str], step_gain_percent: float,
                               target_price_usd: float, executed_price_usd: float,
                               quantity_sold: float) -> StrategyDetails:
        return await self._recorder.record_execution(
            account_id, strategy_id, coin_symbol, step_gain_percent,
            target_price_usd, executed_price_usd, quantity_sold,
        )

    async def simulate_for_account(self, account_id: str, all_coins: bool,
                                   coin_symbols: Optional[Iterable[str]],
                                   sell_percent: float, gain_percent: float,
                                   max_steps: Optional[int] = None) -> List[CoinSimulation]:
        """Preview schedules for current holdings without saving anything.

        Requested coins that are not held are simulated from a zero position.
        """
        if max_steps is None:
            max_steps = get_settings().default_schedule_steps
        validate_strategy_params(sell_percent, gain_percent)
        validate_max_steps(max_steps)

        if all_coins:
            positions = await self._holdings.get_all_positions(account_id)
        else:
            coins = _coin_list(coin_symbols)
            found = await asyncio.gather(*(
                self._holdings.get_position(account_id, coin) for coin in coins
            ))
            positions = [
                p if p is not None else Position(symbol=coin, quantity=0.0, invested_usd=0.0,
                                                 avg_entry_price_usd=0.0)
                for coin, p in zip(coins, found)
            ]

        return [
            simulate(p.symbol, p.quantity, p.avg_entry_price_usd, sell_percent,
                     gain_percent, max_steps)
            for p in positions
        ]
