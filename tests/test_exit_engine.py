"""
Exit strategy engine: next-step summaries, readiness, projected schedules
and their agreement with the stateless simulator.
"""

import pytest

from cryptodash.exit_strategy.engine import (
    ExitStrategyEngine,
    executions_by_gain,
    executions_for_coin,
    next_unexecuted_gain,
    project_schedule,
    simulate,
    step_gain,
    target_price,
)
from cryptodash.exit_strategy.models import ExitStrategy, ExitStrategyExecution
from cryptodash.utils.exceptions import NotFoundError

ACCOUNT = "acct-1"


def make_strategy(store, coin="BTC", sell=25.0, gain=30.0, all_coins=False, account_id=ACCOUNT):
    strategy = ExitStrategy(account_id=account_id, coin_symbol="" if all_coins else coin,
                            is_all_coins=all_coins, sell_percent=sell, gain_percent=gain)
    store.create_strategy(strategy)
    return strategy


def fill(strategy_id, gain, qty, price, proceeds, profit, coin="BTC"):
    return ExitStrategyExecution(
        exit_strategy_id=strategy_id, coin_symbol=coin, step_gain_percent=gain,
        target_price_usd=price, executed_price_usd=price, quantity_sold=qty,
        proceeds_usd=proceeds, realized_profit_usd=profit,
    )


# ============================================================================
# Step math
# ============================================================================

class TestStepMath:

    def test_step_gain_rounds_to_two_decimals(self):
        assert step_gain(30, 2) == 60
        assert step_gain(33.333, 3) == 100.0
        assert step_gain(0.125, 1) == 0.13

    def test_target_price_zero_without_entry(self):
        assert target_price(0, 30) == 0
        assert target_price(100, 30) == pytest.approx(130)

    def test_next_unexecuted_gain_skips_executed_levels(self):
        assert next_unexecuted_gain(30, {30.0, 60.0}) == (90.0, False)

    def test_next_unexecuted_gain_flags_exhausted_scan(self):
        executed = {step_gain(10, i) for i in range(1, 4)}
        assert next_unexecuted_gain(10, executed, scan_limit=3) == (10, True)

    def test_executions_for_coin_includes_coinless_rows(self):
        rows = [fill("s", 30, 1, 1, 1, 1, coin="BTC"), fill("s", 30, 1, 1, 1, 1, coin="ETH"),
                fill("s", 60, 1, 1, 1, 1, coin="")]
        assert [r.coin_symbol for r in executions_for_coin(rows, "BTC")] == ["BTC", ""]

    def test_executions_by_gain_uses_rounded_key(self):
        row = fill("s", 29.999, 1, 1, 1, 1)
        assert executions_by_gain([row]) == {30.0: row}


class TestProjectSchedule:

    def test_reference_scenario(self):
        """qty 10 @ 100, sell 25% every +30%."""
        rows = project_schedule(10, 100, 25, 30, max_steps=10)
        first, second = rows[0], rows[1]

        assert first.gain_percent == 30
        assert first.target_price_usd == 130
        assert first.planned_qty_to_sell == 2.5
        assert first.proceeds_usd == 325
        assert first.realized_profit_usd == 75
        assert first.remaining_qty_after == 7.5

        assert second.gain_percent == 60
        assert second.target_price_usd == 160
        assert second.planned_qty_to_sell == 1.875
        assert second.proceeds_usd == 300
        assert second.realized_profit_usd == 112.5
        assert second.remaining_qty_after == 5.625
        assert second.cumulative_realized_profit_usd == 187.5

    def test_remaining_is_non_increasing(self):
        rows = project_schedule(3.7, 42, 40, 15, max_steps=20)
        remaining = [r.remaining_qty_after for r in rows]
        assert remaining == sorted(remaining, reverse=True)

    def test_stops_after_full_liquidation(self):
        rows = project_schedule(10, 100, 100, 30, max_steps=10)
        assert len(rows) == 1
        assert rows[0].remaining_qty_after == 0

    def test_zero_position_yields_single_empty_row(self):
        rows = project_schedule(0, 0, 25, 30, max_steps=10)
        assert len(rows) == 1
        assert rows[0].target_price_usd == 0
        assert rows[0].planned_qty_to_sell == 0

    def test_executed_step_overrides_projection(self):
        execution = fill("s", 30, qty=3, price=140, proceeds=420, profit=120)
        rows = project_schedule(10, 100, 25, 30, max_steps=3, executed={30.0: execution})

        assert rows[0].is_executed is True
        assert rows[0].executed_qty_to_sell == 3
        assert rows[0].planned_qty_to_sell == 2.5
        assert rows[0].proceeds_usd == 420
        assert rows[0].realized_profit_usd == 120
        assert rows[0].remaining_qty_after == 7
        assert rows[1].is_executed is False
        assert rows[1].executed_qty_to_sell is None
        assert rows[1].planned_qty_to_sell == 1.75


# ============================================================================
# Engine (store-backed)
# ============================================================================

class TestAssetSummary:

    @pytest.mark.asyncio
    async def test_pending_with_estimated_price(self, engine, strategy_store, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 30)
        assert summary.status == "pending"
        assert summary.current_price_source == "avg_entry"
        assert summary.current_price_is_estimated is True
        assert summary.current_price_usd == 100
        assert summary.next_gain_percent == 30
        assert summary.target_price_usd == 130
        assert summary.qty_to_sell == 2.5
        assert summary.usd_value_to_sell == 325
        assert summary.distance_to_target_percent == 30

    @pytest.mark.asyncio
    async def test_ready_once_price_reaches_target(self, engine, strategy_store, prices, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)
        prices.prices["BTC"] = 135

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 30)
        assert summary.status == "ready"
        assert summary.current_price_source == "binance"
        assert summary.distance_to_target_percent == 0

    @pytest.mark.asyncio
    async def test_distance_is_rounded(self, engine, strategy_store, prices, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)
        prices.prices["BTC"] = 120

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 30)
        assert summary.distance_to_target_percent == 8.33

    @pytest.mark.asyncio
    async def test_no_position_is_never_ready(self, engine, strategy_store, prices):
        strategy = make_strategy(strategy_store)
        prices.prices["BTC"] = 50_000

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 30)
        assert summary.qty_open == 0
        assert summary.target_price_usd == 0
        assert summary.status == "pending"

    @pytest.mark.asyncio
    async def test_next_step_skips_executed(self, engine, strategy_store, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)
        strategy_store.append_execution(fill(strategy.id, 30, 2.5, 130, 325, 75))

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 30)
        assert summary.next_gain_percent == 60
        assert summary.target_price_usd == 160

    @pytest.mark.asyncio
    async def test_exhausted_scan_is_flagged(self, holdings, strategy_store, prices, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store, gain=10)
        for i in range(1, 4):
            strategy_store.append_execution(fill(strategy.id, 10 * i, 0.1, 100, 10, 1))
        engine = ExitStrategyEngine(holdings, strategy_store, prices, scan_limit=3)

        summary = await engine.build_asset_summary(ACCOUNT, strategy.id, "BTC", 25, 10)
        assert summary.step_scan_exhausted is True
        assert summary.next_gain_percent == 10


class TestStrategySummary:

    @pytest.mark.asyncio
    async def test_empty_all_coins_strategy(self, engine, strategy_store):
        strategy = make_strategy(strategy_store, all_coins=True)

        summary = await engine.build_strategy_summary(ACCOUNT, strategy.id)
        assert summary.total_assets == 0
        assert summary.total_profit_usd == 0
        assert summary.assets == []
        assert summary.is_all_coins is True

    @pytest.mark.asyncio
    async def test_all_coins_follows_current_holdings(self, engine, strategy_store, prices, add_trade):
        strategy = make_strategy(strategy_store, all_coins=True)
        add_trade("BTC", "buy", 10, 100)
        add_trade("ETH", "buy", 4, 50)
        prices.prices.update({"BTC": 131, "ETH": 50})

        summary = await engine.build_strategy_summary(ACCOUNT, strategy.id)
        assert summary.coin_symbols == ["BTC", "ETH"]
        assert summary.total_assets == 2
        # Only the ready coin counts toward the total
        assert summary.total_profit_usd == 325

        add_trade("ETH", "sell", 4, 60)
        summary = await engine.build_strategy_summary(ACCOUNT, strategy.id)
        assert summary.coin_symbols == ["BTC"]

    @pytest.mark.asyncio
    async def test_single_coin_strategy(self, engine, strategy_store, add_trade):
        add_trade("SOL", "buy", 4, 25)
        strategy = make_strategy(strategy_store, coin="SOL")

        summary = await engine.build_strategy_summary(ACCOUNT, strategy.id)
        assert summary.coin_symbols == ["SOL"]
        assert summary.assets[0].qty_open == 4
        assert summary.strategy_type == "percentage"

    @pytest.mark.asyncio
    async def test_other_accounts_strategy_is_not_found(self, engine, strategy_store):
        strategy = make_strategy(strategy_store, account_id="someone-else")
        with pytest.raises(NotFoundError):
            await engine.build_strategy_summary(ACCOUNT, strategy.id)

    @pytest.mark.asyncio
    async def test_list_summaries_newest_first(self, engine, strategy_store):
        older = make_strategy(strategy_store, coin="BTC")
        newer = make_strategy(strategy_store, coin="ETH")

        summaries = await engine.list_strategy_summaries(ACCOUNT)
        assert [s.id for s in summaries] == [newer.id, older.id]


class TestStrategyDetails:

    @pytest.mark.asyncio
    async def test_reference_scenario_rows(self, engine, strategy_store, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)

        details = await engine.build_strategy_details(ACCOUNT, strategy.id)
        rows = details.rows_by_coin["BTC"]
        assert len(rows) == 10
        assert (rows[0].target_price_usd, rows[0].remaining_qty_after) == (130, 7.5)
        assert (rows[1].target_price_usd, rows[1].remaining_qty_after) == (160, 5.625)

    @pytest.mark.asyncio
    async def test_matches_simulator_without_executions(self, engine, holdings, strategy_store, add_trade):
        add_trade("ETH", "buy", 3.3, 1234.56, fee=1.5)
        add_trade("ETH", "buy", 0.7, 2222.22)
        strategy = make_strategy(strategy_store, coin="ETH", sell=17.5, gain=12.34)
        position = await holdings.get_position(ACCOUNT, "ETH")

        details = await engine.build_strategy_details(ACCOUNT, strategy.id, max_steps=25)
        simulated = simulate("ETH", position.quantity, position.avg_entry_price_usd, 17.5, 12.34, 25)
        assert details.rows_by_coin["ETH"] == simulated.rows

    @pytest.mark.asyncio
    async def test_execution_precedence(self, engine, strategy_store, add_trade):
        add_trade("BTC", "buy", 10, 100)
        strategy = make_strategy(strategy_store)
        strategy_store.append_execution(fill(strategy.id, 60, qty=2, price=170,
                                             proceeds=340, profit=140))

        rows = (await engine.build_strategy_details(ACCOUNT, strategy.id)).rows_by_coin["BTC"]
        assert rows[0].is_executed is False
        assert rows[1].is_executed is True
        assert rows[1].proceeds_usd == 340
        assert rows[1].realized_profit_usd == 140
        assert rows[1].remaining_qty_after == 5.5
        assert rows[1].cumulative_realized_profit_usd == 215

    @pytest.mark.asyncio
    async def test_executions_apply_per_coin(self, engine, strategy_store, add_trade):
        add_trade("BTC", "buy", 10, 100)
        add_trade("ETH", "buy", 10, 100)
        strategy = make_strategy(strategy_store, all_coins=True)
        strategy_store.append_execution(fill(strategy.id, 30, 5, 130, 650, 150, coin="BTC"))

        details = await engine.build_strategy_details(ACCOUNT, strategy.id)
        assert details.rows_by_coin["BTC"][0].is_executed is True
        assert details.rows_by_coin["ETH"][0].is_executed is False
        summaries = {a.coin_symbol: a for a in details.summary.assets}
        assert summaries["BTC"].next_gain_percent == 60
        assert summaries["ETH"].next_gain_percent == 30

    @pytest.mark.asyncio
    async def test_missing_strategy(self, engine):
        with pytest.raises(NotFoundError):
            await engine.build_strategy_details(ACCOUNT, "does-not-exist")
