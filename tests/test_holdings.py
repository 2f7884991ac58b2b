"""Weighted-average-cost replay and the holdings service."""

import math
from unittest.mock import AsyncMock

import pytest

from cryptodash.portfolio.holdings import replay_performance, replay_positions
from cryptodash.portfolio.models import POSITION_CLOSE_EPSILON, TradeEvent

ACCOUNT = "acct-1"


def ev(symbol, kind, qty, price, fee=0.0, n=0):
    return TradeEvent(account_id=ACCOUNT, symbol=symbol, kind=kind, quantity=qty,
                      price_usd=price, fee_usd=fee,
                      executed_at=f"2024-01-01T00:{n:02d}:00.000000+00:00")


# ============================================================================
# Pure replay
# ============================================================================

class TestReplayPositions:

    def test_sell_keeps_average_cost(self):
        """Buy 10 @ 100, sell 4 @ 150 -> 6 left at avg 100, invested 600."""
        pos = replay_positions([ev("BTC", "buy", 10, 100), ev("BTC", "sell", 4, 150)])["BTC"]
        assert pos.quantity == pytest.approx(6)
        assert pos.invested_usd == pytest.approx(600)
        assert pos.avg_entry_price_usd == pytest.approx(100)

    def test_average_after_two_buys_then_sell(self):
        events = [
            ev("ETH", "buy", 1, 1000),
            ev("ETH", "buy", 3, 2000),
            ev("ETH", "sell", 2, 5000),
        ]
        pos = replay_positions(events)["ETH"]
        assert pos.avg_entry_price_usd == pytest.approx(1750)
        assert pos.quantity == pytest.approx(2)
        assert pos.invested_usd == pytest.approx(3500)

    def test_fee_increases_cost_basis(self):
        pos = replay_positions([ev("SOL", "buy", 10, 20, fee=5)])["SOL"]
        assert pos.invested_usd == pytest.approx(205)
        assert pos.avg_entry_price_usd == pytest.approx(20.5)

    def test_init_behaves_like_buy(self):
        a = replay_positions([ev("ADA", "init", 100, 0.5)])["ADA"]
        b = replay_positions([ev("ADA", "buy", 100, 0.5)])["ADA"]
        assert a == b

    def test_full_liquidation_zeroes_position(self):
        pos = replay_positions([ev("BTC", "buy", 0.3, 30000), ev("BTC", "sell", 0.3, 40000)])["BTC"]
        assert pos.quantity == 0
        assert pos.invested_usd == 0

    def test_oversell_clips_to_zero(self):
        pos = replay_positions([ev("BTC", "buy", 2, 100), ev("BTC", "sell", 5, 120)])["BTC"]
        assert pos.quantity == 0
        assert pos.invested_usd == 0

    def test_sell_without_position_is_noop(self):
        pos = replay_positions([ev("XRP", "sell", 5, 1)])["XRP"]
        assert pos.quantity == 0
        assert pos.avg_entry_price_usd == 0

    def test_residual_below_epsilon_closes_position(self):
        residual = POSITION_CLOSE_EPSILON / 10
        pos = replay_positions([ev("BTC", "buy", 1, 100), ev("BTC", "sell", 1 - residual, 100)])["BTC"]
        assert pos.quantity == 0
        assert pos.invested_usd == 0

    def test_residual_above_epsilon_stays_open(self):
        residual = POSITION_CLOSE_EPSILON * 10
        pos = replay_positions([ev("BTC", "buy", 1, 100), ev("BTC", "sell", 1 - residual, 100)])["BTC"]
        assert pos.quantity > 0
        assert pos.avg_entry_price_usd == pytest.approx(100)

    @pytest.mark.parametrize("qty,price", [(0, 100), (-1, 100), (1, 0), (1, -5), (math.nan, 100), (1, math.inf)])
    def test_malformed_rows_are_skipped(self, qty, price):
        pos = replay_positions([ev("BTC", "buy", 1, 100), ev("BTC", "buy", qty, price)])["BTC"]
        assert pos.quantity == 1
        assert pos.invested_usd == 100

    def test_cash_is_ignored(self):
        positions = replay_positions([ev("CASH", "buy", 1000, 1), ev("BTC", "buy", 1, 100)])
        assert "CASH" not in positions

    def test_symbols_are_tracked_separately(self):
        positions = replay_positions([ev("btc", "buy", 1, 100), ev("ETH", "buy", 2, 10)])
        assert set(positions) == {"BTC", "ETH"}


class TestReplayPerformance:

    def test_realized_profit_on_partial_sell(self):
        perf = replay_performance("BTC", [ev("BTC", "buy", 10, 100), ev("BTC", "sell", 4, 150)])
        assert perf.realized_profit_usd == pytest.approx(200)
        assert perf.total_invested_usd == pytest.approx(1000)
        # No market price: the remainder is valued at cost
        assert perf.unrealized_profit_usd == pytest.approx(0)

    def test_unrealized_with_current_price(self):
        perf = replay_performance("BTC", [ev("BTC", "buy", 10, 100)], current_price=120)
        assert perf.holdings_value_usd == pytest.approx(1200)
        assert perf.unrealized_profit_usd == pytest.approx(200)
        assert perf.total_profit_pct == pytest.approx(20)

    def test_sell_fee_reduces_realized_profit(self):
        perf = replay_performance("BTC", [ev("BTC", "buy", 1, 100), ev("BTC", "sell", 1, 150, fee=2)])
        assert perf.realized_profit_usd == pytest.approx(48)

    def test_transactions_newest_first_with_sell_gain(self):
        perf = replay_performance("BTC", [ev("BTC", "buy", 2, 100, n=1), ev("BTC", "sell", 1, 130, n=2)])
        assert [t.kind for t in perf.transactions] == ["sell", "buy"]
        sell, buy = perf.transactions
        assert sell.gain_loss_usd == pytest.approx(30)
        assert sell.gain_loss_pct == pytest.approx(30)
        assert buy.gain_loss_usd is None


# ============================================================================
# Service (store-backed)
# ============================================================================

class TestHoldingsService:

    @pytest.mark.asyncio
    async def test_scenario_buy_then_partial_sell(self, holdings, add_trade):
        add_trade("BTC", "buy", 10, 100)
        add_trade("BTC", "sell", 4, 150)
        pos = await holdings.get_position(ACCOUNT, "btc")
        assert pos.symbol == "BTC"
        assert pos.quantity == pytest.approx(6)
        assert pos.avg_entry_price_usd == pytest.approx(100)

    @pytest.mark.asyncio
    async def test_position_none_without_events(self, holdings):
        assert await holdings.get_position(ACCOUNT, "BTC") is None

    @pytest.mark.asyncio
    async def test_position_none_when_closed(self, holdings, add_trade):
        add_trade("BTC", "buy", 1, 100)
        add_trade("BTC", "sell", 1, 110)
        assert await holdings.get_position(ACCOUNT, "BTC") is None

    @pytest.mark.asyncio
    async def test_position_none_for_cash(self, holdings, add_trade):
        add_trade("CASH", "buy", 500, 1)
        assert await holdings.get_position(ACCOUNT, "CASH") is None

    @pytest.mark.asyncio
    async def test_replay_follows_executed_at_not_insert_order(self, holdings, add_trade):
        add_trade("BTC", "sell", 1, 200, executed_at="2024-02-01T00:00:00.000000+00:00")
        add_trade("BTC", "buy", 2, 100, executed_at="2024-01-01T00:00:00.000000+00:00")
        pos = await holdings.get_position(ACCOUNT, "BTC")
        assert pos.quantity == pytest.approx(1)

    @pytest.mark.asyncio
    async def test_all_positions_open_only_and_sorted(self, holdings, add_trade):
        add_trade("SOL", "buy", 5, 20)
        add_trade("BTC", "buy", 1, 100)
        add_trade("ETH", "buy", 1, 10)
        add_trade("ETH", "sell", 1, 12)
        add_trade("CASH", "buy", 1000, 1)
        positions = await holdings.get_all_positions(ACCOUNT)
        assert [p.symbol for p in positions] == ["BTC", "SOL"]

    @pytest.mark.asyncio
    async def test_accounts_are_isolated(self, holdings, add_trade):
        add_trade("BTC", "buy", 1, 100, account_id="other")
        assert await holdings.get_all_positions(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_migration_failure_does_not_fail_read(self, holdings, add_trade):
        add_trade("BTC", "buy", 1, 100)
        holdings.migrator.migrate = AsyncMock(side_effect=RuntimeError("legacy table locked"))
        positions = await holdings.get_all_positions(ACCOUNT)
        assert [p.symbol for p in positions] == ["BTC"]

    @pytest.mark.asyncio
    async def test_asset_performance(self, holdings, add_trade):
        add_trade("BTC", "buy", 10, 100)
        add_trade("BTC", "sell", 4, 150)
        perf = await holdings.get_asset_performance(ACCOUNT, "BTC", current_price=110)
        assert perf.realized_profit_usd == pytest.approx(200)
        assert perf.unrealized_profit_usd == pytest.approx(60)
        assert perf.total_profit_usd == pytest.approx(260)
        assert len(perf.transactions) == 2

    @pytest.mark.asyncio
    async def test_asset_performance_none_without_events(self, holdings):
        assert await holdings.get_asset_performance(ACCOUNT, "DOGE") is None
