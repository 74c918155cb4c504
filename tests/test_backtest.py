"""
Tests for the event-driven backtest engine.

Bars are built by hand with explicit indicator values so every fill,
stop and rejection can be checked to the cent.
"""

from datetime import timedelta

import pytest

from strategylab.backtest import (
    BacktestEngine, CircuitBreaker, calculate_stop_loss, calculate_take_profit, check_filters,
)
from strategylab.models import (
    BacktestConfig, Condition, ConditionGroup, EntryOrderConfig, ExitReason, OrderType,
    PositionSizingConfig, StopLossConfig, TakeProfitConfig, TradeFilterConfig,
)

from conftest import START, flat_bar, make_bar, rsi_strategy


def signal_then(*later_bars):
    """Quiet bar, RSI-25 signal bar at 100, then the given bars"""
    return [flat_bar(0, rsi=50), flat_bar(1, rsi=25), *later_bars]


# =============================================================================
# PRICING HELPERS
# =============================================================================

class TestPricing:
    """Stop / target calculation and trade filters"""

    def test_atr_stop(self):
        assert calculate_stop_loss(100, 2.5, StopLossConfig(type="Atr", multiplier=2)) == pytest.approx(95.0)

    def test_atr_stop_falls_back_without_atr(self):
        assert calculate_stop_loss(100, 0.0, StopLossConfig(type="Atr", multiplier=2)) == pytest.approx(95.0)

    def test_fixed_percent_stop(self):
        assert calculate_stop_loss(200, 9.9, StopLossConfig(type="FixedPercent", multiplier=3)) == pytest.approx(194.0)

    def test_r_multiple_target(self):
        assert calculate_take_profit(100, 95, TakeProfitConfig(type="RMultiple", multiplier=2)) == pytest.approx(110.0)

    def test_unknown_target_means_none(self):
        assert calculate_take_profit(100, 95, TakeProfitConfig(type="Trailing", multiplier=2)) == 0.0

    def test_filters(self):
        bar = make_bar(0, 10, 11, 9, 10, volume=5_000)
        assert check_filters(bar, TradeFilterConfig()) is None
        assert "volume" in check_filters(bar, TradeFilterConfig(minVolume=10_000))
        assert "min" in check_filters(bar, TradeFilterConfig(minPrice=20))
        assert "max" in check_filters(bar, TradeFilterConfig(maxPrice=5))
        assert "volume" in check_filters(bar, TradeFilterConfig(), min_volume=6_000)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class TestCircuitBreaker:
    """Drawdown halt with hysteresis"""

    def test_activates_at_threshold(self):
        breaker = CircuitBreaker(10_000, 5, 5)
        assert breaker.update(11_000) is None
        assert breaker.peak == 11_000
        assert breaker.update(10_400) == 'activated'
        assert breaker.active
        assert breaker.drawdown_percent == pytest.approx(600 / 11_000 * 100)

    def test_resets_within_recovery_band(self):
        breaker = CircuitBreaker(10_000, 5, 5)
        breaker.update(11_000)
        breaker.update(10_400)
        assert breaker.update(10_400) is None
        assert breaker.update(10_500) == 'deactivated'
        assert not breaker.active

    def test_tighter_recovery_stays_active(self):
        breaker = CircuitBreaker(10_000, 5, 2)
        breaker.update(11_000)
        breaker.update(10_400)
        assert breaker.update(10_500) is None
        assert breaker.active


# =============================================================================
# ENGINE
# =============================================================================

class TestEngineBasics:
    """Timing, equity curve and bookkeeping"""

    def test_insufficient_data(self, frictionless_config):
        result = BacktestEngine(rsi_strategy(), frictionless_config).run([flat_bar(0, rsi=20)], "TEST")
        assert result.trades == []
        assert result.equityCurve == []
        assert result.log == ["Insufficient data for backtest (need at least 2 bars)"]
        assert result.finalEquity == 100_000

    def test_equity_curve_has_one_point_per_bar_after_first(self, frictionless_config):
        bars = [flat_bar(i, rsi=50) for i in range(10)]
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert len(result.equityCurve) == 9
        assert [p.date for p in result.equityCurve] == [b.timestamp for b in bars[1:]]
        assert all(p.value == 100_000 for p in result.equityCurve)

    def test_signal_fills_at_next_open(self, frictionless_config):
        """Signal on the close of bar 1, fill at bar 2's open (102), never at bar 1's close"""
        bars = signal_then(
            make_bar(2, 102, 103, 101, 102, rsi=50),
            make_bar(3, 102, 103, 101, 102, rsi=50),
        )
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 1
        trade = result.trades[0]
        assert trade.entryPrice == 102.0
        assert trade.entryDate == bars[2].timestamp
        assert trade.shares == 200
        assert trade.exitReason == ExitReason.END_OF_BACKTEST
        assert trade.exitPrice == 102.0
        assert trade.pnl == pytest.approx(-2.0)
        assert trade.commission == 2.0
        assert result.finalEquity == pytest.approx(100_000 - 2.0)

    def test_slippage_applied_to_market_fill(self):
        config = BacktestConfig(slippagePercent=0.5, commissionPerTrade=0)
        bars = signal_then(flat_bar(2, 100, rsi=50), flat_bar(3, 100, rsi=50))
        result = BacktestEngine(rsi_strategy(), config).run(bars, "TEST")
        assert result.trades[0].entryPrice == pytest.approx(100.5)

    def test_no_averaging_down(self, frictionless_config):
        bars = [flat_bar(i, rsi=25) for i in range(6)]
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 1
        assert result.rejections["ALREADY_HOLDING"] == 4
        assert any("SKIP ENTRY ALREADY_HOLDING" in line for line in result.log)

    def test_log_lines_are_dated(self, frictionless_config):
        bars = signal_then(flat_bar(2, rsi=50), flat_bar(3, rsi=50))
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert result.log[0].startswith((START + timedelta(days=1)).strftime("%Y-%m-%d") + " SIGNAL BUY")
        assert any(" FILL BUY TEST x200 @ 100.00" in line for line in result.log)


class TestExits:
    """Intrabar stops / targets and signal exits"""

    def test_stop_loss_hit(self, frictionless_config):
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 99, 100, 94, 96, rsi=50),
        )
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        trade = result.trades[0]
        assert trade.exitReason == ExitReason.STOP_LOSS
        assert trade.exitPrice == pytest.approx(95.0)
        assert trade.pnl == pytest.approx(200 * -5.0 - 2.0)
        assert trade.holdingDays == 1
        assert not trade.isWinner

    def test_stop_checked_before_target(self, frictionless_config):
        """A bar spanning both levels exits at the stop"""
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 100, 115, 90, 100, rsi=50),
        )
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert result.trades[0].exitReason == ExitReason.STOP_LOSS

    def test_take_profit_hit(self, frictionless_config):
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 101, 111, 100, 108, rsi=50),
        )
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        trade = result.trades[0]
        assert trade.exitReason == ExitReason.TAKE_PROFIT
        assert trade.exitPrice == pytest.approx(110.0)
        assert trade.isWinner

    def test_gap_fill_at_open(self):
        config = BacktestConfig(slippagePercent=0, commissionPerTrade=0, fillGapsAtOpen=True)
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 90, 92, 89, 91, rsi=50),
        )
        trade = BacktestEngine(rsi_strategy(), config).run(bars, "TEST").trades[0]
        assert trade.exitReason == ExitReason.STOP_LOSS_GAP
        assert trade.exitPrice == 90.0

    def test_gap_without_gap_fills_uses_stop_price(self, frictionless_config):
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 90, 92, 89, 91, rsi=50),
        )
        trade = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST").trades[0]
        assert trade.exitReason == ExitReason.STOP_LOSS
        assert trade.exitPrice == pytest.approx(95.0)

    def test_exit_signal_at_close(self, frictionless_config):
        strategy = rsi_strategy(exitConditions=[ConditionGroup(conditions=[
            Condition(indicator="Price", comparison="GreaterThan", value=104),
        ])])
        bars = signal_then(
            flat_bar(2, 100, rsi=50),
            make_bar(3, 101, 106, 100, 105, rsi=50),
            flat_bar(4, 105, rsi=50),
        )
        result = BacktestEngine(strategy, frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 1
        trade = result.trades[0]
        assert trade.exitReason == ExitReason.EXIT_SIGNAL
        assert trade.exitPrice == 105.0
        assert trade.exitDate == bars[3].timestamp


class TestEntryGates:
    """Rejection reasons for entry signals"""

    def test_zero_shares(self, frictionless_config):
        bars = [flat_bar(0, 1_000_000, rsi=50), flat_bar(1, 1_000_000, rsi=25), flat_bar(2, 1_000_000, rsi=50)]
        result = BacktestEngine(rsi_strategy(), frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 0
        assert result.rejections == {"ZERO_SHARES": 1}

    def test_filters_reject(self, frictionless_config):
        strategy = rsi_strategy(filters=TradeFilterConfig(minVolume=2_000_000))
        bars = signal_then(flat_bar(2, rsi=50))
        result = BacktestEngine(strategy, frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 0
        assert result.rejections == {"FILTERS": 1}

    def test_skip_buy_when_gap_exceeds_cash(self, frictionless_config):
        """Order sized to cash at the signal close cannot be paid for after a gap up"""
        strategy = rsi_strategy(stop_percent=0.5)
        bars = signal_then(make_bar(2, 200, 201, 199, 200, rsi=50), flat_bar(3, 200, rsi=50))
        result = BacktestEngine(strategy, frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 0
        assert result.rejections == {"INSUFFICIENT_CASH": 1}
        assert any("SKIP BUY TEST: insufficient cash" in line for line in result.log)

    def test_circuit_breaker_blocks_entries(self, frictionless_config):
        strategy = rsi_strategy(stop_percent=50, positionSizing=PositionSizingConfig(
            riskPercent=50, maxDrawdownPercent=5))
        bars = signal_then(
            make_bar(2, 100, 100, 89, 90, rsi=50),
            flat_bar(3, 90, rsi=25),
        )
        result = BacktestEngine(strategy, frictionless_config).run(bars, "TEST")
        assert any("CIRCUIT BREAKER ACTIVATED" in line for line in result.log)
        assert result.rejections.get("CIRCUIT_BREAKER") == 1
        assert result.totalTrades == 1


class TestLimitOrders:
    """Limit entries carry over until filled or expired"""

    def strategy(self):
        return rsi_strategy(entryOrder=EntryOrderConfig(type=OrderType.LIMIT, limitOffsetPercent=1))

    def test_limit_fills_when_price_trades_through(self, frictionless_config):
        bars = signal_then(
            make_bar(2, 100, 101, 99.5, 100, rsi=50),
            make_bar(3, 99.5, 100, 98, 99, rsi=50),
        )
        result = BacktestEngine(self.strategy(), frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 1
        assert result.trades[0].entryPrice == pytest.approx(99.0)
        assert result.trades[0].entryDate == bars[3].timestamp

    def test_limit_expires(self):
        config = BacktestConfig(slippagePercent=0, limitOrderExpiryBars=1)
        bars = signal_then(
            make_bar(2, 100, 101, 99.5, 100, rsi=50),
            make_bar(3, 99.5, 100, 98, 99, rsi=50),
        )
        result = BacktestEngine(self.strategy(), config).run(bars, "TEST")
        assert result.totalTrades == 0
        assert any("EXPIRED LIMIT" in line for line in result.log)

    def test_unfilled_limit_cancelled_at_end(self, frictionless_config):
        bars = signal_then(make_bar(2, 100, 101, 99.5, 100, rsi=50))
        result = BacktestEngine(self.strategy(), frictionless_config).run(bars, "TEST")
        assert result.totalTrades == 0
        assert any("CANCEL Limit" in line for line in result.log)
