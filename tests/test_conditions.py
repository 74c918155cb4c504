"""
Tests for the condition evaluator: AND-of-OR groups, comparators,
warmup handling and multi-timeframe snapshot lookup.
"""

import pytest

from strategylab.conditions import evaluate_condition, evaluate_conditions, get_indicator_value
from strategylab.models import (
    Comparator, Condition, ConditionGroup, IndicatorKind, IndicatorSnapshot, Timeframe,
)

from conftest import flat_bar, make_bar


def group(*conditions, timeframe=Timeframe.DAILY):
    return ConditionGroup(timeframe=timeframe, conditions=list(conditions))


def cond(indicator, comparison, value=0.0, **kwargs):
    return Condition(indicator=indicator, comparison=comparison, value=value, **kwargs)


# =============================================================================
# GROUP LOGIC
# =============================================================================

class TestGroupLogic:
    """Groups AND-ed, conditions within a group OR-ed"""

    def test_empty_group_list_is_false(self):
        assert evaluate_conditions([], flat_bar(0, rsi=20)) is False

    def test_or_within_group(self):
        bar = flat_bar(0, rsi=50, stochasticK=10)
        g = group(cond("RSI", "LessThan", 30), cond("StochasticK", "LessThan", 20))
        assert evaluate_conditions([g], bar)

    def test_and_across_groups(self):
        bar = flat_bar(0, rsi=25, stochasticK=50)
        rsi_low = group(cond("RSI", "LessThan", 30))
        stoch_low = group(cond("StochasticK", "LessThan", 20))
        assert evaluate_conditions([rsi_low], bar)
        assert not evaluate_conditions([rsi_low, stoch_low], bar)

    def test_group_with_no_conditions_fails(self):
        assert not evaluate_conditions([group()], flat_bar(0, rsi=20))


# =============================================================================
# COMPARATORS
# =============================================================================

class TestComparators:
    """GreaterThan / LessThan / Between / CrossAbove / CrossBelow"""

    def test_greater_and_less(self):
        bar = flat_bar(0, rsi=60)
        assert evaluate_condition(cond("RSI", "GreaterThan", 50), Timeframe.DAILY, bar)
        assert not evaluate_condition(cond("RSI", "LessThan", 50), Timeframe.DAILY, bar)
        assert not evaluate_condition(cond("RSI", "GreaterThan", 60), Timeframe.DAILY, bar)

    @pytest.mark.parametrize("rsi,expected", [(40, True), (60, True), (50, True), (39.9, False), (60.1, False)])
    def test_between_inclusive(self, rsi, expected):
        c = cond("RSI", "Between", 40, valueHigh=60)
        assert evaluate_condition(c, Timeframe.DAILY, flat_bar(0, rsi=rsi)) is expected

    def test_between_without_upper_bound(self):
        c = cond("RSI", "Between", 40)
        assert not evaluate_condition(c, Timeframe.DAILY, flat_bar(0, rsi=50))

    def test_cross_above_reference_indicator(self):
        prev = flat_bar(0, emaShort=99, emaMedium=100)
        bar = flat_bar(1, emaShort=101, emaMedium=100)
        c = cond("EMAShort", "CrossAbove", referenceIndicator="EMAMedium")
        assert evaluate_condition(c, Timeframe.DAILY, bar, prev)
        # No previous bar: cannot cross
        assert not evaluate_condition(c, Timeframe.DAILY, bar, None)
        # Already above on the previous bar
        assert not evaluate_condition(c, Timeframe.DAILY, bar, bar)

    def test_cross_below_value(self):
        prev = flat_bar(0, rsi=72)
        bar = flat_bar(1, rsi=68)
        assert evaluate_condition(cond("RSI", "CrossBelow", 70), Timeframe.DAILY, bar, prev)
        assert not evaluate_condition(cond("RSI", "CrossAbove", 70), Timeframe.DAILY, bar, prev)

    def test_price_against_indicator(self):
        bar = make_bar(0, 100, 106, 99, 105, smaMedium=102)
        assert evaluate_condition(cond("Price", "GreaterThan", referenceIndicator="SMA"), Timeframe.DAILY, bar)


# =============================================================================
# UNKNOWN NAMES AND WARMUP
# =============================================================================

class TestLenientNames:
    """Unknown names never raise; they simply fail"""

    def test_unknown_indicator_parses_and_fails(self):
        c = cond("SuperTrend", "GreaterThan", -1000)
        assert c.indicator == IndicatorKind.UNKNOWN
        assert not evaluate_condition(c, Timeframe.DAILY, flat_bar(0, rsi=50))

    def test_unknown_indicator_resolves_to_zero(self):
        assert get_indicator_value(IndicatorKind.UNKNOWN, IndicatorSnapshot(rsi=50), flat_bar(0)) == 0.0

    def test_unknown_comparator(self):
        c = cond("RSI", "Approximately", 50)
        assert c.comparison == Comparator.UNKNOWN
        assert not evaluate_condition(c, Timeframe.DAILY, flat_bar(0, rsi=50))

    def test_names_case_insensitive(self):
        c = cond("rsi", "lessthan", 30)
        assert c.indicator == IndicatorKind.RSI
        assert c.comparison == Comparator.LESS_THAN


class TestWarmup:
    """Indicators are unusable until the snapshot is warmed up"""

    def test_cold_indicator_fails(self):
        bar = flat_bar(0, rsi=0.0, warmed_up=False)
        assert not evaluate_condition(cond("RSI", "LessThan", 30), Timeframe.DAILY, bar)

    def test_price_and_volume_usable_during_warmup(self):
        bar = make_bar(0, 100, 101, 99, 100, volume=5_000, warmed_up=False)
        assert evaluate_condition(cond("Price", "GreaterThan", 50), Timeframe.DAILY, bar)
        assert evaluate_condition(cond("Volume", "GreaterThan", 1_000), Timeframe.DAILY, bar)

    def test_cold_reference_indicator_fails(self):
        bar = make_bar(0, 100, 101, 99, 100, warmed_up=False)
        assert not evaluate_condition(cond("Price", "GreaterThan", referenceIndicator="SMALong"),
                                      Timeframe.DAILY, bar)

    def test_cross_needs_warm_previous_bar(self):
        prev = flat_bar(0, rsi=72, warmed_up=False)
        bar = flat_bar(1, rsi=68)
        assert not evaluate_condition(cond("RSI", "CrossBelow", 70), Timeframe.DAILY, bar, prev)


# =============================================================================
# MULTI-TIMEFRAME
# =============================================================================

class TestTimeframes:
    """Snapshot selection by group / condition timeframe"""

    def test_weekly_group_reads_weekly_snapshot(self):
        weekly = IndicatorSnapshot(rsi=80, warmedUp=True)
        bar = flat_bar(0, rsi=20, higher={Timeframe.WEEKLY: weekly})
        g = group(cond("RSI", "GreaterThan", 70), timeframe=Timeframe.WEEKLY)
        assert evaluate_conditions([g], bar)
        assert not evaluate_conditions([group(cond("RSI", "GreaterThan", 70))], bar)

    def test_condition_timeframe_overrides_group(self):
        weekly = IndicatorSnapshot(rsi=80, warmedUp=True)
        bar = flat_bar(0, rsi=20, higher={Timeframe.WEEKLY: weekly})
        c = cond("RSI", "GreaterThan", 70, timeframe="Weekly")
        assert evaluate_conditions([group(c)], bar)

    def test_missing_timeframe_falls_back_to_daily(self):
        bar = flat_bar(0, rsi=20)
        g = group(cond("RSI", "LessThan", 30), timeframe=Timeframe.MONTHLY)
        assert evaluate_conditions([g], bar)
