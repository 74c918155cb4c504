"""
Condition Evaluator
Groups are AND-ed, conditions inside a group are OR-ed.
Indicator and comparator names are resolved through dispatch tables below.
"""
from typing import Callable, Dict, List, Optional

from strategylab.models import (
    AnnotatedCandle, Comparator, Condition, ConditionGroup, IndicatorKind,
    IndicatorSnapshot, Timeframe,
)

Resolver = Callable[[IndicatorSnapshot, AnnotatedCandle], float]


# ---------------------------------------------------------------------------
# Indicator resolution
# ---------------------------------------------------------------------------

INDICATOR_RESOLVERS: Dict[IndicatorKind, Resolver] = {
    IndicatorKind.RSI: lambda s, bar: s.rsi,
    IndicatorKind.MACD: lambda s, bar: s.macdLine,
    IndicatorKind.MACD_SIGNAL: lambda s, bar: s.macdSignal,
    IndicatorKind.MACD_HISTOGRAM: lambda s, bar: s.macdHistogram,
    IndicatorKind.SMA: lambda s, bar: s.smaMedium,
    IndicatorKind.SMA_SHORT: lambda s, bar: s.smaShort,
    IndicatorKind.SMA_MEDIUM: lambda s, bar: s.smaMedium,
    IndicatorKind.SMA_LONG: lambda s, bar: s.smaLong,
    IndicatorKind.EMA: lambda s, bar: s.emaMedium,
    IndicatorKind.EMA_SHORT: lambda s, bar: s.emaShort,
    IndicatorKind.EMA_MEDIUM: lambda s, bar: s.emaMedium,
    IndicatorKind.EMA_LONG: lambda s, bar: s.emaLong,
    IndicatorKind.WMA: lambda s, bar: s.wma,
    IndicatorKind.STOCHASTIC: lambda s, bar: s.stochasticK,
    IndicatorKind.STOCHASTIC_K: lambda s, bar: s.stochasticK,
    IndicatorKind.STOCHASTIC_D: lambda s, bar: s.stochasticD,
    IndicatorKind.ATR: lambda s, bar: s.atr,
    IndicatorKind.BOLLINGER_BANDS: lambda s, bar: s.bollingerMiddle,
    IndicatorKind.BOLLINGER_UPPER: lambda s, bar: s.bollingerUpper,
    IndicatorKind.BOLLINGER_LOWER: lambda s, bar: s.bollingerLower,
    IndicatorKind.BOLLINGER_PERCENT_B: lambda s, bar: s.bollingerPercentB,
    IndicatorKind.BOLLINGER_BANDWIDTH: lambda s, bar: s.bollingerBandwidth,
    IndicatorKind.OBV: lambda s, bar: s.obv,
    IndicatorKind.VOLUME_MA: lambda s, bar: s.volumeMa,
    IndicatorKind.RELATIVE_VOLUME: lambda s, bar: s.relativeVolume,
    IndicatorKind.VOLUME: lambda s, bar: bar.volume,
    IndicatorKind.PRICE: lambda s, bar: bar.close,
}

# Read from the bar itself, valid from the first bar
RAW_BAR_FIELDS = {IndicatorKind.VOLUME, IndicatorKind.PRICE}


def get_indicator_value(kind: IndicatorKind, snapshot: IndicatorSnapshot, bar: AnnotatedCandle) -> float:
    """Resolve an indicator name against a snapshot; unknown names resolve to 0"""
    resolver = INDICATOR_RESOLVERS.get(kind)
    if resolver is None:
        return 0.0
    return resolver(snapshot, bar)


def _is_usable(kind: Optional[IndicatorKind], snapshot: IndicatorSnapshot) -> bool:
    if kind is None or kind in RAW_BAR_FIELDS:
        return True
    if kind == IndicatorKind.UNKNOWN:
        return False
    return snapshot.warmedUp


# ---------------------------------------------------------------------------
# Comparators
# ---------------------------------------------------------------------------

def _target(condition: Condition, snapshot: IndicatorSnapshot, bar: AnnotatedCandle) -> float:
    if condition.referenceIndicator is not None:
        return get_indicator_value(condition.referenceIndicator, snapshot, bar)
    return condition.value


def greater_than(condition, value, target, prev_value, prev_target):
    return value > target


def less_than(condition, value, target, prev_value, prev_target):
    return value < target


def between(condition, value, target, prev_value, prev_target):
    return condition.valueHigh is not None and condition.value <= value <= condition.valueHigh


def cross_above(condition, value, target, prev_value, prev_target):
    if prev_value is None:
        return False
    return prev_value <= prev_target and value > target


def cross_below(condition, value, target, prev_value, prev_target):
    if prev_value is None:
        return False
    return prev_value >= prev_target and value < target


COMPARATOR_HANDLERS: Dict[Comparator, Callable] = {
    Comparator.GREATER_THAN: greater_than,
    Comparator.LESS_THAN: less_than,
    Comparator.BETWEEN: between,
    Comparator.CROSS_ABOVE: cross_above,
    Comparator.CROSS_BELOW: cross_below,
}

CROSS_COMPARATORS = {Comparator.CROSS_ABOVE, Comparator.CROSS_BELOW}


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate_condition(condition: Condition, group_timeframe: Timeframe,
                       bar: AnnotatedCandle, prev_bar: Optional[AnnotatedCandle] = None) -> bool:
    """Evaluate one condition on `bar` (and `prev_bar` for crosses)"""
    handler = COMPARATOR_HANDLERS.get(condition.comparison)
    if handler is None or condition.indicator == IndicatorKind.UNKNOWN:
        return False

    timeframe = condition.timeframe or group_timeframe
    snapshot = bar.snapshot_for(timeframe)
    if not (_is_usable(condition.indicator, snapshot) and _is_usable(condition.referenceIndicator, snapshot)):
        return False

    value = get_indicator_value(condition.indicator, snapshot, bar)
    target = _target(condition, snapshot, bar)

    prev_value = prev_target = None
    if condition.comparison in CROSS_COMPARATORS:
        if prev_bar is None:
            return False
        prev_snapshot = prev_bar.snapshot_for(timeframe)
        if not (_is_usable(condition.indicator, prev_snapshot)
                and _is_usable(condition.referenceIndicator, prev_snapshot)):
            return False
        prev_value = get_indicator_value(condition.indicator, prev_snapshot, prev_bar)
        prev_target = _target(condition, prev_snapshot, prev_bar)

    return handler(condition, value, target, prev_value, prev_target)


def evaluate_group(group: ConditionGroup, bar: AnnotatedCandle,
                   prev_bar: Optional[AnnotatedCandle] = None) -> bool:
    return any(evaluate_condition(c, group.timeframe, bar, prev_bar) for c in group.conditions)


def evaluate_conditions(groups: List[ConditionGroup], bar: AnnotatedCandle,
                        prev_bar: Optional[AnnotatedCandle] = None) -> bool:
    """True only if every group has at least one passing condition"""
    if not groups:
        return False
    return all(evaluate_group(g, bar, prev_bar) for g in groups)
