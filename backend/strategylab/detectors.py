"""
Pattern Detectors - crossovers, swing points and divergences
"""
from typing import List

import numpy as np

from strategylab.models import CrossoverPoint, CrossoverType, DivergencePoint, DivergenceType


def detect_crossovers(fast: np.ndarray, slow: np.ndarray) -> List[CrossoverPoint]:
    """Find bars where `fast` crosses `slow`.

    Bars where either series (current or previous value) is still at the
    zero warmup sentinel are skipped.
    """
    fast = np.asarray(fast, dtype=np.float64)
    slow = np.asarray(slow, dtype=np.float64)
    if len(fast) != len(slow):
        raise ValueError(f"Series must have equal length ({len(fast)} != {len(slow)})")

    points = []
    for i in range(1, len(fast)):
        if fast[i] == 0 or slow[i] == 0 or fast[i - 1] == 0 or slow[i - 1] == 0:
            continue
        prev_diff = fast[i - 1] - slow[i - 1]
        curr_diff = fast[i] - slow[i]

        if prev_diff <= 0 and curr_diff > 0:
            points.append(CrossoverPoint(index=i, type=CrossoverType.BULLISH,
                                         fastValue=float(fast[i]), slowValue=float(slow[i])))
        elif prev_diff >= 0 and curr_diff < 0:
            points.append(CrossoverPoint(index=i, type=CrossoverType.BEARISH,
                                         fastValue=float(fast[i]), slowValue=float(slow[i])))
    return points


def find_swing_highs(values: np.ndarray, strength: int = 5) -> List[int]:
    """Indices strictly higher than `strength` bars on each side"""
    values = np.asarray(values, dtype=np.float64)
    swings = []
    for i in range(strength, len(values) - strength):
        window = np.concatenate((values[i - strength:i], values[i + 1:i + strength + 1]))
        if np.all(values[i] > window):
            swings.append(i)
    return swings


def find_swing_lows(values: np.ndarray, strength: int = 5) -> List[int]:
    """Indices strictly lower than `strength` bars on each side"""
    values = np.asarray(values, dtype=np.float64)
    swings = []
    for i in range(strength, len(values) - strength):
        window = np.concatenate((values[i - strength:i], values[i + 1:i + strength + 1]))
        if np.all(values[i] < window):
            swings.append(i)
    return swings


def detect_divergences(prices: np.ndarray, indicator: np.ndarray,
                       swing_strength: int = 5, max_lookback: int = 60) -> List[DivergencePoint]:
    """Regular divergences between price swings and an indicator.

    Bearish: higher price high with a lower indicator high.
    Bullish: lower price low with a higher indicator low.
    Only consecutive swing pairs within `max_lookback` bars are compared.
    """
    prices = np.asarray(prices, dtype=np.float64)
    indicator = np.asarray(indicator, dtype=np.float64)
    if len(prices) != len(indicator):
        raise ValueError(f"Series must have equal length ({len(prices)} != {len(indicator)})")
    if swing_strength < 1:
        raise ValueError(f"swing_strength must be >= 1 (got {swing_strength})")
    if len(prices) < 2 * swing_strength + 1:
        return []

    divergences = []

    highs = find_swing_highs(prices, swing_strength)
    for first, second in zip(highs, highs[1:]):
        if second - first > max_lookback:
            continue
        if indicator[first] == 0 or indicator[second] == 0:
            continue
        if prices[second] > prices[first] and indicator[second] < indicator[first]:
            divergences.append(_divergence(DivergenceType.BEARISH, first, second, prices, indicator))

    lows = find_swing_lows(prices, swing_strength)
    for first, second in zip(lows, lows[1:]):
        if second - first > max_lookback:
            continue
        if indicator[first] == 0 or indicator[second] == 0:
            continue
        if prices[second] < prices[first] and indicator[second] > indicator[first]:
            divergences.append(_divergence(DivergenceType.BULLISH, first, second, prices, indicator))

    divergences.sort(key=lambda d: (d.secondIndex, d.firstIndex))
    return divergences


def _divergence(kind: DivergenceType, first: int, second: int,
                prices: np.ndarray, indicator: np.ndarray) -> DivergencePoint:
    return DivergencePoint(
        type=kind,
        firstIndex=first,
        secondIndex=second,
        firstPrice=float(prices[first]),
        secondPrice=float(prices[second]),
        firstIndicator=float(indicator[first]),
        secondIndicator=float(indicator[second]),
    )
