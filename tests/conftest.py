"""
Shared fixtures and bar builders for the strategylab test suite.
"""

from datetime import datetime, timedelta
from typing import List, Optional

import numpy as np
import pandas as pd
import pytest

from strategylab.models import (
    AnnotatedCandle, BacktestConfig, Candle, Condition, ConditionGroup, IndicatorSnapshot,
    StopLossConfig, StrategyDefinition, TakeProfitConfig, Timeframe,
)

START = datetime(2024, 1, 1)


def make_bar(day: int, open_: float, high: float, low: float, close: float,
             volume: float = 1_000_000, warmed_up: bool = True,
             higher: Optional[dict] = None, **indicators) -> AnnotatedCandle:
    """Annotated daily bar `day` days after START with the given indicator values"""
    return AnnotatedCandle(
        timestamp=START + timedelta(days=day),
        open=open_, high=high, low=low, close=close, volume=volume,
        indicators=IndicatorSnapshot(warmedUp=warmed_up, **indicators),
        higherTimeframes=higher or {},
    )


def flat_bar(day: int, price: float = 100.0, **indicators) -> AnnotatedCandle:
    return make_bar(day, price, price + 1, price - 1, price, **indicators)


def make_candles(closes, start: datetime = START, timeframe: Timeframe = Timeframe.DAILY,
                 volumes=None) -> List[Candle]:
    """Business-day candles around the given closes"""
    closes = np.asarray(closes, dtype=float)
    dates = pd.bdate_range(start, periods=len(closes))
    volumes = np.full(len(closes), 1_000_000.0) if volumes is None else np.asarray(volumes, dtype=float)
    candles = []
    prev = closes[0]
    for ts, close, volume in zip(dates, closes, volumes):
        open_ = prev
        candles.append(Candle(
            timestamp=ts.to_pydatetime(), open=open_, high=max(open_, close) + 1.0,
            low=min(open_, close) - 1.0, close=close, volume=volume, timeframe=timeframe,
        ))
        prev = close
    return candles


def synthetic_closes(n: int, seed: int = 7) -> np.ndarray:
    rng = np.random.default_rng(seed)
    trend = np.linspace(100, 140, n)
    wave = 6 * np.sin(np.arange(n) / 6.0)
    noise = rng.normal(0, 0.8, n)
    return trend + wave + noise


def rsi_strategy(threshold: float = 30, stop_percent: float = 5, target_percent: float = 10,
                 **kwargs) -> StrategyDefinition:
    """Long when RSI is below `threshold`; fixed-percent stop and target"""
    return StrategyDefinition(
        name="RSI dip",
        entryConditions=[ConditionGroup(conditions=[
            Condition(indicator="RSI", comparison="LessThan", value=threshold),
        ])],
        stopLoss=StopLossConfig(type="FixedPercent", multiplier=stop_percent),
        takeProfit=TakeProfitConfig(type="FixedPercent", multiplier=target_percent),
        **kwargs,
    )


@pytest.fixture
def frictionless_config():
    return BacktestConfig(initialCapital=100_000, slippagePercent=0.0, commissionPerTrade=1.0)


@pytest.fixture
def daily_candles():
    return make_candles(synthetic_closes(160))
