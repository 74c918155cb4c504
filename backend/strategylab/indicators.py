"""
Technical Indicators - zero-sentinel warmup
Optimized with NumPy + Numba
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from numba import jit

from strategylab.models import (
    AnnotatedCandle, Candle, IndicatorConfig, IndicatorSnapshot, Timeframe,
)

logger = logging.getLogger(__name__)

HIGHER_TIMEFRAMES = (Timeframe.WEEKLY, Timeframe.MONTHLY)


class IndicatorBank:
    """Pre-computed Indicator Bank with Multi-Timeframe Support

    Computes every indicator per timeframe, then forward-fills Weekly/Monthly
    snapshots onto Daily bars so that a daily bar only ever sees the most
    recently *completed* higher-timeframe bar.
    """

    def __init__(self, candles_by_timeframe: Dict[Timeframe, Sequence[Candle]],
                 config: Optional[IndicatorConfig] = None, aggregate_missing: bool = False):
        self.config = config or IndicatorConfig()
        self.candles: Dict[Timeframe, List[Candle]] = {
            tf: list(bars) for tf, bars in candles_by_timeframe.items() if bars is not None
        }

        if aggregate_missing and self.candles.get(Timeframe.DAILY):
            for tf in HIGHER_TIMEFRAMES:
                if not self.candles.get(tf):
                    logger.info(f"📦 Aggregating daily data into {tf.value} bars...")
                    self.candles[tf] = aggregate_candles(self.candles[Timeframe.DAILY], tf)

        self.timeframe_bars: Dict[Timeframe, List[AnnotatedCandle]] = {}
        # Cache of close-times per timeframe (for lookahead-free alignment)
        self._close_times_cache: Dict[Timeframe, np.ndarray] = {}

    @property
    def warmup_bars(self) -> int:
        return self.config.maxWarmupBars

    @property
    def aligned_daily(self) -> List[AnnotatedCandle]:
        return self.timeframe_bars.get(Timeframe.DAILY, [])

    def build(self) -> List[AnnotatedCandle]:
        """Compute all timeframes and return the aligned daily series"""
        snapshots: Dict[Timeframe, List[IndicatorSnapshot]] = {}
        for tf, bars in self.candles.items():
            snapshots[tf] = self.compute_snapshots(bars)
            self.timeframe_bars[tf] = [
                AnnotatedCandle(**_candle_fields(bar), indicators=snap)
                for bar, snap in zip(bars, snapshots[tf])
            ]

        daily = self.candles.get(Timeframe.DAILY, [])
        if not daily:
            return []

        aligned_maps: List[Dict[Timeframe, IndicatorSnapshot]] = [{} for _ in daily]
        for tf in HIGHER_TIMEFRAMES:
            if not self.candles.get(tf):
                continue
            indices = self.align_indices(tf)
            for i, idx in enumerate(indices):
                if idx >= 0:
                    aligned_maps[i][tf] = snapshots[tf][idx]

        self.timeframe_bars[Timeframe.DAILY] = [
            AnnotatedCandle(**_candle_fields(bar), indicators=snap, higherTimeframes=htf)
            for bar, snap, htf in zip(daily, snapshots[Timeframe.DAILY], aligned_maps)
        ]
        logger.info(f"✅ Built indicators for {len(daily)} daily bars "
                    f"({', '.join(tf.value for tf in self.candles)})")
        return self.timeframe_bars[Timeframe.DAILY]

    def compute_snapshots(self, bars: Sequence[Candle]) -> List[IndicatorSnapshot]:
        """Run the full indicator library over one timeframe"""
        n = len(bars)
        if n == 0:
            return []
        cfg = self.config
        high = np.array([b.high for b in bars], dtype=np.float64)
        low = np.array([b.low for b in bars], dtype=np.float64)
        close = np.array([b.close for b in bars], dtype=np.float64)
        volume = np.array([b.volume for b in bars], dtype=np.float64)

        macd, macd_signal, macd_hist = calculate_macd(
            close, cfg.macdFastPeriod, cfg.macdSlowPeriod, cfg.macdSignalPeriod)
        upper, middle, lower, bandwidth, percent_b = calculate_bollinger_bands(
            close, cfg.bollingerPeriod, cfg.bollingerStdDev)
        stoch_k, stoch_d = calculate_stochastic(
            high, low, close, cfg.stochasticKPeriod, cfg.stochasticDPeriod)
        volume_ma, relative_volume = calculate_volume_profile(volume, cfg.volumeMaPeriod)

        columns = {
            'smaShort': calculate_sma(close, cfg.smaShortPeriod),
            'smaMedium': calculate_sma(close, cfg.smaMediumPeriod),
            'smaLong': calculate_sma(close, cfg.smaLongPeriod),
            'emaShort': calculate_ema(close, cfg.emaShortPeriod),
            'emaMedium': calculate_ema(close, cfg.emaMediumPeriod),
            'emaLong': calculate_ema(close, cfg.emaLongPeriod),
            'wma': calculate_wma(close, cfg.wmaPeriod),
            'rsi': calculate_rsi(close, cfg.rsiPeriod),
            'macdLine': macd,
            'macdSignal': macd_signal,
            'macdHistogram': macd_hist,
            'stochasticK': stoch_k,
            'stochasticD': stoch_d,
            'atr': calculate_atr(high, low, close, cfg.atrPeriod),
            'bollingerUpper': upper,
            'bollingerMiddle': middle,
            'bollingerLower': lower,
            'bollingerBandwidth': bandwidth,
            'bollingerPercentB': percent_b,
            'obv': calculate_obv(close, volume),
            'volumeMa': volume_ma,
            'relativeVolume': relative_volume,
        }
        rows = {key: values.tolist() for key, values in columns.items()}
        warmup = cfg.maxWarmupBars

        return [
            IndicatorSnapshot(**{key: rows[key][i] for key in rows}, warmedUp=i >= warmup)
            for i in range(n)
        ]

    def _get_close_times(self, tf: Timeframe) -> np.ndarray:
        """Return close-times array for a timeframe (no lookahead).

        `timestamp` is treated as the bar *start*. Close time is the next bar's
        start; the last bar closes one period later.
        """
        if tf in self._close_times_cache:
            return self._close_times_cache[tf]

        times = _to_datetime64([b.timestamp for b in self.candles[tf]])
        if len(times) == 0:
            close_times = times
        else:
            close_times = np.empty_like(times)
            close_times[:-1] = times[1:]
            close_times[-1] = _period_end(self.candles[tf][-1].timestamp, tf, times).to_datetime64()

        self._close_times_cache[tf] = close_times
        return close_times

    def align_indices(self, tf: Timeframe) -> np.ndarray:
        """Index of the last closed `tf` bar as of each daily bar's close (-1 = none yet)"""
        primary_close = self._get_close_times(Timeframe.DAILY)
        mtf_close = self._get_close_times(tf)
        return np.searchsorted(mtf_close, primary_close, side='right') - 1


def _candle_fields(bar: Candle) -> dict:
    return bar.model_dump(include=set(Candle.model_fields))


def _to_datetime64(timestamps: Sequence[datetime]) -> np.ndarray:
    if len(timestamps) == 0:
        return np.array([], dtype='datetime64[ns]')
    index = pd.DatetimeIndex(pd.to_datetime(list(timestamps)))
    if index.tz is not None:
        index = index.tz_convert(None)
    return index.values.astype('datetime64[ns]')


def _period_end(start: datetime, tf: Timeframe, times: np.ndarray) -> pd.Timestamp:
    ts = pd.Timestamp(start)
    if ts.tzinfo is not None:
        ts = ts.tz_convert(None)
    if tf == Timeframe.MONTHLY:
        return ts + pd.DateOffset(months=1)
    if tf == Timeframe.WEEKLY:
        return ts + pd.Timedelta(days=7)
    # Daily: median step is robust to weekends and holidays
    if len(times) >= 2:
        diffs = np.diff(times)
        diffs = diffs[diffs > np.timedelta64(0, 'ns')]
        if len(diffs) > 0:
            return ts + pd.Timedelta(np.median(diffs.astype(np.int64)), unit='ns')
    return ts + pd.Timedelta(days=1)


def aggregate_candles(daily: Sequence[Candle], timeframe: Timeframe) -> List[Candle]:
    """Aggregate daily candles into weekly (Monday-keyed) or monthly (1st-keyed) bars"""
    if timeframe == Timeframe.DAILY:
        return list(daily)
    if not daily:
        return []

    df = pd.DataFrame({
        'open': [c.open for c in daily],
        'high': [c.high for c in daily],
        'low': [c.low for c in daily],
        'close': [c.close for c in daily],
        'volume': [c.volume for c in daily],
    }, index=pd.DatetimeIndex([c.timestamp for c in daily]))

    rule = 'W-MON' if timeframe == Timeframe.WEEKLY else 'MS'
    resampled = df.resample(rule, label='left', closed='left').agg({
        'open': 'first',
        'high': 'max',
        'low': 'min',
        'close': 'last',
        'volume': 'sum',
    }).dropna()

    return [
        Candle(timestamp=ts.to_pydatetime(), open=row.open, high=row.high, low=row.low,
               close=row.close, volume=row.volume, timeframe=timeframe)
        for ts, row in zip(resampled.index, resampled.itertuples(index=False))
    ]


# ==================== INDICATOR FUNCTIONS ====================

def _check_period(period: int, name: str = "period"):
    if period < 1:
        raise ValueError(f"{name} must be >= 1 (got {period})")


def _check_lengths(*arrays: np.ndarray):
    lengths = {len(a) for a in arrays}
    if len(lengths) > 1:
        raise ValueError(f"Input arrays must have equal length (got {sorted(lengths)})")


def _as_float(values) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


@jit(nopython=True, nogil=True)
def _sma_core(values: np.ndarray, period: int) -> np.ndarray:
    """SMA Core (Numba optimized, sliding sum)"""
    n = len(values)
    result = np.zeros(n)
    window_sum = 0.0
    for i in range(n):
        window_sum += values[i]
        if i >= period:
            window_sum -= values[i - period]
        if i >= period - 1:
            result[i] = window_sum / period
    return result


def calculate_sma(values: np.ndarray, period: int) -> np.ndarray:
    """Simple Moving Average"""
    _check_period(period)
    values = _as_float(values)
    if len(values) < period:
        return np.zeros(len(values))
    return _sma_core(values, period)


@jit(nopython=True, nogil=True)
def _ema_core(values: np.ndarray, period: int) -> np.ndarray:
    n = len(values)
    ema = np.zeros(n)
    k = 2.0 / (period + 1)

    # First EMA = SMA
    seed = 0.0
    for i in range(period):
        seed += values[i]
    ema[period - 1] = seed / period

    for i in range(period, n):
        ema[i] = values[i] * k + ema[i - 1] * (1.0 - k)
    return ema


def calculate_ema(values: np.ndarray, period: int) -> np.ndarray:
    """Exponential Moving Average"""
    _check_period(period)
    values = _as_float(values)
    if len(values) < period:
        return np.zeros(len(values))
    return _ema_core(values, period)


@jit(nopython=True, nogil=True)
def _wma_core(values: np.ndarray, period: int) -> np.ndarray:
    n = len(values)
    result = np.zeros(n)
    denominator = period * (period + 1) / 2.0
    for i in range(period - 1, n):
        weighted = 0.0
        for j in range(period):
            weighted += values[i - period + 1 + j] * (j + 1)
        result[i] = weighted / denominator
    return result


def calculate_wma(values: np.ndarray, period: int) -> np.ndarray:
    """Weighted Moving Average (newest bar weighted heaviest)"""
    _check_period(period)
    values = _as_float(values)
    if len(values) < period:
        return np.zeros(len(values))
    return _wma_core(values, period)


@jit(nopython=True, nogil=True)
def _rsi_core(values: np.ndarray, period: int) -> np.ndarray:
    """RSI Core (Numba optimized)"""
    n = len(values)
    rsi = np.zeros(n)

    avg_gain = 0.0
    avg_loss = 0.0
    for i in range(1, period + 1):
        delta = values[i] - values[i - 1]
        if delta > 0:
            avg_gain += delta
        else:
            avg_loss -= delta
    avg_gain /= period
    avg_loss /= period

    if avg_loss == 0:
        rsi[period] = 100.0
    else:
        rsi[period] = 100.0 - (100.0 / (1.0 + avg_gain / avg_loss))

    # Wilder smoothing
    for i in range(period + 1, n):
        delta = values[i] - values[i - 1]
        gain = delta if delta > 0 else 0.0
        loss = -delta if delta < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

        if avg_loss == 0:
            rsi[i] = 100.0
        else:
            rsi[i] = 100.0 - (100.0 / (1.0 + avg_gain / avg_loss))

    return rsi


def calculate_rsi(values: np.ndarray, period: int = 14) -> np.ndarray:
    """Relative Strength Index"""
    _check_period(period)
    values = _as_float(values)
    if len(values) <= period:
        return np.zeros(len(values))
    return _rsi_core(values, period)


@jit(nopython=True, nogil=True)
def _atr_core(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int) -> np.ndarray:
    """ATR Core (Numba optimized)"""
    n = len(close)
    tr = np.zeros(n)
    atr = np.zeros(n)

    tr[0] = high[0] - low[0]
    for i in range(1, n):
        hl = high[i] - low[i]
        hc = abs(high[i] - close[i - 1])
        lc = abs(low[i] - close[i - 1])
        tr[i] = max(hl, hc, lc)

    # First ATR = average TR
    first = 0.0
    for i in range(1, period + 1):
        first += tr[i]
    atr[period] = first / period

    for i in range(period + 1, n):
        atr[i] = (atr[i - 1] * (period - 1) + tr[i]) / period

    return atr


def calculate_atr(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> np.ndarray:
    """Average True Range"""
    _check_period(period)
    high, low, close = _as_float(high), _as_float(low), _as_float(close)
    _check_lengths(high, low, close)
    if len(close) <= period:
        return np.zeros(len(close))
    return _atr_core(high, low, close, period)


def calculate_macd(values: np.ndarray, fast: int = 12, slow: int = 26, signal: int = 9):
    """MACD line, signal line and histogram.

    The line starts at slow-1. The signal line is seeded with the mean of the
    first `signal` valid line values (index slow+signal-2) and is an EMA of the
    line afterwards.
    """
    _check_period(fast, "fast")
    _check_period(slow, "slow")
    _check_period(signal, "signal")
    if fast >= slow:
        raise ValueError(f"MACD fast period must be below slow period ({fast} >= {slow})")

    values = _as_float(values)
    n = len(values)
    macd = np.zeros(n)
    signal_line = np.zeros(n)
    histogram = np.zeros(n)
    if n < slow:
        return macd, signal_line, histogram

    first_valid = slow - 1
    macd[first_valid:] = calculate_ema(values, fast)[first_valid:] - calculate_ema(values, slow)[first_valid:]

    if n - first_valid >= signal:
        # EMA over valid line values only
        signal_line[first_valid:] = calculate_ema(macd[first_valid:], signal)
        signal_start = first_valid + signal - 1
        histogram[signal_start:] = macd[signal_start:] - signal_line[signal_start:]

    return macd, signal_line, histogram


@jit(nopython=True, nogil=True)
def _rolling_std_core(values: np.ndarray, middle: np.ndarray, period: int) -> np.ndarray:
    n = len(values)
    std = np.zeros(n)
    for i in range(period - 1, n):
        acc = 0.0
        for j in range(i - period + 1, i + 1):
            diff = values[j] - middle[i]
            acc += diff * diff
        std[i] = np.sqrt(acc / period)
    return std


def calculate_bollinger_bands(values: np.ndarray, period: int = 20, std_dev: float = 2.0):
    """Bollinger Bands: upper, middle, lower, bandwidth, %B (population stdev)"""
    _check_period(period)
    values = _as_float(values)
    n = len(values)
    upper, middle, lower = np.zeros(n), np.zeros(n), np.zeros(n)
    bandwidth, percent_b = np.zeros(n), np.zeros(n)
    if n < period:
        return upper, middle, lower, bandwidth, percent_b

    middle = calculate_sma(values, period)
    std = _rolling_std_core(values, middle, period)

    valid = slice(period - 1, n)
    upper[valid] = middle[valid] + std[valid] * std_dev
    lower[valid] = middle[valid] - std[valid] * std_dev

    mid = middle[valid]
    band_range = upper[valid] - lower[valid]
    bandwidth[valid] = np.divide(band_range, mid, out=np.zeros_like(mid), where=mid != 0)
    percent_b[valid] = np.divide(values[valid] - lower[valid], band_range,
                                 out=np.full_like(mid, 0.5), where=band_range != 0)

    return upper, middle, lower, bandwidth, percent_b


@jit(nopython=True, nogil=True)
def _stochastic_k_core(high: np.ndarray, low: np.ndarray, close: np.ndarray, k_period: int) -> np.ndarray:
    n = len(close)
    k = np.zeros(n)
    for i in range(k_period - 1, n):
        highest_high = high[i - k_period + 1]
        lowest_low = low[i - k_period + 1]
        for j in range(i - k_period + 2, i + 1):
            if high[j] > highest_high:
                highest_high = high[j]
            if low[j] < lowest_low:
                lowest_low = low[j]

        if highest_high - lowest_low == 0:
            k[i] = 50.0
        else:
            k[i] = 100.0 * (close[i] - lowest_low) / (highest_high - lowest_low)
    return k


def calculate_stochastic(high: np.ndarray, low: np.ndarray, close: np.ndarray,
                         k_period: int = 14, d_period: int = 3):
    """Stochastic Oscillator (%K, %D)"""
    _check_period(k_period, "k_period")
    _check_period(d_period, "d_period")
    high, low, close = _as_float(high), _as_float(low), _as_float(close)
    _check_lengths(high, low, close)

    n = len(close)
    k = np.zeros(n)
    d = np.zeros(n)
    if n < k_period:
        return k, d

    k = _stochastic_k_core(high, low, close, k_period)
    # %D is SMA of valid %K values only
    d[k_period - 1:] = calculate_sma(k[k_period - 1:], d_period)
    return k, d


def calculate_obv(close: np.ndarray, volume: np.ndarray) -> np.ndarray:
    """On-Balance Volume"""
    close, volume = _as_float(close), _as_float(volume)
    _check_lengths(close, volume)
    n = len(close)
    if n == 0:
        return np.zeros(0)

    obv = np.empty(n)
    obv[0] = volume[0]
    obv[1:] = volume[0] + np.cumsum(np.sign(np.diff(close)) * volume[1:])
    return obv


def calculate_volume_profile(volume: np.ndarray, period: int = 20):
    """Volume moving average and relative volume (volume / MA)"""
    volume = _as_float(volume)
    volume_ma = calculate_sma(volume, period)
    relative = np.divide(volume, volume_ma, out=np.zeros_like(volume), where=volume_ma > 0)
    return volume_ma, relative


def is_above_average_volume(relative_volume: float, threshold: float = 1.2) -> bool:
    return relative_volume >= threshold
