"""
Performance Calculator
Risk-adjusted statistics derived from a backtest result.
"""
import sys
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from strategylab import DAYS_PER_YEAR, DEFAULT_RISK_FREE_RATE, TRADING_DAYS_PER_YEAR
from strategylab.models import BacktestEngineResult, EquityPoint, PerformanceMetrics, TradeRecord

MAX_RATIO = sys.float_info.max


def calculate_performance(result: BacktestEngineResult,
                          risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
                          benchmark: Optional[Sequence[EquityPoint]] = None) -> PerformanceMetrics:
    """Full metrics for one backtest; `risk_free_rate` is an annual percentage"""
    values = np.array([p.value for p in result.equityCurve], dtype=np.float64)
    returns = daily_returns(values)

    years = _years_between(result.startDate, result.endDate)
    cagr = calculate_cagr(result.initialCapital, result.finalEquity, years)
    max_dd, max_dd_days = calculate_max_drawdown(result.equityCurve)

    metrics = dict(
        totalReturn=result.totalReturn,
        cagr=cagr,
        volatility=calculate_volatility(returns),
        sharpeRatio=calculate_sharpe(returns, risk_free_rate),
        sortinoRatio=calculate_sortino(returns, risk_free_rate),
        maxDrawdown=max_dd,
        maxDrawdownDurationDays=max_dd_days,
        calmarRatio=cagr / abs(max_dd) if max_dd != 0 else 0.0,
        monthlyReturns=period_returns(result.equityCurve, 'M'),
        yearlyReturns=period_returns(result.equityCurve, 'Y'),
    )
    metrics.update(trade_statistics(result.trades))

    if benchmark is not None and len(benchmark) >= 2:
        metrics.update(benchmark_statistics(result.equityCurve, benchmark, risk_free_rate))

    performance = PerformanceMetrics(**metrics)
    performance.redFlags = red_flags(performance)
    return performance


# ==================== RETURNS ====================

def daily_returns(values: np.ndarray) -> np.ndarray:
    """Simple returns as fractions; 0 where the previous value is 0"""
    values = np.asarray(values, dtype=np.float64)
    if len(values) < 2:
        return np.zeros(0)
    prev = values[:-1]
    return np.divide(values[1:] - prev, prev, out=np.zeros_like(prev), where=prev != 0)


def calculate_cagr(start_value: float, end_value: float, years: float) -> float:
    if start_value <= 0 or end_value <= 0 or years <= 0:
        return 0.0
    return ((end_value / start_value) ** (1.0 / years) - 1.0) * 100


def calculate_volatility(returns: np.ndarray) -> float:
    """Annualised sample standard deviation, percent"""
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns, ddof=1) * np.sqrt(TRADING_DAYS_PER_YEAR) * 100)


def calculate_sharpe(returns: np.ndarray, risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    if len(returns) < 2:
        return 0.0
    excess = returns - risk_free_rate / 100 / TRADING_DAYS_PER_YEAR
    std = np.std(excess, ddof=1)
    if std == 0:
        return 0.0
    return float(np.mean(excess) / std * np.sqrt(TRADING_DAYS_PER_YEAR))


def calculate_sortino(returns: np.ndarray, risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> float:
    if len(returns) < 2:
        return 0.0
    excess = returns - risk_free_rate / 100 / TRADING_DAYS_PER_YEAR
    mean = np.mean(excess)
    downside = excess[excess < 0]
    if len(downside) == 0:
        return MAX_RATIO if mean > 0 else 0.0
    downside_dev = np.sqrt(np.mean(downside ** 2))
    if downside_dev == 0:
        return 0.0
    return float(mean / downside_dev * np.sqrt(TRADING_DAYS_PER_YEAR))


def calculate_max_drawdown(curve: Sequence[EquityPoint]) -> Tuple[float, int]:
    """Deepest peak-to-trough decline (negative percent) and its duration in days.

    Duration runs from the peak preceding the trough until equity regains that
    peak, or until the end of the series if it never does.
    """
    if len(curve) < 2:
        return 0.0, 0

    peak = curve[0].value
    peak_date = curve[0].date
    max_dd = 0.0
    max_dd_peak_date = None
    max_dd_peak_value = 0.0

    for point in curve:
        if point.value > peak:
            peak = point.value
            peak_date = point.date
        if peak > 0:
            dd = (point.value - peak) / peak * 100
            if dd < max_dd:
                max_dd = dd
                max_dd_peak_date = peak_date
                max_dd_peak_value = peak

    if max_dd_peak_date is None:
        return 0.0, 0

    recovery_date = curve[-1].date
    for point in curve:
        if point.date > max_dd_peak_date and point.value >= max_dd_peak_value:
            recovery_date = point.date
            break
    return max_dd, (recovery_date - max_dd_peak_date).days


def period_returns(curve: Sequence[EquityPoint], freq: str) -> Dict:
    """Monthly ('M', keyed 'YYYY-MM') or yearly ('Y', keyed by int year) returns in percent.

    Each period is chained from the previous period's last value; the first
    period starts from its own first value.
    """
    if not curve:
        return {}
    series = pd.Series([p.value for p in curve], index=pd.DatetimeIndex([p.date for p in curve]))
    grouped = series.groupby(series.index.to_period(freq))
    ends = grouped.last()
    starts = ends.shift(1)
    starts.iloc[0] = grouped.first().iloc[0]

    returns = {}
    for period, start, end in zip(ends.index, starts.values, ends.values):
        key = str(period) if freq == 'M' else int(period.year)
        returns[key] = float((end - start) / start * 100) if start != 0 else 0.0
    return returns


# ==================== TRADES ====================

def trade_statistics(trades: Sequence[TradeRecord]) -> Dict:
    if not trades:
        return {}
    pnls = np.array([t.pnl for t in trades], dtype=np.float64)
    wins = pnls[pnls > 0]
    losses = pnls[pnls <= 0]

    gross_profit = float(np.sum(wins))
    gross_loss = abs(float(np.sum(losses)))
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = MAX_RATIO if gross_profit > 0 else 0.0

    return dict(
        totalTrades=len(trades),
        winningTrades=int(len(wins)),
        losingTrades=int(len(losses)),
        winRate=len(wins) / len(trades) * 100,
        profitFactor=profit_factor,
        expectancy=float(np.mean(pnls)),
        averageWin=float(np.mean(wins)) if len(wins) else 0.0,
        averageLoss=float(np.mean(losses)) if len(losses) else 0.0,
        largestWin=float(np.max(wins)) if len(wins) else 0.0,
        largestLoss=float(np.min(losses)) if len(losses) else 0.0,
        averageHoldingDays=float(np.mean([t.holdingDays for t in trades])),
    )


# ==================== BENCHMARK ====================

def benchmark_statistics(curve: Sequence[EquityPoint], benchmark: Sequence[EquityPoint],
                         risk_free_rate: float = DEFAULT_RISK_FREE_RATE) -> Dict:
    """Benchmark return/CAGR plus alpha and beta on date-aligned daily returns"""
    first, last = benchmark[0], benchmark[-1]
    bench_return = (last.value - first.value) / first.value * 100 if first.value else 0.0
    bench_cagr = calculate_cagr(first.value, last.value, _years_between(first.date, last.date))

    stats = dict(benchmarkReturn=bench_return, benchmarkCagr=bench_cagr, alpha=0.0, beta=0.0)

    strategy = pd.Series([p.value for p in curve], index=pd.DatetimeIndex([p.date for p in curve]))
    bench = pd.Series([p.value for p in benchmark], index=pd.DatetimeIndex([p.date for p in benchmark]))
    aligned = pd.concat([strategy, bench], axis=1, join='inner').dropna()
    if len(aligned) < 3:
        return stats

    s_returns = daily_returns(aligned.iloc[:, 0].values)
    b_returns = daily_returns(aligned.iloc[:, 1].values)
    variance = np.var(b_returns)
    if variance == 0:
        return stats

    beta = float(np.mean((s_returns - s_returns.mean()) * (b_returns - b_returns.mean())) / variance)
    rf = risk_free_rate / 100
    annual_s = s_returns.mean() * TRADING_DAYS_PER_YEAR
    annual_b = b_returns.mean() * TRADING_DAYS_PER_YEAR
    stats['beta'] = beta
    stats['alpha'] = float((annual_s - (rf + beta * (annual_b - rf))) * 100)
    return stats


# ==================== DIAGNOSTICS ====================

def red_flags(metrics: PerformanceMetrics) -> List[str]:
    flags = []
    if metrics.sharpeRatio < 1.0:
        flags.append(f"Low Sharpe ratio ({metrics.sharpeRatio:.2f} < 1.0)")
    if metrics.benchmarkCagr is not None and metrics.cagr < metrics.benchmarkCagr:
        flags.append(f"Underperforms benchmark (CAGR {metrics.cagr:.2f}% < {metrics.benchmarkCagr:.2f}%)")
    if metrics.maxDrawdown < -30:
        flags.append(f"Severe max drawdown ({metrics.maxDrawdown:.2f}%)")
    if metrics.totalTrades > 0 and metrics.profitFactor < 1:
        flags.append(f"Profit factor below 1 ({metrics.profitFactor:.2f})")
    if metrics.totalTrades > 0 and metrics.winRate < 30:
        flags.append(f"Low win rate ({metrics.winRate:.1f}% < 30%)")
    return flags


def _years_between(start, end) -> float:
    if start is None or end is None:
        return 0.0
    return (end - start).days / DAYS_PER_YEAR
