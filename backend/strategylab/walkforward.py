"""
Walk-Forward Analyzer
Optimize in-sample, verify out-of-sample, slide forward and repeat.
"""
import logging
import time
from typing import List, Optional, Sequence, Tuple

from strategylab.models import (
    AnnotatedCandle, OverfittingGrade, ParameterSpace, WalkForwardConfig, WalkForwardMode,
    WalkForwardResult, WalkForwardWindow,
)
from strategylab.optimizer import GridSearchOptimizer, WindowRunner
from strategylab.performance import calculate_performance

logger = logging.getLogger(__name__)

# (inSampleStart, inSampleEnd, outOfSampleStart, outOfSampleEnd), inclusive indices
WindowBounds = Tuple[int, int, int, int]

GOOD_OVERFITTING_RATIO = 0.30
WARNING_OVERFITTING_RATIO = 0.50
MIN_EFFICIENCY = 0.5


def generate_windows(total_bars: int, config: WalkForwardConfig) -> List[WindowBounds]:
    """Window bounds for Rolling or Anchored mode; empty when the series is too short"""
    is_len = config.inSampleDays
    oos_len = config.outOfSampleDays
    if total_bars < is_len + oos_len:
        return []

    windows = []
    if config.mode == WalkForwardMode.ANCHORED:
        oos_start = is_len
        while oos_start + oos_len <= total_bars:
            windows.append((0, oos_start - 1, oos_start, oos_start + oos_len - 1))
            oos_start += oos_len
    else:
        start = 0
        while start + is_len + oos_len <= total_bars:
            oos_start = start + is_len
            windows.append((start, oos_start - 1, oos_start, oos_start + oos_len - 1))
            start += oos_len
    return windows


def grade_overfitting(ratio: float) -> OverfittingGrade:
    if ratio < GOOD_OVERFITTING_RATIO:
        return OverfittingGrade.GOOD
    if ratio < WARNING_OVERFITTING_RATIO:
        return OverfittingGrade.WARNING
    return OverfittingGrade.OVERFITTED


class WalkForwardAnalyzer:
    """Walk-forward validation on top of the grid search optimizer.

    `backtest_runner(params, bars)` runs one backtest on a slice of bars.
    Windows run sequentially; each in-sample optimization may use the
    optimizer's worker pool.
    """

    def __init__(self, backtest_runner: WindowRunner, config: Optional[WalkForwardConfig] = None,
                 num_workers: Optional[int] = None):
        self.backtest_runner = backtest_runner
        self.config = config or WalkForwardConfig()
        self.num_workers = num_workers

    def analyze(self, bars: Sequence[AnnotatedCandle], space: ParameterSpace) -> WalkForwardResult:
        start_time = time.time()
        result = WalkForwardResult()
        bounds = generate_windows(len(bars), self.config)

        if not bounds:
            result.warnings.append("Insufficient data for walk-forward analysis")
            logger.warning(f"⚠️ Insufficient data for walk-forward analysis: {len(bars)} bars, "
                           f"need {self.config.inSampleDays + self.config.outOfSampleDays}")
            return result

        logger.info(f"🚶 Walk-forward ({self.config.mode.value}): {len(bounds)} windows over {len(bars)} bars")

        for window_index, window_bounds in enumerate(bounds):
            try:
                window = self._run_window(window_index, window_bounds, bars, space, result.warnings)
            except Exception as e:
                message = f"Window {window_index} failed: {e}"
                result.warnings.append(message)
                logger.warning(f"⚠️ {message}")
                continue
            if window is None:
                continue
            result.windows.append(window)
            logger.info(f"Window {window_index}: IS Sharpe={window.inSampleSharpe:.2f}, "
                        f"OOS Sharpe={window.outOfSampleSharpe:.2f}, "
                        f"Overfitting={window.overfittingRatio:.1%}")

        self._aggregate(result)
        result.elapsedSeconds = time.time() - start_time
        logger.info(f"✅ Walk-forward complete: {len(result.windows)} windows, "
                    f"grade {result.overfittingGrade.value}")
        return result

    def _run_window(self, window_index: int, window_bounds: WindowBounds, bars: Sequence[AnnotatedCandle],
                    space: ParameterSpace, warnings: List[str]) -> Optional[WalkForwardWindow]:
        is_start, is_end, oos_start, oos_end = window_bounds
        in_sample = list(bars[is_start:is_end + 1])
        out_of_sample = list(bars[oos_start:oos_end + 1])

        if len(in_sample) < 2 or len(out_of_sample) < 2:
            warnings.append(f"Window {window_index}: insufficient bars (IS {len(in_sample)}, OOS {len(out_of_sample)})")
            return None

        optimizer = GridSearchOptimizer(
            lambda params: self.backtest_runner(params, in_sample),
            risk_free_rate=self.config.riskFreeRate,
            top_n=self.config.optimizationTopN,
            num_workers=self.num_workers,
        )
        search = optimizer.run(space, parallel=self.config.parallel)
        best = search.bestTrial
        if best is None:
            warnings.append(f"Window {window_index}: optimization produced no results")
            return None

        oos_result = self.backtest_runner(best.parameters, out_of_sample)
        oos_metrics = calculate_performance(oos_result, self.config.riskFreeRate)

        is_sharpe = best.metrics.sharpeRatio
        oos_sharpe = oos_metrics.sharpeRatio
        if is_sharpe == 0:
            overfitting = efficiency = 0.0
        else:
            overfitting = (is_sharpe - oos_sharpe) / abs(is_sharpe)
            efficiency = oos_sharpe / abs(is_sharpe)

        return WalkForwardWindow(
            windowIndex=window_index,
            inSampleStart=is_start,
            inSampleEnd=is_end,
            outOfSampleStart=oos_start,
            outOfSampleEnd=oos_end,
            inSampleStartDate=in_sample[0].timestamp,
            outOfSampleEndDate=out_of_sample[-1].timestamp,
            bestParameters=best.parameters,
            inSampleSharpe=is_sharpe,
            outOfSampleSharpe=oos_sharpe,
            overfittingRatio=overfitting,
            walkForwardEfficiency=efficiency,
            outOfSampleMetrics=oos_metrics,
            outOfSampleEquity=oos_result.equityCurve,
        )

    def _aggregate(self, result: WalkForwardResult):
        windows = result.windows
        if not windows:
            return
        n = len(windows)
        result.averageInSampleSharpe = sum(w.inSampleSharpe for w in windows) / n
        result.averageOutOfSampleSharpe = sum(w.outOfSampleSharpe for w in windows) / n
        result.averageOverfittingRatio = sum(w.overfittingRatio for w in windows) / n
        result.averageEfficiency = sum(w.walkForwardEfficiency for w in windows) / n
        result.overfittingGrade = grade_overfitting(result.averageOverfittingRatio)

        # Parameters of the single best out-of-sample window
        blessed = max(windows, key=lambda w: w.outOfSampleSharpe)
        result.blessedParameters = blessed.bestParameters

        # Concatenated, not re-based: each window starts from initial capital
        result.aggregatedEquityCurve = [p for w in windows for p in w.outOfSampleEquity]

        if result.averageEfficiency < MIN_EFFICIENCY:
            result.warnings.append(
                f"Low walk-forward efficiency ({result.averageEfficiency:.2f} < {MIN_EFFICIENCY})")
