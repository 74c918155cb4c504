"""
Grid Search Optimizer
Exhaustive parameter sweep on a worker pool, ranked by Sharpe ratio.
"""
import logging
import threading
import time
from bisect import bisect_left, bisect_right
from functools import partial
from itertools import islice, product
from multiprocessing import cpu_count
from multiprocessing.pool import ThreadPool
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from strategylab import DEFAULT_RISK_FREE_RATE
from strategylab.backtest import BacktestEngine
from strategylab.indicators import IndicatorBank
from strategylab.models import (
    AnnotatedCandle, BacktestConfig, BacktestEngineResult, Candle, GridSearchResult,
    IndicatorConfig, OptimizationTrial, ParameterSet, ParameterSpace, StrategyDefinition, Timeframe,
)
from strategylab.performance import calculate_performance

logger = logging.getLogger(__name__)

BacktestRunner = Callable[[ParameterSet], BacktestEngineResult]
WindowRunner = Callable[[ParameterSet, Sequence[AnnotatedCandle]], BacktestEngineResult]
ProgressCallback = Callable[[int, int, float], None]

STRATEGY_SECTIONS = ('stopLoss', 'takeProfit', 'positionSizing', 'filters', 'entryOrder')
CONDITION_FIELDS = ('value', 'valueHigh')


def enumerate_parameter_grid(space: ParameterSpace) -> Iterator[ParameterSet]:
    """Every combination, rightmost parameter varying fastest"""
    if not space.parameters:
        return
    names = [p.name for p in space.parameters]
    for combo in product(*(p.values() for p in space.parameters)):
        yield ParameterSet(values=dict(zip(names, combo)))


def _top_k(trials: List[OptimizationTrial], k: int) -> List[OptimizationTrial]:
    # Ties keep encounter order so sequential and parallel runs agree
    return sorted(trials, key=lambda t: (-t.rankingScore, t.index))[:k]


def _chunked(items: Iterator, size: int) -> Iterator[List]:
    while True:
        chunk = list(islice(items, size))
        if not chunk:
            return
        yield chunk


class _ChunkOutcome:
    def __init__(self):
        self.top: List[OptimizationTrial] = []
        self.completed = 0
        self.failed = 0
        self.cancelled = False


class GridSearchOptimizer:
    """Grid search over a ParameterSpace.

    `backtest_runner` maps a ParameterSet to a BacktestEngineResult; it is
    called concurrently from pool threads and must not share mutable state
    between calls.
    """

    def __init__(self, backtest_runner: BacktestRunner, risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
                 top_n: int = 10, num_workers: Optional[int] = None):
        self.backtest_runner = backtest_runner
        self.risk_free_rate = risk_free_rate
        self.top_n = top_n
        # Leave headroom for the rest of the system
        self.num_workers = num_workers or min(6, cpu_count())

    def run(self, space: ParameterSpace, parallel: bool = True,
            progress_callback: Optional[ProgressCallback] = None,
            cancel_event: Optional[threading.Event] = None) -> GridSearchResult:
        """Run optimization"""
        total = space.totalCombinations
        result = GridSearchResult(totalCombinations=total)

        if total == 0:
            result.warnings.append("No parameter combinations to test")
            logger.warning("⚠️ No parameter combinations to test")
            return result
        if space.isLarge:
            message = f"Large parameter space: {total:,} combinations (consider reducing ranges)"
            result.warnings.append(message)
            logger.warning(f"⚠️ {message}")

        workers = self.num_workers if parallel else 1
        logger.info(f"🚀 Optimizing {total:,} combinations using {workers} worker(s)...")
        start_time = time.time()

        combos = enumerate(enumerate_parameter_grid(space))
        chunk_size = max(1, min(50, total // (workers * 4)))
        run_chunk = partial(self._run_chunk, cancel_event=cancel_event)

        best: List[OptimizationTrial] = []
        if workers > 1 and total > 1:
            with ThreadPool(processes=workers) as pool:
                for outcome in pool.imap_unordered(run_chunk, _chunked(combos, chunk_size)):
                    best = self._merge(result, best, outcome, start_time, progress_callback)
        else:
            for chunk in _chunked(combos, chunk_size):
                outcome = run_chunk(chunk)
                best = self._merge(result, best, outcome, start_time, progress_callback)
                if outcome.cancelled:
                    break

        result.topResults = best
        result.elapsedSeconds = time.time() - start_time

        if result.cancelled:
            logger.info(f"🛑 Optimization cancelled after {result.completedCombinations}/{total} combinations")
        elif best:
            logger.info(f"✅ Optimization complete! Best Sharpe: {best[0].rankingScore:.3f} | "
                        f"Total time: {result.elapsedSeconds:.1f}s")
        else:
            logger.warning(f"⚠️ Optimization produced no results ({result.failedCombinations} failed)")
        return result

    def _merge(self, result: GridSearchResult, best: List[OptimizationTrial], outcome: _ChunkOutcome,
               start_time: float, progress_callback: Optional[ProgressCallback]) -> List[OptimizationTrial]:
        result.completedCombinations += outcome.completed
        result.failedCombinations += outcome.failed
        result.cancelled = result.cancelled or outcome.cancelled
        best = _top_k(best + outcome.top, self.top_n)

        done = result.completedCombinations
        total = result.totalCombinations
        best_score = best[0].rankingScore if best else 0.0
        if outcome.completed and (done % max(1, total // 10) < outcome.completed or done == total):
            elapsed = time.time() - start_time
            rate = done / elapsed if elapsed > 0 else 0.0
            remaining = (total - done) / rate if rate > 0 else 0.0
            logger.info(f"📊 Progress: {done}/{total} ({done / total * 100:.1f}%) | "
                        f"Elapsed: {elapsed:.1f}s | Remaining: {remaining:.1f}s | Best Sharpe: {best_score:.3f}")

        if progress_callback:
            progress_callback(done, total, best_score)
        return best

    def _run_chunk(self, chunk: List[Tuple[int, ParameterSet]],
                   cancel_event: Optional[threading.Event] = None) -> _ChunkOutcome:
        outcome = _ChunkOutcome()
        for index, params in chunk:
            if cancel_event is not None and cancel_event.is_set():
                outcome.cancelled = True
                break
            try:
                trial = self._run_trial(index, params)
            except Exception as e:
                logger.warning(f"⚠️ Trial #{index} {params.values} failed: {e}")
                outcome.failed += 1
                outcome.completed += 1
                continue
            outcome.completed += 1
            outcome.top.append(trial)
            if len(outcome.top) > 2 * self.top_n:
                outcome.top = _top_k(outcome.top, self.top_n)
        outcome.top = _top_k(outcome.top, self.top_n)
        return outcome

    def _run_trial(self, index: int, params: ParameterSet) -> OptimizationTrial:
        result = self.backtest_runner(params)
        metrics = calculate_performance(result, self.risk_free_rate)
        return OptimizationTrial(
            index=index,
            parameters=params,
            rankingScore=metrics.sharpeRatio,
            metrics=metrics,
            result=result,
        )


# ==================== PARAMETER BINDING ====================

def apply_parameters(strategy: StrategyDefinition, indicator_config: IndicatorConfig,
                     params: ParameterSet) -> Tuple[StrategyDefinition, IndicatorConfig]:
    """Bind a ParameterSet onto copies of the strategy and indicator config.

    Parameter names are dotted paths:
      indicator.<field>                  e.g. indicator.rsiPeriod
      stopLoss.multiplier, takeProfit.multiplier
      positionSizing.<field>, filters.<field>, entryOrder.<field>
      entry.<group>.<condition>.value    (or valueHigh; exit.* likewise)
    """
    strategy = strategy.model_copy(deep=True)
    indicator_updates: Dict[str, float] = {}

    for name, value in params.values.items():
        parts = name.split('.')
        section = parts[0]

        if section == 'indicator' and len(parts) == 2:
            if parts[1] not in IndicatorConfig.model_fields:
                raise ValueError(f"Unknown indicator parameter '{name}'")
            indicator_updates[parts[1]] = value

        elif section in STRATEGY_SECTIONS and len(parts) == 2:
            current = getattr(strategy, section)
            if parts[1] not in type(current).model_fields:
                raise ValueError(f"Unknown strategy parameter '{name}'")
            updated = type(current).model_validate({**current.model_dump(), parts[1]: value})
            strategy = strategy.model_copy(update={section: updated})

        elif section in ('entry', 'exit') and len(parts) == 4 and parts[3] in CONDITION_FIELDS:
            groups = strategy.entryConditions if section == 'entry' else strategy.exitConditions
            try:
                condition = groups[int(parts[1])].conditions[int(parts[2])]
            except (ValueError, IndexError):
                raise ValueError(f"Parameter '{name}' does not address an existing condition")
            setattr(condition, parts[3], float(value))

        else:
            raise ValueError(f"Unknown parameter '{name}'")

    if indicator_updates:
        indicator_config = IndicatorConfig.model_validate({**indicator_config.model_dump(), **indicator_updates})
    return strategy, indicator_config


class AnnotatedSeriesCache:
    """Aligned daily bars per indicator config, computed once and shared by trials"""

    def __init__(self, candles_by_timeframe: Dict[Timeframe, Sequence[Candle]], aggregate_missing: bool = True):
        self.candles_by_timeframe = candles_by_timeframe
        self.aggregate_missing = aggregate_missing
        self._series: Dict[str, List[AnnotatedCandle]] = {}
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    def get(self, indicator_config: IndicatorConfig) -> List[AnnotatedCandle]:
        key = indicator_config.model_dump_json()
        with self._lock:
            key_lock = self._key_locks.setdefault(key, threading.Lock())
        # Per-key lock: one build per config, different configs build concurrently
        with key_lock:
            if key not in self._series:
                bank = IndicatorBank(self.candles_by_timeframe, indicator_config, self.aggregate_missing)
                self._series[key] = bank.build()
            return self._series[key]


def make_backtest_runner(cache: AnnotatedSeriesCache, strategy: StrategyDefinition, symbol: str,
                         config: Optional[BacktestConfig] = None,
                         indicator_config: Optional[IndicatorConfig] = None) -> BacktestRunner:
    """Runner for full-history grid search"""
    base_indicators = indicator_config or IndicatorConfig()

    def runner(params: ParameterSet) -> BacktestEngineResult:
        trial_strategy, trial_indicators = apply_parameters(strategy, base_indicators, params)
        bars = cache.get(trial_indicators)
        return BacktestEngine(trial_strategy, config).run(bars, symbol)

    return runner


def make_window_runner(cache: AnnotatedSeriesCache, strategy: StrategyDefinition, symbol: str,
                       config: Optional[BacktestConfig] = None,
                       indicator_config: Optional[IndicatorConfig] = None) -> WindowRunner:
    """Runner for walk-forward windows.

    Indicators are always computed over the full history (they only look
    backwards) and the window is re-selected by date when an indicator
    parameter changes.
    """
    base_indicators = indicator_config or IndicatorConfig()

    def runner(params: ParameterSet, bars: Sequence[AnnotatedCandle]) -> BacktestEngineResult:
        trial_strategy, trial_indicators = apply_parameters(strategy, base_indicators, params)
        if trial_indicators != base_indicators and bars:
            full = cache.get(trial_indicators)
            dates = [b.timestamp for b in full]
            lo = bisect_left(dates, bars[0].timestamp)
            hi = bisect_right(dates, bars[-1].timestamp)
            bars = full[lo:hi]
        return BacktestEngine(trial_strategy, config).run(bars, symbol)

    return runner
