"""
Signal Screening
Confirmation checks, confidence grading and the multi-symbol screener.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from strategylab import RECENT_BARS_WINDOW
from strategylab.backtest import calculate_stop_loss, calculate_take_profit, check_filters
from strategylab.conditions import evaluate_conditions
from strategylab.models import (
    AnnotatedCandle, ConfirmationResult, ConfirmationType, ConfirmationWeights, GradeAccuracy,
    GradeBreakdownEntry, GradeFactor, GradeHistoryEntry, ScreenerConfig, ScreenerResult,
    ScreenerRunResult, SignalDirection, SignalEvaluation, SignalGrade, SignalReport,
    StrategyDefinition, Timeframe,
)

logger = logging.getLogger(__name__)

VOLUME_CONFIRMATION_RATIO = 1.2
VOLATILITY_MIN_RATIO = 0.5
VOLATILITY_MAX_RATIO = 2.0
MIN_ATR_HISTORY = 5
RSI_OVERBOUGHT = 70.0
RSI_OVERSOLD = 30.0
STOCH_OVERBOUGHT = 80.0
STOCH_OVERSOLD = 20.0

GRADE_WEIGHTS: Dict[GradeFactor, float] = {
    GradeFactor.TREND_ALIGNMENT: 0.25,
    GradeFactor.CONFIRMATIONS: 0.25,
    GradeFactor.VOLUME: 0.15,
    GradeFactor.RISK_REWARD: 0.15,
    GradeFactor.HISTORY: 0.10,
    GradeFactor.VOLATILITY: 0.10,
}

GRADE_THRESHOLDS = (
    (90.0, SignalGrade.A),
    (75.0, SignalGrade.B),
    (60.0, SignalGrade.C),
    (40.0, SignalGrade.D),
)

NEUTRAL_HISTORY_SCORE = 50.0


# ==================== CONFIRMATIONS ====================

def _check_trend(bar, recent_bars, direction):
    weekly = bar.higherTimeframes.get(Timeframe.WEEKLY)
    snap = weekly if weekly is not None and weekly.warmedUp else bar.indicators
    source = "weekly" if snap is weekly else "daily"
    if not snap.warmedUp or snap.smaShort == 0 or snap.smaMedium == 0:
        return False, "insufficient data for trend"
    trend_up = snap.smaShort > snap.smaMedium
    passed = trend_up if direction == SignalDirection.LONG else not trend_up
    return passed, f"{source} SMA {snap.smaShort:.2f} vs {snap.smaMedium:.2f} ({'up' if trend_up else 'down'})"


def _check_momentum(bar, recent_bars, direction):
    rsi = bar.indicators.rsi
    if rsi == 0:
        return False, "RSI unavailable"
    if direction == SignalDirection.LONG:
        return rsi < RSI_OVERBOUGHT, f"RSI {rsi:.1f} (long needs < {RSI_OVERBOUGHT:.0f})"
    return rsi > RSI_OVERSOLD, f"RSI {rsi:.1f} (short needs > {RSI_OVERSOLD:.0f})"


def _check_volume(bar, recent_bars, direction):
    average = bar.indicators.volumeMa
    if average <= 0 and len(recent_bars) > 1:
        average = float(np.mean([b.volume for b in recent_bars]))
    if average <= 0:
        return False, "volume average unavailable"
    ratio = bar.volume / average
    return ratio >= VOLUME_CONFIRMATION_RATIO, f"volume {ratio:.2f}x average"


def _check_volatility(bar, recent_bars, direction):
    atr = bar.indicators.atr
    history = [b.indicators.atr for b in recent_bars if b.indicators.atr > 0]
    if atr <= 0 or len(history) < MIN_ATR_HISTORY:
        return False, "ATR history unavailable"
    ratio = atr / float(np.mean(history))
    passed = VOLATILITY_MIN_RATIO <= ratio <= VOLATILITY_MAX_RATIO
    return passed, f"ATR {ratio:.2f}x recent average"


def _check_macd_histogram(bar, recent_bars, direction):
    snap = bar.indicators
    if snap.macdLine == 0 and snap.macdSignal == 0 and snap.macdHistogram == 0:
        return False, "MACD unavailable"
    if direction == SignalDirection.LONG:
        return snap.macdHistogram > 0, f"histogram {snap.macdHistogram:.4f}"
    return snap.macdHistogram < 0, f"histogram {snap.macdHistogram:.4f}"


def _check_stochastic(bar, recent_bars, direction):
    snap = bar.indicators
    if snap.stochasticK == 0 and snap.stochasticD == 0:
        return False, "stochastic unavailable"
    if direction == SignalDirection.LONG:
        return snap.stochasticK < STOCH_OVERBOUGHT, f"%K {snap.stochasticK:.1f}"
    return snap.stochasticK > STOCH_OVERSOLD, f"%K {snap.stochasticK:.1f}"


CONFIRMATION_CHECKS: Dict[ConfirmationType, Callable] = {
    ConfirmationType.TREND_ALIGNMENT: _check_trend,
    ConfirmationType.MOMENTUM: _check_momentum,
    ConfirmationType.VOLUME: _check_volume,
    ConfirmationType.VOLATILITY: _check_volatility,
    ConfirmationType.MACD_HISTOGRAM: _check_macd_histogram,
    ConfirmationType.STOCHASTIC: _check_stochastic,
}

WEIGHT_FIELDS: Dict[ConfirmationType, str] = {
    ConfirmationType.TREND_ALIGNMENT: 'trendAlignment',
    ConfirmationType.MOMENTUM: 'momentum',
    ConfirmationType.VOLUME: 'volume',
    ConfirmationType.VOLATILITY: 'volatility',
    ConfirmationType.MACD_HISTOGRAM: 'macdHistogram',
    ConfirmationType.STOCHASTIC: 'stochastic',
}


def evaluate_signal(symbol: str, date: datetime, direction: SignalDirection, bar: AnnotatedCandle,
                    recent_bars: Sequence[AnnotatedCandle],
                    weights: Optional[ConfirmationWeights] = None) -> SignalEvaluation:
    """Run the six weighted confirmation checks for a trade candidate"""
    weights = weights or ConfirmationWeights()
    confirmations = []
    for ctype, check in CONFIRMATION_CHECKS.items():
        passed, details = check(bar, recent_bars, direction)
        confirmations.append(ConfirmationResult(
            type=ctype, passed=passed, weight=getattr(weights, WEIGHT_FIELDS[ctype]), details=details))

    total_weight = sum(c.weight for c in confirmations)
    passed_weight = sum(c.weight for c in confirmations if c.passed)
    return SignalEvaluation(
        symbol=symbol,
        date=date,
        direction=direction,
        confirmations=confirmations,
        totalScore=passed_weight / total_weight if total_weight > 0 else 0.0,
    )


def evaluate_signal_at(symbol: str, index: int, direction: SignalDirection, bars: Sequence[AnnotatedCandle],
                       weights: Optional[ConfirmationWeights] = None,
                       lookback: int = RECENT_BARS_WINDOW) -> SignalEvaluation:
    """Evaluate bars[index] using up to `lookback` bars ending at it"""
    if index < 0 or index >= len(bars):
        raise ValueError(f"Bar index {index} out of range for {len(bars)} bars")
    recent = bars[max(0, index - lookback + 1):index + 1]
    bar = bars[index]
    return evaluate_signal(symbol, bar.timestamp, direction, bar, recent, weights)


# ==================== GRADING ====================

def compute_risk_reward(entry: float, stop: float, target: float,
                        direction: SignalDirection = SignalDirection.LONG) -> float:
    if direction == SignalDirection.LONG:
        risk, reward = entry - stop, target - entry
    else:
        risk, reward = stop - entry, entry - target
    if risk <= 0:
        return 0.0
    return reward / risk


def score_risk_reward(ratio: float) -> float:
    if ratio <= 0:
        return 0.0
    if ratio < 1.0:
        return 25.0
    if ratio < 1.5:
        return 40.0
    if ratio < 2.0:
        return 60.0
    if ratio < 2.5:
        return 75.0
    if ratio < 3.0:
        return 85.0
    return 100.0


def assign_grade(score: float) -> SignalGrade:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return SignalGrade.F


def grade_signal(evaluation: SignalEvaluation, entry: float, stop: float, target: float,
                 historical_win_rate: Optional[float] = None) -> SignalReport:
    """Blend confirmations, risk:reward and history into a 0-100 score and a letter grade"""

    def passed(ctype: ConfirmationType) -> float:
        result = evaluation.confirmation(ctype)
        return 100.0 if result is not None and result.passed else 0.0

    rr = compute_risk_reward(entry, stop, target, evaluation.direction)
    if historical_win_rate is None:
        history = NEUTRAL_HISTORY_SCORE
    else:
        history = min(100.0, max(0.0, historical_win_rate))

    raw_scores = {
        GradeFactor.TREND_ALIGNMENT: passed(ConfirmationType.TREND_ALIGNMENT),
        GradeFactor.CONFIRMATIONS: evaluation.totalScore * 100,
        GradeFactor.VOLUME: passed(ConfirmationType.VOLUME),
        GradeFactor.RISK_REWARD: score_risk_reward(rr),
        GradeFactor.HISTORY: history,
        GradeFactor.VOLATILITY: passed(ConfirmationType.VOLATILITY),
    }
    breakdown = [
        GradeBreakdownEntry(factor=factor, rawScore=raw, weight=GRADE_WEIGHTS[factor],
                            weightedScore=raw * GRADE_WEIGHTS[factor])
        for factor, raw in raw_scores.items()
    ]
    raw_total = sum(b.weightedScore for b in breakdown)
    # Graded on the full-precision total; 9 places only absorbs float accumulation error
    grade = assign_grade(round(raw_total, 9))

    return SignalReport(
        symbol=evaluation.symbol,
        date=evaluation.date,
        direction=evaluation.direction,
        grade=grade,
        score=round(raw_total, 2),
        entryPrice=entry,
        stopLoss=stop,
        takeProfit=target,
        riskRewardRatio=rr,
        evaluation=evaluation,
        breakdown=breakdown,
    )


# ==================== HISTORY ====================

class GradeHistoryTracker:
    """Thread-safe record of issued grades and their realised outcomes"""

    def __init__(self):
        self._entries: List[GradeHistoryEntry] = []
        self._lock = threading.Lock()

    def record(self, report: SignalReport) -> GradeHistoryEntry:
        entry = GradeHistoryEntry(symbol=report.symbol, date=report.date, grade=report.grade, score=report.score)
        with self._lock:
            self._entries.append(entry)
        return entry

    def resolve_outcome(self, symbol: str, date: datetime, pnl_percent: float) -> bool:
        """Attach a realised outcome to the matching unresolved signal"""
        with self._lock:
            for entry in self._entries:
                if entry.symbol == symbol and entry.date == date and entry.outcomeWin is None:
                    entry.outcomeWin = pnl_percent > 0
                    entry.outcomePnlPercent = pnl_percent
                    return True
        return False

    def entries(self) -> List[GradeHistoryEntry]:
        with self._lock:
            return list(self._entries)

    def accuracy_summary(self) -> Dict[SignalGrade, GradeAccuracy]:
        summary = {grade: GradeAccuracy(grade=grade) for grade in SignalGrade}
        pnl_totals = {grade: 0.0 for grade in SignalGrade}
        for entry in self.entries():
            stats = summary[entry.grade]
            stats.totalSignals += 1
            if entry.outcomeWin is None:
                continue
            stats.resolvedSignals += 1
            stats.wins += int(entry.outcomeWin)
            pnl_totals[entry.grade] += entry.outcomePnlPercent or 0.0

        for grade, stats in summary.items():
            if stats.resolvedSignals:
                stats.winRate = stats.wins / stats.resolvedSignals * 100
                stats.averagePnlPercent = pnl_totals[grade] / stats.resolvedSignals
        return summary


# ==================== SCREENER ====================

class ScreenerEngine:
    """Scan many symbols' latest bar for graded entry signals"""

    def __init__(self, strategy: StrategyDefinition, config: Optional[ScreenerConfig] = None,
                 weights: Optional[ConfirmationWeights] = None):
        self.strategy = strategy
        self.config = config or ScreenerConfig()
        self.weights = weights

    def scan(self, symbol_data: Dict[str, Sequence[AnnotatedCandle]],
             win_rate_by_symbol: Optional[Dict[str, float]] = None,
             history_tracker: Optional[GradeHistoryTracker] = None) -> ScreenerRunResult:
        start_time = time.time()
        win_rates = win_rate_by_symbol or {}
        run = ScreenerRunResult(scanDate=datetime.now(), symbolsScanned=len(symbol_data))
        latest: Optional[datetime] = None

        found: List[ScreenerResult] = []
        for symbol, bars in symbol_data.items():
            try:
                if bars:
                    latest = bars[-1].timestamp if latest is None else max(latest, bars[-1].timestamp)
                hit = self._scan_symbol(symbol, bars, win_rates.get(symbol), run.warnings)
            except Exception as e:
                run.warnings.append(f"{symbol}: scan failed ({e})")
                logger.warning(f"⚠️ Screener failed on {symbol}: {e}")
                continue
            if hit is None:
                continue
            found.append(hit)
            if history_tracker is not None:
                history_tracker.record(hit.report)

        min_rank = self.config.minGrade.rank
        passing = [r for r in found if r.report.grade.rank <= min_rank]
        passing.sort(key=lambda r: r.report.score, reverse=True)

        if latest is not None:
            run.scanDate = latest
        run.signalsFound = len(found)
        run.signalsPassingFilter = len(passing)
        run.results = passing[:self.config.maxSignals]
        run.elapsedSeconds = time.time() - start_time
        logger.info(f"🔎 Screened {run.symbolsScanned} symbols: {run.signalsFound} signals, "
                    f"{run.signalsPassingFilter} grade {self.config.minGrade.value} or better")
        return run

    def _scan_symbol(self, symbol: str, bars: Sequence[AnnotatedCandle], win_rate: Optional[float],
                     warnings: List[str]) -> Optional[ScreenerResult]:
        if len(bars) < 2:
            warnings.append(f"{symbol}: insufficient data ({len(bars)} bars)")
            return None

        last, prev = bars[-1], bars[-2]
        failure = check_filters(last, self.strategy.filters, self.config.minVolume)
        if failure:
            logger.debug(f"{symbol} filtered out: {failure}")
            return None
        if not evaluate_conditions(self.strategy.entryConditions, last, prev):
            return None

        entry = last.close
        stop = calculate_stop_loss(entry, last.indicators.atr, self.strategy.stopLoss)
        if stop >= entry:
            warnings.append(f"{symbol}: invalid stop loss ({stop:.2f} >= entry {entry:.2f})")
            return None
        target = calculate_take_profit(entry, stop, self.strategy.takeProfit)

        evaluation = evaluate_signal_at(symbol, len(bars) - 1, SignalDirection.LONG, bars,
                                        self.weights, self.config.lookbackBars)
        report = grade_signal(evaluation, entry, stop, target, win_rate)
        return ScreenerResult(symbol=symbol, report=report, lastClose=last.close, lastVolume=last.volume)
