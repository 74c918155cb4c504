"""
Data Models for strategylab
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Dict, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, computed_field

from strategylab import DEFAULT_RISK_FREE_RATE, LARGE_SPACE_THRESHOLD, RECENT_BARS_WINDOW

logger = logging.getLogger(__name__)


# ==================== ENUMS ====================

class Timeframe(str, Enum):
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


class IndicatorKind(str, Enum):
    """Indicator names a condition may reference"""
    RSI = "RSI"
    MACD = "MACD"
    MACD_SIGNAL = "MACDSignal"
    MACD_HISTOGRAM = "MACDHistogram"
    SMA = "SMA"
    SMA_SHORT = "SMAShort"
    SMA_MEDIUM = "SMAMedium"
    SMA_LONG = "SMALong"
    EMA = "EMA"
    EMA_SHORT = "EMAShort"
    EMA_MEDIUM = "EMAMedium"
    EMA_LONG = "EMALong"
    WMA = "WMA"
    STOCHASTIC = "Stochastic"
    STOCHASTIC_K = "StochasticK"
    STOCHASTIC_D = "StochasticD"
    ATR = "ATR"
    BOLLINGER_BANDS = "BollingerBands"
    BOLLINGER_UPPER = "BollingerUpper"
    BOLLINGER_LOWER = "BollingerLower"
    BOLLINGER_PERCENT_B = "BollingerPercentB"
    BOLLINGER_BANDWIDTH = "BollingerBandwidth"
    OBV = "OBV"
    VOLUME_MA = "VolumeMA"
    RELATIVE_VOLUME = "RelativeVolume"
    VOLUME = "Volume"
    PRICE = "Price"
    UNKNOWN = "Unknown"


class Comparator(str, Enum):
    GREATER_THAN = "GreaterThan"
    LESS_THAN = "LessThan"
    BETWEEN = "Between"
    CROSS_ABOVE = "CrossAbove"
    CROSS_BELOW = "CrossBelow"
    UNKNOWN = "Unknown"


class StopLossType(str, Enum):
    ATR = "Atr"
    FIXED_PERCENT = "FixedPercent"
    UNKNOWN = "Unknown"


class TakeProfitType(str, Enum):
    R_MULTIPLE = "RMultiple"
    FIXED_PERCENT = "FixedPercent"
    UNKNOWN = "Unknown"


class OrderType(str, Enum):
    MARKET = "Market"
    LIMIT = "Limit"


class OrderSide(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class ExitReason(str, Enum):
    STOP_LOSS = "StopLoss"
    STOP_LOSS_GAP = "StopLossGap"
    TAKE_PROFIT = "TakeProfit"
    TAKE_PROFIT_GAP = "TakeProfitGap"
    EXIT_SIGNAL = "ExitSignal"
    END_OF_BACKTEST = "EndOfBacktest"


class RejectionReason(str, Enum):
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    ALREADY_HOLDING = "ALREADY_HOLDING"
    MAX_POSITIONS = "MAX_POSITIONS"
    PORTFOLIO_HEAT = "PORTFOLIO_HEAT"
    FILTERS = "FILTERS"
    INVALID_STOP = "INVALID_STOP"
    ZERO_SHARES = "ZERO_SHARES"
    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"


class WalkForwardMode(str, Enum):
    ROLLING = "Rolling"
    ANCHORED = "Anchored"


class OverfittingGrade(str, Enum):
    GOOD = "Good"
    WARNING = "Warning"
    OVERFITTED = "Overfitted"


class SignalDirection(str, Enum):
    LONG = "Long"
    SHORT = "Short"


class SignalGrade(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"

    @property
    def rank(self) -> int:
        """0 for A (best) through 4 for F"""
        return list(SignalGrade).index(self)


class ConfirmationType(str, Enum):
    TREND_ALIGNMENT = "TrendAlignment"
    MOMENTUM = "Momentum"
    VOLUME = "Volume"
    VOLATILITY = "Volatility"
    MACD_HISTOGRAM = "MacdHistogram"
    STOCHASTIC = "Stochastic"


class GradeFactor(str, Enum):
    TREND_ALIGNMENT = "TrendAlignment"
    CONFIRMATIONS = "Confirmations"
    VOLUME = "Volume"
    RISK_REWARD = "RiskReward"
    HISTORY = "History"
    VOLATILITY = "Volatility"


class CrossoverType(str, Enum):
    BULLISH = "Bullish"
    BEARISH = "Bearish"


class DivergenceType(str, Enum):
    BULLISH = "Bullish"
    BEARISH = "Bearish"


def _lenient_enum(enum_cls):
    """Resolve names case-insensitively; anything unrecognised becomes UNKNOWN"""
    def coerce(value):
        if value is None or isinstance(value, enum_cls):
            return value
        text = str(value).strip()
        for member in enum_cls:
            if member.value.lower() == text.lower() or member.name.lower() == text.lower():
                return member
        logger.warning(f"⚠️ Unknown {enum_cls.__name__} '{value}' - treated as {enum_cls.UNKNOWN.value}")
        return enum_cls.UNKNOWN
    return BeforeValidator(coerce)


IndicatorName = Annotated[IndicatorKind, _lenient_enum(IndicatorKind)]
ComparatorName = Annotated[Comparator, _lenient_enum(Comparator)]
StopLossKind = Annotated[StopLossType, _lenient_enum(StopLossType)]
TakeProfitKind = Annotated[TakeProfitType, _lenient_enum(TakeProfitType)]


# ==================== MARKET DATA ====================

class Candle(BaseModel):
    """OHLCV Candle"""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    timeframe: Timeframe = Timeframe.DAILY


class IndicatorSnapshot(BaseModel):
    """Every indicator value for one bar. 0.0 means not yet computable."""
    model_config = ConfigDict(frozen=True)

    smaShort: float = 0.0
    smaMedium: float = 0.0
    smaLong: float = 0.0
    emaShort: float = 0.0
    emaMedium: float = 0.0
    emaLong: float = 0.0
    wma: float = 0.0
    rsi: float = 0.0
    macdLine: float = 0.0
    macdSignal: float = 0.0
    macdHistogram: float = 0.0
    stochasticK: float = 0.0
    stochasticD: float = 0.0
    atr: float = 0.0
    bollingerUpper: float = 0.0
    bollingerMiddle: float = 0.0
    bollingerLower: float = 0.0
    bollingerBandwidth: float = 0.0
    bollingerPercentB: float = 0.0
    obv: float = 0.0
    volumeMa: float = 0.0
    relativeVolume: float = 0.0
    warmedUp: bool = False


class AnnotatedCandle(Candle):
    """Candle plus its own indicators and forward-filled higher-timeframe snapshots"""
    indicators: IndicatorSnapshot = Field(default_factory=IndicatorSnapshot)
    higherTimeframes: Dict[Timeframe, IndicatorSnapshot] = {}

    def snapshot_for(self, timeframe: Optional[Timeframe]) -> IndicatorSnapshot:
        if timeframe is None or timeframe == Timeframe.DAILY:
            return self.indicators
        return self.higherTimeframes.get(timeframe, self.indicators)


class IndicatorConfig(BaseModel):
    """Indicator periods used by the orchestrator"""
    smaShortPeriod: int = Field(10, ge=1)
    smaMediumPeriod: int = Field(20, ge=1)
    smaLongPeriod: int = Field(50, ge=1)
    emaShortPeriod: int = Field(12, ge=1)
    emaMediumPeriod: int = Field(26, ge=1)
    emaLongPeriod: int = Field(50, ge=1)
    wmaPeriod: int = Field(20, ge=1)
    rsiPeriod: int = Field(14, ge=1)
    macdFastPeriod: int = Field(12, ge=1)
    macdSlowPeriod: int = Field(26, ge=1)
    macdSignalPeriod: int = Field(9, ge=1)
    stochasticKPeriod: int = Field(14, ge=1)
    stochasticDPeriod: int = Field(3, ge=1)
    atrPeriod: int = Field(14, ge=1)
    bollingerPeriod: int = Field(20, ge=1)
    bollingerStdDev: float = Field(2.0, gt=0)
    volumeMaPeriod: int = Field(20, ge=1)

    @property
    def maxWarmupBars(self) -> int:
        return max(
            self.smaLongPeriod,
            self.emaLongPeriod,
            self.macdSlowPeriod + self.macdSignalPeriod,
            self.bollingerPeriod,
            self.stochasticKPeriod + self.stochasticDPeriod,
        )


class CrossoverPoint(BaseModel):
    index: int
    type: CrossoverType
    fastValue: float
    slowValue: float


class DivergencePoint(BaseModel):
    type: DivergenceType
    firstIndex: int
    secondIndex: int
    firstPrice: float
    secondPrice: float
    firstIndicator: float
    secondIndicator: float


# ==================== STRATEGY ====================

class Condition(BaseModel):
    """Single comparison against a constant or a reference indicator"""
    indicator: IndicatorName
    comparison: ComparatorName
    value: float = 0.0
    valueHigh: Optional[float] = None
    referenceIndicator: Optional[IndicatorName] = None
    timeframe: Optional[Timeframe] = None


class ConditionGroup(BaseModel):
    """OR within a group; groups are AND-ed together"""
    timeframe: Timeframe = Timeframe.DAILY
    conditions: List[Condition] = []


class StopLossConfig(BaseModel):
    type: StopLossKind = StopLossType.ATR
    multiplier: float = 2.0


class TakeProfitConfig(BaseModel):
    type: TakeProfitKind = TakeProfitType.R_MULTIPLE
    multiplier: float = 2.0


class PositionSizingConfig(BaseModel):
    riskPercent: float = Field(1.0, gt=0)
    maxPositions: int = Field(6, ge=1)
    maxPortfolioHeat: float = Field(6.0, gt=0)
    maxDrawdownPercent: float = Field(15.0, gt=0)
    drawdownRecoveryPercent: float = Field(5.0, ge=0)


class TradeFilterConfig(BaseModel):
    minVolume: float = 0.0
    minPrice: float = 0.0
    maxPrice: Optional[float] = None


class EntryOrderConfig(BaseModel):
    type: OrderType = OrderType.MARKET
    limitOffsetPercent: float = Field(0.0, ge=0)


class StrategyDefinition(BaseModel):
    """Trading Strategy"""
    model_config = ConfigDict(frozen=True)

    name: str = "Unnamed Strategy"
    entryConditions: List[ConditionGroup] = []
    exitConditions: List[ConditionGroup] = []
    stopLoss: StopLossConfig = Field(default_factory=StopLossConfig)
    takeProfit: TakeProfitConfig = Field(default_factory=TakeProfitConfig)
    positionSizing: PositionSizingConfig = Field(default_factory=PositionSizingConfig)
    filters: TradeFilterConfig = Field(default_factory=TradeFilterConfig)
    entryOrder: EntryOrderConfig = Field(default_factory=EntryOrderConfig)


# ==================== BACKTEST ====================

class BacktestConfig(BaseModel):
    initialCapital: float = Field(100_000.0, gt=0)
    slippagePercent: float = Field(0.1, ge=0)
    commissionPerTrade: float = Field(1.0, ge=0)
    riskFreeRate: float = DEFAULT_RISK_FREE_RATE
    fillGapsAtOpen: bool = False
    limitOrderExpiryBars: Optional[int] = Field(None, ge=1)


class Position(BaseModel):
    symbol: str
    shares: int
    entryPrice: float
    entryDate: datetime
    stopLoss: float
    takeProfit: float = 0.0

    @property
    def riskAmount(self) -> float:
        return max(0.0, (self.entryPrice - self.stopLoss) * self.shares)


class PendingOrder(BaseModel):
    symbol: str
    side: OrderSide = OrderSide.BUY
    type: OrderType = OrderType.MARKET
    shares: int
    limitPrice: Optional[float] = None
    signalDate: datetime
    stopLoss: float
    takeProfit: float = 0.0
    barsPending: int = 0


class TradeRecord(BaseModel):
    symbol: str
    entryDate: datetime
    exitDate: datetime
    entryPrice: float
    exitPrice: float
    shares: int
    pnl: float
    pnlPercent: float
    commission: float
    exitReason: ExitReason
    holdingDays: int

    @property
    def isWinner(self) -> bool:
        return self.pnl > 0


class EquityPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: datetime
    value: float


class BacktestEngineResult(BaseModel):
    """Raw output of one simulation run"""
    symbol: str
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    initialCapital: float
    finalEquity: float
    trades: List[TradeRecord] = []
    equityCurve: List[EquityPoint] = []
    log: List[str] = []
    rejections: Dict[str, int] = {}

    @computed_field
    @property
    def totalTrades(self) -> int:
        return len(self.trades)

    @computed_field
    @property
    def winningTrades(self) -> int:
        return sum(1 for t in self.trades if t.pnl > 0)

    @computed_field
    @property
    def losingTrades(self) -> int:
        return sum(1 for t in self.trades if t.pnl <= 0)

    @computed_field
    @property
    def winRate(self) -> float:
        return self.winningTrades / len(self.trades) * 100 if self.trades else 0.0

    @computed_field
    @property
    def totalReturn(self) -> float:
        if self.initialCapital <= 0:
            return 0.0
        return (self.finalEquity - self.initialCapital) / self.initialCapital * 100

    @computed_field
    @property
    def totalPnl(self) -> float:
        return sum(t.pnl for t in self.trades)

    @computed_field
    @property
    def totalCommissions(self) -> float:
        return sum(t.commission for t in self.trades)


class PerformanceMetrics(BaseModel):
    """Risk-adjusted statistics. Percent fields are expressed 0-100."""
    totalReturn: float = 0.0
    cagr: float = 0.0
    volatility: float = 0.0
    sharpeRatio: float = 0.0
    sortinoRatio: float = 0.0
    maxDrawdown: float = 0.0
    maxDrawdownDurationDays: int = 0
    calmarRatio: float = 0.0
    totalTrades: int = 0
    winningTrades: int = 0
    losingTrades: int = 0
    winRate: float = 0.0
    profitFactor: float = 0.0
    expectancy: float = 0.0
    averageWin: float = 0.0
    averageLoss: float = 0.0
    largestWin: float = 0.0
    largestLoss: float = 0.0
    averageHoldingDays: float = 0.0
    benchmarkReturn: Optional[float] = None
    benchmarkCagr: Optional[float] = None
    alpha: Optional[float] = None
    beta: Optional[float] = None
    monthlyReturns: Dict[str, float] = {}
    yearlyReturns: Dict[int, float] = {}
    redFlags: List[str] = []


# ==================== OPTIMIZATION ====================

class ParameterDefinition(BaseModel):
    """Inclusive numeric range swept by the grid search"""
    name: str
    min: float
    max: float
    step: float = 1.0

    @property
    def valueCount(self) -> int:
        if self.step <= 0:
            return 1
        # epsilon keeps (0.3 - 0.1) / 0.1 from truncating to 1
        return max(0, int((self.max - self.min) / self.step + 1e-9) + 1)

    def values(self) -> List[float]:
        if self.step <= 0:
            return [self.min]
        return [round(self.min + i * self.step, 10) for i in range(self.valueCount)]


class ParameterSpace(BaseModel):
    parameters: List[ParameterDefinition] = []

    @property
    def totalCombinations(self) -> int:
        if not self.parameters:
            return 0
        total = 1
        for p in self.parameters:
            total *= p.valueCount
        return total

    @property
    def isLarge(self) -> bool:
        return self.totalCombinations > LARGE_SPACE_THRESHOLD


class ParameterSet(BaseModel):
    values: Dict[str, float] = {}

    def get(self, name: str, default: Optional[float] = None) -> Optional[float]:
        return self.values.get(name, default)

    def __getitem__(self, name: str) -> float:
        return self.values[name]


class OptimizationTrial(BaseModel):
    index: int
    parameters: ParameterSet
    rankingScore: float
    metrics: PerformanceMetrics
    result: BacktestEngineResult


class GridSearchResult(BaseModel):
    totalCombinations: int = 0
    completedCombinations: int = 0
    failedCombinations: int = 0
    cancelled: bool = False
    topResults: List[OptimizationTrial] = []
    elapsedSeconds: float = 0.0
    warnings: List[str] = []

    @property
    def bestTrial(self) -> Optional[OptimizationTrial]:
        return self.topResults[0] if self.topResults else None


# ==================== WALK-FORWARD ====================

class WalkForwardConfig(BaseModel):
    inSampleDays: int = Field(504, gt=0)
    outOfSampleDays: int = Field(126, gt=0)
    mode: WalkForwardMode = WalkForwardMode.ROLLING
    riskFreeRate: float = DEFAULT_RISK_FREE_RATE
    optimizationTopN: int = Field(5, ge=1)
    parallel: bool = True


class WalkForwardWindow(BaseModel):
    windowIndex: int
    inSampleStart: int
    inSampleEnd: int
    outOfSampleStart: int
    outOfSampleEnd: int
    inSampleStartDate: Optional[datetime] = None
    outOfSampleEndDate: Optional[datetime] = None
    bestParameters: ParameterSet
    inSampleSharpe: float
    outOfSampleSharpe: float
    overfittingRatio: float
    walkForwardEfficiency: float
    outOfSampleMetrics: PerformanceMetrics
    outOfSampleEquity: List[EquityPoint] = []


class WalkForwardResult(BaseModel):
    windows: List[WalkForwardWindow] = []
    averageInSampleSharpe: float = 0.0
    averageOutOfSampleSharpe: float = 0.0
    averageOverfittingRatio: float = 0.0
    averageEfficiency: float = 0.0
    overfittingGrade: OverfittingGrade = OverfittingGrade.GOOD
    blessedParameters: Optional[ParameterSet] = None
    aggregatedEquityCurve: List[EquityPoint] = []
    warnings: List[str] = []
    elapsedSeconds: float = 0.0


# ==================== SCREENING ====================

class ConfirmationWeights(BaseModel):
    trendAlignment: float = Field(1.0, ge=0)
    momentum: float = Field(1.0, ge=0)
    volume: float = Field(1.0, ge=0)
    volatility: float = Field(1.0, ge=0)
    macdHistogram: float = Field(1.0, ge=0)
    stochastic: float = Field(1.0, ge=0)


class ConfirmationResult(BaseModel):
    type: ConfirmationType
    passed: bool
    weight: float
    details: str = ""


class SignalEvaluation(BaseModel):
    symbol: str
    date: datetime
    direction: SignalDirection
    confirmations: List[ConfirmationResult] = []
    totalScore: float = 0.0

    @computed_field
    @property
    def passedCount(self) -> int:
        return sum(1 for c in self.confirmations if c.passed)

    @computed_field
    @property
    def totalCount(self) -> int:
        return len(self.confirmations)

    def confirmation(self, ctype: ConfirmationType) -> Optional[ConfirmationResult]:
        return next((c for c in self.confirmations if c.type == ctype), None)


class GradeBreakdownEntry(BaseModel):
    factor: GradeFactor
    rawScore: float
    weight: float
    weightedScore: float


class SignalReport(BaseModel):
    symbol: str
    date: datetime
    direction: SignalDirection
    grade: SignalGrade
    score: float
    entryPrice: float
    stopLoss: float
    takeProfit: float
    riskRewardRatio: float
    evaluation: SignalEvaluation
    breakdown: List[GradeBreakdownEntry] = []

    @computed_field
    @property
    def passesScreener(self) -> bool:
        return self.grade in (SignalGrade.A, SignalGrade.B)


class ScreenerConfig(BaseModel):
    minGrade: SignalGrade = SignalGrade.B
    minVolume: float = Field(0.0, ge=0)
    maxSignals: int = Field(20, ge=1)
    lookbackBars: int = Field(RECENT_BARS_WINDOW, ge=1)


class ScreenerResult(BaseModel):
    symbol: str
    report: SignalReport
    lastClose: float
    lastVolume: float


class ScreenerRunResult(BaseModel):
    scanDate: datetime
    symbolsScanned: int = 0
    signalsFound: int = 0
    signalsPassingFilter: int = 0
    results: List[ScreenerResult] = []
    warnings: List[str] = []
    elapsedSeconds: float = 0.0


class GradeHistoryEntry(BaseModel):
    symbol: str
    date: datetime
    grade: SignalGrade
    score: float
    outcomeWin: Optional[bool] = None
    outcomePnlPercent: Optional[float] = None


class GradeAccuracy(BaseModel):
    grade: SignalGrade
    totalSignals: int = 0
    resolvedSignals: int = 0
    wins: int = 0
    winRate: float = 0.0
    averagePnlPercent: float = 0.0


# ==================== API ====================

class BacktestRequest(BaseModel):
    """Backtest Request"""
    symbol: str
    strategy: StrategyDefinition
    config: BacktestConfig = Field(default_factory=BacktestConfig)
    indicatorConfig: IndicatorConfig = Field(default_factory=IndicatorConfig)
    benchmarkSymbol: Optional[str] = None


class OptimizationRequest(BaseModel):
    """Optimization Request"""
    symbol: str
    strategy: StrategyDefinition
    parameterSpace: ParameterSpace
    config: BacktestConfig = Field(default_factory=BacktestConfig)
    indicatorConfig: IndicatorConfig = Field(default_factory=IndicatorConfig)
    topN: int = Field(10, ge=1)
    parallel: bool = True


class WalkForwardRequest(BaseModel):
    """Walk-Forward Request"""
    symbol: str
    strategy: StrategyDefinition
    parameterSpace: ParameterSpace
    config: BacktestConfig = Field(default_factory=BacktestConfig)
    indicatorConfig: IndicatorConfig = Field(default_factory=IndicatorConfig)
    walkForward: WalkForwardConfig = Field(default_factory=WalkForwardConfig)


class ScreenRequest(BaseModel):
    """Screener Request"""
    strategy: StrategyDefinition
    symbols: Optional[List[str]] = None
    config: ScreenerConfig = Field(default_factory=ScreenerConfig)
    indicatorConfig: IndicatorConfig = Field(default_factory=IndicatorConfig)
    winRates: Dict[str, float] = {}
