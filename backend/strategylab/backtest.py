"""
Event-Driven Backtest Engine
Signals on bar close, fills on the next bar's open, intrabar stops/targets.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from strategylab.conditions import evaluate_conditions
from strategylab.models import (
    AnnotatedCandle, BacktestConfig, BacktestEngineResult, EquityPoint, ExitReason,
    OrderType, PendingOrder, Position, RejectionReason, StopLossConfig, StopLossType,
    StrategyDefinition, TakeProfitConfig, TakeProfitType, TradeFilterConfig, TradeRecord,
)

logger = logging.getLogger(__name__)

FALLBACK_STOP_PERCENT = 5.0


# ==================== PRICING ====================

def calculate_stop_loss(price: float, atr: float, stop_loss: StopLossConfig) -> float:
    """Stop price for a long entry at `price`"""
    if stop_loss.type == StopLossType.ATR and atr > 0:
        return price - atr * stop_loss.multiplier
    if stop_loss.type == StopLossType.FIXED_PERCENT:
        return price * (1 - stop_loss.multiplier / 100)
    # ATR not yet available, or unsupported stop type
    return price * (1 - FALLBACK_STOP_PERCENT / 100)


def calculate_take_profit(price: float, stop: float, take_profit: TakeProfitConfig) -> float:
    """Target price for a long entry; 0 means no target"""
    if take_profit.type == TakeProfitType.R_MULTIPLE:
        return price + (price - stop) * take_profit.multiplier
    if take_profit.type == TakeProfitType.FIXED_PERCENT:
        return price * (1 + take_profit.multiplier / 100)
    return 0.0


def check_filters(bar: AnnotatedCandle, filters: TradeFilterConfig, min_volume: float = 0.0) -> Optional[str]:
    """Return a failure description, or None when the bar passes every filter"""
    required_volume = max(filters.minVolume, min_volume)
    if required_volume > 0 and bar.volume < required_volume:
        return f"volume {bar.volume:,.0f} < {required_volume:,.0f}"
    if filters.minPrice > 0 and bar.close < filters.minPrice:
        return f"price {bar.close:.2f} < min {filters.minPrice:.2f}"
    if filters.maxPrice is not None and bar.close > filters.maxPrice:
        return f"price {bar.close:.2f} > max {filters.maxPrice:.2f}"
    return None


# ==================== STATE ====================

class CircuitBreaker:
    """Halts new entries once drawdown from the running peak gets too deep"""

    def __init__(self, initial_equity: float, max_drawdown_percent: float, recovery_percent: float):
        self.peak = initial_equity
        self.max_drawdown_percent = max_drawdown_percent
        self.recovery_percent = recovery_percent
        self.active = False
        self.drawdown_percent = 0.0

    def update(self, equity: float) -> Optional[str]:
        """Feed the latest equity; returns 'activated' / 'deactivated' on a state change"""
        if equity > self.peak:
            self.peak = equity
        self.drawdown_percent = (self.peak - equity) / self.peak * 100 if self.peak > 0 else 0.0

        if not self.active:
            if self.drawdown_percent >= self.max_drawdown_percent:
                self.active = True
                return 'activated'
        elif equity >= self.peak * (1 - self.recovery_percent / 100):
            self.active = False
            return 'deactivated'
        return None


class SimulationContext:
    """All mutable state of a single backtest run"""

    def __init__(self, symbol: str, strategy: StrategyDefinition, config: BacktestConfig):
        self.symbol = symbol
        self.cash = config.initialCapital
        self.initial_capital = config.initialCapital
        self.breaker = CircuitBreaker(
            config.initialCapital,
            strategy.positionSizing.maxDrawdownPercent,
            strategy.positionSizing.drawdownRecoveryPercent,
        )
        self.positions: Dict[str, Position] = {}
        self.pending: List[PendingOrder] = []
        self.trades: List[TradeRecord] = []
        self.equity_curve: List[EquityPoint] = []
        self.log: List[str] = []
        self.rejections: Counter = Counter()

    def record(self, date: datetime, message: str):
        self.log.append(f"{date:%Y-%m-%d} {message}")

    def mark_to_market(self, close: float) -> float:
        return self.cash + sum(p.shares * close for p in self.positions.values())

    def portfolio_heat(self, equity: float) -> float:
        if equity <= 0:
            return 0.0
        return sum(p.riskAmount for p in self.positions.values()) / equity * 100

    def to_result(self, bars: Sequence[AnnotatedCandle]) -> BacktestEngineResult:
        return BacktestEngineResult(
            symbol=self.symbol,
            startDate=bars[0].timestamp if bars else None,
            endDate=bars[-1].timestamp if bars else None,
            initialCapital=self.initial_capital,
            finalEquity=self.cash,
            trades=self.trades,
            equityCurve=self.equity_curve,
            log=self.log,
            rejections={reason.value: count for reason, count in self.rejections.items()},
        )


# ==================== ENGINE ====================

class BacktestEngine:
    """Long-only event-driven backtest engine.

    An engine instance only holds configuration; every `run` builds its own
    SimulationContext, so one engine can be reused across runs and threads.
    """

    def __init__(self, strategy: StrategyDefinition, config: Optional[BacktestConfig] = None):
        self.strategy = strategy
        self.config = config or BacktestConfig()

    def run(self, bars: Sequence[AnnotatedCandle], symbol: str = "") -> BacktestEngineResult:
        """Run backtest"""
        ctx = SimulationContext(symbol, self.strategy, self.config)

        if len(bars) < 2:
            ctx.log.append("Insufficient data for backtest (need at least 2 bars)")
            logger.warning(f"⚠️ {symbol}: insufficient data for backtest ({len(bars)} bars)")
            return ctx.to_result(bars)

        for i in range(1, len(bars)):
            bar = bars[i]
            prev_bar = bars[i - 1]

            # 1. Orders queued on the previous close fill at this open
            self._fill_pending_orders(ctx, bar)

            # 2. Intrabar SL/TP
            self._check_intrabar_exits(ctx, bar)

            # 3. Exit on signal (bar close)
            if ctx.positions and evaluate_conditions(self.strategy.exitConditions, bar, prev_bar):
                for position in list(ctx.positions.values()):
                    self._close_position(ctx, position, bar.close, bar.timestamp, ExitReason.EXIT_SIGNAL)

            # 4. Entry signal -> order for the next bar
            if evaluate_conditions(self.strategy.entryConditions, bar, prev_bar):
                self._try_place_entry(ctx, bar)

            # 5. Equity and circuit breaker
            equity = ctx.mark_to_market(bar.close)
            ctx.equity_curve.append(EquityPoint(date=bar.timestamp, value=equity))
            event = ctx.breaker.update(equity)
            if event == 'activated':
                ctx.record(bar.timestamp, f"CIRCUIT BREAKER ACTIVATED: drawdown "
                                          f"{ctx.breaker.drawdown_percent:.2f}% from peak {ctx.breaker.peak:,.2f}")
            elif event == 'deactivated':
                ctx.record(bar.timestamp, f"CIRCUIT BREAKER RESET: equity {equity:,.2f} "
                                          f"within {ctx.breaker.recovery_percent}% of peak")

        last = bars[-1]
        for position in list(ctx.positions.values()):
            self._close_position(ctx, position, last.close, last.timestamp, ExitReason.END_OF_BACKTEST)
        for order in ctx.pending:
            ctx.record(last.timestamp, f"CANCEL {order.type.value} order {order.symbol} x{order.shares} (end of data)")
        ctx.pending = []

        result = ctx.to_result(bars)
        logger.debug(f"⚡ Backtest {symbol}: {result.totalTrades} trades, "
                     f"final equity {result.finalEquity:,.2f} ({result.totalReturn:+.2f}%)")
        return result

    # ---------------------------------------------------------------- fills

    def _fill_pending_orders(self, ctx: SimulationContext, bar: AnnotatedCandle):
        carried = []
        for order in ctx.pending:
            fill_price = self._fill_price(order, bar)
            if fill_price is None:
                order.barsPending += 1
                expiry = self.config.limitOrderExpiryBars
                if expiry is not None and order.barsPending >= expiry:
                    ctx.record(bar.timestamp, f"EXPIRED LIMIT {order.symbol} @ {order.limitPrice:.2f}")
                else:
                    carried.append(order)
                continue
            self._open_position(ctx, order, fill_price, bar)
        ctx.pending = carried

    def _fill_price(self, order: PendingOrder, bar: AnnotatedCandle) -> Optional[float]:
        if order.type == OrderType.MARKET:
            return bar.open * (1 + self.config.slippagePercent / 100)
        # Buy limit: fills only if the bar trades down to the limit
        if bar.low <= order.limitPrice:
            return min(bar.open, order.limitPrice)
        return None

    def _open_position(self, ctx: SimulationContext, order: PendingOrder, fill_price: float, bar: AnnotatedCandle):
        commission = self.config.commissionPerTrade
        cost = order.shares * fill_price + commission
        if cost > ctx.cash:
            ctx.rejections[RejectionReason.INSUFFICIENT_CASH] += 1
            ctx.record(bar.timestamp, f"SKIP BUY {order.symbol}: insufficient cash "
                                      f"(need {cost:,.2f}, have {ctx.cash:,.2f})")
            return

        stop = calculate_stop_loss(fill_price, bar.indicators.atr, self.strategy.stopLoss)
        if stop >= fill_price:
            ctx.rejections[RejectionReason.INVALID_STOP] += 1
            ctx.record(bar.timestamp, f"SKIP BUY {order.symbol}: invalid stop loss "
                                      f"({stop:.2f} >= fill {fill_price:.2f})")
            return
        target = calculate_take_profit(fill_price, stop, self.strategy.takeProfit)

        ctx.cash -= cost
        ctx.positions[order.symbol] = Position(
            symbol=order.symbol,
            shares=order.shares,
            entryPrice=fill_price,
            entryDate=bar.timestamp,
            stopLoss=stop,
            takeProfit=target,
        )
        ctx.record(bar.timestamp, f"FILL BUY {order.symbol} x{order.shares} @ {fill_price:.2f} "
                                  f"(stop {stop:.2f}, target {target:.2f})")

    # ---------------------------------------------------------------- exits

    def _check_intrabar_exits(self, ctx: SimulationContext, bar: AnnotatedCandle):
        gaps = self.config.fillGapsAtOpen
        for position in list(ctx.positions.values()):
            if bar.low <= position.stopLoss:
                if gaps and bar.open <= position.stopLoss:
                    price, reason = bar.open, ExitReason.STOP_LOSS_GAP
                else:
                    price, reason = position.stopLoss, ExitReason.STOP_LOSS
            elif position.takeProfit > 0 and bar.high >= position.takeProfit:
                if gaps and bar.open >= position.takeProfit:
                    price, reason = bar.open, ExitReason.TAKE_PROFIT_GAP
                else:
                    price, reason = position.takeProfit, ExitReason.TAKE_PROFIT
            else:
                continue
            self._close_position(ctx, position, price, bar.timestamp, reason)

    def _close_position(self, ctx: SimulationContext, position: Position, exit_price: float,
                        exit_date: datetime, reason: ExitReason):
        commission = self.config.commissionPerTrade
        ctx.cash += position.shares * exit_price - commission

        pnl = position.shares * (exit_price - position.entryPrice) - 2 * commission
        pnl_percent = (exit_price - position.entryPrice) / position.entryPrice * 100 if position.entryPrice else 0.0
        ctx.trades.append(TradeRecord(
            symbol=position.symbol,
            entryDate=position.entryDate,
            exitDate=exit_date,
            entryPrice=position.entryPrice,
            exitPrice=exit_price,
            shares=position.shares,
            pnl=pnl,
            pnlPercent=pnl_percent,
            commission=2 * commission,
            exitReason=reason,
            holdingDays=(exit_date - position.entryDate).days,
        ))
        del ctx.positions[position.symbol]
        ctx.record(exit_date, f"EXIT {reason.value} {position.symbol} x{position.shares} "
                              f"@ {exit_price:.2f} (P&L {pnl:+,.2f})")

    # ---------------------------------------------------------------- entries

    def _reject(self, ctx: SimulationContext, bar: AnnotatedCandle, reason: RejectionReason, detail: str):
        ctx.rejections[reason] += 1
        ctx.record(bar.timestamp, f"SKIP ENTRY {reason.value}: {ctx.symbol} {detail}")

    def _try_place_entry(self, ctx: SimulationContext, bar: AnnotatedCandle):
        sizing = self.strategy.positionSizing
        symbol = ctx.symbol

        if ctx.breaker.active:
            return self._reject(ctx, bar, RejectionReason.CIRCUIT_BREAKER,
                                f"circuit breaker active (drawdown {ctx.breaker.drawdown_percent:.2f}%)")

        if symbol in ctx.positions or any(o.symbol == symbol for o in ctx.pending):
            return self._reject(ctx, bar, RejectionReason.ALREADY_HOLDING, "position already open or pending")

        if len(ctx.positions) + len(ctx.pending) >= sizing.maxPositions:
            return self._reject(ctx, bar, RejectionReason.MAX_POSITIONS,
                                f"max positions reached ({sizing.maxPositions})")

        equity = ctx.mark_to_market(bar.close)
        heat = ctx.portfolio_heat(equity)
        if heat >= sizing.maxPortfolioHeat:
            return self._reject(ctx, bar, RejectionReason.PORTFOLIO_HEAT,
                                f"portfolio heat {heat:.2f}% >= {sizing.maxPortfolioHeat}%")

        failure = check_filters(bar, self.strategy.filters)
        if failure:
            return self._reject(ctx, bar, RejectionReason.FILTERS, failure)

        stop = calculate_stop_loss(bar.close, bar.indicators.atr, self.strategy.stopLoss)
        risk_per_share = bar.close - stop
        if risk_per_share <= 0:
            return self._reject(ctx, bar, RejectionReason.INVALID_STOP,
                                f"invalid stop loss (stop {stop:.2f} >= price {bar.close:.2f})")

        shares = int(equity * sizing.riskPercent / 100 / risk_per_share)
        if shares <= 0:
            return self._reject(ctx, bar, RejectionReason.ZERO_SHARES,
                                f"position size rounds to 0 shares (risk/share {risk_per_share:.2f})")

        commission = self.config.commissionPerTrade
        est_price = bar.close * (1 + self.config.slippagePercent / 100)
        if shares * est_price + commission > ctx.cash:
            shares = int((ctx.cash - commission) / est_price)
            if shares <= 0:
                return self._reject(ctx, bar, RejectionReason.INSUFFICIENT_CASH,
                                    f"insufficient cash ({ctx.cash:,.2f})")

        target = calculate_take_profit(bar.close, stop, self.strategy.takeProfit)
        order_type = self.strategy.entryOrder.type
        limit_price = None
        if order_type == OrderType.LIMIT:
            limit_price = bar.close * (1 - self.strategy.entryOrder.limitOffsetPercent / 100)

        ctx.pending.append(PendingOrder(
            symbol=symbol,
            type=order_type,
            shares=shares,
            limitPrice=limit_price,
            signalDate=bar.timestamp,
            stopLoss=stop,
            takeProfit=target,
        ))
        ctx.record(bar.timestamp, f"SIGNAL BUY {symbol} x{shares} @ ~{bar.close:.2f} "
                                  f"({order_type.value}, stop {stop:.2f}, target {target:.2f})")
