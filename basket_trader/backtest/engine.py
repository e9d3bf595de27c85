"""
Basket Trader Backtest - bar-by-bar strategy replay.

Replays a token's historical bars through a strategy:
- Long-only positions sized at 10% of cash scaled by confidence
- Equity marked to the bar close after every bar
- Running peak and maximum drawdown
- Summary metrics from the trade list and equity curve
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
import structlog

from basket_trader.backtest.data_loader import HistoricalDataLoader
from basket_trader.backtest.strategies import Strategy, StrategySignal, default_strategies
from basket_trader.core.config import BacktestConfig
from basket_trader.core.exceptions import DataUnavailable
from basket_trader.core.models import (
    BacktestPhase,
    CloseReason,
    MarketBar,
    PerformanceMetrics,
    TradeAction,
)

logger = structlog.get_logger(__name__)


@dataclass
class OpenTrade:
    """The single open long position of a run."""

    entry_price: Decimal
    quantity: Decimal
    entry_time: datetime
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    def market_value(self, price: Decimal) -> Decimal:
        return self.quantity * price


@dataclass(frozen=True)
class BacktestTrade:
    """A completed round trip."""

    entry_price: Decimal
    exit_price: Decimal
    quantity: Decimal
    pnl: Decimal
    return_pct: float
    entry_time: datetime
    exit_time: datetime
    reason: str


@dataclass
class BacktestState:
    """Private state of one (strategy, token, range) run."""

    cash: Decimal
    position: Optional[OpenTrade] = None
    trades: List[BacktestTrade] = field(default_factory=list)
    equity_curve: List[Decimal] = field(default_factory=list)
    peak_equity: Decimal = Decimal("0")
    max_drawdown: float = 0.0

    def equity(self, price: Decimal) -> Decimal:
        if self.position is None:
            return self.cash
        return self.cash + self.position.market_value(price)


@dataclass
class BacktestResult:
    """Complete backtest results."""

    strategy_id: str
    token: str
    start_date: datetime
    end_date: datetime
    initial_capital: Decimal
    final_capital: Decimal = Decimal("0")
    trades: List[BacktestTrade] = field(default_factory=list)
    equity_curve: List[Decimal] = field(default_factory=list)
    metrics: Optional[PerformanceMetrics] = None
    phase: BacktestPhase = BacktestPhase.INITIALIZED
    error: Optional[str] = None

    @property
    def total_return(self) -> float:
        return self.metrics.total_return if self.metrics else 0.0

    @property
    def key(self) -> str:
        return f"{self.strategy_id}_{self.token}_{self.start_date:%Y%m%d}_{self.end_date:%Y%m%d}"


class BacktestSimulator:
    """
    Backtest engine for the reference strategies.

    Runs are independent: each owns a private BacktestState, so comparisons
    across strategies run concurrently.
    """

    def __init__(
        self,
        data_loader: Optional[HistoricalDataLoader] = None,
        strategies: Optional[Sequence[Strategy]] = None,
        config: Optional[BacktestConfig] = None,
    ):
        self.config = config or BacktestConfig()
        self.data_loader = data_loader or HistoricalDataLoader(
            cache_dir=self.config.cache_dir,
            synthetic_days=self.config.synthetic_days,
            seed=self.config.synthetic_seed,
        )
        self.strategies: Dict[str, Strategy] = {}
        for strategy in strategies if strategies is not None else default_strategies():
            self.register_strategy(strategy)

        self.results: Dict[str, BacktestResult] = {}

        logger.info(
            "backtest_engine.initialized",
            strategies=list(self.strategies.keys()),
            position_fraction=str(self.config.position_fraction),
        )

    def register_strategy(self, strategy: Strategy) -> None:
        self.strategies[strategy.strategy_id] = strategy

    # =========================================================================
    # Running
    # =========================================================================

    async def run(
        self,
        strategy_id: str,
        token: str,
        start_date: datetime,
        end_date: datetime,
        initial_capital: Optional[Decimal] = None,
    ) -> BacktestResult:
        """
        Run one strategy over ``token`` bars in ``[start_date, end_date]``.

        Raises:
            ValueError: If the strategy is unknown
            DataUnavailable: If there are no bars in the range
        """
        strategy = self.strategies.get(strategy_id)
        if strategy is None:
            raise ValueError(f"Strategy {strategy_id} not found")

        capital = initial_capital if initial_capital is not None else self.config.initial_capital

        bars = await self.data_loader.load_bars(token, start_date, end_date)
        bars = [b for b in bars if start_date <= b.timestamp <= end_date]
        if not bars:
            raise DataUnavailable(f"No {token} data between {start_date} and {end_date}", token=token)

        result = self.replay(strategy, token, bars, start_date, end_date, capital)
        self.results[result.key] = result
        return result

    def replay(
        self,
        strategy: Strategy,
        token: str,
        bars: Sequence[MarketBar],
        start_date: datetime,
        end_date: datetime,
        initial_capital: Decimal,
    ) -> BacktestResult:
        """Replay ``bars`` (chronological) through ``strategy``."""
        result = BacktestResult(
            strategy_id=strategy.strategy_id,
            token=token,
            start_date=start_date,
            end_date=end_date,
            initial_capital=initial_capital,
        )
        log = logger.bind(strategy=strategy.strategy_id, token=token)
        log.info("backtest.starting", start=start_date.isoformat(), end=end_date.isoformat(), bars=len(bars))

        state = BacktestState(
            cash=initial_capital,
            equity_curve=[initial_capital],
            peak_equity=initial_capital,
        )
        result.phase = BacktestPhase.REPLAYING

        try:
            for i, bar in enumerate(bars):
                history = bars[:i + 1]
                signal = strategy.evaluate(history, bar, state)
                if signal is not None:
                    self._execute_signal(signal, bar, state)

                self._record_equity(state, bar.close)

            if state.position is not None:
                last = bars[-1]
                self._close_position(state, last, CloseReason.END_OF_RANGE.value)

            result.metrics = calculate_performance_metrics(state, initial_capital)
        except Exception as e:
            result.phase = BacktestPhase.FAILED
            result.error = str(e)
            log.error("backtest.failed", error=str(e))
            raise

        result.final_capital = state.cash
        result.trades = list(state.trades)
        result.equity_curve = list(state.equity_curve)
        result.phase = BacktestPhase.COMPLETED

        log.info(
            "backtest.complete",
            total_return=f"{result.metrics.total_return * 100:.2f}%",
            max_drawdown=f"{result.metrics.max_drawdown * 100:.2f}%",
            trades=result.metrics.total_trades,
            sharpe=result.metrics.sharpe_ratio,
        )
        return result

    def _execute_signal(self, signal: StrategySignal, bar: MarketBar, state: BacktestState) -> None:
        if signal.confidence < self.config.min_confidence:
            return

        if signal.action == TradeAction.BUY and state.position is None:
            notional = state.cash * self.config.position_fraction * Decimal(str(signal.confidence))
            if notional <= 0:
                return
            quantity = notional / bar.close
            state.position = OpenTrade(
                entry_price=bar.close,
                quantity=quantity,
                entry_time=bar.timestamp,
                stop_loss=signal.stop_loss,
                take_profit=signal.take_profit,
            )
            state.cash -= quantity * bar.close
        elif signal.action == TradeAction.SELL and state.position is not None:
            self._close_position(state, bar, signal.reason)

    @staticmethod
    def _close_position(state: BacktestState, bar: MarketBar, reason: str) -> None:
        position = state.position
        pnl = (bar.close - position.entry_price) * position.quantity
        cost = position.entry_price * position.quantity

        state.cash += position.market_value(bar.close)
        state.trades.append(BacktestTrade(
            entry_price=position.entry_price,
            exit_price=bar.close,
            quantity=position.quantity,
            pnl=pnl,
            return_pct=float(pnl / cost) if cost > 0 else 0.0,
            entry_time=position.entry_time,
            exit_time=bar.timestamp,
            reason=reason,
        ))
        state.position = None

    @staticmethod
    def _record_equity(state: BacktestState, price: Decimal) -> None:
        equity = state.equity(price)
        state.equity_curve.append(equity)

        if equity > state.peak_equity:
            state.peak_equity = equity
        if state.peak_equity > 0:
            drawdown = float((state.peak_equity - equity) / state.peak_equity)
            state.max_drawdown = max(state.max_drawdown, drawdown)

    # =========================================================================
    # Comparison
    # =========================================================================

    async def compare_strategies(
        self,
        token: str,
        start_date: datetime,
        end_date: datetime,
        initial_capital: Optional[Decimal] = None,
    ) -> List[BacktestResult]:
        """
        Run every registered strategy and rank by total return.

        A failing strategy is reported with ``phase=FAILED`` after the
        successful ones instead of aborting the comparison.
        """
        strategy_ids = list(self.strategies.keys())
        outcomes = await asyncio.gather(
            *(self.run(sid, token, start_date, end_date, initial_capital) for sid in strategy_ids),
            return_exceptions=True,
        )

        completed: List[BacktestResult] = []
        failed: List[BacktestResult] = []
        capital = initial_capital if initial_capital is not None else self.config.initial_capital

        for strategy_id, outcome in zip(strategy_ids, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "backtest.strategy_failed", strategy=strategy_id, token=token, error=str(outcome)
                )
                failed.append(BacktestResult(
                    strategy_id=strategy_id,
                    token=token,
                    start_date=start_date,
                    end_date=end_date,
                    initial_capital=capital,
                    final_capital=capital,
                    phase=BacktestPhase.FAILED,
                    error=str(outcome),
                ))
            else:
                completed.append(outcome)

        completed.sort(key=lambda r: r.total_return, reverse=True)
        ranked = completed + failed

        logger.info(
            "backtest.comparison_complete",
            token=token,
            ranking=[(r.strategy_id, round(r.total_return * 100, 2)) for r in completed],
            failed=[r.strategy_id for r in failed],
        )
        return ranked

    # =========================================================================
    # Queries
    # =========================================================================

    def get_results(self) -> List[BacktestResult]:
        return list(self.results.values())

    def get_strategy_summary(self) -> List[Dict[str, Any]]:
        """First result per (strategy, token) pair."""
        summary: Dict[str, Dict[str, Any]] = {}
        for result in self.get_results():
            key = f"{result.strategy_id}_{result.token}"
            if key in summary or result.metrics is None:
                continue
            summary[key] = {
                "strategy": result.strategy_id,
                "token": result.token,
                "total_return": result.metrics.total_return,
                "win_rate": result.metrics.win_rate,
                "sharpe_ratio": result.metrics.sharpe_ratio,
                "max_drawdown": result.metrics.max_drawdown,
                "total_trades": result.metrics.total_trades,
            }
        return list(summary.values())

    def get_status(self) -> Dict[str, Any]:
        return {
            "strategies": len(self.strategies),
            "historical_data": len(self.data_loader.loaded_tokens()),
            "results": len(self.results),
        }


def calculate_performance_metrics(state: BacktestState, initial_capital: Decimal) -> PerformanceMetrics:
    """Summary metrics from the trade list and equity curve."""
    final_capital = state.cash
    total_return = float((final_capital - initial_capital) / initial_capital) if initial_capital > 0 else 0.0

    trades = state.trades
    wins = [float(t.pnl) for t in trades if t.pnl > 0]
    losses = [float(t.pnl) for t in trades if t.pnl < 0]

    win_rate = len(wins) / len(trades) if trades else 0.0
    avg_win = float(np.mean(wins)) if wins else 0.0
    avg_loss = abs(float(np.mean(losses))) if losses else 0.0
    profit_factor = (avg_win * len(wins)) / (avg_loss * len(losses)) if avg_loss > 0 else 0.0

    equity = pd.Series([float(e) for e in state.equity_curve])
    returns = equity.pct_change().dropna()
    if len(returns) > 0:
        avg_return = float(returns.mean())
        volatility = float(returns.std(ddof=0))
    else:
        avg_return = 0.0
        volatility = 0.0
    sharpe = avg_return / volatility if volatility > 0 else 0.0

    return PerformanceMetrics(
        total_return=total_return,
        final_capital=final_capital,
        total_trades=len(trades),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=win_rate,
        avg_win=avg_win,
        avg_loss=avg_loss,
        profit_factor=profit_factor,
        max_drawdown=state.max_drawdown,
        sharpe_ratio=sharpe,
        avg_return=avg_return,
        volatility=volatility,
    )
