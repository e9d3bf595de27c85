"""
Basket Trader Backtest Module.

Bar-by-bar replay of the reference strategies against historical data.

Usage:
    from basket_trader.backtest import BacktestSimulator

    simulator = BacktestSimulator()
    result = await simulator.run("momentum", "SOL", start_date, end_date, Decimal("10000"))
    ranking = await simulator.compare_strategies("SOL", start_date, end_date)
"""

from basket_trader.backtest.data_loader import HistoricalDataLoader, bars_from_closes
from basket_trader.backtest.engine import (BacktestResult, BacktestSimulator,
                                           BacktestState, BacktestTrade,
                                           OpenTrade, calculate_performance_metrics)
from basket_trader.backtest.report import BacktestReport, render_comparison
from basket_trader.backtest.runner import BacktestRunner
from basket_trader.backtest.strategies import (MeanReversionStrategy,
                                               MomentumStrategy,
                                               PatternStrategy,
                                               SentimentStrategy, Strategy,
                                               StrategySignal,
                                               default_strategies)

__all__ = [
    "BacktestSimulator",
    "BacktestResult",
    "BacktestState",
    "BacktestTrade",
    "OpenTrade",
    "calculate_performance_metrics",
    "HistoricalDataLoader",
    "bars_from_closes",
    "BacktestReport",
    "render_comparison",
    "BacktestRunner",
    "Strategy",
    "StrategySignal",
    "MomentumStrategy",
    "MeanReversionStrategy",
    "SentimentStrategy",
    "PatternStrategy",
    "default_strategies",
]
