"""
Live signal sources for the basket trader.

- BaseSignalSource: interface consumed by the trading loop
- StrategySignalSource: runs a backtest strategy on live oracle bars
- QueuedSignalSource: replays pre-built signals
"""

from basket_trader.strategies.base import (
    BaseSignalSource,
    QueuedSignalSource,
    StrategySignalSource,
    risk_tier_for,
)

__all__ = [
    "BaseSignalSource",
    "QueuedSignalSource",
    "StrategySignalSource",
    "risk_tier_for",
]
