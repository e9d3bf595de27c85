"""Market data and execution integration for the basket trading stack."""

from basket_trader.exchange.execution import (
    ExecutionBackend,
    FixedSlippageExecution,
    SimulatedExecution,
)
from basket_trader.exchange.price_oracle import (
    DEFAULT_PRICES,
    PriceOracle,
    ScriptedPriceOracle,
    StaticPriceOracle,
)

__all__ = [
    "ExecutionBackend",
    "SimulatedExecution",
    "FixedSlippageExecution",
    "PriceOracle",
    "StaticPriceOracle",
    "ScriptedPriceOracle",
    "DEFAULT_PRICES",
]
