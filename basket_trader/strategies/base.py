"""Signal sources feeding the live trading loop."""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from basket_trader.backtest.strategies import Strategy
from basket_trader.core.exceptions import DataUnavailable
from basket_trader.core.models import RiskTier, Signal
from basket_trader.exchange.price_oracle import PriceOracle

logger = structlog.get_logger(__name__)


class BaseSignalSource(ABC):
    """Abstract base class for signal sources."""

    def __init__(self, name: str, tokens: List[str]):
        self.name = name
        self.tokens = tokens
        self.is_active = True
        self.logger = logger.bind(source=name)

        # Track source performance
        self.signals_generated = 0
        self.trades_executed = 0
        self.total_pnl = Decimal("0")

    @abstractmethod
    async def get_signal(self, token: str) -> Optional[Signal]:
        """
        Produce the current signal for ``token``.

        Returns:
            A Signal, or None when there is nothing to do

        Raises:
            DataUnavailable: If the underlying data cannot be read
        """

    async def on_position_opened(self, token: str, quantity: Decimal, price: Decimal):
        """Callback when a position from this source is opened."""
        self.trades_executed += 1

    async def on_position_closed(self, token: str, pnl: Decimal):
        """Callback when a position from this source is closed."""
        self.total_pnl += pnl

    def get_stats(self) -> Dict[str, Any]:
        """Get source statistics."""
        return {
            'name': self.name,
            'tokens': self.tokens,
            'is_active': self.is_active,
            'signals_generated': self.signals_generated,
            'trades_executed': self.trades_executed,
            'total_pnl': str(self.total_pnl)
        }

    def pause(self):
        """Pause the source."""
        self.is_active = False
        self.logger.info("signal_source.paused")

    def resume(self):
        """Resume the source."""
        self.is_active = True
        self.logger.info("signal_source.resumed")


def risk_tier_for(confidence: float) -> RiskTier:
    """Map signal confidence to a risk tier."""
    if confidence > 0.8:
        return RiskTier.LOW
    if confidence < 0.6:
        return RiskTier.HIGH
    return RiskTier.MEDIUM


class StrategySignalSource(BaseSignalSource):
    """
    Runs a backtest ``Strategy`` on live bars from the price oracle.

    The strategy is evaluated on the latest bar; its output becomes a Signal
    priced at the oracle's current price (or the latest close if the current
    price is unavailable).
    """

    def __init__(self, strategy: Strategy, oracle: PriceOracle, tokens: List[str], name: Optional[str] = None):
        super().__init__(name or strategy.strategy_id, tokens)
        self.strategy = strategy
        self.oracle = oracle

    async def get_signal(self, token: str) -> Optional[Signal]:
        try:
            bars = await self.oracle.get_historical_bars(token)
        except DataUnavailable as e:
            self.logger.warning("signal_source.no_data", token=token, error=str(e))
            return None

        if len(bars) < self.strategy.min_history:
            return None

        bar = bars[-1]
        output = self.strategy.evaluate(bars, bar)
        if output is None:
            return None

        try:
            price = await self.oracle.get_current_price(token)
        except DataUnavailable:
            price = bar.close

        signal = Signal(
            token=token,
            action=output.action,
            current_price=price,
            target_price=output.take_profit,
            stop_loss=output.stop_loss,
            confidence=output.confidence,
            risk_level=risk_tier_for(output.confidence),
            reason=output.reason,
            source=self.name,
        )
        self.signals_generated += 1
        self.logger.info(
            "signal_source.signal",
            token=token,
            action=signal.action.value,
            confidence=signal.confidence,
            reason=signal.reason,
        )
        return signal


class QueuedSignalSource(BaseSignalSource):
    """Hands out pre-built signals in order, one per call and token."""

    def __init__(self, signals: Dict[str, List[Signal]], name: str = "queued"):
        super().__init__(name, list(signals.keys()))
        self.queues: Dict[str, List[Signal]] = {token: list(queue) for token, queue in signals.items()}

    def push(self, signal: Signal) -> None:
        self.queues.setdefault(signal.token, []).append(signal)
        if signal.token not in self.tokens:
            self.tokens.append(signal.token)

    async def get_signal(self, token: str) -> Optional[Signal]:
        queue = self.queues.get(token)
        if not queue:
            return None
        self.signals_generated += 1
        return queue.pop(0)
