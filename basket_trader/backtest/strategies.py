"""
Reference strategies for the backtest simulator.

Each strategy is a pure function of the bar history, the current bar and its
parameters: the same inputs always produce the same signal. The same
strategies drive the live path through ``StrategySignalSource``.
"""
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import TYPE_CHECKING, List, Optional, Sequence, Type

from pydantic import BaseModel, ConfigDict, Field

from basket_trader.backtest.indicators import calculate_rsi, find_double_bottom, price_change
from basket_trader.core.models import MarketBar, TradeAction

if TYPE_CHECKING:
    from basket_trader.backtest.engine import BacktestState


class StrategySignal(BaseModel):
    """Output of a strategy evaluation."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    action: TradeAction
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: str = ""
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None


class StrategyParams(BaseModel):
    """Base class for strategy parameters."""
    model_config = ConfigDict(frozen=True)


class Strategy(ABC):
    """
    Base class for strategies.

    Subclasses set ``strategy_id``, ``name`` and ``params_model`` and
    implement ``evaluate``.
    """

    strategy_id: str = ""
    name: str = ""
    description: str = ""
    params_model: Type[StrategyParams] = StrategyParams

    def __init__(self, params: Optional[StrategyParams] = None):
        self.params = params or self.params_model()

    @abstractmethod
    def evaluate(
        self,
        history: Sequence[MarketBar],
        bar: MarketBar,
        state: Optional["BacktestState"] = None
    ) -> Optional[StrategySignal]:
        """
        Evaluate the strategy at ``bar``.

        Args:
            history: Bars up to and including ``bar``, oldest first
            bar: Current bar
            state: Backtest state of the run (read-only for strategies)

        Returns:
            A signal, or None for no action
        """

    @property
    def min_history(self) -> int:
        """Bars needed before the strategy can emit a signal."""
        return 1

    def describe(self) -> dict:
        return {
            "id": self.strategy_id,
            "name": self.name,
            "description": self.description,
            "parameters": self.params.model_dump(),
        }


# =============================================================================
# Momentum
# =============================================================================

class MomentumParams(StrategyParams):
    lookback_period: int = Field(default=20, ge=2)
    min_volume: Decimal = Decimal("100000")
    min_price_change: float = 0.05
    confidence_threshold: float = 0.7


class MomentumStrategy(Strategy):
    """Trade in the direction of the price change over the lookback window."""

    strategy_id = "momentum"
    name = "Momentum Strategy"
    description = "Trade based on price momentum and volume"
    params_model = MomentumParams

    @property
    def min_history(self) -> int:
        return self.params.lookback_period

    def evaluate(self, history, bar, state=None):
        p = self.params
        if len(history) < p.lookback_period:
            return None

        closes = [float(b.close) for b in history]
        change = price_change(closes, p.lookback_period)
        if change is None:
            return None

        if bar.volume < p.min_volume or abs(change) < p.min_price_change:
            return None

        confidence = min(abs(change) * 2, 0.95)
        if confidence < p.confidence_threshold:
            return None

        rising = change > 0
        return StrategySignal(
            action=TradeAction.BUY if rising else TradeAction.SELL,
            confidence=confidence,
            reason=f"Momentum: {change * 100:.2f}% change",
            stop_loss=bar.close * (Decimal("0.95") if rising else Decimal("1.05")),
            take_profit=bar.close * (Decimal("1.10") if rising else Decimal("0.90")),
        )


# =============================================================================
# Mean Reversion
# =============================================================================

class MeanReversionParams(StrategyParams):
    rsi_period: int = Field(default=14, ge=2)
    rsi_oversold: float = 30.0
    rsi_overbought: float = 70.0


class MeanReversionStrategy(Strategy):
    """Buy oversold and sell overbought RSI readings."""

    strategy_id = "mean_reversion"
    name = "Mean Reversion Strategy"
    description = "Trade based on price reversals from extremes"
    params_model = MeanReversionParams

    @property
    def min_history(self) -> int:
        return self.params.rsi_period + 1

    def evaluate(self, history, bar, state=None):
        p = self.params
        if len(history) < self.min_history:
            return None

        rsi = calculate_rsi([float(b.close) for b in history], p.rsi_period)

        if rsi < p.rsi_oversold:
            return StrategySignal(
                action=TradeAction.BUY,
                confidence=(p.rsi_oversold - rsi) / p.rsi_oversold,
                reason=f"RSI oversold: {rsi:.2f}",
                stop_loss=bar.close * Decimal("0.95"),
                take_profit=bar.close * Decimal("1.10"),
            )
        if rsi > p.rsi_overbought:
            return StrategySignal(
                action=TradeAction.SELL,
                confidence=(rsi - p.rsi_overbought) / (100 - p.rsi_overbought),
                reason=f"RSI overbought: {rsi:.2f}",
                stop_loss=bar.close * Decimal("1.05"),
                take_profit=bar.close * Decimal("0.90"),
            )
        return None


# =============================================================================
# Sentiment
# =============================================================================

class SentimentParams(StrategyParams):
    min_sentiment: float = 0.6
    min_volume: Decimal = Decimal("500000")
    confidence_threshold: float = 0.65


class SentimentStrategy(Strategy):
    """Buy on strong positive social sentiment with volume."""

    strategy_id = "sentiment"
    name = "Sentiment Strategy"
    description = "Trade based on social media sentiment"
    params_model = SentimentParams

    def evaluate(self, history, bar, state=None):
        p = self.params
        if bar.sentiment < p.min_sentiment or bar.volume < p.min_volume:
            return None

        confidence = min(bar.sentiment, 0.95)
        if confidence < p.confidence_threshold:
            return None

        return StrategySignal(
            action=TradeAction.BUY,
            confidence=confidence,
            reason=f"Positive sentiment: {bar.sentiment * 100:.1f}%",
            stop_loss=bar.close * Decimal("0.95"),
            take_profit=bar.close * Decimal("1.10"),
        )


# =============================================================================
# Pattern
# =============================================================================

class PatternParams(StrategyParams):
    window: int = Field(default=20, ge=5)
    trough_tolerance: float = 0.02
    min_target: float = 0.05
    pattern_confidence: float = 0.7
    stop_buffer: Decimal = Decimal("0.98")


class PatternStrategy(Strategy):
    """Buy a double bottom when its measured target clears the minimum return."""

    strategy_id = "pattern"
    name = "Pattern Recognition Strategy"
    description = "Trade based on technical chart patterns"
    params_model = PatternParams

    @property
    def min_history(self) -> int:
        return self.params.window

    def evaluate(self, history, bar, state=None):
        p = self.params
        if len(history) < p.window:
            return None

        recent = history[-p.window:]
        pattern = find_double_bottom(
            [float(b.low) for b in recent],
            [float(b.high) for b in recent],
            tolerance=p.trough_tolerance,
        )
        if pattern is None:
            return None

        close = float(bar.close)
        target_return = (pattern.target - close) / close
        if target_return < p.min_target:
            return None

        return StrategySignal(
            action=TradeAction.BUY,
            confidence=p.pattern_confidence,
            reason=f"Pattern: double_bottom, target {target_return * 100:.1f}%",
            stop_loss=Decimal(str(pattern.bottom)) * p.stop_buffer,
            take_profit=Decimal(str(pattern.target)),
        )


def default_strategies() -> List[Strategy]:
    """One instance of every reference strategy with default parameters."""
    return [
        MomentumStrategy(),
        MeanReversionStrategy(),
        SentimentStrategy(),
        PatternStrategy(),
    ]
