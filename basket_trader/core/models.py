"""Data models for the basket trading stack.

This module defines the structures shared by the live decision pipeline
(RiskGate -> PositionSizer -> PositionLedger -> PortfolioController) and the
backtest simulator.

All monetary values use Decimal for precision.
All timestamps are naive UTC datetime objects.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from basket_trader.core.exceptions import InvariantViolation


# =============================================================================
# Enums
# =============================================================================

class TradeAction(str, Enum):
    """Direction of a signal or execution."""
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "TradeAction":
        return TradeAction.SELL if self is TradeAction.BUY else TradeAction.BUY


class RiskTier(str, Enum):
    """Risk level attached to a signal by its producer."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class PositionStatus(str, Enum):
    """Position lifecycle status."""
    PENDING = "pending"           # Created, execution in flight
    EXECUTED = "executed"         # Filled by a real backend
    SIMULATED = "simulated"       # Filled by the simulated backend
    FAILED = "failed"             # Execution failed, terminal
    CLOSED = "closed"             # Exited, terminal


class AlertLevel(str, Enum):
    """Severity of a risk alert."""
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class RiskStatus(str, Enum):
    """Aggregated risk status derived from unacknowledged alerts."""
    NORMAL = "NORMAL"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class CloseReason(str, Enum):
    """Why a position was closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    TRAILING_STOP = "trailing_stop"
    EMERGENCY_STOP = "emergency_stop"
    SIGNAL = "signal"
    MANUAL = "manual"
    END_OF_RANGE = "end_of_range"


class BacktestPhase(str, Enum):
    """Backtest run state machine."""
    INITIALIZED = "INITIALIZED"
    REPLAYING = "REPLAYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# Forward-only position state machine
POSITION_TRANSITIONS: Dict[PositionStatus, frozenset] = {
    PositionStatus.PENDING: frozenset(
        {PositionStatus.EXECUTED, PositionStatus.SIMULATED, PositionStatus.FAILED}
    ),
    PositionStatus.EXECUTED: frozenset({PositionStatus.CLOSED}),
    PositionStatus.SIMULATED: frozenset({PositionStatus.CLOSED}),
    PositionStatus.FAILED: frozenset(),
    PositionStatus.CLOSED: frozenset(),
}


# =============================================================================
# Market Data Models
# =============================================================================

class MarketBar(BaseModel):
    """One OHLCV bar with an attached social sentiment reading.

    Attributes:
        token: Token symbol (e.g., "SOL")
        timestamp: Bar timestamp (UTC)
        open: Opening price
        high: Highest price
        low: Lowest price
        close: Closing price
        volume: Traded volume in USD
        sentiment: Sentiment score in [-1, 1]
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    token: str = Field(..., description="Token symbol")
    timestamp: datetime = Field(..., description="Bar timestamp (UTC)")
    open: Decimal = Field(..., gt=0, description="Opening price")
    high: Decimal = Field(..., gt=0, description="Highest price")
    low: Decimal = Field(..., gt=0, description="Lowest price")
    close: Decimal = Field(..., gt=0, description="Closing price")
    volume: Decimal = Field(default=Decimal("0"), ge=0, description="Volume (USD)")
    sentiment: float = Field(default=0.0, ge=-1.0, le=1.0, description="Sentiment score")

    @field_validator("low")
    @classmethod
    def low_lte_high(cls, v: Decimal, info) -> Decimal:
        """Validate low is <= high."""
        if info.data.get("high") and v > info.data["high"]:
            raise ValueError("Low must be <= high")
        return v


# =============================================================================
# Signal Models
# =============================================================================

class Signal(BaseModel):
    """Directional trade recommendation produced by a signal source.

    Signals are immutable once issued. ``target_price`` doubles as the
    take-profit level; ``trailing_stop`` is an optional trailing distance
    expressed as a fraction of price.
    """
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    token: str = Field(..., description="Token symbol")
    action: TradeAction = Field(..., description="buy or sell")
    current_price: Decimal = Field(..., gt=0, description="Price when issued")
    target_price: Optional[Decimal] = Field(default=None, description="Take-profit target")
    stop_loss: Optional[Decimal] = Field(default=None, description="Stop-loss level")
    trailing_stop: Optional[Decimal] = Field(
        default=None, gt=0, lt=1, description="Trailing stop distance (fraction)"
    )
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence 0-1")
    risk_level: RiskTier = Field(default=RiskTier.MEDIUM, description="Risk tier")
    reason: str = Field(default="", description="Human-readable rationale")
    source: Optional[str] = Field(default=None, description="Producing source/strategy")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Issue time")

    @property
    def stop_distance_pct(self) -> Optional[Decimal]:
        """Distance from current price to the stop, as a fraction of price."""
        if self.stop_loss is None or self.stop_loss <= 0:
            return None
        return abs(self.current_price - self.stop_loss) / self.current_price


# =============================================================================
# Execution & Position Models
# =============================================================================

class ExecutionResult(BaseModel):
    """Outcome of a single execution call."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    success: bool = Field(..., description="Whether the order filled")
    price: Optional[Decimal] = Field(default=None, description="Fill price")
    transaction_id: Optional[str] = Field(default=None, description="Backend reference")
    simulated: bool = Field(default=True, description="True for simulated fills")
    error: Optional[str] = Field(default=None, description="Failure message")
    executed_at: datetime = Field(default_factory=datetime.utcnow)


class Position(BaseModel):
    """A position owned by the PositionLedger.

    Status only moves forward:
    pending -> (executed | simulated | failed) -> closed.

    Attributes:
        signal: The signal that opened the position
        status: Current lifecycle status
        quantity: Position size in token units
        entry_price: Fill price of the opening execution
        stop_loss: Stop-loss level
        take_profit: Take-profit level
        trailing_stop_distance: Trailing distance as a fraction of price
        trailing_stop_price: Current trailing stop level
        realized_pnl: P&L booked on close
        unrealized_pnl: Mark-to-market P&L while open
        status_history: Every status the position has held, in order
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    signal: Signal = Field(..., description="Opening signal")
    quantity: Decimal = Field(..., ge=0, description="Size in token units")

    id: str = Field(default_factory=lambda: str(uuid4()), description="Position ID")
    status: PositionStatus = Field(default=PositionStatus.PENDING)
    status_history: List[PositionStatus] = Field(
        default_factory=lambda: [PositionStatus.PENDING]
    )

    entry_price: Optional[Decimal] = Field(default=None, description="Fill price")
    stop_loss: Optional[Decimal] = Field(default=None, description="Stop-loss level")
    take_profit: Optional[Decimal] = Field(default=None, description="Take-profit level")
    trailing_stop_distance: Optional[Decimal] = Field(default=None)
    trailing_stop_price: Optional[Decimal] = Field(default=None)

    opened_at: datetime = Field(default_factory=datetime.utcnow)
    closed_at: Optional[datetime] = Field(default=None)
    close_reason: Optional[CloseReason] = Field(default=None)
    close_price: Optional[Decimal] = Field(default=None)

    realized_pnl: Optional[Decimal] = Field(default=None)
    unrealized_pnl: Decimal = Field(default=Decimal("0"))
    current_price: Optional[Decimal] = Field(default=None)
    return_pct: float = Field(default=0.0)

    transaction_id: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def token(self) -> str:
        return self.signal.token

    @property
    def action(self) -> TradeAction:
        return self.signal.action

    @property
    def is_open(self) -> bool:
        """True while the position holds exposure."""
        return self.status in (PositionStatus.EXECUTED, PositionStatus.SIMULATED)

    @property
    def position_value(self) -> Decimal:
        """Position value at entry price."""
        return (self.entry_price or Decimal("0")) * self.quantity

    def transition_to(self, status: PositionStatus) -> None:
        """Move to ``status``, refusing any backward or skipping transition."""
        if status not in POSITION_TRANSITIONS[self.status]:
            raise InvariantViolation(
                f"Illegal position transition {self.status.value} -> {status.value} "
                f"for position {self.id}"
            )
        self.status = status
        self.status_history.append(status)

    def calculate_pnl(self, price: Decimal) -> Decimal:
        """P&L of the full quantity at ``price``; sign-flipped for sells."""
        if self.entry_price is None or self.quantity == 0:
            return Decimal("0")
        diff = price - self.entry_price
        if self.action == TradeAction.BUY:
            return diff * self.quantity
        return -diff * self.quantity

    def mark_to_market(self, price: Decimal) -> None:
        """Refresh current price, unrealized P&L and return percentage."""
        self.current_price = price
        self.unrealized_pnl = self.calculate_pnl(price)
        if self.entry_price:
            self.return_pct = float((price - self.entry_price) / self.entry_price * 100)


class TradeRecord(BaseModel):
    """One execution appended to the trading history."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    id: str = Field(default_factory=lambda: str(uuid4()))
    position_id: str = Field(..., description="Owning position")
    token: str = Field(...)
    action: TradeAction = Field(...)
    kind: str = Field(..., description="'open' or 'close'")
    quantity: Decimal = Field(..., ge=0)
    reference_price: Decimal = Field(..., description="Price requested")
    execution_price: Optional[Decimal] = Field(default=None, description="Fill price")
    status: PositionStatus = Field(...)
    realized_pnl: Optional[Decimal] = Field(default=None)
    reason: str = Field(default="")
    simulated: bool = Field(default=True)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Risk Models
# =============================================================================

class Alert(BaseModel):
    """Risk alert. Only ``acknowledged`` may change after creation."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    level: AlertLevel = Field(...)
    type: str = Field(..., description="Metric or event that raised the alert")
    message: str = Field(...)
    acknowledged: bool = Field(default=False)


class PortfolioRiskSnapshot(BaseModel):
    """Portfolio-level inputs for a RiskGate assessment cycle."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    total_value: Decimal = Field(..., ge=0)
    volatility: float = Field(default=0.0, ge=0)
    var_95: Decimal = Field(default=Decimal("0"))
    var_99: Decimal = Field(default=Decimal("0"))
    correlation: float = Field(default=0.0)
    concentration: float = Field(default=0.0)
    liquidity_risk: float = Field(default=0.0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class RiskMetrics(BaseModel):
    """Derived risk metrics, recomputed on each assessment."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    current_drawdown: float = Field(default=0.0, description="Fraction below peak")
    daily_pnl: Decimal = Field(default=Decimal("0"))
    daily_pnl_pct: float = Field(default=0.0, description="Fraction of day-start value")
    portfolio_volatility: float = Field(default=0.0)
    var_95: Decimal = Field(default=Decimal("0"))
    var_99: Decimal = Field(default=Decimal("0"))
    max_correlation: float = Field(default=0.0)
    concentration_risk: float = Field(default=0.0)
    liquidity_risk: float = Field(default=0.0)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


# =============================================================================
# Portfolio Models
# =============================================================================

class Holding(BaseModel):
    """A token holding tracked by the PortfolioController."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    token: str = Field(...)
    amount: Decimal = Field(...)
    entry_price: Decimal = Field(..., ge=0)
    current_price: Decimal = Field(..., ge=0)
    value_usd: Decimal = Field(default=Decimal("0"))
    allocation_pct: Decimal = Field(default=Decimal("0"))
    unrealized_pnl: Decimal = Field(default=Decimal("0"))
    return_pct: float = Field(default=0.0)

    def revalue(self, price: Decimal) -> None:
        self.current_price = price
        self.value_usd = self.amount * price
        self.unrealized_pnl = (price - self.entry_price) * self.amount
        if self.entry_price > 0:
            self.return_pct = float((price - self.entry_price) / self.entry_price * 100)


class RebalanceInstruction(BaseModel):
    """A trade needed to bring one token back to its target allocation."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    token: str
    action: TradeAction
    current_allocation: Decimal
    target_allocation: Decimal
    current_value: Decimal
    target_value: Decimal
    amount_usd: Decimal = Field(..., ge=0)


class PortfolioPerformance(BaseModel):
    """Portfolio performance figures (fractions, not percentages)."""

    total_return: float = 0.0
    daily_return: float = 0.0
    weekly_return: float = 0.0
    monthly_return: float = 0.0
    sharpe_ratio: float = 0.0
    volatility: float = 0.0


class PortfolioRiskMetrics(BaseModel):
    """Portfolio risk figures from the static coefficient tables."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    var_95: Decimal = Decimal("0")
    var_99: Decimal = Decimal("0")
    beta: float = 0.0
    correlation: float = 0.0


# =============================================================================
# Performance Models
# =============================================================================

class PerformanceMetrics(BaseModel):
    """Summary metrics of a backtest run. Never mutated after computation."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    total_return: float = 0.0
    final_capital: Decimal = Decimal("0")
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    avg_return: float = 0.0
    volatility: float = 0.0


class LedgerPerformance(BaseModel):
    """Running performance of the live ledger, recomputed wholesale."""
    model_config = ConfigDict(frozen=True, json_encoders={Decimal: str})

    total_trades: int = 0
    closed_trades: int = 0
    winning_trades: int = 0
    total_profit: Decimal = Decimal("0")
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0
    active_positions: int = 0
    pending_orders: int = 0


# =============================================================================
# Utility Functions
# =============================================================================

def create_buy_signal(
    token: str,
    current_price: Decimal,
    confidence: float,
    stop_loss: Optional[Decimal] = None,
    target_price: Optional[Decimal] = None,
    risk_level: RiskTier = RiskTier.MEDIUM,
    **kwargs
) -> Signal:
    """Factory function to create a buy signal.

    Args:
        token: Token symbol
        current_price: Price when issued
        confidence: Signal confidence 0-1
        stop_loss: Suggested stop loss
        target_price: Suggested take profit
        risk_level: Risk tier of the trade
        **kwargs: Additional signal fields (reason, trailing_stop, source)

    Returns:
        Immutable buy signal
    """
    return Signal(
        token=token,
        action=TradeAction.BUY,
        current_price=current_price,
        confidence=confidence,
        stop_loss=stop_loss,
        target_price=target_price,
        risk_level=risk_level,
        **kwargs
    )


def create_sell_signal(
    token: str,
    current_price: Decimal,
    confidence: float,
    stop_loss: Optional[Decimal] = None,
    target_price: Optional[Decimal] = None,
    risk_level: RiskTier = RiskTier.MEDIUM,
    **kwargs
) -> Signal:
    """Factory function to create a sell signal."""
    return Signal(
        token=token,
        action=TradeAction.SELL,
        current_price=current_price,
        confidence=confidence,
        stop_loss=stop_loss,
        target_price=target_price,
        risk_level=risk_level,
        **kwargs
    )
