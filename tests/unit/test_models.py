"""Unit tests for data models in the Basket Trader."""
import pytest
from datetime import datetime
from decimal import Decimal

from pydantic import ValidationError

from basket_trader.core.exceptions import InvariantViolation
from basket_trader.core.models import (
    # Enums
    BacktestPhase, CloseReason, PositionStatus, RiskTier, TradeAction,
    # Models
    Holding, MarketBar, PerformanceMetrics, Position, Signal,
    # Factory functions
    create_buy_signal, create_sell_signal
)


# =============================================================================
# Enum Tests
# =============================================================================

class TestEnums:
    """Test enumeration values and behavior."""

    def test_trade_action_values(self):
        assert TradeAction.BUY.value == "buy"
        assert TradeAction.SELL.value == "sell"

    def test_trade_action_opposite(self):
        assert TradeAction.BUY.opposite == TradeAction.SELL
        assert TradeAction.SELL.opposite == TradeAction.BUY

    def test_position_status_values(self):
        assert PositionStatus.PENDING.value == "pending"
        assert PositionStatus.SIMULATED.value == "simulated"
        assert PositionStatus.CLOSED.value == "closed"

    def test_close_reason_values(self):
        assert CloseReason.STOP_LOSS.value == "stop_loss"
        assert CloseReason.END_OF_RANGE.value == "end_of_range"

    def test_backtest_phase_values(self):
        assert BacktestPhase.COMPLETED.value == "COMPLETED"
        assert BacktestPhase.FAILED.value == "FAILED"


# =============================================================================
# MarketBar Tests
# =============================================================================

class TestMarketBar:
    """Test MarketBar model."""

    def test_create_bar(self):
        bar = MarketBar(
            token="SOL",
            timestamp=datetime(2024, 1, 1),
            open=Decimal("100"),
            high=Decimal("105"),
            low=Decimal("95"),
            close=Decimal("102"),
            volume=Decimal("1000000"),
            sentiment=0.4,
        )
        assert bar.close == Decimal("102")
        assert bar.sentiment == 0.4

    def test_low_above_high_rejected(self):
        with pytest.raises(ValidationError):
            MarketBar(
                token="SOL",
                timestamp=datetime(2024, 1, 1),
                open=Decimal("100"),
                high=Decimal("95"),
                low=Decimal("105"),
                close=Decimal("100"),
            )

    def test_sentiment_out_of_range_rejected(self):
        with pytest.raises(ValidationError):
            MarketBar(
                token="SOL",
                timestamp=datetime(2024, 1, 1),
                open=Decimal("1"),
                high=Decimal("1"),
                low=Decimal("1"),
                close=Decimal("1"),
                sentiment=1.5,
            )


# =============================================================================
# Signal Tests
# =============================================================================

class TestSignal:
    """Test Signal model."""

    def test_create_buy_signal(self):
        signal = create_buy_signal("SOL", Decimal("100"), 0.8, stop_loss=Decimal("95"))
        assert signal.action == TradeAction.BUY
        assert signal.risk_level == RiskTier.MEDIUM
        assert signal.stop_loss == Decimal("95")

    def test_create_sell_signal(self):
        signal = create_sell_signal("WIF", Decimal("2.45"), 0.7, reason="overbought")
        assert signal.action == TradeAction.SELL
        assert signal.reason == "overbought"

    def test_signal_is_immutable(self):
        signal = create_buy_signal("SOL", Decimal("100"), 0.8)
        with pytest.raises(ValidationError):
            signal.confidence = 0.1

    def test_confidence_bounds(self):
        with pytest.raises(ValidationError):
            create_buy_signal("SOL", Decimal("100"), 1.2)

    def test_price_must_be_positive(self):
        with pytest.raises(ValidationError):
            create_buy_signal("SOL", Decimal("0"), 0.5)

    def test_stop_distance(self):
        signal = create_buy_signal("SOL", Decimal("100"), 0.8, stop_loss=Decimal("95"))
        assert signal.stop_distance_pct == Decimal("0.05")

    def test_stop_distance_without_stop(self):
        signal = create_buy_signal("SOL", Decimal("100"), 0.8)
        assert signal.stop_distance_pct is None


# =============================================================================
# Position Tests
# =============================================================================

class TestPosition:
    """Test Position model and its state machine."""

    def _position(self, action=TradeAction.BUY) -> Position:
        signal = Signal(token="SOL", action=action, current_price=Decimal("100"), confidence=0.8)
        return Position(signal=signal, quantity=Decimal("2"), entry_price=Decimal("100"))

    def test_defaults(self):
        position = self._position()
        assert position.status == PositionStatus.PENDING
        assert position.status_history == [PositionStatus.PENDING]
        assert position.token == "SOL"
        assert not position.is_open

    def test_forward_transitions(self):
        position = self._position()
        position.transition_to(PositionStatus.SIMULATED)
        assert position.is_open
        position.transition_to(PositionStatus.CLOSED)

        assert position.status_history == [
            PositionStatus.PENDING, PositionStatus.SIMULATED, PositionStatus.CLOSED
        ]

    def test_pending_cannot_close(self):
        position = self._position()
        with pytest.raises(InvariantViolation):
            position.transition_to(PositionStatus.CLOSED)

    def test_failed_is_terminal(self):
        position = self._position()
        position.transition_to(PositionStatus.FAILED)
        with pytest.raises(InvariantViolation):
            position.transition_to(PositionStatus.CLOSED)
        assert position.status_history == [PositionStatus.PENDING, PositionStatus.FAILED]

    def test_closed_cannot_reopen(self):
        position = self._position()
        position.transition_to(PositionStatus.EXECUTED)
        position.transition_to(PositionStatus.CLOSED)
        with pytest.raises(InvariantViolation):
            position.transition_to(PositionStatus.EXECUTED)

    def test_buy_pnl(self):
        position = self._position(TradeAction.BUY)
        assert position.calculate_pnl(Decimal("110")) == Decimal("20")
        assert position.calculate_pnl(Decimal("90")) == Decimal("-20")

    def test_sell_pnl_is_sign_flipped(self):
        position = self._position(TradeAction.SELL)
        assert position.calculate_pnl(Decimal("90")) == Decimal("20")
        assert position.calculate_pnl(Decimal("110")) == Decimal("-20")

    def test_mark_to_market(self):
        position = self._position()
        position.mark_to_market(Decimal("105"))
        assert position.current_price == Decimal("105")
        assert position.unrealized_pnl == Decimal("10")
        assert position.return_pct == pytest.approx(5.0)

    def test_json_round_trip(self):
        position = self._position()
        position.transition_to(PositionStatus.SIMULATED)
        restored = Position.model_validate(position.model_dump(mode="json"))
        assert restored.id == position.id
        assert restored.status == PositionStatus.SIMULATED
        assert restored.entry_price == Decimal("100")


# =============================================================================
# Holding & Metrics Tests
# =============================================================================

class TestHolding:
    """Test Holding revaluation."""

    def test_revalue(self):
        holding = Holding(token="SOL", amount=Decimal("10"), entry_price=Decimal("100"), current_price=Decimal("100"))
        holding.revalue(Decimal("120"))
        assert holding.value_usd == Decimal("1200")
        assert holding.unrealized_pnl == Decimal("200")
        assert holding.return_pct == pytest.approx(20.0)


class TestPerformanceMetrics:
    """Test PerformanceMetrics immutability."""

    def test_frozen(self):
        metrics = PerformanceMetrics(total_return=0.1)
        with pytest.raises(ValidationError):
            metrics.total_return = 0.2
