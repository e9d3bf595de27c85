"""Position sizer - turns a signal into a concrete order quantity.

The fraction of portfolio value comes from the RiskGate sizing advisor, so
every size produced here is already bounded by the RiskGate limits.
"""
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional

import structlog

from basket_trader.core.models import Signal
from basket_trader.risk.risk_manager import RiskGate, TradeCandidate

logger = structlog.get_logger(__name__)

QUANTITY_STEP = Decimal("0.00000001")


@dataclass(frozen=True)
class SizingDecision:
    """Sizing outcome for one signal.

    Attributes:
        fraction: Fraction of portfolio value allocated
        position_value_usd: Notional of the order
        quantity: Order size in token units (rounded down)
    """
    fraction: Decimal
    position_value_usd: Decimal
    quantity: Decimal

    @property
    def is_zero(self) -> bool:
        return self.quantity <= 0


ZERO_DECISION = SizingDecision(Decimal("0"), Decimal("0"), Decimal("0"))


class PositionSizer:
    """Sizes orders from the RiskGate advisor."""

    # Keep part of cash unallocated for slippage
    CASH_BUFFER = Decimal("0.95")

    def __init__(self, risk_gate: RiskGate):
        self.risk_gate = risk_gate

    def size(
        self,
        signal: Signal,
        portfolio_value: Decimal,
        available_cash: Optional[Decimal] = None
    ) -> SizingDecision:
        """
        Size a position for ``signal``.

        Args:
            signal: Signal to size
            portfolio_value: Total portfolio value in USD
            available_cash: If given, the notional is capped at 95% of it

        Returns:
            SizingDecision; zero when price or portfolio value is not positive
        """
        if portfolio_value <= 0 or signal.current_price <= 0:
            return ZERO_DECISION

        fraction = self.risk_gate.suggest_size(signal, portfolio_value)
        position_value = portfolio_value * fraction

        if available_cash is not None:
            position_value = min(position_value, max(available_cash, Decimal("0")) * self.CASH_BUFFER)

        # Round down to avoid over-sizing
        quantity = (position_value / signal.current_price).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)

        logger.debug(
            "position_sizer.sized",
            token=signal.token,
            fraction=str(fraction),
            position_value=str(position_value),
            quantity=str(quantity)
        )
        return SizingDecision(fraction=fraction, position_value_usd=position_value, quantity=quantity)

    def candidate(self, signal: Signal, decision: SizingDecision) -> TradeCandidate:
        """Build the RiskGate candidate for a sized signal."""
        return TradeCandidate(
            token=signal.token,
            position_value_usd=decision.position_value_usd,
            signal=signal
        )
