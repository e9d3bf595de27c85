"""Risk management module for the basket trader.

This module provides:
- Ordered, short-circuiting trade validation (RiskGate)
- Portfolio assessment with WARNING/CRITICAL alerts
- Confidence and risk-tier based position sizing with a Kelly cap
- Emergency stop functionality
"""

from basket_trader.risk.risk_manager import (
    AlertNotifier,
    RiskCheck,
    RiskGate,
    RiskRule,
    TradeCandidate,
)
from basket_trader.risk.position_sizer import PositionSizer, SizingDecision

__all__ = [
    'AlertNotifier',
    'RiskCheck',
    'RiskGate',
    'RiskRule',
    'TradeCandidate',
    'PositionSizer',
    'SizingDecision',
]
