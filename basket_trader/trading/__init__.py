"""Live position lifecycle management."""

from basket_trader.trading.ledger import PositionLedger

__all__ = ['PositionLedger']
