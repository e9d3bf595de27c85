"""Position ledger - owns the lifecycle of every live position.

The ledger is a single-writer aggregate: opening, closing, exit evaluation
and emergency liquidation all run under one ``asyncio.Lock`` so the trading
and monitoring loops cannot lose each other's updates.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import numpy as np
import structlog

from basket_trader.core.config import ExecutionConfig, execution_config
from basket_trader.core.exceptions import DataUnavailable, ExecutionFailure, InvariantViolation
from basket_trader.core.models import (
    CloseReason,
    ExecutionResult,
    LedgerPerformance,
    Position,
    PositionStatus,
    RiskTier,
    Signal,
    TradeAction,
    TradeRecord,
)
from basket_trader.exchange.execution import ExecutionBackend
from basket_trader.exchange.price_oracle import PriceOracle

if TYPE_CHECKING:
    from basket_trader.storage.database import Database

logger = structlog.get_logger(__name__)


class PositionLedger:
    """
    Tracks open positions, executes entries and exits, and keeps the
    trading history and running performance figures.

    Responsibilities:
    - Executes opening and closing orders through the ExecutionBackend
    - Evaluates stop-loss, take-profit and trailing-stop exits
    - Computes realized and unrealized P&L
    - Enforces one open position per token
    """

    def __init__(
        self,
        oracle: PriceOracle,
        executor: ExecutionBackend,
        database: Optional["Database"] = None,
        config: Optional[ExecutionConfig] = None
    ):
        self.oracle = oracle
        self.executor = executor
        self.database = database
        self.config = config or execution_config

        # State
        self.positions: Dict[str, Position] = {}
        self.active_positions: Dict[str, str] = {}  # token -> position id
        self.pending_orders: Dict[str, Position] = {}
        self.trading_history: List[TradeRecord] = []
        self.performance = LedgerPerformance()

        self._lock = asyncio.Lock()

    @property
    def simulated(self) -> bool:
        return self.executor.simulated

    # =========================================================================
    # Opening
    # =========================================================================

    async def open(
        self,
        signal: Signal,
        quantity: Decimal,
        stop_loss: Optional[Decimal] = None,
        take_profit: Optional[Decimal] = None,
        trailing_stop_distance: Optional[Decimal] = None
    ) -> Position:
        """
        Execute ``signal`` for ``quantity`` units and track the result.

        Stop-loss and take-profit default to the signal's ``stop_loss`` and
        ``target_price``. A failed execution is recorded on the returned
        position as ``status=failed``; it is never raised.

        Raises:
            InvariantViolation: If the token already has an open position
            ValueError: If quantity is not positive
        """
        if quantity <= 0:
            raise ValueError("Position quantity must be positive")

        async with self._lock:
            if signal.token in self.active_positions:
                raise InvariantViolation(
                    f"Token {signal.token} already has open position "
                    f"{self.active_positions[signal.token]}"
                )

            position = Position(
                signal=signal,
                quantity=quantity,
                stop_loss=stop_loss if stop_loss is not None else signal.stop_loss,
                take_profit=take_profit if take_profit is not None else signal.target_price,
                trailing_stop_distance=self._trailing_distance(signal, trailing_stop_distance),
            )

            self.pending_orders[position.id] = position
            try:
                result = await self._execute(signal.token, signal.action, quantity, signal.current_price)
            finally:
                self.pending_orders.pop(position.id, None)

            if result.success:
                position.transition_to(
                    PositionStatus.SIMULATED if result.simulated else PositionStatus.EXECUTED
                )
                position.entry_price = result.price
                position.transaction_id = result.transaction_id
                position.mark_to_market(result.price)
                if position.trailing_stop_distance:
                    position.trailing_stop_price = self._trailing_level(position, result.price)
                self.active_positions[signal.token] = position.id
            else:
                position.transition_to(PositionStatus.FAILED)
                position.error = result.error

            self.positions[position.id] = position
            record = TradeRecord(
                position_id=position.id,
                token=signal.token,
                action=signal.action,
                kind="open",
                quantity=quantity,
                reference_price=signal.current_price,
                execution_price=result.price,
                status=position.status,
                reason=signal.reason,
                simulated=result.simulated,
            )
            self.trading_history.append(record)
            self._refresh_performance()
            await self._persist(position, record)

        if result.success:
            logger.info(
                "ledger.position_opened",
                position_id=position.id,
                token=signal.token,
                action=signal.action.value,
                quantity=str(quantity),
                entry_price=str(position.entry_price),
                stop_loss=str(position.stop_loss) if position.stop_loss else None,
                take_profit=str(position.take_profit) if position.take_profit else None,
                simulated=result.simulated,
            )
        else:
            logger.error(
                "ledger.execution_failed",
                position_id=position.id,
                token=signal.token,
                error=result.error,
            )
        return position

    def _trailing_distance(self, signal: Signal, explicit: Optional[Decimal]) -> Optional[Decimal]:
        if explicit is not None:
            return explicit if explicit > 0 else None
        if signal.trailing_stop is not None:
            return signal.trailing_stop
        if self.config.trailing_stop_distance > 0:
            return Decimal(str(self.config.trailing_stop_distance))
        return None

    @staticmethod
    def _trailing_level(position: Position, price: Decimal) -> Decimal:
        distance = position.trailing_stop_distance
        if position.action == TradeAction.BUY:
            return price * (Decimal("1") - distance)
        return price * (Decimal("1") + distance)

    # =========================================================================
    # Exit Evaluation
    # =========================================================================

    async def evaluate_exits(self) -> List[Position]:
        """
        Check every open position against its exit triggers.

        Priority: stop-loss, take-profit, trailing stop. A position whose
        price is unavailable or whose closing execution fails stays open.

        Returns:
            Positions closed during this pass
        """
        closed: List[Position] = []

        async with self._lock:
            for token, position_id in list(self.active_positions.items()):
                position = self.positions[position_id]

                try:
                    price = await self._get_price(token)
                except DataUnavailable as e:
                    logger.warning("ledger.price_unavailable", token=token, error=str(e))
                    continue

                position.mark_to_market(price)
                reason = self._check_exit(position, price)
                if reason is None:
                    continue

                try:
                    closed.append(await self._close_locked(position, reason, price))
                except ExecutionFailure as e:
                    logger.error(
                        "ledger.exit_failed",
                        position_id=position.id,
                        token=token,
                        reason=reason.value,
                        error=str(e),
                    )

        return closed

    def _check_exit(self, position: Position, price: Decimal) -> Optional[CloseReason]:
        is_buy = position.action == TradeAction.BUY

        if position.stop_loss is not None:
            if (is_buy and price <= position.stop_loss) or (not is_buy and price >= position.stop_loss):
                logger.info(
                    "ledger.stop_loss_triggered",
                    token=position.token, price=str(price), stop_loss=str(position.stop_loss)
                )
                return CloseReason.STOP_LOSS

        if position.take_profit is not None:
            if (is_buy and price >= position.take_profit) or (not is_buy and price <= position.take_profit):
                logger.info(
                    "ledger.take_profit_triggered",
                    token=position.token, price=str(price), take_profit=str(position.take_profit)
                )
                return CloseReason.TAKE_PROFIT

        if position.trailing_stop_distance:
            self._ratchet_trailing_stop(position, price)
            level = position.trailing_stop_price
            if level is not None and ((is_buy and price <= level) or (not is_buy and price >= level)):
                logger.info(
                    "ledger.trailing_stop_triggered",
                    token=position.token, price=str(price), trailing_stop=str(level)
                )
                return CloseReason.TRAILING_STOP

        return None

    def _ratchet_trailing_stop(self, position: Position, price: Decimal) -> None:
        """Move the trailing stop in the favorable direction only."""
        candidate = self._trailing_level(position, price)
        current = position.trailing_stop_price

        if current is None:
            position.trailing_stop_price = candidate
        elif position.action == TradeAction.BUY and candidate > current:
            position.trailing_stop_price = candidate
        elif position.action == TradeAction.SELL and candidate < current:
            position.trailing_stop_price = candidate
        else:
            return

        logger.debug(
            "ledger.trailing_stop_updated",
            token=position.token,
            trailing_stop=str(position.trailing_stop_price)
        )

    # =========================================================================
    # Closing
    # =========================================================================

    async def close(self, position_id: str, reason: CloseReason = CloseReason.MANUAL) -> Position:
        """
        Close an open position at the current market price.

        Raises:
            InvariantViolation: If the position is unknown or not open
            DataUnavailable: If no current price is available
            ExecutionFailure: If the closing execution fails; the position stays open
        """
        async with self._lock:
            position = self.positions.get(position_id)
            if position is None or not position.is_open:
                raise InvariantViolation(f"Position {position_id} is not open")

            price = await self._get_price(position.token)
            return await self._close_locked(position, reason, price)

    async def _close_locked(self, position: Position, reason: CloseReason, price: Decimal) -> Position:
        closing_signal = Signal(
            token=position.token,
            action=position.action.opposite,
            current_price=price,
            confidence=1.0,
            risk_level=RiskTier.LOW,
            reason=reason.value,
            source="ledger",
        )

        result = await self._execute(
            closing_signal.token, closing_signal.action, position.quantity, price
        )
        if not result.success:
            raise ExecutionFailure(
                f"Failed to close position {position.id}: {result.error}",
                token=position.token,
                action=closing_signal.action.value,
            )

        exit_price = result.price
        pnl = position.calculate_pnl(exit_price)

        position.transition_to(PositionStatus.CLOSED)
        position.mark_to_market(exit_price)
        position.closed_at = datetime.utcnow()
        position.close_price = exit_price
        position.close_reason = reason
        position.realized_pnl = pnl
        position.unrealized_pnl = Decimal("0")
        position.metadata["closing_transaction_id"] = result.transaction_id

        self.active_positions.pop(position.token, None)

        record = TradeRecord(
            position_id=position.id,
            token=position.token,
            action=closing_signal.action,
            kind="close",
            quantity=position.quantity,
            reference_price=price,
            execution_price=exit_price,
            status=position.status,
            realized_pnl=pnl,
            reason=reason.value,
            simulated=result.simulated,
        )
        self.trading_history.append(record)
        self._refresh_performance()
        await self._persist(position, record)

        logger.info(
            "ledger.position_closed",
            position_id=position.id,
            token=position.token,
            reason=reason.value,
            exit_price=str(exit_price),
            realized_pnl=str(pnl),
        )
        return position

    async def emergency_close_all(self, reason: str = "emergency_stop") -> List[Position]:
        """
        Close every open position sequentially and cancel pending orders.

        Individual failures are logged and skipped.
        """
        logger.critical("ledger.emergency_close_all", reason=reason, open_positions=len(self.active_positions))
        closed: List[Position] = []

        async with self._lock:
            for token, position_id in list(self.active_positions.items()):
                position = self.positions[position_id]
                position.metadata["emergency_reason"] = reason
                try:
                    try:
                        price = await self._get_price(token)
                    except DataUnavailable:
                        price = position.current_price or position.entry_price
                    closed.append(await self._close_locked(position, CloseReason.EMERGENCY_STOP, price))
                except Exception as e:
                    logger.error(
                        "ledger.emergency_close_failed",
                        position_id=position_id,
                        token=token,
                        error=str(e),
                    )

            self.pending_orders.clear()

        logger.critical("ledger.emergency_close_complete", closed=len(closed))
        return closed

    # =========================================================================
    # Metrics
    # =========================================================================

    async def update_position_metrics(self) -> None:
        """Refresh current price and unrealized P&L of open positions."""
        async with self._lock:
            for token, position_id in list(self.active_positions.items()):
                try:
                    price = await self._get_price(token)
                except DataUnavailable as e:
                    logger.warning("ledger.price_unavailable", token=token, error=str(e))
                    continue
                self.positions[position_id].mark_to_market(price)

    def get_performance_metrics(self) -> LedgerPerformance:
        """Recompute performance wholesale from the positions and history."""
        self._refresh_performance()
        return self.performance

    def _refresh_performance(self) -> None:
        closed = [p for p in self.positions.values() if p.status == PositionStatus.CLOSED]
        pnls = [p.realized_pnl or Decimal("0") for p in closed]
        winning = len([pnl for pnl in pnls if pnl > 0])

        sharpe = 0.0
        if len(pnls) >= 2:
            values = np.array([float(pnl) for pnl in pnls])
            std = values.std()
            if std > 0:
                sharpe = float(values.mean() / std)

        self.performance = LedgerPerformance(
            total_trades=len(self.trading_history),
            closed_trades=len(closed),
            winning_trades=winning,
            total_profit=sum(pnls, Decimal("0")),
            win_rate=winning / len(closed) if closed else 0.0,
            sharpe_ratio=sharpe,
            active_positions=len(self.active_positions),
            pending_orders=len(self.pending_orders),
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_active_positions(self) -> List[Position]:
        return [self.positions[pid] for pid in self.active_positions.values()]

    def get_open_position(self, token: str) -> Optional[Position]:
        position_id = self.active_positions.get(token)
        return self.positions.get(position_id) if position_id else None

    def get_position(self, position_id: str) -> Optional[Position]:
        return self.positions.get(position_id)

    def get_trading_history(self, limit: int = 50) -> List[TradeRecord]:
        return self.trading_history[-limit:]

    def open_exposure(self) -> Decimal:
        """Notional of open positions at their last marked price."""
        return sum(
            (p.current_price or p.entry_price or Decimal("0")) * p.quantity
            for p in self.get_active_positions()
        )

    def get_status(self) -> Dict[str, Any]:
        """Get current ledger status."""
        performance = self.get_performance_metrics()
        return {
            'simulated': self.simulated,
            'active_positions': len(self.active_positions),
            'pending_orders': len(self.pending_orders),
            'total_trades': performance.total_trades,
            'positions': {
                p.token: {
                    'id': p.id,
                    'action': p.action.value,
                    'quantity': str(p.quantity),
                    'entry_price': str(p.entry_price),
                    'unrealized_pnl': str(p.unrealized_pnl),
                }
                for p in self.get_active_positions()
            },
            'performance': performance.model_dump(mode="json"),
        }

    # =========================================================================
    # Collaborators
    # =========================================================================

    async def _get_price(self, token: str) -> Decimal:
        try:
            return await asyncio.wait_for(
                self.oracle.get_current_price(token),
                timeout=self.config.price_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise DataUnavailable(f"Price lookup for {token} timed out", token=token) from e

    async def _execute(
        self,
        token: str,
        action: TradeAction,
        quantity: Decimal,
        reference_price: Decimal
    ) -> ExecutionResult:
        try:
            return await asyncio.wait_for(
                self.executor.execute(token, action, quantity, reference_price),
                timeout=self.config.execution_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("ledger.execution_timeout", token=token, action=action.value)
            return ExecutionResult(
                success=False, error="Execution timed out", simulated=self.executor.simulated
            )
        except ExecutionFailure as e:
            logger.error("ledger.execution_error", token=token, action=action.value, error=str(e))
            return ExecutionResult(success=False, error=str(e), simulated=self.executor.simulated)

    async def _persist(self, position: Position, record: TradeRecord) -> None:
        if self.database is None:
            return
        await self.database.save_position(position)
        await self.database.append_trade(record)

    async def load_state(self) -> int:
        """Restore open positions from the database."""
        if self.database is None:
            return 0

        async with self._lock:
            positions = await self.database.get_open_positions()
            for position in positions:
                self.positions[position.id] = position
                self.active_positions[position.token] = position.id
            self._refresh_performance()

        logger.info("ledger.state_loaded", positions=len(positions))
        return len(positions)
