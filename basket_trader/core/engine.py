"""Main trading engine - orchestrates all components."""
import asyncio
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import structlog

from basket_trader.core.config import LoopConfig
from basket_trader.core.exceptions import DataUnavailable, ExecutionFailure, InvariantViolation
from basket_trader.core.models import (CloseReason, Position, RebalanceInstruction,
                                       RiskStatus, Signal, TradeAction)
from basket_trader.exchange.price_oracle import PriceOracle
from basket_trader.portfolio.controller import PortfolioController
from basket_trader.risk.position_sizer import QUANTITY_STEP, PositionSizer
from basket_trader.risk.risk_manager import RiskGate
from basket_trader.strategies.base import BaseSignalSource
from basket_trader.trading.ledger import PositionLedger

if TYPE_CHECKING:
    from basket_trader.storage.database import Database

logger = structlog.get_logger(__name__)


class TradingEngine:
    """
    Main trading engine that orchestrates all components.

    Responsibilities:
    - Polls signal sources and pushes signals through sizing and risk checks
    - Opens and closes positions through the ledger
    - Mirrors every fill into the portfolio
    - Runs the monitoring cycle (risk assessment, exit evaluation)
    - Halts everything on emergency stop
    """

    def __init__(
        self,
        risk_gate: RiskGate,
        sizer: PositionSizer,
        ledger: PositionLedger,
        portfolio: PortfolioController,
        oracle: PriceOracle,
        signal_sources: List[BaseSignalSource],
        database: Optional["Database"] = None,
        loop_config: Optional[LoopConfig] = None,
    ):
        self.risk_gate = risk_gate
        self.sizer = sizer
        self.ledger = ledger
        self.portfolio = portfolio
        self.oracle = oracle
        self.signal_sources = {s.name: s for s in signal_sources}
        self.database = database
        self.loop_config = loop_config or LoopConfig()

        self.signal_timeout_seconds = ledger.config.signal_timeout_seconds

        # Control
        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

        # Stats
        self.trading_iterations = 0
        self.monitoring_iterations = 0
        self.last_trading_run: Optional[datetime] = None
        self.last_monitoring_run: Optional[datetime] = None
        self.started_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self):
        """Start the trading and monitoring loops."""
        logger.info("engine.starting")

        await self.load_state()
        await self.portfolio.reconcile()
        await self.risk_gate.initialize(self.portfolio.total_value)

        self._running = True
        self._stop_event.clear()
        self.started_at = datetime.utcnow()
        self._tasks = [
            asyncio.create_task(self._trading_loop(), name="trading_loop"),
            asyncio.create_task(self._monitoring_loop(), name="monitoring_loop"),
        ]

        logger.info(
            "engine.started",
            total_value=str(self.portfolio.total_value),
            sources=list(self.signal_sources.keys()),
            simulated=self.ledger.simulated,
        )

    async def stop(self):
        """Stop the trading engine gracefully."""
        logger.info("engine.stopping")
        self._halt()

        current = asyncio.current_task()
        for task in self._tasks:
            if task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        await self._save_state()
        logger.info("engine.stopped")

    async def wait(self):
        """Block until both loops have finished."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _halt(self):
        self._running = False
        self._stop_event.set()

    async def _sleep(self, seconds: float):
        """Sleep that returns early when the engine is halted."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _trading_loop(self):
        while self._running:
            try:
                await self.run_trading_iteration()
            except Exception as e:
                logger.error("engine.trading_loop_error", error=str(e))
                await self._sleep(self.loop_config.error_backoff_seconds)
                continue
            await self._sleep(self.loop_config.trading_interval_seconds)

    async def _monitoring_loop(self):
        while self._running:
            try:
                await self.run_monitoring_iteration()
            except Exception as e:
                logger.error("engine.monitoring_loop_error", error=str(e))
                await self._sleep(self.loop_config.error_backoff_seconds)
                continue
            await self._sleep(self.loop_config.monitoring_interval_seconds)

    # =========================================================================
    # Trading
    # =========================================================================

    def _tokens(self) -> List[str]:
        tokens: List[str] = []
        for source in self.signal_sources.values():
            for token in source.tokens:
                if token not in tokens:
                    tokens.append(token)
        return tokens

    async def run_trading_iteration(self) -> List[Position]:
        """
        Poll every active source for every token and act on the signals.

        A token whose source or price feed is unavailable, or whose signal fails
        while being acted on, is skipped for this iteration; the remaining
        tokens are still processed.

        Returns:
            Positions opened or closed during the iteration
        """
        touched: List[Position] = []
        if self.risk_gate.emergency_stop:
            logger.warning("engine.trading_halted", reason=self.risk_gate.emergency_reason)
            return touched

        for token in self._tokens():
            for source in list(self.signal_sources.values()):
                if not source.is_active or token not in source.tokens:
                    continue

                try:
                    signal = await asyncio.wait_for(
                        source.get_signal(token), timeout=self.signal_timeout_seconds
                    )
                except (DataUnavailable, asyncio.TimeoutError) as e:
                    logger.warning("engine.signal_unavailable", source=source.name, token=token, error=str(e))
                    continue
                except Exception as e:
                    logger.error("engine.signal_error", source=source.name, token=token, error=str(e))
                    continue

                if signal is None:
                    continue

                try:
                    position = await self.process_signal(signal, source)
                except Exception as e:
                    logger.error(
                        "engine.signal_processing_failed",
                        source=source.name, token=token, error=str(e), error_type=type(e).__name__
                    )
                    continue
                if position is not None:
                    touched.append(position)

        await self.portfolio.reconcile()
        self.risk_gate.update_portfolio_value(self.portfolio.total_value)

        self.trading_iterations += 1
        self.last_trading_run = datetime.utcnow()
        return touched

    async def process_signal(self, signal: Signal, source: BaseSignalSource) -> Optional[Position]:
        """Route one signal: sells close the open long, buys are sized, checked and opened."""
        logger.info(
            "engine.signal_received",
            source=source.name,
            token=signal.token,
            action=signal.action.value,
            confidence=signal.confidence,
        )

        existing = self.ledger.get_open_position(signal.token)

        if signal.action == TradeAction.SELL:
            if existing is None or existing.action != TradeAction.BUY:
                logger.warning("engine.no_position", token=signal.token)
                return None
            closed = await self.ledger.close(existing.id, CloseReason.SIGNAL)
            await self._on_position_closed(closed, source)
            return closed

        if existing is not None:
            logger.info("engine.position_exists", token=signal.token, position_id=existing.id)
            return None

        decision = self.sizer.size(signal, self.portfolio.total_value, available_cash=self.portfolio.cash)
        if decision.is_zero:
            logger.warning("engine.zero_quantity", token=signal.token)
            return None

        check = self.risk_gate.validate(self.sizer.candidate(signal, decision))
        if not check.passed:
            logger.warning(
                "engine.signal_rejected",
                token=signal.token,
                reason=check.reason,
                rule=check.rule_triggered,
            )
            return None

        stop_loss = signal.stop_loss or self.risk_gate.calculate_stop_loss(
            signal.current_price, signal.risk_level, signal.action
        )
        take_profit = signal.target_price or self.risk_gate.calculate_take_profit(
            signal.current_price, signal.risk_level, signal.action
        )

        position = await self.ledger.open(
            signal, decision.quantity, stop_loss=stop_loss, take_profit=take_profit
        )
        if position.is_open:
            await self.portfolio.apply_fill(position.token, position.action, position.quantity, position.entry_price)
            await source.on_position_opened(position.token, position.quantity, position.entry_price)
        return position

    async def _on_position_closed(self, position: Position, source: Optional[BaseSignalSource] = None):
        """Mirror a ledger close into the portfolio and notify the originating source."""
        if position.token in self.portfolio.holdings:
            held = self.portfolio.holdings[position.token].amount
            await self.portfolio.apply_fill(
                position.token,
                position.action.opposite,
                min(position.quantity, held),
                position.close_price,
            )
        else:
            logger.warning("engine.holding_missing", token=position.token, position_id=position.id)

        source = source or self.signal_sources.get(position.signal.source or "")
        if source is not None:
            await source.on_position_closed(position.token, position.realized_pnl or Decimal("0"))

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def run_monitoring_iteration(self) -> RiskStatus:
        """
        Reassess portfolio risk and evaluate exits.

        Triggers the emergency stop when the risk status is CRITICAL.
        """
        await self.portfolio.reconcile()

        known_alerts = {a.id for a in self.risk_gate.alerts}
        await self.risk_gate.assess_portfolio(self.portfolio.risk_snapshot())
        if self.database is not None:
            for alert in self.risk_gate.alerts:
                if alert.id not in known_alerts:
                    await self.database.save_alert(alert)

        for position in await self.ledger.evaluate_exits():
            await self._on_position_closed(position)
        await self.ledger.update_position_metrics()

        status = self.risk_gate.get_risk_status()
        if status == RiskStatus.CRITICAL and not self.risk_gate.emergency_stop:
            await self.emergency_stop("Risk status CRITICAL")

        if self.database is not None:
            await self.portfolio.save_snapshot()

        self.monitoring_iterations += 1
        self.last_monitoring_run = datetime.utcnow()
        return status

    async def emergency_stop(self, reason: str = "Manual emergency stop") -> List[Position]:
        """
        Halt both loops, block new trades and close every open position.

        Returns:
            The positions that were closed
        """
        logger.critical("engine.emergency_stop", reason=reason)
        self._halt()

        await self.risk_gate.trigger_emergency_stop(reason)
        closed = await self.ledger.emergency_close_all(reason)
        for position in closed:
            await self._on_position_closed(position)

        try:
            await self.portfolio.reconcile()
        except InvariantViolation as e:
            logger.error("engine.reconcile_failed", error=str(e))

        if self.database is not None:
            for alert in self.risk_gate.alerts:
                await self.database.save_alert(alert)
        return closed

    # =========================================================================
    # Rebalancing
    # =========================================================================

    async def rebalance(self) -> Dict[str, List[str]]:
        """Trade the portfolio back to its target allocation."""
        if self.risk_gate.emergency_stop:
            logger.warning("engine.rebalance_blocked", reason=self.risk_gate.emergency_reason)
            return {"executed": [], "failed": []}
        return await self.portfolio.rebalance(self._execute_rebalance)

    async def _execute_rebalance(self, instruction: RebalanceInstruction):
        price = await asyncio.wait_for(
            self.oracle.get_current_price(instruction.token),
            timeout=self.ledger.config.price_timeout_seconds,
        )
        quantity = (instruction.amount_usd / price).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
        if instruction.action == TradeAction.SELL:
            holding = self.portfolio.holdings.get(instruction.token)
            quantity = min(quantity, holding.amount if holding else Decimal("0"))
        if quantity <= 0:
            return

        result = await asyncio.wait_for(
            self.ledger.executor.execute(instruction.token, instruction.action, quantity, price),
            timeout=self.ledger.config.execution_timeout_seconds,
        )
        if not result.success:
            raise ExecutionFailure(
                f"Rebalance {instruction.action.value} failed: {result.error}",
                token=instruction.token,
                action=instruction.action.value,
            )
        await self.portfolio.apply_fill(instruction.token, instruction.action, quantity, result.price)

    # =========================================================================
    # State
    # =========================================================================

    async def load_state(self):
        """Load state from database."""
        if self.database is None:
            return

        snapshot = await self.database.get_latest_snapshot()
        if snapshot is not None and 'cash' in snapshot:
            self.portfolio.cash = Decimal(str(snapshot['cash']))

        await self.portfolio.load_target_allocation()
        await self.ledger.load_state()

        # Rebuild holdings from the ledger's open longs
        for position in self.ledger.get_active_positions():
            if position.action == TradeAction.BUY and position.token not in self.portfolio.holdings:
                await self.portfolio.add_position(
                    position.token, position.quantity, position.entry_price, position.current_price
                )

        logger.info("engine.state_loaded", positions=len(self.ledger.active_positions))

    async def _save_state(self):
        """Save state to database."""
        if self.database is None:
            return
        await self.portfolio.save_snapshot()
        await self.portfolio.save_target_allocation()
        logger.info("engine.state_saved")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_portfolio_summary(self) -> Dict[str, Any]:
        return self.portfolio.get_portfolio_summary()

    def get_risk_assessment(self) -> Dict[str, Any]:
        return {
            **self.risk_gate.get_risk_assessment(),
            'portfolio': self.portfolio.get_risk_assessment(),
        }

    def get_trading_status(self) -> Dict[str, Any]:
        return {
            **self.ledger.get_status(),
            'history': [r.model_dump(mode="json") for r in self.ledger.get_trading_history(limit=20)],
        }

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        return {
            'running': self._running,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'emergency_stop': self.risk_gate.emergency_stop,
            'risk_status': self.risk_gate.get_risk_status().value,
            'trading_iterations': self.trading_iterations,
            'monitoring_iterations': self.monitoring_iterations,
            'last_trading_run': self.last_trading_run.isoformat() if self.last_trading_run else None,
            'last_monitoring_run': self.last_monitoring_run.isoformat() if self.last_monitoring_run else None,
            'portfolio': self.portfolio.get_status(),
            'trading': self.ledger.get_status(),
            'sources': {
                name: source.get_stats()
                for name, source in self.signal_sources.items()
            },
        }
