"""Portfolio controller - target vs. current allocation and portfolio metrics.

Holdings are keyed by token and written only by this controller. After every
``reconcile()`` the holding allocations plus the cash allocation sum to 1.
"""
import asyncio
from decimal import Decimal
from itertools import combinations
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

import structlog

from basket_trader.core.config import (
    ALLOCATION_TOLERANCE,
    CASH,
    PortfolioConfig,
    validate_allocation,
)
from basket_trader.core.exceptions import DataUnavailable, InvariantViolation
from basket_trader.core.models import (
    Holding,
    PortfolioPerformance,
    PortfolioRiskMetrics,
    PortfolioRiskSnapshot,
    RebalanceInstruction,
    TradeAction,
)
from basket_trader.exchange.price_oracle import PriceOracle

if TYPE_CHECKING:
    from basket_trader.storage.database import Database

logger = structlog.get_logger(__name__)

RebalanceExecutor = Callable[[RebalanceInstruction], Awaitable[Any]]

TARGET_ALLOCATION_KEY = "target_allocation"


# =============================================================================
# Static Coefficient Tables
# =============================================================================

TOKEN_BETAS: Dict[str, float] = {"SOL": 1.0, "BONK": 2.5, "WIF": 1.8, "PEPE": 3.0}
DEFAULT_BETA = 1.0

TOKEN_VOLATILITIES: Dict[str, float] = {"SOL": 0.3, "BONK": 0.8, "WIF": 0.6, "PEPE": 1.2}
DEFAULT_VOLATILITY = 0.5

TOKEN_CORRELATIONS: Dict[frozenset, float] = {
    frozenset({"SOL", "BONK"}): 0.3,
    frozenset({"SOL", "WIF"}): 0.4,
    frozenset({"SOL", "PEPE"}): 0.2,
    frozenset({"BONK", "WIF"}): 0.6,
    frozenset({"BONK", "PEPE"}): 0.8,
    frozenset({"WIF", "PEPE"}): 0.5,
}
DEFAULT_CORRELATION = 0.1

# Fraction of a position assumed hard to exit quickly
TOKEN_LIQUIDITY_RISK: Dict[str, float] = {"SOL": 0.01, "BONK": 0.08, "WIF": 0.06, "PEPE": 0.10}
DEFAULT_LIQUIDITY_RISK = 0.05

# Optimizer inputs (annual expected return, volatility)
EXPECTED_RETURNS: Dict[str, float] = {"SOL": 0.10, "BONK": 0.30, "WIF": 0.25, CASH: 0.05}
OPTIMIZER_VOLATILITIES: Dict[str, float] = {"SOL": 0.3, "BONK": 0.8, "WIF": 0.6, CASH: 0.0}
MIN_OPTIMIZER_VOLATILITY = 0.01

RISK_FREE_RATE = 0.05
Z_SCORE_95 = Decimal("1.645")
Z_SCORE_99 = Decimal("2.326")


class PortfolioController:
    """
    Owns cash, holdings and the target allocation.

    Responsibilities:
    - Revalues holdings from the PriceOracle
    - Computes rebalancing instructions against the target allocation
    - Aggregates performance and risk metrics from static coefficient tables
    - Runs the simplified mean-variance allocation optimizer
    """

    def __init__(
        self,
        oracle: PriceOracle,
        config: Optional[PortfolioConfig] = None,
        target_allocation: Optional[Dict[str, Decimal]] = None,
        initial_cash: Optional[Decimal] = None,
        database: Optional["Database"] = None,
        price_timeout_seconds: float = 5.0
    ):
        self.oracle = oracle
        self.config = config or PortfolioConfig()
        self.database = database
        self.price_timeout_seconds = price_timeout_seconds

        self.target_allocation = validate_allocation(
            dict(target_allocation if target_allocation is not None else self.config.target_allocation)
        )
        self.rebalance_threshold = Decimal(str(self.config.rebalance_threshold))

        self.cash: Decimal = initial_cash if initial_cash is not None else self.config.initial_cash
        self.holdings: Dict[str, Holding] = {}
        self.total_value: Decimal = self.cash
        self.cash_allocation_pct: Decimal = Decimal("1")

        self.performance = PortfolioPerformance()
        self.risk_metrics = PortfolioRiskMetrics()

        self._lock = asyncio.Lock()

    # =========================================================================
    # Holdings
    # =========================================================================

    async def add_position(
        self,
        token: str,
        amount: Decimal,
        entry_price: Decimal,
        current_price: Optional[Decimal] = None
    ) -> Holding:
        """Add (or replace) a holding without touching cash."""
        async with self._lock:
            holding = Holding(
                token=token,
                amount=amount,
                entry_price=entry_price,
                current_price=current_price if current_price is not None else entry_price,
            )
            holding.revalue(holding.current_price)
            self.holdings[token] = holding
            self._recalculate_totals()

        logger.info("portfolio.position_added", token=token, value=str(holding.value_usd))
        return holding

    async def remove_position(self, token: str) -> Optional[Holding]:
        async with self._lock:
            holding = self.holdings.pop(token, None)
            if holding is not None:
                self._recalculate_totals()
        if holding is not None:
            logger.info("portfolio.position_removed", token=token)
        return holding

    async def apply_fill(self, token: str, action: TradeAction, quantity: Decimal, price: Decimal) -> None:
        """
        Mirror an execution into cash and holdings.

        Buys average into the entry price; sells reduce the amount and drop
        the holding once it is empty. Waits for any reconcile in progress.

        Raises:
            InvariantViolation: If a sell exceeds the held amount
        """
        async with self._lock:
            notional = quantity * price
            holding = self.holdings.get(token)

            if action == TradeAction.BUY:
                if holding is None:
                    holding = Holding(token=token, amount=quantity, entry_price=price, current_price=price)
                    self.holdings[token] = holding
                else:
                    total_cost = holding.entry_price * holding.amount + notional
                    holding.amount += quantity
                    holding.entry_price = total_cost / holding.amount
                holding.revalue(price)
                self.cash -= notional
            else:
                if holding is None or quantity > holding.amount:
                    held = holding.amount if holding else Decimal("0")
                    raise InvariantViolation(f"Cannot sell {quantity} {token}, holding {held}")
                holding.amount -= quantity
                self.cash += notional
                if holding.amount == 0:
                    del self.holdings[token]
                else:
                    holding.revalue(price)

            self._recalculate_totals()

        logger.info(
            "portfolio.fill_applied",
            token=token,
            action=action.value,
            quantity=str(quantity),
            price=str(price),
            cash=str(self.cash),
        )

    def _recalculate_totals(self) -> None:
        self.total_value = self.cash + sum(
            (h.value_usd for h in self.holdings.values()), Decimal("0")
        )

        if self.total_value > 0:
            for holding in self.holdings.values():
                holding.allocation_pct = holding.value_usd / self.total_value
            self.cash_allocation_pct = self.cash / self.total_value
        else:
            for holding in self.holdings.values():
                holding.allocation_pct = Decimal("0")
            self.cash_allocation_pct = Decimal("1")

    def allocation_sum(self) -> Decimal:
        return sum(
            (h.allocation_pct for h in self.holdings.values()), Decimal("0")
        ) + self.cash_allocation_pct

    # =========================================================================
    # Reconcile
    # =========================================================================

    async def reconcile(self) -> Dict[str, Any]:
        """
        Revalue holdings at the latest prices and recompute all metrics.

        A token whose price is unavailable keeps its last price. Fills wait
        until the reconcile finishes.

        Raises:
            InvariantViolation: If allocations no longer sum to 1
        """
        async with self._lock:
            for token, holding in list(self.holdings.items()):
                try:
                    price = await asyncio.wait_for(
                        self.oracle.get_current_price(token),
                        timeout=self.price_timeout_seconds
                    )
                except (DataUnavailable, asyncio.TimeoutError) as e:
                    logger.warning("portfolio.price_unavailable", token=token, error=str(e))
                    continue
                holding.revalue(price)

            self._recalculate_totals()

            total = self.allocation_sum()
            if abs(total - Decimal("1")) > ALLOCATION_TOLERANCE:
                raise InvariantViolation(f"Allocations sum to {total} after reconcile")

            self._update_performance()
            self._update_risk_metrics()

        logger.info(
            "portfolio.reconciled",
            total_value=str(self.total_value),
            cash=str(self.cash),
            holdings=len(self.holdings),
        )
        return self.get_portfolio_summary()

    def _update_performance(self) -> None:
        total_pnl = sum((h.unrealized_pnl for h in self.holdings.values()), Decimal("0"))
        total_return = float(total_pnl / self.total_value) if self.total_value > 0 else 0.0
        volatility = self.calculate_volatility()

        self.performance = PortfolioPerformance(
            total_return=total_return,
            daily_return=total_return * 0.1,
            weekly_return=total_return * 0.5,
            monthly_return=total_return,
            sharpe_ratio=(total_return - RISK_FREE_RATE) / volatility if volatility > 0 else 0.0,
            volatility=volatility,
        )

    def _update_risk_metrics(self) -> None:
        volatility = Decimal(str(self.performance.volatility))
        self.risk_metrics = PortfolioRiskMetrics(
            var_95=self.total_value * volatility * Z_SCORE_95,
            var_99=self.total_value * volatility * Z_SCORE_99,
            beta=self.calculate_beta(),
            correlation=self.calculate_correlation(),
        )

    # =========================================================================
    # Metric Calculations
    # =========================================================================

    def _weighted(self, table: Dict[str, float], default: float) -> float:
        return sum(
            table.get(h.token, default) * float(h.allocation_pct)
            for h in self.holdings.values()
        )

    def calculate_volatility(self) -> float:
        return self._weighted(TOKEN_VOLATILITIES, DEFAULT_VOLATILITY)

    def calculate_beta(self) -> float:
        return self._weighted(TOKEN_BETAS, DEFAULT_BETA)

    def calculate_liquidity_risk(self) -> float:
        return self._weighted(TOKEN_LIQUIDITY_RISK, DEFAULT_LIQUIDITY_RISK)

    def calculate_correlation(self) -> float:
        """Average pairwise correlation between held tokens."""
        pairs = list(combinations(self.holdings.keys(), 2))
        if not pairs:
            return 0.0
        total = sum(TOKEN_CORRELATIONS.get(frozenset(pair), DEFAULT_CORRELATION) for pair in pairs)
        return total / len(pairs)

    def calculate_diversification(self) -> float:
        """Herfindahl-based score: ``1 - sum(alloc^2)``; higher is more diversified."""
        herfindahl = sum(float(h.allocation_pct) ** 2 for h in self.holdings.values())
        return 1 - herfindahl

    def calculate_concentration(self) -> float:
        """Largest single holding allocation."""
        if not self.holdings:
            return 0.0
        return max(float(h.allocation_pct) for h in self.holdings.values())

    # =========================================================================
    # Rebalancing
    # =========================================================================

    def compute_rebalance(self) -> List[RebalanceInstruction]:
        """
        Instructions for every token whose allocation drifted past the threshold.

        CASH is the residual of the other trades and never gets an
        instruction of its own, so cash drift is corrected only through the
        buys and sells of the other tokens.
        """
        instructions: List[RebalanceInstruction] = []

        for token, target in self.target_allocation.items():
            if token == CASH:
                continue

            holding = self.holdings.get(token)
            current_allocation = holding.allocation_pct if holding else Decimal("0")
            if abs(current_allocation - target) <= self.rebalance_threshold:
                continue

            current_value = holding.value_usd if holding else Decimal("0")
            target_value = self.total_value * target
            difference = target_value - current_value

            instructions.append(RebalanceInstruction(
                token=token,
                action=TradeAction.BUY if difference > 0 else TradeAction.SELL,
                current_allocation=current_allocation,
                target_allocation=target,
                current_value=current_value,
                target_value=target_value,
                amount_usd=abs(difference),
            ))

        return instructions

    async def rebalance(self, executor: RebalanceExecutor) -> Dict[str, List[str]]:
        """
        Execute rebalancing instructions through ``executor``.

        Per-token failures are logged and do not stop the remaining trades.
        """
        instructions = self.compute_rebalance()
        executed: List[str] = []
        failed: List[str] = []

        if not instructions:
            logger.info("portfolio.already_balanced")
            return {"executed": executed, "failed": failed}

        for instruction in instructions:
            try:
                await executor(instruction)
                executed.append(instruction.token)
                logger.info(
                    "portfolio.rebalance_trade",
                    token=instruction.token,
                    action=instruction.action.value,
                    amount_usd=str(instruction.amount_usd),
                )
            except Exception as e:
                failed.append(instruction.token)
                logger.error("portfolio.rebalance_failed", token=instruction.token, error=str(e))

        await self.reconcile()
        return {"executed": executed, "failed": failed}

    def set_target_allocation(self, allocation: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """Replace the target allocation after validating it."""
        self.target_allocation = validate_allocation(dict(allocation))
        logger.info(
            "portfolio.target_allocation_set",
            allocation={k: str(v) for k, v in self.target_allocation.items()}
        )
        return self.target_allocation

    def optimize_allocation(self) -> Dict[str, Decimal]:
        """
        Simplified mean-variance optimizer.

        Weights each asset by its expected-return / volatility ratio and
        normalizes to 1. Advisory only: replaces the target allocation but
        places no trades.
        """
        ratios = {
            token: expected / max(OPTIMIZER_VOLATILITIES.get(token, DEFAULT_VOLATILITY), MIN_OPTIMIZER_VOLATILITY)
            for token, expected in EXPECTED_RETURNS.items()
        }
        total_ratio = sum(ratios.values())

        allocation = {
            token: Decimal(str(round(ratio / total_ratio, 8)))
            for token, ratio in ratios.items()
            if token != CASH
        }
        # Cash absorbs rounding so the allocation sums to exactly 1
        allocation[CASH] = Decimal("1") - sum(allocation.values(), Decimal("0"))

        logger.info("portfolio.allocation_optimized", allocation={k: str(v) for k, v in allocation.items()})
        return self.set_target_allocation(allocation)

    # =========================================================================
    # Risk Snapshot & Reporting
    # =========================================================================

    def risk_snapshot(self) -> PortfolioRiskSnapshot:
        """Inputs for ``RiskGate.assess_portfolio``."""
        return PortfolioRiskSnapshot(
            total_value=self.total_value,
            volatility=self.performance.volatility,
            var_95=self.risk_metrics.var_95,
            var_99=self.risk_metrics.var_99,
            correlation=self.risk_metrics.correlation,
            concentration=self.calculate_concentration(),
            liquidity_risk=self.calculate_liquidity_risk(),
        )

    def allocation_summary(self) -> Dict[str, Dict[str, Any]]:
        summary = {
            h.token: {
                'value': str(h.value_usd),
                'allocation': float(h.allocation_pct),
                'return_pct': h.return_pct,
            }
            for h in self.holdings.values()
        }
        summary[CASH] = {
            'value': str(self.cash),
            'allocation': float(self.cash_allocation_pct),
            'return_pct': 0.0,
        }
        return summary

    def get_portfolio_summary(self) -> Dict[str, Any]:
        return {
            'total_value': str(self.total_value),
            'cash': str(self.cash),
            'positions': [h.model_dump(mode="json") for h in self.holdings.values()],
            'performance': self.performance.model_dump(),
            'risk_metrics': self.risk_metrics.model_dump(mode="json"),
            'allocation': self.allocation_summary(),
            'target_allocation': {k: str(v) for k, v in self.target_allocation.items()},
        }

    def get_performance(self) -> Dict[str, Any]:
        return {
            **self.performance.model_dump(),
            'positions': len(self.holdings),
            'total_value': str(self.total_value),
            'cash': str(self.cash),
        }

    def get_risk_assessment(self) -> Dict[str, Any]:
        return {
            **self.risk_metrics.model_dump(mode="json"),
            'max_position_size': self.calculate_concentration(),
            'diversification': self.calculate_diversification(),
            'concentration': self.calculate_concentration(),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            'total_value': str(self.total_value),
            'positions': len(self.holdings),
            'performance': self.performance.model_dump(),
            'risk_metrics': self.risk_metrics.model_dump(mode="json"),
        }

    # =========================================================================
    # Persistence
    # =========================================================================

    async def save_snapshot(self) -> None:
        """Append the current portfolio summary to the snapshot history."""
        if self.database is None:
            return
        await self.database.save_snapshot(self.get_portfolio_summary())

    async def save_target_allocation(self) -> None:
        if self.database is None:
            return
        await self.database.set_config(
            TARGET_ALLOCATION_KEY, {k: str(v) for k, v in self.target_allocation.items()}
        )

    async def load_target_allocation(self) -> bool:
        """Restore a persisted target allocation; returns True if one was found."""
        if self.database is None:
            return False
        stored = await self.database.get_config(TARGET_ALLOCATION_KEY)
        if not stored:
            return False
        self.set_target_allocation({k: Decimal(v) for k, v in stored.items()})
        return True
