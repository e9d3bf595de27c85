"""Execution backends used by the PositionLedger.

``SimulatedExecution`` fills at the reference price plus bounded random
slippage drawn from an injected ``random.Random``. A real order router would
implement ``ExecutionBackend`` and report ``simulated=False``.
"""
import asyncio
import random
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import structlog

from basket_trader.core.config import execution_config
from basket_trader.core.exceptions import ExecutionFailure
from basket_trader.core.models import ExecutionResult, TradeAction

logger = structlog.get_logger(__name__)


class ExecutionBackend(ABC):
    """Places an order and reports the fill."""

    simulated: bool = True

    @abstractmethod
    async def execute(
        self,
        token: str,
        action: TradeAction,
        quantity: Decimal,
        reference_price: Decimal
    ) -> ExecutionResult:
        """
        Execute ``quantity`` of ``token`` near ``reference_price``.

        Returns:
            ExecutionResult; ``success=False`` for a rejected order

        Raises:
            ExecutionFailure: If the backend cannot be reached
        """


class SimulatedExecution(ExecutionBackend):
    """Fills every order with uniform slippage in ``[-slippage, +slippage]``."""

    def __init__(
        self,
        slippage_pct: Optional[float] = None,
        rng: Optional[random.Random] = None,
        latency_seconds: float = 0.0
    ):
        self.slippage_pct = execution_config.slippage_pct if slippage_pct is None else slippage_pct
        if not 0 <= self.slippage_pct <= 0.02:
            raise ValueError("Slippage must be between 0 and 2%")
        self.rng = rng or random.Random(execution_config.random_seed)
        self.latency_seconds = latency_seconds

    async def execute(
        self,
        token: str,
        action: TradeAction,
        quantity: Decimal,
        reference_price: Decimal
    ) -> ExecutionResult:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        slippage = Decimal(str(self.rng.uniform(-self.slippage_pct, self.slippage_pct)))
        price = reference_price * (Decimal("1") + slippage)

        logger.debug(
            "execution.simulated_fill",
            token=token,
            action=action.value,
            quantity=str(quantity),
            reference_price=str(reference_price),
            price=str(price),
        )
        return ExecutionResult(
            success=True,
            price=price,
            transaction_id=f"sim_{uuid4().hex[:12]}",
            simulated=True,
        )


class FixedSlippageExecution(ExecutionBackend):
    """Deterministic fills at ``reference_price * (1 + slippage)``.

    ``fail_tokens`` lists tokens whose orders are rejected; ``raise_tokens``
    lists tokens whose orders raise ExecutionFailure.
    """

    def __init__(
        self,
        slippage: Decimal = Decimal("0"),
        fail_tokens: Optional[set] = None,
        raise_tokens: Optional[set] = None,
        simulated: bool = True
    ):
        self.slippage = slippage
        self.fail_tokens = set(fail_tokens or ())
        self.raise_tokens = set(raise_tokens or ())
        self.simulated = simulated
        self.calls = 0

    async def execute(
        self,
        token: str,
        action: TradeAction,
        quantity: Decimal,
        reference_price: Decimal
    ) -> ExecutionResult:
        self.calls += 1
        if token in self.raise_tokens:
            raise ExecutionFailure("Backend unreachable", token=token, action=action.value)
        if token in self.fail_tokens:
            return ExecutionResult(
                success=False, error="Order rejected", simulated=self.simulated
            )
        return ExecutionResult(
            success=True,
            price=reference_price * (Decimal("1") + self.slippage),
            transaction_id=f"fixed_{self.calls}",
            simulated=self.simulated,
        )
