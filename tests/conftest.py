"""Pytest fixtures and utilities for the Basket Trader test suite."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from basket_trader.backtest.data_loader import bars_from_closes
from basket_trader.core.config import (
    AlertThresholdConfig,
    ExecutionConfig,
    PortfolioConfig,
    RiskLimitsConfig,
    SizingConfig,
)
from basket_trader.core.models import (
    MarketBar,
    RiskTier,
    Signal,
    TradeAction,
    create_buy_signal,
)
from basket_trader.exchange.execution import FixedSlippageExecution
from basket_trader.exchange.price_oracle import StaticPriceOracle
from basket_trader.portfolio.controller import PortfolioController
from basket_trader.risk.position_sizer import PositionSizer
from basket_trader.risk.risk_manager import RiskGate
from basket_trader.storage.database import Database
from basket_trader.trading.ledger import PositionLedger


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def risk_limits():
    """Default risk limits, independent of the environment."""
    return RiskLimitsConfig(
        max_position_size_pct=0.15,
        max_daily_loss_pct=0.05,
        max_drawdown_pct=0.20,
        max_correlation=0.7,
        max_volatility=0.8,
        min_liquidity_usd=Decimal("100"),
        max_concentration=0.50,
        stop_loss_pct=0.15,
        take_profit_pct=0.30,
    )


@pytest.fixture
def alert_thresholds():
    return AlertThresholdConfig(
        drawdown=0.10,
        daily_loss=0.03,
        volatility=0.60,
        correlation=0.60,
        concentration=0.20,
        liquidity=0.05,
        alert_window=100,
    )


@pytest.fixture
def sizing_config():
    return SizingConfig(base_fraction=0.02)


@pytest.fixture
def execution_config():
    """Execution settings with short timeouts and no trailing stop."""
    return ExecutionConfig(
        slippage_pct=0.0,
        execution_timeout_seconds=1.0,
        price_timeout_seconds=1.0,
        signal_timeout_seconds=1.0,
        trailing_stop_distance=0.0,
    )


@pytest.fixture
def portfolio_config():
    return PortfolioConfig(
        initial_cash=Decimal("10000"),
        target_allocation_str="SOL:0.50,CASH:0.50",
        rebalance_threshold=0.05,
        tokens_str="SOL",
    )


# =============================================================================
# Signal Fixtures
# =============================================================================

def make_signal(
    token: str = "SOL",
    price: Decimal = Decimal("100"),
    confidence: float = 0.9,
    action: TradeAction = TradeAction.BUY,
    stop_loss: Optional[Decimal] = Decimal("95"),
    target_price: Optional[Decimal] = None,
    risk_level: RiskTier = RiskTier.LOW,
    **kwargs
) -> Signal:
    """Build a signal with test-friendly defaults."""
    return Signal(
        token=token,
        action=action,
        current_price=price,
        confidence=confidence,
        stop_loss=stop_loss,
        target_price=target_price,
        risk_level=risk_level,
        **kwargs
    )


@pytest.fixture
def signal_factory():
    """Factory for signals with test-friendly defaults."""
    return make_signal


@pytest.fixture
def buy_signal():
    """High-confidence, low-risk SOL buy at 100 with a 5% stop."""
    return create_buy_signal(
        token="SOL",
        current_price=Decimal("100"),
        confidence=0.9,
        stop_loss=Decimal("95"),
        risk_level=RiskTier.LOW,
        reason="test entry",
        source="queued",
    )


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def oracle():
    """Price oracle with fixed prices for SOL and BONK."""
    return StaticPriceOracle(prices={"SOL": Decimal("100"), "BONK": Decimal("10")})


@pytest.fixture
def executor():
    """Deterministic execution backend filling at the reference price."""
    return FixedSlippageExecution()


@pytest.fixture
def risk_gate(risk_limits, alert_thresholds, sizing_config):
    return RiskGate(limits=risk_limits, thresholds=alert_thresholds, sizing=sizing_config)


@pytest_asyncio.fixture
async def initialized_risk_gate(risk_gate):
    """Risk gate tracking a 10,000 USD portfolio."""
    await risk_gate.initialize(Decimal("10000"))
    return risk_gate


@pytest.fixture
def sizer(risk_gate):
    return PositionSizer(risk_gate)


@pytest.fixture
def ledger(oracle, executor, execution_config):
    return PositionLedger(oracle, executor, config=execution_config)


@pytest.fixture
def portfolio(oracle, portfolio_config):
    return PortfolioController(oracle, config=portfolio_config, price_timeout_seconds=1.0)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database(tmp_path):
    """Create a file-backed SQLite test database."""
    db = Database(f"sqlite:///{tmp_path / 'test.db'}")
    await db.initialize()
    yield db
    await db.close()


# =============================================================================
# Market Data Fixtures
# =============================================================================

@pytest.fixture
def start_date():
    return datetime(2024, 1, 1)


def rising_closes(count: int, start: Decimal = Decimal("100"), step: Decimal = Decimal("1.03")) -> List[Decimal]:
    """Strictly rising close series, compounding by ``step`` per bar."""
    closes = [start]
    for _ in range(count - 1):
        closes.append(closes[-1] * step)
    return closes


@pytest.fixture
def closes_factory():
    return rising_closes


@pytest.fixture
def rising_bars(start_date) -> List[MarketBar]:
    """30 daily SOL bars rising 3% per bar with 1M volume."""
    return bars_from_closes("SOL", rising_closes(30), start_date, volume=Decimal("1000000"))


@pytest.fixture
def end_date(start_date):
    return start_date + timedelta(days=60)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers."""
    for item in items:
        if "integration" in item.nodeid.split("/"):
            item.add_marker(pytest.mark.integration)
        # Add unit marker by default
        elif not any(marker.name in ["unit", "integration"] for marker in item.own_markers):
            item.add_marker(pytest.mark.unit)
