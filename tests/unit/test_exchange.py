"""Unit tests for price oracles and execution backends."""
import random

import pytest
from decimal import Decimal

from basket_trader.backtest.data_loader import bars_from_closes
from basket_trader.core.exceptions import DataUnavailable, ExecutionFailure
from basket_trader.core.models import TradeAction
from basket_trader.exchange import (
    DEFAULT_PRICES,
    FixedSlippageExecution,
    ScriptedPriceOracle,
    SimulatedExecution,
    StaticPriceOracle,
)


# =============================================================================
# Price Oracle Tests
# =============================================================================

class TestStaticPriceOracle:

    @pytest.mark.asyncio
    async def test_default_prices(self):
        oracle = StaticPriceOracle()
        assert await oracle.get_current_price("WIF") == DEFAULT_PRICES["WIF"]
        assert await oracle.get_current_price("BONK") == Decimal("0.000012")

    @pytest.mark.asyncio
    async def test_set_and_remove(self, oracle):
        oracle.set_price("SOL", Decimal("120"))
        assert await oracle.get_current_price("SOL") == Decimal("120")

        oracle.remove_price("SOL")
        with pytest.raises(DataUnavailable):
            await oracle.get_current_price("SOL")

    @pytest.mark.asyncio
    async def test_unknown_token(self, oracle):
        with pytest.raises(DataUnavailable) as exc_info:
            await oracle.get_current_price("DOGE")
        assert exc_info.value.token == "DOGE"

    @pytest.mark.asyncio
    async def test_bars_update_price(self, oracle, rising_bars):
        oracle.add_bars("SOL", rising_bars)

        assert await oracle.get_current_price("SOL") == rising_bars[-1].close
        assert await oracle.get_volume("SOL") == Decimal("1000000")

    @pytest.mark.asyncio
    async def test_bar_range(self, oracle, rising_bars, start_date):
        oracle.add_bars("SOL", rising_bars)

        bars = await oracle.get_historical_bars("SOL", start=rising_bars[10].timestamp, end=rising_bars[14].timestamp)

        assert len(bars) == 5
        assert bars[0].timestamp == rising_bars[10].timestamp

    @pytest.mark.asyncio
    async def test_no_bars(self, oracle):
        with pytest.raises(DataUnavailable):
            await oracle.get_historical_bars("SOL")
        with pytest.raises(DataUnavailable):
            await oracle.get_volume("SOL")


class TestScriptedPriceOracle:

    @pytest.mark.asyncio
    async def test_advance_holds_last_price(self):
        oracle = ScriptedPriceOracle({"SOL": [Decimal("100"), Decimal("97"), Decimal("94")]})
        assert await oracle.get_current_price("SOL") == Decimal("100")

        oracle.advance()
        assert await oracle.get_current_price("SOL") == Decimal("97")

        oracle.advance(5)
        assert await oracle.get_current_price("SOL") == Decimal("94")

    @pytest.mark.asyncio
    async def test_bars_alongside_paths(self, start_date):
        bars = bars_from_closes("SOL", [Decimal("90"), Decimal("95")], start_date)
        oracle = ScriptedPriceOracle({"SOL": [Decimal("100")]}, bars={"SOL": bars})

        assert len(await oracle.get_historical_bars("SOL")) == 2
        assert await oracle.get_current_price("SOL") == Decimal("100")


# =============================================================================
# Execution Backend Tests
# =============================================================================

class TestSimulatedExecution:

    @pytest.mark.asyncio
    async def test_fill_within_slippage(self):
        backend = SimulatedExecution(slippage_pct=0.01, rng=random.Random(1))

        for _ in range(20):
            result = await backend.execute("SOL", TradeAction.BUY, Decimal("1"), Decimal("100"))
            assert result.success
            assert result.simulated
            assert Decimal("99") <= result.price <= Decimal("101")
            assert result.transaction_id.startswith("sim_")

    @pytest.mark.asyncio
    async def test_seeded_fills_reproducible(self):
        first = SimulatedExecution(slippage_pct=0.01, rng=random.Random(7))
        second = SimulatedExecution(slippage_pct=0.01, rng=random.Random(7))

        prices_a = [(await first.execute("SOL", TradeAction.BUY, Decimal("1"), Decimal("100"))).price for _ in range(5)]
        prices_b = [(await second.execute("SOL", TradeAction.BUY, Decimal("1"), Decimal("100"))).price for _ in range(5)]

        assert prices_a == prices_b

    @pytest.mark.asyncio
    async def test_zero_slippage(self):
        backend = SimulatedExecution(slippage_pct=0.0, rng=random.Random(1))
        result = await backend.execute("SOL", TradeAction.SELL, Decimal("1"), Decimal("100"))
        assert result.price == Decimal("100")

    @pytest.mark.parametrize("slippage", [0.03, -0.01])
    def test_rejects_slippage_out_of_range(self, slippage):
        with pytest.raises(ValueError):
            SimulatedExecution(slippage_pct=slippage)


class TestFixedSlippageExecution:

    @pytest.mark.asyncio
    async def test_fills_with_slippage(self):
        backend = FixedSlippageExecution(slippage=Decimal("0.01"), simulated=False)

        result = await backend.execute("SOL", TradeAction.BUY, Decimal("1"), Decimal("100"))

        assert result.price == Decimal("101")
        assert not result.simulated
        assert backend.calls == 1

    @pytest.mark.asyncio
    async def test_rejected_order(self):
        backend = FixedSlippageExecution(fail_tokens={"BONK"})

        result = await backend.execute("BONK", TradeAction.BUY, Decimal("1"), Decimal("10"))

        assert not result.success
        assert result.error == "Order rejected"

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        backend = FixedSlippageExecution(raise_tokens={"SOL"})

        with pytest.raises(ExecutionFailure):
            await backend.execute("SOL", TradeAction.BUY, Decimal("1"), Decimal("100"))
        assert backend.calls == 1
