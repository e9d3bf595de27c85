"""Unit tests for live signal sources."""
import pytest
from decimal import Decimal

from basket_trader.backtest.data_loader import bars_from_closes
from basket_trader.backtest.strategies import MomentumStrategy, SentimentStrategy
from basket_trader.core.models import RiskTier, TradeAction
from basket_trader.strategies import QueuedSignalSource, StrategySignalSource, risk_tier_for


@pytest.mark.parametrize("confidence,tier", [
    (0.95, RiskTier.LOW),
    (0.8, RiskTier.MEDIUM),
    (0.6, RiskTier.MEDIUM),
    (0.59, RiskTier.HIGH),
])
def test_risk_tier_for(confidence, tier):
    assert risk_tier_for(confidence) == tier


class TestStrategySignalSource:
    """Test strategies driven by oracle bars."""

    @pytest.fixture
    def sentiment_bars(self, start_date):
        return bars_from_closes("SOL", [Decimal("100")] * 3, start_date, sentiment=0.8)

    @pytest.mark.asyncio
    async def test_signal_from_strategy(self, oracle, sentiment_bars):
        oracle.add_bars("SOL", sentiment_bars)
        oracle.set_price("SOL", Decimal("102"))
        source = StrategySignalSource(SentimentStrategy(), oracle, ["SOL"])

        signal = await source.get_signal("SOL")

        assert signal.action == TradeAction.BUY
        assert signal.current_price == Decimal("102")
        assert signal.target_price == Decimal("110.00")
        assert signal.stop_loss == Decimal("95.00")
        assert signal.confidence == pytest.approx(0.8)
        assert signal.risk_level == RiskTier.MEDIUM
        assert signal.source == "sentiment"
        assert source.signals_generated == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_last_close(self, oracle, sentiment_bars):
        oracle.add_bars("SOL", sentiment_bars)
        oracle.remove_price("SOL")
        source = StrategySignalSource(SentimentStrategy(), oracle, ["SOL"], name="social")

        signal = await source.get_signal("SOL")

        assert signal.current_price == Decimal("100")
        assert signal.source == "social"

    @pytest.mark.asyncio
    async def test_no_bars(self, oracle):
        source = StrategySignalSource(SentimentStrategy(), oracle, ["SOL"])
        assert await source.get_signal("SOL") is None
        assert source.signals_generated == 0

    @pytest.mark.asyncio
    async def test_insufficient_history(self, oracle, rising_bars):
        oracle.add_bars("SOL", rising_bars[:5])
        source = StrategySignalSource(MomentumStrategy(), oracle, ["SOL"])
        assert await source.get_signal("SOL") is None

    @pytest.mark.asyncio
    async def test_strategy_without_signal(self, oracle, start_date):
        oracle.add_bars("SOL", bars_from_closes("SOL", [Decimal("100")] * 3, start_date, sentiment=0.1))
        source = StrategySignalSource(SentimentStrategy(), oracle, ["SOL"])
        assert await source.get_signal("SOL") is None


class TestQueuedSignalSource:

    @pytest.mark.asyncio
    async def test_hands_out_in_order(self, signal_factory):
        first = signal_factory(confidence=0.9)
        second = signal_factory(action=TradeAction.SELL, stop_loss=None)
        source = QueuedSignalSource({"SOL": [first, second]})

        assert await source.get_signal("SOL") is first
        assert await source.get_signal("SOL") is second
        assert await source.get_signal("SOL") is None
        assert source.signals_generated == 2

    @pytest.mark.asyncio
    async def test_push_registers_token(self, signal_factory):
        source = QueuedSignalSource({})
        source.push(signal_factory(token="BONK", price=Decimal("10"), stop_loss=Decimal("9")))

        assert source.tokens == ["BONK"]
        assert (await source.get_signal("BONK")).token == "BONK"
        assert await source.get_signal("SOL") is None


class TestSourceLifecycle:

    @pytest.mark.asyncio
    async def test_callbacks_and_stats(self):
        source = QueuedSignalSource({"SOL": []}, name="desk")

        await source.on_position_opened("SOL", Decimal("3.6"), Decimal("100"))
        await source.on_position_closed("SOL", Decimal("36"))
        await source.on_position_closed("SOL", Decimal("-6"))

        stats = source.get_stats()
        assert stats["name"] == "desk"
        assert stats["trades_executed"] == 1
        assert stats["total_pnl"] == "30"

    def test_pause_resume(self):
        source = QueuedSignalSource({"SOL": []})

        source.pause()
        assert not source.is_active
        source.resume()
        assert source.is_active
