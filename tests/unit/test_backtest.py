"""Unit tests for the backtest simulator, strategies and reports."""
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict

from basket_trader.backtest.data_loader import HistoricalDataLoader, bars_from_closes
from basket_trader.backtest.engine import BacktestSimulator
from basket_trader.backtest.report import BacktestReport, render_comparison
from basket_trader.backtest.runner import STRATEGY_CHOICES, BacktestRunner, parse_args
from basket_trader.backtest.strategies import (
    MeanReversionStrategy,
    MomentumStrategy,
    PatternParams,
    PatternStrategy,
    SentimentStrategy,
    Strategy,
    StrategySignal,
)
from basket_trader.core.config import BacktestConfig
from basket_trader.core.exceptions import DataUnavailable
from basket_trader.core.models import BacktestPhase, MarketBar, TradeAction


class ScriptedStrategy(Strategy):
    """Emits pre-set signals at given bar indexes."""

    strategy_id = "scripted"
    name = "Scripted"

    def __init__(self, script: Dict[int, StrategySignal]):
        super().__init__()
        self.script = script

    def evaluate(self, history, bar, state=None):
        return self.script.get(len(history) - 1)


class ExplodingStrategy(Strategy):
    strategy_id = "exploding"
    name = "Exploding"

    def evaluate(self, history, bar, state=None):
        raise RuntimeError("boom")


def buy(confidence: float = 1.0) -> StrategySignal:
    return StrategySignal(action=TradeAction.BUY, confidence=confidence, reason="buy")


def sell(confidence: float = 1.0) -> StrategySignal:
    return StrategySignal(action=TradeAction.SELL, confidence=confidence, reason="sell")


@pytest.fixture
def backtest_config(tmp_path):
    return BacktestConfig(
        initial_capital=Decimal("10000"),
        position_fraction=Decimal("0.10"),
        min_confidence=0.5,
        cache_dir=str(tmp_path),
        synthetic_days=60,
        synthetic_seed=42,
    )


@pytest.fixture
def data_loader(tmp_path, rising_bars):
    loader = HistoricalDataLoader(cache_dir=str(tmp_path), use_cache=False, generate_missing=False)
    loader.add_bars("SOL", rising_bars)
    return loader


def make_simulator(data_loader, backtest_config, *strategies):
    return BacktestSimulator(
        data_loader=data_loader,
        strategies=list(strategies) or None,
        config=backtest_config,
    )


# =============================================================================
# Simulator Tests
# =============================================================================

class TestBacktestSimulator:
    """Test bar-by-bar replay."""

    @pytest.mark.asyncio
    async def test_momentum_on_rising_series(self, data_loader, backtest_config, rising_bars, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        result = await simulator.run("momentum", "SOL", start_date, end_date, Decimal("10000"))

        assert result.phase == BacktestPhase.COMPLETED
        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.reason == "end_of_range"
        # First signal once the 20-bar lookback is filled
        assert trade.entry_time == start_date + timedelta(days=19)
        assert trade.entry_price == rising_bars[19].close
        assert trade.exit_price == rising_bars[-1].close
        assert result.total_return > 0
        assert result.metrics.winning_trades == 1

    @pytest.mark.asyncio
    async def test_equity_curve(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        result = await simulator.run("momentum", "SOL", start_date, end_date)

        assert len(result.equity_curve) == 31
        assert result.equity_curve[0] == Decimal("10000")
        assert result.initial_capital == Decimal("10000")

    @pytest.mark.asyncio
    async def test_deterministic(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        first = await simulator.run("momentum", "SOL", start_date, end_date)
        second = await simulator.run("momentum", "SOL", start_date, end_date)

        assert first.metrics == second.metrics
        assert first.equity_curve == second.equity_curve
        assert first.trades == second.trades

    def test_round_trip_accounting(self, backtest_config, start_date):
        bars = bars_from_closes("SOL", [Decimal("100"), Decimal("90"), Decimal("110")], start_date)
        strategy = ScriptedStrategy({0: buy(), 2: sell()})
        simulator = BacktestSimulator(strategies=[strategy], config=backtest_config)

        result = simulator.replay(strategy, "SOL", bars, start_date, bars[-1].timestamp, Decimal("10000"))

        assert result.equity_curve == [Decimal("10000"), Decimal("10000"), Decimal("9900"), Decimal("10100")]
        assert result.final_capital == Decimal("10100")
        trade = result.trades[0]
        assert trade.quantity == Decimal("10")
        assert trade.pnl == Decimal("100")
        assert trade.return_pct == pytest.approx(0.1)
        assert trade.reason == "sell"

        metrics = result.metrics
        assert metrics.total_return == pytest.approx(0.01)
        assert metrics.win_rate == 1.0
        assert metrics.max_drawdown == pytest.approx(0.01)
        assert metrics.profit_factor == 0.0
        assert metrics.volatility > 0

    def test_losing_trade(self, backtest_config, start_date):
        bars = bars_from_closes("SOL", [Decimal("100"), Decimal("80")], start_date)
        strategy = ScriptedStrategy({0: buy(), 1: sell()})
        simulator = BacktestSimulator(strategies=[strategy], config=backtest_config)

        result = simulator.replay(strategy, "SOL", bars, start_date, bars[-1].timestamp, Decimal("10000"))

        assert result.metrics.losing_trades == 1
        assert result.metrics.avg_loss == pytest.approx(200.0)
        assert result.metrics.total_return == pytest.approx(-0.02)

    def test_low_confidence_ignored(self, backtest_config, start_date):
        bars = bars_from_closes("SOL", [Decimal("100"), Decimal("110")], start_date)
        strategy = ScriptedStrategy({0: buy(confidence=0.4)})
        simulator = BacktestSimulator(strategies=[strategy], config=backtest_config)

        result = simulator.replay(strategy, "SOL", bars, start_date, bars[-1].timestamp, Decimal("10000"))

        assert result.trades == []
        assert result.final_capital == Decimal("10000")

    def test_sell_without_position_ignored(self, backtest_config, start_date, closes_factory):
        bars = bars_from_closes("SOL", closes_factory(30, step=Decimal("0.97")), start_date)
        strategy = MomentumStrategy()
        simulator = BacktestSimulator(strategies=[strategy], config=backtest_config)

        result = simulator.replay(strategy, "SOL", bars, start_date, bars[-1].timestamp, Decimal("10000"))

        assert result.trades == []
        assert result.total_return == 0.0

    def test_single_open_position(self, backtest_config, start_date):
        bars = bars_from_closes("SOL", [Decimal("100")] * 4, start_date)
        strategy = ScriptedStrategy({0: buy(), 1: buy(), 2: buy()})
        simulator = BacktestSimulator(strategies=[strategy], config=backtest_config)

        result = simulator.replay(strategy, "SOL", bars, start_date, bars[-1].timestamp, Decimal("10000"))

        assert len(result.trades) == 1
        assert result.trades[0].quantity == Decimal("10")

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        with pytest.raises(ValueError):
            await simulator.run("nope", "SOL", start_date, end_date)

    @pytest.mark.asyncio
    async def test_no_bars_in_range(self, data_loader, backtest_config):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        with pytest.raises(DataUnavailable):
            await simulator.run("momentum", "SOL", datetime(2030, 1, 1), datetime(2030, 2, 1))

    @pytest.mark.asyncio
    async def test_unknown_token(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())

        with pytest.raises(DataUnavailable):
            await simulator.run("momentum", "DOGE", start_date, end_date)

    @pytest.mark.asyncio
    async def test_failing_strategy_marks_failed(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, ExplodingStrategy())

        with pytest.raises(RuntimeError):
            await simulator.run("exploding", "SOL", start_date, end_date)

    @pytest.mark.asyncio
    async def test_compare_strategies(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(
            data_loader,
            backtest_config,
            ExplodingStrategy(),
            MomentumStrategy(),
            ScriptedStrategy({0: buy(), 1: sell()}),
        )

        results = await simulator.compare_strategies("SOL", start_date, end_date)

        assert [r.strategy_id for r in results] == ["momentum", "scripted", "exploding"]
        assert results[0].total_return >= results[1].total_return
        assert results[-1].phase == BacktestPhase.FAILED
        assert results[-1].error == "boom"
        assert results[-1].final_capital == Decimal("10000")

    @pytest.mark.asyncio
    async def test_summary_and_status(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy())
        await simulator.run("momentum", "SOL", start_date, end_date)

        summary = simulator.get_strategy_summary()
        assert summary[0]["strategy"] == "momentum"
        assert summary[0]["total_trades"] == 1
        assert simulator.get_status() == {"strategies": 1, "historical_data": 1, "results": 1}

    def test_default_strategies_registered(self, data_loader, backtest_config):
        simulator = BacktestSimulator(data_loader=data_loader, config=backtest_config)
        assert set(simulator.strategies) == {"momentum", "mean_reversion", "sentiment", "pattern"}


# =============================================================================
# Strategy Tests
# =============================================================================

class TestStrategies:
    """Test the reference strategies."""

    def test_momentum_needs_lookback(self, rising_bars):
        history = rising_bars[:10]
        assert MomentumStrategy().evaluate(history, history[-1]) is None

    def test_momentum_buy(self, rising_bars):
        history = rising_bars[:20]
        signal = MomentumStrategy().evaluate(history, history[-1])

        assert signal.action == TradeAction.BUY
        assert signal.confidence == 0.95
        assert signal.stop_loss == history[-1].close * Decimal("0.95")
        assert signal.take_profit == history[-1].close * Decimal("1.10")

    def test_momentum_low_volume(self, start_date, closes_factory):
        bars = bars_from_closes("SOL", closes_factory(20), start_date, volume=Decimal("1000"))
        assert MomentumStrategy().evaluate(bars, bars[-1]) is None

    def test_momentum_flat(self, start_date):
        bars = bars_from_closes("SOL", [Decimal("100")] * 20, start_date)
        assert MomentumStrategy().evaluate(bars, bars[-1]) is None

    def test_mean_reversion_overbought(self, rising_bars):
        history = rising_bars[:16]
        signal = MeanReversionStrategy().evaluate(history, history[-1])

        assert signal.action == TradeAction.SELL
        assert signal.confidence == pytest.approx(1.0)

    def test_mean_reversion_oversold(self, start_date, closes_factory):
        bars = bars_from_closes("SOL", closes_factory(16, step=Decimal("0.97")), start_date)
        signal = MeanReversionStrategy().evaluate(bars, bars[-1])

        assert signal.action == TradeAction.BUY
        assert signal.confidence == pytest.approx(1.0)

    def test_mean_reversion_needs_history(self, rising_bars):
        strategy = MeanReversionStrategy()
        assert strategy.min_history == 15
        assert strategy.evaluate(rising_bars[:10], rising_bars[9]) is None

    def test_sentiment_buy(self, start_date):
        bars = bars_from_closes("SOL", [Decimal("100")], start_date, sentiment=0.8)
        signal = SentimentStrategy().evaluate(bars, bars[-1])

        assert signal.action == TradeAction.BUY
        assert signal.confidence == pytest.approx(0.8)

    @pytest.mark.parametrize("sentiment,volume", [
        (0.5, Decimal("1000000")),
        (0.62, Decimal("1000000")),
        (0.9, Decimal("1000")),
    ])
    def test_sentiment_no_signal(self, start_date, sentiment, volume):
        bars = bars_from_closes("SOL", [Decimal("100")], start_date, volume=volume, sentiment=sentiment)
        assert SentimentStrategy().evaluate(bars, bars[-1]) is None

    def _pattern_bars(self, start_date):
        lows = [10, 8, 9, 11, 12, 11, 8.1, 9, 10]
        return [
            MarketBar(
                token="SOL",
                timestamp=start_date + timedelta(days=i),
                open=Decimal(str(low + 0.5)),
                high=Decimal(str(low + 1)),
                low=Decimal(str(low)),
                close=Decimal(str(low + 0.5)),
                volume=Decimal("1000000"),
            )
            for i, low in enumerate(lows)
        ]

    def test_pattern_buy(self, start_date):
        bars = self._pattern_bars(start_date)
        signal = PatternStrategy(PatternParams(window=9)).evaluate(bars, bars[-1])

        assert signal.action == TradeAction.BUY
        assert signal.confidence == 0.7
        assert signal.stop_loss == Decimal("7.84")
        assert signal.take_profit == Decimal("18")

    def test_pattern_needs_window(self, start_date):
        bars = self._pattern_bars(start_date)
        assert PatternStrategy().evaluate(bars, bars[-1]) is None

    def test_describe(self):
        description = MomentumStrategy().describe()
        assert description["id"] == "momentum"
        assert description["parameters"]["lookback_period"] == 20


# =============================================================================
# Report & Runner Tests
# =============================================================================

class TestReports:
    """Test text and markdown reports."""

    @pytest.mark.asyncio
    async def test_reports(self, data_loader, backtest_config, start_date, end_date):
        simulator = make_simulator(data_loader, backtest_config, MomentumStrategy(), ExplodingStrategy())
        results = await simulator.compare_strategies("SOL", start_date, end_date)

        text = BacktestReport(results[0]).render_text()
        assert "BACKTEST REPORT - momentum on SOL" in text
        assert "Total Return" in text

        markdown = BacktestReport(results[0]).generate_markdown_report()
        assert "| Total Return |" in markdown

        failed = BacktestReport(results[-1]).render_text()
        assert "Error:" in failed

        comparison = render_comparison(results)
        assert "STRATEGY COMPARISON" in comparison
        assert "FAILED: boom" in comparison


class TestRunner:
    """Test the backtest runner."""

    def test_parse_args_defaults(self):
        args = parse_args([])
        assert args.token == "SOL"
        assert args.strategy == "all"
        assert args.days == 365

    def test_strategy_choices(self):
        assert STRATEGY_CHOICES == ["momentum", "mean_reversion", "sentiment", "pattern", "all"]

    @pytest.mark.asyncio
    async def test_run_single_on_synthetic_data(self, backtest_config):
        runner = BacktestRunner(config=backtest_config)
        start_date, end_date = runner.default_range(30)

        result = await runner.run_single("momentum", "SOL", start_date, end_date)

        assert result.phase == BacktestPhase.COMPLETED
        assert result.token == "SOL"
