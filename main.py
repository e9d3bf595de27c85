"""
Basket Trader - Main Entry Point

Signal-driven trading stack for a basket of speculative tokens, running in
simulation against historical (or synthetic) bars.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Show system status
    python main.py --status

    # Run the trading and monitoring loops until Ctrl+C
    python main.py --run

    # Backtest one strategy, or rank all of them
    python main.py --backtest SOL --strategy momentum --days 180
    python main.py --compare BONK

    # Close everything and block new trades
    python main.py --emergency-stop
"""

import argparse
import asyncio
import signal
from decimal import Decimal
from typing import Dict, List, Optional

import structlog

from basket_trader.backtest.data_loader import HistoricalDataLoader
from basket_trader.backtest.report import BacktestReport, render_comparison
from basket_trader.backtest.runner import STRATEGY_CHOICES, BacktestRunner
from basket_trader.backtest.strategies import default_strategies
from basket_trader.core.config import trader_config
from basket_trader.core.engine import TradingEngine
from basket_trader.exchange.execution import SimulatedExecution
from basket_trader.exchange.price_oracle import StaticPriceOracle
from basket_trader.portfolio.controller import PortfolioController
from basket_trader.risk.position_sizer import PositionSizer
from basket_trader.risk.risk_manager import RiskGate
from basket_trader.storage.database import Database
from basket_trader.strategies.base import StrategySignalSource
from basket_trader.trading.ledger import PositionLedger
from basket_trader.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class BasketTraderBot:
    """
    Main application wiring the live components together.

    Market data comes from the historical data loader; every execution is
    simulated.
    """

    def __init__(self, tokens: Optional[List[str]] = None):
        self.tokens = tokens or trader_config.portfolio.tokens

        # Components
        self.engine: Optional[TradingEngine] = None
        self.database: Optional[Database] = None
        self.oracle: Optional[StaticPriceOracle] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info("bot.initializing", tokens=self.tokens, dry_run=trader_config.system.dry_run)

        if not trader_config.system.dry_run:
            logger.warning("bot.no_live_backend", detail="no real execution backend configured, simulating")

        self.database = Database()
        await self.database.initialize()
        logger.info("bot.database_initialized")

        # Price oracle over the most recent historical bars
        loader = HistoricalDataLoader(
            cache_dir=trader_config.backtest.cache_dir,
            synthetic_days=trader_config.backtest.synthetic_days,
            seed=trader_config.backtest.synthetic_seed,
        )
        self.oracle = StaticPriceOracle(prices={})
        for token in self.tokens:
            self.oracle.add_bars(token, await loader.load_bars(token))
        logger.info("bot.oracle_initialized", tokens=self.tokens)

        risk_gate = RiskGate(
            limits=trader_config.risk_limits,
            thresholds=trader_config.alerts,
            sizing=trader_config.sizing,
            notifier=self._notify,
        )
        ledger = PositionLedger(
            self.oracle,
            SimulatedExecution(),
            database=self.database,
            config=trader_config.execution,
        )
        portfolio = PortfolioController(
            self.oracle,
            config=trader_config.portfolio,
            database=self.database,
            price_timeout_seconds=trader_config.execution.price_timeout_seconds,
        )
        sources = [
            StrategySignalSource(strategy, self.oracle, self.tokens)
            for strategy in default_strategies()
        ]
        logger.info("bot.sources_loaded", names=[s.name for s in sources])

        self.engine = TradingEngine(
            risk_gate=risk_gate,
            sizer=PositionSizer(risk_gate),
            ledger=ledger,
            portfolio=portfolio,
            oracle=self.oracle,
            signal_sources=sources,
            database=self.database,
            loop_config=trader_config.loops,
        )

        self._initialized = True
        logger.info("bot.initialized")

    async def _notify(self, alert):
        """Print CRITICAL alerts to the console."""
        print(f"\n[{alert.level.value}] {alert.type}: {alert.message}")

    async def run(self):
        """Run the trading loops until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        logger.info("bot.starting", tokens=self.tokens)

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.engine.start()

            # Wait for a shutdown signal or an emergency stop halting both loops
            shutdown = asyncio.create_task(self._shutdown_event.wait())
            loops = asyncio.create_task(self.engine.wait())
            await asyncio.wait({shutdown, loops}, return_when=asyncio.FIRST_COMPLETED)
            for task in (shutdown, loops):
                task.cancel()

        except Exception as e:
            logger.error("bot.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("bot.shutting_down")

        if self.engine:
            await self.engine.stop()

        if self.database:
            await self.database.close()

        logger.info("bot.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("bot.shutdown_signal_received")
        self._shutdown_event.set()

    async def get_status(self) -> Dict:
        """Status snapshot after restoring persisted state."""
        await self.engine.load_state()
        await self.engine.portfolio.reconcile()
        return {
            **self.engine.get_status(),
            'summary': self.engine.get_portfolio_summary(),
            'risk': self.engine.get_risk_assessment(),
        }

    async def emergency_stop(self, reason: str) -> int:
        await self.engine.load_state()
        closed = await self.engine.emergency_stop(reason)
        await self.engine.stop()
        return len(closed)


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = trader_config.validate_configuration()
    warnings = []

    if not trader_config.system.dry_run:
        warnings.append("DRY_RUN is off but no real execution backend exists; orders stay simulated")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "tokens": trader_config.portfolio.tokens,
        "target_allocation": {k: str(v) for k, v in trader_config.portfolio.target_allocation.items()},
    }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           BASKET TRADER - SYSTEM STATUS")
    print("=" * 60)

    summary = status.get("summary", {})
    print(f"\nRisk Status: {status.get('risk_status', 'N/A')}")
    print(f"Emergency Stop: {status.get('emergency_stop', False)}")

    print("\nPortfolio:")
    print(f"   Total Value: ${Decimal(summary.get('total_value', '0')):,.2f}")
    print(f"   Cash: ${Decimal(summary.get('cash', '0')):,.2f}")

    allocation = summary.get("allocation", {})
    targets = summary.get("target_allocation", {})
    if allocation:
        print("\nAllocation (current / target):")
        for token, row in allocation.items():
            target = float(targets.get(token, 0))
            print(f"   {token:<6} {row['allocation']:>8.2%} / {target:>8.2%}")

    trading = status.get("trading", {})
    positions = trading.get("positions", {})
    print(f"\nOpen Positions: {len(positions)}")
    for token, pos in positions.items():
        print(f"   - {token}: {pos['quantity']} @ {pos['entry_price']} (uPnL {pos['unrealized_pnl']})")

    print(f"\nPending Orders: {trading.get('pending_orders', 0)}")
    print("\n" + "=" * 60)


async def run_backtest(token: str, strategy: str, days: int, capital: Decimal):
    """Run one strategy, or all of them when ``strategy`` is 'all'."""
    runner = BacktestRunner(config=trader_config.backtest)
    start_date, end_date = runner.default_range(days)

    if strategy == "all":
        results = await runner.run_comparison(token, start_date, end_date, capital)
        print(render_comparison(results))
        return

    result = await runner.run_single(strategy, token, start_date, end_date, capital)
    BacktestReport(result).print_full_report()


async def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Basket Trader - signal-driven basket trading stack"
    )

    # Actions
    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database and exit")
    parser.add_argument("--status", action="store_true", help="Show system status and exit")
    parser.add_argument("--run", action="store_true", help="Run the trading and monitoring loops")
    parser.add_argument("--backtest", metavar="TOKEN", help="Backtest a strategy on TOKEN")
    parser.add_argument("--compare", metavar="TOKEN", help="Rank every strategy on TOKEN")
    parser.add_argument(
        "--emergency-stop",
        action="store_true",
        help="Close every open position and block new trades (USE WITH CAUTION)",
    )

    # Backtest options
    parser.add_argument(
        "--strategy",
        choices=STRATEGY_CHOICES,
        default="momentum",
        help="Strategy for --backtest (default: momentum)",
    )
    parser.add_argument("--days", type=int, default=365, help="Backtest length in days (default: 365)")
    parser.add_argument(
        "--capital",
        type=float,
        default=float(trader_config.backtest.initial_capital),
        help="Backtest initial capital",
    )

    args = parser.parse_args(argv)

    setup_logging()

    config_check = check_configuration()
    for warning in config_check["warnings"]:
        print(warning)

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)

        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")

        print(f"\nTokens: {', '.join(config_check['tokens'])}")
        print(f"Target Allocation: {config_check['target_allocation']}")
        print("\n" + "=" * 60)
        return

    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    if args.init_db:
        print("\nInitializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    capital = Decimal(str(args.capital))
    if args.backtest:
        await run_backtest(args.backtest.upper(), args.strategy, args.days, capital)
        return
    if args.compare:
        await run_backtest(args.compare.upper(), "all", args.days, capital)
        return

    bot = BasketTraderBot()
    await bot.initialize()

    if args.status:
        try:
            print_status(await bot.get_status())
        finally:
            await bot.database.close()
        return

    if args.emergency_stop:
        try:
            closed = await bot.emergency_stop("manual_cli")
            print(f"\n✓ Emergency stop complete, {closed} position(s) closed")
        finally:
            await bot.database.close()
        return

    if args.run:
        await bot.run()
        return

    await bot.database.close()
    parser.print_help()


def cli():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()
