"""
Backtest Runner - CLI and programmatic interface.

Usage:
    python -m basket_trader.backtest.runner --token SOL --strategy momentum --days 365
    python -m basket_trader.backtest.runner --token BONK --strategy all --capital 5000
"""

import argparse
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import structlog

from basket_trader.backtest.data_loader import HistoricalDataLoader
from basket_trader.backtest.engine import BacktestResult, BacktestSimulator
from basket_trader.backtest.report import BacktestReport, render_comparison
from basket_trader.backtest.strategies import default_strategies
from basket_trader.core.config import BacktestConfig

logger = structlog.get_logger(__name__)

STRATEGY_CHOICES = [s.strategy_id for s in default_strategies()] + ["all"]


class BacktestRunner:
    """High-level backtest runner interface."""

    def __init__(self, config: Optional[BacktestConfig] = None, cache_dir: Optional[str] = None):
        self.config = config or BacktestConfig()
        self.data_loader = HistoricalDataLoader(
            cache_dir=cache_dir or self.config.cache_dir,
            synthetic_days=self.config.synthetic_days,
            seed=self.config.synthetic_seed,
        )
        self.simulator = BacktestSimulator(data_loader=self.data_loader, config=self.config)

    def default_range(self, days: int) -> tuple:
        end_date = datetime.utcnow()
        return end_date - timedelta(days=days), end_date

    async def run_single(
        self,
        strategy_id: str,
        token: str,
        start_date: datetime,
        end_date: datetime,
        initial_capital: Optional[Decimal] = None,
    ) -> BacktestResult:
        logger.info(
            "backtest_runner.starting",
            strategy=strategy_id,
            token=token,
            start=start_date.isoformat(),
            end=end_date.isoformat(),
        )
        return await self.simulator.run(strategy_id, token, start_date, end_date, initial_capital)

    async def run_comparison(
        self,
        token: str,
        start_date: datetime,
        end_date: datetime,
        initial_capital: Optional[Decimal] = None,
    ) -> List[BacktestResult]:
        logger.info("backtest_runner.comparing", token=token)
        return await self.simulator.compare_strategies(token, start_date, end_date, initial_capital)


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Basket Trader - Backtest Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Momentum on SOL over the last year
  python -m basket_trader.backtest.runner --token SOL --strategy momentum

  # Rank every strategy on BONK for a date range
  python -m basket_trader.backtest.runner --token BONK --strategy all --start 2024-01-01 --end 2024-06-30
        """,
    )

    parser.add_argument("--token", type=str, default="SOL", help="Token to backtest (default: SOL)")
    parser.add_argument(
        "--strategy",
        type=str,
        choices=STRATEGY_CHOICES,
        default="all",
        help="Strategy to run, or 'all' to compare (default: all)",
    )
    parser.add_argument("--start", type=str, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="End date (YYYY-MM-DD)")
    parser.add_argument("--days", type=int, default=365, help="Days to backtest when no dates are given")
    parser.add_argument("--capital", type=float, default=10000, help="Initial capital (default: 10000)")
    parser.add_argument("--output", type=str, help="Output file for a single-run report (markdown)")

    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = parse_args(argv)
    runner = BacktestRunner()

    start_date, end_date = runner.default_range(args.days)
    if args.start:
        start_date = datetime.strptime(args.start, "%Y-%m-%d")
    if args.end:
        end_date = datetime.strptime(args.end, "%Y-%m-%d")

    capital = Decimal(str(args.capital))
    token = args.token.upper()

    if args.strategy == "all":
        results = await runner.run_comparison(token, start_date, end_date, capital)
        print(render_comparison(results))
        return

    result = await runner.run_single(args.strategy, token, start_date, end_date, capital)
    report = BacktestReport(result)
    report.print_full_report()

    if args.output:
        Path(args.output).write_text(report.generate_markdown_report())
        print(f"\nReport saved to: {args.output}")


if __name__ == "__main__":
    asyncio.run(main())
