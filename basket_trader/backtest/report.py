"""
Backtest Report Generator.

Text and markdown summaries of single runs and strategy comparisons.
"""

from typing import List

from basket_trader.backtest.engine import BacktestResult
from basket_trader.core.models import BacktestPhase


class BacktestReport:
    """Generate backtest reports."""

    def __init__(self, result: BacktestResult):
        self.result = result

    def print_full_report(self):
        """Print complete backtest report to console."""
        print(self.render_text())

    def render_text(self) -> str:
        r = self.result
        lines = [
            "=" * 80,
            f"BACKTEST REPORT - {r.strategy_id} on {r.token}",
            "=" * 80,
            f"Test Period:     {r.start_date:%Y-%m-%d} to {r.end_date:%Y-%m-%d}",
            f"Initial Capital: ${r.initial_capital:,.2f}",
            f"Final Capital:   ${r.final_capital:,.2f}",
            f"Status:          {r.phase.value}",
        ]

        if r.phase == BacktestPhase.FAILED:
            lines.append(f"Error:           {r.error}")
            return "\n".join(lines)

        m = r.metrics
        lines += [
            "-" * 80,
            "PERFORMANCE SUMMARY",
            "-" * 80,
            f"  Total Return:   {m.total_return * 100:+.2f}%",
            f"  Max Drawdown:   {m.max_drawdown * 100:.2f}%",
            f"  Sharpe Ratio:   {m.sharpe_ratio:.2f}",
            f"  Volatility:     {m.volatility * 100:.2f}%",
            "-" * 80,
            "TRADE STATISTICS",
            "-" * 80,
            f"  Total Trades:   {m.total_trades}",
            f"  Win Rate:       {m.win_rate * 100:.1f}%",
            f"  Avg Win:        ${m.avg_win:,.2f}",
            f"  Avg Loss:       ${m.avg_loss:,.2f}",
            f"  Profit Factor:  {m.profit_factor:.2f}",
        ]
        return "\n".join(lines)

    def generate_markdown_report(self) -> str:
        """Generate markdown formatted report."""
        r = self.result
        lines = [
            f"# Backtest Report: {r.strategy_id} / {r.token}",
            "",
            f"**Test Period:** {r.start_date:%Y-%m-%d} to {r.end_date:%Y-%m-%d}",
            f"**Initial Capital:** ${r.initial_capital:,.2f}",
            f"**Final Capital:** ${r.final_capital:,.2f}",
            "",
        ]
        if r.metrics is None:
            lines.append(f"**Failed:** {r.error}")
            return "\n".join(lines)

        m = r.metrics
        lines += [
            "| Metric | Value |",
            "|--------|-------|",
            f"| Total Return | {m.total_return * 100:+.2f}% |",
            f"| Max Drawdown | {m.max_drawdown * 100:.2f}% |",
            f"| Sharpe Ratio | {m.sharpe_ratio:.2f} |",
            f"| Trades | {m.total_trades} |",
            f"| Win Rate | {m.win_rate * 100:.1f}% |",
            f"| Profit Factor | {m.profit_factor:.2f} |",
            "",
        ]
        return "\n".join(lines)


def render_comparison(results: List[BacktestResult]) -> str:
    """Ranked table of a strategy comparison."""
    lines = [
        "=" * 80,
        "STRATEGY COMPARISON",
        "=" * 80,
        f"{'#':<4}{'Strategy':<18}{'Return':>10}{'Max DD':>10}{'Sharpe':>9}{'Trades':>8}  Status",
    ]
    for rank, result in enumerate(results, start=1):
        m = result.metrics
        if m is None:
            lines.append(f"{rank:<4}{result.strategy_id:<18}{'-':>10}{'-':>10}{'-':>9}{'-':>8}  FAILED: {result.error}")
            continue
        lines.append(
            f"{rank:<4}{result.strategy_id:<18}{m.total_return * 100:>+9.2f}%{m.max_drawdown * 100:>9.2f}%"
            f"{m.sharpe_ratio:>9.2f}{m.total_trades:>8}  {result.phase.value}"
        )
    return "\n".join(lines)
