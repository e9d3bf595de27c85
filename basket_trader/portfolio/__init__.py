"""Portfolio allocation, rebalancing and portfolio-level metrics."""

from basket_trader.portfolio.controller import PortfolioController, RebalanceExecutor

__all__ = ['PortfolioController', 'RebalanceExecutor']
