"""Price feeds for the live path and their deterministic test doubles.

Market data is an injected capability: business logic never generates its
own noise. ``StaticPriceOracle`` serves a fixed table (plus optional bar
history) and ``ScriptedPriceOracle`` replays per-token price paths.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import structlog

from basket_trader.core.exceptions import DataUnavailable
from basket_trader.core.models import MarketBar

logger = structlog.get_logger(__name__)


# Reference prices for the default token basket
DEFAULT_PRICES: Dict[str, Decimal] = {
    "SOL": Decimal("100"),
    "BONK": Decimal("0.000012"),
    "WIF": Decimal("2.45"),
    "PEPE": Decimal("0.000001"),
}


class PriceOracle(ABC):
    """Read-only source of current prices, volumes and historical bars."""

    @abstractmethod
    async def get_current_price(self, token: str) -> Decimal:
        """
        Return the latest price for ``token``.

        Raises:
            DataUnavailable: If no price is known
        """

    @abstractmethod
    async def get_historical_bars(
        self,
        token: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[MarketBar]:
        """Return bars for ``token`` in ``[start, end]``, oldest first."""

    async def get_volume(self, token: str) -> Decimal:
        """Latest traded volume; defaults to the last bar's volume."""
        bars = await self.get_historical_bars(token)
        if not bars:
            raise DataUnavailable(f"No volume data for {token}", token=token)
        return bars[-1].volume


def _filter_bars(
    bars: Iterable[MarketBar],
    start: Optional[datetime],
    end: Optional[datetime]
) -> List[MarketBar]:
    return [
        b for b in bars
        if (start is None or b.timestamp >= start) and (end is None or b.timestamp <= end)
    ]


class StaticPriceOracle(PriceOracle):
    """Oracle backed by an in-memory price table and bar history."""

    def __init__(
        self,
        prices: Optional[Dict[str, Decimal]] = None,
        bars: Optional[Dict[str, List[MarketBar]]] = None
    ):
        self.prices: Dict[str, Decimal] = dict(DEFAULT_PRICES if prices is None else prices)
        self.bars: Dict[str, List[MarketBar]] = {
            token: sorted(series, key=lambda b: b.timestamp)
            for token, series in (bars or {}).items()
        }

    def set_price(self, token: str, price: Decimal) -> None:
        self.prices[token] = price

    def remove_price(self, token: str) -> None:
        self.prices.pop(token, None)

    def add_bars(self, token: str, bars: List[MarketBar]) -> None:
        series = self.bars.setdefault(token, [])
        series.extend(bars)
        series.sort(key=lambda b: b.timestamp)
        if series:
            self.prices[token] = series[-1].close

    async def get_current_price(self, token: str) -> Decimal:
        price = self.prices.get(token)
        if price is None or price <= 0:
            raise DataUnavailable(f"No price for {token}", token=token)
        return price

    async def get_historical_bars(
        self,
        token: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[MarketBar]:
        series = self.bars.get(token)
        if not series:
            raise DataUnavailable(f"No bars for {token}", token=token)
        return _filter_bars(series, start, end)


class ScriptedPriceOracle(StaticPriceOracle):
    """Replays a fixed price path per token.

    Each ``advance()`` moves every scripted token one step forward; the last
    price is held once a path is exhausted. Useful for driving exit triggers
    deterministically in tests.
    """

    def __init__(
        self,
        paths: Dict[str, List[Decimal]],
        bars: Optional[Dict[str, List[MarketBar]]] = None
    ):
        super().__init__(prices={}, bars=bars)
        self.paths = {token: list(path) for token, path in paths.items()}
        self.step = 0
        for token, path in self.paths.items():
            if path:
                self.prices[token] = path[0]

    def advance(self, steps: int = 1) -> None:
        self.step += steps
        for token, path in self.paths.items():
            if path:
                self.prices[token] = path[min(self.step, len(path) - 1)]
        logger.debug("price_oracle.advanced", step=self.step)
