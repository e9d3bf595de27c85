"""Technical indicators used by the reference strategies.

All functions are pure and take plain float sequences, oldest first.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


def price_change(closes: Sequence[float], lookback: int) -> Optional[float]:
    """Fractional change from the first close of the trailing ``lookback`` window to the last."""
    if lookback < 1 or len(closes) < lookback:
        return None
    start = closes[-lookback]
    if start <= 0:
        return None
    return (closes[-1] - start) / start


def calculate_rsi(closes: Sequence[float], period: int = 14) -> float:
    """
    Relative Strength Index over the last ``period + 1`` closes.

    Simple averages of gains and losses (no Wilder smoothing).

    Returns:
        50 with fewer than ``period + 1`` closes, 100 when there are no losses
    """
    if len(closes) < period + 1:
        return 50.0

    changes = np.diff(np.asarray(closes[-(period + 1):], dtype=float))
    avg_gain = np.where(changes > 0, changes, 0.0).sum() / period
    avg_loss = np.where(changes < 0, -changes, 0.0).sum() / period

    if avg_loss == 0:
        return 100.0

    rs = avg_gain / avg_loss
    return float(100 - (100 / (1 + rs)))


@dataclass(frozen=True)
class DoubleBottom:
    """A detected double-bottom pattern."""
    first_index: int
    second_index: int
    bottom: float
    neckline: float

    @property
    def target(self) -> float:
        """Measured move: neckline plus the pattern height."""
        return self.neckline + (self.neckline - self.bottom)


def find_double_bottom(
    lows: Sequence[float],
    highs: Sequence[float],
    tolerance: float = 0.02
) -> Optional[DoubleBottom]:
    """
    Find two troughs of similar depth separated by a higher peak.

    Troughs are local minima of ``lows`` whose depths differ by at most
    ``tolerance``. The neckline is the highest high strictly between them and
    must clear the shallower trough by more than ``tolerance``. Among valid
    pairs the one with the highest neckline wins.
    """
    n = len(lows)
    if n < 3 or len(highs) != n:
        return None

    troughs = [
        i for i in range(1, n - 1)
        if lows[i] <= lows[i - 1] and lows[i] <= lows[i + 1]
    ]

    best: Optional[DoubleBottom] = None
    for a_pos, a in enumerate(troughs):
        for b in troughs[a_pos + 1:]:
            if b - a < 2:
                continue
            low_a, low_b = lows[a], lows[b]
            if abs(low_a - low_b) / min(low_a, low_b) > tolerance:
                continue

            neckline = max(highs[a + 1:b])
            if neckline <= max(low_a, low_b) * (1 + tolerance):
                continue

            if best is None or neckline > best.neckline:
                best = DoubleBottom(
                    first_index=a,
                    second_index=b,
                    bottom=min(low_a, low_b),
                    neckline=neckline,
                )

    return best
