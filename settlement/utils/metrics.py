"""Pure metric math helpers used by the defense checks."""
from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Sequence


def safe_div(numerator: float | int | Decimal, denominator: float | int | Decimal) -> float:
    if denominator in (0, 0.0):
        return 0.0
    return float(numerator) / float(denominator)


def gini_coefficient(values: Iterable[float | Decimal]) -> float:
    """Gini coefficient over non-negative totals (0 = equal, ->1 = concentrated).

    G = 2 * sum(i * x_i) / (n * sum(x)) - (n + 1) / n, x ascending, i from 1.
    Negative totals (net refunds) are clamped to zero.
    """
    xs = sorted(max(float(v), 0.0) for v in values)
    n = len(xs)
    total = sum(xs)
    if n == 0 or total == 0:
        return 0.0
    weighted = sum(rank * x for rank, x in enumerate(xs, start=1))
    return (2.0 * weighted) / (n * total) - (n + 1.0) / n


def top_n_share_pct(values: Sequence[float | Decimal], n: int) -> float:
    """Percent of the (positive) total held by the n largest values."""
    xs = sorted((max(float(v), 0.0) for v in values), reverse=True)
    total = sum(xs)
    if total == 0:
        return 0.0
    return sum(xs[:n]) / total * 100.0


__all__ = ["safe_div", "gini_coefficient", "top_n_share_pct"]
