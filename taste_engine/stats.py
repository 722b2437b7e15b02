"""Small statistics helpers shared by the preference, pattern and drift code.

All functions return a neutral value instead of raising when the input is too
small or degenerate.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

MIN_CORRELATION_POINTS = 5


def pearson(xs: Sequence[float], ys: Sequence[float]) -> float:
    """Return the Pearson correlation of two equal-length sequences.

    Returns exactly ``0.0`` when there are fewer than five points or either
    sequence is constant.
    """
    n = min(len(xs), len(ys))
    if n < MIN_CORRELATION_POINTS:
        return 0.0
    x = np.asarray(xs[:n], dtype=float)
    y = np.asarray(ys[:n], dtype=float)
    if np.all(x == x[0]) or np.all(y == y[0]):
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denominator = math.sqrt(float(np.dot(dx, dx)) * float(np.dot(dy, dy)))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(dx, dy)) / denominator


def weighted_mean(values: Sequence[float], weights: Sequence[float]) -> float | None:
    """Return the weighted mean, or ``None`` when the total weight is zero."""
    if not values:
        return None
    w = np.asarray(weights, dtype=float)
    total = float(w.sum())
    if total == 0.0:
        return None
    return float(np.dot(np.asarray(values, dtype=float), w)) / total


def percentile_bounds(
    values: Sequence[float], low: float = 0.1, high: float = 0.9
) -> tuple[float, float]:
    """Return the ``(low, high)`` percentiles using index ``floor(len * p)``.

    Raises:
        ValueError: If *values* is empty.
    """
    if not values:
        raise ValueError("percentile_bounds requires at least one value")
    ordered = sorted(values)
    last = len(ordered) - 1
    lo = ordered[min(last, int(math.floor(len(ordered) * low)))]
    hi = ordered[min(last, int(math.floor(len(ordered) * high)))]
    return float(lo), float(hi)


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; ``0.0`` for an empty sequence."""
    if not values:
        return 0.0
    return float(np.mean(np.asarray(values, dtype=float)))


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation; ``0.0`` for an empty sequence."""
    if not values:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def variance(values: Sequence[float]) -> float:
    """Population variance; ``0.0`` for an empty sequence."""
    if not values:
        return 0.0
    return float(np.var(np.asarray(values, dtype=float)))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
