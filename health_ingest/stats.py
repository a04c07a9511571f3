"""Robust statistics used by the data-quality engine.

All functions are pure; empty input yields ``0.0`` rather than raising so
callers can feed partially populated series without guarding.
"""
from __future__ import annotations

import math
import statistics
from typing import Sequence

# Scales MAD to be comparable with a standard deviation for normal data.
MAD_SCALE = 0.6745


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(statistics.median(values))


def mad(values: Sequence[float]) -> float:
    """Median absolute deviation from the median."""
    if not values:
        return 0.0
    center = median(values)
    return median([abs(v - center) for v in values])


def percentile(values: Sequence[float], p: float) -> float:
    """Linear interpolation between closest ranks, ``p`` in [0, 100]."""
    if not values:
        return 0.0
    ordered = sorted(values)
    rank = (p / 100) * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    weight = rank - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def robust_z_score(value: float, center: float, spread: float) -> float:
    """``(value - median) / (MAD / 0.6745)``; defined as 0 when MAD is 0."""
    if spread == 0:
        return 0.0
    return (value - center) / (spread / MAD_SCALE)


def is_outlier(value: float, center: float, spread: float, threshold: float = 3.5) -> bool:
    return abs(robust_z_score(value, center, spread)) > threshold


def mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(statistics.fmean(values))


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if not values:
        return 0.0
    return float(statistics.pstdev(values))
