"""Percentile bound lookup over dense histograms."""

from __future__ import annotations

from typing import Tuple

import numpy as np

__all__ = ["clip_count_for", "find_percentile_bin", "resolve_percentile_bounds"]


def clip_count_for(total_samples: int, percentile: float) -> float:
    """Number of samples to exclude from each tail for *percentile* (in %)."""

    return float(total_samples) * float(percentile) / 100.0


def find_percentile_bin(histogram, clip_count: float, *, from_low: bool) -> int:
    """Return the first bin whose running count exceeds *clip_count*.

    Scans from index 0 upward when ``from_low`` is true, otherwise from the
    last index downward. If the scan never exceeds ``clip_count`` the bin at
    the opposite boundary is returned.
    """

    counts = np.asarray(histogram, dtype=np.int64)
    n_bins = counts.shape[0]
    if n_bins == 0:
        raise ValueError("histogram must contain at least one bin")

    ordered = counts if from_low else counts[::-1]
    cumulative = np.cumsum(ordered)
    exceeded = np.flatnonzero(cumulative > clip_count)
    if exceeded.size == 0:
        return n_bins - 1 if from_low else 0

    offset = int(exceeded[0])
    return offset if from_low else n_bins - 1 - offset


def resolve_percentile_bounds(histogram, clip_count: float) -> Tuple[int, int]:
    """Resolve ``(low_bin, high_bin)`` for one channel histogram."""

    low = find_percentile_bin(histogram, clip_count, from_low=True)
    high = find_percentile_bin(histogram, clip_count, from_low=False)
    return low, high
