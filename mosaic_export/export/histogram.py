"""Fixed-size per-channel histograms used by the global range scanner.

Two modes are supported:

* ``discrete`` histograms cover a bounded integer domain (``0..255`` or
  ``0..65535``) with one bin per value.
* ``continuous`` histograms cover ``[global_min, global_max]`` with a fixed
  number of equal-width bins; samples are clamped into the end bins.

Memory is bounded by ``channels * bin_count`` regardless of how many samples
are fed in. Instances are not thread-safe; a single scan owns one accumulator.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from ..constants import FLOAT_HISTOGRAM_BINS

__all__ = ["HistogramAccumulator"]


class HistogramAccumulator:
    """Per-channel count arrays with discrete or continuous binning."""

    def __init__(
        self,
        n_channels: int,
        bin_count: int,
        *,
        continuous: bool = False,
        global_min: Optional[Sequence[float]] = None,
        global_max: Optional[Sequence[float]] = None,
    ) -> None:
        if n_channels < 0:
            raise ValueError("n_channels must be >= 0")
        if bin_count < 1:
            raise ValueError("bin_count must be >= 1")

        self.n_channels = int(n_channels)
        self.bin_count = int(bin_count)
        self.continuous = bool(continuous)
        self._counts = np.zeros((self.n_channels, self.bin_count), dtype=np.int64)

        if self.continuous:
            if global_min is None or global_max is None:
                raise ValueError("continuous histograms need global_min and global_max")
            if len(global_min) != self.n_channels or len(global_max) != self.n_channels:
                raise ValueError("global_min/global_max must have one entry per channel")
            self.global_min = np.asarray(global_min, dtype=np.float64)
            self.global_max = np.asarray(global_max, dtype=np.float64)
            self.bin_width = np.array(
                [self._bin_width(lo, hi, self.bin_count) for lo, hi in zip(self.global_min, self.global_max)],
                dtype=np.float64,
            )
        else:
            self.global_min = np.zeros(self.n_channels, dtype=np.float64)
            self.global_max = np.full(self.n_channels, float(self.bin_count - 1))
            self.bin_width = np.ones(self.n_channels, dtype=np.float64)

    @classmethod
    def discrete(cls, n_channels: int, bin_count: int) -> "HistogramAccumulator":
        return cls(n_channels, bin_count)

    @classmethod
    def continuous_range(
        cls,
        global_min: Sequence[float],
        global_max: Sequence[float],
        bin_count: int = FLOAT_HISTOGRAM_BINS,
    ) -> "HistogramAccumulator":
        return cls(
            len(global_min),
            bin_count,
            continuous=True,
            global_min=global_min,
            global_max=global_max,
        )

    @staticmethod
    def _bin_width(lo: float, hi: float, bin_count: int) -> float:
        span = float(hi) - float(lo)
        if not math.isfinite(span) or span <= 0:
            return 1.0
        return span / bin_count

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def accumulate(self, channel: int, value: float) -> None:
        """Record a single sample for *channel*."""

        if self.continuous:
            value = float(value)
            if not math.isfinite(value):
                return
            bin_index = int(math.floor((value - self.global_min[channel]) / self.bin_width[channel]))
            bin_index = max(0, min(bin_index, self.bin_count - 1))
        else:
            # Pixel samples from a fixed bit depth are integers; anything
            # outside the domain is dropped.
            if isinstance(value, (float, np.floating)) and not float(value).is_integer():
                return
            bin_index = int(value)
            if bin_index < 0 or bin_index >= self.bin_count:
                return
        self._counts[channel, bin_index] += 1

    def accumulate_array(self, channel: int, values) -> None:
        """Vectorised equivalent of calling :meth:`accumulate` for every element."""

        samples = np.asarray(values).ravel()
        if samples.size == 0:
            return

        if self.continuous:
            samples = samples.astype(np.float64, copy=False)
            samples = samples[np.isfinite(samples)]
            if samples.size == 0:
                return
            bins = np.floor((samples - self.global_min[channel]) / self.bin_width[channel])
            bins = np.clip(bins, 0, self.bin_count - 1).astype(np.int64)
        else:
            if not np.issubdtype(samples.dtype, np.integer):
                samples = samples.astype(np.float64, copy=False)
                samples = samples[np.isfinite(samples) & (samples == np.floor(samples))]
            bins = samples.astype(np.int64, copy=False)
            bins = bins[(bins >= 0) & (bins < self.bin_count)]
            if bins.size == 0:
                return

        self._counts[channel] += np.bincount(bins, minlength=self.bin_count)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def counts(self, channel: int) -> np.ndarray:
        return self._counts[channel]

    def total(self, channel: int) -> int:
        return int(self._counts[channel].sum())

    def bin_value(self, channel: int, bin_index: float) -> float:
        """Map a bin index back to a sample value."""

        if not self.continuous:
            return float(bin_index)
        return float(self.global_min[channel] + bin_index * self.bin_width[channel])
