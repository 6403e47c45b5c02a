"""Global per-channel display range scanning.

Scans every image of a batch at low resolution and computes percentile-clipped
display ranges that are shared by all images, so a batch rendered in
``GLOBAL_MATCHED`` mode gets identical brightness/contrast per channel.

Integer images use exact histograms sized by bit depth (one pass). Floating
point images have no a-priori bound, so a first pass finds the global
min/max and a second pass fills a fixed-width binned histogram.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..constants import (
    DEFAULT_MATCHED_PERCENTILE,
    DEFAULT_SCAN_DOWNSAMPLE,
    DISCRETE_BINS_8BIT,
    DISCRETE_BINS_16BIT,
    FLOAT_HISTOGRAM_BINS,
)
from ..rendering.engine import ChannelRenderSettings, rgb_from_packed
from .histogram import HistogramAccumulator
from .percentile import clip_count_for, resolve_percentile_bounds

__all__ = [
    "ChannelRange",
    "build_display_settings",
    "compute_global_ranges",
]

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class ChannelRange:
    """Computed display range for one channel."""

    name: str
    color: int
    min_display: float
    max_display: float


@dataclass(frozen=True)
class _ReferenceInfo:
    channel_names: Tuple[str, ...]
    channel_colors: Tuple[int, ...]
    bits_per_pixel: int
    is_floating_point: bool

    @property
    def n_channels(self) -> int:
        return len(self.channel_names)


def _item_name(image) -> str:
    return str(getattr(image, "name", image))


def _close_quietly(handle, name: str) -> None:
    try:
        handle.close()
    except Exception as exc:
        logger.warning("Error closing image %s after scanning: %s", name, exc)


def _read_reference(image) -> _ReferenceInfo:
    handle = image.open()
    try:
        names = tuple(handle.channel_names)
        colors = tuple(int(c) for c in handle.channel_colors)
        return _ReferenceInfo(
            channel_names=names,
            channel_colors=colors,
            bits_per_pixel=int(handle.bits_per_pixel),
            is_floating_point=bool(handle.is_floating_point),
        )
    finally:
        handle.close()


def _read_for_scan(image, downsample: float, pass_label: str) -> Optional[np.ndarray]:
    """Read *image* at *downsample*; ``None`` if the read fails."""

    name = _item_name(image)
    try:
        handle = image.open()
    except Exception as exc:
        logger.warning("%s failed for %s: %s", pass_label, name, exc)
        return None
    try:
        return np.asarray(handle.read_region(max(float(downsample), 1.0)))
    except Exception as exc:
        logger.warning("%s failed for %s: %s", pass_label, name, exc)
        return None
    finally:
        _close_quietly(handle, name)


def _notify(progress_callback: Optional[ProgressCallback], done: int, total: int) -> None:
    if progress_callback is not None:
        progress_callback(done, total)


def compute_global_ranges(
    images: Sequence,
    percentile: float = DEFAULT_MATCHED_PERCENTILE,
    scan_downsample: float = DEFAULT_SCAN_DOWNSAMPLE,
    progress_callback: Optional[ProgressCallback] = None,
) -> List[ChannelRange]:
    """Scan *images* and compute global per-channel percentile ranges.

    Parameters
    ----------
    images:
        Batch items exposing ``name`` and ``open()``; the opened handle must
        provide channel metadata, ``read_region(downsample)`` returning a
        ``(C, H, W)`` array and ``close()``.
    percentile:
        Saturation percentile clipped at each end (``0.1`` clips 0.1%).
    scan_downsample:
        Downsample used for reading; values below 1 are treated as 1.
    progress_callback:
        Optional ``(processed, total)`` callable invoked once per image per pass.

    Returns
    -------
    list of ChannelRange
        One range per channel of the first image, in channel order. Empty if
        *images* is empty or the first image cannot be opened.
    """

    images = list(images or ())
    if not images:
        return []

    try:
        reference = _read_reference(images[0])
    except Exception as exc:
        logger.error("Failed to read first image for channel info: %s", exc)
        return []

    if reference.is_floating_point:
        ranges = _compute_continuous_ranges(
            images, reference, percentile, scan_downsample, progress_callback
        )
    else:
        ranges = _compute_discrete_ranges(
            images, reference, percentile, scan_downsample, progress_callback
        )

    logger.info(
        "Computed global display ranges for %d channels over %d images",
        len(ranges),
        len(images),
    )
    return ranges


def _compute_discrete_ranges(
    images: List,
    reference: _ReferenceInfo,
    percentile: float,
    scan_downsample: float,
    progress_callback: Optional[ProgressCallback],
) -> List[ChannelRange]:
    n_channels = reference.n_channels
    bin_count = DISCRETE_BINS_8BIT if reference.bits_per_pixel <= 8 else DISCRETE_BINS_16BIT
    histograms = HistogramAccumulator.discrete(n_channels, bin_count)

    total = len(images)
    for i, image in enumerate(images):
        _notify(progress_callback, i, total)
        region = _read_for_scan(image, scan_downsample, "Display range scan")
        if region is None:
            continue
        for c in range(min(region.shape[0], n_channels)):
            histograms.accumulate_array(c, region[c])

    ranges: List[ChannelRange] = []
    for c in range(n_channels):
        name = reference.channel_names[c]
        color = reference.channel_colors[c]
        total_pixels = histograms.total(c)
        if total_pixels == 0:
            ranges.append(ChannelRange(name, color, 0.0, float(bin_count - 1)))
            continue

        clip_count = clip_count_for(total_pixels, percentile)
        low, high = resolve_percentile_bounds(histograms.counts(c), clip_count)
        min_val, max_val = float(low), float(high)
        if min_val >= max_val:
            max_val = min_val + 1.0
        ranges.append(ChannelRange(name, color, min_val, max_val))
    return ranges


def _compute_continuous_ranges(
    images: List,
    reference: _ReferenceInfo,
    percentile: float,
    scan_downsample: float,
    progress_callback: Optional[ProgressCallback],
) -> List[ChannelRange]:
    n_channels = reference.n_channels
    total = len(images)

    # Pass 1: global finite min/max per channel
    global_min = np.full(n_channels, np.inf)
    global_max = np.full(n_channels, -np.inf)
    for i, image in enumerate(images):
        _notify(progress_callback, i, total * 2)
        region = _read_for_scan(image, scan_downsample, "Pass 1")
        if region is None:
            continue
        for c in range(min(region.shape[0], n_channels)):
            values = np.asarray(region[c], dtype=np.float64)
            finite = values[np.isfinite(values)]
            if finite.size == 0:
                continue
            global_min[c] = min(global_min[c], float(finite.min()))
            global_max[c] = max(global_max[c], float(finite.max()))

    # Pass 2: binned histograms between the pass 1 bounds
    seen = np.isfinite(global_min) & np.isfinite(global_max)
    histograms = HistogramAccumulator.continuous_range(
        np.where(seen, global_min, 0.0),
        np.where(seen, global_max, 0.0),
        FLOAT_HISTOGRAM_BINS,
    )
    for i, image in enumerate(images):
        _notify(progress_callback, total + i, total * 2)
        region = _read_for_scan(image, scan_downsample, "Pass 2")
        if region is None:
            continue
        for c in range(min(region.shape[0], n_channels)):
            if seen[c]:
                histograms.accumulate_array(c, region[c])

    ranges: List[ChannelRange] = []
    for c in range(n_channels):
        name = reference.channel_names[c]
        color = reference.channel_colors[c]
        total_pixels = histograms.total(c)
        if total_pixels == 0:
            if seen[c] and global_max[c] > global_min[c]:
                ranges.append(ChannelRange(name, color, float(global_min[c]), float(global_max[c])))
            else:
                # No finite samples, or a single constant value
                lo = float(global_min[c]) if seen[c] else 0.0
                ranges.append(ChannelRange(name, color, lo, lo + 1.0))
            continue

        clip_count = clip_count_for(total_pixels, percentile)
        low_bin, high_bin = resolve_percentile_bounds(histograms.counts(c), clip_count)
        min_val = histograms.bin_value(c, low_bin)
        max_val = histograms.bin_value(c, high_bin)
        if min_val >= max_val:
            max_val = min_val + float(histograms.bin_width[c])
        ranges.append(ChannelRange(name, color, min_val, max_val))
    return ranges


def build_display_settings(ranges: Sequence[ChannelRange]) -> Dict[str, ChannelRenderSettings]:
    """Turn computed ranges into per-channel render settings keyed by name."""

    settings: Dict[str, ChannelRenderSettings] = {}
    for channel_range in ranges or ():
        settings[channel_range.name] = ChannelRenderSettings(
            color=rgb_from_packed(channel_range.color),
            contrast_min=float(channel_range.min_display),
            contrast_max=float(channel_range.max_display),
        )
    return settings
